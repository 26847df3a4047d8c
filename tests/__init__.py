"""ftp-ingest test suite.

Tests run against the in-memory fake FTP server in conftest.py; no
network is needed.
"""
