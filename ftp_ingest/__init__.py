"""Incremental, resumable ingestion of files from FTP and FTPS servers.

Discover the files under a path prefix that sort after the previous run's
watermark, stream each one through a resumable reader, and hand the next
watermark back for the following run.
"""

from ftp_ingest.config import FtpSourceConfig, SecurityMode
from ftp_ingest.config_loader import IngestJob, load_job
from ftp_ingest.env import expand_env_vars, expand_options, load_env_file
from ftp_ingest.errors import (
    ConfigurationError,
    ConnectionError,
    DiscoveryError,
    IngestError,
    TransferCancelledError,
    TransferError,
)
from ftp_ingest.listing import (
    EntryKind,
    FilterSpec,
    RemoteEntry,
    compile_path_pattern,
    discover_files,
    list_files,
    parse_list_line,
    parse_mlsd_line,
    split_path_prefix,
)
from ftp_ingest.logging import JSONFormatter, setup_logging
from ftp_ingest.pipe import BytePipe, PipeReader
from ftp_ingest.plugin import (
    IngestPlan,
    IngestResult,
    cleanup,
    open_task,
    resume,
    run,
    transaction,
)
from ftp_ingest.provider import NamedByteSource, SingleFileProvider
from ftp_ingest.resilience import ReopenPolicy, ReopenState, reopen_with_retry
from ftp_ingest.resumable import ResumableReader
from ftp_ingest.session import FtpSession, ImplicitFTP_TLS, close_session, open_session
from ftp_ingest.sink import SinkResult, build_target_path, write_stream
from ftp_ingest.state import (
    delete_watermark,
    get_watermark,
    list_watermarks,
    next_watermark,
    save_watermark,
)
from ftp_ingest.transfer import TransferProgressLogger, start_download

__version__ = "1.0.0"

__all__ = [
    # Configuration
    "FtpSourceConfig",
    "SecurityMode",
    "IngestJob",
    "load_job",
    "expand_env_vars",
    "expand_options",
    "load_env_file",
    # Errors
    "IngestError",
    "ConnectionError",
    "ConfigurationError",
    "DiscoveryError",
    "TransferError",
    "TransferCancelledError",
    # Session
    "FtpSession",
    "ImplicitFTP_TLS",
    "open_session",
    "close_session",
    # Discovery
    "EntryKind",
    "RemoteEntry",
    "FilterSpec",
    "split_path_prefix",
    "compile_path_pattern",
    "parse_list_line",
    "parse_mlsd_line",
    "list_files",
    "discover_files",
    # State
    "next_watermark",
    "get_watermark",
    "save_watermark",
    "delete_watermark",
    "list_watermarks",
    # Transfer
    "BytePipe",
    "PipeReader",
    "TransferProgressLogger",
    "start_download",
    "ResumableReader",
    "ReopenPolicy",
    "ReopenState",
    "reopen_with_retry",
    "NamedByteSource",
    "SingleFileProvider",
    # Lifecycle
    "IngestPlan",
    "IngestResult",
    "transaction",
    "resume",
    "cleanup",
    "open_task",
    "run",
    # Output
    "SinkResult",
    "write_stream",
    "build_target_path",
    # Logging
    "setup_logging",
    "JSONFormatter",
]
