"""Tests for writing ingested streams through fsspec."""

import io

import fsspec
import pytest

from ftp_ingest.provider import NamedByteSource
from ftp_ingest.sink import SinkResult, build_target_path, write_stream


def _source(path, data):
    return NamedByteSource(stream=io.BytesIO(data), hint=path)


class TestBuildTargetPath:
    @pytest.mark.parametrize(
        "target, remote, expected",
        [
            ("./landing", "/in/a.csv", "./landing/in/a.csv"),
            ("./landing/", "in/a.csv", "./landing/in/a.csv"),
            ("s3://bucket/ftp", "/exports/2024/a.csv", "s3://bucket/ftp/exports/2024/a.csv"),
            ("/data", "/in/../etc/a.csv", "/data/etc/a.csv"),
        ],
    )
    def test_paths(self, target, remote, expected):
        assert build_target_path(target, remote) == expected

    def test_rejects_empty_remote_path(self):
        with pytest.raises(ValueError):
            build_target_path("/data", "/")


class TestWriteStream:
    def test_local_target(self, tmp_path):
        result = write_stream(_source("/in/sample_01.csv", b"id\n1\n"), str(tmp_path))
        assert result == SinkResult(
            source="/in/sample_01.csv",
            path=f"{tmp_path}/in/sample_01.csv",
            bytes_written=5,
        )
        assert (tmp_path / "in" / "sample_01.csv").read_bytes() == b"id\n1\n"

    def test_memory_target(self):
        data = b"x" * (3 * 1024 * 1024 + 7)
        result = write_stream(_source("/in/big.bin", data), "memory://landing")
        assert result.bytes_written == len(data)
        with fsspec.open("memory://landing/in/big.bin", "rb") as f:
            assert f.read() == data

    def test_to_dict(self):
        result = SinkResult(source="/a", path="/t/a", bytes_written=3)
        assert result.to_dict() == {"source": "/a", "path": "/t/a", "bytes_written": 3}
