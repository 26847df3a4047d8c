"""Write ingested streams to any fsspec-compatible target.

The target is a directory URL (``./landing``, ``s3://bucket/ftp/``,
``memory://out``...). Each remote file lands at the target joined with
its remote path, so files of the same name from different directories
do not collide.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Any, Dict

from fsspec.core import url_to_fs

from ftp_ingest.provider import NamedByteSource

logger = logging.getLogger(__name__)

__all__ = ["COPY_CHUNK_SIZE", "SinkResult", "build_target_path", "write_stream"]

COPY_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class SinkResult:
    """Where one stream was written and how much of it."""

    source: str
    path: str
    bytes_written: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "path": self.path,
            "bytes_written": self.bytes_written,
        }


def build_target_path(target: str, remote_path: str) -> str:
    """Target location for ``remote_path`` under ``target``.

    Example:
        >>> build_target_path("s3://bucket/landing/", "/exports/2024/a.csv")
        's3://bucket/landing/exports/2024/a.csv'
    """
    relative = posixpath.normpath("/" + remote_path.replace("\\", "/")).lstrip("/")
    if not relative:
        raise ValueError(f"Remote path {remote_path!r} has no file name")
    return target.rstrip("/") + "/" + relative


def write_stream(
    source: NamedByteSource,
    target: str,
    **storage_options: Any,
) -> SinkResult:
    """Copy ``source`` to its location under ``target``.

    Args:
        source: Stream to drain
        target: Directory URL understood by fsspec
        **storage_options: Protocol-specific options (credentials, etc.)

    Returns:
        SinkResult describing the written file
    """
    path = build_target_path(target, source.hint)
    fs, fs_path = url_to_fs(path, **storage_options)
    parent = posixpath.dirname(fs_path)
    if parent:
        fs.makedirs(parent, exist_ok=True)

    total = 0
    with fs.open(fs_path, "wb") as out:
        while True:
            chunk = source.read(COPY_CHUNK_SIZE)
            if not chunk:
                break
            out.write(chunk)
            total += len(chunk)

    logger.info("Wrote %s bytes from %s to %s", f"{total:,}", source.hint, path)
    return SinkResult(source=source.hint, path=path, bytes_written=total)
