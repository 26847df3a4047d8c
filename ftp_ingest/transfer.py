"""Blocking FTP download exposed as a pull stream.

FtpSession.download pushes blocks into a callback and returns only when
the transfer is over. start_download runs it on a worker thread that
writes into a bounded BytePipe; the caller reads from the other end at
its own pace.

start_download returns once the server has accepted the RETR, so a
refused transfer fails the call itself. A download that breaks later is
recorded in the pipe and raised from the reader's next read as a
TransferError.
"""

from __future__ import annotations

import ftplib
import logging
import threading
from concurrent.futures import Executor
from typing import Callable, Optional

from ftp_ingest.errors import TransferCancelledError, TransferError
from ftp_ingest.pipe import DEFAULT_PIPE_CAPACITY, BytePipe, PipeReader
from ftp_ingest.session import FtpSession

logger = logging.getLogger(__name__)

__all__ = ["TRANSFER_NOTICE_BYTES", "TransferProgressLogger", "start_download"]

TRANSFER_NOTICE_BYTES = 100 * 1024 * 1024


class TransferProgressLogger:
    """Logs transfer start, progress every ``notice_bytes`` and the outcome."""

    def __init__(
        self,
        path: str,
        notice_bytes: int = TRANSFER_NOTICE_BYTES,
        on_started: Optional[Callable[[], None]] = None,
    ) -> None:
        self.path = path
        self.notice_bytes = notice_bytes
        self.total_transferred = 0
        self.is_started = False
        self._next_notice = notice_bytes
        self._on_started = on_started

    def started(self) -> None:
        self.is_started = True
        logger.info("Transfer started: %s", self.path)
        if self._on_started is not None:
            self._on_started()

    def transferred(self, length: int) -> None:
        self.total_transferred += length
        if self.total_transferred > self._next_notice:
            logger.info("Transferred %d bytes of %s", self.total_transferred, self.path)
            self._next_notice = (
                self.total_transferred // self.notice_bytes + 1
            ) * self.notice_bytes

    def completed(self) -> None:
        logger.info("Transfer completed %d bytes: %s", self.total_transferred, self.path)

    def aborted(self) -> None:
        logger.info("Transfer aborted: %s", self.path)

    def failed(self) -> None:
        logger.info("Transfer failed: %s", self.path)


def start_download(
    session: FtpSession,
    path: str,
    offset: int,
    executor: Executor,
    *,
    pipe_capacity: int = DEFAULT_PIPE_CAPACITY,
) -> PipeReader:
    """Start downloading ``path`` from ``offset`` on a worker of ``executor``.

    Blocks until the server accepts the transfer or the worker gives up.

    Returns:
        A readable binary stream fed by the worker

    Raises:
        TransferError: If the server refuses the transfer
        TransferCancelledError: If the executor is shut down before the
            transfer starts
    """
    pipe = BytePipe(pipe_capacity)
    ready = threading.Event()
    progress = TransferProgressLogger(path, on_started=ready.set)

    def run() -> None:
        error = None
        try:
            session.download(path, pipe.write, offset, progress)
        except Exception as exc:
            if pipe.reader_closed:
                # Nobody is left to see the error.
                logger.debug("Transfer of %s abandoned by reader: %s", path, exc)
                return
            if isinstance(exc, ftplib.all_errors):
                logger.info("FTP data transfer failed: %s", exc)
            error = TransferError(
                f"Transfer of {path} failed: {exc}", path=path, offset=offset, cause=exc
            )
        finally:
            pipe.close_writer(error)

    try:
        future = executor.submit(run)
    except RuntimeError as exc:
        raise TransferCancelledError(
            f"Cannot start transfer of {path}: worker pool is shut down", path=path
        ) from exc

    # also fires when the future is cancelled before it ever runs
    future.add_done_callback(lambda _: ready.set())
    ready.wait()

    if not progress.is_started:
        if future.cancelled():
            raise TransferCancelledError(
                f"Transfer of {path} cancelled before it started", path=path
            )
        error = pipe.error
        if error is not None:
            raise error

    return PipeReader(pipe, name=path)
