"""One work unit: one remote file, one session, one worker pool."""

from __future__ import annotations

import io
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from ftp_ingest.config import FtpSourceConfig
from ftp_ingest.errors import TransferCancelledError, TransferError
from ftp_ingest.pipe import DEFAULT_PIPE_CAPACITY
from ftp_ingest.resilience import ReopenPolicy, cancellable_sleep
from ftp_ingest.resumable import ResumableReader
from ftp_ingest.session import FtpSession, close_session, open_session
from ftp_ingest.transfer import start_download

logger = logging.getLogger(__name__)

__all__ = ["NamedByteSource", "SingleFileProvider"]

TRANSFER_THREAD_PREFIX = "ftp-ingest-transfer"


@dataclass(frozen=True)
class NamedByteSource:
    """A byte stream tagged with the remote path it comes from."""

    stream: io.RawIOBase
    hint: str

    def read(self, size: int = -1) -> bytes:
        return self.stream.read(size) or b""


class SingleFileProvider:
    """Serves exactly one resumable stream for one remote path.

    The session is opened by the first ``next()`` call. ``close()`` may be
    called at any time, any number of times; it abandons in-flight
    transfers rather than waiting for them.

    Example:
        with SingleFileProvider(config, "/exports/orders_01.csv") as provider:
            source = provider.next()
            data = source.read()
    """

    def __init__(
        self,
        config: FtpSourceConfig,
        path: str,
        *,
        session_factory: Optional[Callable[[FtpSourceConfig], FtpSession]] = None,
        reopen_policy: Optional[ReopenPolicy] = None,
        pipe_capacity: int = DEFAULT_PIPE_CAPACITY,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.config = config
        self.path = path
        self._session_factory = session_factory or open_session
        self._reopen_policy = reopen_policy or ReopenPolicy()
        self._pipe_capacity = pipe_capacity
        self._cancelled = threading.Event()
        self._sleep = sleep or cancellable_sleep(self._cancelled)
        self._executor = ThreadPoolExecutor(thread_name_prefix=TRANSFER_THREAD_PREFIX)
        self._session: Optional[FtpSession] = None
        self._reader: Optional[ResumableReader] = None
        self._opened = False
        self._closed = False

    def __enter__(self) -> "SingleFileProvider":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def session(self) -> Optional[FtpSession]:
        return self._session

    def _start(self, offset: int) -> io.RawIOBase:
        if self._cancelled.is_set() or self._session is None:
            raise TransferCancelledError(f"Provider for {self.path} is closed", path=self.path)
        return start_download(
            self._session,
            self.path,
            offset,
            self._executor,
            pipe_capacity=self._pipe_capacity,
        )

    def next(self) -> Optional[NamedByteSource]:
        """The file's stream on the first call; None afterwards.

        Raises:
            ConnectionError: If the session cannot be opened
            TransferCancelledError: If the provider was already closed
        """
        if self._opened:
            return None
        if self._closed:
            raise TransferCancelledError(f"Provider for {self.path} is closed", path=self.path)
        self._opened = True

        self._session = self._session_factory(self.config)
        first: Optional[io.RawIOBase]
        try:
            first = self._start(0)
        except TransferError as exc:
            # the reader's first read goes through the reopen loop
            logger.warning("Could not start transfer of %s: %s", self.path, exc.message)
            first = None
        self._reader = ResumableReader(
            first,
            lambda offset, _cause: self._start(offset),
            path=self.path,
            policy=self._reopen_policy,
            sleep=self._sleep,
        )
        return NamedByteSource(stream=self._reader, hint=self.path)

    def close(self) -> None:
        """Stop the worker pool without waiting, then close the session."""
        if self._closed:
            return
        self._closed = True
        self._cancelled.set()
        try:
            self._executor.shutdown(wait=False, cancel_futures=True)
            if self._reader is not None:
                self._reader.close()
        finally:
            if self._session is not None:
                close_session(self._session)
