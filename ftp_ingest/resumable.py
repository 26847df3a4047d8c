"""Read stream that survives transfer failures.

ResumableReader counts the bytes it has handed to the consumer. When a
read fails, it asks its reopener for a fresh stream starting at exactly
that offset and carries on, so the consumer sees every byte once and in
order.
"""

from __future__ import annotations

import io
import logging
from typing import Callable, Optional

from ftp_ingest.errors import TransferCancelledError, TransferError
from ftp_ingest.resilience import ReopenPolicy, ReopenProgress, reopen_with_retry

logger = logging.getLogger(__name__)

__all__ = ["Reopener", "ResumableReader"]

# (offset, cause) -> new stream positioned at offset
Reopener = Callable[[int, Optional[BaseException]], io.RawIOBase]


class ResumableReader(io.RawIOBase):
    """Binary stream that reopens its source at the delivered offset on failure."""

    def __init__(
        self,
        source: Optional[io.RawIOBase],
        reopener: Reopener,
        *,
        path: str = "",
        policy: Optional[ReopenPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        super().__init__()
        self._source: Optional[io.RawIOBase] = source
        self._reopener = reopener
        self.path = path
        self.name = path
        self.policy = policy or ReopenPolicy()
        self._sleep = sleep
        self.offset = 0
        self.reopen_count = 0
        self._stalled = 0
        self.reopen_progress = ReopenProgress()

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[override]
        if self.closed:
            raise ValueError("I/O operation on closed file")
        while True:
            if self._source is None:
                self._reopen(None)
            try:
                n = self._source.readinto(buffer)  # type: ignore[union-attr]
            except TransferCancelledError:
                raise
            except (TransferError, OSError) as exc:
                # a stream that keeps failing before delivering a byte is
                # charged against the same attempt budget
                self._stalled += 1
                if self._stalled >= self.policy.max_attempts:
                    logger.error(
                        "FTP read for %s failed %d times at offset %s without progress",
                        self.path,
                        self._stalled,
                        f"{self.offset:,}",
                    )
                    raise
                self._reopen(exc)
                continue
            n = n or 0
            if n:
                self._stalled = 0
            self.offset += n
            return n

    def _reopen(self, cause: Optional[BaseException]) -> None:
        self._close_source()

        def attempt() -> io.RawIOBase:
            logger.warning(
                "FTP read failed. Retrying GET request with %s bytes offset",
                f"{self.offset:,}",
                exc_info=cause,
            )
            return self._reopener(self.offset, cause)

        self._source = reopen_with_retry(
            attempt,
            self.policy,
            description=f"FTP GET request for {self.path}" if self.path else "FTP GET request",
            sleep=self._sleep,
            progress=self.reopen_progress,
        )
        self.reopen_count += 1

    def _close_source(self) -> None:
        source, self._source = self._source, None
        if source is not None:
            try:
                source.close()
            except (TransferError, OSError) as exc:
                logger.debug("Ignoring error closing failed stream: %s", exc)

    def close(self) -> None:
        if not self.closed:
            self._close_source()
        super().close()
