"""Bounded in-process byte pipe.

Connects a producer thread (the blocking FTP download) to a consumer
reading on its own thread:

- ``write`` blocks while the buffer is full
- ``read`` blocks while the buffer is empty
- ``close_writer()`` ends the stream; reads drain the buffer, then
  return ``b""``
- ``close_writer(error)`` ends the stream with a failure; reads drain
  the buffer, then raise ``error``
- ``close_reader()`` abandons the stream; blocked and future writes
  raise BrokenPipeError, blocked and future reads raise
  TransferCancelledError
"""

from __future__ import annotations

import io
import threading
from typing import Optional

from ftp_ingest.errors import TransferCancelledError

__all__ = ["DEFAULT_PIPE_CAPACITY", "BytePipe", "PipeReader"]

DEFAULT_PIPE_CAPACITY = 1024 * 1024


class BytePipe:
    """Thread-safe bounded byte buffer with completion and error signalling."""

    def __init__(self, capacity: int = DEFAULT_PIPE_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._writer_closed = False
        self._reader_closed = False
        self._error: Optional[BaseException] = None

    @property
    def writer_closed(self) -> bool:
        with self._cond:
            return self._writer_closed

    @property
    def reader_closed(self) -> bool:
        with self._cond:
            return self._reader_closed

    @property
    def error(self) -> Optional[BaseException]:
        """The error the writer closed the stream with, if any."""
        with self._cond:
            return self._error

    def write(self, data: bytes) -> int:
        """Append ``data``, blocking while the buffer is full."""
        view = memoryview(data)
        with self._cond:
            if self._writer_closed:
                raise ValueError("write to a closed pipe")
            while view:
                while len(self._buffer) >= self.capacity and not self._reader_closed:
                    self._cond.wait()
                if self._reader_closed:
                    raise BrokenPipeError("pipe reader is closed")
                room = self.capacity - len(self._buffer)
                self._buffer += view[:room]
                view = view[room:]
                self._cond.notify_all()
        return len(data)

    def read(self, size: int = -1) -> bytes:
        """Return up to ``size`` bytes, blocking until at least one is available.

        Returns ``b""`` at end of stream.
        """
        with self._cond:
            while not self._buffer and not self._writer_closed and not self._reader_closed:
                self._cond.wait()
            if self._reader_closed:
                raise TransferCancelledError("Read from a pipe whose reader side is closed")
            if self._buffer:
                if size is None or size < 0 or size >= len(self._buffer):
                    chunk = bytes(self._buffer)
                    self._buffer.clear()
                else:
                    chunk = bytes(self._buffer[:size])
                    del self._buffer[:size]
                self._cond.notify_all()
                return chunk
            if self._error is not None:
                raise self._error
            return b""

    def close_writer(self, error: Optional[BaseException] = None) -> None:
        with self._cond:
            if self._writer_closed:
                return
            self._writer_closed = True
            self._error = error
            self._cond.notify_all()

    def close_reader(self) -> None:
        with self._cond:
            self._reader_closed = True
            self._buffer.clear()
            self._cond.notify_all()


class PipeReader(io.RawIOBase):
    """Read end of a BytePipe as a standard binary stream."""

    def __init__(self, pipe: BytePipe, name: str = "") -> None:
        super().__init__()
        self.pipe = pipe
        self.name = name

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[override]
        data = self.pipe.read(len(buffer))
        n = len(data)
        buffer[:n] = data
        return n

    def close(self) -> None:
        if not self.closed:
            self.pipe.close_reader()
        super().close()
