"""FTP session management.

Opens and configures one control connection per discovery pass or work
unit, and tears it down unconditionally. Built on the standard library's
ftplib:

- ``FTP`` for plain connections
- ``FTP_TLS`` for explicit TLS (AUTH TLS on the cleartext control port)
- ``ImplicitFTP_TLS`` for implicit TLS (encrypted from the first byte)

Every control-channel line is logged at INFO; PASS lines are redacted.
"""

from __future__ import annotations

import ftplib
import logging
import socket
import ssl
import zlib
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Set

from ftp_ingest.config import FtpSourceConfig, SecurityMode
from ftp_ingest.errors import ConnectionError

logger = logging.getLogger(__name__)

__all__ = [
    "CLOSE_TIMEOUT",
    "CONNECT_TIMEOUT",
    "READ_TIMEOUT",
    "FtpSession",
    "ImplicitFTP_TLS",
    "LoggingFTP",
    "LoggingFTP_TLS",
    "SecurityMode",
    "TransferListener",
    "build_ssl_context",
    "close_session",
    "open_session",
]

# Seconds; fixed, not user-tunable.
CONNECT_TIMEOUT = 30.0
READ_TIMEOUT = 60.0
CLOSE_TIMEOUT = 60.0

TRANSFER_BLOCK_SIZE = 64 * 1024


class TransferListener(Protocol):
    """Receives lifecycle notifications from FtpSession.download."""

    # called once the server has accepted RETR
    def started(self) -> None: ...

    def transferred(self, length: int) -> None: ...

    def completed(self) -> None: ...

    def aborted(self) -> None: ...

    def failed(self) -> None: ...


class _CommunicationLoggingMixin:
    """Log every line sent and received on the control channel."""

    def putline(self, line: str) -> None:
        if line[:5].upper() == "PASS ":
            logger.info("> PASS ****")
        else:
            logger.info("> %s", line)
        super().putline(line)  # type: ignore[misc]

    def getline(self) -> str:
        line = super().getline()  # type: ignore[misc]
        logger.info("< %s", line)
        return line


class LoggingFTP(_CommunicationLoggingMixin, ftplib.FTP):
    pass


class LoggingFTP_TLS(_CommunicationLoggingMixin, ftplib.FTP_TLS):
    pass


class ImplicitFTP_TLS(LoggingFTP_TLS):
    """FTP_TLS variant that wraps the control socket before the greeting."""

    def connect(
        self,
        host: str = "",
        port: int = 0,
        timeout: float = -999,
        source_address: Any = None,
    ) -> str:
        if host != "":
            self.host = host
        if port > 0:
            self.port = port
        if timeout != -999:
            self.timeout = timeout
        if source_address is not None:
            self.source_address = source_address

        sock = socket.create_connection(
            (self.host, self.port), self.timeout, source_address=self.source_address
        )
        self.af = sock.family
        self.sock = self.context.wrap_socket(sock, server_hostname=self.host)
        self.file = self.sock.makefile("r", encoding=self.encoding)
        self.welcome = self.getresp()
        return self.welcome


def build_ssl_context(config: FtpSourceConfig) -> ssl.SSLContext:
    """Create the TLS context for FTPS sessions."""
    context = ssl.create_default_context(cafile=config.ssl_trusted_ca_cert_file)
    if not config.ssl_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _default_ftp_factory(config: FtpSourceConfig) -> ftplib.FTP:
    mode = config.security_mode
    if mode is SecurityMode.PLAIN:
        return LoggingFTP(timeout=CONNECT_TIMEOUT)

    context = build_ssl_context(config)
    if mode is SecurityMode.EXPLICIT:
        logger.info("Using FTPES (FTPS/explicit) mode")
        return LoggingFTP_TLS(context=context, timeout=CONNECT_TIMEOUT)

    logger.info("Using FTPS (FTPS/implicit) mode")
    return ImplicitFTP_TLS(context=context, timeout=CONNECT_TIMEOUT)


@dataclass
class FtpSession:
    """An exclusively owned control connection and its negotiated modes.

    Never shared across work units. Use as a context manager or call
    close_session() when done.
    """

    client: ftplib.FTP
    host: str
    port: int
    security_mode: SecurityMode
    passive: bool
    ascii: bool
    compression: bool = False
    closed: bool = False
    # None until the first listing finds out
    mlsd_supported: Optional[bool] = None

    def __enter__(self) -> "FtpSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        close_session(self)

    def download(
        self,
        path: str,
        write: Callable[[bytes], Any],
        offset: int = 0,
        listener: Optional[TransferListener] = None,
    ) -> None:
        """Blocking download of ``path`` starting at byte ``offset``.

        Pushes every received block into ``write`` and returns only when
        the transfer completes, fails or is abandoned by ``write`` raising.
        Either way the control channel is left ready for the next command.
        """
        client = self.client
        client.voidcmd("TYPE A" if self.ascii else "TYPE I")
        abandoned = False

        def deliver(block: bytes) -> None:
            nonlocal abandoned
            try:
                write(block)
            except BaseException:
                abandoned = True
                raise
            if listener:
                listener.transferred(len(block))

        try:
            conn = client.transfercmd(f"RETR {path}", offset or None)
            if listener:
                listener.started()
            try:
                self._receive(conn, deliver)
            except BaseException:
                conn.close()
                if abandoned:
                    self._abort_transfer()
                else:
                    self._finish_broken_transfer()
                raise
            conn.close()
            client.voidresp()
        except BaseException:
            if listener:
                if abandoned:
                    listener.aborted()
                else:
                    listener.failed()
            raise
        if listener:
            listener.completed()

    def listing_lines(self, command: str) -> List[str]:
        """Run a listing command (``MLSD``, ``LIST``) and return its text lines.

        Listing data goes over a data connection like any download, so it
        is inflated the same way under MODE Z.
        """
        client = self.client
        client.voidcmd("TYPE A")
        chunks: List[bytes] = []
        conn = client.transfercmd(command)
        try:
            self._receive(conn, chunks.append)
        except BaseException:
            conn.close()
            self._finish_broken_transfer()
            raise
        conn.close()
        client.voidresp()
        return b"".join(chunks).decode(client.encoding).splitlines()

    def _receive(self, conn: Any, deliver: Callable[[bytes], Any]) -> None:
        decompressor = zlib.decompressobj() if self.compression else None
        while True:
            block = conn.recv(TRANSFER_BLOCK_SIZE)
            if not block:
                break
            if decompressor is not None:
                block = decompressor.decompress(block)
            if block:
                deliver(block)
        if decompressor is not None:
            tail = decompressor.flush()
            if tail:
                deliver(tail)
        if isinstance(conn, ssl.SSLSocket):
            conn.unwrap()

    def _finish_broken_transfer(self) -> None:
        """Read the final reply of a transfer whose data connection failed.

        The server still owes it (426 or 451, or 226 if it had already sent
        everything). No ABOR is sent, so this is the only reply pending.
        """
        try:
            resp = self.client.voidresp()
        except (ftplib.error_temp, ftplib.error_perm) as exc:
            logger.info("Server ended the broken transfer: %s", exc)
        except ftplib.all_errors as exc:
            logger.warning("No final reply for the broken transfer: %s", exc)
        else:
            logger.info("Server completed the transfer before it broke: %s", resp)

    def _abort_transfer(self) -> None:
        """Send ABOR for a transfer the consumer gave up on and drain the replies.

        The data connection is already closed, so two replies are due: the
        transfer's own (426, or 226 if it had finished) and then the answer
        to ABOR (225 or 226). A lone 225 means no transfer reply was owed.
        ABOR goes out as an ordinary command; urgent data cannot be sent
        over TLS.
        """
        client = self.client
        try:
            client.putcmd("ABOR")
            resp = client.getmultiline()
            if not resp.startswith("225"):
                resp = client.getmultiline()
            logger.info("Transfer aborted: %s", resp)
        except ftplib.all_errors as exc:
            logger.warning("Could not complete ABOR: %s", exc)


def _server_features(client: ftplib.FTP) -> Set[str]:
    try:
        response = client.sendcmd("FEAT")
    except ftplib.error_perm:
        return set()
    features = set()
    for line in response.splitlines()[1:]:
        line = line.strip()
        if line and not line.startswith("211"):
            features.add(line.upper())
    return features


def _negotiate_compression(client: ftplib.FTP) -> bool:
    if "MODE Z" not in _server_features(client):
        return False
    try:
        client.voidcmd("MODE Z")
    except ftplib.error_perm as exc:
        logger.info("Server advertised MODE Z but rejected it: %s", exc)
        return False
    logger.info("Using MODE Z compression")
    return True


def open_session(
    config: FtpSourceConfig,
    *,
    ftp_factory: Optional[Callable[[FtpSourceConfig], ftplib.FTP]] = None,
) -> FtpSession:
    """Connect, log in and configure one session.

    Args:
        config: Source configuration
        ftp_factory: Builds the unconnected ftplib client (tests inject fakes)

    Returns:
        A ready-to-use FtpSession

    Raises:
        ConnectionError: On any transport or protocol failure. The partial
            connection is closed before the error propagates.
    """
    factory = ftp_factory or _default_ftp_factory
    host = config.host
    port = config.resolved_port
    mode = config.security_mode

    client = factory(config)
    session: Optional[FtpSession] = None
    try:
        logger.info("Connecting to %s:%d", host, port)
        client.connect(host, port, timeout=CONNECT_TIMEOUT)

        client.timeout = READ_TIMEOUT
        sock = getattr(client, "sock", None)
        if sock is not None:
            sock.settimeout(READ_TIMEOUT)

        if config.user is not None:
            logger.info("Logging in with user %s", config.user)
            client.login(config.user, config.password or "")
        elif mode is SecurityMode.EXPLICIT:
            client.auth()  # type: ignore[attr-defined]

        if mode is not SecurityMode.PLAIN:
            client.prot_p()  # type: ignore[attr-defined]

        logger.info("Using %s mode", "passive" if config.passive_mode else "active")
        client.set_pasv(config.passive_mode)

        if config.ascii_mode:
            logger.info("Using ASCII mode")
            client.voidcmd("TYPE A")
        else:
            logger.info("Using binary mode")
            client.voidcmd("TYPE I")

        compression = _negotiate_compression(client)

        session = FtpSession(
            client=client,
            host=host,
            port=port,
            security_mode=mode,
            passive=config.passive_mode,
            ascii=config.ascii_mode,
            compression=compression,
        )
        return session
    except (ftplib.error_reply, ftplib.error_temp, ftplib.error_perm) as exc:
        logger.info("FTP command failed: %s", exc)
        raise ConnectionError(
            f"FTP command failed: {exc}", host=host, port=port, cause=exc
        ) from exc
    except ftplib.error_proto as exc:
        logger.info("FTP protocol error")
        raise ConnectionError(
            f"FTP protocol error: {exc}", host=host, port=port, cause=exc
        ) from exc
    except ftplib.all_errors as exc:
        logger.info("FTP network error: %s", exc)
        raise ConnectionError(
            f"Could not connect to {host}:{port}: {exc}", host=host, port=port, cause=exc
        ) from exc
    finally:
        if session is None:
            _disconnect(client)


def _disconnect(client: ftplib.FTP) -> None:
    sock = getattr(client, "sock", None)
    if sock is None:
        client.close()
        return
    try:
        sock.settimeout(CLOSE_TIMEOUT)
        client.quit()
    except ftplib.all_errors as exc:
        logger.debug("Ignoring error while disconnecting: %s", exc)
    finally:
        try:
            client.close()
        except ftplib.all_errors as exc:
            logger.debug("Ignoring error while closing socket: %s", exc)


def close_session(session: FtpSession) -> None:
    """Disconnect a session. Idempotent; never raises protocol errors."""
    if session.closed:
        return
    session.closed = True
    _disconnect(session.client)
