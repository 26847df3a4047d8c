"""Pytest configuration and fixtures.

FakeFtpServer holds an in-memory directory tree and hands out FakeFTP
clients that behave like connected ftplib.FTP objects, so sessions,
listings and transfers run without a network.
"""

import ftplib
import posixpath
import socket
import threading
import zlib
from typing import Any, Dict, List, Optional

import pytest

from ftp_ingest.config import FtpSourceConfig
from ftp_ingest.session import open_session


class FakeLink:
    def __init__(self, target: str):
        self.target = target


class FakeSocket:
    def __init__(self):
        self.timeouts: List[float] = []
        self.sent: List[tuple] = []

    def settimeout(self, value):
        self.timeouts.append(value)

    def sendall(self, data, flags=0):
        self.sent.append((data, flags))


class FakeTlsSocket(FakeSocket):
    """Behaves like ssl.SSLSocket: no urgent (out-of-band) data."""

    def sendall(self, data, flags=0):
        if flags:
            raise ValueError("non-zero flags not allowed in calls to sendall() on SSLSocket")
        super().sendall(data, flags)


class FakeDataConnection:
    """Data channel delivering ``data`` in small blocks.

    Raises ConnectionResetError once ``fail_after`` bytes have been sent.
    The transfer's final reply is queued on the control channel when the
    data runs out (226), breaks (426) or is closed early by the client (426).
    """

    def __init__(
        self,
        client: "FakeFTP",
        data: bytes,
        fail_after: Optional[int] = None,
        block_size: int = 5,
    ):
        self.client = client
        self.data = data
        self.position = 0
        self.fail_after = fail_after
        self.block_size = block_size
        self.finished = False
        self.closed = False

    def _finish(self, reply: str) -> None:
        if not self.finished:
            self.finished = True
            self.client.replies.append(reply)

    def recv(self, size: int) -> bytes:
        if self.fail_after is not None and self.position >= self.fail_after:
            self._finish("426 Connection closed; transfer aborted.")
            raise ConnectionResetError("connection reset by peer")
        end = min(self.position + size, self.position + self.block_size, len(self.data))
        if self.fail_after is not None:
            end = min(end, self.fail_after)
        block = self.data[self.position:end]
        self.position = end
        if not block:
            self._finish("226 Transfer complete.")
        return block

    def close(self):
        self._finish("426 Connection closed; transfer aborted.")
        self.closed = True


class FakeFtpServer:
    """Shared state behind every FakeFTP client.

    ``tree`` maps names to bytes (files), dicts (directories) or FakeLink.
    """

    def __init__(self, tree: Optional[Dict[str, Any]] = None, home: str = "/"):
        self.tree: Dict[str, Any] = tree if tree is not None else {}
        self.home = home
        self.mlsd_supported = True
        self.features: Optional[List[str]] = ["MDTM", "SIZE", "UTF8"]
        self.connect_error: Optional[BaseException] = None
        self.login_error: Optional[BaseException] = None
        self.list_error: Optional[BaseException] = None
        # per path: byte counts after which successive transfers break
        self.transfer_failures: Dict[str, List[int]] = {}
        # per path: errors raised by successive RETR commands
        self.open_failures: Dict[str, List[BaseException]] = {}
        self.clients: List["FakeFTP"] = []
        self.retr_offsets: List[tuple] = []
        self.socket_factory = FakeSocket
        self._lock = threading.Lock()

    def add_file(self, path: str, data: bytes) -> None:
        parts = [p for p in path.split("/") if p]
        node = self.tree
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = data

    def node(self, path: str) -> Any:
        node: Any = self.tree
        for part in [p for p in path.split("/") if p]:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def next_failure(self, path: str) -> Optional[int]:
        with self._lock:
            failures = self.transfer_failures.get(path)
            return failures.pop(0) if failures else None

    def next_open_failure(self, path: str) -> Optional[BaseException]:
        with self._lock:
            failures = self.open_failures.get(path)
            return failures.pop(0) if failures else None

    def client(self, config: FtpSourceConfig = None) -> "FakeFTP":
        client = FakeFTP(self)
        with self._lock:
            self.clients.append(client)
        return client

    def session_factory(self, config: FtpSourceConfig):
        return open_session(config, ftp_factory=self.client)


class FakeFTP:
    """Stands in for a connected ftplib.FTP.

    Commands and replies go through one FIFO control channel, as on a real
    connection: every command queues the server's replies and every
    getresp() takes the oldest one, so a reply left unread is answered to
    the next command.
    """

    encoding = "utf-8"

    def __init__(self, server: FakeFtpServer):
        self.server = server
        self.sock: Optional[FakeSocket] = None
        self.timeout: Optional[float] = None
        self.commands: List[str] = []
        self.replies: List[str] = []
        self.cwd_path = server.home
        self.mode_z = False
        self.passive: Optional[bool] = None
        self.connected_to: Optional[tuple] = None
        self.closed = False
        self.quit_called = False
        self._rest: Optional[int] = None
        self._data: Optional[FakeDataConnection] = None
        self._refusal: Optional[BaseException] = None

    def _resolve(self, path: str) -> str:
        return posixpath.normpath(posixpath.join(self.cwd_path, path))

    def connect(self, host="", port=0, timeout=-999, source_address=None):
        self.commands.append(f"CONNECT {host}:{port}")
        if self.server.connect_error is not None:
            raise self.server.connect_error
        self.connected_to = (host, port)
        self.sock = self.server.socket_factory()
        return "220 Fake FTP ready"

    def login(self, user="", passwd="", acct=""):
        self.login_args = (user, passwd)
        self.commands.append(f"USER {user}")
        self.commands.append("PASS ****")
        if self.server.login_error is not None:
            raise self.server.login_error
        return "230 Logged in"

    def auth(self):
        self.commands.append("AUTH TLS")
        return "234 AUTH TLS ok"

    def prot_p(self):
        self.commands.append("PROT P")
        return "200 PROT now Private"

    def set_pasv(self, val):
        self.passive = val

    # control channel

    def putcmd(self, line):
        self.commands.append(line)
        if self.sock is not None:
            self.sock.sendall((line + "\r\n").encode(self.encoding))
        self._handle(line)

    def getmultiline(self):
        if not self.replies:
            raise socket.timeout("timed out waiting for a reply")
        return self.replies.pop(0)

    def getresp(self):
        resp = self.getmultiline()
        code = resp[:1]
        if code in ("1", "2", "3"):
            return resp
        if code == "4":
            raise ftplib.error_temp(resp)
        if code == "5":
            raise ftplib.error_perm(resp)
        raise ftplib.error_proto(resp)

    def voidresp(self):
        resp = self.getresp()
        if resp[:1] != "2":
            raise ftplib.error_reply(resp)
        return resp

    def sendcmd(self, cmd):
        self.putcmd(cmd)
        return self.getresp()

    def voidcmd(self, cmd):
        self.putcmd(cmd)
        return self.voidresp()

    def pwd(self):
        return ftplib.parse257(self.sendcmd("PWD"))

    def cwd(self, path):
        return self.voidcmd(f"CWD {path}")

    def transfercmd(self, cmd, rest=None):
        verb, _, argument = cmd.partition(" ")
        error = None
        if verb == "RETR":
            error = self.server.next_open_failure(self._resolve(argument))
        elif verb in ("MLSD", "LIST") and self.server.list_error is not None:
            error = self.server.list_error
        if error is not None and not isinstance(error, ftplib.Error):
            # the data connection could not be opened; no command was sent
            raise error

        if rest is not None:
            resp = self.sendcmd(f"REST {rest}")
            if resp[:1] != "3":
                raise ftplib.error_reply(resp)
        self._refusal = error
        resp = self.sendcmd(cmd)
        if resp[:1] != "1":
            raise ftplib.error_reply(resp)
        return self._data

    def quit(self):
        self.quit_called = True
        self.commands.append("QUIT")
        return "221 Goodbye"

    def close(self):
        self.closed = True
        self.sock = None

    # server side

    def _handle(self, line):
        verb, _, argument = line.partition(" ")
        verb = verb.upper()
        handler = getattr(self, f"_do_{verb.lower()}", None)
        if handler is None:
            self.replies.append(f"502 {verb} not implemented")
        else:
            handler(argument)

    def _do_type(self, argument):
        self.replies.append(f"200 Type set to {argument}")

    def _do_mode(self, argument):
        if argument.upper() == "Z" and "MODE Z" in (self.server.features or []):
            self.mode_z = True
            self.replies.append("200 MODE Z ok")
        else:
            self.replies.append(f"504 MODE {argument} not implemented")

    def _do_feat(self, argument):
        if self.server.features is None:
            self.replies.append("500 FEAT not understood")
            return
        lines = ["211-Features:"] + [f" {f}" for f in self.server.features] + ["211 End"]
        self.replies.append("\n".join(lines))

    def _do_pwd(self, argument):
        self.replies.append(f'257 "{self.cwd_path}" is the current directory')

    def _do_cwd(self, argument):
        target = self._resolve(argument)
        if not isinstance(self.server.node(target), dict):
            self.replies.append(f"550 {argument}: No such directory")
            return
        self.cwd_path = target
        self.replies.append("250 OK")

    def _do_rest(self, argument):
        self._rest = int(argument)
        self.replies.append(f"350 Restarting at {argument}")

    def _open_data(self, payload: bytes, fail_after: Optional[int] = None) -> None:
        if self.mode_z:
            payload = zlib.compress(payload)
        self._data = FakeDataConnection(self, payload, fail_after=fail_after)
        self.replies.append("150 Opening data connection")

    def _do_retr(self, argument):
        offset, self._rest = self._rest or 0, None
        refusal, self._refusal = self._refusal, None
        if refusal is not None:
            self.replies.append(str(refusal))
            return
        path = self._resolve(argument)
        data = self.server.node(path)
        if not isinstance(data, bytes):
            self.replies.append(f"550 {argument}: No such file")
            return
        self.server.retr_offsets.append((path, offset))
        self._open_data(data[offset:], fail_after=self.server.next_failure(path))

    def _list_refused(self):
        refusal, self._refusal = self._refusal, None
        if refusal is not None:
            self.replies.append(str(refusal))
            return True
        return False

    def _do_mlsd(self, argument):
        if self._list_refused():
            return
        if not self.server.mlsd_supported:
            self.replies.append("500 Unknown command MLSD")
            return
        lines = ["type=cdir; .", "type=pdir; .."]
        for name, node in self.server.node(self.cwd_path).items():
            if isinstance(node, dict):
                lines.append(f"type=dir; {name}")
            elif isinstance(node, FakeLink):
                lines.append(f"type=OS.unix=slink:{node.target}; {name}")
            else:
                lines.append(f"type=file;size={len(node)}; {name}")
        self._open_data("".join(line + "\r\n" for line in lines).encode(self.encoding))

    def _do_list(self, argument):
        if self._list_refused():
            return
        lines = ["total 3"]
        for name, node in self.server.node(self.cwd_path).items():
            if isinstance(node, dict):
                lines.append(f"drwxr-xr-x    2 ftp      ftp          4096 Jan 15 10:30 {name}")
            elif isinstance(node, FakeLink):
                lines.append(
                    f"lrwxrwxrwx    1 ftp      ftp            11 Jan 15 10:30 {name} -> {node.target}"
                )
            else:
                lines.append(f"-rw-r--r--    1 ftp      ftp      {len(node):>8} Jan 15 10:30 {name}")
        self._open_data("".join(line + "\r\n" for line in lines).encode(self.encoding))

    def _do_abor(self, argument):
        data = self._data
        if data is not None and not data.finished:
            data.finished = True
            self.replies.append("426 Transfer aborted")
            self.replies.append("226 ABOR command successful")
        else:
            self.replies.append("225 No transfer to abort")


@pytest.fixture
def ftp_server() -> FakeFtpServer:
    """Server with the sample tree used across discovery tests."""
    return FakeFtpServer(
        {
            "in": {
                "sample_01.csv": b"id,name\n1,alpha\n",
                "sample_02.csv": b"id,name\n2,beta\n",
                "other.csv": b"id,name\n3,gamma\n",
                "sample_dir": {
                    "sample_03.csv": b"id,name\n4,delta\n",
                },
                "sample_link": FakeLink("/in/sample_01.csv"),
            }
        }
    )


@pytest.fixture
def source_config() -> FtpSourceConfig:
    return FtpSourceConfig(
        host="ftp.example.com",
        user="scott",
        password="tiger",
        path_prefix="/in/sample_",
    )


@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path, monkeypatch):
    """Keep watermark files out of the working directory."""
    state_dir = tmp_path / "state"
    monkeypatch.setenv("FTP_INGEST_STATE_DIR", str(state_dir))
    return state_dir
