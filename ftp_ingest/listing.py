"""Remote tree discovery.

Walks the server's directory tree under a configured prefix and returns
the files to ingest, in listing (depth-first) order. Three filters apply:

- the file name prefix (last component of ``path_prefix``), checked on
  the entries of the starting directory
- the watermark: a file is kept only if its path sorts strictly after
  the previous run's ``last_path``
- ``path_match_pattern``, searched anywhere in the file path

Directories are always entered, whatever their name and wherever they
sort relative to the watermark; both filters gate files only. Links are
neither followed nor selected.
"""

from __future__ import annotations

import ftplib
import itertools
import logging
import posixpath
import re
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from ftp_ingest.config import FtpSourceConfig
from ftp_ingest.errors import ConfigurationError, DiscoveryError
from ftp_ingest.session import FtpSession, close_session, open_session

logger = logging.getLogger(__name__)

__all__ = [
    "EntryKind",
    "FilterSpec",
    "RemoteEntry",
    "compile_path_pattern",
    "discover_files",
    "list_entries",
    "list_files",
    "parse_list_line",
    "parse_mlsd_line",
    "split_path_prefix",
]

MATCH_ALL = ".*"

# MLSD is refused with one of these when the server does not implement it
_MLSD_UNSUPPORTED_CODES = ("500", "501", "502", "504")

_UNIX_LIST_RE = re.compile(
    r"^(?P<type>[-dlbcps])\S{9,}\s+.*?\s"
    r"[A-Za-z]{3}\s+\d{1,2}\s+(?:\d{1,2}:\d{2}|\d{4})\s(?P<name>.+)$"
)
_DOS_LIST_RE = re.compile(
    r"^\d{2}-\d{2}-\d{2,4}\s+\d{1,2}:\d{2}(?:[AP]M)?\s+(?P<size><DIR>|\d+)\s+(?P<name>.+)$",
    re.IGNORECASE,
)


class EntryKind(Enum):
    FILE = "file"
    DIRECTORY = "directory"
    LINK = "link"


def _join(parent: str, name: str) -> str:
    if not parent.endswith("/"):
        parent = parent + "/"
    return parent + name


@dataclass(frozen=True)
class RemoteEntry:
    """One row of a directory listing."""

    name: str
    kind: EntryKind
    parent_path: str

    @property
    def path(self) -> str:
        return _join(self.parent_path, self.name)


def split_path_prefix(prefix: str) -> Tuple[str, str]:
    """Split ``path_prefix`` into (directory, file name prefix).

    The directory keeps its trailing slash and is empty when the prefix
    has no slash at all.

    Example:
        >>> split_path_prefix("in/sample_")
        ('in/', 'sample_')
        >>> split_path_prefix("sample_")
        ('', 'sample_')
    """
    pos = prefix.rfind("/")
    if pos < 0:
        return "", prefix
    return prefix[: pos + 1], prefix[pos + 1 :]


def compile_path_pattern(pattern: Optional[str]) -> Pattern[str]:
    """Compile ``path_match_pattern``; empty or blank means match everything.

    Raises:
        ConfigurationError: If the pattern is not a valid regex
    """
    if pattern is None or not pattern.strip():
        pattern = MATCH_ALL
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(
            f"Invalid path_match_pattern: {exc}", field="path_match_pattern", value=pattern
        ) from exc


@dataclass(frozen=True)
class FilterSpec:
    """Selection criteria for one discovery pass."""

    directory: str
    file_name_prefix: str
    content_pattern: Pattern[str]
    watermark: Optional[str] = None

    @classmethod
    def from_prefix(
        cls,
        path_prefix: str,
        path_match_pattern: Optional[str] = MATCH_ALL,
        watermark: Optional[str] = None,
    ) -> "FilterSpec":
        directory, file_name_prefix = split_path_prefix(path_prefix)
        return cls(
            directory=directory,
            file_name_prefix=file_name_prefix,
            content_pattern=compile_path_pattern(path_match_pattern),
            watermark=watermark,
        )

    def after_watermark(self, path: str) -> bool:
        return self.watermark is None or path > self.watermark

    def selects(self, path: str) -> bool:
        """File-level decision: strictly past the watermark and matching."""
        return self.after_watermark(path) and self.content_pattern.search(path) is not None


def parse_list_line(line: str, parent_path: str) -> Optional[RemoteEntry]:
    """Parse one line of a LIST response (Unix or MS-DOS style).

    Returns None for lines that do not describe an entry, for the ``.``
    and ``..`` pseudo entries, and for device, socket and pipe entries.
    """
    line = line.rstrip("\r\n")
    if not line or line.lower().startswith("total "):
        return None

    match = _UNIX_LIST_RE.match(line)
    if match:
        type_char = match.group("type")
        name = match.group("name")
        if type_char == "d":
            kind = EntryKind.DIRECTORY
        elif type_char == "l":
            kind = EntryKind.LINK
            name = name.split(" -> ", 1)[0]
        elif type_char == "-":
            kind = EntryKind.FILE
        else:
            return None
    else:
        match = _DOS_LIST_RE.match(line)
        if not match:
            logger.debug("Unparseable LIST line: %r", line)
            return None
        name = match.group("name")
        is_dir = match.group("size").upper() == "<DIR>"
        kind = EntryKind.DIRECTORY if is_dir else EntryKind.FILE

    if name in (".", ".."):
        return None
    return RemoteEntry(name=name, kind=kind, parent_path=parent_path)


def _kind_from_facts(facts: dict) -> Optional[EntryKind]:
    entry_type = facts.get("type", "").lower()
    if entry_type == "file":
        return EntryKind.FILE
    if entry_type == "dir":
        return EntryKind.DIRECTORY
    if "slink" in entry_type or "symlink" in entry_type:
        return EntryKind.LINK
    # cdir, pdir, and anything exotic
    return None


def parse_mlsd_line(line: str) -> Tuple[str, Dict[str, str]]:
    """Split one MLSD line into the entry name and its lower-cased facts.

    Example:
        >>> parse_mlsd_line("type=file;size=17; orders_01.csv")
        ('orders_01.csv', {'type': 'file', 'size': '17'})
    """
    facts_part, _, name = line.partition(" ")
    facts: Dict[str, str] = {}
    for fact in facts_part.rstrip(";").split(";"):
        key, _, value = fact.partition("=")
        if key:
            facts[key.lower()] = value
    return name, facts


def _list_with_mlsd(session: FtpSession, parent_path: str) -> Optional[List[RemoteEntry]]:
    try:
        lines = session.listing_lines("MLSD")
    except ftplib.error_perm as exc:
        if str(exc)[:3] not in _MLSD_UNSUPPORTED_CODES:
            raise
        logger.info("Server does not support MLSD, falling back to LIST")
        session.mlsd_supported = False
        return None
    session.mlsd_supported = True

    entries = []
    for line in lines:
        if not line.strip():
            continue
        name, facts = parse_mlsd_line(line)
        kind = _kind_from_facts(facts)
        if kind is not None and name not in (".", ".."):
            entries.append(RemoteEntry(name=name, kind=kind, parent_path=parent_path))
    return entries


def list_entries(session: FtpSession, parent_path: str) -> List[RemoteEntry]:
    """List the session's current directory.

    Prefers MLSD for its machine-readable entry types and falls back to
    LIST once the server has refused MLSD.
    """
    if session.mlsd_supported is not False:
        entries = _list_with_mlsd(session, parent_path)
        if entries is not None:
            return entries

    parsed = (parse_list_line(line, parent_path) for line in session.listing_lines("LIST"))
    return [entry for entry in parsed if entry is not None]


def _select(
    session: FtpSession,
    entry: RemoteEntry,
    server_parent: str,
    spec: FilterSpec,
) -> Tuple[str, ...]:
    path = entry.path

    if entry.kind is EntryKind.FILE:
        return (path,) if spec.selects(path) else ()

    if entry.kind is EntryKind.DIRECTORY:
        server_dir = posixpath.join(server_parent, entry.name)
        session.client.cwd(server_dir)
        children = list_entries(session, path)
        selected = tuple(
            itertools.chain.from_iterable(
                _select(session, child, server_dir, spec) for child in children
            )
        )
        session.client.cwd(server_parent)
        return selected

    logger.debug("Skipping link %s", path)
    return ()


def list_files(session: FtpSession, spec: FilterSpec) -> Tuple[str, ...]:
    """Recursively list the files selected by ``spec``.

    Returns:
        Selected file paths in depth-first listing order

    Raises:
        DiscoveryError: On any listing or protocol failure; no partial
            selection is returned
    """
    client = session.client
    try:
        base = client.pwd()
        logger.info(
            "Listing ftp files at directory '%s' filtering filename by prefix '%s'",
            spec.directory or base,
            spec.file_name_prefix,
        )

        if spec.directory:
            client.cwd(spec.directory)
            base = spec.directory
        server_root = client.pwd()

        entries = [
            entry
            for entry in list_entries(session, base)
            if entry.name.startswith(spec.file_name_prefix)
        ]
        return tuple(
            itertools.chain.from_iterable(
                _select(session, entry, server_root, spec) for entry in entries
            )
        )
    except ftplib.error_perm as exc:
        logger.info("FTP command failed: %s", exc)
        raise DiscoveryError(
            f"FTP command failed while listing files: {exc}",
            path=spec.directory or None,
            cause=exc,
        ) from exc
    except ftplib.all_errors as exc:
        logger.info("FTP listing files failed: %s", exc)
        raise DiscoveryError(
            f"Listing files failed: {exc}",
            path=spec.directory or None,
            cause=exc,
        ) from exc
    except (UnicodeDecodeError, zlib.error) as exc:
        logger.info("Unreadable listing data: %s", exc)
        raise DiscoveryError(
            f"Listing data could not be decoded: {exc}",
            path=spec.directory or None,
            cause=exc,
        ) from exc


def discover_files(
    config: FtpSourceConfig,
    *,
    session_factory: Optional[Callable[[FtpSourceConfig], FtpSession]] = None,
) -> Tuple[str, ...]:
    """Open a session, run one discovery pass and close the session.

    Raises:
        ConnectionError: If the session cannot be opened
        DiscoveryError: If listing fails
        ConfigurationError: If nothing was found and
            ``stop_when_file_not_found`` is set
    """
    spec = config.filter_spec()
    session = (session_factory or open_session)(config)
    try:
        files = list_files(session, spec)
    finally:
        close_session(session)

    if not files and config.stop_when_file_not_found:
        raise ConfigurationError(
            'No file is found. "stop_when_file_not_found" option is "true".',
            field="stop_when_file_not_found",
            value=True,
        )
    return files
