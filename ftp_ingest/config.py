"""FTP source configuration.

One FtpSourceConfig describes where to connect, which remote files to
select and how to resume from the previous run:

    config = FtpSourceConfig(
        host="ftp.example.com",
        user="scott",
        password="tiger",
        path_prefix="/exports/orders_",
        path_match_pattern=r"\\.csv$",
        last_path="/exports/orders_20250114.csv",
    )
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from ftp_ingest.errors import ConfigurationError

if TYPE_CHECKING:
    from ftp_ingest.listing import FilterSpec

logger = logging.getLogger(__name__)

__all__ = [
    "FTP_DEFAULT_PORT",
    "FTPES_DEFAULT_PORT",
    "FTPS_DEFAULT_PORT",
    "FtpSourceConfig",
    "SecurityMode",
]

FTP_DEFAULT_PORT = 21
FTPES_DEFAULT_PORT = 21
FTPS_DEFAULT_PORT = 990


class SecurityMode(Enum):
    """How the control and data channels are protected."""

    PLAIN = "plain"
    # AUTH TLS on a cleartext control connection
    EXPLICIT = "explicit"
    # TLS from the first byte
    IMPLICIT = "implicit"


_REQUIRED_FIELDS = ("host", "path_prefix")
_BOOL_FIELDS = (
    "incremental",
    "passive_mode",
    "ascii_mode",
    "ssl",
    "ssl_explicit",
    "ssl_verify",
    "stop_when_file_not_found",
)
_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def _coerce_bool(name: str, value: Any) -> bool:
    """Accept real booleans and the strings env expansion leaves behind."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigurationError(
        f"source.{name} must be a boolean", field=name, value=value
    )


@dataclass(frozen=True)
class FtpSourceConfig:
    """Connection, selection and incremental settings for one source."""

    host: str
    path_prefix: str
    last_path: Optional[str] = None
    path_match_pattern: str = ".*"
    incremental: bool = True
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None
    passive_mode: bool = True
    ascii_mode: bool = False
    ssl: bool = False
    ssl_explicit: bool = True
    ssl_verify: bool = True
    ssl_trusted_ca_cert_file: Optional[str] = None
    stop_when_file_not_found: bool = False

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "FtpSourceConfig":
        """Build a config from a plain mapping such as a YAML section.

        Raises:
            ConfigurationError: On unknown or missing keys
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown source option(s): {', '.join(unknown)}",
                field=unknown[0],
                suggestion=f"Valid options: {', '.join(sorted(known))}",
            )

        for name in _REQUIRED_FIELDS:
            if options.get(name) is None:
                raise ConfigurationError(f"source.{name} is required", field=name)

        values = dict(options)
        if values.get("port") is not None:
            try:
                values["port"] = int(values["port"])
            except (TypeError, ValueError):
                raise ConfigurationError(
                    "source.port must be an integer", field="port", value=values["port"]
                )
        for name in _BOOL_FIELDS:
            if name in values:
                values[name] = _coerce_bool(name, values[name])
        if values.get("path_match_pattern") is None:
            values.pop("path_match_pattern", None)
        return cls(**values)

    @property
    def security_mode(self) -> SecurityMode:
        if not self.ssl:
            return SecurityMode.PLAIN
        return SecurityMode.EXPLICIT if self.ssl_explicit else SecurityMode.IMPLICIT

    @property
    def resolved_port(self) -> int:
        """Configured port, or the default for the security mode."""
        if self.port is not None:
            return self.port
        if self.security_mode is SecurityMode.IMPLICIT:
            return FTPS_DEFAULT_PORT
        if self.security_mode is SecurityMode.EXPLICIT:
            return FTPES_DEFAULT_PORT
        return FTP_DEFAULT_PORT

    def filter_spec(self) -> "FilterSpec":
        """Derive the listing filter from path_prefix and path_match_pattern."""
        from ftp_ingest.listing import FilterSpec

        return FilterSpec.from_prefix(
            self.path_prefix,
            self.path_match_pattern,
            self.last_path,
        )

    def with_last_path(self, last_path: Optional[str]) -> "FtpSourceConfig":
        return dataclasses.replace(self, last_path=last_path)

    def validate(self) -> List[str]:
        """Check the configuration without touching the network.

        Returns:
            List of issues (empty if valid)
        """
        issues: List[str] = []

        if not self.host:
            issues.append("host is required")
        if self.port is not None and not 0 < self.port < 65536:
            issues.append(f"port must be between 1 and 65535, got {self.port}")
        try:
            re.compile(self.path_match_pattern or ".*")
        except re.error as exc:
            issues.append(f"path_match_pattern is not a valid regex: {exc}")
        if self.ssl_trusted_ca_cert_file and not self.ssl:
            issues.append("ssl_trusted_ca_cert_file is set but ssl is disabled")

        if self.password is not None and self.user is None:
            logger.warning("password is set without user; no login will be attempted")

        return issues

    def to_dict(self) -> Dict[str, Any]:
        """Options as a dict with the password masked, for logging."""
        data = dataclasses.asdict(self)
        if data.get("password") is not None:
            data["password"] = "****"
        return data
