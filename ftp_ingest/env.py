"""Credentials and hosts from the environment.

Job files reference variables as ``${FTP_PASSWORD}`` or ``$FTP_PASSWORD``.
A reference to an unset variable is a configuration error naming the
field it appears in, so a job never connects with a literal ``${...}``
as its password. python-dotenv loads ``.env`` files.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import find_dotenv, load_dotenv

from ftp_ingest.errors import ConfigurationError

__all__ = ["expand_env_vars", "expand_options", "load_env_file"]

_REFERENCE = re.compile(r"\$\{(?P<braced>[^}]+)\}|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)")


def load_env_file(path: Optional[Union[str, Path]] = None, *, override: bool = False) -> bool:
    """Load a ``.env`` file into ``os.environ``.

    With no ``path`` the nearest ``.env`` above the working directory is
    used, if there is one. An explicit ``path`` must exist.

    Returns:
        True if a file was read
    """
    if path is None:
        found = find_dotenv(usecwd=True)
        return bool(found) and load_dotenv(found, override=override)

    env_path = Path(path)
    if not env_path.is_file():
        raise ConfigurationError(
            f"Environment file not found: {env_path}",
            field="env_file",
            value=env_path,
            suggestion="Check the --env-file path",
        )
    return load_dotenv(env_path, override=override)


def expand_env_vars(value: str, *, strict: bool = False, field: Optional[str] = None) -> str:
    """Substitute environment variable references in ``value``.

    Unset variables are left as written unless ``strict`` is set, in which
    case a ConfigurationError for ``field`` is raised.

    Example:
        >>> os.environ["FTP_HOST"] = "ftp.example.com"
        >>> expand_env_vars("${FTP_HOST}:21")
        'ftp.example.com:21'
    """

    def substitute(match: "re.Match[str]") -> str:
        name = match.group("braced") or match.group("bare")
        if name in os.environ:
            return os.environ[name]
        if strict:
            raise ConfigurationError(
                f"Environment variable {name} is not set",
                field=field,
                suggestion=f"Export {name} or load it with --env-file",
            )
        return match.group(0)

    return _REFERENCE.sub(substitute, value)


def expand_options(
    options: Dict[str, Any], *, strict: bool = False, prefix: str = ""
) -> Dict[str, Any]:
    """Expand references in every string of a nested options mapping.

    ``prefix`` is the dotted path of ``options`` itself and is used to
    name the offending field, e.g. ``source.password``.
    """
    return {
        key: _expand_value(value, strict, f"{prefix}{key}")
        for key, value in options.items()
    }


def _expand_value(value: Any, strict: bool, field: str) -> Any:
    if isinstance(value, str):
        return expand_env_vars(value, strict=strict, field=field)
    if isinstance(value, dict):
        return expand_options(value, strict=strict, prefix=f"{field}.")
    if isinstance(value, list):
        expanded: List[Any] = [
            _expand_value(item, strict, f"{field}[{index}]") for index, item in enumerate(value)
        ]
        return expanded
    return value
