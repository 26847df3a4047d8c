"""Structured exception hierarchy for FTP ingestion.

Provides specific exception types for each failure mode of a run,
with context for debugging and troubleshooting.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "IngestError",
    "ConnectionError",
    "ConfigurationError",
    "DiscoveryError",
    "TransferError",
    "TransferCancelledError",
]


class IngestError(Exception):
    """Base exception for all ingestion errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if details:
            detail_lines = [f"  {k}: {v}" for k, v in details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "suggestion": self.suggestion,
        }


def _cause_details(details: Dict[str, Any], cause: Optional[BaseException]) -> None:
    if cause is not None:
        details["cause"] = str(cause)
        details["cause_type"] = type(cause).__name__


class ConnectionError(IngestError):
    """Error connecting, configuring or logging in to the server.

    Fatal for the owning discovery pass or work unit; never retried.
    """

    def __init__(
        self,
        message: str,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.host = host
        self.port = port
        self.cause = cause

        details = kwargs.pop("details", {})
        if host:
            details["host"] = host
        if port is not None:
            details["port"] = port
        _cause_details(details, cause)

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Check that the host is reachable, the port matches the TLS "
                "mode and the credentials are correct."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class ConfigurationError(IngestError):
    """User-facing misconfiguration, surfaced verbatim."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class DiscoveryError(IngestError):
    """Listing or traversal failure; aborts the whole discovery pass."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.path = path
        self.cause = cause

        details = kwargs.pop("details", {})
        if path:
            details["path"] = path
        _cause_details(details, cause)

        super().__init__(message, details=details, **kwargs)


class TransferError(IngestError):
    """Failure during an active download.

    Retried only by the resumable reader's reopen loop.
    """

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        offset: Optional[int] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.path = path
        self.offset = offset
        self.cause = cause

        details = kwargs.pop("details", {})
        if path:
            details["path"] = path
        if offset is not None:
            details["offset"] = offset
        _cause_details(details, cause)

        super().__init__(message, details=details, **kwargs)


class TransferCancelledError(IngestError):
    """A retry wait or blocking read was interrupted by the caller.

    Deliberately not a TransferError so that it is never retried.
    """

    def __init__(self, message: str, *, path: Optional[str] = None, **kwargs: Any) -> None:
        self.path = path

        details = kwargs.pop("details", {})
        if path:
            details["path"] = path

        super().__init__(message, details=details, **kwargs)
