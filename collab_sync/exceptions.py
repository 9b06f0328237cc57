"""
Custom exceptions for the collaborative sync client.

Transport failures are split by whether the server answered at all,
since the polling backend classifies errors on exactly that distinction.
"""

from typing import Any


class CollabSyncError(Exception):
    """Base exception for all collaborative sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SessionRequestError(CollabSyncError):
    """Base for failures of a request against the session endpoint."""

    def __init__(self, message: str, endpoint: str, details: dict | None = None):
        details = dict(details or {})
        details["endpoint"] = endpoint
        super().__init__(message, details)
        self.endpoint = endpoint


class SessionApiError(SessionRequestError):
    """Raised when the session endpoint answers with a non-2xx status.

    ``data`` holds the decoded JSON body, which for some statuses carries
    recovery information (``document.currentVersion`` on 403,
    ``outsideChange`` on 409).
    """

    def __init__(self, endpoint: str, status: int, data: dict[str, Any] | None = None):
        super().__init__(
            f"Request to {endpoint} failed with status {status}",
            endpoint,
            {"status": status},
        )
        self.status = status
        self.data = data if data is not None else {}


class SessionConnectionError(SessionRequestError):
    """Raised when no response was received from the session endpoint.

    ``aborted`` is set when the request was cut off by the client timeout
    rather than failing at the network level.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None, aborted: bool = False):
        details: dict[str, Any] = {"aborted": aborted}
        if cause:
            details["cause"] = str(cause)
        reason = "aborted" if aborted else "no response"
        super().__init__(f"Connection to {endpoint} failed ({reason})", endpoint, details)
        self.cause = cause
        self.aborted = aborted


class InvalidResponseError(SessionRequestError):
    """Raised when a successful response cannot be decoded into the expected shape."""

    def __init__(self, endpoint: str, reason: str):
        super().__init__(f"Invalid response from {endpoint}: {reason}", endpoint, {"reason": reason})
        self.reason = reason


class ConnectionClosedError(CollabSyncError):
    """Raised when an operation is attempted on a closed connection."""

    def __init__(self, operation: str):
        super().__init__(f"Cannot {operation}: connection is closed", {"operation": operation})
        self.operation = operation


class ConfigurationError(CollabSyncError):
    """Raised when configuration values are missing or invalid."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid configuration for {field}: {reason}", {"field": field, "reason": reason})
        self.field = field
        self.reason = reason
