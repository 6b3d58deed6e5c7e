"""Engine error taxonomy.

Every failure the engine layer surfaces is an :class:`EngineError` carrying a
stable ``code`` and the HTTP-ish ``status_code`` the HTTP surface reports.
Engine responses are mapped through :func:`error_from_status`.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class EngineError(Exception):
    """Base class for everything raised by the engine and session layers."""

    code = "UNKNOWN_ERROR"
    status_code: int | None = None

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(EngineError):
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(EngineError):
    code = "AUTH_ERROR"
    status_code = 401


class AccessDeniedError(EngineError):
    code = "PERMISSION_ERROR"
    status_code = 403


class NotFoundError(EngineError):
    """Unknown container or exec id. Never retried."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class ConflictError(EngineError):
    code = "CONFLICT"
    status_code = 409


class EngineTimeoutError(EngineError):
    code = "TIMEOUT"
    status_code = 408

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"Operation '{operation}' timed out after {timeout}s")
        self.operation = operation
        self.timeout = timeout


class EngineIOError(EngineError):
    code = "IO_ERROR"
    status_code = 500


class StreamError(EngineError):
    code = "STREAM_ERROR"
    status_code = 500


class ProtocolError(EngineError):
    """The engine answered with something that isn't HTTP we understand."""

    code = "PROTOCOL_ERROR"
    status_code = 502


class NetworkError(EngineError):
    code = "NETWORK_ERROR"
    status_code = 503


class ShellNotFoundError(EngineError):
    code = "SHELL_NOT_FOUND"
    status_code = 404

    def __init__(self, container_id: str, tried: Sequence[str]) -> None:
        super().__init__(
            f"No compatible shell found in container {container_id} "
            f"(tried: {', '.join(tried)})"
        )
        self.container_id = container_id
        self.tried = list(tried)


def error_from_status(
    status: int,
    message: str,
    *,
    resource: str = "Resource",
    identifier: str | None = None,
) -> EngineError:
    """Map an engine HTTP status to the matching :class:`EngineError`."""
    match status:
        case 400:
            return ValidationError(message, details={"status": status})
        case 401:
            return AuthenticationError(message, details={"status": status})
        case 403:
            return AccessDeniedError(message, details={"status": status})
        case 404:
            return NotFoundError(resource, identifier or message)
        case 408:
            return EngineTimeoutError(resource, 0)
        case 409:
            return ConflictError(message, details={"status": status})
        case 500 | 501 | 502 | 503:
            return EngineIOError(message, status_code=status, details={"status": status})
        case _:
            return EngineError(message, status_code=status, details={"status": status})
