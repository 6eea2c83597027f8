"""Exception types raised by matrix_sync."""

from __future__ import annotations

from typing import Any


class MatrixError(Exception):
    """Base class for all matrix_sync errors."""


class RetryAfter(MatrixError):
    def __init__(self, retry_after: float, description: str | None = None) -> None:
        super().__init__(description or f"retry after {retry_after}")
        self.retry_after = float(retry_after)
        self.description = description


class MatrixRetryAfter(RetryAfter):
    pass


class MatrixRequestError(MatrixError):
    """A homeserver request finished with a non-2xx status."""

    def __init__(
        self,
        status_code: int,
        *,
        errcode: str | None = None,
        error: str | None = None,
        body: Any = None,
    ) -> None:
        message = f"{status_code} {errcode or 'M_UNKNOWN'}"
        if error:
            message = f"{message}: {error}"
        super().__init__(message)
        self.status_code = status_code
        self.errcode = errcode
        self.error = error
        self.body = body


class PermissionEvaluationError(MatrixError):
    """Raised when a room has no power levels state event to evaluate."""

    def __init__(self, message: str = "No power level event found") -> None:
        super().__init__(message)


class CryptoNotEnabledError(MatrixError):
    def __init__(self, operation: str | None = None) -> None:
        message = "End-to-end encryption has not been enabled"
        if operation:
            message = f"{message} (required by {operation})"
        super().__init__(message)
        self.operation = operation


class RoomUpgradeError(MatrixError):
    """The starting room of an upgrade walk could not be read."""

    def __init__(self, room_id: str, cause: Exception | None = None) -> None:
        super().__init__(f"Unable to read the create event of {room_id}")
        self.room_id = room_id
        self.cause = cause


class InvalidRoomReferenceError(MatrixError):
    def __init__(self, reference: str) -> None:
        super().__init__(f"Invalid room ID or alias: {reference!r}")
        self.reference = reference


class ConfigError(MatrixError):
    pass


def parse_matrix_error(response: dict[str, Any]) -> tuple[str, float | None]:
    """Parse Matrix error response for errcode and retry_after."""
    errcode = response.get("errcode", "")
    retry_after_ms = response.get("retry_after_ms")
    retry_after = retry_after_ms / 1000.0 if retry_after_ms else None
    return errcode, retry_after


class DecryptionError(MatrixError):
    """An encrypted room event could not be decrypted."""

    def __init__(self, event_id: str | None, reason: str | None = None) -> None:
        message = f"Unable to decrypt {event_id or 'event'}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.event_id = event_id
        self.reason = reason
