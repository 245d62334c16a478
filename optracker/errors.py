"""
Error taxonomy shared by the operations server and its clients.

Codes follow the canonical RPC status numbering so that a failure recorded on
an operation, an error envelope returned over HTTP and an exception raised by
the poller all speak the same language.
"""

from enum import IntEnum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from optracker.models.operation import ErrorStatus


class StatusCode(IntEnum):
    """Canonical RPC status codes"""
    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class TrackerError(Exception):
    """Base class for every error raised by the tracker and its clients."""

    code: StatusCode = StatusCode.UNKNOWN
    http_status: int = 500
    retryable: bool = False
    hint: str = "Check server logs for details"

    def __init__(self, message: str = "", operation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation_id = operation_id


class NotFound(TrackerError):
    code = StatusCode.NOT_FOUND
    http_status = 404
    hint = "The operation id is unknown or the operation was deleted"


class AlreadyExists(TrackerError):
    code = StatusCode.ALREADY_EXISTS
    http_status = 409
    hint = "Operation ids are never reused"


class InvalidArgument(TrackerError):
    code = StatusCode.INVALID_ARGUMENT
    http_status = 400
    hint = "Check the request parameters and try again"


class InvalidTransition(TrackerError):
    """An illegal state change was attempted on an operation.

    Always a bug in the worker driving the operation; never retried.
    """
    code = StatusCode.FAILED_PRECONDITION
    http_status = 409
    hint = "The operation already reached a different terminal state"


class FailedPrecondition(TrackerError):
    code = StatusCode.FAILED_PRECONDITION
    http_status = 409
    hint = "Cancel the operation before deleting it"


class DeadlineExceeded(TrackerError):
    """The poller gave up waiting. The operation may still be running."""
    code = StatusCode.DEADLINE_EXCEEDED
    http_status = 504
    retryable = True
    hint = "Poll again with a fresh deadline using the same operation id"


class Cancelled(TrackerError):
    """The operation ended because cancellation won the race."""
    code = StatusCode.CANCELLED
    http_status = 499
    hint = "The operation was cancelled before it finished"


class PollingAborted(TrackerError):
    """The caller stopped polling before the operation finished."""
    code = StatusCode.CANCELLED
    http_status = 499
    retryable = True


class OperationFailed(TrackerError):
    """Terminal FAILED outcome observed by a poller.

    The error payload recorded by the worker is carried verbatim on ``error``.
    """

    def __init__(self, error: "ErrorStatus", operation_id: Optional[str] = None):
        super().__init__(error.message, operation_id=operation_id)
        self.error = error

    @property
    def code(self) -> int:  # type: ignore[override]
        return self.error.code

    @property
    def details(self):
        return self.error.details


_BY_HTTP_STATUS = {
    400: InvalidArgument,
    404: NotFound,
    499: Cancelled,
    504: DeadlineExceeded,
}


def error_from_envelope(status_code: int, body: dict) -> TrackerError:
    """Rebuild a TrackerError from the HTTP error envelope returned by the server."""
    message = str(body.get("message", "")) if isinstance(body, dict) else ""
    rpc_code = body.get("rpc_code") if isinstance(body, dict) else None

    if rpc_code == StatusCode.ALREADY_EXISTS:
        return AlreadyExists(message)
    if status_code == 409:
        # Both map to FAILED_PRECONDITION; the error name disambiguates.
        if isinstance(body, dict) and body.get("error") == "InvalidTransition":
            return InvalidTransition(message)
        return FailedPrecondition(message)

    cls = _BY_HTTP_STATUS.get(status_code)
    if cls is not None:
        return cls(message)
    err = TrackerError(message or f"HTTP {status_code}")
    err.http_status = status_code
    err.retryable = status_code >= 500
    return err
