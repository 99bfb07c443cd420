from __future__ import annotations

from collections.abc import Sequence
from enum import Enum

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError as TransportError


class ErrorKind(str, Enum):
    INVALID_OBJECT = "invalid_object"
    CONFLICT = "conflict"
    TRANSIENT_API = "transient_api"
    PERMANENT_API = "permanent_api"
    AGGREGATE_ACTION = "aggregate_action"


class ReconcileError(Exception):
    """Base class for every failure the dispatcher reports to the worker loop.

    Workers decide between retry and give-up from ``kind`` and ``retryable``
    alone; the message is for humans only.
    """

    kind: ErrorKind = ErrorKind.TRANSIENT_API
    retryable: bool = True

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class InvalidObjectError(ReconcileError):
    """The resource payload is malformed (missing namespace/name, bad key)."""

    kind = ErrorKind.INVALID_OBJECT
    retryable = False


class ConflictError(ReconcileError):
    """The resource a create call targets already exists."""

    kind = ErrorKind.CONFLICT
    retryable = False


class TransientAPIError(ReconcileError):
    """Network failure, timeout, throttling or server-side error."""

    kind = ErrorKind.TRANSIENT_API
    retryable = True


class PermanentAPIError(ReconcileError):
    """Authorization, validation or schema failure that a retry cannot fix."""

    kind = ErrorKind.PERMANENT_API
    retryable = False


class AggregateActionError(ReconcileError):
    """Every sub-action of a multi-target reconcile failed.

    Retryable when at least one of the underlying failures is.
    """

    kind = ErrorKind.AGGREGATE_ACTION

    def __init__(self, message: str, errors: Sequence[ReconcileError]) -> None:
        super().__init__(message)
        self.errors = tuple(errors)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return any(error.retryable for error in self.errors)


# Statuses a later attempt can succeed on.
_TRANSIENT_STATUSES = frozenset({408, 409, 425, 429})


def classify_api_exception(
    exc: ApiException, action: str, *, conflict_means_exists: bool = False
) -> ReconcileError:
    """Map a Kubernetes ``ApiException`` onto the failure taxonomy by HTTP status.

    ``status`` is 0 or ``None`` when the client never got a response, which
    is treated like a dropped connection.  A ``409`` only means "already
    exists" for create calls (*conflict_means_exists*); on a patch or read
    it is a write conflict and is retried.
    """
    status = exc.status or 0
    message = f"{action} failed with status {status}: {exc.reason}"
    if status == 409 and conflict_means_exists:
        return ConflictError(message, status=status)
    if status == 0 or status in _TRANSIENT_STATUSES or status >= 500:
        return TransientAPIError(message, status=status)
    return PermanentAPIError(message, status=status)


def classify_error(
    exc: BaseException, action: str = "reconcile", *, conflict_means_exists: bool = False
) -> ReconcileError:
    """Return the taxonomy member for any exception raised during a reconcile."""
    if isinstance(exc, ReconcileError):
        return exc
    if isinstance(exc, ApiException):
        return classify_api_exception(exc, action, conflict_means_exists=conflict_means_exists)
    if isinstance(exc, (TransportError, TimeoutError, ConnectionError)):
        return TransientAPIError(f"{action} failed: {type(exc).__name__}: {exc}")
    return TransientAPIError(f"{action} failed unexpectedly: {type(exc).__name__}: {exc}")
