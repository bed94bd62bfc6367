"""
Engine Error Taxonomy

Every rejected engine operation raises an EngineError carrying one of the
ErrorKind values below. Callers (request layer, background jobs) branch on
``error.kind`` rather than on message text.

Categories:
- Validation: InvalidKeyFormat, InvalidArgument
- Conflict: StreamExists, InvalidState
- Authorization: Unauthorized
- Resource: InsufficientStake, InsufficientBalance, NotFound
- Collaborator: CollaboratorFailure (tunnel or ledger call failed / timed out)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(Enum):
    """Enumerated error kinds surfaced by the engine."""

    INVALID_KEY_FORMAT = "InvalidKeyFormat"
    INVALID_ARGUMENT = "InvalidArgument"
    INSUFFICIENT_STAKE = "InsufficientStake"
    STREAM_EXISTS = "StreamExists"
    UNAUTHORIZED = "Unauthorized"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    NOT_FOUND = "NotFound"
    INVALID_STATE = "InvalidState"
    COLLABORATOR_FAILURE = "CollaboratorFailure"


class EngineError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.INVALID_ARGUMENT

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the request layer."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": dict(self.context),
        }


class InvalidKeyFormat(EngineError):
    kind = ErrorKind.INVALID_KEY_FORMAT


class InvalidArgument(EngineError):
    kind = ErrorKind.INVALID_ARGUMENT


class InsufficientStake(EngineError):
    kind = ErrorKind.INSUFFICIENT_STAKE


class StreamExists(EngineError):
    kind = ErrorKind.STREAM_EXISTS


class Unauthorized(EngineError):
    kind = ErrorKind.UNAUTHORIZED


class InsufficientBalance(EngineError):
    """Raised when custody or stream availability cannot cover a request.

    ``context`` carries ``available`` (and ``requested``) so callers can
    report the remaining balance.
    """

    kind = ErrorKind.INSUFFICIENT_BALANCE


class NotFound(EngineError):
    kind = ErrorKind.NOT_FOUND


class InvalidState(EngineError):
    kind = ErrorKind.INVALID_STATE


class CollaboratorFailure(EngineError):
    """A tunnel-control or ledger-connector call failed or timed out."""

    kind = ErrorKind.COLLABORATOR_FAILURE


@dataclass
class OperationResult(Generic[T]):
    """
    Explicit result of an engine operation.

    Exactly one of ``value`` / ``error`` is meaningful, selected by ``ok``.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[EngineError] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        """Return the value or re-raise the captured error."""
        if not self.ok:
            raise self.error
        return self.value


def run_operation(func: Callable[..., T], *args: Any, **kwargs: Any) -> OperationResult[T]:
    """
    Invoke an engine operation and capture EngineError as a failed result.

    Non-engine exceptions are programming errors and propagate unchanged.
    """
    try:
        return OperationResult(ok=True, value=func(*args, **kwargs))
    except EngineError as e:
        logger.debug(f"Operation {getattr(func, '__name__', func)} rejected: {e.kind.value}: {e}")
        return OperationResult(ok=False, error=e)


async def run_operation_async(func: Callable[..., Any], *args: Any, **kwargs: Any) -> OperationResult:
    """Async counterpart of :func:`run_operation`."""
    try:
        return OperationResult(ok=True, value=await func(*args, **kwargs))
    except EngineError as e:
        logger.debug(f"Operation {getattr(func, '__name__', func)} rejected: {e.kind.value}: {e}")
        return OperationResult(ok=False, error=e)
