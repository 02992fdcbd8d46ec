"""
Structured error types and failure classification for kvbulk.

Every failure that crosses a transaction boundary has to be answered with one
question: can the same logical work be attempted again? This module owns that
answer. Store failures carry a numeric code, the code maps to an
:class:`ErrorClass`, and the executors decide what to do from the class alone.

Manifesto:
    - **Typed error hierarchy:** Store, logic and outcome errors are distinct types
    - **Explicit retry semantics:** Every error knows if it's retryable
    - **Rich context:** Errors carry metadata for logging
    - **Error chaining:** Preserve original exceptions as ``cause``
    - **Unwrapped propagation:** Callers see the root cause, never a wrapper

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                         KvBulkError                              │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  StoreError            InvalidOperationError   ConfigError       │
        │  (code, STORE)         (LOGIC, never retried)  (CONFIG)          │
        │       │                        │                                 │
        │  MaybeCommittedError     ItemTooLargeError                       │
        │  (OUTCOME_UNKNOWN)       (LOGIC)                                 │
        │                                                                  │
        │  OperationCancelled  (asyncio.CancelledError, not an error)      │
        └─────────────────────────────────────────────────────────────────┘

        classify_error(exc) ──► ErrorClass.RETRYABLE
                              ─► ErrorClass.MAYBE_COMMITTED
                              ─► ErrorClass.FATAL

Examples:
    >>> err = StoreError(StoreErrorCode.NOT_COMMITTED)
    >>> classify_error(err)
    <ErrorClass.RETRYABLE: 'retryable'>
    >>> classify_error(ValueError("boom"))
    <ErrorClass.FATAL: 'fatal'>

Guardrails:
    ❌ DON'T: Retry plain exceptions raised by user handlers
    ✅ DO: Let them propagate unchanged

    ❌ DON'T: Silently retry a commit with an unknown outcome
    ✅ DO: Retry only when the caller declared the work idempotent

Tags:
    error-handling, exception-hierarchy, retry-logic, classification, kvbulk

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and logging."""

    STORE = "STORE"                # Failure reported by the storage engine
    OUTCOME_UNKNOWN = "OUTCOME_UNKNOWN"  # Commit may or may not have applied
    LOGIC = "LOGIC"                # Caller bug: invalid argument or operation
    CONFIG = "CONFIG"              # Invalid settings or options
    INTERNAL = "INTERNAL"          # Bugs, unexpected state


class ErrorClass(str, Enum):
    """Tri-state retry classification of a failure."""

    RETRYABLE = "retryable"
    MAYBE_COMMITTED = "maybe_committed"
    FATAL = "fatal"


class StoreErrorCode(IntEnum):
    """Numeric error codes surfaced by the storage engine."""

    PAST_VERSION = 1007
    FUTURE_VERSION = 1009
    NOT_COMMITTED = 1020
    COMMIT_UNKNOWN_RESULT = 1021
    TRANSACTION_CANCELLED = 1025
    TRANSACTION_TIMED_OUT = 1031
    PROCESS_BEHIND = 1037
    TAG_THROTTLED = 1213
    INVALID_OPERATION = 2000
    TRANSACTION_TOO_LARGE = 2101
    KEY_TOO_LARGE = 2102
    VALUE_TOO_LARGE = 2103


_RETRYABLE_CODES = frozenset({
    StoreErrorCode.PAST_VERSION,
    StoreErrorCode.FUTURE_VERSION,
    StoreErrorCode.NOT_COMMITTED,
    StoreErrorCode.TRANSACTION_TIMED_OUT,
    StoreErrorCode.PROCESS_BEHIND,
    StoreErrorCode.TAG_THROTTLED,
})

_MAYBE_COMMITTED_CODES = frozenset({
    StoreErrorCode.COMMIT_UNKNOWN_RESULT,
})

# Failures that mean "this chunk was too big or took too long".
SIZE_OR_DURATION_CODES = frozenset({
    StoreErrorCode.PAST_VERSION,
    StoreErrorCode.TRANSACTION_TIMED_OUT,
    StoreErrorCode.TRANSACTION_TOO_LARGE,
})

_DEFAULT_MESSAGES = {
    StoreErrorCode.PAST_VERSION: "Transaction is too old to perform reads or be committed",
    StoreErrorCode.FUTURE_VERSION: "Request for future version",
    StoreErrorCode.NOT_COMMITTED: "Transaction not committed due to conflict with another transaction",
    StoreErrorCode.COMMIT_UNKNOWN_RESULT: "Transaction may or may not have committed",
    StoreErrorCode.TRANSACTION_CANCELLED: "Operation aborted because the transaction was cancelled",
    StoreErrorCode.TRANSACTION_TIMED_OUT: "Operation aborted because the transaction timed out",
    StoreErrorCode.PROCESS_BEHIND: "Storage process does not have recent mutations",
    StoreErrorCode.TAG_THROTTLED: "Transaction tag is being throttled",
    StoreErrorCode.INVALID_OPERATION: "Invalid API call",
    StoreErrorCode.TRANSACTION_TOO_LARGE: "Transaction exceeds byte limit",
    StoreErrorCode.KEY_TOO_LARGE: "Key length exceeds limit",
    StoreErrorCode.VALUE_TOO_LARGE: "Value length exceeds limit",
}


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging.

    Attributes:
        operation: Bulk operation name (``write``, ``export``...)
        generation: Generation ordinal when the error happened
        position: Cursor position when the error happened
        step: Step size of the failing chunk
        transaction_id: Identity of the transaction involved
        metadata: Additional key-value pairs
    """

    operation: str | None = None
    generation: int | None = None
    position: int | None = None
    step: int | None = None
    transaction_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation", "generation", "position", "step", "transaction_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class KvBulkError(Exception):
    """
    Base exception for all kvbulk errors.

    Carries a category, a retryable flag, structured context and an optional
    chained cause. Subclasses set ``default_category`` and ``default_retryable``.

    Examples:
        >>> error = KvBulkError("Something went wrong")
        >>> error.retryable
        False
        >>> error.with_context(operation="write", position=40).context.position
        40
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> KvBulkError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class StoreError(KvBulkError):
    """Failure reported by the storage engine, identified by a numeric code.

    Instances compare on code rather than identity in tests, and
    ``retryable`` reflects :func:`classify_error`.
    """

    default_category = ErrorCategory.STORE

    def __init__(self, code: int, message: str | None = None, **kwargs: Any):
        try:
            code = StoreErrorCode(code)
        except ValueError:
            pass
        self.code = code
        if message is None:
            message = _DEFAULT_MESSAGES.get(code, f"Store error {int(code)}")
        kwargs.setdefault(
            "retryable", code in _RETRYABLE_CODES or code in _MAYBE_COMMITTED_CODES
        )
        super().__init__(message, **kwargs)

    @property
    def name(self) -> str:
        return self.code.name if isinstance(self.code, StoreErrorCode) else str(self.code)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["code"] = int(self.code)
        return result

    def __repr__(self) -> str:
        return f"StoreError({self.name}, {self.message!r})"


class InvalidOperationError(KvBulkError):
    """Caller bug: the operation is not allowed in the current state.

    Raised for writes through a read-only transaction and for mutations of an
    already committed transaction. Never retried.
    """

    default_category = ErrorCategory.LOGIC


class ItemTooLargeError(InvalidOperationError):
    """A single item exceeds what one transaction can hold."""


class ConfigError(KvBulkError):
    """Invalid settings or bulk options."""

    default_category = ErrorCategory.CONFIG


class MaybeCommittedError(KvBulkError):
    """A commit outcome is unknown and the work was not declared idempotent.

    Retrying could apply the effects twice, so the executor stops and lets
    the caller decide. The store error is available as ``cause``.
    """

    default_category = ErrorCategory.OUTCOME_UNKNOWN

    def __init__(self, message: str = "Commit outcome unknown for non-idempotent work", **kwargs: Any):
        super().__init__(message, **kwargs)


class OperationCancelled(asyncio.CancelledError):
    """The cancellation signal fired before the operation completed.

    Derives from :class:`asyncio.CancelledError` so that a task running the
    operation ends in the cancelled state. ``partial`` holds whatever the
    operation had committed (a count or a fold state) and ``position`` the
    cursor at the time of cancellation.
    """

    def __init__(self, message: str = "Operation was cancelled", *, partial: Any = None, position: int = 0):
        super().__init__(message)
        self.partial = partial
        self.position = position


def unwrap_error(error: BaseException) -> BaseException:
    """Strip exception groups that hold exactly one exception."""
    while isinstance(error, BaseExceptionGroup) and len(error.exceptions) == 1:
        error = error.exceptions[0]
    return error


def classify_error(error: BaseException) -> ErrorClass:
    """Classify a failure into :class:`ErrorClass`.

    Only :class:`StoreError` can be retryable. Everything else, including
    :class:`InvalidOperationError` and user exceptions, is fatal.
    ``TRANSACTION_TOO_LARGE`` is fatal as well: the same work always fails
    again, only a caller that shrinks the chunk can recover from it.
    """
    error = unwrap_error(error)
    if not isinstance(error, StoreError):
        return ErrorClass.FATAL
    if error.code in _MAYBE_COMMITTED_CODES:
        return ErrorClass.MAYBE_COMMITTED
    if error.code in _RETRYABLE_CODES:
        return ErrorClass.RETRYABLE
    return ErrorClass.FATAL


def is_size_or_duration_error(error: BaseException) -> bool:
    """True if the failure means the chunk was too large or too slow."""
    error = unwrap_error(error)
    return isinstance(error, StoreError) and error.code in SIZE_OR_DURATION_CODES


__all__ = [
    "ConfigError",
    "ErrorCategory",
    "ErrorClass",
    "ErrorContext",
    "InvalidOperationError",
    "ItemTooLargeError",
    "KvBulkError",
    "MaybeCommittedError",
    "OperationCancelled",
    "SIZE_OR_DURATION_CODES",
    "StoreError",
    "StoreErrorCode",
    "classify_error",
    "is_size_or_duration_error",
    "unwrap_error",
]
