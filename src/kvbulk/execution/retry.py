"""Retryable transaction executor with classified retries and exponential backoff.

Runs a unit of work against one logical transaction. Store failures are
classified; retryable ones reset the transaction and run the unit again on
the *same* transaction object, so the identity and the retry counter seen by
the handler stay correlated across attempts.

Example:
    >>> from kvbulk.execution.retry import TransactionRunner, RetryPolicy
    >>>
    >>> runner = TransactionRunner(RetryPolicy())
    >>> async def handler(tr, ctx):
    ...     tr.set(b"k", b"v")
    ...     return ctx.retries
    >>> retries = await runner.run(db, handler)

Rules, in order of precedence:
    1. Cancelled before the first attempt: raise ``OperationCancelled``, no
       transaction is opened and the handler is never called.
    2. Plain exceptions from the handler propagate unchanged.
    3. Fatal store errors propagate unchanged (exception groups holding a
       single error are unwrapped first).
    4. Codes listed in ``escalate`` propagate to the caller immediately.
    5. Commit-unknown-result is retried only for read-only or idempotent
       work, otherwise it becomes ``MaybeCommittedError``.
    6. Retryable errors are retried until the policy's budget runs out, then
       the last store error is raised as is.
    7. Cancellation observed after the handler returns prevents the commit;
       the attempt is abandoned and ``OperationCancelled`` is raised.
"""

from __future__ import annotations

import functools
import inspect
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from typing import Any, TypeVar

from kvbulk.core.cancellation import CancellationToken, ensure_token
from kvbulk.core.errors import (
    ErrorClass,
    MaybeCommittedError,
    StoreError,
    classify_error,
    unwrap_error,
)
from kvbulk.core.logging import get_logger
from kvbulk.core.protocols import Database, ReadTransaction
from kvbulk.core.settings import BulkSettings, get_settings

T = TypeVar("T")

logger = get_logger(__name__)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based attempt number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Determine if another retry should be attempted.

        Args:
            attempt: Number of retries already performed
            error: The exception that caused the failure

        Returns:
            True if should retry, False otherwise
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter

    Attributes:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_retries: int = 100
    base_delay: float = 0.01
    max_delay: float = 1.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Check if retry should be attempted."""
        return attempt < self.max_retries


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries."""

    max_retries: int = 100
    delay: float = 0.0

    def next_delay(self, attempt: int) -> float:
        """Return constant delay."""
        return self.delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Check if retry should be attempted."""
        return attempt < self.max_retries


@dataclass
class RetryPolicy:
    """Retry budget for one transaction.

    Attributes:
        strategy: Backoff strategy (also bounds the retry count)
        max_elapsed: Optional ceiling on total seconds spent retrying
    """

    strategy: RetryStrategy = field(default_factory=ExponentialBackoff)
    max_elapsed: float | None = None

    @classmethod
    def from_settings(cls, settings: BulkSettings | None = None) -> RetryPolicy:
        settings = settings or get_settings()
        return cls(
            strategy=ExponentialBackoff(
                max_retries=settings.max_retries,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            max_elapsed=settings.max_retry_elapsed,
        )

    def should_retry(self, retries: int, elapsed: float, error: BaseException) -> bool:
        if self.max_elapsed is not None and elapsed >= self.max_elapsed:
            return False
        return self.strategy.should_retry(retries, error)

    def next_delay(self, retries: int) -> float:
        return self.strategy.next_delay(retries)


class TransactionContext:
    """Attempt state of one transaction, visible read-only to handlers.

    Reset (never reallocated) between retries so the handler always sees the
    same context object alongside the same transaction.
    """

    def __init__(self, transaction: ReadTransaction, *, started_at: float | None = None) -> None:
        self._transaction = transaction
        self._started_at = started_at if started_at is not None else time.monotonic()
        self._attempt_started_at = self._started_at
        self._retries = 0
        self._errors: list[tuple[int, BaseException]] = []

    @property
    def transaction(self) -> ReadTransaction:
        return self._transaction

    @property
    def read_only(self) -> bool:
        return self._transaction.read_only

    @property
    def retries(self) -> int:
        """Retries already performed (0 on the first attempt)."""
        return self._retries

    @property
    def last_error(self) -> BaseException | None:
        return self._errors[-1][1] if self._errors else None

    @property
    def errors(self) -> list[tuple[int, BaseException]]:
        return list(self._errors)

    @property
    def elapsed_total(self) -> float:
        """Seconds since the first attempt started."""
        return time.monotonic() - self._started_at

    @property
    def elapsed_attempt(self) -> float:
        """Seconds since the current attempt started."""
        return time.monotonic() - self._attempt_started_at

    def _begin_attempt(self) -> None:
        self._attempt_started_at = time.monotonic()

    def _record_retry(self, error: BaseException) -> None:
        self._errors.append((self._retries, error))
        self._retries += 1

    def __repr__(self) -> str:
        return (
            f"TransactionContext(transaction_id={self._transaction.id}, "
            f"retries={self._retries}, elapsed_total={self.elapsed_total:.3f})"
        )


def _wants_context(handler: Callable[..., Any]) -> bool:
    """True when ``handler`` takes a second positional argument."""
    try:
        params = inspect.signature(handler).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    if any(p.kind is inspect.Parameter.VAR_POSITIONAL for p in params):
        return True
    return len(positional) >= 2


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable, otherwise return it."""
    if inspect.isawaitable(value):
        return await value
    return value


class TransactionRunner:
    """Runs handlers inside a transaction, retrying classified failures.

    Parameters
    ----------
    policy : RetryPolicy
        Retry budget and backoff (defaults to ``RetryPolicy.from_settings()``).
    """

    def __init__(self, policy: RetryPolicy | None = None) -> None:
        self._policy = policy or RetryPolicy.from_settings()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run(
        self,
        db: Database,
        handler: Callable[..., Any],
        *,
        read_only: bool = False,
        idempotent: bool = False,
        cancel: CancellationToken | None = None,
        on_success: Callable[[Any, TransactionContext], Any] | None = None,
        escalate: Collection[int] = (),
    ) -> Any:
        """Open a transaction on ``db`` and run ``handler`` in it.

        Returns:
            The handler's result from the attempt that committed.

        Raises:
            OperationCancelled: if ``cancel`` fired; before the first attempt
                no transaction is opened.
        """
        cancel = ensure_token(cancel)
        cancel.raise_if_cancelled()
        transaction = db.begin_transaction(read_only=read_only)
        return await self.run_with(
            transaction,
            handler,
            idempotent=idempotent,
            cancel=cancel,
            on_success=on_success,
            escalate=escalate,
        )

    async def run_with(
        self,
        transaction: ReadTransaction,
        handler: Callable[..., Any],
        *,
        idempotent: bool = False,
        cancel: CancellationToken | None = None,
        on_success: Callable[[Any, TransactionContext], Any] | None = None,
        escalate: Collection[int] = (),
        context: TransactionContext | None = None,
    ) -> Any:
        """Run ``handler`` against an already opened ``transaction``."""
        cancel = ensure_token(cancel)
        cancel.raise_if_cancelled()
        ctx = context or TransactionContext(transaction)
        pass_context = _wants_context(handler)

        while True:
            cancel.raise_if_cancelled()
            ctx._begin_attempt()
            try:
                if pass_context:
                    result = await maybe_await(handler(transaction, ctx))
                else:
                    result = await maybe_await(handler(transaction))
                cancel.raise_if_cancelled()
                if not transaction.read_only:
                    await transaction.commit()
            except Exception as exc:
                await self._on_failure(
                    unwrap_error(exc), transaction, ctx,
                    idempotent=idempotent, cancel=cancel, escalate=escalate,
                )
                continue

            if ctx.retries:
                logger.debug(
                    "transaction.succeeded_after_retry",
                    transaction_id=transaction.id,
                    retries=ctx.retries,
                    elapsed=round(ctx.elapsed_total, 4),
                )
            if on_success is not None:
                await maybe_await(on_success(result, ctx))
            return result

    async def _on_failure(
        self,
        error: BaseException,
        transaction: ReadTransaction,
        ctx: TransactionContext,
        *,
        idempotent: bool,
        cancel: CancellationToken,
        escalate: Collection[int],
    ) -> None:
        """Decide whether to retry; returns only when a retry should happen."""
        error_class = classify_error(error)
        if error_class is ErrorClass.FATAL:
            raise error

        assert isinstance(error, StoreError)
        if error.code in escalate:
            raise error

        if error_class is ErrorClass.MAYBE_COMMITTED and not (idempotent or transaction.read_only):
            logger.warning(
                "transaction.maybe_committed",
                transaction_id=transaction.id,
                retries=ctx.retries,
            )
            raise MaybeCommittedError(cause=error).with_context(
                transaction_id=transaction.id
            )

        if not self._policy.should_retry(ctx.retries, ctx.elapsed_total, error):
            logger.warning(
                "transaction.retry_exhausted",
                transaction_id=transaction.id,
                retries=ctx.retries,
                code=int(error.code),
                elapsed=round(ctx.elapsed_total, 4),
            )
            raise error

        delay = self._policy.next_delay(ctx.retries)
        logger.debug(
            "transaction.retry",
            transaction_id=transaction.id,
            retries=ctx.retries,
            code=int(error.code),
            delay=round(delay, 4),
        )
        await cancel.sleep(delay)
        await transaction.on_error(error)
        ctx._record_retry(error)


_default_runner: TransactionRunner | None = None


def default_runner() -> TransactionRunner:
    """Process-wide runner built from the current settings."""
    global _default_runner
    if _default_runner is None:
        _default_runner = TransactionRunner()
    return _default_runner


async def read(db: Database, handler: Callable[..., Any], **kwargs: Any) -> Any:
    """Run ``handler`` in a retried read-only transaction."""
    return await default_runner().run(db, handler, read_only=True, **kwargs)


async def write(db: Database, handler: Callable[..., Any], **kwargs: Any) -> Any:
    """Run ``handler`` in a retried read-write transaction, then commit."""
    return await default_runner().run(db, handler, read_only=False, **kwargs)


def transactional(
    db: Database,
    *,
    read_only: bool = False,
    idempotent: bool = False,
    runner: TransactionRunner | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator factory running the wrapped function in a retried transaction.

    The transaction is passed as the first argument; remaining arguments are
    forwarded on every attempt.

    Example:
        >>> @transactional(db)
        ... async def add_user(tr, user_id, name):
        ...     tr.set(b"user/" + user_id, name)
        >>> await add_user(b"42", b"alice")
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, cancel: CancellationToken | None = None, **kwargs: Any) -> Any:
            active = runner or default_runner()
            return await active.run(
                db,
                lambda tr: func(tr, *args, **kwargs),
                read_only=read_only,
                idempotent=idempotent,
                cancel=cancel,
            )
        return wrapper

    return decorator


__all__ = [
    "ConstantBackoff",
    "ExponentialBackoff",
    "RetryPolicy",
    "RetryStrategy",
    "TransactionContext",
    "TransactionRunner",
    "default_runner",
    "maybe_await",
    "read",
    "transactional",
    "write",
]
