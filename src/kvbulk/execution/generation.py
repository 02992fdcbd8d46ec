"""Generation Controller — adaptive chunking of large inputs into transactions.

WHY
───
A single transaction can only live a few seconds and carry a bounded number
of bytes, but bulk work routinely spans millions of keys. The controller cuts
the input into chunks, runs each chunk in its own *generation* through the
:class:`~kvbulk.execution.retry.TransactionRunner`, and treats every "too old"
or "too large" rejection as a latency signal: the step shrinks and a cooldown
pause is inserted; comfortably fast generations let the step grow again.

ARCHITECTURE
────────────
::

    GenerationController.run(body, state, on_commit)
      │
      ├── loop ────────────────────────────────────────────────────────┐
      │   cooldown sleep (cancellable)                                 │
      │   BatchContext(position, generation, step, cooldown, ...)      │
      │   runner.run_with(transaction, unit, escalate=SIZE/DURATION)   │
      │       unit: chunk = feeder.fetch(step, tr)                     │
      │             new_state = body(chunk, ctx, state)                │
      │             (commit done by the runner unless read-only)       │
      │   ├── ok:   cursor += len(chunk); state = new_state;           │
      │   │         on_commit(chunk, ctx, state); relax cooldown;      │
      │   │         maybe grow step                                    │
      │   └── size/duration error: shrink step, back off cooldown,     │
      │             replay the same chunk start                        │
      └────────────────────────────────────────────────────────────────┘

    Feeders
      SequenceFeeder(source)  ─ buffered sync/async iterable, replayable
      RangeFeeder(key_range)  ─ reads the next ``step`` pairs inside the
                                generation's transaction

INVARIANTS
──────────
- the cursor only moves forward, and only after a generation committed;
- ``state`` is replaced only with the result of a committed generation, so a
  retried generation always folds from the pre-generation state;
- ``on_commit`` sees chunks in cursor order, each exactly once;
- ``min_step <= step <= max_step`` at all times.

Related modules:
    retry.py      — per-transaction retries inside one generation
    partition.py  — fan-out across workers with a shared cursor
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterable, Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

from kvbulk.core.cancellation import CancellationToken, ensure_token
from kvbulk.core.errors import (
    SIZE_OR_DURATION_CODES,
    ConfigError,
    ItemTooLargeError,
    OperationCancelled,
    StoreError,
    StoreErrorCode,
    is_size_or_duration_error,
)
from kvbulk.core.keys import KeyRange, key_after
from kvbulk.core.logging import get_logger
from kvbulk.core.protocols import Database, ReadTransaction
from kvbulk.core.settings import BulkSettings, get_settings
from kvbulk.execution.retry import TransactionContext, TransactionRunner, maybe_await

T = TypeVar("T")
S = TypeVar("S")

logger = get_logger(__name__)


# ── Step policy ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StepPolicy:
    """Bounds and factors driving step and cooldown adaptation.

    Attributes:
        initial_step: Items in the first generation
        min_step: Floor for shrinking (never below 1)
        max_step: Ceiling for growing
        grow_factor: Multiplier applied when a generation was fast
        shrink_factor: Multiplier applied after a size/duration failure
        generation_budget: Target ceiling, in seconds, for one generation
        cooldown_min: Cooldown floor in seconds (0 = no pause)
        cooldown_base: First non-zero cooldown after a failure
        cooldown_max: Cooldown ceiling in seconds
        grow_hold: Successful generations to wait between two growths
        shrink_hold: Successful generations to wait after a shrink before growing
        max_shrink_retries: Consecutive size/duration failures tolerated on one chunk
    """

    initial_step: int = 100
    min_step: int = 1
    max_step: int = 10_000
    grow_factor: float = 2.0
    shrink_factor: float = 0.5
    generation_budget: float = 5.0
    cooldown_min: float = 0.0
    cooldown_base: float = 0.01
    cooldown_max: float = 1.0
    grow_hold: int = 2
    shrink_hold: int = 10
    max_shrink_retries: int = 16

    def __post_init__(self) -> None:
        if self.min_step < 1:
            raise ConfigError("min_step must be >= 1")
        if not self.min_step <= self.initial_step <= self.max_step:
            raise ConfigError(
                f"step bounds must satisfy min_step <= initial_step <= max_step "
                f"(got {self.min_step}, {self.initial_step}, {self.max_step})"
            )
        if self.grow_factor <= 1.0 or not 0.0 < self.shrink_factor < 1.0:
            raise ConfigError("grow_factor must be > 1 and shrink_factor within (0, 1)")
        if not 0.0 <= self.cooldown_min <= self.cooldown_max:
            raise ConfigError("cooldown bounds must satisfy 0 <= cooldown_min <= cooldown_max")

    @classmethod
    def from_settings(cls, settings: BulkSettings | None = None) -> StepPolicy:
        settings = settings or get_settings()
        return cls(
            initial_step=settings.initial_step,
            min_step=settings.min_step,
            max_step=settings.max_step,
            grow_factor=settings.grow_factor,
            shrink_factor=settings.shrink_factor,
            generation_budget=settings.generation_budget,
            cooldown_min=settings.cooldown_min,
            cooldown_base=settings.cooldown_base,
            cooldown_max=settings.cooldown_max,
            max_shrink_retries=settings.max_shrink_retries,
        )

    def pinned(self, step: int) -> StepPolicy:
        """Copy of this policy whose step never grows past ``step``."""
        step = max(1, step)
        return replace(self, initial_step=step, max_step=step, min_step=min(self.min_step, step))

    def grow(self, step: int) -> int:
        return min(self.max_step, max(step + 1, int(step * self.grow_factor)))

    def shrink(self, step: int) -> int:
        return max(self.min_step, min(step - 1, int(step * self.shrink_factor)))

    def back_off(self, cooldown: float) -> float:
        """Next cooldown after a failure: doubles, bounded by ``cooldown_max``."""
        return min(self.cooldown_max, max(self.cooldown_min, self.cooldown_base, cooldown * 2))

    def relax(self, cooldown: float) -> float:
        """Next cooldown after a success: halves toward ``cooldown_min``."""
        relaxed = cooldown / 2
        if relaxed < self.cooldown_base:
            return self.cooldown_min
        return max(self.cooldown_min, relaxed)


# ── Batch context ────────────────────────────────────────────────────────


class BatchContext:
    """Read-only view of the current generation, handed to every callback.

    A fresh context is created for each generation attempt; the controller
    is the only writer.
    """

    def __init__(
        self,
        *,
        transaction: ReadTransaction,
        attempt: TransactionContext,
        position: int,
        generation: int,
        step: int,
        cooldown: float,
        total_started: float,
    ) -> None:
        self._transaction = transaction
        self._attempt = attempt
        self._position = position
        self._generation = generation
        self._step = step
        self._cooldown = cooldown
        self._total_started = total_started
        self._generation_started = time.monotonic()
        self._chunk_size = 0
        self._stop_requested = False

    @property
    def transaction(self) -> Any:
        """Transaction of the current generation."""
        return self._transaction

    @property
    def retries(self) -> int:
        """Internal retries already performed for the current generation."""
        return self._attempt.retries

    @property
    def position(self) -> int:
        """Cursor at the start of this generation (items already committed)."""
        return self._position

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def step(self) -> int:
        return self._step

    @property
    def cooldown(self) -> float:
        return self._cooldown

    @property
    def elapsed_total(self) -> float:
        return time.monotonic() - self._total_started

    @property
    def elapsed_generation(self) -> float:
        return time.monotonic() - self._generation_started

    @property
    def is_transactional(self) -> bool:
        """True while everything so far fits in the first generation."""
        return self._generation == 0

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def stop(self) -> None:
        """End the operation once the current generation has committed."""
        self._stop_requested = True

    def __repr__(self) -> str:
        return (
            f"BatchContext(generation={self._generation}, position={self._position}, "
            f"step={self._step}, cooldown={self._cooldown}, retries={self.retries})"
        )


# ── Feeders ──────────────────────────────────────────────────────────────


class SequenceFeeder(Generic[T]):
    """Buffers a sync or async iterable so failed chunks replay identically.

    Parameters
    ----------
    source : iterable or async iterable
        Input items, possibly unbounded and lazy.
    max_bytes : int, optional
        Byte cap per chunk, measured with ``size_of``; a chunk always holds
        at least one item.
    size_of : callable, optional
        Byte weight of one item.
    """

    _COMPACT_THRESHOLD = 4096

    def __init__(
        self,
        source: Iterable[T] | AsyncIterable[T],
        *,
        max_bytes: int | None = None,
        size_of: Callable[[T], int] | None = None,
    ) -> None:
        if hasattr(source, "__aiter__"):
            self._aiter = source.__aiter__()
            self._iter = None
        else:
            self._iter = iter(source)
            self._aiter = None
        self._buffer: list[T] = []
        self._offset = 0
        self._source_done = False
        self._max_bytes = max_bytes if size_of is not None else None
        self._size_of = size_of

    @property
    def exhausted(self) -> bool:
        return self._source_done and self._offset >= len(self._buffer)

    @property
    def buffered(self) -> int:
        return len(self._buffer) - self._offset

    async def _fill(self, count: int) -> None:
        while not self._source_done and self.buffered < count:
            try:
                if self._aiter is not None:
                    item = await self._aiter.__anext__()
                else:
                    item = next(self._iter)
            except (StopIteration, StopAsyncIteration):
                self._source_done = True
                break
            self._buffer.append(item)

    async def fetch(self, step: int, transaction: ReadTransaction | None = None) -> list[T]:
        """Next chunk of at most ``step`` items, without consuming it."""
        await self._fill(step)
        chunk = self._buffer[self._offset:self._offset + step]
        if self._max_bytes is not None and len(chunk) > 1:
            total = 0
            for index, item in enumerate(chunk):
                total += self._size_of(item)
                if total > self._max_bytes and index > 0:
                    chunk = chunk[:index]
                    break
        return chunk

    def advance(self, chunk: list[T]) -> None:
        """Drop a committed chunk from the buffer."""
        self._offset += len(chunk)
        if self._offset >= self._COMPACT_THRESHOLD and self._offset * 2 >= len(self._buffer):
            del self._buffer[:self._offset]
            self._offset = 0


class RangeFeeder:
    """Reads successive chunks of a key range inside each generation."""

    def __init__(self, key_range: KeyRange) -> None:
        self._range = key_range
        self._done = key_range.empty

    @property
    def exhausted(self) -> bool:
        return self._done

    @property
    def remaining(self) -> KeyRange:
        return self._range

    async def fetch(self, step: int, transaction: ReadTransaction) -> list[tuple[bytes, bytes]]:
        if self._done:
            return []
        return await transaction.get_range(self._range, limit=step)

    def advance(self, chunk: list[tuple[bytes, bytes]], step: int | None = None) -> None:
        if not chunk:
            self._done = True
            return
        self._range = self._range.with_begin(key_after(chunk[-1][0]))
        if self._range.empty or (step is not None and len(chunk) < step):
            self._done = True


# ── Controller ───────────────────────────────────────────────────────────


@dataclass
class GenerationOutcome(Generic[S]):
    """Result of a controller run."""

    state: S
    position: int
    generations: int
    step: int
    stopped: bool
    elapsed: float


class GenerationController:
    """Drives successive generations over a feeder until it is exhausted.

    Parameters
    ----------
    db : Database
        Store handle; one transaction is opened per run and reset between
        generations.
    feeder : SequenceFeeder | RangeFeeder
        Source of chunks.
    policy : StepPolicy, optional
        Step and cooldown adaptation (defaults from settings).
    runner : TransactionRunner, optional
        Executor used for each generation.
    read_only : bool
        Open a read-only transaction; generations complete without commit.
    idempotent : bool
        Allow retrying commits whose outcome is unknown.
    cancel : CancellationToken, optional
        Checked at every suspension point.
    name : str
        Operation name for logs.
    """

    def __init__(
        self,
        db: Database,
        feeder: SequenceFeeder[Any] | RangeFeeder,
        *,
        policy: StepPolicy | None = None,
        runner: TransactionRunner | None = None,
        read_only: bool = False,
        idempotent: bool = False,
        cancel: CancellationToken | None = None,
        name: str = "bulk",
    ) -> None:
        self._db = db
        self._feeder = feeder
        self._policy = policy or StepPolicy.from_settings()
        self._runner = runner or TransactionRunner()
        self._read_only = read_only
        self._idempotent = idempotent
        self._cancel = ensure_token(cancel)
        self._name = name

        self._step = self._policy.initial_step
        self._cooldown = self._policy.cooldown_min
        self._position = 0
        self._generation = 0
        self._hold = 0

    @property
    def step(self) -> int:
        return self._step

    @property
    def cooldown(self) -> float:
        return self._cooldown

    @property
    def position(self) -> int:
        return self._position

    @property
    def generation(self) -> int:
        return self._generation

    async def run(
        self,
        body: Callable[[list[Any], BatchContext, S], Any],
        state: S,
        on_commit: Callable[[list[Any], BatchContext, S], Any] | None = None,
    ) -> GenerationOutcome[S]:
        """Process the whole feeder.

        Args:
            body: ``body(chunk, ctx, state) -> new_state`` (sync or async),
                run inside the generation's transaction, possibly more than once.
            state: Accumulator seed.
            on_commit: ``on_commit(chunk, ctx, state)`` fired once per committed
                generation with the merged state.

        Raises:
            OperationCancelled: with ``partial`` set to the last committed state.
        """
        self._cancel.raise_if_cancelled(partial=state, position=0)
        total_started = time.monotonic()
        transaction = self._db.begin_transaction(read_only=self._read_only)
        failures = 0
        stopped = False
        first = True

        try:
            while not self._feeder.exhausted:
                if self._cooldown > 0:
                    logger.debug("generation.cooldown", operation=self._name, cooldown=self._cooldown)
                    await self._cancel.sleep(self._cooldown)
                if not first:
                    transaction.reset()
                first = False

                attempt = TransactionContext(transaction)
                ctx = BatchContext(
                    transaction=transaction,
                    attempt=attempt,
                    position=self._position,
                    generation=self._generation,
                    step=self._step,
                    cooldown=self._cooldown,
                    total_started=total_started,
                )

                try:
                    chunk, new_state = await self._runner.run_with(
                        transaction,
                        self._unit(body, ctx, state),
                        idempotent=self._idempotent,
                        cancel=self._cancel,
                        escalate=SIZE_OR_DURATION_CODES,
                        context=attempt,
                    )
                except StoreError as exc:
                    if not is_size_or_duration_error(exc):
                        raise
                    failures += 1
                    self._on_size_failure(exc, ctx, failures)
                    continue

                duration = ctx.elapsed_generation
                if not chunk:
                    break

                failures = 0
                state = new_state
                self._position += len(chunk)
                if isinstance(self._feeder, RangeFeeder):
                    self._feeder.advance(chunk, ctx.step)
                else:
                    self._feeder.advance(chunk)

                logger.debug(
                    "generation.committed",
                    operation=self._name,
                    generation=self._generation,
                    position=self._position,
                    items=len(chunk),
                    step=self._step,
                    retries=ctx.retries,
                    duration=round(duration, 4),
                )
                if on_commit is not None:
                    await maybe_await(on_commit(chunk, ctx, state))

                self._generation += 1
                self._adapt(duration)
                if ctx.stop_requested:
                    stopped = True
                    break
            self._cancel.raise_if_cancelled()
        except OperationCancelled:
            logger.info(
                "bulk.cancelled",
                operation=self._name,
                position=self._position,
                generation=self._generation,
            )
            raise OperationCancelled(partial=state, position=self._position) from None

        elapsed = time.monotonic() - total_started
        logger.debug(
            "bulk.complete",
            operation=self._name,
            position=self._position,
            generations=self._generation,
            step=self._step,
            stopped=stopped,
            elapsed=round(elapsed, 4),
        )
        return GenerationOutcome(
            state=state,
            position=self._position,
            generations=self._generation,
            step=self._step,
            stopped=stopped,
            elapsed=elapsed,
        )

    def _unit(self, body: Callable[..., Any], ctx: BatchContext, prior: Any) -> Callable[..., Any]:
        feeder = self._feeder

        async def unit(transaction: ReadTransaction) -> tuple[list[Any], Any]:
            chunk = await feeder.fetch(ctx.step, transaction)
            ctx._chunk_size = len(chunk)
            if not chunk:
                return chunk, prior
            return chunk, await maybe_await(body(chunk, ctx, prior))

        return unit

    def _on_size_failure(self, exc: StoreError, ctx: BatchContext, failures: int) -> None:
        if exc.code == StoreErrorCode.TRANSACTION_TOO_LARGE and ctx._chunk_size <= 1:
            raise ItemTooLargeError(
                "A single item exceeds the maximum size allowed per transaction",
                cause=exc,
            ).with_context(operation=self._name, position=self._position)
        if failures > self._policy.max_shrink_retries:
            logger.warning(
                "generation.gave_up",
                operation=self._name,
                position=self._position,
                step=self._step,
                failures=failures,
                code=int(exc.code),
            )
            raise exc

        previous = self._step
        self._step = self._policy.shrink(min(self._step, max(ctx._chunk_size, 1)))
        self._cooldown = self._policy.back_off(self._cooldown)
        self._hold = self._policy.shrink_hold
        logger.info(
            "generation.shrink",
            operation=self._name,
            position=self._position,
            generation=self._generation,
            code=int(exc.code),
            step_before=previous,
            step=self._step,
            cooldown=self._cooldown,
        )

    def _adapt(self, duration: float) -> None:
        self._cooldown = self._policy.relax(self._cooldown)
        self._hold -= 1
        budget = self._policy.generation_budget
        if duration > budget:
            previous = self._step
            self._step = self._policy.shrink(self._step)
            self._hold = self._policy.shrink_hold
            logger.info(
                "generation.slow",
                operation=self._name,
                duration=round(duration, 4),
                step_before=previous,
                step=self._step,
            )
        elif self._hold <= 0 and duration < budget / 2 and self._step < self._policy.max_step:
            previous = self._step
            self._step = self._policy.grow(self._step)
            self._hold = self._policy.grow_hold
            logger.debug(
                "generation.grow",
                operation=self._name,
                step_before=previous,
                step=self._step,
            )


__all__ = [
    "BatchContext",
    "GenerationController",
    "GenerationOutcome",
    "RangeFeeder",
    "SequenceFeeder",
    "StepPolicy",
]
