"""Bulk Operation Runner — public operation shapes over the generation controller.

WHY
───
Writing, inserting, folding and exporting millions of keys all reduce to the
same loop: slice the input, run each slice in its own transaction, merge the
slice's result only once the transaction is through. Each function below is
a thin policy over :class:`~kvbulk.execution.generation.GenerationController`
that decides what a generation does and how its result is merged.

ARCHITECTURE
────────────
::

    operation        mode   chunk source        body (in transaction)       merged after commit
    ─────────────    ────   ─────────────────   ─────────────────────────   ───────────────────
    write            rw     (key, value) pairs  tr.set for each pair         count, progress
    insert           rw     items               handler(item, tr) per item   count, progress
    insert_batched   rw     items               handler(items, tr)           count, progress
    for_each         ro     items               body(items, ctx[, state])    state
    aggregate        ro     items               body(items, ctx, state)      state → transform
    fold             ro     keys                tr.get + reducer per key     state → finish
    export           ro     key range           tr.get_range(limit=step)     sink(pairs, offset)

Example::

    db = MemoryDatabase()
    count = await write(db, ((b"k%05d" % i, b"v") for i in range(100_000)))
    total = await fold(db, keys, init=lambda: 0, reducer=lambda s, k, v: s + len(v))

Caveats:
    Bodies and handlers may run more than once for the same chunk when a
    generation is retried; they must have no side effects outside the
    transaction and must not mutate the state they receive.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterable, Callable, Iterable, Mapping
from typing import Any, TypeVar

from kvbulk.bulk.options import BulkOptions
from kvbulk.core.cancellation import CancellationToken, ensure_token
from kvbulk.core.errors import ConfigError
from kvbulk.core.keys import KeyRange
from kvbulk.core.logging import LogContext, get_logger
from kvbulk.core.protocols import Database
from kvbulk.execution.generation import (
    BatchContext,
    GenerationController,
    GenerationOutcome,
    RangeFeeder,
    SequenceFeeder,
)
from kvbulk.execution.retry import TransactionRunner, maybe_await

T = TypeVar("T")
S = TypeVar("S")
R = TypeVar("R")

logger = get_logger(__name__)


def _pair_size(pair: tuple[bytes, bytes]) -> int:
    return len(pair[0]) + len(pair[1])


async def _drive(
    name: str,
    db: Database,
    feeder: SequenceFeeder[Any] | RangeFeeder,
    body: Callable[[list[Any], BatchContext, Any], Any],
    state: Any,
    options: BulkOptions,
    cancel: CancellationToken,
    *,
    read_only: bool,
    on_commit: Callable[[list[Any], BatchContext, Any], Any] | None = None,
) -> GenerationOutcome[Any]:
    controller = GenerationController(
        db,
        feeder,
        policy=options.step_policy(),
        runner=TransactionRunner(options.retry_policy()),
        read_only=read_only,
        idempotent=options.idempotent,
        cancel=cancel,
        name=name,
    )
    async with LogContext(operation=name, operation_id=uuid.uuid4().hex[:12]):
        logger.info("bulk.start", step=controller.step, read_only=read_only)
        outcome = await controller.run(body, state, on_commit)
        logger.info(
            "bulk.finished",
            position=outcome.position,
            generations=outcome.generations,
            final_step=outcome.step,
            elapsed=round(outcome.elapsed, 4),
        )
    return outcome


async def _run_counting(
    name: str,
    db: Database,
    feeder: SequenceFeeder[Any],
    body: Callable[[list[Any], BatchContext, int], Any],
    options: BulkOptions | None,
    cancel: CancellationToken | None,
) -> int:
    options = options or BulkOptions()
    cancel = ensure_token(cancel)
    cancel.raise_if_cancelled(partial=0)
    progress = options.progress

    on_commit = None
    if progress is not None:
        await maybe_await(progress(0))

        async def on_commit(chunk: list[Any], ctx: BatchContext, count: int) -> None:
            await maybe_await(progress(count))

    outcome = await _drive(
        name, db, feeder, body, 0, options, cancel,
        read_only=False, on_commit=on_commit,
    )
    return outcome.state


# ── Writes ───────────────────────────────────────────────────────────────


async def write(
    db: Database,
    data: Iterable[tuple[bytes, bytes]] | AsyncIterable[tuple[bytes, bytes]] | Mapping[bytes, bytes],
    *,
    options: BulkOptions | None = None,
    cancel: CancellationToken | None = None,
) -> int:
    """Write a potentially huge sequence of key/value pairs.

    Uses as many transactions as needed, each chunk bounded by the adaptive
    step and by ``options.max_batch_bytes``.

    Returns:
        Number of pairs written.

    Note:
        On a fatal error the pairs of already committed generations stay in
        the store; concurrent readers may observe a partial write until the
        operation completes.
    """
    options = options or BulkOptions()
    if isinstance(data, Mapping):
        data = data.items()
    feeder = SequenceFeeder(data, max_bytes=options.batch_bytes(), size_of=_pair_size)

    def body(chunk: list[tuple[bytes, bytes]], ctx: BatchContext, count: int) -> int:
        tr = ctx.transaction
        for key, value in chunk:
            tr.set(key, value)
        return count + len(chunk)

    return await _run_counting("write", db, feeder, body, options, cancel)


async def insert(
    db: Database,
    source: Iterable[T] | AsyncIterable[T],
    handler: Callable[[T, Any], Any],
    *,
    options: BulkOptions | None = None,
    cancel: CancellationToken | None = None,
) -> int:
    """Apply ``handler(item, tr)`` to every item, batching items into transactions.

    ``handler`` runs at least once per item; it runs again for the items of a
    chunk whose generation had to be retried, so it must only act on ``tr``.

    Returns:
        Number of items inserted.
    """

    async def body(chunk: list[T], ctx: BatchContext, count: int) -> int:
        tr = ctx.transaction
        for item in chunk:
            await maybe_await(handler(item, tr))
        return count + len(chunk)

    return await _run_counting("insert", db, SequenceFeeder(source), body, options, cancel)


async def insert_batched(
    db: Database,
    source: Iterable[T] | AsyncIterable[T],
    handler: Callable[[list[T], Any], Any],
    *,
    options: BulkOptions | None = None,
    cancel: CancellationToken | None = None,
) -> int:
    """Like :func:`insert` but ``handler(items, tr)`` receives the whole chunk."""

    async def body(chunk: list[T], ctx: BatchContext, count: int) -> int:
        await maybe_await(handler(list(chunk), ctx.transaction))
        return count + len(chunk)

    return await _run_counting("insert_batched", db, SequenceFeeder(source), body, options, cancel)


# ── Reads ────────────────────────────────────────────────────────────────


async def for_each(
    db: Database,
    source: Iterable[T] | AsyncIterable[T],
    body: Callable[..., Any],
    *,
    init: Callable[[], S] | None = None,
    finally_: Callable[[S], Any] | None = None,
    options: BulkOptions | None = None,
    cancel: CancellationToken | None = None,
) -> None:
    """Run a read-only ``body`` over batches of ``source``.

    Without ``init``, ``body(items, ctx)`` is called and its result ignored.
    With ``init``, ``body(items, ctx, state)`` returns the next state, and
    ``finally_(state)`` receives the last committed state once the operation
    ends, whether it completed, failed or was cancelled.

    Raises:
        ConfigError: ``finally_`` is given without ``init``.
    """
    if finally_ is not None and init is None:
        raise ConfigError("finally_ requires init: there is no state to hand over")
    options = options or BulkOptions()
    cancel = ensure_token(cancel)
    cancel.raise_if_cancelled()

    if init is None:
        async def stateless(chunk: list[T], ctx: BatchContext, state: None) -> None:
            await maybe_await(body(chunk, ctx))

        await _drive("for_each", db, SequenceFeeder(source), stateless, None, options, cancel, read_only=True)
        return

    committed = init()

    def remember(chunk: list[T], ctx: BatchContext, state: S) -> None:
        nonlocal committed
        committed = state

    try:
        await _drive(
            "for_each", db, SequenceFeeder(source), body, committed, options, cancel,
            read_only=True, on_commit=remember,
        )
    finally:
        if finally_ is not None:
            await maybe_await(finally_(committed))


async def aggregate(
    db: Database,
    source: Iterable[T] | AsyncIterable[T],
    init: Callable[[], S],
    body: Callable[[list[T], BatchContext, S], Any],
    transform: Callable[[S], R] | None = None,
    *,
    options: BulkOptions | None = None,
    cancel: CancellationToken | None = None,
) -> S | R:
    """Aggregate batches of ``source`` into one value.

    ``init()`` seeds the aggregate once, ``body(items, ctx, aggregate)``
    returns the next aggregate, and ``transform`` (identity by default) maps
    the final aggregate to the result.
    """
    options = options or BulkOptions()
    cancel = ensure_token(cancel)
    cancel.raise_if_cancelled()
    outcome = await _drive(
        "aggregate", db, SequenceFeeder(source), body, init(), options, cancel, read_only=True,
    )
    if transform is None:
        return outcome.state
    return transform(outcome.state)


async def fold(
    db: Database,
    keys: Iterable[bytes] | AsyncIterable[bytes],
    init: Callable[[], S],
    reducer: Callable[[S, bytes, bytes | None], S],
    finish: Callable[[S], R] | None = None,
    *,
    options: BulkOptions | None = None,
    cancel: CancellationToken | None = None,
) -> S | R:
    """Read the value of every key and fold it into a state.

    Values of one chunk are fetched concurrently inside the generation's
    transaction, then ``reducer(state, key, value)`` is applied in key order.
    Missing keys are passed as ``None``.
    """

    async def body(chunk: list[bytes], ctx: BatchContext, state: S) -> S:
        tr = ctx.transaction
        values = await asyncio.gather(*(tr.get(key) for key in chunk))
        for key, value in zip(chunk, values):
            state = reducer(state, key, value)
        return state

    return await aggregate(db, keys, init, body, finish, options=options, cancel=cancel)


async def export(
    db: Database,
    key_range: KeyRange,
    sink: Callable[[list[tuple[bytes, bytes]], int], Any],
    *,
    options: BulkOptions | None = None,
    cancel: CancellationToken | None = None,
) -> int:
    """Stream every pair of ``key_range`` to ``sink`` in ascending key order.

    ``sink(pairs, offset)`` is called once per committed generation with the
    absolute offset of the first pair; keys never repeat and never skip
    across calls.

    Returns:
        Number of pairs exported.
    """
    options = options or BulkOptions()
    cancel = ensure_token(cancel)
    cancel.raise_if_cancelled(partial=0)
    progress = options.progress
    if progress is not None:
        await maybe_await(progress(0))

    def body(chunk: list[tuple[bytes, bytes]], ctx: BatchContext, count: int) -> int:
        return count + len(chunk)

    async def deliver(chunk: list[tuple[bytes, bytes]], ctx: BatchContext, count: int) -> None:
        await maybe_await(sink(chunk, ctx.position))
        if progress is not None:
            await maybe_await(progress(count))

    outcome = await _drive(
        "export", db, RangeFeeder(key_range), body, 0, options, cancel,
        read_only=True, on_commit=deliver,
    )
    return outcome.state


__all__ = [
    "aggregate",
    "export",
    "fold",
    "for_each",
    "insert",
    "insert_batched",
    "write",
]
