"""End-to-end tests for the public bulk operations."""

import random
import statistics
from collections import Counter

import pytest

from kvbulk.bulk import (
    BulkOptions,
    aggregate,
    export,
    fold,
    for_each,
    insert,
    insert_batched,
    write,
)
from kvbulk.core.errors import (
    ConfigError,
    InvalidOperationError,
    ItemTooLargeError,
    MaybeCommittedError,
    OperationCancelled,
    StoreErrorCode,
)
from kvbulk.core.keys import KeyRange
from kvbulk.storage.memory import MemoryDatabase


def _pairs(count, prefix=b"k/"):
    return [(prefix + b"%06d" % i, b"value-%d" % i) for i in range(count)]


async def _load(db, count, prefix=b"k/"):
    await write(db, _pairs(count, prefix))


class TestWrite:
    @pytest.mark.asyncio
    async def test_writes_everything_and_reports_progress(self, db):
        progress = []
        count = await write(db, _pairs(1000), options=BulkOptions(progress=progress.append))

        assert count == 1000
        assert db.snapshot() == dict(_pairs(1000))
        assert progress[0] == 0
        assert progress[-1] == 1000
        assert progress == sorted(progress)
        assert len(progress) >= 3

    @pytest.mark.asyncio
    async def test_batch_count_pins_step(self, db):
        progress = []
        await write(db, _pairs(50), options=BulkOptions(batch_count=7, progress=progress.append))
        steps = [b - a for a, b in zip(progress, progress[1:])]
        assert max(steps) <= 7
        assert sum(steps) == 50

    @pytest.mark.asyncio
    async def test_byte_cap_limits_chunks(self, db):
        progress = []
        pairs = [(b"key%02d" % i, b"x" * 20) for i in range(10)]
        await write(db, pairs, options=BulkOptions(max_batch_bytes=50, progress=progress.append))
        steps = [b - a for a, b in zip(progress, progress[1:])]
        assert steps == [2, 2, 2, 2, 2]

    @pytest.mark.asyncio
    async def test_accepts_mapping_and_async_iterable(self, db):
        assert await write(db, {b"a": b"1", b"b": b"2"}) == 2

        async def source():
            for key, value in _pairs(30, prefix=b"async/"):
                yield key, value

        assert await write(db, source()) == 30
        assert len(db.dump(KeyRange.starts_with(b"async/"))) == 30

    @pytest.mark.asyncio
    async def test_empty_input(self, db):
        progress = []
        assert await write(db, [], options=BulkOptions(progress=progress.append)) == 0
        assert progress == [0]

    @pytest.mark.asyncio
    async def test_survives_conflicts_and_shrinks(self, db):
        db.inject_error(StoreErrorCode.NOT_COMMITTED, count=3)
        db.inject_error(StoreErrorCode.TRANSACTION_TOO_LARGE)
        count = await write(db, _pairs(500))
        assert count == 500
        assert len(db.snapshot()) == 500

    @pytest.mark.asyncio
    async def test_oversized_item(self):
        db = MemoryDatabase(max_transaction_size=200)
        with pytest.raises(ItemTooLargeError):
            await write(db, [(b"small", b"x"), (b"big", b"y" * 1000)], options=BulkOptions(cooldown_max=0.001))
        assert b"big" not in db.snapshot()

    @pytest.mark.asyncio
    async def test_unknown_commit_outcome_needs_idempotency(self, db):
        db.inject_error(StoreErrorCode.COMMIT_UNKNOWN_RESULT)
        with pytest.raises(MaybeCommittedError):
            await write(db, _pairs(10))

        db.inject_error(StoreErrorCode.COMMIT_UNKNOWN_RESULT)
        assert await write(db, _pairs(10), options=BulkOptions(idempotent=True)) == 10


class TestInsert:
    @pytest.mark.asyncio
    async def test_handler_called_once_per_item(self, db):
        calls = Counter()

        def handler(item, tr):
            calls[item] += 1
            tr.set(b"item/%05d" % item, b"%d" % (item * 2))

        count = await insert(db, range(300), handler)
        assert count == 300
        assert set(calls) == set(range(300))
        assert set(calls.values()) == {1}
        assert db.snapshot()[b"item/00010"] == b"20"

    @pytest.mark.asyncio
    async def test_async_handler_with_retries(self, db):
        db.inject_error(StoreErrorCode.NOT_COMMITTED)
        calls = Counter()

        async def handler(item, tr):
            calls[item] += 1
            tr.set(b"item/%05d" % item, b"v")

        count = await insert(db, range(50), handler)
        assert count == 50
        assert len(db.snapshot()) == 50
        assert max(calls.values()) == 2

    @pytest.mark.asyncio
    async def test_batched_handler_receives_chunks(self, db):
        batches = []

        def handler(items, tr):
            batches.append(list(items))
            for item in items:
                tr.set(b"item/%05d" % item, b"v")

        progress = []
        count = await insert_batched(
            db, range(100), handler, options=BulkOptions(batch_count=30, progress=progress.append)
        )
        assert count == 100
        assert [len(batch) for batch in batches] == [30, 30, 30, 10]
        assert progress == [0, 30, 60, 90, 100]


class TestReadOnly:
    @pytest.mark.asyncio
    async def test_for_each_cannot_write(self, db):
        await _load(db, 10)
        before = db.snapshot()

        def body(items, ctx):
            ctx.transaction.set(b"evil", b"1")

        with pytest.raises(InvalidOperationError):
            await for_each(db, range(10), body)
        assert db.snapshot() == before

    @pytest.mark.asyncio
    async def test_aggregate_cannot_write(self, db):
        def body(items, ctx, state):
            ctx.transaction.clear(b"k/000001")
            return state

        with pytest.raises(InvalidOperationError):
            await aggregate(db, range(5), lambda: 0, body)


class TestForEach:
    @pytest.mark.asyncio
    async def test_stateless(self, db):
        await _load(db, 20)
        seen = []

        async def body(keys, ctx):
            for key in keys:
                seen.append(await ctx.transaction.get(key))

        await for_each(db, [key for key, _ in _pairs(20)], body)
        assert seen == [value for _, value in _pairs(20)]

    @pytest.mark.asyncio
    async def test_init_and_finally(self, db):
        finals = []

        def body(items, ctx, state):
            return state + len(items)

        await for_each(db, range(75), body, init=lambda: 0, finally_=finals.append)
        assert finals == [75]

    @pytest.mark.asyncio
    async def test_finally_sees_last_committed_state_on_error(self, db):
        finals = []

        def body(items, ctx, state):
            if ctx.generation == 1:
                raise RuntimeError("second batch fails")
            return state + len(items)

        with pytest.raises(RuntimeError):
            await for_each(
                db, range(30), body, init=lambda: 0, finally_=finals.append, options=BulkOptions(batch_count=10)
            )
        assert finals == [10]

    @pytest.mark.asyncio
    async def test_finally_without_init_is_rejected(self, db):
        finals = []
        with pytest.raises(ConfigError):
            await for_each(db, range(3), lambda items, ctx: None, finally_=finals.append)
        assert finals == []
        assert db.transactions_started == 0


class TestAggregate:
    @pytest.mark.asyncio
    async def test_sum_and_average_of_random_ints(self, db):
        rng = random.Random(42)
        numbers = [rng.randint(-1000, 1000) for _ in range(50_000)]

        def body(items, ctx, state):
            total, count = state
            return total + sum(items), count + len(items)

        total, count = await aggregate(db, numbers, lambda: (0, 0), body)
        assert total == sum(numbers)
        assert count == 50_000

        average = await aggregate(
            db, numbers, lambda: (0, 0), body, transform=lambda state: state[0] / state[1]
        )
        assert average == pytest.approx(statistics.fmean(numbers))

    @pytest.mark.asyncio
    async def test_retry_does_not_double_count(self, db):
        db.inject_error(StoreErrorCode.PROCESS_BEHIND, on="read", count=2)

        async def body(items, ctx, state):
            await ctx.transaction.get(b"anything")
            return state + sum(items)

        assert await aggregate(db, range(1000), lambda: 0, body) == sum(range(1000))


class TestFold:
    @pytest.mark.asyncio
    async def test_folds_values(self, db):
        await _load(db, 200)
        keys = [key for key, _ in _pairs(200)] + [b"k/missing"]

        def reducer(state, key, value):
            if value is None:
                return state[0], state[1] + 1
            return state[0] + len(value), state[1]

        total, missing = await fold(db, keys, lambda: (0, 0), reducer)
        assert total == sum(len(value) for _, value in _pairs(200))
        assert missing == 1

    @pytest.mark.asyncio
    async def test_finish(self, db):
        await _load(db, 10)
        keys = [key for key, _ in _pairs(10)]
        result = await fold(db, keys, list, lambda state, key, value: state + [key], finish=len)
        assert result == 10

    @pytest.mark.asyncio
    async def test_survives_past_version(self, db):
        await _load(db, 300)
        db.inject_error(StoreErrorCode.PAST_VERSION, on="read")
        keys = [key for key, _ in _pairs(300)]
        count = await fold(
            db, keys, lambda: 0, lambda state, key, value: state + 1, options=BulkOptions(cooldown_max=0.001)
        )
        assert count == 300


class TestExport:
    @pytest.mark.asyncio
    async def test_ordered_complete_no_duplicates(self, db):
        await _load(db, 500, prefix=b"in/")
        await _load(db, 50, prefix=b"out/")
        calls = []

        def sink(pairs, offset):
            calls.append((offset, list(pairs)))

        count = await export(db, KeyRange.starts_with(b"in/"), sink, options=BulkOptions(batch_count=32))

        assert count == 500
        exported = [pair for _, pairs in calls for pair in pairs]
        assert exported == sorted(_pairs(500, prefix=b"in/"))
        expected_offset = 0
        for offset, pairs in calls:
            assert offset == expected_offset
            expected_offset += len(pairs)
        assert len(calls) == 16

    @pytest.mark.asyncio
    async def test_async_sink_and_progress(self, db):
        await _load(db, 40)
        received = []
        progress = []

        async def sink(pairs, offset):
            received.extend(key for key, _ in pairs)

        count = await export(
            db, KeyRange.starts_with(b"k/"), sink, options=BulkOptions(batch_count=15, progress=progress.append)
        )
        assert count == 40
        assert received == [key for key, _ in _pairs(40)]
        assert progress == [0, 15, 30, 40]

    @pytest.mark.asyncio
    async def test_empty_range(self, db):
        calls = []
        assert await export(db, KeyRange.starts_with(b"nothing/"), lambda p, o: calls.append(p)) == 0
        assert calls == []

    @pytest.mark.asyncio
    async def test_sink_error_propagates(self, db):
        await _load(db, 20)

        def sink(pairs, offset):
            raise OSError("disk full")

        with pytest.raises(OSError, match="disk full"):
            await export(db, KeyRange.starts_with(b"k/"), sink)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_pre_cancelled_operations_do_nothing(self, db, token):
        token.cancel()
        called = []
        options = BulkOptions(progress=called.append)

        operations = [
            write(db, _pairs(10), options=options, cancel=token),
            insert(db, range(10), lambda item, tr: called.append(item), options=options, cancel=token),
            insert_batched(db, range(10), lambda items, tr: called.append(items), cancel=token),
            for_each(db, range(10), lambda items, ctx: called.append(items), init=lambda: called.append("init"),
                     cancel=token),
            aggregate(db, range(10), lambda: called.append("init"), lambda i, c, s: s, cancel=token),
            fold(db, [b"a"], lambda: 0, lambda s, k, v: called.append(k), cancel=token),
            export(db, KeyRange.starts_with(b"k/"), lambda p, o: called.append(p), cancel=token),
        ]
        for operation in operations:
            with pytest.raises(OperationCancelled):
                await operation

        assert called == []
        assert db.transactions_started == 0

    @pytest.mark.asyncio
    async def test_cancel_mid_write_keeps_committed_prefix(self, db, token):
        def progress(count):
            if count >= 20:
                token.cancel()

        with pytest.raises(OperationCancelled) as info:
            await write(db, _pairs(100), options=BulkOptions(batch_count=10, progress=progress), cancel=token)

        assert info.value.partial == 20
        assert db.snapshot() == dict(_pairs(20))

    @pytest.mark.asyncio
    async def test_cancel_from_insert_handler_discards_current_chunk(self, db, token):
        def handler(item, tr):
            tr.set(b"item/%03d" % item, b"x")
            if item == 15:
                token.cancel()

        with pytest.raises(OperationCancelled) as info:
            await insert(db, range(30), handler, options=BulkOptions(batch_count=10), cancel=token)

        assert info.value.partial == 10
        assert sorted(db.snapshot()) == [b"item/%03d" % i for i in range(10)]

    @pytest.mark.asyncio
    async def test_cancel_in_single_chunk_insert_commits_nothing(self, db, token):
        def handler(item, tr):
            tr.set(b"item/%03d" % item, b"x")
            token.cancel()

        with pytest.raises(OperationCancelled) as info:
            await insert(db, range(10), handler, cancel=token)

        assert info.value.partial == 0
        assert db.commits == 0
        assert db.snapshot() == {}
