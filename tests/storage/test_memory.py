"""Tests for the in-memory MVCC store."""

import pytest

from kvbulk.core.errors import InvalidOperationError, StoreError, StoreErrorCode
from kvbulk.core.keys import KeyRange
from kvbulk.storage.memory import MemoryDatabase


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def _put(db, pairs):
    tr = db.begin_transaction()
    for key, value in pairs.items():
        tr.set(key, value)
    await tr.commit()


class TestReadsAndWrites:
    @pytest.mark.asyncio
    async def test_commit_makes_writes_visible(self, db):
        await _put(db, {b"a": b"1", b"b": b"2"})
        assert db.snapshot() == {b"a": b"1", b"b": b"2"}
        assert db.commits == 1

    @pytest.mark.asyncio
    async def test_uncommitted_writes_are_invisible(self, db):
        tr = db.begin_transaction()
        tr.set(b"a", b"1")
        assert db.snapshot() == {}

    @pytest.mark.asyncio
    async def test_read_your_writes(self, db):
        await _put(db, {b"a": b"1", b"b": b"2"})
        tr = db.begin_transaction()
        tr.set(b"a", b"x")
        tr.clear(b"b")
        tr.set(b"c", b"3")
        assert await tr.get(b"a") == b"x"
        assert await tr.get(b"b") is None
        assert await tr.get_range(KeyRange(b"a", b"z")) == [(b"a", b"x"), (b"c", b"3")]

    @pytest.mark.asyncio
    async def test_get_range_limit_and_order(self, db):
        await _put(db, {b"k%02d" % i: b"v" for i in reversed(range(10))})
        tr = db.begin_transaction(read_only=True)
        pairs = await tr.get_range(KeyRange.starts_with(b"k"), limit=3)
        assert [key for key, _ in pairs] == [b"k00", b"k01", b"k02"]

    @pytest.mark.asyncio
    async def test_clear_range(self, db):
        await _put(db, {b"a": b"1", b"b": b"2", b"c": b"3"})
        tr = db.begin_transaction()
        tr.clear_range(KeyRange(b"a", b"c"))
        await tr.commit()
        assert db.snapshot() == {b"c": b"3"}

    @pytest.mark.asyncio
    async def test_clear_range_removes_keys_set_earlier_in_same_transaction(self, db):
        await _put(db, {b"a/0": b"old"})
        tr = db.begin_transaction()
        tr.set(b"a/1", b"new")
        tr.clear_range(KeyRange.starts_with(b"a/"))
        tr.set(b"b", b"kept")
        assert await tr.get(b"a/1") is None
        await tr.commit()
        assert db.snapshot() == {b"b": b"kept"}

    @pytest.mark.asyncio
    async def test_snapshot_includes_high_keys(self, db):
        await _put(db, {b"\xff\xff\x01": b"hi", b"a": b"lo"})
        assert db.snapshot() == {b"a": b"lo", b"\xff\xff\x01": b"hi"}

    @pytest.mark.asyncio
    async def test_snapshot_isolation(self, db):
        await _put(db, {b"a": b"1"})
        reader = db.begin_transaction(read_only=True)
        assert await reader.get(b"a") == b"1"
        await _put(db, {b"a": b"2"})
        assert await reader.get(b"a") == b"1"

    @pytest.mark.asyncio
    async def test_dump(self, db):
        await _put(db, {b"a": b"1", b"b": b"2", b"c": b"3"})
        assert db.dump(KeyRange(b"b", b"z")) == [(b"b", b"2"), (b"c", b"3")]


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_read_only_rejects_writes(self, db):
        tr = db.begin_transaction(read_only=True)
        with pytest.raises(InvalidOperationError):
            tr.set(b"a", b"1")
        with pytest.raises(InvalidOperationError):
            tr.clear(b"a")
        with pytest.raises(InvalidOperationError):
            tr.clear_range(KeyRange(b"a", b"b"))
        assert db.snapshot() == {}

    @pytest.mark.asyncio
    async def test_write_after_commit_rejected(self, db):
        tr = db.begin_transaction()
        tr.set(b"a", b"1")
        await tr.commit()
        with pytest.raises(InvalidOperationError):
            tr.set(b"b", b"2")

    @pytest.mark.asyncio
    async def test_key_and_value_limits(self):
        db = MemoryDatabase(max_key_size=4, max_value_size=4)
        tr = db.begin_transaction()
        with pytest.raises(StoreError) as info:
            tr.set(b"toolong", b"v")
        assert info.value.code == StoreErrorCode.KEY_TOO_LARGE
        with pytest.raises(StoreError) as info:
            tr.set(b"k", b"toolong")
        assert info.value.code == StoreErrorCode.VALUE_TOO_LARGE


class TestFailureModel:
    @pytest.mark.asyncio
    async def test_conflict_on_read_key(self, db):
        tr = db.begin_transaction()
        await tr.get(b"a")
        await _put(db, {b"a": b"other"})
        tr.set(b"b", b"1")
        with pytest.raises(StoreError) as info:
            await tr.commit()
        assert info.value.code == StoreErrorCode.NOT_COMMITTED
        assert db.conflicts == 1
        assert b"b" not in db.snapshot()

    @pytest.mark.asyncio
    async def test_conflict_on_read_range(self, db):
        tr = db.begin_transaction()
        await tr.get_range(KeyRange(b"a", b"m"))
        await _put(db, {b"c": b"new"})
        tr.set(b"z", b"1")
        with pytest.raises(StoreError) as info:
            await tr.commit()
        assert info.value.code == StoreErrorCode.NOT_COMMITTED

    @pytest.mark.asyncio
    async def test_blind_writes_do_not_conflict(self, db):
        tr = db.begin_transaction()
        tr.set(b"a", b"mine")
        await _put(db, {b"a": b"theirs"})
        await tr.commit()
        assert db.snapshot()[b"a"] == b"mine"

    @pytest.mark.asyncio
    async def test_past_version(self):
        clock = FakeClock()
        db = MemoryDatabase(max_transaction_age=5.0, clock=clock)
        tr = db.begin_transaction()
        await tr.get(b"a")
        clock.now = 6.0
        with pytest.raises(StoreError) as info:
            await tr.get(b"a")
        assert info.value.code == StoreErrorCode.PAST_VERSION

    @pytest.mark.asyncio
    async def test_transaction_too_large(self):
        db = MemoryDatabase(max_transaction_size=100)
        tr = db.begin_transaction()
        for i in range(10):
            tr.set(b"k%d" % i, b"x" * 20)
        assert tr.size > 100
        with pytest.raises(StoreError) as info:
            await tr.commit()
        assert info.value.code == StoreErrorCode.TRANSACTION_TOO_LARGE

    @pytest.mark.asyncio
    async def test_injected_errors_are_consumed_in_order(self, db):
        db.inject_error(StoreErrorCode.NOT_COMMITTED)
        db.inject_error(StoreErrorCode.PROCESS_BEHIND, on="read")
        tr = db.begin_transaction()
        with pytest.raises(StoreError) as info:
            await tr.get(b"a")
        assert info.value.code == StoreErrorCode.PROCESS_BEHIND
        tr.set(b"a", b"1")
        with pytest.raises(StoreError) as info:
            await tr.commit()
        assert info.value.code == StoreErrorCode.NOT_COMMITTED
        await tr.commit()
        assert db.snapshot() == {b"a": b"1"}

    def test_inject_error_rejects_unknown_stage(self, db):
        with pytest.raises(ValueError):
            db.inject_error(StoreErrorCode.NOT_COMMITTED, on="begin")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_reset_keeps_identity(self, db):
        tr = db.begin_transaction()
        tx_id = tr.id
        tr.set(b"a", b"1")
        tr.reset()
        assert tr.id == tx_id
        assert tr.size == 0
        await tr.commit()
        assert db.snapshot() == {}

    @pytest.mark.asyncio
    async def test_on_error_resets_for_retryable(self, db):
        tr = db.begin_transaction()
        tr.set(b"a", b"1")
        await tr.on_error(StoreError(StoreErrorCode.NOT_COMMITTED))
        assert tr.size == 0

    @pytest.mark.asyncio
    async def test_on_error_reraises_fatal(self, db):
        tr = db.begin_transaction()
        with pytest.raises(StoreError):
            await tr.on_error(StoreError(StoreErrorCode.KEY_TOO_LARGE))

    @pytest.mark.asyncio
    async def test_on_error_reraises_transaction_too_large(self, db):
        tr = db.begin_transaction()
        tr.set(b"a", b"1")
        with pytest.raises(StoreError) as info:
            await tr.on_error(StoreError(StoreErrorCode.TRANSACTION_TOO_LARGE))
        assert info.value.code == StoreErrorCode.TRANSACTION_TOO_LARGE
        assert tr.size > 0

    def test_transactions_get_distinct_ids(self, db):
        ids = {db.begin_transaction().id for _ in range(5)}
        assert len(ids) == 5
        assert db.transactions_started == 5
