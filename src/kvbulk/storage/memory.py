"""In-process multi-version key-value store.

WHY
───
The bulk engine only needs "begin a transaction, read, write, commit, tell me
why it failed". ``MemoryDatabase`` provides exactly that with the same
failure model as a real optimistic-concurrency store, so executors and bulk
operations can be exercised end to end in tests and in ``kvbulk bench``
without a cluster.

ARCHITECTURE
────────────
::

    MemoryDatabase
      ├── _history[key]  ─ [(commit_version, value | None), ...]
      ├── _keys          ─ sorted key index (bisect)
      ├── _range_clears  ─ [(commit_version, KeyRange), ...]
      └── begin_transaction(read_only=...) ─► MemoryTransaction

    MemoryTransaction
      ├── read version acquired lazily on first read (or at commit)
      ├── buffered mutations replayed over the snapshot (read-your-writes)
      ├── read conflict keys / ranges checked at commit
      └── reset() keeps the identity, drops everything else

FAILURE MODEL
─────────────
- NOT_COMMITTED          a key or range read was written after the read version
- PAST_VERSION           the read version is older than ``max_transaction_age``
- TRANSACTION_TOO_LARGE  buffered mutations exceed ``max_transaction_size``
- KEY/VALUE_TOO_LARGE    raised by ``set`` for oversized keys or values
- anything scheduled with :meth:`MemoryDatabase.inject_error`

Example::

    db = MemoryDatabase()
    tr = db.begin_transaction()
    tr.set(b"hello", b"world")
    await tr.commit()
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from kvbulk.core.errors import (
    ErrorClass,
    InvalidOperationError,
    StoreError,
    StoreErrorCode,
    classify_error,
    unwrap_error,
)
from kvbulk.core.keys import KeyRange
from kvbulk.core.logging import get_logger

logger = get_logger(__name__)

_transaction_ids = itertools.count(1)

# Fixed per-mutation overhead counted towards the transaction size.
_MUTATION_OVERHEAD = 24


class MemoryDatabase:
    """Ordered MVCC key-value store living in process memory.

    Parameters
    ----------
    max_transaction_age : float
        Seconds a read version stays valid (default 5.0).
    max_transaction_size : int
        Byte limit for the mutations of one commit (default 10 MB).
    max_key_size, max_value_size : int
        Per-key and per-value byte limits.
    latency : float
        Simulated delay, in seconds, added to every read and commit.
    clock : callable
        Monotonic clock, injectable for deterministic tests.
    """

    def __init__(
        self,
        *,
        max_transaction_age: float = 5.0,
        max_transaction_size: int = 10_000_000,
        max_key_size: int = 10_000,
        max_value_size: int = 100_000,
        latency: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_transaction_age = max_transaction_age
        self.max_transaction_size = max_transaction_size
        self.max_key_size = max_key_size
        self.max_value_size = max_value_size
        self.latency = latency
        self.clock = clock

        self._lock = threading.Lock()
        self._version = 0
        self._history: dict[bytes, list[tuple[int, bytes | None]]] = {}
        self._keys: list[bytes] = []
        self._range_clears: list[tuple[int, KeyRange]] = []
        self._faults: dict[str, deque[StoreErrorCode | int]] = {
            "read": deque(),
            "commit": deque(),
        }

        self.transactions_started = 0
        self.commits = 0
        self.conflicts = 0

    # ── Transactions ─────────────────────────────────────────────────

    def begin_transaction(self, *, read_only: bool = False) -> MemoryTransaction:
        self.transactions_started += 1
        return MemoryTransaction(self, read_only=read_only)

    @property
    def version(self) -> int:
        """Latest committed version."""
        return self._version

    # ── Fault injection ──────────────────────────────────────────────

    def inject_error(self, code: StoreErrorCode | int, *, count: int = 1, on: str = "commit") -> None:
        """Make the next ``count`` reads or commits fail with ``code``."""
        if on not in self._faults:
            raise ValueError(f"on must be one of {sorted(self._faults)}")
        for _ in range(count):
            self._faults[on].append(code)

    def _take_fault(self, stage: str) -> None:
        with self._lock:
            faults = self._faults[stage]
            code = faults.popleft() if faults else None
        if code is not None:
            raise StoreError(code)

    # ── Snapshot reads ───────────────────────────────────────────────

    def _value_at(self, key: bytes, version: int) -> bytes | None:
        history = self._history.get(key)
        if not history:
            return None
        idx = bisect.bisect_right(history, version, key=lambda entry: entry[0])
        if idx == 0:
            return None
        return history[idx - 1][1]

    def _range_at(self, key_range: KeyRange, version: int) -> list[tuple[bytes, bytes]]:
        lo = bisect.bisect_left(self._keys, key_range.begin)
        hi = bisect.bisect_left(self._keys, key_range.end)
        result = []
        for key in self._keys[lo:hi]:
            value = self._value_at(key, version)
            if value is not None:
                result.append((key, value))
        return result

    def snapshot(self) -> dict[bytes, bytes]:
        """Latest committed contents as a plain dict."""
        with self._lock:
            values = ((key, self._value_at(key, self._version)) for key in self._keys)
            return {key: value for key, value in values if value is not None}

    def dump(self, key_range: KeyRange) -> list[tuple[bytes, bytes]]:
        """Latest committed pairs within ``key_range``, ascending."""
        with self._lock:
            return self._range_at(key_range, self._version)

    # ── Commit path ──────────────────────────────────────────────────

    def _written_since(self, key: bytes, version: int) -> bool:
        history = self._history.get(key)
        if history and history[-1][0] > version:
            return True
        return any(v > version and key in r for v, r in self._range_clears)

    def _range_written_since(self, key_range: KeyRange, version: int) -> bool:
        lo = bisect.bisect_left(self._keys, key_range.begin)
        hi = bisect.bisect_left(self._keys, key_range.end)
        for key in self._keys[lo:hi]:
            if self._history[key][-1][0] > version:
                return True
        return any(
            v > version and r.begin < key_range.end and key_range.begin < r.end
            for v, r in self._range_clears
        )

    def _apply(self, tr: MemoryTransaction) -> int:
        with self._lock:
            if tr._read_version is not None:
                stale = any(self._written_since(k, tr._read_version) for k in tr._read_keys) or any(
                    self._range_written_since(r, tr._read_version) for r in tr._read_ranges
                )
                if stale:
                    self.conflicts += 1
                    raise StoreError(StoreErrorCode.NOT_COMMITTED)

            self._version += 1
            version = self._version
            for op in tr._ops:
                if op[0] == "set":
                    self._write(op[1], op[2], version)
                elif op[0] == "clear":
                    if op[1] in self._history:
                        self._write(op[1], None, version)
                else:
                    key_range = op[1]
                    for key, _ in self._range_at(key_range, version):
                        self._write(key, None, version)
                    self._range_clears.append((version, key_range))
            self.commits += 1
            return version

    def _write(self, key: bytes, value: bytes | None, version: int) -> None:
        history = self._history.get(key)
        if history is None:
            history = self._history[key] = []
            bisect.insort(self._keys, key)
        if history and history[-1][0] == version:
            history[-1] = (version, value)
        else:
            history.append((version, value))


class MemoryTransaction:
    """Transaction over a :class:`MemoryDatabase`.

    Implements both the read and the write protocol. The capability split is
    enforced at runtime: a transaction opened read-only rejects every
    mutation with :class:`InvalidOperationError`.
    """

    def __init__(self, db: MemoryDatabase, *, read_only: bool = False) -> None:
        self._db = db
        self._id = next(_transaction_ids)
        self._read_only = read_only
        self._init_state()

    def _init_state(self) -> None:
        self._read_version: int | None = None
        self._read_started = 0.0
        self._ops: list[tuple] = []
        self._read_keys: set[bytes] = set()
        self._read_ranges: list[KeyRange] = []
        self._size = 0
        self._committed = False
        self._committed_version: int | None = None

    @property
    def id(self) -> int:
        return self._id

    @property
    def read_only(self) -> bool:
        return self._read_only

    @property
    def size(self) -> int:
        return self._size

    @property
    def committed_version(self) -> int | None:
        return self._committed_version

    # ── Reads ────────────────────────────────────────────────────────

    async def _begin_read(self) -> int:
        if self._db.latency:
            await asyncio.sleep(self._db.latency)
        else:
            await asyncio.sleep(0)
        self._db._take_fault("read")
        if self._read_version is None:
            self._read_version = self._db.version
            self._read_started = self._db.clock()
        self._check_age()
        return self._read_version

    def _check_age(self) -> None:
        if self._read_version is not None:
            age = self._db.clock() - self._read_started
            if age > self._db.max_transaction_age:
                raise StoreError(StoreErrorCode.PAST_VERSION)

    async def get(self, key: bytes) -> bytes | None:
        version = await self._begin_read()
        self._read_keys.add(key)
        value = self._db._value_at(key, version)
        for op in self._ops:
            if op[0] == "set" and op[1] == key:
                value = op[2]
            elif op[0] == "clear" and op[1] == key:
                value = None
            elif op[0] == "clear_range" and key in op[1]:
                value = None
        return value

    async def get_range(self, key_range: KeyRange, *, limit: int = 0) -> list[tuple[bytes, bytes]]:
        version = await self._begin_read()
        merged = dict(self._db._range_at(key_range, version))
        for op in self._ops:
            if op[0] == "set" and op[1] in key_range:
                merged[op[1]] = op[2]
            elif op[0] == "clear":
                merged.pop(op[1], None)
            elif op[0] == "clear_range":
                for key in [k for k in merged if k in op[1]]:
                    del merged[key]
        pairs = sorted(merged.items())
        if limit > 0 and len(pairs) > limit:
            pairs = pairs[:limit]
            # Only the part actually returned becomes a read conflict range.
            self._read_ranges.append(KeyRange(key_range.begin, pairs[-1][0] + b"\x00"))
        else:
            self._read_ranges.append(key_range)
        return pairs

    # ── Writes ───────────────────────────────────────────────────────

    def _ensure_writable(self) -> None:
        if self._read_only:
            raise InvalidOperationError("Cannot write to a read-only transaction")
        if self._committed:
            raise InvalidOperationError("The transaction has already been committed")

    def set(self, key: bytes, value: bytes) -> None:
        self._ensure_writable()
        if len(key) > self._db.max_key_size:
            raise StoreError(StoreErrorCode.KEY_TOO_LARGE)
        if len(value) > self._db.max_value_size:
            raise StoreError(StoreErrorCode.VALUE_TOO_LARGE)
        self._ops.append(("set", key, value))
        self._size += len(key) + len(value) + _MUTATION_OVERHEAD

    def clear(self, key: bytes) -> None:
        self._ensure_writable()
        self._ops.append(("clear", key))
        self._size += len(key) + _MUTATION_OVERHEAD

    def clear_range(self, key_range: KeyRange) -> None:
        self._ensure_writable()
        self._ops.append(("clear_range", key_range))
        self._size += len(key_range.begin) + len(key_range.end) + _MUTATION_OVERHEAD

    async def commit(self) -> None:
        if self._committed:
            raise InvalidOperationError("The transaction has already been committed")
        if self._db.latency:
            await asyncio.sleep(self._db.latency)
        else:
            await asyncio.sleep(0)
        self._db._take_fault("commit")
        if self._read_only or not self._ops:
            self._committed = True
            return
        self._check_age()
        if self._size > self._db.max_transaction_size:
            raise StoreError(StoreErrorCode.TRANSACTION_TOO_LARGE)
        self._committed_version = self._db._apply(self)
        self._committed = True

    # ── Lifecycle ────────────────────────────────────────────────────

    def reset(self) -> None:
        self._init_state()

    async def on_error(self, error: BaseException) -> None:
        error = unwrap_error(error)
        if classify_error(error) is ErrorClass.FATAL:
            raise error
        logger.debug(
            "memory.transaction.on_error",
            transaction_id=self._id,
            code=int(error.code),
        )
        self.reset()

    def __repr__(self) -> str:
        mode = "ro" if self._read_only else "rw"
        return f"MemoryTransaction(id={self._id}, {mode}, ops={len(self._ops)}, size={self._size})"


__all__ = ["MemoryDatabase", "MemoryTransaction"]
