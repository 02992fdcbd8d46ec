"""
Canonical protocol definitions for the storage collaborator.

kvbulk never talks to a concrete storage engine. Executors and bulk
operations depend on the shapes below, and any store that matches them,
whether the in-process :class:`~kvbulk.storage.memory.MemoryDatabase` or a
binding to a real cluster, can be driven by the same code.

Architecture:
    ::

        protocols.py (YOU ARE HERE)
        ├── ReadTransaction  — get / get_range / reset / on_error / size
        ├── Transaction      — ReadTransaction + set / clear / clear_range / commit
        └── Database         — begin_transaction(read_only=...)

    Consumers:
        execution/retry.py, execution/generation.py, bulk/operations.py

Guardrails:
    ❌ DON'T: Hand a handler a write-capable object for read-only work
    ✅ DO: Open read-only transactions with ``read_only=True``; the store
       rejects writes even if the handler ignores the declared type

    ❌ DON'T: Add implementation logic to protocol classes
    ✅ DO: Keep protocols pure contracts, implementations live in storage/

Tags:
    protocol, transaction, database, contracts, kvbulk

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from kvbulk.core.keys import KeyRange


@runtime_checkable
class ReadTransaction(Protocol):
    """Read capability of a store transaction."""

    @property
    def id(self) -> int:
        """Identity of the transaction; stable across :meth:`reset`."""
        ...

    @property
    def read_only(self) -> bool:
        ...

    @property
    def size(self) -> int:
        """Bytes of mutations currently buffered."""
        ...

    async def get(self, key: bytes) -> bytes | None:
        ...

    async def get_range(self, key_range: KeyRange, *, limit: int = 0) -> list[tuple[bytes, bytes]]:
        """Pairs within ``key_range`` in ascending key order (``limit=0``: no limit)."""
        ...

    def reset(self) -> None:
        """Discard buffered state; the next read uses a new read version."""
        ...

    async def on_error(self, error: BaseException) -> None:
        """Re-raise ``error`` if it is not retryable, otherwise reset."""
        ...


@runtime_checkable
class Transaction(ReadTransaction, Protocol):
    """Write capability of a store transaction."""

    def set(self, key: bytes, value: bytes) -> None:
        ...

    def clear(self, key: bytes) -> None:
        ...

    def clear_range(self, key_range: KeyRange) -> None:
        ...

    async def commit(self) -> None:
        ...


@runtime_checkable
class Database(Protocol):
    """Handle to an ordered key-value store."""

    def begin_transaction(self, *, read_only: bool = False) -> Transaction:
        ...


__all__ = ["Database", "ReadTransaction", "Transaction"]
