"""Store implementations."""

from kvbulk.storage.memory import MemoryDatabase, MemoryTransaction

__all__ = ["MemoryDatabase", "MemoryTransaction"]
