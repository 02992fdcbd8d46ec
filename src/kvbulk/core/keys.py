"""Ordered byte keys and half-open key ranges.

Keys are plain ``bytes`` compared byte-wise. A :class:`KeyRange` is the
half-open interval ``[begin, end)``; ranges built from a prefix cover every
key that starts with it.
"""

from __future__ import annotations

from dataclasses import dataclass

from kvbulk.core.errors import InvalidOperationError


def strinc(key: bytes) -> bytes:
    """Return the first key that sorts after every key starting with ``key``.

    Trailing ``0xFF`` bytes are dropped before incrementing the last byte.

    >>> strinc(b"ab")
    b'ac'
    >>> strinc(b"a\\xff")
    b'b'
    """
    stripped = key.rstrip(b"\xff")
    if not stripped:
        raise InvalidOperationError("Key must contain at least one byte not equal to 0xFF")
    return stripped[:-1] + bytes([stripped[-1] + 1])


def key_after(key: bytes) -> bytes:
    """Smallest key strictly greater than ``key``."""
    return key + b"\x00"


@dataclass(frozen=True)
class KeyRange:
    """Half-open range ``[begin, end)`` of byte keys."""

    begin: bytes
    end: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.begin, bytes) or not isinstance(self.end, bytes):
            raise TypeError("KeyRange bounds must be bytes")

    @classmethod
    def starts_with(cls, prefix: bytes) -> KeyRange:
        """Range of every key that starts with ``prefix``."""
        if not prefix:
            return cls(b"", b"\xff")
        return cls(prefix, strinc(prefix))

    @property
    def empty(self) -> bool:
        return self.begin >= self.end

    def __contains__(self, key: bytes) -> bool:
        return self.begin <= key < self.end

    def with_begin(self, begin: bytes) -> KeyRange:
        """Same end, new lower bound."""
        return KeyRange(begin, self.end)

    def __repr__(self) -> str:
        return f"KeyRange({self.begin!r}, {self.end!r})"


__all__ = ["KeyRange", "key_after", "strinc"]
