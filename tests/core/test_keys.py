"""Tests for byte keys and key ranges."""

import pytest

from kvbulk.core.errors import InvalidOperationError
from kvbulk.core.keys import KeyRange, key_after, strinc


class TestStrinc:
    def test_increments_last_byte(self):
        assert strinc(b"ab") == b"ac"

    def test_drops_trailing_ff(self):
        assert strinc(b"a\xff\xff") == b"b"

    def test_all_ff_is_rejected(self):
        with pytest.raises(InvalidOperationError):
            strinc(b"\xff\xff")

    def test_empty_is_rejected(self):
        with pytest.raises(InvalidOperationError):
            strinc(b"")


class TestKeyRange:
    def test_starts_with_covers_prefix(self):
        key_range = KeyRange.starts_with(b"user/")
        assert b"user/" in key_range
        assert b"user/zzz" in key_range
        assert b"user0" not in key_range
        assert b"usep" not in key_range

    def test_half_open(self):
        key_range = KeyRange(b"a", b"c")
        assert b"a" in key_range
        assert b"b\xff" in key_range
        assert b"c" not in key_range

    def test_empty(self):
        assert KeyRange(b"b", b"b").empty
        assert KeyRange(b"c", b"a").empty
        assert not KeyRange(b"a", b"b").empty

    def test_with_begin_keeps_end(self):
        key_range = KeyRange(b"a", b"z").with_begin(key_after(b"m"))
        assert key_range == KeyRange(b"m\x00", b"z")
        assert b"m" not in key_range

    def test_bounds_must_be_bytes(self):
        with pytest.raises(TypeError):
            KeyRange("a", b"b")
