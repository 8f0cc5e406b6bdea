"""Tests for bitfield helpers."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from rubt.utils import Bitfield, bitfield_length, count_bits, parse_bitfield

pytestmark = [pytest.mark.unit]


class TestBitfieldHelpers:
    """Test module-level helpers."""

    @pytest.mark.parametrize(("pieces", "expected"), [(1, 1), (8, 1), (9, 2), (16, 2), (17, 3)])
    def test_bitfield_length(self, pieces, expected):
        assert bitfield_length(pieces) == expected

    def test_parse_bitfield_is_msb_first(self):
        """Piece 0 is the high bit of byte 0."""
        assert parse_bitfield(b"\x80\x01", 16) == {0, 15}
        assert parse_bitfield(b"\x40", 8) == {1}

    def test_parse_bitfield_ignores_bits_past_end(self):
        assert parse_bitfield(b"\xff", 3) == {0, 1, 2}
        assert parse_bitfield(b"", 10) == set()

    def test_count_bits(self):
        assert count_bits(b"\xff\x01") == 9
        assert count_bits(b"") == 0


class TestBitfield:
    """Test cases for the mutable Bitfield."""

    def test_set_get_clear(self):
        bitfield = Bitfield(11)
        bitfield.set(0)
        bitfield.set(10)
        assert bitfield.get(0)
        assert 10 in bitfield
        assert bitfield.to_bytes() == b"\x80\x20"
        bitfield.clear(0)
        assert not bitfield.get(0)
        assert bitfield.indices() == {10}
        assert bitfield.count() == 1

    def test_out_of_range(self):
        bitfield = Bitfield(4)
        with pytest.raises(IndexError):
            bitfield.set(4)
        with pytest.raises(IndexError):
            bitfield.get(-1)
        assert 4 not in bitfield

    def test_all_set(self):
        bitfield = Bitfield(3)
        for i in range(3):
            bitfield.set(i)
        assert bitfield.all_set()
        assert bitfield.to_bytes() == b"\xe0"
        assert len(bitfield) == 3

    def test_needs_pieces(self):
        with pytest.raises(ValueError, match="at least one piece"):
            Bitfield(0)

    def test_from_bytes_validates(self):
        assert Bitfield.from_bytes(b"\xe0", 3).indices() == {0, 1, 2}
        with pytest.raises(ValueError, match="does not match"):
            Bitfield.from_bytes(b"\x00\x00", 3)
        with pytest.raises(ValueError, match="pad bits"):
            Bitfield.from_bytes(b"\xf0", 3)


@pytest.mark.property
@given(st.integers(min_value=1, max_value=200).flatmap(
    lambda n: st.tuples(st.just(n), st.sets(st.integers(min_value=0, max_value=n - 1))),
))
def test_pad_bits_stay_clear(case):
    """Any set of pieces yields a wire form with zero pad bits."""
    num_pieces, indices = case
    bitfield = Bitfield(num_pieces)
    for index in indices:
        bitfield.set(index)
    data = bitfield.to_bytes()
    assert len(data) == bitfield_length(num_pieces)
    assert parse_bitfield(data, len(data) * 8) == indices
