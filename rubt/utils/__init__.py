"""Utility helpers for rubt."""

from __future__ import annotations

from rubt.utils.bitfield import Bitfield, bitfield_length, count_bits, parse_bitfield

__all__ = ["Bitfield", "bitfield_length", "count_bits", "parse_bitfield"]
