"""Bitfield handling for BitTorrent piece availability.

Bits are numbered big-endian within each byte: piece 0 is the most
significant bit of byte 0. Trailing pad bits are always zero.
"""

from __future__ import annotations


def bitfield_length(num_pieces: int) -> int:
    """Number of bytes needed to hold ``num_pieces`` bits."""
    return (num_pieces + 7) // 8


def parse_bitfield(bitfield: bytes, num_pieces: int) -> set[int]:
    """Parse a bitfield into a set of piece indices (bits set to 1).

    Bits beyond ``num_pieces`` are ignored.
    """
    pieces: set[int] = set()
    if not bitfield or num_pieces <= 0:
        return pieces
    for byte_idx, byte_val in enumerate(bitfield):
        if not byte_val:
            continue
        for bit_idx in range(8):
            piece_idx = byte_idx * 8 + bit_idx
            if piece_idx >= num_pieces:
                return pieces
            if byte_val & (0x80 >> bit_idx):
                pieces.add(piece_idx)
    return pieces


def count_bits(bitfield: bytes) -> int:
    """Count the number of set bits in a bitfield."""
    if not bitfield:
        return 0
    return sum(bin(b).count("1") for b in bitfield)


class Bitfield:
    """Mutable fixed-size bitfield over ``num_pieces`` pieces."""

    def __init__(self, num_pieces: int):
        if num_pieces <= 0:
            msg = f"Bitfield needs at least one piece, got {num_pieces}"
            raise ValueError(msg)
        self.num_pieces = num_pieces
        self._bits = bytearray(bitfield_length(num_pieces))

    @classmethod
    def from_bytes(cls, data: bytes, num_pieces: int) -> Bitfield:
        """Build a bitfield from its wire form.

        Raises:
            ValueError: If the length is wrong or a pad bit is set
        """
        bitfield = cls(num_pieces)
        if len(data) != len(bitfield._bits):
            msg = f"Bitfield length {len(data)} does not match {num_pieces} pieces"
            raise ValueError(msg)
        spare = len(data) * 8 - num_pieces
        if spare and data[-1] & ((1 << spare) - 1):
            msg = "Bitfield has pad bits set"
            raise ValueError(msg)
        bitfield._bits[:] = data
        return bitfield

    def _check(self, index: int) -> None:
        if not 0 <= index < self.num_pieces:
            msg = f"Piece index {index} out of range"
            raise IndexError(msg)

    def get(self, index: int) -> bool:
        """Return whether the bit for ``index`` is set."""
        self._check(index)
        return bool(self._bits[index >> 3] & (0x80 >> (index & 7)))

    def set(self, index: int) -> None:
        self._check(index)
        self._bits[index >> 3] |= 0x80 >> (index & 7)

    def clear(self, index: int) -> None:
        self._check(index)
        self._bits[index >> 3] &= ~(0x80 >> (index & 7)) & 0xFF

    def count(self) -> int:
        """Number of set bits."""
        return count_bits(self._bits)

    def all_set(self) -> bool:
        return self.count() == self.num_pieces

    def indices(self) -> set[int]:
        """Indices of all set bits."""
        return parse_bitfield(bytes(self._bits), self.num_pieces)

    def to_bytes(self) -> bytes:
        return bytes(self._bits)

    def __contains__(self, index: int) -> bool:
        return 0 <= index < self.num_pieces and self.get(index)

    def __len__(self) -> int:
        return self.num_pieces

    def __repr__(self) -> str:
        return f"Bitfield({self.count()}/{self.num_pieces})"
