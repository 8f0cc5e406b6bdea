"""Bencoding for metainfo files and tracker responses.

Integers, byte strings, lists and dictionaries are supported. Decoded
strings stay ``bytes``; dictionary keys are ``bytes`` as well.
"""

from __future__ import annotations

from typing import Any

from rubt.exceptions import BencodeError


class BencodeDecodeError(BencodeError):
    """Raised when input is not valid bencode."""


class BencodeEncodeError(BencodeError):
    """Raised when a value cannot be bencoded."""


class BencodeDecoder:
    """Decoder for a single bencoded value."""

    def __init__(self, data: bytes):
        """Initialize decoder over ``data``."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            msg = f"Expected bytes, got {type(data).__name__}"
            raise BencodeDecodeError(msg)
        self.data = bytes(data)
        self.pos = 0

    def decode(self) -> Any:
        """Decode the whole input.

        Raises:
            BencodeDecodeError: If the input is malformed or has trailing data
        """
        value = self._decode_next()
        if self.pos != len(self.data):
            msg = f"Trailing data at offset {self.pos}"
            raise BencodeDecodeError(msg)
        return value

    def _peek(self) -> int:
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeDecodeError(msg)
        return self.data[self.pos]

    def _decode_next(self) -> Any:
        token = self._peek()
        if token == ord("i"):
            return self._decode_int()
        if token == ord("l"):
            return self._decode_list()
        if token == ord("d"):
            return self._decode_dict()
        if ord("0") <= token <= ord("9"):
            return self._decode_bytes()
        msg = f"Invalid token {chr(token)!r} at offset {self.pos}"
        raise BencodeDecodeError(msg)

    def _decode_int(self) -> int:
        end = self.data.find(b"e", self.pos)
        if end == -1:
            msg = "Unterminated integer"
            raise BencodeDecodeError(msg)
        raw = self.data[self.pos + 1 : end]
        if (
            not raw
            or raw == b"-0"
            or (raw.startswith(b"0") and raw != b"0")
            or raw.startswith(b"-0")
        ):
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg)
        try:
            value = int(raw)
        except ValueError as e:
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg) from e
        self.pos = end + 1
        return value

    def _decode_bytes(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = "Missing ':' in string length"
            raise BencodeDecodeError(msg)
        raw_len = self.data[self.pos : colon]
        if not raw_len.isdigit() or (raw_len.startswith(b"0") and raw_len != b"0"):
            msg = f"Invalid string length {raw_len!r}"
            raise BencodeDecodeError(msg)
        length = int(raw_len)
        start = colon + 1
        if start + length > len(self.data):
            msg = f"String of length {length} runs past end of data"
            raise BencodeDecodeError(msg)
        self.pos = start + length
        return self.data[start : self.pos]

    def _decode_list(self) -> list[Any]:
        self.pos += 1
        items = []
        while self._peek() != ord("e"):
            items.append(self._decode_next())
        self.pos += 1
        return items

    def _decode_dict(self) -> dict[bytes, Any]:
        self.pos += 1
        result: dict[bytes, Any] = {}
        while self._peek() != ord("e"):
            if not ord("0") <= self._peek() <= ord("9"):
                msg = f"Dictionary key must be a string at offset {self.pos}"
                raise BencodeDecodeError(msg)
            key = self._decode_bytes()
            result[key] = self._decode_next()
        self.pos += 1
        return result


class BencodeEncoder:
    """Encoder producing canonical bencode (sorted dictionary keys)."""

    def encode(self, value: Any) -> bytes:
        """Encode ``value`` to bencode bytes."""
        out = bytearray()
        self._encode_into(value, out)
        return bytes(out)

    def _encode_into(self, value: Any, out: bytearray) -> None:
        if isinstance(value, bool):
            msg = "Booleans cannot be bencoded"
            raise BencodeEncodeError(msg)
        if isinstance(value, int):
            out += b"i%de" % value
        elif isinstance(value, (bytes, bytearray)):
            out += b"%d:" % len(value)
            out += value
        elif isinstance(value, str):
            self._encode_into(value.encode("utf-8"), out)
        elif isinstance(value, (list, tuple)):
            out += b"l"
            for item in value:
                self._encode_into(item, out)
            out += b"e"
        elif isinstance(value, dict):
            out += b"d"
            keys = {}
            for key in value:
                raw = key.encode("utf-8") if isinstance(key, str) else key
                if not isinstance(raw, (bytes, bytearray)):
                    msg = f"Dictionary keys must be str or bytes, got {type(key).__name__}"
                    raise BencodeEncodeError(msg)
                keys[bytes(raw)] = value[key]
            for raw in sorted(keys):
                self._encode_into(raw, out)
                self._encode_into(keys[raw], out)
            out += b"e"
        else:
            msg = f"Cannot bencode {type(value).__name__}"
            raise BencodeEncodeError(msg)


def decode(data: bytes) -> Any:
    """Decode a bencoded value."""
    return BencodeDecoder(data).decode()


def encode(value: Any) -> bytes:
    """Encode a value to bencode."""
    return BencodeEncoder().encode(value)
