"""Peer wire protocol codec.

Every message frames as a 4-byte big-endian length, a 1-byte message ID
and a payload. A zero length is a keep-alive. ``decode`` methods take a
complete frame including the length prefix.
"""

from __future__ import annotations

import struct

from rubt.exceptions import HandshakeError, MessageError
from rubt.models import MessageType

HANDSHAKE_LENGTH = 68
LENGTH_PREFIX = struct.Struct("!I")


class Handshake:
    """BitTorrent handshake message."""

    PROTOCOL_STRING: bytes = b"BitTorrent protocol"
    RESERVED_BYTES: bytes = b"\x00" * 8

    def __init__(self, info_hash: bytes, peer_id: bytes) -> None:
        """Initialize handshake.

        Args:
            info_hash: 20-byte SHA-1 hash of info dictionary
            peer_id: 20-byte peer ID
        """
        if len(info_hash) != 20:
            msg = f"Info hash must be 20 bytes, got {len(info_hash)}"
            raise HandshakeError(msg)
        if len(peer_id) != 20:
            msg = f"Peer ID must be 20 bytes, got {len(peer_id)}"
            raise HandshakeError(msg)

        self.info_hash: bytes = info_hash
        self.peer_id: bytes = peer_id

    def encode(self) -> bytes:
        """Encode handshake to bytes.

        Format: <pstrlen><pstr><reserved><info_hash><peer_id>, 68 bytes.
        """
        return (
            struct.pack("B", len(self.PROTOCOL_STRING))
            + self.PROTOCOL_STRING
            + self.RESERVED_BYTES
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def decode(cls, data: bytes) -> Handshake:
        """Decode handshake from bytes.

        Reserved bytes are not checked.

        Raises:
            HandshakeError: If data is invalid
        """
        if len(data) != HANDSHAKE_LENGTH:
            msg = f"Handshake must be {HANDSHAKE_LENGTH} bytes, got {len(data)}"
            raise HandshakeError(msg)

        protocol_len = data[0]
        if protocol_len != len(cls.PROTOCOL_STRING):
            msg = f"Invalid protocol length: {protocol_len}"
            raise HandshakeError(msg)

        protocol_string = data[1:20]
        if protocol_string != cls.PROTOCOL_STRING:
            msg = f"Invalid protocol string: {protocol_string!r}"
            raise HandshakeError(msg)

        return cls(data[28:48], data[48:68])


class PeerMessage:
    """Base class for peer messages."""

    message_id: int = -1

    def encode(self) -> bytes:
        """Encode message to a full frame."""
        payload = self._payload()
        return LENGTH_PREFIX.pack(1 + len(payload)) + bytes([self.message_id]) + payload

    def _payload(self) -> bytes:
        return b""

    @classmethod
    def _split_frame(cls, data: bytes) -> bytes:
        """Validate the frame header and return the payload."""
        if len(data) < 5:
            msg = f"{cls.__name__} frame too short: {len(data)} bytes"
            raise MessageError(msg)
        length = LENGTH_PREFIX.unpack_from(data)[0]
        if len(data) != 4 + length:
            msg = f"{cls.__name__} length mismatch: header says {length}, got {len(data) - 4}"
            raise MessageError(msg)
        if data[4] != cls.message_id:
            msg = f"Expected message ID {cls.message_id}, got {data[4]}"
            raise MessageError(msg)
        return data[5:]

    def __eq__(self, other) -> bool:
        return type(self) is type(other) and self.__dict__ == other.__dict__

    def __hash__(self) -> int:
        return hash((type(self), tuple(sorted(self.__dict__.items()))))

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{k}={v!r}" if not isinstance(v, bytes) else f"{k}=<{len(v)} bytes>"
            for k, v in self.__dict__.items()
        )
        return f"{type(self).__name__}({fields})"


class KeepAliveMessage(PeerMessage):
    """Keep-alive message (length = 0)."""

    def encode(self) -> bytes:
        """Encode keep-alive message."""
        return LENGTH_PREFIX.pack(0)

    @classmethod
    def decode(cls, data: bytes) -> KeepAliveMessage:
        """Decode keep-alive message."""
        if data != LENGTH_PREFIX.pack(0):
            msg = f"Invalid keep-alive frame: {data!r}"
            raise MessageError(msg)
        return cls()


class _StateMessage(PeerMessage):
    """Message with no payload."""

    @classmethod
    def decode(cls, data: bytes):
        """Decode a payload-less message."""
        payload = cls._split_frame(data)
        if payload:
            msg = f"{cls.__name__} must not carry a payload"
            raise MessageError(msg)
        return cls()


class ChokeMessage(_StateMessage):
    """Choke message."""

    message_id = MessageType.CHOKE


class UnchokeMessage(_StateMessage):
    """Unchoke message."""

    message_id = MessageType.UNCHOKE


class InterestedMessage(_StateMessage):
    """Interested message."""

    message_id = MessageType.INTERESTED


class NotInterestedMessage(_StateMessage):
    """Not interested message."""

    message_id = MessageType.NOT_INTERESTED


class HaveMessage(PeerMessage):
    """Have message (announces that peer has a piece)."""

    message_id = MessageType.HAVE

    def __init__(self, piece_index: int):
        self.piece_index = piece_index

    def _payload(self) -> bytes:
        return struct.pack("!I", self.piece_index)

    @classmethod
    def decode(cls, data: bytes) -> HaveMessage:
        """Decode have message."""
        payload = cls._split_frame(data)
        if len(payload) != 4:
            msg = f"Have payload must be 4 bytes, got {len(payload)}"
            raise MessageError(msg)
        return cls(struct.unpack("!I", payload)[0])


class BitfieldMessage(PeerMessage):
    """Bitfield message (shows which pieces the peer has)."""

    message_id = MessageType.BITFIELD

    def __init__(self, bitfield: bytes):
        self.bitfield = bytes(bitfield)

    def _payload(self) -> bytes:
        return self.bitfield

    @classmethod
    def decode(cls, data: bytes) -> BitfieldMessage:
        """Decode bitfield message."""
        return cls(cls._split_frame(data))

    def has_piece(self, piece_index: int, num_pieces: int) -> bool:
        """Check if the sender has a specific piece."""
        if piece_index < 0 or piece_index >= num_pieces:
            return False
        byte_index, bit_index = divmod(piece_index, 8)
        if byte_index >= len(self.bitfield):
            return False
        return bool(self.bitfield[byte_index] & (0x80 >> bit_index))


class _BlockRangeMessage(PeerMessage):
    """Message addressing a block by (index, begin, length)."""

    def __init__(self, piece_index: int, begin: int, length: int):
        """Initialize block range message.

        Args:
            piece_index: Index of the piece
            begin: Byte offset within the piece
            length: Number of bytes
        """
        self.piece_index = piece_index
        self.begin = begin
        self.length = length

    def _payload(self) -> bytes:
        return struct.pack("!III", self.piece_index, self.begin, self.length)

    @classmethod
    def decode(cls, data: bytes):
        """Decode a block range message."""
        payload = cls._split_frame(data)
        if len(payload) != 12:
            msg = f"{cls.__name__} payload must be 12 bytes, got {len(payload)}"
            raise MessageError(msg)
        return cls(*struct.unpack("!III", payload))


class RequestMessage(_BlockRangeMessage):
    """Request message (request a block from a piece)."""

    message_id = MessageType.REQUEST


class CancelMessage(_BlockRangeMessage):
    """Cancel message (withdraw an earlier request)."""

    message_id = MessageType.CANCEL


class PieceMessage(PeerMessage):
    """Piece message (contains a block of piece data)."""

    message_id = MessageType.PIECE

    def __init__(self, piece_index: int, begin: int, block: bytes):
        self.piece_index = piece_index
        self.begin = begin
        self.block = bytes(block)

    def _payload(self) -> bytes:
        return struct.pack("!II", self.piece_index, self.begin) + self.block

    @classmethod
    def decode(cls, data: bytes) -> PieceMessage:
        """Decode piece message."""
        payload = cls._split_frame(data)
        if len(payload) < 8:
            msg = f"Piece payload too short: {len(payload)} bytes"
            raise MessageError(msg)
        piece_index, begin = struct.unpack_from("!II", payload)
        return cls(piece_index, begin, payload[8:])


_MESSAGE_CLASSES: dict[int, type[PeerMessage]] = {
    int(cls.message_id): cls
    for cls in (
        ChokeMessage,
        UnchokeMessage,
        InterestedMessage,
        NotInterestedMessage,
        HaveMessage,
        BitfieldMessage,
        RequestMessage,
        PieceMessage,
        CancelMessage,
    )
}


def create_message(frame: bytes) -> PeerMessage:
    """Decode a complete frame into the matching message object.

    Raises:
        MessageError: If the frame is malformed or the ID is unknown
    """
    if len(frame) < 4:
        msg = f"Frame too short: {len(frame)} bytes"
        raise MessageError(msg)
    if len(frame) == 4:
        return KeepAliveMessage.decode(frame)
    message_cls = _MESSAGE_CLASSES.get(frame[4])
    if message_cls is None:
        msg = f"Unknown message ID: {frame[4]}"
        raise MessageError(msg)
    return message_cls.decode(frame)
