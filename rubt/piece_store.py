"""Piece storage, verification and resume state.

Blocks are assembled in memory per piece, verified against the expected
SHA-1 and written to a single pre-allocated backing file. The set of
verified pieces is kept in a bitfield that is persisted to a sidecar
state file after every change, which is what makes a download resumable.

All public methods are synchronous and serialized by one lock. Callers
on the event loop run the disk-touching ones through an executor.
"""

from __future__ import annotations

import hashlib
import logging
import os
import struct
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Hashable

from rubt.config import get_config
from rubt.exceptions import DiskError, MessageError
from rubt.models import PreallocationStrategy
from rubt.utils.bitfield import Bitfield, bitfield_length, parse_bitfield

if TYPE_CHECKING:
    from rubt.models import Config, TorrentInfo
    from rubt.peer import PieceMessage

logger = logging.getLogger(__name__)


class StoreResult(Enum):
    """Outcome of storing one block."""

    NEED_MORE = "need_more"
    COMPLETE = "complete"
    DUPLICATE = "duplicate"
    CORRUPT = "corrupt"


class ResumeStatus(Enum):
    """Outcome of restoring saved progress."""

    ALL_COMPLETE = "all_complete"
    NONE_COMPLETE = "none_complete"
    PARTIAL = "partial"
    NO_SAVED_STATE = "no_saved_state"


@dataclass
class Piece:
    """Download state of a single piece."""

    index: int
    length: int
    holders: set[Hashable] = field(default_factory=set)
    buffer: bytearray | None = None
    received: int = 0

    def reset(self) -> None:
        self.buffer = None
        self.received = 0


def _sha1(data: bytes | bytearray) -> bytes:
    return hashlib.sha1(data).digest()  # nosec B324 - SHA-1 required by BitTorrent protocol (BEP 3)


class PieceStore:
    """Owns the piece table, the completion bitfield and the backing file."""

    MAGIC_BYTES = b"RUBT"
    VERSION = 1
    _HEADER = struct.Struct("!4sBI")

    def __init__(
        self,
        torrent: TorrentInfo,
        download_path: str | Path,
        config: Config | None = None,
    ):
        """Initialize the piece store.

        Args:
            torrent: Torrent being downloaded
            download_path: Path of the backing file
            config: Client configuration, the global one if omitted
        """
        self.torrent = torrent
        self.download_path = Path(download_path)
        self.config = config or get_config()
        self.state_path = Path(self.config.disk.state_dir) / f"{self.download_path.name}.data"

        self.pieces = [Piece(i, torrent.piece_size(i)) for i in range(torrent.num_pieces)]
        self.bitfield = Bitfield(torrent.num_pieces)
        self.lock = threading.RLock()
        # Called with the index of a verified piece that lost its bit,
        # possibly from a disk worker thread.
        self.on_invalidated: Callable[[int], None] | None = None

    # Backing file

    def create_backing_file(self) -> bool:
        """Pre-allocate the backing file.

        An existing file of the right size is kept. A new or resized file
        invalidates any saved state, which is removed.

        Returns:
            True if the file was (re)created

        Raises:
            DiskError: If the file cannot be created
        """
        total = self.torrent.total_length
        with self.lock:
            try:
                if self.download_path.is_file() and self.download_path.stat().st_size == total:
                    logger.debug("Keeping existing backing file %s", self.download_path)
                    return False

                self.download_path.parent.mkdir(parents=True, exist_ok=True)
                strategy = self.config.disk.preallocate
                with open(self.download_path, "wb") as f:
                    if strategy == PreallocationStrategy.SPARSE:
                        f.truncate(total)
                    else:
                        chunk = memoryview(bytes(self.config.disk.preallocate_chunk_kib * 1024))
                        remaining = total
                        while remaining > 0:
                            n = min(remaining, len(chunk))
                            f.write(chunk[:n])
                            remaining -= n
                if self.state_path.exists():
                    self.state_path.unlink()
            except OSError as e:
                msg = f"Failed to create backing file {self.download_path}: {e}"
                raise DiskError(msg) from e

        logger.info(
            "Created %s backing file %s (%d bytes)",
            strategy.value,
            self.download_path,
            total,
        )
        return True

    def _read_piece(self, index: int) -> bytes | None:
        piece = self.pieces[index]
        try:
            with open(self.download_path, "rb") as f:
                f.seek(index * self.torrent.piece_length)
                return f.read(piece.length)
        except OSError:
            logger.exception("Failed to read piece %d from %s", index, self.download_path)
            return None

    def _write_piece(self, index: int, data: bytes | bytearray) -> None:
        with open(self.download_path, "r+b") as f:
            f.seek(index * self.torrent.piece_length)
            f.write(data)

    def _invalidate(self, index: int) -> None:
        was_complete = self.bitfield.get(index)
        self.bitfield.clear(index)
        self.pieces[index].reset()
        self.persist()
        if was_complete and self.on_invalidated is not None:
            self.on_invalidated(index)

    def _check_range(self, index: int, begin: int, length: int) -> bool:
        if not 0 <= index < self.torrent.num_pieces:
            return False
        return begin >= 0 and length > 0 and begin + length <= self.pieces[index].length

    # Blocks

    def have(self, index: int) -> bool:
        """Return whether piece ``index`` is verified and on disk."""
        with self.lock:
            return index in self.bitfield

    def store_block(self, message: PieceMessage) -> StoreResult:
        """Store one received block.

        Args:
            message: Inbound piece message

        Returns:
            The store outcome

        Raises:
            MessageError: If the block lies outside the torrent
        """
        index, begin, block = message.piece_index, message.begin, message.block
        if not self._check_range(index, begin, len(block)):
            msg = f"Block out of range: piece {index}, begin {begin}, length {len(block)}"
            raise MessageError(msg)

        with self.lock:
            piece = self.pieces[index]
            expected = self.torrent.pieces[index]

            if self.bitfield.get(index):
                data = self._read_piece(index)
                if data is not None and _sha1(data) == expected:
                    return StoreResult.DUPLICATE
                logger.warning("Piece %d on disk failed re-verification", index)
                self._invalidate(index)

            if piece.buffer is None:
                piece.buffer = bytearray(piece.length)
                piece.received = 0
            piece.buffer[begin : begin + len(block)] = block
            piece.received += len(block)

            if piece.received < piece.length:
                return StoreResult.NEED_MORE

            if _sha1(piece.buffer) != expected:
                logger.warning("Piece %d failed hash verification", index)
                self._invalidate(index)
                return StoreResult.CORRUPT

            try:
                self._write_piece(index, piece.buffer)
            except OSError:
                logger.exception("Failed to write piece %d", index)
                self._invalidate(index)
                return StoreResult.CORRUPT

            self.bitfield.set(index)
            piece.buffer = None
            piece.received = piece.length
            self.persist()

        logger.debug("Piece %d verified and saved", index)
        return StoreResult.COMPLETE

    def retrieve_block(self, index: int, begin: int, length: int) -> bytes | None:
        """Read a block of a verified piece for upload.

        The whole piece is re-verified first; a piece that no longer matches
        its hash loses its completion bit.
        """
        if not self._check_range(index, begin, length):
            return None
        with self.lock:
            if not self.bitfield.get(index):
                return None
            data = self._read_piece(index)
            if data is None:
                return None
            if _sha1(data) != self.torrent.pieces[index]:
                logger.warning("Piece %d on disk is corrupt, clearing it", index)
                self._invalidate(index)
                return None
        return data[begin : begin + length]

    # State file

    def persist(self) -> bool:
        """Atomically write the bitfield to the state file.

        Returns:
            True on success; failures are logged
        """
        with self.lock:
            payload = (
                self._HEADER.pack(self.MAGIC_BYTES, self.VERSION, self.torrent.num_pieces)
                + self.bitfield.to_bytes()
            )
            tmp_path = self.state_path.with_name(self.state_path.name + ".tmp")
            try:
                self.state_path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "wb") as f:
                    f.write(payload)
                os.replace(tmp_path, self.state_path)
            except OSError:
                logger.exception("Failed to save state to %s", self.state_path)
                return False
        return True

    def load_state(self) -> Bitfield | None:
        """Read and validate the state file without applying it."""
        try:
            raw = self.state_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError:
            logger.warning("Cannot read state file %s", self.state_path, exc_info=True)
            return None

        if len(raw) < self._HEADER.size:
            logger.warning("State file %s is truncated", self.state_path)
            return None
        magic, version, num_pieces = self._HEADER.unpack_from(raw)
        if magic != self.MAGIC_BYTES or version != self.VERSION:
            logger.warning("State file %s has an unknown format", self.state_path)
            return None
        if num_pieces != self.torrent.num_pieces:
            logger.warning(
                "State file %s is for %d pieces, expected %d",
                self.state_path,
                num_pieces,
                self.torrent.num_pieces,
            )
            return None
        try:
            return Bitfield.from_bytes(raw[self._HEADER.size :], num_pieces)
        except ValueError as e:
            logger.warning("State file %s is corrupt: %s", self.state_path, e)
            return None

    def resume(self) -> ResumeStatus:
        """Restore progress from the state file.

        A missing, unreadable or corrupt state file counts as no prior
        progress.
        """
        saved = self.load_state()
        with self.lock:
            if saved is None:
                return ResumeStatus.NO_SAVED_STATE
            self.bitfield = saved
            for piece in self.pieces:
                piece.buffer = None
                piece.received = piece.length if saved.get(piece.index) else 0
            count = saved.count()

        logger.info("Resumed %d of %d pieces", count, self.torrent.num_pieces)
        if count == self.torrent.num_pieces:
            return ResumeStatus.ALL_COMPLETE
        if count == 0:
            return ResumeStatus.NONE_COMPLETE
        return ResumeStatus.PARTIAL

    # Accounting

    def total_bytes_saved(self) -> int:
        """Sum of the lengths of verified pieces."""
        with self.lock:
            return sum(p.length for p in self.pieces if self.bitfield.get(p.index))

    def total_bytes_received(self) -> int:
        with self.lock:
            return sum(p.received for p in self.pieces)

    def piece_bytes_received(self, index: int) -> int:
        with self.lock:
            return self.pieces[index].received

    def completed_count(self) -> int:
        with self.lock:
            return self.bitfield.count()

    def missing_pieces(self) -> list[int]:
        """Indices of pieces not yet verified, ascending."""
        with self.lock:
            return [i for i in range(self.torrent.num_pieces) if not self.bitfield.get(i)]

    def is_complete(self) -> bool:
        with self.lock:
            return self.bitfield.all_set()

    def bitfield_bytes(self) -> bytes:
        """Our bitfield in wire form."""
        with self.lock:
            return self.bitfield.to_bytes()

    def download_status(self) -> dict[str, Any]:
        """Snapshot of the download progress."""
        with self.lock:
            completed = self.bitfield.count()
            saved = sum(p.length for p in self.pieces if self.bitfield.get(p.index))
            in_progress = sum(1 for p in self.pieces if p.buffer is not None)
        return {
            "pieces_total": self.torrent.num_pieces,
            "pieces_completed": completed,
            "pieces_in_progress": in_progress,
            "bytes_saved": saved,
            "bytes_left": self.torrent.total_length - saved,
            "percent_complete": 100.0 * saved / self.torrent.total_length,
        }

    # Availability

    def register_bitfield(self, peer: Hashable, bitfield: bytes) -> set[int]:
        """Record every piece advertised in a peer's bitfield.

        Returns:
            Indices the peer holds

        Raises:
            MessageError: If the bitfield is too short for the torrent
        """
        if len(bitfield) < bitfield_length(self.torrent.num_pieces):
            msg = f"Bitfield of {len(bitfield)} bytes is too short for {self.torrent.num_pieces} pieces"
            raise MessageError(msg)
        indices = parse_bitfield(bitfield, self.torrent.num_pieces)
        with self.lock:
            for index in indices:
                self.pieces[index].holders.add(peer)
        return indices

    def add_holder(self, index: int, peer: Hashable) -> bool:
        """Record that ``peer`` holds piece ``index``.

        Returns:
            True if the peer was not known to hold it yet

        Raises:
            MessageError: If ``index`` is out of range
        """
        if not 0 <= index < self.torrent.num_pieces:
            msg = f"Have for unknown piece {index}"
            raise MessageError(msg)
        with self.lock:
            holders = self.pieces[index].holders
            if peer in holders:
                return False
            holders.add(peer)
            return True

    def holders(self, index: int) -> set[Hashable]:
        with self.lock:
            return set(self.pieces[index].holders)

    def rarity(self, index: int) -> int:
        """Number of peers known to hold piece ``index``."""
        with self.lock:
            return len(self.pieces[index].holders)

    def remove_peer(self, peer: Hashable) -> None:
        """Forget every piece held by ``peer``."""
        with self.lock:
            for piece in self.pieces:
                piece.holders.discard(peer)
