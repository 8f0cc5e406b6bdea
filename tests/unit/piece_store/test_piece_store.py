"""Tests for PieceStore."""

from __future__ import annotations

import pytest

from rubt.exceptions import DiskError, MessageError
from rubt.models import PreallocationStrategy
from rubt.peer import PieceMessage
from rubt.piece_store import PieceStore, ResumeStatus, StoreResult
from tests.conftest import build_torrent

pytestmark = [pytest.mark.unit, pytest.mark.piece]

PIECE = 16384


@pytest.fixture
def store(torrent, config, tmp_path):
    piece_store = PieceStore(torrent, tmp_path / "downloads" / torrent.name, config)
    piece_store.create_backing_file()
    return piece_store


def _piece(payload, index, length=PIECE):
    return payload[index * length : (index + 1) * length]


def _fill(store, payload):
    for index in range(store.torrent.num_pieces):
        assert store.store_block(PieceMessage(index, 0, _piece(payload, index))) == StoreResult.COMPLETE


class TestBackingFile:
    """Pre-allocation of the backing file."""

    def test_full_preallocation(self, store, torrent):
        assert store.download_path.stat().st_size == torrent.total_length
        assert store.download_path.read_bytes() == bytes(torrent.total_length)

    def test_sparse_preallocation(self, torrent, config, tmp_path):
        config.disk.preallocate = PreallocationStrategy.SPARSE
        store = PieceStore(torrent, tmp_path / "sparse.bin", config)
        assert store.create_backing_file()
        assert store.download_path.stat().st_size == torrent.total_length

    def test_existing_file_kept(self, store, payload):
        _fill(store, payload)
        assert not store.create_backing_file()
        assert store.download_path.read_bytes() == payload
        assert store.state_path.exists()

    def test_resized_file_recreated_and_state_dropped(self, store, payload):
        _fill(store, payload)
        with open(store.download_path, "ab") as f:
            f.write(b"extra")

        assert store.create_backing_file()
        assert not store.state_path.exists()
        assert store.download_path.stat().st_size == len(payload)

    def test_unwritable_location(self, torrent, config, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_bytes(b"")
        store = PieceStore(torrent, blocker / "file.bin", config)
        with pytest.raises(DiskError, match="backing file"):
            store.create_backing_file()


class TestStoreBlock:
    """Block assembly and verification."""

    def test_single_block_piece_completes(self, config, tmp_path):
        data = bytes(range(256)) * 64
        torrent = build_torrent(data, PIECE)
        store = PieceStore(torrent, tmp_path / "one.bin", config)
        store.create_backing_file()

        assert store.store_block(PieceMessage(0, 0, data)) == StoreResult.COMPLETE
        assert store.have(0)
        assert store.is_complete()
        assert store.download_path.read_bytes() == data

    def test_flipped_bit_is_corrupt(self, config, tmp_path):
        data = bytes(range(256)) * 64
        torrent = build_torrent(data, PIECE)
        store = PieceStore(torrent, tmp_path / "one.bin", config)
        store.create_backing_file()

        damaged = bytearray(data)
        damaged[100] ^= 0x01
        assert store.store_block(PieceMessage(0, 0, bytes(damaged))) == StoreResult.CORRUPT
        assert not store.have(0)
        assert store.piece_bytes_received(0) == 0
        assert store.store_block(PieceMessage(0, 0, data)) == StoreResult.COMPLETE

    def test_multiple_blocks(self, store, payload):
        first = _piece(payload, 1)
        assert store.store_block(PieceMessage(1, 0, first[:8192])) == StoreResult.NEED_MORE
        assert store.piece_bytes_received(1) == 8192
        assert store.download_status()["pieces_in_progress"] == 1
        assert store.store_block(PieceMessage(1, 8192, first[8192:])) == StoreResult.COMPLETE
        assert store.have(1)

    def test_short_last_piece(self, store, payload, torrent):
        last = torrent.num_pieces - 1
        block = payload[last * PIECE :]
        assert len(block) == 1000
        assert store.store_block(PieceMessage(last, 0, block)) == StoreResult.COMPLETE
        assert store.total_bytes_saved() == 1000

    def test_duplicate(self, store, payload):
        store.store_block(PieceMessage(0, 0, _piece(payload, 0)))
        assert store.store_block(PieceMessage(0, 0, _piece(payload, 0))) == StoreResult.DUPLICATE
        assert store.completed_count() == 1

    def test_completed_piece_damaged_on_disk_is_redownloaded(self, store, payload):
        store.store_block(PieceMessage(0, 0, _piece(payload, 0)))
        with open(store.download_path, "r+b") as f:
            f.write(b"\xff" * 16)

        assert store.store_block(PieceMessage(0, 0, _piece(payload, 0))) == StoreResult.COMPLETE
        assert store.have(0)
        assert store.download_path.read_bytes()[:PIECE] == _piece(payload, 0)

    @pytest.mark.parametrize(
        ("index", "begin", "length"),
        [(5, 0, 10), (-1, 0, 10), (0, PIECE - 5, 10), (4, 0, 1001), (0, -1, 4)],
    )
    def test_out_of_range(self, store, index, begin, length):
        with pytest.raises(MessageError, match="out of range"):
            store.store_block(PieceMessage(index, begin, b"\x00" * length))

    def test_failed_write_is_corrupt(self, store, payload, monkeypatch):
        def fail(*args):
            raise OSError("disk full")

        monkeypatch.setattr(store, "_write_piece", fail)
        assert store.store_block(PieceMessage(0, 0, _piece(payload, 0))) == StoreResult.CORRUPT
        assert not store.have(0)


class TestRetrieveBlock:
    """Reading verified data for upload."""

    def test_retrieve(self, store, payload):
        store.store_block(PieceMessage(2, 0, _piece(payload, 2)))
        assert store.retrieve_block(2, 100, 50) == _piece(payload, 2)[100:150]

    def test_missing_piece(self, store):
        assert store.retrieve_block(0, 0, 10) is None

    def test_out_of_range(self, store, payload):
        store.store_block(PieceMessage(0, 0, _piece(payload, 0)))
        assert store.retrieve_block(0, PIECE - 1, 2) is None
        assert store.retrieve_block(9, 0, 1) is None

    def test_corrupt_on_disk_clears_bit(self, store, payload):
        store.store_block(PieceMessage(0, 0, _piece(payload, 0)))
        with open(store.download_path, "r+b") as f:
            f.write(b"\xff")

        assert store.retrieve_block(0, 0, 10) is None
        assert not store.have(0)
        assert store.load_state().get(0) is False


class TestInvalidation:
    """Reporting verified pieces that went bad."""

    def test_corrupt_on_serve_reported(self, store, payload):
        lost = []
        store.on_invalidated = lost.append
        store.store_block(PieceMessage(1, 0, _piece(payload, 1)))
        with open(store.download_path, "r+b") as f:
            f.seek(PIECE)
            f.write(b"\xff")

        assert store.retrieve_block(1, 0, 10) is None
        assert lost == [1]

    def test_failed_reverification_reported(self, store, payload):
        lost = []
        store.on_invalidated = lost.append
        store.store_block(PieceMessage(0, 0, _piece(payload, 0)))
        with open(store.download_path, "r+b") as f:
            f.write(b"\xff")

        assert store.store_block(PieceMessage(0, 0, b"\x00" * PIECE)) == StoreResult.CORRUPT
        assert lost == [0]
        assert not store.have(0)

    def test_corrupt_download_not_reported(self, store):
        lost = []
        store.on_invalidated = lost.append

        assert store.store_block(PieceMessage(0, 0, b"\x00" * PIECE)) == StoreResult.CORRUPT
        assert lost == []


class TestResume:
    """State file handling."""

    def test_no_state(self, store):
        assert store.resume() == ResumeStatus.NO_SAVED_STATE

    def test_partial(self, store, payload, torrent, config):
        store.store_block(PieceMessage(3, 0, _piece(payload, 3)))

        fresh = PieceStore(torrent, store.download_path, config)
        assert fresh.resume() == ResumeStatus.PARTIAL
        assert fresh.have(3)
        assert fresh.missing_pieces() == [0, 1, 2, 4]
        assert fresh.piece_bytes_received(3) == PIECE
        assert fresh.total_bytes_received() == PIECE

    def test_all_complete(self, store, payload, torrent, config):
        _fill(store, payload)
        fresh = PieceStore(torrent, store.download_path, config)
        assert fresh.resume() == ResumeStatus.ALL_COMPLETE
        assert fresh.is_complete()

    def test_none_complete(self, store, torrent, config):
        assert store.persist()
        fresh = PieceStore(torrent, store.download_path, config)
        assert fresh.resume() == ResumeStatus.NONE_COMPLETE

    @pytest.mark.parametrize(
        "content",
        [
            b"",
            b"RUBT",
            b"XXXX\x01\x00\x00\x00\x05\x00",
            b"RUBT\x02\x00\x00\x00\x05\x00",
            b"RUBT\x01\x00\x00\x00\x06\x00",
            b"RUBT\x01\x00\x00\x00\x05\x00\x00",
            b"RUBT\x01\x00\x00\x00\x05\x04",
        ],
    )
    def test_corrupt_state_file(self, store, content):
        store.state_path.parent.mkdir(parents=True, exist_ok=True)
        store.state_path.write_bytes(content)
        assert store.resume() == ResumeStatus.NO_SAVED_STATE

    def test_state_file_layout(self, store, payload):
        store.store_block(PieceMessage(0, 0, _piece(payload, 0)))
        assert store.state_path.name == "payload.bin.data"
        assert store.state_path.read_bytes() == b"RUBT\x01\x00\x00\x00\x05\x80"

    def test_persist_failure_is_reported(self, store, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_bytes(b"")
        store.state_path = blocker / "state.data"
        assert not store.persist()


class TestAvailability:
    """Holder tracking."""

    def test_register_bitfield(self, store):
        assert store.register_bitfield("peer-a", b"\x88") == {0, 4}
        assert store.holders(4) == {"peer-a"}
        assert store.rarity(1) == 0

    def test_short_bitfield(self, store):
        with pytest.raises(MessageError, match="too short"):
            store.register_bitfield("peer-a", b"")

    def test_add_holder(self, store):
        assert store.add_holder(2, "peer-a")
        assert not store.add_holder(2, "peer-a")
        assert store.add_holder(2, "peer-b")
        assert store.rarity(2) == 2
        with pytest.raises(MessageError):
            store.add_holder(5, "peer-a")

    def test_remove_peer(self, store):
        store.register_bitfield("peer-a", b"\xf8")
        store.add_holder(0, "peer-b")
        store.remove_peer("peer-a")
        assert store.holders(0) == {"peer-b"}
        assert store.rarity(3) == 0


class TestStatus:
    """Progress accounting."""

    def test_download_status(self, store, payload, torrent):
        store.store_block(PieceMessage(0, 0, _piece(payload, 0)))
        status = store.download_status()
        assert status["pieces_total"] == 5
        assert status["pieces_completed"] == 1
        assert status["bytes_saved"] == PIECE
        assert status["bytes_left"] == torrent.total_length - PIECE
        assert status["percent_complete"] == pytest.approx(100.0 * PIECE / torrent.total_length)
        assert store.bitfield_bytes() == b"\x80"
