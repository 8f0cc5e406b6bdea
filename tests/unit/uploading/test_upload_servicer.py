"""Tests for UploadServicer."""

from __future__ import annotations

import asyncio

import pytest

from rubt.choke import ChokeController
from rubt.peer import ChokeMessage, PieceMessage
from rubt.piece_store import PieceStore
from rubt.upload import UploadRequest, UploadServicer
from tests.conftest import sent_messages

pytestmark = [pytest.mark.unit, pytest.mark.upload]


@pytest.fixture
def store(torrent, payload, config, tmp_path):
    piece_store = PieceStore(torrent, tmp_path / "seed.bin", config)
    piece_store.create_backing_file()
    piece_store.store_block(PieceMessage(0, 0, payload[:16384]))
    return piece_store


@pytest.fixture
def choke(config):
    config.choke.max_active_downloaders = 1
    config.choke.max_optimistic_unchokes = 0
    return ChokeController(config)


@pytest.fixture
def servicer(store, choke, config):
    return UploadServicer(store, choke, config)


class TestServeOne:
    """Serving a single request."""

    @pytest.mark.asyncio
    async def test_serves_authorized_peer(self, servicer, choke, link_factory, payload):
        link = link_factory(1)
        await choke.admit(link)

        assert await servicer.serve_one(UploadRequest(0, 100, 200, link))

        assert sent_messages(link)[-1] == PieceMessage(0, 100, payload[100:300])
        assert link.uploaded == 200
        assert link.uploaded_since_reset == 200
        assert servicer.uploaded == 200

    @pytest.mark.asyncio
    async def test_drops_choked_peer(self, servicer, choke, link_factory):
        first, second = link_factory(1), link_factory(2)
        await choke.admit(first)
        await choke.admit(second)

        assert not await servicer.serve_one(UploadRequest(0, 0, 100, second))
        assert sent_messages(second) == [ChokeMessage()]
        assert servicer.uploaded == 0

    @pytest.mark.asyncio
    async def test_drops_unknown_peer(self, servicer, link_factory):
        link = link_factory(1)
        assert not await servicer.serve_one(UploadRequest(0, 0, 100, link))
        assert sent_messages(link) == []

    @pytest.mark.asyncio
    async def test_missing_piece(self, servicer, choke, link_factory):
        link = link_factory(1)
        await choke.admit(link)
        assert not await servicer.serve_one(UploadRequest(2, 0, 100, link))
        assert link.uploaded == 0

    @pytest.mark.asyncio
    async def test_uninterested_peer_not_sent(self, servicer, choke, link_factory):
        link = link_factory(1, peer_interested=False)
        await choke.admit(link)
        assert not await servicer.serve_one(UploadRequest(0, 0, 100, link))
        assert link.uploaded == 0


class TestQueue:
    """Queue management."""

    def test_cancel(self, servicer, link_factory):
        link = link_factory(1)
        servicer.submit(UploadRequest(0, 0, 100, link))
        servicer.submit(UploadRequest(0, 100, 100, link))

        assert servicer.cancel(UploadRequest(0, 0, 100, link))
        assert not servicer.cancel(UploadRequest(0, 0, 100, link))
        assert servicer.pending() == 1

    def test_discard_peer(self, servicer, link_factory):
        a, b = link_factory(1), link_factory(2)
        servicer.submit(UploadRequest(0, 0, 100, a))
        servicer.submit(UploadRequest(0, 0, 100, b))
        servicer.submit(UploadRequest(0, 100, 100, a))

        assert servicer.discard_peer(a) == 2
        assert servicer.pending() == 1

    @pytest.mark.asyncio
    async def test_run_serves_in_order(self, servicer, choke, link_factory, payload):
        link = link_factory(1)
        await choke.admit(link)
        runner = asyncio.create_task(servicer.run())
        try:
            servicer.submit(UploadRequest(0, 0, 10, link))
            servicer.submit(UploadRequest(0, 10, 10, link))
            while servicer.uploaded < 20:
                await asyncio.sleep(0.01)
        finally:
            runner.cancel()
            with pytest.raises(asyncio.CancelledError):
                await runner

        blocks = [m for m in sent_messages(link) if isinstance(m, PieceMessage)]
        assert blocks == [PieceMessage(0, 0, payload[:10]), PieceMessage(0, 10, payload[10:20])]

    @pytest.mark.asyncio
    async def test_paused_holds_requests(self, servicer, choke, link_factory):
        link = link_factory(1)
        await choke.admit(link)
        servicer.paused = True
        runner = asyncio.create_task(servicer.run())
        try:
            servicer.submit(UploadRequest(0, 0, 10, link))
            await asyncio.sleep(0.05)
            assert servicer.pending() == 1
            assert servicer.uploaded == 0
        finally:
            runner.cancel()
            with pytest.raises(asyncio.CancelledError):
                await runner
