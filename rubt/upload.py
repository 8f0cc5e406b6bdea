"""Serving block requests to peers we have unchoked."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rubt.config import get_config

if TYPE_CHECKING:
    from concurrent.futures import Executor

    from rubt.choke import ChokeController
    from rubt.models import Config
    from rubt.peer_link import PeerLink
    from rubt.piece_store import PieceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadRequest:
    """A block some peer asked us for."""

    piece_index: int
    begin: int
    length: int
    peer: PeerLink


class UploadServicer:
    """FIFO of inbound block requests, drained by :meth:`run`."""

    def __init__(
        self,
        piece_store: PieceStore,
        choke: ChokeController,
        config: Config | None = None,
        executor: Executor | None = None,
    ):
        """Initialize upload servicer.

        Args:
            piece_store: Source of block data
            choke: Decides who may be served
            config: Client configuration, the global one if omitted
            executor: Pool used for disk reads, the loop default if omitted
        """
        self.piece_store = piece_store
        self.choke = choke
        self.config = config or get_config()
        self.executor = executor

        self.paused = False
        self.uploaded = 0
        self._queue: deque[UploadRequest] = deque()
        self._wakeup = asyncio.Event()

    def submit(self, request: UploadRequest) -> None:
        self._queue.append(request)
        self._wakeup.set()

    def cancel(self, request: UploadRequest) -> bool:
        """Drop the first queued request equal to ``request``.

        Returns:
            True if one was removed
        """
        try:
            self._queue.remove(request)
        except ValueError:
            return False
        return True

    def discard_peer(self, peer: PeerLink) -> int:
        """Drop every queued request from ``peer``; returns how many."""
        kept = deque(r for r in self._queue if r.peer is not peer)
        dropped = len(self._queue) - len(kept)
        self._queue = kept
        return dropped

    def pending(self) -> int:
        return len(self._queue)

    async def serve_one(self, request: UploadRequest) -> bool:
        """Serve a single request.

        Returns:
            True if the block was sent
        """
        peer = request.peer
        if peer.is_disconnected or not await self.choke.is_authorized(peer):
            logger.debug("Dropping request from unauthorized peer %s", peer)
            return False

        loop = asyncio.get_running_loop()
        block = await loop.run_in_executor(
            self.executor,
            self.piece_store.retrieve_block,
            request.piece_index,
            request.begin,
            request.length,
        )
        if block is None:
            logger.debug(
                "Cannot serve piece %d [%d:+%d] to %s",
                request.piece_index,
                request.begin,
                request.length,
                peer,
            )
            return False

        if not await peer.send_piece(request.piece_index, request.begin, block):
            return False
        peer.record_upload(len(block))
        self.uploaded += len(block)
        return True

    async def run(self) -> None:
        """Serve queued requests until cancelled."""
        idle = self.config.strategy.idle_sleep
        while True:
            if not self._queue:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            if self.paused:
                await asyncio.sleep(idle)
                continue
            request = self._queue.popleft()
            try:
                await self.serve_one(request)
            except Exception:
                logger.exception("Failed to serve request from %s", request.peer)
