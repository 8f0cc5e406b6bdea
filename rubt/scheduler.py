"""Rarest-first piece scheduler.

Every piece is requested whole from all peers that can serve it. The
number of pieces in flight is capped; when only a few pieces remain and
nothing is left to hand out, end-game mode re-requests every missing piece
from every peer known to hold it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable

from rubt.config import get_config

if TYPE_CHECKING:
    from rubt.models import Config
    from rubt.peer_link import PeerLink
    from rubt.piece_store import PieceStore

logger = logging.getLogger(__name__)


@dataclass
class InFlight:
    """A piece that has been requested but not completed."""

    requested_at: float
    peers: set[PeerLink] = field(default_factory=set)


def is_usable(link: PeerLink) -> bool:
    """A link we can request from right now."""
    return link.is_connected and not link.peer_choking and link.am_interested


class Scheduler:
    """Chooses which piece to request next and from whom."""

    def __init__(
        self,
        piece_store: PieceStore,
        links: Callable[[], Iterable[PeerLink]],
        config: Config | None = None,
    ):
        """Initialize scheduler.

        Args:
            piece_store: Piece table and availability index
            links: Returns the currently known peer links
            config: Client configuration, the global one if omitted
        """
        self.piece_store = piece_store
        self.torrent = piece_store.torrent
        self._links = links
        self.config = config or get_config()

        strategy = self.config.strategy
        self.max_in_flight = strategy.max_in_flight_pieces
        self.endgame_threshold = strategy.endgame_threshold
        self.endgame_reissue_interval = strategy.endgame_reissue_interval
        self.request_timeout = strategy.request_timeout
        self.idle_sleep = strategy.idle_sleep

        self.queue: list[int] = []
        self.in_flight: dict[int, InFlight] = {}
        self._pending: set[int] = set()
        self.paused = False
        self.finished = False
        self.endgame = False
        self._last_endgame_round: float | None = None

    @property
    def pending_count(self) -> int:
        """Pieces not yet complete, queued or in flight."""
        return len(self._pending)

    def prime(self) -> None:
        """Queue every piece that is not complete yet."""
        missing = self.piece_store.missing_pieces()
        self.queue = list(missing)
        self._pending = set(missing)
        self.in_flight.clear()
        self.finished = not missing
        self.endgame = False
        self._last_endgame_round = None
        logger.debug("Scheduler primed with %d pieces", len(missing))

    def usable_holders(self, index: int) -> list[PeerLink]:
        return [link for link in self.piece_store.holders(index) if is_usable(link)]

    def _select(self) -> tuple[int, list[PeerLink]] | None:
        """Rarest queued piece with at least one usable holder."""
        store = self.piece_store
        for index in sorted(self.queue, key=lambda i: (store.rarity(i), i)):
            holders = self.usable_holders(index)
            if holders:
                return index, holders
        return None

    def _requeue_expired(self, now: float) -> None:
        for index, entry in list(self.in_flight.items()):
            if now - entry.requested_at >= self.request_timeout:
                logger.info("Request for piece %d timed out, re-queueing", index)
                self._requeue(index)

    def _requeue(self, index: int) -> None:
        self.in_flight.pop(index, None)
        if index in self._pending and index not in self.queue:
            self.queue.append(index)

    async def step(self) -> bool:
        """Run one scheduling iteration.

        Returns:
            True if any request was sent
        """
        if not self._pending:
            self.finished = True
            return False
        if self.paused:
            return False

        now = asyncio.get_running_loop().time()
        self._requeue_expired(now)
        if len(self.in_flight) >= self.max_in_flight:
            return False

        if not self.queue:
            return await self._endgame_round(now)

        selected = self._select()
        if selected is None:
            return False
        index, holders = selected

        self.queue.remove(index)
        entry = InFlight(requested_at=now)
        self.in_flight[index] = entry
        size = self.torrent.piece_size(index)
        for link in holders:
            if await link.send_request(index, 0, size):
                entry.peers.add(link)

        if not entry.peers:
            self._requeue(index)
            return False
        logger.debug("Requested piece %d from %d peers", index, len(entry.peers))
        return True

    async def _endgame_round(self, now: float) -> bool:
        if self.pending_count >= self.torrent.num_pieces * self.endgame_threshold:
            return False
        if (
            self._last_endgame_round is not None
            and now - self._last_endgame_round < self.endgame_reissue_interval
        ):
            return False
        if not self.endgame:
            self.endgame = True
            logger.info("Entering end-game with %d pieces left", self.pending_count)
        self._last_endgame_round = now

        sent = 0
        for index in self.piece_store.missing_pieces():
            size = self.torrent.piece_size(index)
            entry = self.in_flight.setdefault(index, InFlight(requested_at=now))
            for link in self.piece_store.holders(index):
                if await link.send_request(index, 0, size):
                    entry.peers.add(link)
                    sent += 1
        return sent > 0

    def piece_completed(self, index: int) -> None:
        self.in_flight.pop(index, None)
        if index in self.queue:
            self.queue.remove(index)
        self._pending.discard(index)
        if not self._pending:
            self.finished = True

    def piece_failed(self, index: int) -> None:
        """Put a piece that failed verification back in the queue.

        This also covers a piece that was already complete and lost its
        bit later, which makes the scheduler unfinished again.
        """
        if self.piece_store.have(index):
            return
        if index not in self._pending:
            logger.info("Piece %d is missing again, re-queueing", index)
            self._pending.add(index)
            self.finished = False
        self._requeue(index)

    def peer_lost(self, link: PeerLink) -> None:
        """Re-queue pieces that were only requested from ``link``."""
        for index, entry in list(self.in_flight.items()):
            entry.peers.discard(link)
            if not entry.peers:
                self._requeue(index)

    def _any_unchoked(self) -> bool:
        return any(link.is_connected and not link.peer_choking for link in self._links())

    async def run(self) -> None:
        """Request pieces until every piece is complete."""
        while self._pending and not self._any_unchoked():
            await asyncio.sleep(self.idle_sleep)
        while True:
            sent = await self.step()
            if self.finished:
                logger.info("All pieces complete")
                return
            if not sent:
                await asyncio.sleep(self.idle_sleep)
