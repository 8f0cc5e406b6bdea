"""Periodic choke/unchoke classification.

Peers are kept in four lists:

* ``active``: the best peers by recent transfer, unchoked.
* ``optimistic``: peers unchoked at random to discover better partners.
* ``wait_list``: peers doing better than the weakest active peer,
  waiting for a slot.
* ``choked``: everyone else.

The ranking metric is what a peer sent us since the last tick, or what we
sent it once our download is complete. The baseline is the lowest metric
in ``active`` (0 when it is empty).
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Callable

from rubt.config import get_config

if TYPE_CHECKING:
    from rubt.models import Config
    from rubt.peer_link import PeerLink

logger = logging.getLogger(__name__)


class ChokeController:
    """Moves peers between the choke lists; the only component that does."""

    def __init__(self, config: Config | None = None, rng: random.Random | None = None):
        """Initialize choke controller.

        Args:
            config: Client configuration, the global one if omitted
            rng: Random source for optimistic unchoke selection
        """
        self.config = config or get_config()
        self.max_active = self.config.choke.max_active_downloaders
        self.max_optimistic = self.config.choke.max_optimistic_unchokes
        self._random = rng or random.Random()  # nosec B311 - peer selection, not cryptographic

        self.choked: list[PeerLink] = []
        self.wait_list: list[PeerLink] = []
        self.active: list[PeerLink] = []
        self.optimistic: list[PeerLink] = []
        self.lock = asyncio.Lock()

    def _lists(self) -> tuple[list[PeerLink], ...]:
        return (self.choked, self.wait_list, self.active, self.optimistic)

    def classified(self) -> list[PeerLink]:
        """Every peer in any list."""
        return [link for peers in self._lists() for link in peers]

    def _prune(self) -> list[PeerLink]:
        pruned = []
        for peers in self._lists():
            gone = [link for link in peers if link.is_disconnected]
            for link in gone:
                peers.remove(link)
            pruned.extend(gone)
        return pruned

    def _baseline(self, download_complete: bool) -> int:
        if not self.active:
            return 0
        return min(link.metric(download_complete) for link in self.active)

    async def admit(self, link: PeerLink) -> None:
        """Classify a newly connected peer.

        It fills a free active slot, else a free optimistic slot, else it is
        choked.
        """
        async with self.lock:
            self._prune()
            if any(link in peers for peers in self._lists()):
                return
            if len(self.active) < self.max_active:
                await link.send_unchoke()
                self.active.append(link)
                where = "active"
            elif len(self.optimistic) < self.max_optimistic:
                await link.send_unchoke()
                self.optimistic.append(link)
                where = "optimistic"
            else:
                await link.send_choke()
                self.choked.append(link)
                where = "choked"
        logger.debug("Admitted %s as %s", link, where)

    async def is_authorized(self, link: PeerLink) -> bool:
        """True if ``link`` may be served blocks."""
        async with self.lock:
            return link in self.active or link in self.optimistic

    async def tick(self, download_complete: bool) -> list[PeerLink]:
        """Run one classification round.

        Args:
            download_complete: Rank by upload instead of download

        Returns:
            Disconnected peers that were pruned from the lists
        """
        async with self.lock:
            pruned = self._prune()
            for link in pruned:
                await link.close()

            def metric(link: PeerLink) -> int:
                return link.metric(download_complete)

            baseline = self._baseline(download_complete)

            for link in list(self.wait_list):
                if metric(link) < baseline:
                    await link.send_choke()
                    self.wait_list.remove(link)
                    self.choked.append(link)

            for link in list(self.choked):
                if metric(link) > baseline:
                    await link.send_unchoke()
                    await link.send_interested()
                    self.choked.remove(link)
                    self.wait_list.append(link)

            for link in list(self.optimistic):
                if metric(link) > baseline:
                    self.optimistic.remove(link)
                    self.wait_list.append(link)

            for link in sorted(self.wait_list, key=metric, reverse=True):
                if metric(link) <= baseline:
                    continue
                if len(self.active) >= self.max_active:
                    weakest = min(self.active, key=metric)
                    await weakest.send_choke()
                    self.active.remove(weakest)
                    self.choked.append(weakest)
                    logger.debug("Replaced downloader %s with %s", weakest, link)
                self.wait_list.remove(link)
                if link.am_choking:
                    await link.send_unchoke()
                self.active.append(link)
                baseline = self._baseline(download_complete)

            if self.choked:
                chosen = self._random.sample(
                    self.choked,
                    min(self.max_optimistic, len(self.choked)),
                )
                previous, self.optimistic = self.optimistic, []
                for link in previous:
                    await link.send_choke()
                    self.choked.append(link)
                for link in chosen:
                    self.choked.remove(link)
                    await link.send_unchoke()
                    await link.send_interested()
                    self.optimistic.append(link)

            for link in self.classified():
                link.reset_counters()

            logger.debug(
                "Choke tick: %d active, %d optimistic, %d waiting, %d choked",
                len(self.active),
                len(self.optimistic),
                len(self.wait_list),
                len(self.choked),
            )
        return pruned

    async def run(self, download_complete: Callable[[], bool]) -> None:
        """Tick every ``choke.interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(self.config.choke.interval)
            try:
                await self.tick(download_complete())
            except Exception:
                logger.exception("Error in choke tick")

    def stats(self) -> dict[str, int]:
        return {
            "active": len(self.active),
            "optimistic": len(self.optimistic),
            "wait_list": len(self.wait_list),
            "choked": len(self.choked),
        }
