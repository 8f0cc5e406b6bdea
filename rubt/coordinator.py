"""Download orchestration.

The :class:`DownloadCoordinator` wires the piece store, scheduler, choke
controller, upload servicer and tracker together for one torrent, owns
every peer link and runs the background tasks of a session.
"""

from __future__ import annotations

import asyncio
import contextlib
import secrets
import string
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Iterable

from rubt.choke import ChokeController
from rubt.config import get_config
from rubt.exceptions import HandshakeError, PeerConnectionError, TrackerError
from rubt.logging_config import LoggingContext, get_logger, log_exception
from rubt.models import PeerInfo
from rubt.peer_link import PeerLink
from rubt.piece_store import PieceStore, ResumeStatus, StoreResult
from rubt.scheduler import Scheduler
from rubt.tracker import AsyncTrackerClient
from rubt.upload import UploadRequest, UploadServicer

if TYPE_CHECKING:
    from rubt.models import Config, TorrentInfo, TrackerResponse
    from rubt.peer import (
        BitfieldMessage,
        CancelMessage,
        HaveMessage,
        PieceMessage,
        RequestMessage,
    )

PEER_ID_ALPHABET = string.ascii_letters + string.digits


def generate_peer_id() -> bytes:
    """Random 20-character alphanumeric peer ID."""
    return "".join(secrets.choice(PEER_ID_ALPHABET) for _ in range(20)).encode("ascii")


class DownloadCoordinator:
    """Runs one download/seed session for a single-file torrent."""

    def __init__(
        self,
        torrent: TorrentInfo,
        download_path: str | Path,
        config: Config | None = None,
        tracker: AsyncTrackerClient | None = None,
        peer_id: bytes | None = None,
    ):
        """Initialize the coordinator.

        Args:
            torrent: Torrent to download
            download_path: Path of the output file
            config: Client configuration, the global one if omitted
            tracker: Tracker client, created from ``config`` if omitted
            peer_id: Our peer ID, random if omitted
        """
        self.torrent = torrent
        self.download_path = Path(download_path)
        self.config = config or get_config()
        self.peer_id = peer_id or generate_peer_id()

        self.executor = ThreadPoolExecutor(
            max_workers=self.config.disk.disk_workers,
            thread_name_prefix="rubt-disk",
        )
        self.piece_store = PieceStore(torrent, self.download_path, self.config)
        self.piece_store.on_invalidated = self._on_piece_invalidated
        self.choke = ChokeController(self.config)
        self.links: dict[PeerInfo, PeerLink] = {}
        self.scheduler = Scheduler(self.piece_store, lambda: list(self.links.values()), self.config)
        self.uploader = UploadServicer(self.piece_store, self.choke, self.config, self.executor)
        self.tracker = tracker or AsyncTrackerClient(self.config)

        self.downloaded = 0
        self.listen_port: int | None = None
        self.tracker_interval: float = self.config.network.tracker_retry_interval
        self.download_complete = False
        self.completed = asyncio.Event()

        self._server: asyncio.AbstractServer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        with contextlib.suppress(RuntimeError):
            self._loop = asyncio.get_running_loop()
        self._download_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._connect_tasks: set[asyncio.Task] = set()
        self._started_announced = False
        self._completed_announced = False
        self._stopped = False

        self.logger = get_logger(__name__)

    # Lifecycle

    async def start(self, resume: bool = True) -> None:
        """Prepare storage, contact the tracker and start all background tasks.

        Args:
            resume: Restore progress from the state file
        """
        loop = self._loop = asyncio.get_running_loop()
        with LoggingContext("session startup", logger=self.logger, torrent=self.torrent.name):
            await loop.run_in_executor(self.executor, self.piece_store.create_backing_file)
            if resume:
                status = await loop.run_in_executor(self.executor, self.piece_store.resume)
                self.logger.info("Resume: %s", status.value)
                if status == ResumeStatus.ALL_COMPLETE:
                    self._mark_complete()
                    self._completed_announced = True

            self.scheduler.prime()
            await self._start_listener()
            await self.tracker.start()
            response = await self._initial_announce()
            await self.set_peers(response.peers if response else [])

        self._download_task = self._spawn(self._download(), "scheduler")
        self._spawn(self.uploader.run(), "uploader")
        self._spawn(self.choke.run(lambda: self.download_complete), "choke")
        self._spawn(self._tracker_loop(), "tracker")

    async def shutdown(self) -> None:
        """Stop every task, close all links and save progress."""
        if self._stopped:
            return
        self._stopped = True
        self.logger.info("Shutting down session for %s", self.torrent.name)

        if self._server is not None:
            self._server.close()

        tasks = [*self._tasks, *self._connect_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for link in list(self.links.values()):
            await link.close()
        if self._server is not None:
            await self._server.wait_closed()

        if self._started_announced:
            try:
                await asyncio.wait_for(
                    self._announce("stopped"),
                    timeout=self.config.network.tracker_timeout,
                )
            except (TrackerError, asyncio.TimeoutError) as e:
                self.logger.warning("Stopped announce failed: %s", e)
        await self.tracker.stop()

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self.executor, self.piece_store.persist)
        self.executor.shutdown(wait=True)

    def pause(self) -> None:
        """Stop issuing requests and serving blocks until :meth:`unpause`."""
        self.scheduler.paused = True
        self.uploader.paused = True
        self.logger.info("Paused")

    def unpause(self) -> None:
        self.scheduler.paused = False
        self.uploader.paused = False
        self.logger.info("Resumed")

    async def wait_until_complete(self) -> None:
        await self.completed.wait()

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log_exception(self.logger, task.exception(), f"Task {task.get_name()} failed")

    # Tracker

    async def _announce(self, event: str = "") -> TrackerResponse:
        response = await self.tracker.announce(
            self.torrent,
            self.peer_id,
            self.listen_port or self.config.network.listen_port_start,
            self.uploaded,
            self.downloaded,
            self.left(),
            event,
        )
        self.tracker_interval = max(response.interval, 1)
        return response

    async def _initial_announce(self) -> TrackerResponse | None:
        """Announce ``started`` until the tracker hands out at least one peer.

        A complete download only needs the announce to succeed once.
        """
        retry = self.config.network.tracker_retry_interval
        while True:
            event = "" if self._started_announced else "started"
            try:
                response = await self._announce(event)
            except TrackerError as e:
                self.logger.warning("Tracker announce failed: %s", e)
            else:
                self._started_announced = True
                if response.peers or self.download_complete:
                    return response
                self.logger.info("Tracker returned no peers, retrying in %ss", retry)
            await asyncio.sleep(retry)

    async def _tracker_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tracker_interval)
            try:
                response = await self._announce()
            except TrackerError as e:
                self.logger.warning("Tracker announce failed: %s", e)
                self.tracker_interval = self.config.network.tracker_retry_interval
                continue
            await self.set_peers(response.peers)

    # Peers

    async def set_peers(self, peers: Iterable[PeerInfo]) -> None:
        """Reconcile outbound links with the tracker's peer list.

        Links to peers no longer listed are closed and new peers are
        connected. Inbound links are left alone.
        """
        wanted = set(peers)
        for address, link in list(self.links.items()):
            if not link.inbound and address not in wanted:
                self.logger.debug("Dropping %s, no longer listed by tracker", link)
                await link.close()

        for peer in wanted:
            if peer in self.links or peer.peer_id == self.peer_id:
                continue
            link = self._new_link(peer)
            self._spawn_connect(self._connect(link))

    def _new_link(self, peer_info: PeerInfo, *, inbound: bool = False) -> PeerLink:
        link = PeerLink(peer_info, self.torrent.info_hash, self.peer_id, self.config, inbound=inbound)
        link.on_have = self._on_have
        link.on_bitfield = self._on_bitfield
        link.on_request = self._on_request
        link.on_piece = self._on_piece
        link.on_cancel = self._on_cancel
        link.on_disconnected = self._on_disconnected
        self.links[peer_info] = link
        return link

    def _spawn_connect(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._connect_tasks.add(task)
        task.add_done_callback(self._connect_tasks.discard)

    async def _connect(self, link: PeerLink) -> None:
        try:
            await link.connect()
        except (PeerConnectionError, HandshakeError) as e:
            self.logger.debug("Could not connect to %s: %s", link, e)
            return
        await self._on_established(link)

    async def _handle_inbound(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peername = writer.get_extra_info("peername")
        if self._stopped or not peername:
            writer.close()
            return
        peer_info = PeerInfo(ip=peername[0], port=peername[1])
        if peer_info in self.links:
            self.logger.debug("Rejecting duplicate connection from %s", peer_info)
            writer.close()
            return

        task = asyncio.current_task()
        if task is not None:
            self._connect_tasks.add(task)
            task.add_done_callback(self._connect_tasks.discard)

        link = self._new_link(peer_info, inbound=True)
        try:
            await link.accept(reader, writer)
        except (PeerConnectionError, HandshakeError) as e:
            self.logger.debug("Inbound handshake from %s failed: %s", peer_info, e)
            return
        await self._on_established(link)

    async def _on_established(self, link: PeerLink) -> None:
        if link.remote_peer_id == self.peer_id:
            self.logger.debug("Connected to ourselves via %s, closing", link)
            await link.close()
            return
        await link.send_bitfield(self.piece_store.bitfield_bytes())
        await link.send_interested()
        await self.choke.admit(link)

    async def _on_disconnected(self, link: PeerLink) -> None:
        if self.links.get(link.peer_info) is link:
            del self.links[link.peer_info]
        self.piece_store.remove_peer(link)
        self.scheduler.peer_lost(link)
        self.uploader.discard_peer(link)

    async def _start_listener(self) -> None:
        net = self.config.network
        for port in range(net.listen_port_start, net.listen_port_end + 1):
            try:
                self._server = await asyncio.start_server(
                    self._handle_inbound,
                    net.listen_interface,
                    port,
                )
            except OSError as e:
                self.logger.debug("Port %d unavailable: %s", port, e)
                continue
            self.listen_port = port
            self.logger.info("Listening for peers on %s:%d", net.listen_interface, port)
            return
        self.logger.warning(
            "No free port in %d-%d, inbound connections disabled",
            net.listen_port_start,
            net.listen_port_end,
        )

    # Inbound messages

    async def _on_have(self, link: PeerLink, message: HaveMessage) -> None:
        index = message.piece_index
        self.piece_store.add_holder(index, link)
        if not self.piece_store.have(index):
            await link.send_interested()

    async def _on_bitfield(self, link: PeerLink, message: BitfieldMessage) -> None:
        indices = self.piece_store.register_bitfield(link, message.bitfield)
        self.logger.debug("%s has %d pieces", link, len(indices))
        if any(not self.piece_store.have(i) for i in indices):
            await link.send_interested()

    async def _on_request(self, link: PeerLink, message: RequestMessage) -> None:
        self.uploader.submit(
            UploadRequest(message.piece_index, message.begin, message.length, link),
        )

    async def _on_cancel(self, link: PeerLink, message: CancelMessage) -> None:
        self.uploader.cancel(
            UploadRequest(message.piece_index, message.begin, message.length, link),
        )

    async def _on_piece(self, link: PeerLink, message: PieceMessage) -> None:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(self.executor, self.piece_store.store_block, message)

        if result in (StoreResult.NEED_MORE, StoreResult.COMPLETE):
            link.record_download(len(message.block))
            self.downloaded += len(message.block)

        if result == StoreResult.COMPLETE:
            self.logger.info(
                "Piece %d complete (%d/%d)",
                message.piece_index,
                self.piece_store.completed_count(),
                self.torrent.num_pieces,
            )
            await self._broadcast_have(message.piece_index)
            self.scheduler.piece_completed(message.piece_index)
        elif result == StoreResult.CORRUPT:
            self.scheduler.piece_failed(message.piece_index)

    async def _broadcast_have(self, index: int) -> None:
        for link in list(self.links.values()):
            if link.is_connected:
                await link.send_have(index)

    # Completion

    def _mark_complete(self) -> None:
        self.download_complete = True
        self.completed.set()

    def _on_piece_invalidated(self, index: int) -> None:
        """Piece store hook, called from whichever thread found the damage."""
        if self._loop is None or self._loop.is_closed():
            self._reopen_piece(index)
        else:
            self._loop.call_soon_threadsafe(self._reopen_piece, index)

    def _reopen_piece(self, index: int) -> None:
        """Download a piece again after its data on disk went bad."""
        self.scheduler.piece_failed(index)
        if not self.download_complete or self.piece_store.have(index):
            return
        self.logger.warning("Piece %d lost after completion, downloading it again", index)
        self.download_complete = False
        self.completed.clear()
        if self._download_task is not None and self._download_task.done() and not self._stopped:
            self._download_task = self._spawn(self._download(), "scheduler")

    async def _download(self) -> None:
        await self.scheduler.run()
        self._mark_complete()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self.executor, self.piece_store.persist)
        self.logger.info("Download complete: %s", self.download_path)
        if not self._completed_announced:
            self._completed_announced = True
            try:
                await self._announce("completed")
            except TrackerError as e:
                self.logger.warning("Completed announce failed: %s", e)

    # Progress

    @property
    def uploaded(self) -> int:
        return self.uploader.uploaded

    def left(self) -> int:
        """Bytes still missing from the output file."""
        return self.torrent.total_length - self.piece_store.total_bytes_saved()

    def percent_complete(self) -> float:
        return 100.0 * self.piece_store.total_bytes_saved() / self.torrent.total_length

    def status(self) -> dict[str, Any]:
        """Session snapshot for front ends."""
        connected = [link for link in self.links.values() if link.is_connected]
        return {
            "name": self.torrent.name,
            "info_hash": self.torrent.info_hash.hex(),
            "downloaded": self.downloaded,
            "uploaded": self.uploaded,
            "left": self.left(),
            "percent_complete": self.percent_complete(),
            "pieces_completed": self.piece_store.completed_count(),
            "pieces_total": self.torrent.num_pieces,
            "peers": len(connected),
            "in_flight": len(self.scheduler.in_flight),
            "endgame": self.scheduler.endgame,
            "paused": self.scheduler.paused,
            "complete": self.download_complete,
            "listen_port": self.listen_port,
            "choke": self.choke.stats(),
            "upload_queue": self.uploader.pending(),
        }
