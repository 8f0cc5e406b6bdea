"""HTTP tracker client.

Announces the session to the torrent's tracker over HTTP and parses the
bencoded response into a :class:`~rubt.models.TrackerResponse`.
"""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from rubt import __version__
from rubt.bencode import BencodeDecodeError, BencodeDecoder
from rubt.exceptions import TrackerError
from rubt.models import PeerInfo, TrackerResponse

if TYPE_CHECKING:
    from rubt.models import Config, TorrentInfo


class AsyncTrackerClient:
    """Async client for announcing to an HTTP tracker."""

    def __init__(self, config: Config):
        """Initialize the tracker client.

        Args:
            config: Client configuration; ``network.tracker_timeout`` bounds requests
        """
        self.config = config
        self.user_agent = f"rubt/{__version__}"
        self.session: aiohttp.ClientSession | None = None
        self.logger = logging.getLogger(__name__)

    async def start(self) -> None:
        """Open the HTTP session."""
        if self.session is not None:
            return
        timeout = aiohttp.ClientTimeout(
            total=self.config.network.tracker_timeout,
            connect=self.config.network.tracker_timeout,
        )
        self.session = aiohttp.ClientSession(
            timeout=timeout,
            headers={"User-Agent": self.user_agent},
        )
        self.logger.debug("Tracker client started")

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self.session is not None:
            await self.session.close()
            self.session = None
        self.logger.debug("Tracker client stopped")

    async def announce(
        self,
        torrent: TorrentInfo,
        peer_id: bytes,
        port: int,
        uploaded: int,
        downloaded: int,
        left: int,
        event: str = "",
    ) -> TrackerResponse:
        """Announce to the tracker and get the peer list.

        Args:
            torrent: Torrent being announced
            peer_id: Our 20-byte peer ID
            port: Port the client is listening on
            uploaded: Bytes uploaded so far
            downloaded: Bytes downloaded so far
            left: Bytes left to download
            event: "started", "completed", "stopped" or "" for a regular update

        Returns:
            Parsed tracker response

        Raises:
            TrackerError: If tracker communication fails
        """
        if self.session is None:
            msg = "Tracker client not started"
            raise TrackerError(msg)

        url = self._build_tracker_url(
            torrent.announce,
            torrent.info_hash,
            peer_id,
            port,
            uploaded,
            downloaded,
            left,
            event,
        )
        self.logger.debug("Announcing to %s (event=%r)", torrent.announce, event)
        response = self._parse_response(await self._make_request(url))
        if response.warning_message:
            self.logger.warning("Tracker warning: %s", response.warning_message)
        self.logger.info(
            "Tracker returned %d peers, next announce in %ds",
            len(response.peers),
            response.interval,
        )
        return response

    @staticmethod
    def _build_tracker_url(
        base_url: str,
        info_hash: bytes,
        peer_id: bytes,
        port: int,
        uploaded: int,
        downloaded: int,
        left: int,
        event: str,
    ) -> str:
        """Build the announce URL with all query parameters.

        Binary values are percent-encoded byte by byte.
        """
        params: dict[str, Any] = {
            "info_hash": info_hash,
            "peer_id": peer_id,
            "port": port,
            "uploaded": uploaded,
            "downloaded": downloaded,
            "left": left,
            "compact": 1,
        }
        if event:
            params["event"] = event

        separator = "&" if "?" in base_url else "?"
        query = urllib.parse.urlencode(params, quote_via=urllib.parse.quote)
        return f"{base_url}{separator}{query}"

    async def _make_request(self, url: str) -> bytes:
        """Make the HTTP GET request to the tracker."""
        if self.session is None:
            msg = "HTTP session not initialized"
            raise TrackerError(msg)
        try:
            async with self.session.get(url) as response:
                if response.status != 200:
                    msg = f"HTTP {response.status}: {response.reason}"
                    raise TrackerError(msg)
                return await response.read()
        except aiohttp.ClientError as e:
            msg = f"Network error: {e}"
            raise TrackerError(msg) from e
        except asyncio.TimeoutError as e:
            msg = "Tracker request timed out"
            raise TrackerError(msg) from e

    def _parse_response(self, response_data: bytes) -> TrackerResponse:
        """Parse a bencoded announce response.

        Raises:
            TrackerError: On a failure reason or a malformed response
        """
        try:
            decoded = BencodeDecoder(response_data).decode()
        except BencodeDecodeError as e:
            msg = f"Failed to parse tracker response: {e}"
            raise TrackerError(msg) from e
        if not isinstance(decoded, dict):
            msg = "Tracker response is not a dictionary"
            raise TrackerError(msg)

        if b"failure reason" in decoded:
            reason = decoded[b"failure reason"].decode("utf-8", errors="ignore")
            msg = f"Tracker failure: {reason}"
            raise TrackerError(msg)

        interval = decoded.get(b"interval", decoded.get(b"min interval"))
        if not isinstance(interval, int):
            msg = "Missing interval in tracker response"
            raise TrackerError(msg)
        if b"peers" not in decoded:
            msg = "Missing peers in tracker response"
            raise TrackerError(msg)

        peers_data = decoded[b"peers"]
        if isinstance(peers_data, bytes):
            peers = self._parse_compact_peers(peers_data)
        elif isinstance(peers_data, list):
            peers = self._parse_dict_peers(peers_data)
        else:
            msg = "Unsupported peers format in tracker response"
            raise TrackerError(msg)

        warning = decoded.get(b"warning message")
        try:
            return TrackerResponse(
                interval=interval,
                peers=peers,
                complete=decoded.get(b"complete"),
                incomplete=decoded.get(b"incomplete"),
                warning_message=warning.decode("utf-8", errors="replace")
                if isinstance(warning, bytes)
                else None,
            )
        except PydanticValidationError as e:
            msg = f"Invalid tracker response: {e}"
            raise TrackerError(msg) from e

    def _parse_compact_peers(self, peers_data: bytes) -> list[PeerInfo]:
        """Parse compact peer format.

        Each peer is 6 bytes: a 4-byte IPv4 address and a 2-byte port, both
        in network byte order. Entries with port 0 are skipped.

        Raises:
            TrackerError: If the data length is not a multiple of 6
        """
        if len(peers_data) % 6 != 0:
            msg = f"Invalid compact peer data length: {len(peers_data)} bytes"
            raise TrackerError(msg)

        peers = []
        for start in range(0, len(peers_data), 6):
            ip = ".".join(str(b) for b in peers_data[start : start + 4])
            port = int.from_bytes(peers_data[start + 4 : start + 6], byteorder="big")
            if port == 0:
                self.logger.debug("Skipping compact peer %s with port 0", ip)
                continue
            peers.append(PeerInfo(ip=ip, port=port))
        return peers

    def _parse_dict_peers(self, peers_data: list[Any]) -> list[PeerInfo]:
        peers = []
        for entry in peers_data:
            try:
                peers.append(
                    PeerInfo(
                        ip=entry[b"ip"].decode("utf-8"),
                        port=entry[b"port"],
                        peer_id=entry.get(b"peer id"),
                    ),
                )
            except (KeyError, TypeError, AttributeError, UnicodeDecodeError, PydanticValidationError):
                self.logger.debug("Skipping malformed peer entry: %r", entry)
        return peers
