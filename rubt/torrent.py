"""Metainfo (.torrent) parsing.

Only single-file torrents are supported. The parser validates the
structure and derives the info hash as the SHA-1 of the bencoded
info dictionary.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from rubt.bencode import BencodeDecodeError, decode, encode
from rubt.exceptions import TorrentError
from rubt.models import TorrentInfo

logger = logging.getLogger(__name__)


class TorrentParser:
    """Parser for single-file BitTorrent metainfo files."""

    def parse(self, torrent_path: str | Path) -> TorrentInfo:
        """Parse a torrent file from a local path.

        Args:
            torrent_path: Path to local torrent file

        Returns:
            TorrentInfo with the session parameters

        Raises:
            TorrentError: If the file is missing or invalid
        """
        path = Path(torrent_path)
        if not path.is_file():
            msg = f"Torrent file not found: {path}"
            raise TorrentError(msg)
        try:
            raw = path.read_bytes()
        except OSError as e:
            msg = f"Failed to read torrent file {path}: {e}"
            raise TorrentError(msg) from e
        return self.parse_bytes(raw)

    def parse_bytes(self, raw: bytes) -> TorrentInfo:
        """Parse bencoded metainfo already loaded in memory."""
        try:
            data = decode(raw)
        except BencodeDecodeError as e:
            msg = f"Failed to decode torrent: {e}"
            raise TorrentError(msg) from e

        self._validate(data)
        info = data[b"info"]

        piece_hashes = self._split_pieces(info[b"pieces"])
        try:
            torrent = TorrentInfo(
                name=info[b"name"].decode("utf-8", errors="replace"),
                info_hash=hashlib.sha1(encode(info)).digest(),  # nosec B324 - info hash is SHA-1 (BEP 3)
                announce=data[b"announce"].decode("utf-8"),
                total_length=info[b"length"],
                piece_length=info[b"piece length"],
                pieces=piece_hashes,
                num_pieces=len(piece_hashes),
            )
        except (PydanticValidationError, UnicodeDecodeError) as e:
            msg = f"Invalid torrent metadata: {e}"
            raise TorrentError(msg) from e

        logger.debug(
            "Parsed torrent %s: %d bytes in %d pieces",
            torrent.name,
            torrent.total_length,
            torrent.num_pieces,
        )
        return torrent

    @staticmethod
    def _validate(data: Any) -> None:
        if not isinstance(data, dict):
            msg = "Torrent root must be a dictionary"
            raise TorrentError(msg)
        for key in (b"announce", b"info"):
            if key not in data:
                msg = f"Missing required key in torrent: {key.decode()}"
                raise TorrentError(msg)

        info = data[b"info"]
        if not isinstance(info, dict):
            msg = "Invalid info dictionary in torrent"
            raise TorrentError(msg)
        if b"files" in info:
            msg = "Multi-file torrents are not supported"
            raise TorrentError(msg)
        for key in (b"name", b"length", b"piece length", b"pieces"):
            if key not in info:
                msg = f"Missing {key.decode()} in torrent info"
                raise TorrentError(msg)
        if not isinstance(info[b"length"], int) or not isinstance(info[b"piece length"], int):
            msg = "Torrent length fields must be integers"
            raise TorrentError(msg)

    @staticmethod
    def _split_pieces(pieces: bytes) -> list[bytes]:
        if not isinstance(pieces, bytes) or len(pieces) % 20 != 0:
            msg = "Invalid pieces data length (should be multiple of 20)"
            raise TorrentError(msg)
        return [pieces[i : i + 20] for i in range(0, len(pieces), 20)]
