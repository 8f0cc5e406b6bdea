"""Pytest configuration and shared fixtures for rubt tests."""

from __future__ import annotations

import hashlib
import logging
import math
from unittest.mock import AsyncMock, Mock

import pytest

from rubt import config as config_module
from rubt.models import Config, PeerInfo, TorrentInfo
from rubt.peer import PeerMessage, create_message
from rubt.peer_link import LinkState, PeerLink

INFO_HASH = hashlib.sha1(b"rubt test torrent").digest()
OUR_PEER_ID = b"-RB0001-ourpeerid000"
REMOTE_PEER_ID = b"-RB0001-remotepeer00"


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("unit", "marks tests as unit tests"),
        ("integration", "marks tests as integration tests"),
        ("peer", "marks tests as peer protocol tests"),
        ("piece", "marks tests as piece storage tests"),
        ("scheduler", "marks tests as piece scheduling tests"),
        ("choke", "marks tests as choking tests"),
        ("upload", "marks tests as upload tests"),
        ("tracker", "marks tests as tracker tests"),
        ("torrent", "marks tests as metainfo tests"),
        ("session", "marks tests as session coordination tests"),
        ("config", "marks tests as configuration tests"),
        ("cli", "marks tests as CLI tests"),
        ("observability", "marks tests as logging tests"),
        ("property", "marks tests as property-based tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep tests away from user config files, RUBT_* variables and the global config."""
    import os

    for name in list(os.environ):
        if name.startswith("RUBT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setattr(config_module, "_config_manager", None)
    yield
    config_module._config_manager = None


@pytest.fixture
def config(tmp_path) -> Config:
    """Configuration with fast loops and state under tmp_path."""
    return Config(
        network={
            "listen_interface": "127.0.0.1",
            "connection_timeout": 5.0,
            "socket_timeout": 5.0,
            "tracker_timeout": 5.0,
            "tracker_retry_interval": 0.05,
        },
        strategy={"idle_sleep": 0.01, "endgame_reissue_interval": 0.0},
        disk={"state_dir": str(tmp_path / "state"), "disk_workers": 2},
    )


def build_torrent(data: bytes, piece_length: int, name: str = "payload.bin") -> TorrentInfo:
    """TorrentInfo describing ``data`` split into ``piece_length`` pieces."""
    num_pieces = math.ceil(len(data) / piece_length)
    pieces = [
        hashlib.sha1(data[i * piece_length : (i + 1) * piece_length]).digest()
        for i in range(num_pieces)
    ]
    return TorrentInfo(
        name=name,
        info_hash=INFO_HASH,
        announce="http://tracker.test/announce",
        total_length=len(data),
        piece_length=piece_length,
        pieces=pieces,
        num_pieces=num_pieces,
    )


@pytest.fixture
def payload() -> bytes:
    """Four full pieces of 16 KiB and a short last piece."""
    return bytes((i * 7 + 3) % 251 for i in range(4 * 16384 + 1000))


@pytest.fixture
def torrent(payload) -> TorrentInfo:
    return build_torrent(payload, 16384)


def make_writer() -> Mock:
    """Stand-in for an ``asyncio.StreamWriter``."""
    writer = Mock()
    writer.write = Mock()
    writer.drain = AsyncMock()
    writer.close = Mock()
    writer.wait_closed = AsyncMock()
    return writer


def sent_messages(link: PeerLink) -> list[PeerMessage]:
    """Messages written to a link created by ``link_factory``."""
    return [create_message(call.args[0]) for call in link.writer.write.call_args_list]


@pytest.fixture
def link_factory(config):
    """Create established links backed by a mock writer."""

    def _make(
        host: int = 1,
        *,
        peer_choking: bool = False,
        am_interested: bool = True,
        am_choking: bool = True,
        peer_interested: bool = True,
    ) -> PeerLink:
        link = PeerLink(
            PeerInfo(ip=f"10.0.0.{host}", port=6881),
            INFO_HASH,
            OUR_PEER_ID,
            config,
        )
        link.writer = make_writer()
        link.state = LinkState.ESTABLISHED
        link.peer_choking = peer_choking
        link.am_interested = am_interested
        link.am_choking = am_choking
        link.peer_interested = peer_interested
        return link

    return _make
