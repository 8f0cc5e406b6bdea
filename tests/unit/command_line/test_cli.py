"""Tests for the command line interface."""

from __future__ import annotations

import importlib

import pytest
from click.testing import CliRunner

from rubt import __version__
from rubt.bencode import encode
from rubt.cli.main import cli
from rubt.cli.progress import format_bytes
from rubt.config import ConfigManager
from rubt.peer import PieceMessage
from rubt.piece_store import PieceStore
from rubt.torrent import TorrentParser

pytestmark = [pytest.mark.unit, pytest.mark.cli]

cli_main = importlib.import_module("rubt.cli.main")


@pytest.fixture
def torrent_file(tmp_path, payload, torrent):
    meta = {
        b"announce": b"http://tracker.test/announce",
        b"info": {
            b"name": b"payload.bin",
            b"length": len(payload),
            b"piece length": 16384,
            b"pieces": b"".join(torrent.pieces),
        },
    }
    path = tmp_path / "payload.torrent"
    path.write_bytes(encode(meta))
    return path


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return CliRunner()


class FakeCoordinator:
    """Stands in for a session that finishes immediately."""

    instances: list[FakeCoordinator] = []

    def __init__(self, torrent, download_path, config):
        self.torrent = torrent
        self.download_path = download_path
        self.config = config
        self.resume = None
        self.download_complete = False
        self.shut_down = False
        FakeCoordinator.instances.append(self)

    async def start(self, resume=True):
        self.resume = resume
        self.download_complete = True

    def left(self):
        return 0

    def status(self):
        return {"left": 0, "peers": 1, "uploaded": 0, "downloaded": self.torrent.total_length}

    async def shutdown(self):
        self.shut_down = True


class TestFormatBytes:
    @pytest.mark.parametrize(
        ("nbytes", "expected"),
        [(0, "0 B"), (1023, "1023 B"), (1536, "1.5 KiB"), (5 * 1024**3, "5.0 GiB")],
    )
    def test_format(self, nbytes, expected):
        assert format_bytes(nbytes) == expected


class TestCli:
    """Command behaviour."""

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_info(self, runner, torrent_file, torrent):
        result = runner.invoke(cli, ["info", str(torrent_file)])
        assert result.exit_code == 0, result.output
        assert "payload.bin" in result.output
        assert TorrentParser().parse(torrent_file).info_hash.hex() in result.output
        assert "Pieces" in result.output

    def test_info_invalid_torrent(self, runner, tmp_path):
        bad = tmp_path / "bad.torrent"
        bad.write_bytes(b"garbage")
        result = runner.invoke(cli, ["info", str(bad)])
        assert result.exit_code == 1
        assert "Failed to decode torrent" in result.output

    def test_status_without_progress(self, runner, torrent_file):
        result = runner.invoke(cli, ["status", str(torrent_file)])
        assert result.exit_code == 0, result.output
        assert "No saved progress for payload.bin" in result.output

    def test_status_with_progress(self, runner, torrent_file, tmp_path, payload):
        torrent = TorrentParser().parse(torrent_file)
        state_dir = tmp_path / "state"
        config_file = tmp_path / "rubt.toml"
        config_file.write_text(f'[disk]\nstate_dir = "{state_dir.as_posix()}"\n', encoding="utf-8")

        config = ConfigManager(config_file, configure_logging=False).config
        store = PieceStore(torrent, tmp_path / "payload.bin", config)
        store.create_backing_file()
        store.store_block(PieceMessage(0, 0, payload[:16384]))

        result = runner.invoke(cli, ["--config", str(config_file), "status", str(torrent_file)])
        assert result.exit_code == 0, result.output
        assert "1/5" in result.output
        assert "16.0 KiB" in result.output

    def test_missing_config_file(self, runner, torrent_file):
        result = runner.invoke(cli, ["--config", "missing.toml", "info", str(torrent_file)])
        assert result.exit_code == 2

    def test_download(self, runner, torrent_file, tmp_path, monkeypatch):
        FakeCoordinator.instances.clear()
        monkeypatch.setattr(cli_main, "DownloadCoordinator", FakeCoordinator)
        output = tmp_path / "out.bin"

        result = runner.invoke(cli, ["download", str(torrent_file), "-o", str(output), "--fresh"])

        assert result.exit_code == 0, result.output
        assert "Downloaded payload.bin" in result.output
        (session,) = FakeCoordinator.instances
        assert session.download_path == output
        assert session.resume is False
        assert session.shut_down
