"""rubt command line interface.

Commands:
- ``download``: fetch (and optionally seed) a torrent with a live progress bar
- ``info``: show the metainfo of a torrent file
- ``status``: show the saved progress of a download
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from rubt import __version__
from rubt.cli.progress import create_download_progress, format_bytes
from rubt.config import init_config
from rubt.coordinator import DownloadCoordinator
from rubt.exceptions import RUBTError
from rubt.logging_config import setup_logging
from rubt.models import LogLevel
from rubt.piece_store import PieceStore, ResumeStatus
from rubt.torrent import TorrentParser

if TYPE_CHECKING:
    from rubt.models import Config, TorrentInfo

logger = logging.getLogger(__name__)
console = Console()

REFRESH_INTERVAL = 0.5


def _load_torrent(torrent_file: str) -> TorrentInfo:
    try:
        return TorrentParser().parse(torrent_file)
    except RUBTError as e:
        raise click.ClickException(str(e)) from e


def _output_path(torrent: TorrentInfo, output: str | None) -> Path:
    return Path(output) if output else Path.cwd() / torrent.name


@click.group()
@click.version_option(__version__, prog_name="rubt")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.pass_context
def cli(ctx, config, verbose):
    """rubt - a BitTorrent client for single-file torrents."""
    ctx.ensure_object(dict)
    try:
        config_manager = init_config(config)
    except RUBTError as e:
        raise click.ClickException(str(e)) from e

    cfg = config_manager.config
    if verbose:
        cfg.observability.log_level = LogLevel.DEBUG if verbose > 1 else LogLevel.INFO
        setup_logging(cfg.observability)
    ctx.obj["config"] = cfg


async def _run_download(
    torrent: TorrentInfo,
    output_path: Path,
    config: Config,
    resume: bool,
    seed: bool,
) -> dict[str, Any]:
    coordinator = DownloadCoordinator(torrent, output_path, config)
    try:
        with console.status("Contacting tracker..."):
            await coordinator.start(resume=resume)

        with create_download_progress(console) as progress:
            task = progress.add_task(
                torrent.name,
                total=torrent.total_length,
                completed=torrent.total_length - coordinator.left(),
                peers=0,
                uploaded=format_bytes(0),
            )
            while True:
                status = coordinator.status()
                progress.update(
                    task,
                    completed=torrent.total_length - status["left"],
                    peers=status["peers"],
                    uploaded=format_bytes(status["uploaded"]),
                )
                if coordinator.download_complete and not seed:
                    break
                await asyncio.sleep(REFRESH_INTERVAL)
        return coordinator.status()
    finally:
        await coordinator.shutdown()


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Output file path")
@click.option(
    "--resume/--fresh",
    default=True,
    help="Continue from saved progress or start over",
)
@click.option("--seed", is_flag=True, help="Keep seeding after the download completes")
@click.pass_context
def download(ctx, torrent_file, output, resume, seed):
    """Download a torrent."""
    config = ctx.obj["config"]
    torrent = _load_torrent(torrent_file)
    output_path = _output_path(torrent, output)

    try:
        status = asyncio.run(_run_download(torrent, output_path, config, resume, seed))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, progress saved.[/yellow]")
        ctx.exit(130)
    except RUBTError as e:
        logger.debug("Download failed", exc_info=True)
        raise click.ClickException(str(e)) from e

    console.print(
        f"[green]Downloaded {torrent.name}[/green] to {output_path} "
        f"(down {format_bytes(status['downloaded'])}, up {format_bytes(status['uploaded'])})",
    )


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
def info(torrent_file):
    """Show torrent metainfo."""
    torrent = _load_torrent(torrent_file)

    table = Table(title="Torrent", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Name", torrent.name)
    table.add_row("Info hash", torrent.info_hash.hex())
    table.add_row("Announce", torrent.announce)
    table.add_row("Size", f"{format_bytes(torrent.total_length)} ({torrent.total_length} bytes)")
    table.add_row("Piece length", format_bytes(torrent.piece_length))
    table.add_row("Pieces", str(torrent.num_pieces))
    table.add_row("Last piece", format_bytes(torrent.last_piece_length))
    console.print(table)


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Output file path")
@click.pass_context
def status(ctx, torrent_file, output):
    """Show saved download progress."""
    torrent = _load_torrent(torrent_file)
    store = PieceStore(torrent, _output_path(torrent, output), ctx.obj["config"])

    if store.resume() == ResumeStatus.NO_SAVED_STATE:
        console.print(f"No saved progress for {torrent.name}")
        return

    progress = store.download_status()
    table = Table(title=torrent.name, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row(
        "Pieces",
        f"{progress['pieces_completed']}/{progress['pieces_total']}",
    )
    table.add_row("Saved", format_bytes(progress["bytes_saved"]))
    table.add_row("Left", format_bytes(progress["bytes_left"]))
    table.add_row("Complete", f"{progress['percent_complete']:.1f}%")
    table.add_row("State file", str(store.state_path))
    console.print(table)


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
