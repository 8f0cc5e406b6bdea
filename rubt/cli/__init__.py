"""Command line interface for rubt."""

from __future__ import annotations

from rubt.cli.main import cli, main

__all__ = ["cli", "main"]
