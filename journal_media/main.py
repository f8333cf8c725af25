"""
Journal Media — CLI Entry Point

Usage:
    journal-media scan ENTRY.md
    journal-media attach ENTRY.md photo.heic [--at 120]
    journal-media render ENTRY.md --html
    python -m journal_media.main sign 1690000001234-k3x9qa-beach.jpg
"""

from __future__ import annotations

# Load .env FIRST, before anything reads env vars
from pathlib import Path
from dotenv import load_dotenv

_env_file = Path.cwd() / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

import click

from .cli.media import attach, normalize, render, scan, sign
from .logging_config import setup_logging


@click.group()
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
@click.option("--log-format", type=click.Choice(["text", "json"]), default=None)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, log_format: str | None) -> None:
    """Journal Media — upload, sign and resolve journal images."""
    ctx.ensure_object(dict)
    setup_logging(level=log_level, format_type=log_format)


cli.add_command(scan)
cli.add_command(normalize)
cli.add_command(attach)
cli.add_command(sign)
cli.add_command(render)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
