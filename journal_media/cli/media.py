"""
CLI media commands — scan, normalize, attach, sign and render.

Usage:
    journal-media scan ENTRY.md
    journal-media normalize IMG... --out DIR
    journal-media attach ENTRY.md IMG... [--at OFFSET]
    journal-media sign FILENAME...
    journal-media render ENTRY.md [--html] [--stats]
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Tuple

import click

from ..api.client import MediaApiClient
from ..config.loader import load_config
from ..errors import ConfigurationError, ProcessingError, SigningError
from ..media.files import MediaFile
from ..media.normalize import ImageNormalizer
from ..media.placeholders import UploadBatch, UploadState
from ..media.references import extract_image_filenames, extract_placeholders
from ..media.resolver import render_images_html
from ..media.session import MediaSession
from ..observability.metrics import metrics


def _load_config_or_exit():
    try:
        return load_config()
    except ConfigurationError as e:
        raise click.ClickException(str(e))


def _format_expiry(expires_ms: int) -> str:
    return datetime.fromtimestamp(expires_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@click.command("scan")
@click.argument("entry", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def scan(entry: Path) -> None:
    """List the signable image filenames referenced by ENTRY."""
    text = entry.read_text(encoding="utf-8")
    filenames = extract_image_filenames(text)
    placeholders = extract_placeholders(text)

    if not filenames:
        click.echo("  No server images referenced.")
    for name in filenames:
        click.echo(f"  {name}")

    if placeholders:
        click.secho(
            f"\n⚠  {len(placeholders)} stale upload placeholder(s) left in the entry",
            fg="yellow",
        )


@click.command("normalize")
@click.argument("images", nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--out", "out_dir", required=True,
              type=click.Path(file_okay=False, path_type=Path),
              help="Directory to write normalized images to")
def normalize(images: Tuple[Path, ...], out_dir: Path) -> None:
    """Convert, compress and rename IMAGES without uploading them."""
    config = _load_config_or_exit()
    normalizer = ImageNormalizer(config.max_size_mb, config.max_dimension)

    try:
        processed = normalizer.process_images([MediaFile.from_path(p) for p in images])
    except ProcessingError as e:
        raise click.ClickException(str(e))

    out_dir.mkdir(parents=True, exist_ok=True)
    for img in processed:
        (out_dir / img.new_name).write_bytes(img.file.data)
        click.echo(f"  {img.original_name} → {img.new_name} ({img.size / 1024:.1f} KB)")


@click.command("attach")
@click.argument("entry", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("images", nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--at", "position", type=int, default=None,
              help="Character offset to insert at (default: end of entry)")
def attach(entry: Path, images: Tuple[Path, ...], position: int | None) -> None:
    """Upload IMAGES and insert them into ENTRY."""
    config = _load_config_or_exit()
    text = entry.read_text(encoding="utf-8")
    files = [MediaFile.from_path(p) for p in images]
    insert_at = len(text) if position is None else position

    async def run() -> Tuple[UploadBatch, str]:
        async with MediaApiClient(config) as client:
            session = MediaSession(client, config, initial_text=text, auto_refresh=False)
            batch = session.attach(files, insert_at)
            await session.wait_idle()
            result = session.text
            await session.aclose()
            return batch, result

    batch, new_text = asyncio.run(run())
    entry.write_text(new_text, encoding="utf-8")

    click.echo()
    for task in batch.tasks:
        if task.outcome == UploadState.SUCCEEDED:
            click.secho(f"  ✓ {task.file.name} → {task.filename}", fg="green")
        else:
            click.secho(f"  ✗ {task.file.name}: {task.error}", fg="red")
    click.echo()
    click.echo(f"  {len(batch.succeeded)} uploaded, {len(batch.failed)} failed")

    if batch.failed:
        raise SystemExit(1)


@click.command("sign")
@click.argument("filenames", nargs=-1, required=True)
def sign(filenames: Tuple[str, ...]) -> None:
    """Request signed URLs for FILENAMES in one batch."""
    config = _load_config_or_exit()

    async def run():
        async with MediaApiClient(config) as client:
            return await client.sign(list(filenames), expiry_ms=config.sign_expiry_ms)

    try:
        signed = asyncio.run(run())
    except SigningError as e:
        raise click.ClickException(str(e))

    for s in signed:
        click.echo(f"  {s.filename}")
        click.echo(f"      {s.url}")
        click.echo(f"      expires {_format_expiry(s.expires)}")


@click.command("render")
@click.argument("entry", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--html", "as_html", is_flag=True, help="Emit <img> tags instead of markdown")
@click.option("--stats", is_flag=True, help="Print pipeline counters to stderr")
def render(entry: Path, as_html: bool, stats: bool) -> None:
    """Print ENTRY with image references resolved to signed URLs."""
    config = _load_config_or_exit()
    text = entry.read_text(encoding="utf-8")

    async def run() -> str:
        async with MediaApiClient(config) as client:
            async with MediaSession(client, config, initial_text=text) as session:
                if as_html:
                    return render_images_html(
                        session.text, session.cache, session.uploads.pending_placeholders()
                    )
                return session.resolved_markdown()

    click.echo(asyncio.run(run()))

    if stats:
        for name, value in metrics.snapshot().items():
            click.echo(f"{name}: {value:g}", err=True)
