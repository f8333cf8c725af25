"""
Media Session — one editor or viewer instance and everything it owns.

A session ties together a text buffer, a signed-URL cache and a placeholder
manager for the lifetime of one mounted editor/viewer. The API client is
injected; the cache is created with the session and cleared when it
closes.

Every change to the buffer schedules a refresh: the content is scanned
for filenames, and everything missing or stale is signed in one batch.

## Usage

    async with MediaApiClient(config) as client:
        async with MediaSession(client, config, initial_text=entry.content) as session:
            session.attach(files, position=cursor)
            session.insert_text(cursor, "typed while uploading")
            await session.wait_idle()
            html = render_images_html(session.text, session.cache)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set

from ..config.loader import ClientConfig
from .buffer import TextBuffer
from .files import MediaFile
from .normalize import ImageNormalizer
from .placeholders import PlaceholderManager, UploadBatch, Uploader
from .references import Filename, extract_image_filenames, parse_reference, to_markdown_line_breaks
from .resolver import make_url_transform, resolve_markdown, resolve_url
from .signed_cache import CacheListener, SignedUrlCache, Signer

logger = logging.getLogger(__name__)


class MediaClient(Uploader, Signer, Protocol):
    """Anything that can both upload and sign (MediaApiClient in practice)."""


class MediaSession:
    """Editor/viewer-scoped owner of buffer, cache and uploads."""

    def __init__(
        self,
        client: MediaClient,
        config: ClientConfig,
        initial_text: str = "",
        media_paths: Sequence[str] = (),
        *,
        normalizer: Optional[ImageNormalizer] = None,
        clock: Optional[Callable[[], int]] = None,
        batch_ids: Optional[Callable[[], int]] = None,
        auto_refresh: bool = True,
    ):
        self.config = config
        self.buffer = TextBuffer(initial_text)
        self.cache = SignedUrlCache(
            client,
            refresh_margin_ms=config.refresh_margin_ms,
            expiry_ms=config.sign_expiry_ms,
            clock=clock,
        )
        self.uploads = PlaceholderManager(
            self.buffer,
            normalizer or ImageNormalizer(config.max_size_mb, config.max_dimension),
            client,
            self.cache,
            batch_ids=batch_ids,
        )
        self._saved_media_paths = list(media_paths)
        self._refreshes: Set["asyncio.Task[int]"] = set()
        self._unsubscribe = (
            self.buffer.subscribe(self._on_content_change) if auto_refresh else lambda: None
        )
        self.auto_refresh = auto_refresh
        self._closed = False

    async def __aenter__(self) -> "MediaSession":
        if self.auto_refresh:
            await self.refresh()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ── Content ──────────────────────────────────────────────

    @property
    def text(self) -> str:
        return self.buffer.value

    @property
    def markdown_value(self) -> str:
        """The buffer as it should be saved: single newlines as hard breaks."""
        return to_markdown_line_breaks(self.buffer.value)

    @property
    def media_paths(self) -> List[str]:
        """Paths saved with the entry plus everything uploaded this session."""
        return self._saved_media_paths + self.uploads.media_paths

    def set_text(self, text: str) -> str:
        return self.buffer.set(text)

    def insert_text(self, position: int, text: str) -> str:
        return self.buffer.insert(position, text)

    def attach(self, files: Sequence[MediaFile], position: int) -> Optional[UploadBatch]:
        """Insert placeholders at *position* and upload in the background."""
        return self.uploads.begin_upload(files, position)

    # ── Resolution ───────────────────────────────────────────

    def referenced_filenames(self) -> List[str]:
        """Signable filenames from the content and the entry's media paths."""
        names: Dict[str, None] = dict.fromkeys(extract_image_filenames(self.buffer.value))
        for path in self.media_paths:
            reference = parse_reference(path)
            if isinstance(reference, Filename):
                names.setdefault(reference.name, None)
        return list(names)

    async def refresh(self) -> int:
        """Sign everything referenced that lacks a fresh cache entry."""
        if self._closed:
            return 0
        return await self.cache.resolve_batch(self.referenced_filenames())

    def resolve_url(self, token: str) -> str:
        return resolve_url(token, self.cache, self.uploads.pending_placeholders())

    @property
    def url_transform(self) -> Callable[[str], str]:
        return make_url_transform(self.cache, self.uploads.pending_placeholders)

    def resolved_markdown(self) -> str:
        return resolve_markdown(
            self.buffer.value, self.cache, self.uploads.pending_placeholders()
        )

    def on_cache_change(self, listener: CacheListener) -> Callable[[], None]:
        """Re-render hook: called with the new mapping after each cache update."""
        return self.cache.subscribe(listener)

    # ── Lifecycle ────────────────────────────────────────────

    def _on_content_change(self, text: str) -> None:
        if self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Content changed outside an event loop; refresh deferred")
            return
        task = loop.create_task(self.refresh())
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)

    async def wait_idle(self) -> None:
        """Wait for in-flight uploads and the refreshes they triggered."""
        await self.uploads.wait_idle()
        while self._refreshes:
            running = list(self._refreshes)
            await asyncio.gather(*running)
            self._refreshes.difference_update(running)

    async def aclose(self) -> None:
        await self.wait_idle()
        self._closed = True
        self._unsubscribe()
        self.cache.clear()
