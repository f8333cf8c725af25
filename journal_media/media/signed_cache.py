"""
Signed-URL Cache — filename → signed URL, refreshed lazily in batches.

Answers "what is the renderable URL for filename X right now". An entry
counts as stale once the clock is within ``refresh_margin_ms`` (default
60s) of its expiry, so a URL handed to a renderer cannot expire mid-render.

The entries mapping is copy-on-write: every update publishes a brand-new
read-only mapping, so consumers detect changes by identity
(``cache.entries is not previous``).

## Usage

    cache = SignedUrlCache(client)
    cache.put("1690000001234-k3x9qa-beach.jpg", upload.url)    # after upload
    await cache.resolve_batch(extract_image_filenames(text))  # on content change
    entry = cache.get("1690000001234-k3x9qa-beach.jpg")
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set
from urllib.parse import parse_qs, urlsplit

from ..api.models import SignedUrl
from ..errors import SigningError
from ..observability.metrics import metrics

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_MS = 60_000
EXPIRES_PARAM = "expires"


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_expiry(url: str) -> int:
    """
    Read the absolute expiry (ms) from a signed URL's ``expires`` parameter.

    Returns 0 (already expired) when the parameter is missing or not an
    integer, so a malformed URL is refreshed rather than trusted.
    """
    try:
        values = parse_qs(urlsplit(url).query).get(EXPIRES_PARAM)
        if not values:
            return 0
        return int(values[0])
    except ValueError:
        logger.debug(f"Unparseable expiry in signed URL: {url}")
        return 0


class Signer(Protocol):
    async def sign(
        self,
        filenames: Sequence[str],
        expiry_ms: Optional[int] = None,
    ) -> List[SignedUrl]: ...


@dataclass(frozen=True)
class SignedUrlEntry:
    filename: str
    url: str
    expires_at: int

    def is_fresh(self, now: int, margin_ms: int) -> bool:
        return now <= self.expires_at - margin_ms


CacheListener = Callable[[Mapping[str, SignedUrlEntry]], None]


class SignedUrlCache:
    """
    TTL-aware signed URL cache owned by one editor or viewer session.

    ``resolve_batch`` issues at most one sign request per call and skips
    filenames another in-flight call is already signing (best-effort
    dedup; a racing call may still re-sign a name once).
    """

    def __init__(
        self,
        signer: Signer,
        *,
        refresh_margin_ms: int = DEFAULT_REFRESH_MARGIN_MS,
        expiry_ms: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._signer = signer
        self.refresh_margin_ms = refresh_margin_ms
        self.expiry_ms = expiry_ms
        self._clock = clock or now_ms

        self._entries: Mapping[str, SignedUrlEntry] = MappingProxyType({})
        self._in_flight: Set[str] = set()
        self._listeners: List[CacheListener] = []
        self._lock = threading.Lock()

    # ── Queries ──────────────────────────────────────────────

    @property
    def entries(self) -> Mapping[str, SignedUrlEntry]:
        """Current snapshot. Never mutated; replaced on every update."""
        return self._entries

    def get(self, filename: str) -> Optional[SignedUrlEntry]:
        """The entry for *filename* if present and fresh, else None."""
        entry = self._entries.get(filename)
        if entry is None or not entry.is_fresh(self._clock(), self.refresh_margin_ms):
            return None
        return entry

    def stale_filenames(self, filenames: Iterable[str]) -> List[str]:
        """Missing-or-stale subset of *filenames*, deduplicated, order kept."""
        stale: Dict[str, None] = {}
        for name in filenames:
            if name and self.get(name) is None:
                stale.setdefault(name, None)
        return list(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, filename: object) -> bool:
        return filename in self._entries

    # ── Updates ──────────────────────────────────────────────

    def put(
        self,
        filename: str,
        url: str,
        expires_at: Optional[int] = None,
    ) -> SignedUrlEntry:
        """
        Record a signed URL supplied by the server.

        Without an explicit *expires_at* the expiry is read from the URL.
        """
        if expires_at is None:
            expires_at = parse_expiry(url)
        entry = SignedUrlEntry(filename=filename, url=url, expires_at=expires_at)
        self._publish({filename: entry})
        return entry

    async def resolve_batch(self, filenames: Iterable[str]) -> int:
        """
        Refresh every missing or stale filename with one sign request.

        Returns the number of entries merged. A failed request leaves the
        cache untouched and returns 0; the next content change retries.
        """
        stale = [n for n in self.stale_filenames(filenames) if n not in self._in_flight]
        if not stale:
            return 0

        self._in_flight.update(stale)
        metrics.increment("sign.requests")
        try:
            signed = await self._signer.sign(stale, expiry_ms=self.expiry_ms)
        except SigningError as e:
            metrics.increment("sign.failures")
            logger.warning(f"Failed to fetch signed URLs for {len(stale)} file(s): {e}")
            return 0
        finally:
            self._in_flight.difference_update(stale)

        updates = {
            s.filename: SignedUrlEntry(filename=s.filename, url=s.url, expires_at=s.expires)
            for s in signed
        }
        if updates:
            self._publish(updates)
        metrics.increment("sign.urls", len(updates))
        logger.debug(f"Refreshed {len(updates)} signed URL(s)")
        return len(updates)

    def clear(self) -> None:
        with self._lock:
            self._entries = MappingProxyType({})
        self._notify(self._entries)

    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        """Call *listener* with the new mapping after every update."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, updates: Mapping[str, SignedUrlEntry]) -> None:
        with self._lock:
            merged = dict(self._entries)
            merged.update(updates)
            self._entries = MappingProxyType(merged)
            snapshot = self._entries
        self._notify(snapshot)

    def _notify(self, snapshot: Mapping[str, SignedUrlEntry]) -> None:
        for listener in list(self._listeners):
            listener(snapshot)
