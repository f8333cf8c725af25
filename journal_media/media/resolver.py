"""
URL Resolver — turn reference tokens into renderable URLs at render time.

Pure and synchronous; never touches the network:

    FullUrl      → returned unchanged
    Placeholder  → inline "Uploading..." SVG while its upload is pending,
                   else the raw token
    Filename     → fresh cached signed URL, else the raw filename
    anything else→ the raw token

A cache miss renders as a broken image until the pending batch sign
completes and the caller re-renders.
"""

from __future__ import annotations

import html
import re
from typing import Callable, Collection, Optional, Protocol

from .references import IMAGE_MD_RE, Filename, FullUrl, Placeholder, parse_reference

UPLOADING_IMAGE_DATA_URL = (
    'data:image/svg+xml,%3Csvg xmlns="http://www.w3.org/2000/svg" width="100" '
    'height="100"%3E%3Ctext x="10" y="50" font-size="12"%3EUploading...%3C/text%3E%3C/svg%3E'
)


class _Entry(Protocol):
    url: str


class UrlLookup(Protocol):
    def get(self, filename: str) -> Optional[_Entry]: ...


def resolve_url(
    token: str,
    cache: UrlLookup,
    pending: Optional[Collection[str]] = None,
) -> str:
    """
    Renderable URL for one reference token.

    *pending* holds the placeholder tokens whose uploads are still in
    flight. A placeholder outside it (left over from an earlier session)
    renders as its raw token. Without *pending* every placeholder counts.
    """
    reference = parse_reference(token)

    if isinstance(reference, FullUrl):
        return token
    if isinstance(reference, Placeholder):
        if pending is not None and reference.token not in pending:
            return token
        return UPLOADING_IMAGE_DATA_URL
    if isinstance(reference, Filename):
        entry = cache.get(reference.name)
        return entry.url if entry else token
    return token


def make_url_transform(
    cache: UrlLookup,
    pending: Optional[Callable[[], Collection[str]]] = None,
) -> Callable[[str], str]:
    """Bind *cache* into a ``url -> url`` callback for markdown renderers."""

    def transform(url: str) -> str:
        return resolve_url(url, cache, pending() if pending else None)

    return transform


def resolve_markdown(
    text: str,
    cache: UrlLookup,
    pending: Optional[Collection[str]] = None,
) -> str:
    """Rewrite every ``![alt](ref)`` in *text* to point at its resolved URL."""

    def _resolve(match: re.Match) -> str:
        alt, token = match.group(1), match.group(2)
        return f"![{alt}]({resolve_url(token, cache, pending)})"

    return IMAGE_MD_RE.sub(_resolve, text)


def render_images_html(
    text: str,
    cache: UrlLookup,
    pending: Optional[Collection[str]] = None,
) -> str:
    """
    Replace markdown image syntax with ``<img>`` tags.

    Only images are converted; the rest of the text is left as-is for the
    caller's markdown renderer.
    """

    def _render(match: re.Match) -> str:
        alt = match.group(1).strip()
        url = resolve_url(match.group(2), cache, pending)
        alt_text = html.escape(alt or "image", quote=True)
        return (
            f'<img src="{html.escape(url, quote=True)}" alt="{alt_text}" '
            f'style="max-width:100%;height:auto;display:block;margin:8px 0;">'
        )

    return IMAGE_MD_RE.sub(_render, text)
