"""
Media References — Token grammar and content scanner for markdown images.

Every ``![alt](ref)`` in an entry carries one reference token, which is
one of:

    FullUrl      "https://cdn.example.com/a.jpg", "data:image/svg+xml,..."
                 Anything starting with a URL scheme. Used verbatim.
    Placeholder  "uploading-1690000001234-0"
                 A file still uploading: batch id and index in the batch.
    Filename     "1690000001234-k3x9qa-beach.jpg", "/uploads/1690...jpg"
                 Last path segment starts with digits and has an
                 extension. Eligible for signing.

Tokens that match none of these are left alone by every consumer.

The scanner is stateless; the editor and the read-only viewer both call
it on every content change.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Union

# ![alt](ref): alt up to "]", reference up to the closing parenthesis
IMAGE_MD_RE = re.compile(r"!\[([^\]]*)\]\(([^)\s]+)\)")

URL_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")
PLACEHOLDER_RE = re.compile(r"^uploading-(\d+)-(\d+)$")
FILENAME_RE = re.compile(r"^\d+[^/]*\.\w+")

PLACEHOLDER_PREFIX = "uploading-"


@dataclass(frozen=True)
class FullUrl:
    url: str


@dataclass(frozen=True)
class Filename:
    name: str


@dataclass(frozen=True)
class Placeholder:
    batch_id: int
    index: int

    @property
    def token(self) -> str:
        return placeholder_token(self.batch_id, self.index)


MediaReference = Union[FullUrl, Filename, Placeholder]


class ImageRef(NamedTuple):
    """One image occurrence in markdown text."""

    alt: str
    token: str
    reference: Optional[MediaReference]
    start: int
    end: int


def placeholder_token(batch_id: int, index: int) -> str:
    return f"{PLACEHOLDER_PREFIX}{batch_id}-{index}"


def parse_reference(token: str) -> Optional[MediaReference]:
    """Classify a reference token; None when it is none of the three kinds."""
    token = token.strip()
    if not token:
        return None

    if URL_SCHEME_RE.match(token):
        return FullUrl(token)

    match = PLACEHOLDER_RE.match(token)
    if match:
        return Placeholder(int(match.group(1)), int(match.group(2)))

    # Relative paths are keyed by their last segment
    name = token.rsplit("/", 1)[-1]
    if name.startswith(PLACEHOLDER_PREFIX):
        return None
    if FILENAME_RE.match(name):
        return Filename(name)

    return None


def scan_references(text: str) -> List[ImageRef]:
    """Every image reference in *text*, in document order."""
    if not text:
        return []
    return [
        ImageRef(
            alt=m.group(1),
            token=m.group(2),
            reference=parse_reference(m.group(2)),
            start=m.start(),
            end=m.end(),
        )
        for m in IMAGE_MD_RE.finditer(text)
    ]


def extract_image_filenames(text: str) -> List[str]:
    """Signable filenames referenced by images in *text*, deduplicated, in order."""
    seen = {}
    for ref in scan_references(text):
        if isinstance(ref.reference, Filename):
            seen.setdefault(ref.reference.name, None)
    return list(seen)


def extract_placeholders(text: str) -> List[Placeholder]:
    """Placeholders currently present in *text*."""
    return [
        ref.reference
        for ref in scan_references(text)
        if isinstance(ref.reference, Placeholder)
    ]


def to_markdown_line_breaks(text: str) -> str:
    """
    Turn single newlines into markdown hard breaks.

    Paragraph breaks (blank lines) are kept; inside a paragraph every
    newline becomes two spaces + newline so it renders as a line break.
    """
    paragraphs = text.split("\n\n")
    return "\n\n".join("  \n".join(p.split("\n")) for p in paragraphs)
