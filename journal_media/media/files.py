"""
Media file value types shared by the normalizer, the uploader and the
placeholder manager.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class MediaFile:
    """An in-memory file selected for upload."""

    name: str
    data: bytes
    mime_type: str = DEFAULT_MIME_TYPE

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        """Lower-cased extension without the dot, or '' if there is none."""
        if "." not in self.name:
            return ""
        return self.name.rsplit(".", 1)[-1].lower()

    def renamed(self, name: str) -> "MediaFile":
        return MediaFile(name=name, data=self.data, mime_type=self.mime_type)

    @classmethod
    def from_path(cls, path: Path) -> "MediaFile":
        """Read a file from disk, guessing its MIME type from the suffix."""
        path = Path(path)
        mime_type, _ = mimetypes.guess_type(path.name)
        if mime_type is None and path.suffix.lower() in (".heic", ".heif"):
            mime_type = f"image/{path.suffix.lower()[1:]}"
        return cls(
            name=path.name,
            data=path.read_bytes(),
            mime_type=mime_type or DEFAULT_MIME_TYPE,
        )


@dataclass(frozen=True)
class ProcessedImage:
    """A normalized file, ready for upload under its unique name."""

    file: MediaFile
    original_name: str
    new_name: str
    size: int
