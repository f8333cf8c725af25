"""
API Models — Pydantic schemas for the media endpoints.

Upload:  POST /api/media/upload  → UploadResult
Sign:    POST /api/media/sign    → List[SignedUrl]
"""

from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, Field, model_validator


class UploadResult(BaseModel):
    """Server response for one uploaded file."""

    filename: str = ""
    url: str
    path: str = ""
    id: Optional[Union[int, str]] = None

    @model_validator(mode="after")
    def _default_filename(self) -> "UploadResult":
        # Older servers only return the storage path
        if not self.filename:
            if not self.path:
                raise ValueError("upload response has neither filename nor path")
            # Keyed like a Filename reference: last path segment only
            self.filename = self.path.rsplit("/", 1)[-1]
        return self


class SignedUrl(BaseModel):
    """One entry of a batch sign response."""

    filename: str
    url: str
    expires: int = Field(description="Absolute expiry, milliseconds since epoch")
    signature: Optional[str] = None


class SignRequest(BaseModel):
    """Body of a batch sign request."""

    filenames: list[str]
    expiry_ms: Optional[int] = Field(default=None, serialization_alias="expiryMs")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
