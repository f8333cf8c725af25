"""
Errors — Exception taxonomy for the media reference pipeline.

Each error class maps to one recovery policy:

- ProcessingError: normalization failed; the whole upload batch is aborted.
- TransferError: one file's upload failed; its placeholder is removed and
  the rest of the batch carries on.
- SigningError: a batch sign request failed; the cache is left untouched
  and the next content change retries.
- ConfigurationError: client configuration is missing or invalid.

Malformed signed URLs are not an error class of their own: the cache
treats an unparseable expiry as already expired.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class MediaPipelineError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ProcessingError(MediaPipelineError):
    """Raised when an image cannot be converted or compressed."""

    def __init__(self, message: str, file_name: str = ""):
        self.file_name = file_name
        super().__init__(message, details={"file_name": file_name})


class TransferError(MediaPipelineError):
    """Raised when a single file upload fails."""

    def __init__(
        self,
        message: str,
        file_index: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        self.file_index = file_index
        self.status_code = status_code
        super().__init__(
            message,
            details={"file_index": file_index, "status_code": status_code},
        )


class SigningError(MediaPipelineError):
    """Raised when a batch sign request fails."""

    def __init__(
        self,
        message: str,
        filenames: Optional[List[str]] = None,
        status_code: Optional[int] = None,
    ):
        self.filenames = list(filenames or [])
        self.status_code = status_code
        super().__init__(
            message,
            details={"filenames": self.filenames, "status_code": status_code},
        )


class ConfigurationError(MediaPipelineError):
    """Raised when configuration is missing or invalid."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(f"{field}: {message}" if field else message)
