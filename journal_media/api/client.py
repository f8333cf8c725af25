"""
Media API Client — upload files and sign filenames against the journal API.

## Endpoints

- POST /api/media/upload   multipart field "file"
  → {"filename": "...", "url": "/api/media/download/...?expires=...", "path": "...", "id": "..."}
- POST /api/media/sign     {"filenames": [...], "expiryMs": 3600000}
  → [{"filename": "...", "url": "...", "expires": 1690003600000, "signature": "..."}]

Every request carries the API key in the ``x-api-key`` header. Relative
URLs in responses are made absolute against the configured API URL.

## Usage

    async with MediaApiClient(load_config()) as client:
        result = await client.upload_image(processed.file)
        signed = await client.sign([result.filename])
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
from pydantic import TypeAdapter, ValidationError

from ..config.loader import SIGN_ENDPOINT, UPLOAD_ENDPOINT, ClientConfig
from ..errors import SigningError, TransferError
from ..media.files import MediaFile
from .models import SignedUrl, SignRequest, UploadResult

logger = logging.getLogger(__name__)

USER_AGENT = "journal-media/1.0"

_signed_urls = TypeAdapter(List[SignedUrl])


class MediaApiClient:
    """
    Async client for the media endpoints.

    Owns its ``httpx.AsyncClient`` unless one is injected (tests pass a
    client built on ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: ClientConfig,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=config.timeout_seconds)

    async def __aenter__(self) -> "MediaApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ── Helpers ──────────────────────────────────────────────

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        if self.config.api_key:
            headers["x-api-key"] = self.config.api_key
        return headers

    def _endpoint(self, path: str) -> str:
        return f"{self.config.api_url}{path}"

    def absolute_url(self, url: str) -> str:
        """Prefix server-relative URLs with the API base URL."""
        if url.startswith(("http://", "https://")):
            return url
        if not url.startswith("/"):
            url = f"/{url}"
        return f"{self.config.api_url}{url}"

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return f"HTTP error! status: {response.status_code}"

    # ── Upload ───────────────────────────────────────────────

    async def upload_image(
        self,
        file: MediaFile,
        file_index: Optional[int] = None,
    ) -> UploadResult:
        """
        Upload one file.

        Raises:
            TransferError: on transport failure, HTTP error status, or a
                response that does not describe the stored file.
        """
        try:
            response = await self._http.post(
                self._endpoint(UPLOAD_ENDPOINT),
                files={"file": (file.name, file.data, file.mime_type)},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise TransferError(f"Upload of {file.name} failed: {e}", file_index=file_index)

        if response.status_code >= 400:
            raise TransferError(
                self._error_message(response),
                file_index=file_index,
                status_code=response.status_code,
            )

        try:
            result = UploadResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransferError(
                f"Malformed upload response for {file.name}: {e}",
                file_index=file_index,
                status_code=response.status_code,
            )

        logger.info(
            f"Uploaded {file.name} as {result.filename}",
            extra={"file_index": file_index, "media_filename": result.filename},
        )
        return result.model_copy(update={"url": self.absolute_url(result.url)})

    async def upload_images(
        self,
        files: Sequence[MediaFile],
    ) -> List[Union[UploadResult, TransferError]]:
        """
        Upload all files concurrently.

        One failure never cancels its siblings: the result list holds an
        UploadResult or the TransferError for each index.
        """
        results = await asyncio.gather(
            *(self.upload_image(f, file_index=i) for i, f in enumerate(files)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, TransferError):
                raise result
        return list(results)

    # ── Sign ─────────────────────────────────────────────────

    async def sign(
        self,
        filenames: Sequence[str],
        expiry_ms: Optional[int] = None,
    ) -> List[SignedUrl]:
        """
        Request fresh signed URLs for a batch of filenames in one call.

        Raises:
            SigningError: on transport failure, HTTP error status, or a
                malformed response.
        """
        names = list(filenames)
        if not names:
            return []

        payload = SignRequest(filenames=names, expiry_ms=expiry_ms).to_payload()
        try:
            response = await self._http.post(
                self._endpoint(SIGN_ENDPOINT),
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise SigningError(f"Sign request failed: {e}", filenames=names)

        if response.status_code >= 400:
            raise SigningError(
                self._error_message(response),
                filenames=names,
                status_code=response.status_code,
            )

        try:
            signed = _signed_urls.validate_python(response.json())
        except (ValueError, ValidationError) as e:
            raise SigningError(f"Malformed sign response: {e}", filenames=names)

        logger.debug(f"Signed {len(signed)} of {len(names)} filenames")
        return [s.model_copy(update={"url": self.absolute_url(s.url)}) for s in signed]
