"""
Shared fixtures for media pipeline tests.

Provides controllable fakes for the two remote operations (upload and
sign), a manual clock, and Pillow-generated images, so pipeline tests
run without a server and with deterministic ordering.
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

import pytest

from journal_media.api.models import SignedUrl, UploadResult
from journal_media.config.loader import ClientConfig
from journal_media.errors import ProcessingError, SigningError, TransferError
from journal_media.media.files import MediaFile, ProcessedImage
from journal_media.observability.metrics import metrics

API_URL = "https://journal.test"
FAR_FUTURE_MS = 4_000_000_000_000


class ManualClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeSigner:
    """Records sign calls; URLs expire ``ttl_ms`` after the clock's now."""

    def __init__(self, clock: ManualClock, ttl_ms: int = 120_000, fail: bool = False):
        self.clock = clock
        self.ttl_ms = ttl_ms
        self.fail = fail
        self.calls: List[List[str]] = []
        self.gate: Optional[asyncio.Event] = None

    async def sign(self, filenames: Sequence[str], expiry_ms: Optional[int] = None) -> List[SignedUrl]:
        self.calls.append(list(filenames))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise SigningError("sign endpoint down", filenames=list(filenames), status_code=503)
        expires = self.clock() + self.ttl_ms
        return [
            SignedUrl(
                filename=name,
                url=f"{API_URL}/api/media/download/{name}?expires={expires}&signature=s{len(self.calls)}",
                expires=expires,
            )
            for name in filenames
        ]


class FakeUploader:
    """
    Upload stand-in keyed by file index.

    With ``gated=True`` each upload waits until ``release(index)`` so tests
    decide the completion order.
    """

    def __init__(
        self,
        results: Optional[Dict[int, str]] = None,
        failures: Iterable[int] = (),
        gated: bool = False,
    ):
        self.results = results or {}
        self.failures = set(failures)
        self.gated = gated
        self.calls: List[tuple] = []
        self._gates: Dict[int, asyncio.Event] = defaultdict(asyncio.Event)

    def release(self, *indexes: int) -> None:
        for index in indexes:
            self._gates[index].set()

    async def upload_image(self, file: MediaFile, file_index: Optional[int] = None) -> UploadResult:
        self.calls.append((file_index, file.name))
        if self.gated:
            await self._gates[file_index].wait()
        if file_index in self.failures:
            raise TransferError(f"upload of {file.name} rejected", file_index=file_index, status_code=500)
        filename = self.results.get(file_index, f"169000000{file_index}-abcd-{file.name}")
        return UploadResult(
            filename=filename,
            url=f"{API_URL}/api/media/download/{filename}?expires={FAR_FUTURE_MS}",
            path=f"uploads/{filename}",
        )


class FakeClient(FakeUploader):
    """Uploader and signer in one, like MediaApiClient."""

    def __init__(self, signer: FakeSigner, **kwargs):
        super().__init__(**kwargs)
        self.signer = signer

    async def sign(self, filenames, expiry_ms=None):
        return await self.signer.sign(filenames, expiry_ms=expiry_ms)


class PassthroughNormalizer:
    """Keeps names and bytes; lets pipeline tests skip Pillow."""

    def __init__(self):
        self.batches: List[List[str]] = []

    def process_images(self, files: Sequence[MediaFile]) -> List[ProcessedImage]:
        self.batches.append([f.name for f in files])
        return [
            ProcessedImage(file=f, original_name=f.name, new_name=f.name, size=f.size)
            for f in files
        ]


class FailingNormalizer:
    def process_images(self, files: Sequence[MediaFile]) -> List[ProcessedImage]:
        raise ProcessingError(f"Failed to convert image: {files[-1].name}", file_name=files[-1].name)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_image_bytes(width: int, height: int, fmt: str = "PNG", color=(200, 30, 30), mode: str = "RGB") -> bytes:
    """Create a valid image of the given size with Pillow."""
    from PIL import Image

    img = Image.new(mode, (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def image_file(name: str, data: bytes = b"x", mime_type: str = "image/jpeg") -> MediaFile:
    return MediaFile(name=name, data=data, mime_type=mime_type)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging replaces root handlers; put them back."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def signer(clock) -> FakeSigner:
    return FakeSigner(clock)


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(api_url=API_URL, api_key="test-key")
