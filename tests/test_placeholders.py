"""
Tests for optimistic placeholders and upload reconciliation.

Tests cover:
- Synchronous placeholder insertion
- Per-file success and failure reconciliation
- Text typed during an upload survives
- Arbitrary completion order, interleaved batches
- Normalization failure aborts the batch
- Cache seeded before the buffer changes
- Upload state machine
"""

import asyncio

import pytest
from PIL import Image

from conftest import (
    FailingNormalizer,
    FakeSigner,
    FakeUploader,
    PassthroughNormalizer,
    image_file,
    make_image_bytes,
    wait_for,
)
from journal_media.api.models import UploadResult
from journal_media.media.buffer import TextBuffer
from journal_media.media.normalize import ImageNormalizer
from journal_media.media.placeholders import (
    BatchIdSource,
    PlaceholderManager,
    UploadState,
    UploadTask,
)
from journal_media.media.references import extract_image_filenames
from journal_media.media.signed_cache import SignedUrlCache
from journal_media.observability.metrics import metrics

BLOCK_1000 = (
    "\n![Uploading a.jpg...](uploading-1000-0)"
    "\n![Uploading b.jpg...](uploading-1000-1)\n"
)


def _manager(text, uploader, clock, normalizer=None, batch_clock=lambda: 1000):
    buffer = TextBuffer(text)
    cache = SignedUrlCache(FakeSigner(clock), clock=clock)
    manager = PlaceholderManager(
        buffer,
        normalizer or PassthroughNormalizer(),
        uploader,
        cache,
        batch_ids=BatchIdSource(clock=batch_clock),
    )
    return manager, buffer, cache


def _files(*names):
    return [image_file(n) for n in names]


# ═══════════════════════════════════════════════════════════════════
# Insertion
# ═══════════════════════════════════════════════════════════════════


class TestInsertion:
    """Placeholders land in the buffer before any I/O."""

    @pytest.mark.asyncio
    async def test_placeholders_inserted_synchronously(self, clock):
        uploader = FakeUploader(gated=True)
        manager, buffer, _ = _manager("Hello world", uploader, clock)

        batch = manager.begin_upload(_files("a.jpg", "b.jpg"), 6)

        assert buffer.value == "Hello " + BLOCK_1000 + "world"
        assert uploader.calls == []
        assert [t.state for t in batch.tasks] == [UploadState.PENDING] * 2
        assert manager.pending_placeholders() == ["uploading-1000-0", "uploading-1000-1"]

        uploader.release(0, 1)
        await batch.future

    @pytest.mark.asyncio
    async def test_cursor_after_block(self, clock):
        uploader = FakeUploader()
        manager, _, _ = _manager("Hello world", uploader, clock)
        batch = manager.begin_upload(_files("a.jpg", "b.jpg"), 6)
        assert batch.insert_position == 6
        assert batch.cursor_position == 6 + len(BLOCK_1000)
        await batch.future

    @pytest.mark.asyncio
    async def test_position_clamped(self, clock):
        manager, buffer, _ = _manager("abc", FakeUploader(gated=True), clock)
        batch = manager.begin_upload(_files("a.jpg"), 50)
        assert batch.insert_position == 3
        assert buffer.value.startswith("abc\n![Uploading a.jpg...]")
        manager.uploader.release(0)
        await batch.future

    @pytest.mark.asyncio
    async def test_empty_selection(self, clock):
        manager, buffer, _ = _manager("abc", FakeUploader(), clock)
        assert manager.begin_upload([], 0) is None
        assert buffer.value == "abc"


# ═══════════════════════════════════════════════════════════════════
# Reconciliation
# ═══════════════════════════════════════════════════════════════════


class TestReconciliation:
    """Each file settles its own placeholder."""

    @pytest.mark.asyncio
    async def test_partial_failure(self, clock):
        """File 0 succeeds, file 1 fails: no trace of file 1, no blank line."""
        uploader = FakeUploader(results={0: "1690000001-ab12-a.jpg"}, failures={1})
        manager, buffer, _ = _manager("Hello world", uploader, clock)

        batch = await manager.upload(_files("a.jpg", "b.jpg"), 6)

        assert buffer.value == "Hello \n![image](1690000001-ab12-a.jpg)\nworld"
        assert "uploading-" not in buffer.value
        assert [t.state for t in batch.tasks] == [UploadState.RECONCILED] * 2
        assert batch.tasks[0].outcome == UploadState.SUCCEEDED
        assert batch.tasks[1].outcome == UploadState.FAILED
        assert "rejected" in batch.tasks[1].error
        assert batch.done
        assert manager.pending_placeholders() == []
        assert metrics.get("uploads.succeeded") == 1
        assert metrics.get("uploads.failed") == 1

    @pytest.mark.asyncio
    async def test_all_succeed(self, clock):
        uploader = FakeUploader(results={0: "1-a.jpg", 1: "2-b.jpg"})
        manager, buffer, _ = _manager("", uploader, clock)
        await manager.upload(_files("a.jpg", "b.jpg"), 0)
        assert buffer.value == "\n![image](1-a.jpg)\n![image](2-b.jpg)\n"
        assert manager.media_paths == ["uploads/1-a.jpg", "uploads/2-b.jpg"]

    @pytest.mark.asyncio
    async def test_typing_during_upload_survives(self, clock):
        uploader = FakeUploader(results={0: "1-a.jpg", 1: "2-b.jpg"}, gated=True)
        manager, buffer, _ = _manager("Hello world", uploader, clock)

        batch = manager.begin_upload(_files("a.jpg", "b.jpg"), 6)
        buffer.insert(batch.cursor_position, "typed ")
        buffer.insert(0, ">> ")
        uploader.release(0, 1)
        await batch.future

        assert buffer.value == ">> Hello \n![image](1-a.jpg)\n![image](2-b.jpg)\ntyped world"

    @pytest.mark.asyncio
    async def test_reverse_completion_order(self, clock):
        uploader = FakeUploader(results={0: "1-a.jpg", 1: "2-b.jpg"}, gated=True)
        manager, buffer, _ = _manager("", uploader, clock)

        batch = manager.begin_upload(_files("a.jpg", "b.jpg"), 0)
        await wait_for(lambda: len(uploader.calls) == 2)

        uploader.release(1)
        await wait_for(lambda: batch.tasks[1].state == UploadState.RECONCILED)
        assert buffer.value == "\n![Uploading a.jpg...](uploading-1000-0)\n![image](2-b.jpg)\n"
        assert batch.tasks[0].state == UploadState.UPLOADING

        uploader.release(0)
        await batch.future
        assert buffer.value == "\n![image](1-a.jpg)\n![image](2-b.jpg)\n"

    @pytest.mark.asyncio
    async def test_user_edited_alt_text(self, clock):
        uploader = FakeUploader(results={0: "1-a.jpg"}, gated=True)
        manager, buffer, _ = _manager("", uploader, clock)

        batch = manager.begin_upload(_files("a.jpg"), 0)
        buffer.update(lambda cur: cur.replace("Uploading a.jpg...", "sunset"))
        uploader.release(0)
        await batch.future

        assert buffer.value == "\n![image](1-a.jpg)\n"

    @pytest.mark.asyncio
    async def test_deleted_placeholder_upload_still_completes(self, clock):
        uploader = FakeUploader(results={0: "1-a.jpg"}, gated=True)
        manager, buffer, cache = _manager("", uploader, clock)

        batch = manager.begin_upload(_files("a.jpg"), 0)
        buffer.set("user cleared everything")
        uploader.release(0)
        await batch.future

        assert buffer.value == "user cleared everything"
        assert batch.tasks[0].outcome == UploadState.SUCCEEDED
        assert "1-a.jpg" in cache

    @pytest.mark.asyncio
    async def test_interleaved_batches(self, clock):
        uploader = FakeUploader(gated=True)
        manager, buffer, _ = _manager("", uploader, clock)

        first = manager.begin_upload(_files("a.jpg"), 0)
        second = manager.begin_upload(_files("b.jpg"), len(buffer.value))
        assert (first.batch_id, second.batch_id) == (1000, 1001)

        uploader.failures = {0}
        await wait_for(lambda: len(uploader.calls) == 2)
        uploader.release(0)
        await asyncio.gather(first.future, second.future)

        # Only the leading newline of each block is left
        assert buffer.value == "\n\n"

    @pytest.mark.asyncio
    async def test_processing_error_aborts_batch(self, clock):
        uploader = FakeUploader()
        manager, buffer, _ = _manager("Hello world", uploader, clock, normalizer=FailingNormalizer())

        batch = await manager.upload(_files("a.jpg", "b.heic"), 6)

        assert buffer.value == "Hello \nworld"
        assert uploader.calls == []
        assert all(t.outcome == UploadState.FAILED for t in batch.tasks)
        assert "b.heic" in batch.tasks[0].error
        assert metrics.get("batches.aborted") == 1

    @pytest.mark.asyncio
    async def test_unexpected_normalizer_error_removes_placeholders(self, clock):
        class CrashingNormalizer:
            def process_images(self, files):
                raise RuntimeError("codec crashed")

        uploader = FakeUploader()
        manager, buffer, _ = _manager("Hello world", uploader, clock, normalizer=CrashingNormalizer())

        batch = manager.begin_upload(_files("a.jpg", "b.jpg"), 6)
        with pytest.raises(RuntimeError, match="codec crashed"):
            await batch.future

        assert buffer.value == "Hello \nworld"
        assert uploader.calls == []
        assert batch.done
        assert all(t.outcome == UploadState.FAILED for t in batch.tasks)
        assert batch.tasks[0].error == "codec crashed"
        assert manager.pending_placeholders() == []
        assert metrics.get("batches.aborted") == 1

    @pytest.mark.asyncio
    async def test_oversized_image_aborts_batch(self, clock, monkeypatch):
        """Pillow's decompression-bomb guard fails the batch like any bad image."""
        data = make_image_bytes(100, 100)
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

        uploader = FakeUploader()
        manager, buffer, _ = _manager("Hello world", uploader, clock, normalizer=ImageNormalizer())

        manager.begin_upload([image_file("pano.png", data, "image/png")], 6)
        await manager.wait_idle()

        assert "uploading-" not in buffer.value
        assert buffer.value == "Hello \nworld"
        assert uploader.calls == []
        assert metrics.get("batches.aborted") == 1

    @pytest.mark.asyncio
    async def test_normalized_files_are_uploaded_in_order(self, clock):
        uploader = FakeUploader()
        normalizer = PassthroughNormalizer()
        manager, _, _ = _manager("", uploader, clock, normalizer=normalizer)
        await manager.upload(_files("a.jpg", "b.jpg", "c.jpg"), 0)
        assert normalizer.batches == [["a.jpg", "b.jpg", "c.jpg"]]
        assert sorted(uploader.calls) == [(0, "a.jpg"), (1, "b.jpg"), (2, "c.jpg")]

    @pytest.mark.asyncio
    async def test_unexpected_error_still_reconciles(self, clock):
        class BrokenUploader(FakeUploader):
            async def upload_image(self, file, file_index=None):
                raise RuntimeError("bug")

        manager, buffer, _ = _manager("x", BrokenUploader(), clock)
        batch = manager.begin_upload(_files("a.jpg"), 1)
        with pytest.raises(RuntimeError):
            await batch.future

        assert buffer.value == "x\n"
        assert batch.done

    @pytest.mark.asyncio
    async def test_wait_idle_swallows_batch_errors(self, clock):
        class BrokenUploader(FakeUploader):
            async def upload_image(self, file, file_index=None):
                raise RuntimeError("bug")

        manager, _, _ = _manager("", BrokenUploader(), clock)
        manager.begin_upload(_files("a.jpg"), 0)
        await manager.wait_idle()
        assert manager.pending_placeholders() == []


class TestCacheSeeding:
    """A new filename is in the cache before the buffer mentions it."""

    @pytest.mark.asyncio
    async def test_cache_put_precedes_buffer_change(self, clock):
        uploader = FakeUploader(results={0: "1-a.jpg"})
        manager, buffer, cache = _manager("", uploader, clock)

        seen = []
        buffer.subscribe(lambda text: seen.append(("1-a.jpg" in text, cache.get("1-a.jpg") is not None)))
        await manager.upload(_files("a.jpg"), 0)

        assert (True, True) in seen
        assert (True, False) not in seen

    @pytest.mark.asyncio
    async def test_path_only_response_keyed_by_basename(self, clock):
        class PathOnlyUploader(FakeUploader):
            async def upload_image(self, file, file_index=None):
                return UploadResult(
                    url="https://journal.test/d/1-a.jpg?expires=4000000000000",
                    path="uploads/2024/1-a.jpg",
                )

        manager, buffer, cache = _manager("", PathOnlyUploader(), clock)
        await manager.upload(_files("a.jpg"), 0)

        assert buffer.value == "\n![image](1-a.jpg)\n"
        assert cache.get("1-a.jpg") is not None
        assert cache.stale_filenames(extract_image_filenames(buffer.value)) == []
        assert manager.media_paths == ["uploads/2024/1-a.jpg"]


# ═══════════════════════════════════════════════════════════════════
# State machine
# ═══════════════════════════════════════════════════════════════════


class TestUploadTask:
    def _task(self):
        return UploadTask(batch_id=9, file_index=2, file=image_file("p.jpg"))

    def test_happy_path(self):
        task = self._task()
        for state in (UploadState.UPLOADING, UploadState.SUCCEEDED, UploadState.RECONCILED):
            task.transition(state)
        assert task.outcome == UploadState.SUCCEEDED

    def test_cannot_skip_uploading(self):
        with pytest.raises(ValueError, match="pending"):
            self._task().transition(UploadState.SUCCEEDED)

    def test_reconciled_is_terminal(self):
        task = self._task()
        task.transition(UploadState.UPLOADING)
        task.transition(UploadState.FAILED)
        task.transition(UploadState.RECONCILED)
        with pytest.raises(ValueError):
            task.transition(UploadState.UPLOADING)

    def test_placeholder(self):
        task = self._task()
        assert task.placeholder_token == "uploading-9-2"
        assert task.placeholder_markdown == "![Uploading p.jpg...](uploading-9-2)"


class TestBatchIdSource:
    def test_strictly_increasing_within_same_ms(self):
        ids = BatchIdSource(clock=lambda: 5)
        assert [ids(), ids(), ids()] == [5, 6, 7]

    def test_follows_clock(self):
        ticks = iter([100, 200])
        ids = BatchIdSource(clock=lambda: next(ticks))
        assert ids() == 100
        assert ids() == 200
