"""
Placeholder Manager — optimistic image insertion around background uploads.

When the user selects files:

1. One placeholder line per file is spliced into the buffer at the cursor,
   synchronously, before any I/O:

       ![Uploading beach.jpg...](uploading-1690000001234-0)

2. The batch is normalized on a worker thread, then every file is uploaded
   concurrently.
3. Each success replaces *its own* placeholder in the latest buffer with
   ``![image](<server filename>)`` and seeds the signed-URL cache with the
   URL from the upload response.
4. Each failure removes its own placeholder (and trailing newline).
5. A normalization failure aborts the batch: every placeholder goes.

Per-file state machine:

    pending → uploading → succeeded → reconciled
                        → failed    → reconciled

Reconciled tasks are dropped; nothing is retried automatically. Started
uploads are never cancelled, even if the user deletes the placeholder.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set

from ..api.models import UploadResult
from ..errors import ProcessingError, TransferError
from ..observability.metrics import metrics
from .buffer import (
    TextBuffer,
    placeholder_block,
    placeholder_markdown,
    remove_placeholder,
    replace_placeholder,
    splice,
)
from .files import MediaFile, ProcessedImage
from .normalize import ImageNormalizer
from .references import placeholder_token
from .signed_cache import SignedUrlCache, now_ms

logger = logging.getLogger(__name__)


class UploadState(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RECONCILED = "reconciled"


ALLOWED_TRANSITIONS = {
    UploadState.PENDING: {UploadState.UPLOADING},
    UploadState.UPLOADING: {UploadState.SUCCEEDED, UploadState.FAILED},
    UploadState.SUCCEEDED: {UploadState.RECONCILED},
    UploadState.FAILED: {UploadState.RECONCILED},
    UploadState.RECONCILED: set(),
}


class Uploader(Protocol):
    async def upload_image(
        self,
        file: MediaFile,
        file_index: Optional[int] = None,
    ) -> UploadResult: ...


class BatchIdSource:
    """Millisecond batch ids, bumped when two batches land in the same ms."""

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or now_ms
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            self._last = max(self._clock(), self._last + 1)
            return self._last


@dataclass
class UploadTask:
    """One selected file, from placeholder insertion to reconciliation."""

    batch_id: int
    file_index: int
    file: MediaFile
    state: UploadState = UploadState.PENDING
    outcome: Optional[UploadState] = None
    filename: Optional[str] = None
    path: Optional[str] = None
    error: Optional[str] = None

    @property
    def placeholder_token(self) -> str:
        return placeholder_token(self.batch_id, self.file_index)

    @property
    def placeholder_markdown(self) -> str:
        return placeholder_markdown(self.file.name, self.batch_id, self.file_index)

    def transition(self, new_state: UploadState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid upload transition for {self.placeholder_token}: "
                f"{self.state.value} → {new_state.value}"
            )
        if new_state in (UploadState.SUCCEEDED, UploadState.FAILED):
            self.outcome = new_state
        self.state = new_state


@dataclass
class UploadBatch:
    """All files selected in one action, sharing a batch id."""

    batch_id: int
    tasks: List[UploadTask]
    insert_position: int
    cursor_position: int
    future: Optional["asyncio.Task[UploadBatch]"] = field(default=None, repr=False)

    @property
    def succeeded(self) -> List[UploadTask]:
        return [t for t in self.tasks if t.outcome == UploadState.SUCCEEDED]

    @property
    def failed(self) -> List[UploadTask]:
        return [t for t in self.tasks if t.outcome == UploadState.FAILED]

    @property
    def done(self) -> bool:
        return all(t.state == UploadState.RECONCILED for t in self.tasks)


class PlaceholderManager:
    """
    Drives normalizer and uploader for each batch and reconciles the
    results into the buffer.

    Multiple batches may be in flight at once; each only ever touches
    placeholders carrying its own batch id.
    """

    def __init__(
        self,
        buffer: TextBuffer,
        normalizer: ImageNormalizer,
        uploader: Uploader,
        cache: SignedUrlCache,
        batch_ids: Optional[Callable[[], int]] = None,
    ):
        self.buffer = buffer
        self.normalizer = normalizer
        self.uploader = uploader
        self.cache = cache
        self._batch_ids = batch_ids or BatchIdSource()

        # Server paths of everything uploaded here, saved with the entry
        self.media_paths: List[str] = []

        self._active: Dict[str, UploadTask] = {}
        self._running: Set["asyncio.Task[UploadBatch]"] = set()

    # ── Public API ───────────────────────────────────────────

    def begin_upload(self, files: Sequence[MediaFile], position: int) -> Optional[UploadBatch]:
        """
        Insert placeholders at *position* now and start the batch in the
        background. Must be called from a running event loop.

        Returns None when no files were selected.
        """
        files = list(files)
        if not files:
            return None

        loop = asyncio.get_running_loop()
        batch_id = self._batch_ids()
        tasks = [UploadTask(batch_id=batch_id, file_index=i, file=f) for i, f in enumerate(files)]
        block = placeholder_block([t.placeholder_markdown for t in tasks])

        inserted_at = position

        def insert(current: str) -> str:
            nonlocal inserted_at
            inserted_at = max(0, min(position, len(current)))
            return splice(current, inserted_at, block)

        # Registered first so listeners fired by the insert see them pending
        for task in tasks:
            self._active[task.placeholder_token] = task

        self.buffer.update(insert)

        batch = UploadBatch(
            batch_id=batch_id,
            tasks=tasks,
            insert_position=inserted_at,
            cursor_position=inserted_at + len(block),
        )
        logger.info(
            f"Batch {batch_id}: inserted {len(tasks)} placeholder(s) at {inserted_at}",
            extra={"batch_id": batch_id},
        )

        batch.future = loop.create_task(self._run_batch(batch))
        self._running.add(batch.future)
        batch.future.add_done_callback(self._running.discard)
        return batch

    async def upload(self, files: Sequence[MediaFile], position: int) -> Optional[UploadBatch]:
        """begin_upload, then wait for every file to be reconciled."""
        batch = self.begin_upload(files, position)
        if batch is not None and batch.future is not None:
            await batch.future
        return batch

    def pending_placeholders(self) -> List[str]:
        """Tokens whose uploads have not been reconciled yet."""
        return list(self._active)

    def active_task(self, token: str) -> Optional[UploadTask]:
        return self._active.get(token)

    async def wait_idle(self) -> None:
        """Wait for every running batch; errors are logged, not raised."""
        while self._running:
            running = list(self._running)
            results = await asyncio.gather(*running, return_exceptions=True)
            self._running.difference_update(running)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Upload batch failed: {result}", exc_info=result)

    # ── Batch lifecycle ──────────────────────────────────────

    async def _run_batch(self, batch: UploadBatch) -> UploadBatch:
        for task in batch.tasks:
            task.transition(UploadState.UPLOADING)

        try:
            processed = await asyncio.to_thread(
                self.normalizer.process_images, [t.file for t in batch.tasks]
            )
        except ProcessingError as e:
            metrics.increment("batches.aborted")
            logger.error(
                f"Batch {batch.batch_id}: image processing failed, aborting: {e}",
                extra={"batch_id": batch.batch_id},
            )
            for task in batch.tasks:
                self._fail(task, str(e))
            return batch
        except BaseException as e:
            metrics.increment("batches.aborted")
            for task in batch.tasks:
                self._fail(task, str(e) or type(e).__name__)
            raise

        results = await asyncio.gather(
            *(self._upload_one(t, p) for t, p in zip(batch.tasks, processed)),
            return_exceptions=True,
        )

        logger.info(
            f"Batch {batch.batch_id}: {len(batch.succeeded)} uploaded, {len(batch.failed)} failed",
            extra={"batch_id": batch.batch_id},
        )

        # Every task is reconciled by now; surface anything unexpected
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return batch

    async def _upload_one(self, task: UploadTask, processed: ProcessedImage) -> UploadTask:
        try:
            result = await self.uploader.upload_image(processed.file, file_index=task.file_index)
        except TransferError as e:
            metrics.increment("uploads.failed")
            logger.warning(
                f"Upload failed for {task.file.name}: {e}",
                extra={
                    "batch_id": task.batch_id,
                    "file_index": task.file_index,
                    "media_filename": task.file.name,
                },
            )
            self._fail(task, str(e))
            return task
        except BaseException as e:
            self._fail(task, str(e) or type(e).__name__)
            raise

        self._succeed(task, result)
        return task

    # ── Reconciliation ───────────────────────────────────────

    def _succeed(self, task: UploadTask, result: UploadResult) -> None:
        task.transition(UploadState.SUCCEEDED)
        task.filename = result.filename
        task.path = result.path or None

        # Seed the cache before touching the buffer: the content change
        # that follows must find this filename fresh.
        self.cache.put(result.filename, result.url)
        if result.path:
            self.media_paths.append(result.path)

        if task.placeholder_token not in self.buffer.value:
            logger.debug(f"Placeholder {task.placeholder_token} no longer in buffer")

        self.buffer.update(
            lambda current: replace_placeholder(
                current, task.batch_id, task.file_index, result.filename
            )
        )
        metrics.increment("uploads.succeeded")
        self._reconcile(task)

    def _fail(self, task: UploadTask, error: str) -> None:
        task.transition(UploadState.FAILED)
        task.error = error
        self.buffer.update(
            lambda current: remove_placeholder(current, task.batch_id, task.file_index)
        )
        self._reconcile(task)

    def _reconcile(self, task: UploadTask) -> None:
        task.transition(UploadState.RECONCILED)
        self._active.pop(task.placeholder_token, None)
