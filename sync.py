# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Capture reconciliation: mirror the remote capture listing locally."""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import Executor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .client import (
    ContentServiceInterface,
    MemoryContentEnvelope,
    PermissionDeniedError,
    PipelineError,
    ProbeFailedError,
    SyncCancelledError,
    SyncConfig,
    SyncError,
    SyncFailedError,
)
from .media import MediaPipeline
from .progress import Authorization, PermissionGateInterface, SyncProgress
from .store import CaptureFilter, CaptureRecord, LocalStoreInterface, ProcessingStatus

logger = logging.getLogger(__name__)

# Only totalElements is read from the count probe.
PROBE_PAGE_SIZE = 1


@dataclass
class SyncOutput:
    """Result of a completed pass."""

    total: int = 0
    processed: int = 0
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
    unknown: int = 0
    deleted: int = 0
    failed_ids: list[str] = field(default_factory=list)


@dataclass
class _PassState:
    seen: set[str] = field(default_factory=set)
    output: SyncOutput = field(default_factory=SyncOutput)
    lock: threading.Lock = field(default_factory=threading.Lock)
    abort: threading.Event = field(default_factory=threading.Event)


class CaptureSyncClient:
    """
    Reconciles the remote capture listing with the local store.

    Usage:
        client = CaptureSyncClient(service, store, pipeline, gate, progress)
        output = client.sync()

    One pass probes the remote total, acquires media library permission,
    fetches every page concurrently, hands each capture to the media
    pipeline, upserts its record, and finally deletes local records that
    the pass did not see.
    """

    def __init__(
        self,
        service: ContentServiceInterface,
        store: LocalStoreInterface,
        pipeline: MediaPipeline,
        gate: PermissionGateInterface,
        progress: Optional[SyncProgress] = None,
        config: Optional[SyncConfig] = None,
    ):
        self.service = service
        self.store = store
        self.pipeline = pipeline
        self.gate = gate
        self.progress = progress or SyncProgress()
        self.config = config or SyncConfig()
        self._cancel = threading.Event()
        self._running = threading.Lock()

    def cancel(self):
        """Stop the running pass after in-flight captures finish."""
        self._cancel.set()

    def sync(self) -> SyncOutput:
        """Run one full pass."""
        if not self._running.acquire(blocking=False):
            raise SyncError("A capture sync is already running")
        self._cancel.clear()
        self.progress.start_pass()
        try:
            return self._sync_pass()
        except (SyncFailedError, SyncCancelledError):
            raise
        except Exception as e:
            logger.error("Capture sync failed: %s: %s", type(e).__name__, e)
            raise SyncFailedError(f"Failed to sync captures: {e}") from e
        finally:
            self.progress.finish_pass()
            self._running.release()

    def reset_local_state(self) -> int:
        """Sign-out reset: drop every local record. Returns the number removed."""
        if not self._running.acquire(blocking=False):
            raise SyncError("Cannot reset while a capture sync is running")
        try:
            removed = self.store.delete(CaptureFilter.all())
            self.store.save()
            self.progress.finish_pass()
            logger.info("Cleared %d local captures", removed)
            return removed
        finally:
            self._running.release()

    # --- Pass ---

    def _sync_pass(self) -> SyncOutput:
        try:
            total = self.service.fetch_page(0, PROBE_PAGE_SIZE).total_elements
        except Exception as e:
            logger.error("Capture count probe failed: %s", e)
            raise ProbeFailedError(f"Could not read capture count: {e}") from e

        if total > 0:
            self._ensure_permission()

        state = _PassState()
        state.output.total = total
        self.progress.begin(total)
        pages = math.ceil(total / self.config.page_size)
        logger.info("Syncing %d captures in %d pages", total, pages)

        failure: Optional[BaseException] = None
        if pages:
            with ThreadPoolExecutor(
                max_workers=min(self.config.page_workers, pages),
                thread_name_prefix="capture-page",
            ) as page_pool, ThreadPoolExecutor(
                max_workers=self.config.item_workers,
                thread_name_prefix="capture-item",
            ) as item_pool:
                futures = [
                    page_pool.submit(self._sync_page, page, item_pool, state)
                    for page in range(pages)
                ]
                for future in as_completed(futures):
                    try:
                        future.result()
                    except Exception as e:
                        if failure is None:
                            failure = e
                            state.abort.set()

        # Records upserted so far are complete; keep them even when the pass
        # stops early, but only clean up after a full listing.
        self.store.save()
        if failure is not None:
            logger.error("Capture sync aborted: %s", failure)
            raise SyncFailedError(f"Failed to sync captures: {failure}") from failure
        if self._cancel.is_set():
            logger.info("Capture sync cancelled")
            raise SyncCancelledError("Capture sync cancelled")

        output = state.output
        output.deleted = self.store.delete(CaptureFilter.excluding(state.seen))
        self.store.save()
        logger.info(
            "Capture sync complete: %d processed, %d downloaded, %d skipped, "
            "%d failed, %d deleted",
            output.processed,
            output.downloaded,
            output.skipped,
            output.failed,
            output.deleted,
        )
        return output

    def _ensure_permission(self) -> None:
        status = self.gate.query_authorization()
        if status is Authorization.NOT_DETERMINED:
            status = self.gate.request_authorization()
        granted = status is Authorization.AUTHORIZED
        self.progress.set_media_permission(granted)
        if not granted:
            raise PermissionDeniedError()

    def _stopping(self, state: _PassState) -> bool:
        return self._cancel.is_set() or state.abort.is_set()

    def _sync_page(self, page: int, item_pool: Executor, state: _PassState) -> None:
        if self._stopping(state):
            return
        data = self.service.fetch_page(page, self.config.page_size)
        logger.debug("Page %d: %d captures", page, len(data.items))
        futures = [item_pool.submit(self._sync_item, env, state) for env in data.items]
        for future in futures:
            future.result()

    def _sync_item(self, envelope: MemoryContentEnvelope, state: _PassState) -> None:
        if self._stopping(state):
            return
        record = CaptureRecord.from_envelope(envelope)
        if record is None:
            logger.debug("Skipping memory %s with unknown payload", envelope.identifier)
            with state.lock:
                state.output.unknown += 1
            self.progress.increment()
            return

        existing = self.store.fetch(CaptureFilter.by_ids([record.identifier]), limit=1)
        outcome = "skipped"
        if existing and existing[0].locally_downloaded:
            record.locally_downloaded = True
            record.processing_status = ProcessingStatus.COMPLETED
        else:
            try:
                if self.pipeline.persist(envelope):
                    outcome = "downloaded"
                record.locally_downloaded = True
                record.processing_status = ProcessingStatus.COMPLETED
            except PipelineError as e:
                logger.warning("Failed to download capture %s: %s", envelope.identifier, e)
                record.processing_status = ProcessingStatus.FAILED
                outcome = "failed"

        record.last_sync_date = datetime.now(timezone.utc)
        self.store.upsert(record)

        with state.lock:
            state.seen.add(record.identifier)
            output = state.output
            output.processed += 1
            if outcome == "downloaded":
                output.downloaded += 1
            elif outcome == "skipped":
                output.skipped += 1
            else:
                output.failed += 1
                output.failed_ids.append(record.identifier)
        self.progress.increment()
