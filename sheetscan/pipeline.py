"""Extraction pipeline: rasterize, batch, dispatch in waves, aggregate."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Dict, Iterable, List, Optional

from . import aggregator, config, db
from .aggregator import MeaningfulPredicate, has_text
from .batcher import make_batches
from .dispatcher import Dispatcher
from .errors import (
    AllBatchesFailed,
    AttemptSuperseded,
    CancellationRequested,
    InvalidTransition,
    RasterizationFailed,
    SheetScanError,
)
from .models import ExtractionJob, JobStatus, Page
from .ocr import OcrClient, build_client
from .progress import PHASE_CONVERTING, Listener, ProgressTracker
from .rasterizer import Rasterizer

logger = logging.getLogger(__name__)


class ExtractionPipeline:
    def __init__(
        self,
        conn: sqlite3.Connection,
        rasterizer: Rasterizer,
        dispatcher: Dispatcher,
        batch_size: int = config.DEFAULT_BATCH_SIZE,
        max_pages: Optional[int] = None,
        predicate: MeaningfulPredicate = has_text,
        listeners: Iterable[Listener] = (),
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.conn = conn
        self.rasterizer = rasterizer
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.max_pages = max_pages
        self.predicate = predicate
        self.listeners = list(listeners)

    async def run(self, job_id: str) -> ExtractionJob:
        """Run the current attempt of a pending job to a terminal status.

        Job-level failures are recorded on the job and returned, not raised.
        Unexpected errors fail the job and are re-raised.
        """
        job = db.require_job(self.conn, job_id)
        if job.status is not JobStatus.PENDING:
            raise InvalidTransition(
                f"Job {job_id} is {job.status.value}; only pending jobs can be run"
            )

        tracker = ProgressTracker(self.conn, job, self.listeners, self.predicate)
        logger.info("Job %s attempt %s: extracting %s", job.id, job.attempt, job.source_ref)
        tracker.announce(PHASE_CONVERTING)

        try:
            pages, truncated = await asyncio.to_thread(self._rasterize, job.source_ref)
        except RasterizationFailed as exc:
            logger.warning("Job %s: rasterization failed: %s", job.id, exc)
            return self._fail(tracker, job, f"document unreadable: {exc}", "rasterization_failed")

        batches = make_batches(pages, self.batch_size)
        metadata: Dict[str, object] = {
            "document_type": job.document_type,
            "processed_pages": len(pages),
            "batch_size": self.batch_size,
            "batches_processed": len(batches),
            "truncated": truncated,
        }

        try:
            job = tracker.start(len(pages), len(batches), metadata)
        except InvalidTransition:
            current = db.require_job(self.conn, job.id)
            if current.attempt == job.attempt and current.status.is_terminal:
                # Cancelled while the document was being rasterized.
                logger.info("Job %s ended as %s before processing began", job.id, current.status.value)
                return current
            raise

        try:
            results = await self.dispatcher.dispatch(
                batches,
                document_type=job.document_type,
                on_wave=tracker.record_wave,
                should_cancel=lambda: db.is_cancel_requested(self.conn, job.id, job.attempt),
            )
            final = aggregator.finalize(self.conn, job, results, self.predicate, metadata)
        except CancellationRequested as exc:
            logger.info("Job %s cancelled: %s", job.id, exc)
            return self._fail(tracker, job, f"cancelled: {exc}", "cancelled")
        except AllBatchesFailed as exc:
            logger.warning("Job %s failed: %s", job.id, exc)
            failed = aggregator.failed_batch_numbers(exc.failures, self.predicate)
            return self._fail(tracker, job, str(exc), "all_batches_failed", failed)
        except AttemptSuperseded:
            logger.warning("Job %s attempt %s was superseded; dropping its results", job.id, job.attempt)
            raise
        except Exception as exc:
            logger.exception("Job %s crashed during extraction", job.id)
            try:
                self._fail(tracker, job, f"internal error: {type(exc).__name__}: {exc}", "internal")
            except SheetScanError as fail_exc:
                logger.error("Job %s: could not record the crash: %s", job.id, fail_exc)
            raise

        tracker.finish(final)
        return final

    def _rasterize(self, source_ref: str):
        limit = self.max_pages + 1 if self.max_pages is not None else None
        pages: List[Page] = list(self.rasterizer.rasterize(source_ref, limit=limit))
        truncated = self.max_pages is not None and len(pages) > self.max_pages
        if truncated:
            logger.warning(
                "%s has more than %d pages; only the first %d are extracted",
                source_ref,
                self.max_pages,
                self.max_pages,
            )
            pages = pages[: self.max_pages]
        return pages, truncated

    def _fail(
        self,
        tracker: ProgressTracker,
        job: ExtractionJob,
        diagnostic: str,
        error_kind: str,
        failed_batches: Optional[List[int]] = None,
    ) -> ExtractionJob:
        failed = db.fail_job(self.conn, job.id, job.attempt, diagnostic, error_kind, failed_batches)
        tracker.finish(failed)
        return failed

    async def aclose(self) -> None:
        close = getattr(self.dispatcher.client, "aclose", None)
        if close is not None:
            await close()


def build_pipeline(
    conn: sqlite3.Connection,
    cfg: config.Config,
    client: Optional[OcrClient] = None,
    listeners: Iterable[Listener] = (),
    predicate: MeaningfulPredicate = has_text,
) -> ExtractionPipeline:
    cfg.validate()
    return ExtractionPipeline(
        conn,
        Rasterizer.from_config(cfg),
        Dispatcher.from_config(client or build_client(cfg), cfg),
        batch_size=cfg.batch_size,
        max_pages=cfg.max_pages,
        predicate=predicate,
        listeners=listeners,
    )
