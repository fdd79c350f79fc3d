"""Incremental progress persistence and progress events."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from . import aggregator, db
from .models import BatchResult, ExtractionJob, JobStatus

logger = logging.getLogger(__name__)

PHASE_CONVERTING = "converting"
PHASE_EXTRACTING = "extracting text"

# Progress reached once pages are rasterized; waves fill the rest up to
# WAVES_DONE, and the final aggregation write sets 100.
RASTERIZED = 10.0
WAVES_DONE = 95.0


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    attempt: int
    status: JobStatus
    phase: str
    progress: float
    partial_text: Optional[str] = None


Listener = Callable[[ProgressEvent], None]


def wave_phase(number: int, total: int) -> str:
    return f"processing wave {number} of {total}"


def wave_progress(number: int, total: int) -> float:
    return RASTERIZED + (WAVES_DONE - RASTERIZED) * number / total


class ProgressTracker:
    """Writes one job attempt's progress and tells listeners about it.

    Progress only moves forward; a lower value than the last one is raised
    to the last one.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        job: ExtractionJob,
        listeners: Iterable[Listener] = (),
        predicate: aggregator.MeaningfulPredicate = aggregator.has_text,
    ) -> None:
        self.conn = conn
        self.predicate = predicate
        self.job_id = job.id
        self.attempt = job.attempt
        self.listeners: List[Listener] = list(listeners)
        self.progress = job.progress

    def announce(self, phase: str, progress: float = 0.0) -> None:
        """Emit an event without touching the job record (job still pending)."""
        self._emit(JobStatus.PENDING, phase, self._advance(progress))

    def start(
        self,
        page_count: int,
        batch_count: int,
        metadata: Optional[Dict[str, object]] = None,
    ) -> ExtractionJob:
        job = db.start_attempt(
            self.conn,
            self.job_id,
            self.attempt,
            PHASE_EXTRACTING,
            self._advance(RASTERIZED),
            page_count,
            batch_count,
            metadata,
        )
        logger.info(
            "Job %s attempt %s processing %d pages in %d batches",
            self.job_id,
            self.attempt,
            page_count,
            batch_count,
        )
        self._emit(job.status, PHASE_EXTRACTING, self.progress)
        return job

    def record_wave(self, number: int, total: int, results: List[BatchResult]) -> ExtractionJob:
        phase = wave_phase(number, total)
        partial = aggregator.combine(results, self.predicate)
        job = db.record_progress(
            self.conn,
            self.job_id,
            self.attempt,
            phase,
            self._advance(wave_progress(number, total)),
            partial,
        )
        logger.info("Job %s: %s done (%.0f%%)", self.job_id, phase, self.progress)
        self._emit(job.status, phase, self.progress, partial)
        return job

    def finish(self, job: ExtractionJob) -> None:
        self._emit(job.status, job.phase or job.status.value, self._advance(job.progress), job.extracted_text)

    def _advance(self, progress: float) -> float:
        self.progress = max(self.progress, progress)
        return self.progress

    def _emit(
        self,
        status: JobStatus,
        phase: str,
        progress: float,
        partial_text: Optional[str] = None,
    ) -> None:
        event = ProgressEvent(self.job_id, self.attempt, status, phase, progress, partial_text)
        for listener in self.listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed for job %s", self.job_id)
