"""Combine batch results in page order and commit the terminal state."""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Dict, Iterable, List, Optional

from . import db
from .errors import AllBatchesFailed
from .models import BatchResult, ExtractionJob

logger = logging.getLogger(__name__)

PAGE_BREAK = "\n\n--- PAGE BREAK ---\n\n"

MeaningfulPredicate = Callable[[BatchResult], bool]


def has_text(result: BatchResult) -> bool:
    """Default meaningfulness check: the batch succeeded and produced text."""
    return result.ok and bool(result.text and result.text.strip())


def error_marker(result: BatchResult) -> str:
    if result.ok:
        reason = "no meaningful text"
    else:
        reason = result.error_message or result.error_kind.value
    return (
        f"[Error processing batch {result.batch_index + 1}: {reason} "
        f"(pages {result.first_page}-{result.last_page})]"
    )


def render_result(result: BatchResult, predicate: MeaningfulPredicate = has_text) -> str:
    """The batch's text, or an inline marker when ``predicate`` rejects it."""
    if result.ok and predicate(result):
        return result.text or ""
    return error_marker(result)


def combine(results: Iterable[BatchResult], predicate: MeaningfulPredicate = has_text) -> str:
    """Join results by batch index, never by completion order."""
    ordered = sorted(results, key=lambda r: r.batch_index)
    return PAGE_BREAK.join(render_result(r, predicate) for r in ordered)


def failed_batch_numbers(
    results: Iterable[BatchResult], predicate: MeaningfulPredicate = has_text
) -> List[int]:
    return sorted(r.batch_index + 1 for r in results if not (r.ok and predicate(r)))


def summarize_failures(results: Iterable[BatchResult]) -> str:
    parts = []
    for r in sorted(results, key=lambda r: r.batch_index):
        kind = r.error_kind.value if r.error_kind else "no meaningful text"
        detail = f": {r.error_message}" if r.error_message else ""
        parts.append(f"batch {r.batch_index + 1} (pages {r.first_page}-{r.last_page}) {kind}{detail}")
    return "; ".join(parts)


def finalize(
    conn: sqlite3.Connection,
    job: ExtractionJob,
    results: List[BatchResult],
    predicate: MeaningfulPredicate = has_text,
    metadata: Optional[Dict[str, object]] = None,
) -> ExtractionJob:
    """Commit ``completed`` when at least one batch is meaningful.

    Raises ``AllBatchesFailed`` otherwise; the caller records the failure.
    """
    if not results or not any(r.ok and predicate(r) for r in results):
        raise AllBatchesFailed(
            f"all {len(results)} batches failed: {summarize_failures(results)}",
            failures=results,
        )

    failed = failed_batch_numbers(results, predicate)
    meta = dict(metadata or {})
    meta["failed_batches"] = failed
    text = combine(results, predicate)
    completed = db.complete_job(conn, job.id, job.attempt, text, failed, meta)
    if failed:
        logger.warning(
            "Job %s completed with %d of %d batches failed: %s",
            job.id,
            len(failed),
            len(results),
            failed,
        )
    else:
        logger.info("Job %s completed (%d batches, %d chars)", job.id, len(results), len(text))
    return completed
