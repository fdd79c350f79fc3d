"""Worker that processes extraction jobs."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from . import db
from .config import Config
from .errors import AttemptSuperseded, InvalidTransition
from .models import ExtractionJob, JobStatus
from .pipeline import ExtractionPipeline, build_pipeline

logger = logging.getLogger(__name__)


async def process_jobs(
    conn,
    cfg: Config,
    limit: int = 10,
    pipeline: Optional[ExtractionPipeline] = None,
) -> Dict[str, int]:
    """Run up to ``limit`` pending jobs, ``cfg.job_concurrency`` at a time.

    Jobs are independent of each other; one crashing does not stop the rest.
    """
    jobs = db.fetch_pending_jobs(conn, limit=limit)
    summary = {"processed": 0, "succeeded": 0, "failed": 0}

    if not jobs:
        return summary

    owns_pipeline = pipeline is None
    if pipeline is None:
        pipeline = build_pipeline(conn, cfg)
    sem = asyncio.Semaphore(cfg.job_concurrency)

    async def run_one(job: ExtractionJob) -> None:
        async with sem:
            try:
                result = await pipeline.run(job.id)
            except Exception:
                logger.exception("Job %s failed", job.id)
                summary["failed"] += 1
            else:
                if result.status is JobStatus.COMPLETED:
                    summary["succeeded"] += 1
                else:
                    summary["failed"] += 1
            finally:
                summary["processed"] += 1

    try:
        await asyncio.gather(*(run_one(job) for job in jobs))
    finally:
        if owns_pipeline:
            await pipeline.aclose()

    return summary


def recover_stale_jobs(conn, max_age_seconds: int) -> List[ExtractionJob]:
    """Fail processing jobs that stopped writing progress, e.g. after a crash.

    Text from the waves that finished before the stall stays in
    ``partial_text``.
    """
    recovered: List[ExtractionJob] = []
    for job in db.fetch_stale_jobs(conn, max_age_seconds):
        diagnostic = (
            f"stalled: no progress since {job.updated_at} "
            f"(last phase: {job.phase or 'unknown'}); retry the extraction"
        )
        try:
            failed = db.fail_job(conn, job.id, job.attempt, diagnostic, "stalled", job.failed_batches)
        except (AttemptSuperseded, InvalidTransition) as exc:
            logger.info("Job %s changed while recovering it: %s", job.id, exc)
            continue
        logger.warning("Marked stalled job %s attempt %s as failed", job.id, job.attempt)
        recovered.append(failed)
    return recovered
