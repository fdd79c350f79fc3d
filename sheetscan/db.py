"""SQLite job registry and schema management.

The registry is the only shared, mutable resource of the pipeline. Every
write is scoped to a job id, an attempt number and the statuses the write may
start from, so a late write from a superseded attempt can never clobber the
record of the attempt that replaced it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from . import models, state
from .errors import AttemptSuperseded, InvalidTransition, JobNotFound
from .models import JobStatus

logger = logging.getLogger(__name__)

# Millisecond timestamps so updated_at moves on every write.
NOW = "strftime('%Y-%m-%d %H:%M:%f', 'now')"


def get_connection(db_path: Union[Path, str]) -> sqlite3.Connection:
    """Return a connection with a Row factory."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Union[Path, str]) -> sqlite3.Connection:
    """Initialize the database schema."""
    if str(db_path) != ":memory:":
        db_path = Path(db_path)
        if not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = get_connection(db_path)
    cursor = conn.cursor()

    cursor.execute(
        f"""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            source_ref TEXT NOT NULL,
            document_type TEXT NOT NULL,
            status TEXT NOT NULL,
            attempt INTEGER NOT NULL DEFAULT 1,
            extracted_text TEXT,
            has_extracted_text INTEGER NOT NULL DEFAULT 0,
            phase TEXT,
            progress REAL NOT NULL DEFAULT 0,
            partial_text TEXT,
            error_kind TEXT,
            page_count INTEGER,
            batch_count INTEGER,
            failed_batches TEXT NOT NULL DEFAULT '[]',
            cancel_requested INTEGER NOT NULL DEFAULT 0,
            metadata TEXT NOT NULL DEFAULT '{{}}',
            created_at TEXT NOT NULL DEFAULT ({NOW}),
            updated_at TEXT NOT NULL DEFAULT ({NOW}),
            started_at TEXT NOT NULL DEFAULT ({NOW}),
            finished_at TEXT
        )
        """
    )
    cursor.execute(
        f"""
        CREATE TABLE IF NOT EXISTS job_attempts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            attempt INTEGER NOT NULL,
            status TEXT NOT NULL,
            extracted_text TEXT,
            partial_text TEXT,
            error_kind TEXT,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            archived_at TEXT NOT NULL DEFAULT ({NOW}),
            FOREIGN KEY(job_id) REFERENCES jobs(id),
            UNIQUE(job_id, attempt)
        )
        """
    )

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)")
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_status_updated ON jobs(status, updated_at)"
    )

    conn.commit()
    logger.info("Database initialized at %s", db_path)
    return conn


def _row_to_job(row: sqlite3.Row) -> models.ExtractionJob:
    return models.ExtractionJob(
        id=row["id"],
        source_ref=row["source_ref"],
        document_type=row["document_type"],
        status=JobStatus(row["status"]),
        attempt=row["attempt"],
        extracted_text=row["extracted_text"],
        has_extracted_text=bool(row["has_extracted_text"]),
        phase=row["phase"],
        progress=float(row["progress"]),
        partial_text=row["partial_text"],
        error_kind=row["error_kind"],
        page_count=row["page_count"],
        batch_count=row["batch_count"],
        failed_batches=json.loads(row["failed_batches"] or "[]"),
        cancel_requested=bool(row["cancel_requested"]),
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        finished_at=row["finished_at"],
    )


def _row_to_attempt(row: sqlite3.Row) -> models.AttemptRecord:
    return models.AttemptRecord(
        job_id=row["job_id"],
        attempt=row["attempt"],
        status=JobStatus(row["status"]),
        extracted_text=row["extracted_text"],
        partial_text=row["partial_text"],
        error_kind=row["error_kind"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        archived_at=row["archived_at"],
    )


def get_job(conn: sqlite3.Connection, job_id: str) -> Optional[models.ExtractionJob]:
    cur = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
    row = cur.fetchone()
    return _row_to_job(row) if row else None


def require_job(conn: sqlite3.Connection, job_id: str) -> models.ExtractionJob:
    job = get_job(conn, job_id)
    if job is None:
        raise JobNotFound(f"Job {job_id} not found")
    return job


def create_job(
    conn: sqlite3.Connection,
    job_id: str,
    source_ref: str,
    document_type: str = "question",
) -> models.ExtractionJob:
    conn.execute(
        """
        INSERT INTO jobs (id, source_ref, document_type, status, attempt)
        VALUES (?, ?, ?, 'pending', 1)
        """,
        (job_id, source_ref, document_type),
    )
    conn.commit()
    logger.info("Created job %s for %s", job_id, source_ref)
    return require_job(conn, job_id)


def request_extraction(
    conn: sqlite3.Connection,
    job_id: str,
    source_ref: str,
    document_type: str = "question",
    force: bool = False,
) -> models.ExtractionJob:
    """Create a job, or start a new attempt for one that needs it.

    Jobs that are pending, processing, or completed (without ``force``) are
    returned unchanged, so repeating a request is harmless.
    """
    job = get_job(conn, job_id)
    if job is None:
        return create_job(conn, job_id, source_ref, document_type)

    if job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
        if force and job.status is JobStatus.PROCESSING:
            raise InvalidTransition(
                f"Job {job_id} attempt {job.attempt} is still processing; cancel it first"
            )
        logger.info("Job %s already %s; not starting a new attempt", job_id, job.status.value)
        return job

    allowed = state.REEXTRACTABLE if force else state.RETRYABLE
    if job.status not in allowed:
        logger.info("Job %s already completed; pass force to re-extract", job_id)
        return job

    return _new_attempt(conn, job, source_ref, document_type)


def _new_attempt(
    conn: sqlite3.Connection,
    job: models.ExtractionJob,
    source_ref: str,
    document_type: str,
) -> models.ExtractionJob:
    with conn:
        conn.execute(
            """
            INSERT INTO job_attempts (
                job_id, attempt, status, extracted_text, partial_text,
                error_kind, started_at, finished_at
            )
            SELECT id, attempt, status, extracted_text, partial_text,
                   error_kind, started_at, finished_at
            FROM jobs WHERE id = ?
            """,
            (job.id,),
        )
        cur = conn.execute(
            f"""
            UPDATE jobs
            SET source_ref = ?, document_type = ?, status = 'pending',
                attempt = attempt + 1, extracted_text = NULL,
                has_extracted_text = 0, phase = NULL, progress = 0,
                partial_text = NULL, error_kind = NULL, page_count = NULL,
                batch_count = NULL, failed_batches = '[]',
                cancel_requested = 0, metadata = '{{}}',
                started_at = {NOW}, updated_at = {NOW}, finished_at = NULL
            WHERE id = ? AND attempt = ? AND status = ?
            """,
            (source_ref, document_type, job.id, job.attempt, job.status.value),
        )
        if cur.rowcount == 0:
            raise AttemptSuperseded(
                f"Job {job.id} changed while starting a new attempt after {job.attempt}"
            )
    logger.info("Job %s: attempt %s supersedes attempt %s", job.id, job.attempt + 1, job.attempt)
    return require_job(conn, job.id)


def _scoped_update(
    conn: sqlite3.Connection,
    job_id: str,
    attempt: int,
    new_status: JobStatus,
    assignments: str,
    params: Iterable[object],
    from_statuses: Optional[Iterable[JobStatus]] = None,
) -> models.ExtractionJob:
    allowed = state.sources_for(new_status)
    if from_statuses is not None:
        allowed = allowed & frozenset(from_statuses)
    sources = sorted(s.value for s in allowed)
    placeholders = ", ".join("?" for _ in sources)
    cur = conn.execute(
        f"""
        UPDATE jobs
        SET status = ?, {assignments}, updated_at = {NOW}
        WHERE id = ? AND attempt = ? AND status IN ({placeholders})
        """,
        (new_status.value, *params, job_id, attempt, *sources),
    )
    conn.commit()
    if cur.rowcount == 0:
        job = require_job(conn, job_id)
        if job.attempt != attempt:
            raise AttemptSuperseded(
                f"Job {job_id} attempt {attempt} was superseded by attempt {job.attempt}"
            )
        state.check_transition(job.status, new_status)
        raise InvalidTransition(
            f"Job {job_id} is {job.status.value}; expected one of {', '.join(sources)}"
        )
    return require_job(conn, job_id)


def start_attempt(
    conn: sqlite3.Connection,
    job_id: str,
    attempt: int,
    phase: str,
    progress: float,
    page_count: int,
    batch_count: int,
    metadata: Optional[Dict[str, object]] = None,
) -> models.ExtractionJob:
    """Move a pending attempt to processing together with its first progress write."""
    return _scoped_update(
        conn,
        job_id,
        attempt,
        JobStatus.PROCESSING,
        "phase = ?, progress = ?, page_count = ?, batch_count = ?, metadata = ?",
        (phase, progress, page_count, batch_count, json.dumps(metadata or {})),
        from_statuses=(JobStatus.PENDING,),
    )


def record_progress(
    conn: sqlite3.Connection,
    job_id: str,
    attempt: int,
    phase: str,
    progress: float,
    partial_text: str,
) -> models.ExtractionJob:
    return _scoped_update(
        conn,
        job_id,
        attempt,
        JobStatus.PROCESSING,
        "phase = ?, progress = MAX(progress, ?), partial_text = ?, extracted_text = ?",
        (phase, progress, partial_text, partial_text),
        from_statuses=(JobStatus.PROCESSING,),
    )


def complete_job(
    conn: sqlite3.Connection,
    job_id: str,
    attempt: int,
    text: str,
    failed_batches: List[int],
    metadata: Optional[Dict[str, object]] = None,
) -> models.ExtractionJob:
    return _scoped_update(
        conn,
        job_id,
        attempt,
        JobStatus.COMPLETED,
        f"""phase = 'completed', progress = 100, extracted_text = ?,
            partial_text = ?, has_extracted_text = 1, error_kind = NULL,
            failed_batches = ?, metadata = ?, finished_at = {NOW}""",
        (text, text, json.dumps(failed_batches), json.dumps(metadata or {})),
    )


def fail_job(
    conn: sqlite3.Connection,
    job_id: str,
    attempt: int,
    diagnostic: str,
    error_kind: str,
    failed_batches: Optional[List[int]] = None,
) -> models.ExtractionJob:
    """Mark an attempt failed. Partial text from finished waves is kept."""
    return _scoped_update(
        conn,
        job_id,
        attempt,
        JobStatus.FAILED,
        f"""phase = 'failed', extracted_text = ?, has_extracted_text = 0,
            error_kind = ?, failed_batches = ?, finished_at = {NOW}""",
        (diagnostic, error_kind, json.dumps(failed_batches or [])),
    )


def request_cancel(conn: sqlite3.Connection, job_id: str) -> models.ExtractionJob:
    """Ask a job to stop.

    A pending attempt fails straight away; a processing attempt is flagged and
    stops at the next wave boundary.
    """
    job = require_job(conn, job_id)
    if job.status is JobStatus.PENDING:
        logger.info("Job %s cancelled before it started", job_id)
        return fail_job(conn, job_id, job.attempt, "cancelled: extraction cancelled before start", "cancelled")
    if job.status is JobStatus.PROCESSING:
        conn.execute(
            f"""
            UPDATE jobs SET cancel_requested = 1, updated_at = {NOW}
            WHERE id = ? AND attempt = ? AND status = 'processing'
            """,
            (job_id, job.attempt),
        )
        conn.commit()
        logger.info("Cancellation requested for job %s attempt %s", job_id, job.attempt)
        return require_job(conn, job_id)
    raise InvalidTransition(f"Job {job_id} is already {job.status.value}")


def is_cancel_requested(conn: sqlite3.Connection, job_id: str, attempt: int) -> bool:
    cur = conn.execute(
        "SELECT cancel_requested, attempt FROM jobs WHERE id = ?", (job_id,)
    )
    row = cur.fetchone()
    if row is None:
        raise JobNotFound(f"Job {job_id} not found")
    if row["attempt"] != attempt:
        raise AttemptSuperseded(
            f"Job {job_id} attempt {attempt} was superseded by attempt {row['attempt']}"
        )
    return bool(row["cancel_requested"])


def fetch_pending_jobs(conn: sqlite3.Connection, limit: int = 10) -> List[models.ExtractionJob]:
    cur = conn.execute(
        "SELECT * FROM jobs WHERE status = 'pending' ORDER BY updated_at ASC, id ASC LIMIT ?",
        (limit,),
    )
    return [_row_to_job(row) for row in cur.fetchall()]


def fetch_stale_jobs(
    conn: sqlite3.Connection, max_age_seconds: int
) -> List[models.ExtractionJob]:
    """Processing jobs whose record has not been written for ``max_age_seconds``."""
    cur = conn.execute(
        """
        SELECT * FROM jobs
        WHERE status = 'processing'
          AND updated_at < strftime('%Y-%m-%d %H:%M:%f', 'now', ?)
        ORDER BY updated_at ASC
        """,
        (f"-{int(max_age_seconds)} seconds",),
    )
    return [_row_to_job(row) for row in cur.fetchall()]


def list_attempts(conn: sqlite3.Connection, job_id: str) -> List[models.AttemptRecord]:
    """Archived attempts of a job, oldest first. The live attempt is in ``jobs``."""
    cur = conn.execute(
        "SELECT * FROM job_attempts WHERE job_id = ? ORDER BY attempt ASC", (job_id,)
    )
    return [_row_to_attempt(row) for row in cur.fetchall()]


def count_jobs_by_status(conn: sqlite3.Connection) -> Dict[str, int]:
    cur = conn.execute("SELECT status, COUNT(*) as count FROM jobs GROUP BY status")
    return {row["status"]: row["count"] for row in cur.fetchall()}


def total_jobs(conn: sqlite3.Connection) -> int:
    cur = conn.execute("SELECT COUNT(*) as count FROM jobs")
    row = cur.fetchone()
    return int(row["count"]) if row else 0
