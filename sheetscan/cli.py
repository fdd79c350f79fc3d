"""Command-line entrypoints for Sheet Scan."""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Optional

from . import config, db, worker
from .errors import SheetScanError
from .models import DOCUMENT_TYPES


def _configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def compute_sha256(path: Path) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _load_config(args) -> config.Config:
    cfg = config.Config.from_env()
    if args.db_path is not None:
        cfg.db_path = args.db_path
    for name in ("batch_size", "concurrency", "wave_delay", "max_pages"):
        value = getattr(args, name, None)
        if value is not None:
            setattr(cfg, name, value)
    cfg.validate()
    return cfg


def _get_connection(cfg: config.Config):
    return db.init_db(cfg.db_path)


def _print_job(job) -> None:
    print(f"Job {job.id} (attempt {job.attempt})")
    print(f"  source:   {job.source_ref}")
    print(f"  type:     {job.document_type}")
    print(f"  status:   {job.status.value}")
    print(f"  phase:    {job.phase or '-'}")
    print(f"  progress: {job.progress:.0f}%")
    if job.failed_batches:
        print(f"  failed batches: {', '.join(str(n) for n in job.failed_batches)}")
    if job.error_kind:
        print(f"  error:    {job.error_kind}")
    print(f"  updated:  {job.updated_at}")


def cmd_init_db(args) -> None:
    cfg = _load_config(args)
    conn = _get_connection(cfg)
    conn.close()
    print(f"Database initialized at {cfg.db_path}")


def cmd_submit(args) -> None:
    source = Path(args.source).resolve()
    if not source.exists() or not source.is_file():
        raise SystemExit(f"Source document does not exist: {source}")

    cfg = _load_config(args)
    conn = _get_connection(cfg)
    job_id = args.job_id or compute_sha256(source)
    job = db.request_extraction(conn, job_id, str(source), args.document_type, force=args.force)
    conn.close()
    print(f"Job {job.id} attempt {job.attempt} is {job.status.value}")


def cmd_work(args) -> None:
    cfg = _load_config(args)
    conn = _get_connection(cfg)
    if args.recover:
        worker.recover_stale_jobs(conn, cfg.stale_after)
    summary = asyncio.run(worker.process_jobs(conn, cfg, limit=args.limit))
    conn.close()
    print(
        f"Processed {summary['processed']} jobs. "
        f"Succeeded: {summary['succeeded']}, Failed: {summary['failed']}."
    )


def cmd_status(args) -> None:
    cfg = _load_config(args)
    conn = _get_connection(cfg)
    if args.job_id:
        job = db.get_job(conn, args.job_id)
        if not job:
            raise SystemExit(f"Job {args.job_id} not found")
        _print_job(job)
    else:
        counts = db.count_jobs_by_status(conn)
        print("Job status:")
        for status, count in sorted(counts.items()):
            print(f"  {status}: {count}")
    conn.close()


def cmd_show(args) -> None:
    cfg = _load_config(args)
    conn = _get_connection(cfg)
    job = db.get_job(conn, args.job_id)
    conn.close()
    if not job:
        raise SystemExit(f"Job {args.job_id} not found")
    text = job.partial_text if args.partial else job.extracted_text
    print(text or "")


def cmd_cancel(args) -> None:
    cfg = _load_config(args)
    conn = _get_connection(cfg)
    try:
        job = db.request_cancel(conn, args.job_id)
    except SheetScanError as exc:
        raise SystemExit(str(exc))
    finally:
        conn.close()
    if job.status.is_terminal:
        print(f"Job {job.id} cancelled")
    else:
        print(f"Job {job.id} will stop after its current wave")


def cmd_retry(args) -> None:
    cfg = _load_config(args)
    conn = _get_connection(cfg)
    try:
        job = db.require_job(conn, args.job_id)
        job = db.request_extraction(conn, job.id, job.source_ref, job.document_type, force=args.force)
    except SheetScanError as exc:
        raise SystemExit(str(exc))
    finally:
        conn.close()
    print(f"Job {job.id} attempt {job.attempt} is {job.status.value}")


def cmd_recover(args) -> None:
    cfg = _load_config(args)
    conn = _get_connection(cfg)
    max_age = args.max_age if args.max_age is not None else cfg.stale_after
    recovered = worker.recover_stale_jobs(conn, max_age)
    conn.close()
    print(f"Marked {len(recovered)} stalled jobs as failed.")


def cmd_history(args) -> None:
    cfg = _load_config(args)
    conn = _get_connection(cfg)
    job = db.get_job(conn, args.job_id)
    if not job:
        conn.close()
        raise SystemExit(f"Job {args.job_id} not found")
    attempts = db.list_attempts(conn, job.id)
    conn.close()
    for record in attempts:
        print(
            f"  attempt {record.attempt}: {record.status.value} "
            f"({record.error_kind or 'ok'}) finished {record.finished_at or '-'}"
        )
    print(f"  attempt {job.attempt}: {job.status.value} (current)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sheet Scan document extraction CLI")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--db-path",
        type=Path,
        default=None,
        help=f"Path to SQLite database file (default: $SHEETSCAN_DB_PATH or {config.DEFAULT_DB_PATH})",
    )

    init_db_parser = subparsers.add_parser("init-db", parents=[common], help="Initialize the database schema")
    init_db_parser.set_defaults(func=cmd_init_db)

    submit = subparsers.add_parser("submit", parents=[common], help="Request extraction for a document")
    submit.add_argument("source", help="PDF or image file to extract")
    submit.add_argument("--job-id", help="Job id (default: SHA-256 of the file)")
    submit.add_argument(
        "--document-type",
        choices=DOCUMENT_TYPES,
        default="question",
        help="Kind of document (default: question)",
    )
    submit.add_argument("--force", action="store_true", help="Re-extract even if already completed")
    submit.set_defaults(func=cmd_submit)

    work_parser = subparsers.add_parser("work", parents=[common], help="Process pending jobs")
    work_parser.add_argument("--limit", type=int, default=10, help="Number of jobs to process (default 10)")
    work_parser.add_argument("--batch-size", type=int, help="Pages per OCR request")
    work_parser.add_argument("--concurrency", type=int, help="OCR requests in flight per job")
    work_parser.add_argument("--wave-delay", type=float, help="Seconds to wait between waves")
    work_parser.add_argument("--max-pages", type=int, help="Extract at most this many pages")
    work_parser.add_argument("--recover", action="store_true", help="Fail stalled jobs before starting")
    work_parser.set_defaults(func=cmd_work)

    status_parser = subparsers.add_parser("status", parents=[common], help="Show job status")
    status_parser.add_argument("--job-id", help="Job to show; omit for counts by status")
    status_parser.set_defaults(func=cmd_status)

    show_parser = subparsers.add_parser("show", parents=[common], help="Print a job's extracted text")
    show_parser.add_argument("job_id")
    show_parser.add_argument(
        "--partial",
        action="store_true",
        help="Print text saved from finished waves instead of the final text or diagnostic",
    )
    show_parser.set_defaults(func=cmd_show)

    cancel_parser = subparsers.add_parser("cancel", parents=[common], help="Cancel a job")
    cancel_parser.add_argument("job_id")
    cancel_parser.set_defaults(func=cmd_cancel)

    retry_parser = subparsers.add_parser("retry", parents=[common], help="Start a new attempt for a job")
    retry_parser.add_argument("job_id")
    retry_parser.add_argument("--force", action="store_true", help="Also re-extract completed jobs")
    retry_parser.set_defaults(func=cmd_retry)

    recover_parser = subparsers.add_parser("recover", parents=[common], help="Fail stalled processing jobs")
    recover_parser.add_argument("--max-age", type=int, help="Seconds without progress (default: $SHEETSCAN_STALE_AFTER)")
    recover_parser.set_defaults(func=cmd_recover)

    history_parser = subparsers.add_parser("history", parents=[common], help="List a job's attempts")
    history_parser.add_argument("job_id")
    history_parser.set_defaults(func=cmd_history)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(verbose=args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
