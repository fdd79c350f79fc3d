import hashlib

import pytest

from sheetscan import cli, db
from sheetscan.models import JobStatus


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cli.db"


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "exam.pdf"
    path.write_bytes(b"%PDF-1.4 exam")
    return path


def test_init_db(db_path, capsys):
    cli.main(["init-db", "--db-path", str(db_path)])
    assert db_path.exists()
    assert "Database initialized" in capsys.readouterr().out


def test_submit_uses_file_hash_as_job_id(db_path, source, capsys):
    cli.main(["submit", str(source), "--db-path", str(db_path), "--document-type", "answer"])

    job_id = hashlib.sha256(source.read_bytes()).hexdigest()
    assert f"Job {job_id} attempt 1 is pending" in capsys.readouterr().out
    conn = db.init_db(db_path)
    job = db.get_job(conn, job_id)
    conn.close()
    assert job.document_type == "answer"
    assert job.source_ref == str(source.resolve())


def test_submit_missing_file(db_path, tmp_path):
    with pytest.raises(SystemExit):
        cli.main(["submit", str(tmp_path / "missing.pdf"), "--db-path", str(db_path)])


def test_status_and_show(db_path, source, capsys):
    cli.main(["submit", str(source), "--job-id", "exam", "--db-path", str(db_path)])
    conn = db.init_db(db_path)
    job = db.start_attempt(conn, "exam", 1, "extracting text", 10, 10, 1)
    db.complete_job(conn, job.id, job.attempt, "final text", [])
    conn.close()
    capsys.readouterr()

    cli.main(["status", "--db-path", str(db_path)])
    assert "completed: 1" in capsys.readouterr().out

    cli.main(["status", "--job-id", "exam", "--db-path", str(db_path)])
    out = capsys.readouterr().out
    assert "status:   completed" in out
    assert "progress: 100%" in out

    cli.main(["show", "exam", "--db-path", str(db_path)])
    assert capsys.readouterr().out.strip() == "final text"


def test_cancel_then_retry(db_path, source, capsys):
    cli.main(["submit", str(source), "--job-id", "exam", "--db-path", str(db_path)])
    cli.main(["cancel", "exam", "--db-path", str(db_path)])
    assert "Job exam cancelled" in capsys.readouterr().out

    cli.main(["retry", "exam", "--db-path", str(db_path)])
    assert "Job exam attempt 2 is pending" in capsys.readouterr().out

    cli.main(["history", "exam", "--db-path", str(db_path)])
    out = capsys.readouterr().out
    assert "attempt 1: failed (cancelled)" in out
    assert "attempt 2: pending (current)" in out


def test_cancel_completed_job_exits(db_path, source):
    cli.main(["submit", str(source), "--job-id", "exam", "--db-path", str(db_path)])
    conn = db.init_db(db_path)
    db.start_attempt(conn, "exam", 1, "extracting text", 10, 10, 1)
    db.complete_job(conn, "exam", 1, "final text", [])
    conn.close()

    with pytest.raises(SystemExit):
        cli.main(["cancel", "exam", "--db-path", str(db_path)])


def test_recover(db_path, source, capsys):
    cli.main(["submit", str(source), "--job-id", "exam", "--db-path", str(db_path)])
    conn = db.init_db(db_path)
    db.start_attempt(conn, "exam", 1, "extracting text", 10, 10, 1)
    conn.execute("UPDATE jobs SET updated_at = '2000-01-01 00:00:00.000'")
    conn.commit()
    conn.close()

    cli.main(["recover", "--max-age", "60", "--db-path", str(db_path)])

    assert "Marked 1 stalled jobs as failed." in capsys.readouterr().out
    conn = db.init_db(db_path)
    assert db.get_job(conn, "exam").status is JobStatus.FAILED
    conn.close()
