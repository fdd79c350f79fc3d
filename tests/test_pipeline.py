import asyncio

import pytest
from PIL import Image

from sheetscan import db
from sheetscan.aggregator import PAGE_BREAK
from sheetscan.dispatcher import Dispatcher
from sheetscan.errors import InvalidTransition
from sheetscan.models import JobStatus
from sheetscan.pipeline import ExtractionPipeline
from sheetscan.rasterizer import Rasterizer


def _submit(conn, job_id="doc-1", source="/tmp/doc.pdf"):
    return db.request_extraction(conn, job_id, source)


async def test_partial_failure_completes_with_marker(conn, fake_client, make_pipeline):
    client = fake_client(fail={2})
    events = []
    job = _submit(conn)

    done = await make_pipeline(client, page_count=25, listeners=[events.append]).run(job.id)

    assert done.status is JobStatus.COMPLETED
    assert done.has_extracted_text is True
    assert done.extracted_text == PAGE_BREAK.join(
        [
            "text of pages 1-10",
            "[Error processing batch 2: service unavailable (pages 11-20)]",
            "text of pages 21-25",
        ]
    )
    assert done.failed_batches == [2]
    assert done.progress == 100
    assert done.metadata["processed_pages"] == 25
    assert done.metadata["batches_processed"] == 3
    assert done.metadata["failed_batches"] == [2]
    assert client.max_in_flight == 3

    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    assert events[0].phase == "converting"
    assert events[-1].status is JobStatus.COMPLETED
    assert events[-1].progress == 100


async def test_all_batches_failing_fails_the_job(conn, fake_client, make_pipeline):
    job = _submit(conn)

    failed = await make_pipeline(fake_client(fail={1, 2, 3}), page_count=25).run(job.id)

    assert failed.status is JobStatus.FAILED
    assert failed.has_extracted_text is False
    assert failed.error_kind == "all_batches_failed"
    assert failed.failed_batches == [1, 2, 3]
    assert failed.extracted_text.startswith("all 3 batches failed")
    assert "batch 2 (pages 11-20) service_error: service unavailable" in failed.extracted_text


async def test_blank_batches_do_not_count_as_text(conn, fake_client, make_pipeline):
    job = _submit(conn)

    failed = await make_pipeline(fake_client(empty={1, 2}), page_count=20).run(job.id)

    assert failed.status is JobStatus.FAILED
    assert failed.failed_batches == [1, 2]


async def test_rasterization_failure_never_reaches_processing(
    conn, fake_client, make_pipeline, failing_rasterizer
):
    client = fake_client()
    events = []
    job = _submit(conn)

    failed = await make_pipeline(client, rasterizer=failing_rasterizer, listeners=[events.append]).run(job.id)

    assert failed.status is JobStatus.FAILED
    assert failed.error_kind == "rasterization_failed"
    assert failed.extracted_text == "document unreadable: file is not a PDF"
    assert failed.page_count is None
    assert client.calls == []
    assert JobStatus.PROCESSING not in {e.status for e in events}


async def test_finished_waves_survive_a_crash(conn, fake_client, make_pipeline):
    client = fake_client(delays={3: 30})
    job = _submit(conn)
    pipeline = make_pipeline(client, page_count=40, concurrency=1)

    task = asyncio.create_task(pipeline.run(job.id))
    while 3 not in client.calls:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    stored = db.get_job(conn, job.id)
    assert stored.status is JobStatus.PROCESSING
    assert stored.phase == "processing wave 2 of 4"
    assert stored.partial_text == PAGE_BREAK.join(["text of pages 1-10", "text of pages 11-20"])
    assert stored.extracted_text == stored.partial_text
    assert stored.has_extracted_text is False


async def test_cancel_stops_after_current_wave(conn, fake_client, make_pipeline):
    job = _submit(conn)

    def cancel_during_batch_2(batch):
        if batch.number == 2:
            db.request_cancel(conn, job.id)

    client = fake_client(hook=cancel_during_batch_2)
    failed = await make_pipeline(client, page_count=40, concurrency=1).run(job.id)

    assert client.calls == [1, 2]
    assert failed.status is JobStatus.FAILED
    assert failed.error_kind == "cancelled"
    assert failed.extracted_text == "cancelled: stopped after wave 2 of 4"
    assert failed.partial_text == PAGE_BREAK.join(["text of pages 1-10", "text of pages 11-20"])


async def test_cancel_during_last_wave_still_completes(conn, fake_client, make_pipeline):
    job = _submit(conn)

    def cancel(batch):
        db.request_cancel(conn, job.id)

    done = await make_pipeline(fake_client(hook=cancel), page_count=25).run(job.id)

    assert done.status is JobStatus.COMPLETED


async def test_retry_starts_without_stale_text(conn, fake_client, make_pipeline):
    job = _submit(conn)
    await make_pipeline(fake_client(fail={1, 2, 3}), page_count=25).run(job.id)

    retried = db.request_extraction(conn, job.id, job.source_ref)
    assert retried.attempt == 2
    assert retried.extracted_text is None

    events = []
    done = await make_pipeline(fake_client(), page_count=25, listeners=[events.append]).run(job.id)

    assert done.status is JobStatus.COMPLETED
    assert done.attempt == 2
    assert "Error processing" not in done.extracted_text
    assert done.failed_batches == []
    assert {e.attempt for e in events} == {2}
    assert all("Error processing" not in (e.partial_text or "") for e in events)


async def test_page_cap_truncates_document(conn, fake_client, make_pipeline):
    job = _submit(conn)

    done = await make_pipeline(fake_client(), page_count=25, max_pages=12).run(job.id)

    assert done.page_count == 12
    assert done.batch_count == 2
    assert done.metadata["truncated"] is True
    assert done.extracted_text.endswith("text of pages 11-12")


async def test_only_pending_jobs_run(conn, fake_client, make_pipeline):
    job = _submit(conn)
    pipeline = make_pipeline(fake_client())
    await pipeline.run(job.id)

    with pytest.raises(InvalidTransition):
        await pipeline.run(job.id)


async def test_cancelled_before_start_is_left_alone(conn, fake_client, make_pipeline):
    job = _submit(conn)
    db.request_cancel(conn, job.id)

    with pytest.raises(InvalidTransition):
        await make_pipeline(fake_client()).run(job.id)
    assert db.get_job(conn, job.id).error_kind == "cancelled"


async def test_real_tiff_end_to_end(conn, fake_client, tmp_path):
    source = tmp_path / "scan.tiff"
    frames = [Image.new("RGB", (60, 80), color) for color in ("white", "gray", "black")]
    frames[0].save(source, save_all=True, append_images=frames[1:])
    job = _submit(conn, source=str(source))

    client = fake_client()
    pipeline = ExtractionPipeline(
        conn,
        Rasterizer(max_file_bytes=None),
        Dispatcher(client, concurrency=2, timeout=5, wave_delay=0),
        batch_size=2,
    )
    done = await pipeline.run(job.id)

    assert done.status is JobStatus.COMPLETED
    assert done.page_count == 3
    assert done.extracted_text == PAGE_BREAK.join(["text of pages 1-2", "text of pages 3-3"])


async def test_crash_keeps_its_own_error_when_job_already_failed(conn, fake_client, make_pipeline):
    job = _submit(conn)

    def stalled_then_broken(result):
        current = db.get_job(conn, job.id)
        if current.status is JobStatus.PROCESSING:
            db.fail_job(conn, job.id, job.attempt, "stalled: no progress", "stalled")
        raise ValueError("predicate exploded")

    pipeline = make_pipeline(fake_client(), page_count=10, predicate=stalled_then_broken)

    with pytest.raises(ValueError, match="predicate exploded"):
        await pipeline.run(job.id)
    assert db.get_job(conn, job.id).error_kind == "stalled"


async def test_rejected_batches_are_marked_in_completed_text(conn, fake_client, make_pipeline):
    job = _submit(conn)

    def not_middle(result):
        return result.ok and result.text != "text of pages 11-20"

    done = await make_pipeline(fake_client(), page_count=25, predicate=not_middle).run(job.id)

    assert done.status is JobStatus.COMPLETED
    assert done.failed_batches == [2]
    assert done.extracted_text.split(PAGE_BREAK)[1] == (
        "[Error processing batch 2: no meaningful text (pages 11-20)]"
    )
