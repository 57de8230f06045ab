import pytest

from newsharvest.models import JobState
from newsharvest.storage import (
    cancel_job,
    claim_next_job,
    clean_jobs,
    count_jobs_by_status,
    enqueue_job,
    finish_job,
    get_job,
    init_db,
    is_cancel_requested,
    list_jobs,
    update_job_progress,
)
from newsharvest.utils import utc_now_iso_offset


def test_enqueue_and_claim_job(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = init_db(str(db_path))
    conn2 = init_db(str(db_path))

    record = enqueue_job(conn, "run_batch", {"units": [{"sources": []}]})
    claimed = claim_next_job(conn, "worker-1")

    assert record.id.startswith("job_")
    assert record.state == JobState.QUEUED
    assert claimed is not None
    assert claimed.id == record.id
    assert claimed.state == JobState.ACTIVE
    assert claimed.locked_by == "worker-1"

    assert claim_next_job(conn2, "worker-2") is None


def test_claim_is_fifo_and_filters_types(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    first = enqueue_job(conn, "run_batch", {})
    other = enqueue_job(conn, "other", {})
    second = enqueue_job(conn, "run_batch", {})

    assert claim_next_job(conn, "w", allowed_types=["run_batch"]).id == first.id
    assert claim_next_job(conn, "w", allowed_types=["run_batch"]).id == second.id
    assert claim_next_job(conn, "w", allowed_types=["run_batch"]) is None
    assert claim_next_job(conn, "w").id == other.id


def test_stale_lock_requeues_job(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    record = enqueue_job(conn, "run_batch", {})
    assert claim_next_job(conn, "worker-1") is not None

    conn.execute(
        "UPDATE jobs SET locked_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-3600), record.id),
    )
    conn.commit()

    reclaimed = claim_next_job(conn, "worker-2", lock_timeout_seconds=10)
    assert reclaimed is not None
    assert reclaimed.id == record.id
    assert reclaimed.locked_by == "worker-2"
    assert reclaimed.last_error == "stale_lock_requeued"


def test_progress_and_finish_only_touch_active_jobs(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    record = enqueue_job(conn, "run_batch", {})

    assert update_job_progress(conn, record.id, 50, "unit-0", 1) is False

    claim_next_job(conn, "w")
    assert update_job_progress(conn, record.id, 50, "unit-0", 1) is True
    assert finish_job(conn, record.id, JobState.COMPLETED, result={"succeeded": 1}) is True

    finished = get_job(conn, record.id)
    assert finished.state == JobState.COMPLETED
    assert finished.progress == 100
    assert finished.attempts == 1
    assert finished.result == {"succeeded": 1}
    assert finished.finished_at is not None

    assert finish_job(conn, record.id, JobState.FAILED, error="late") is False
    with pytest.raises(ValueError):
        finish_job(conn, record.id, JobState.ACTIVE)


def test_cancel_queued_and_active_jobs(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    queued = enqueue_job(conn, "run_batch", {})
    active = enqueue_job(conn, "run_batch", {})

    assert cancel_job(conn, queued.id) is True
    cancelled = get_job(conn, queued.id)
    assert cancelled.state == JobState.CANCELLED
    assert cancelled.last_error == "cancelled"

    claimed = claim_next_job(conn, "w")
    assert claimed.id == active.id
    assert is_cancel_requested(conn, active.id) is False
    assert cancel_job(conn, active.id) is True
    assert is_cancel_requested(conn, active.id) is True
    assert get_job(conn, active.id).state == JobState.ACTIVE

    finish_job(conn, active.id, JobState.CANCELLED, error="cancelled")
    assert cancel_job(conn, active.id) is False
    assert cancel_job(conn, "job_missing") is False


def test_counts_list_and_clean(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    done = enqueue_job(conn, "run_batch", {})
    enqueue_job(conn, "run_batch", {})
    claim_next_job(conn, "w")
    finish_job(conn, done.id, JobState.COMPLETED)

    counts = count_jobs_by_status(conn)
    assert counts == {"queued": 1, "active": 0, "completed": 1, "failed": 0, "cancelled": 0}
    assert [job.id for job in list_jobs(conn, status="completed")] == [done.id]

    assert clean_jobs(conn, utc_now_iso_offset(seconds=-60), utc_now_iso_offset(seconds=-60)) == 0
    assert clean_jobs(conn, utc_now_iso_offset(seconds=60), utc_now_iso_offset(seconds=60)) == 1
    assert get_job(conn, done.id) is None
    assert len(list_jobs(conn)) == 1
