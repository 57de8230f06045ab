import logging
import threading

from newsharvest.jobs import JobQueue, MemoryQueueBackend
from newsharvest.models import JobOptions, JobState
from newsharvest.worker import build_parser, run_loop, run_once

OPTIONS = JobOptions(attempts=1, backoff_seconds=0, timeout_seconds=0)
LOGGER = logging.getLogger("newsharvest.tests.worker")


def _queue():
    queue = JobQueue(MemoryQueueBackend(), sleep=lambda seconds: None)
    queue.register("echo", lambda unit, context: dict(unit))
    queue.register("broken", lambda unit, context: 1 / 0)
    return queue


def test_run_once_without_jobs_is_a_no_op():
    assert run_once(_queue(), "worker-1", LOGGER) == 0


def test_run_once_processes_one_job():
    queue = _queue()
    first = queue.enqueue("echo", [{"id": "a"}], OPTIONS)
    second = queue.enqueue("echo", [{"id": "b"}], OPTIONS)

    assert run_once(queue, "worker-1", LOGGER) == 0

    assert queue.get_status(first.id).state == JobState.COMPLETED
    assert queue.get_status(first.id).result["results"] == [{"id": "a"}]
    assert queue.get_status(second.id).state == JobState.QUEUED


def test_run_once_reports_failed_jobs():
    queue = _queue()
    record = queue.enqueue("broken", [{"id": "a"}], OPTIONS)

    assert run_once(queue, "worker-1", LOGGER) == 1
    assert queue.get_status(record.id).last_error == "division by zero"


def test_crash_is_recorded_on_the_job(monkeypatch):
    queue = _queue()
    record = queue.enqueue("echo", [{"id": "a"}], OPTIONS)

    def explode(job, worker_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(queue, "execute", explode)

    assert run_once(queue, "worker-1", LOGGER) == 1
    crashed = queue.get_status(record.id)
    assert crashed.state == JobState.FAILED
    assert crashed.last_error == "worker crashed: boom"


def test_claim_outage_is_not_fatal():
    queue = _queue()
    queue.backend.available = False

    assert run_once(queue, "worker-1", LOGGER) == 1


def test_run_loop_drains_queue_until_stopped():
    stop = threading.Event()
    queue = JobQueue(MemoryQueueBackend(), sleep=lambda seconds: None)
    done = []

    def handler(unit, context):
        done.append(unit["id"])
        if len(done) == 3:
            stop.set()
        return {}

    queue.register("echo", handler)
    records = [queue.enqueue("echo", [{"id": str(i)}], OPTIONS) for i in range(3)]

    assert run_loop(queue, "worker-1", 0.01, concurrency=2, stop_event=stop) == 0

    assert sorted(done) == ["0", "1", "2"]
    assert all(queue.get_status(r.id).state == JobState.COMPLETED for r in records)


def test_worker_parser_defaults(monkeypatch):
    monkeypatch.setenv("NH_WORKER_CONCURRENCY", "4")
    args = build_parser().parse_args(["--once", "--worker-id", "w-9"])

    assert args.once is True
    assert args.worker_id == "w-9"
    assert args.concurrency == 4
