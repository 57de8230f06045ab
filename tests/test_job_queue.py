import threading

import pytest

from newsharvest.cache.breaker import CircuitBreaker
from newsharvest.errors import FatalConfigurationError
from newsharvest.jobs import JobQueue, MemoryQueueBackend
from newsharvest.jobs.queue import SYNC_PREFIX
from newsharvest.models import JobOptions, JobState

UNITS = [{"id": "df-economia", "n": 2}, {"id": "biobio-rss", "n": 3}]
NO_TIMEOUT = JobOptions(attempts=3, backoff_seconds=1.0, timeout_seconds=0)


def _double(unit, context):
    return {"id": unit["id"], "value": unit["n"] * 2}


def _queue(sleeps=None, **kwargs):
    backend = MemoryQueueBackend()
    queue = JobQueue(
        backend,
        sleep=(sleeps.append if sleeps is not None else (lambda seconds: None)),
        **kwargs,
    )
    queue.register("double", _double)
    return queue, backend


def _run_durably(queue, units, options=NO_TIMEOUT, job_type="double"):
    record = queue.enqueue(job_type, units, options)
    claimed = queue.claim("worker-1")
    assert claimed is not None and claimed.id == record.id
    return queue.execute(claimed, "worker-1")


def test_durable_job_completes_with_results():
    queue, _ = _queue()

    record = queue.enqueue("double", UNITS, NO_TIMEOUT)
    assert record.state == JobState.QUEUED
    assert record.executed_synchronously is False

    final = queue.execute(queue.claim("w"), "w")

    assert final.state == JobState.COMPLETED
    assert final.progress == 100
    assert final.result["succeeded"] == 2
    assert final.result["results"] == [
        {"id": "df-economia", "value": 4},
        {"id": "biobio-rss", "value": 6},
    ]
    assert queue.get_status(record.id).state == JobState.COMPLETED


def test_inline_fallback_matches_durable_result():
    durable_queue, _ = _queue()
    durable = _run_durably(durable_queue, UNITS)

    inline_queue, backend = _queue()
    backend.available = False
    inline = inline_queue.enqueue("double", UNITS, NO_TIMEOUT)

    assert inline.id.startswith(SYNC_PREFIX)
    assert inline.executed_synchronously is True
    assert inline.state == durable.state == JobState.COMPLETED
    assert inline.result == durable.result
    assert inline_queue.get_status(inline.id) == inline
    assert inline_queue.cancel(inline.id) is False
    assert inline_queue.stats()["executed_synchronously"] == 1


def test_retries_back_off_exponentially():
    sleeps = []
    queue, _ = _queue(sleeps)
    failures = {"count": 0}

    def flaky(unit, context):
        if failures["count"] < 2:
            failures["count"] += 1
            raise RuntimeError("upstream 503")
        return {"attempt": context.attempt}

    queue.register("flaky", flaky)
    final = _run_durably(queue, [{"id": "one"}], job_type="flaky")

    assert final.state == JobState.COMPLETED
    assert final.result["results"] == [{"attempt": 3}]
    assert final.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_failed_only_when_every_unit_fails():
    queue, _ = _queue()

    def picky(unit, context):
        if unit["id"] == "bad":
            raise ValueError("bad unit")
        return {"ok": True}

    queue.register("picky", picky)
    options = JobOptions(attempts=1, backoff_seconds=0, timeout_seconds=0)

    partial = _run_durably(queue, [{"id": "good"}, {"id": "bad"}], options, "picky")
    assert partial.state == JobState.COMPLETED
    assert partial.result["failed"] == 1
    assert partial.result["errors"][0]["id"] == "bad"
    assert partial.result["errors"][0]["error"] == "bad unit"

    failed = _run_durably(queue, [{"id": "bad"}], options, "picky")
    assert failed.state == JobState.FAILED
    assert failed.last_error == "bad unit"


def test_unit_timeout_abandons_the_attempt():
    queue, _ = _queue()
    release = threading.Event()

    def slow(unit, context):
        release.wait(5)
        return {"late": True}

    queue.register("slow", slow)
    try:
        final = _run_durably(
            queue,
            [{"id": "slow"}],
            JobOptions(attempts=1, backoff_seconds=0, timeout_seconds=0.05),
            "slow",
        )
    finally:
        release.set()

    assert final.state == JobState.FAILED
    assert final.result["errors"][0]["error"] == "timed out after 0.05s"


def test_cancel_queued_job_is_never_claimed():
    queue, _ = _queue()
    record = queue.enqueue("double", UNITS, NO_TIMEOUT)

    assert queue.cancel(record.id) is True
    assert queue.get_status(record.id).state == JobState.CANCELLED
    assert queue.claim("w") is None


def test_cancel_active_job_stops_between_units():
    queue, _ = _queue()
    seen = []

    def cancelling(unit, context):
        seen.append(unit["id"])
        queue.cancel(context.job_id)
        return {"id": unit["id"]}

    queue.register("cancelling", cancelling)
    final = _run_durably(queue, [{"id": "a"}, {"id": "b"}, {"id": "c"}], job_type="cancelling")

    assert seen == ["a"]
    assert final.state == JobState.CANCELLED
    assert final.result["cancelled"] is True
    assert final.result["succeeded"] == 1


def test_unknown_job_type_is_a_configuration_error():
    queue, _ = _queue()
    with pytest.raises(FatalConfigurationError):
        queue.enqueue("nope", [])


def test_open_breaker_skips_the_backend():
    backend = MemoryQueueBackend()
    queue = JobQueue(backend, breaker=CircuitBreaker("queue:memory", threshold=1))
    queue.register("double", _double)
    backend.available = False

    first = queue.enqueue("double", UNITS, NO_TIMEOUT)
    assert queue.breaker.state == "open"

    backend.available = True
    second = queue.enqueue("double", UNITS, NO_TIMEOUT)

    assert first.executed_synchronously and second.executed_synchronously
    assert queue.list_jobs() == []


def test_stats_and_clean():
    queue, backend = _queue()
    _run_durably(queue, UNITS)
    queue.enqueue("double", UNITS, NO_TIMEOUT)

    stats = queue.stats()
    assert stats["completed"] == 1
    assert stats["queued"] == 1
    assert stats["total"] == 2
    assert stats["backend"] == "memory"
    assert stats["backend_available"] is True
    assert stats["breaker"]["state"] == "closed"

    assert queue.clean(completed_age_seconds=-60, failed_age_seconds=-60) == 1
    assert len(queue.list_jobs()) == 1

    backend.available = False
    assert queue.stats()["backend_available"] is False
    assert queue.list_jobs() == []
