from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections import OrderedDict
from typing import Any, Callable

from ..cache.breaker import CircuitBreaker
from ..errors import FatalConfigurationError, TransientInfrastructureError
from ..models import JobOptions, JobRecord, JobState
from ..utils import json_dumps, log_event, utc_now_iso
from .backends import QueueBackend
from .runner import UnitHandler, UnitRunOutcome, run_units

SYNC_PREFIX = "sync-"
_SYNC_REGISTRY_LIMIT = 500


class JobQueue:
    """Durable job queue that runs work inline when the backend is down."""

    def __init__(
        self,
        backend: QueueBackend,
        *,
        breaker: CircuitBreaker | None = None,
        default_options: JobOptions | None = None,
        lock_timeout_seconds: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.backend = backend
        self.breaker = breaker or CircuitBreaker(f"queue:{backend.name}", threshold=5)
        self.default_options = default_options or JobOptions()
        self.lock_timeout_seconds = lock_timeout_seconds
        self._sleep = sleep
        self._logger = logger or logging.getLogger("newsharvest.jobs")
        self._handlers: dict[str, UnitHandler] = {}
        self._sync_records: OrderedDict[str, JobRecord] = OrderedDict()
        self._sync_lock = threading.Lock()

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, job_type: str, handler: UnitHandler) -> None:
        self._handlers[job_type] = handler

    def enqueue(
        self,
        job_type: str,
        units: list[dict[str, Any]],
        options: JobOptions | None = None,
    ) -> JobRecord:
        if job_type not in self._handlers:
            raise FatalConfigurationError(f"no handler registered for job type {job_type}")
        options = options or self.default_options
        payload = json.loads(json_dumps({"units": list(units), "options": options.to_dict()}))
        if self.breaker.allow_request():
            try:
                record = self.backend.enqueue(job_type, payload)
            except TransientInfrastructureError as exc:
                self.breaker.record_failure(str(exc))
                log_event(
                    self._logger,
                    logging.WARNING,
                    "queue_unavailable_running_inline",
                    job_type=job_type,
                    error=str(exc),
                )
            else:
                self.breaker.record_success()
                log_event(
                    self._logger,
                    logging.INFO,
                    "job_enqueued",
                    job_id=record.id,
                    job_type=job_type,
                    units=len(units),
                )
                return record
        return self._run_synchronously(job_type, payload, options)

    def get_status(self, job_id: str) -> JobRecord | None:
        if job_id.startswith(SYNC_PREFIX):
            with self._sync_lock:
                return self._sync_records.get(job_id)
        try:
            return self.backend.get(job_id)
        except TransientInfrastructureError as exc:
            log_event(self._logger, logging.WARNING, "job_status_unavailable", job_id=job_id, error=str(exc))
            return None

    def cancel(self, job_id: str) -> bool:
        if job_id.startswith(SYNC_PREFIX):
            return False
        try:
            cancelled = self.backend.cancel(job_id)
        except TransientInfrastructureError as exc:
            log_event(self._logger, logging.WARNING, "job_cancel_unavailable", job_id=job_id, error=str(exc))
            return False
        if cancelled:
            log_event(self._logger, logging.INFO, "job_cancel_requested", job_id=job_id)
        return cancelled

    def list_jobs(self, limit: int = 50, state: JobState | None = None) -> list[JobRecord]:
        try:
            return self.backend.list_jobs(limit=limit, state=state)
        except TransientInfrastructureError:
            return []

    def stats(self) -> dict[str, Any]:
        with self._sync_lock:
            synchronous = len(self._sync_records)
        try:
            counts = self.backend.counts()
            available = True
        except TransientInfrastructureError:
            counts = {state.value: 0 for state in JobState}
            available = False
        data: dict[str, Any] = dict(counts)
        data["total"] = sum(counts.values())
        data["backend"] = self.backend.name
        data["backend_available"] = available
        data["executed_synchronously"] = synchronous
        data["breaker"] = self.breaker.status().to_dict()
        return data

    def clean(self, completed_age_seconds: int = 86400, failed_age_seconds: int = 7 * 86400) -> int:
        try:
            removed = self.backend.clean(completed_age_seconds, failed_age_seconds)
        except TransientInfrastructureError as exc:
            log_event(self._logger, logging.WARNING, "job_clean_unavailable", error=str(exc))
            return 0
        log_event(self._logger, logging.INFO, "jobs_cleaned", removed=removed)
        return removed

    def claim(self, worker_id: str) -> JobRecord | None:
        return self.backend.claim(
            worker_id,
            job_types=self.job_types,
            lock_timeout_seconds=self.lock_timeout_seconds,
        )

    def execute(self, record: JobRecord, worker_id: str) -> JobRecord | None:
        handler = self._handlers.get(record.job_type)
        if handler is None:
            self.backend.finish(
                record.id, JobState.FAILED, error=f"no handler for job type {record.job_type}"
            )
            return self.backend.get(record.id)
        log_event(
            self._logger,
            logging.INFO,
            "job_started",
            job_id=record.id,
            job_type=record.job_type,
            worker_id=worker_id,
        )

        def _progress(progress: int, detail: str | None, attempts: int) -> None:
            self.backend.update_progress(record.id, progress, detail, attempts)

        outcome = run_units(
            record.id,
            handler,
            record.units,
            JobOptions.from_dict(record.payload.get("options"), self.default_options),
            on_progress=_progress,
            should_cancel=lambda: self.backend.is_cancel_requested(record.id),
            sleep=self._sleep,
            logger=self._logger,
        )
        self.backend.finish(record.id, outcome.state, result=outcome.result, error=outcome.last_error)
        self._log_outcome(record.id, record.job_type, outcome)
        return self.backend.get(record.id)

    def _run_synchronously(
        self, job_type: str, payload: dict[str, Any], options: JobOptions
    ) -> JobRecord:
        job_id = f"{SYNC_PREFIX}{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        started = utc_now_iso()
        state: dict[str, Any] = {"progress": 0, "detail": None, "attempts": 0}

        def _progress(progress: int, detail: str | None, attempts: int) -> None:
            state.update(progress=progress, detail=detail, attempts=attempts)

        outcome = run_units(
            job_id,
            self._handlers[job_type],
            payload["units"],
            options,
            on_progress=_progress,
            sleep=self._sleep,
            logger=self._logger,
        )
        # Same JSON round trip the durable path applies to stored results.
        record = JobRecord(
            id=job_id,
            job_type=job_type,
            state=outcome.state,
            payload=payload,
            requested_at=started,
            progress=100 if outcome.state == JobState.COMPLETED else int(state["progress"]),
            progress_detail=state["detail"],
            attempts=outcome.attempts,
            last_error=outcome.last_error,
            result=json.loads(json_dumps(outcome.result)),
            executed_synchronously=True,
            started_at=started,
            finished_at=utc_now_iso(),
        )
        with self._sync_lock:
            self._sync_records[job_id] = record
            while len(self._sync_records) > _SYNC_REGISTRY_LIMIT:
                self._sync_records.popitem(last=False)
        self._log_outcome(job_id, job_type, outcome, synchronous=True)
        return record

    def _log_outcome(
        self, job_id: str, job_type: str, outcome: UnitRunOutcome, synchronous: bool = False
    ) -> None:
        level = logging.INFO if outcome.state == JobState.COMPLETED else logging.WARNING
        log_event(
            self._logger,
            level,
            f"job_{outcome.state.value}",
            job_id=job_id,
            job_type=job_type,
            succeeded=outcome.result["succeeded"],
            failed=outcome.result["failed"],
            synchronous=synchronous,
        )

