from __future__ import annotations

import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any

from .. import storage
from ..db import ThreadLocalConnections
from ..errors import TransientInfrastructureError
from ..models import JobRecord, JobState
from ..utils import json_dumps, utc_now_iso, utc_now_iso_offset


class QueueBackend(ABC):
    name = "queue"

    @abstractmethod
    def enqueue(self, job_type: str, payload: dict[str, Any]) -> JobRecord: ...

    @abstractmethod
    def claim(
        self,
        worker_id: str,
        job_types: list[str] | None = None,
        lock_timeout_seconds: int | None = None,
    ) -> JobRecord | None: ...

    @abstractmethod
    def get(self, job_id: str) -> JobRecord | None: ...

    @abstractmethod
    def list_jobs(self, limit: int = 50, state: JobState | None = None) -> list[JobRecord]: ...

    @abstractmethod
    def update_progress(self, job_id: str, progress: int, detail: str | None, attempts: int) -> bool: ...

    @abstractmethod
    def finish(
        self,
        job_id: str,
        state: JobState,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool: ...

    @abstractmethod
    def cancel(self, job_id: str) -> bool: ...

    @abstractmethod
    def is_cancel_requested(self, job_id: str) -> bool: ...

    @abstractmethod
    def counts(self) -> dict[str, int]: ...

    @abstractmethod
    def clean(self, completed_age_seconds: int, failed_age_seconds: int) -> int: ...

    @abstractmethod
    def ping(self) -> None: ...

    def close(self) -> None:
        return None


class DatabaseQueueBackend(QueueBackend):
    name = "database"

    def __init__(self, connections: ThreadLocalConnections) -> None:
        self._connections = connections

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            conn = self._connections.get()
            return func(conn, *args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            self._connections.discard()
            raise TransientInfrastructureError(f"queue {operation} failed: {exc}") from exc

    def enqueue(self, job_type: str, payload: dict[str, Any]) -> JobRecord:
        return self._call("enqueue", storage.enqueue_job, job_type, payload)

    def claim(
        self,
        worker_id: str,
        job_types: list[str] | None = None,
        lock_timeout_seconds: int | None = None,
    ) -> JobRecord | None:
        return self._call(
            "claim",
            storage.claim_next_job,
            worker_id,
            allowed_types=job_types,
            lock_timeout_seconds=lock_timeout_seconds,
        )

    def get(self, job_id: str) -> JobRecord | None:
        return self._call("get", storage.get_job, job_id)

    def list_jobs(self, limit: int = 50, state: JobState | None = None) -> list[JobRecord]:
        return self._call("list", storage.list_jobs, limit, state.value if state else None)

    def update_progress(self, job_id: str, progress: int, detail: str | None, attempts: int) -> bool:
        return self._call("progress", storage.update_job_progress, job_id, progress, detail, attempts)

    def finish(
        self,
        job_id: str,
        state: JobState,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        return self._call("finish", storage.finish_job, job_id, state, result, error)

    def cancel(self, job_id: str) -> bool:
        return self._call("cancel", storage.cancel_job, job_id)

    def is_cancel_requested(self, job_id: str) -> bool:
        return self._call("cancel_check", storage.is_cancel_requested, job_id)

    def counts(self) -> dict[str, int]:
        return self._call("counts", storage.count_jobs_by_status)

    def clean(self, completed_age_seconds: int, failed_age_seconds: int) -> int:
        return self._call(
            "clean",
            storage.clean_jobs,
            utc_now_iso_offset(seconds=-completed_age_seconds),
            utc_now_iso_offset(seconds=-failed_age_seconds),
        )

    def ping(self) -> None:
        self._call("ping", lambda conn: conn.execute("SELECT 1").fetchone())

    def close(self) -> None:
        self._connections.close_all()


class MemoryQueueBackend(QueueBackend):
    """In-process queue for tests. ``available = False`` simulates an outage."""

    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, JobRecord] = {}
        self._order: list[str] = []
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise TransientInfrastructureError("memory queue backend unavailable")

    def enqueue(self, job_type: str, payload: dict[str, Any]) -> JobRecord:
        with self._lock:
            self._check()
            record = JobRecord(
                id=f"job_{uuid.uuid4().hex}",
                job_type=job_type,
                state=JobState.QUEUED,
                payload=json.loads(json_dumps(payload)),
                requested_at=utc_now_iso(),
            )
            self._jobs[record.id] = record
            self._order.append(record.id)
            return record

    def claim(
        self,
        worker_id: str,
        job_types: list[str] | None = None,
        lock_timeout_seconds: int | None = None,
    ) -> JobRecord | None:
        with self._lock:
            self._check()
            for job_id in self._order:
                record = self._jobs[job_id]
                if record.state != JobState.QUEUED:
                    continue
                if job_types and record.job_type not in job_types:
                    continue
                claimed = replace(
                    record,
                    state=JobState.ACTIVE,
                    started_at=utc_now_iso(),
                    locked_by=worker_id,
                )
                self._jobs[job_id] = claimed
                return claimed
            return None

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            self._check()
            return self._jobs.get(job_id)

    def list_jobs(self, limit: int = 50, state: JobState | None = None) -> list[JobRecord]:
        with self._lock:
            self._check()
            records = [self._jobs[job_id] for job_id in reversed(self._order)]
            if state is not None:
                records = [record for record in records if record.state == state]
            return records[:limit]

    def update_progress(self, job_id: str, progress: int, detail: str | None, attempts: int) -> bool:
        with self._lock:
            self._check()
            record = self._jobs.get(job_id)
            if record is None or record.state != JobState.ACTIVE:
                return False
            self._jobs[job_id] = replace(
                record, progress=int(progress), progress_detail=detail, attempts=int(attempts)
            )
            return True

    def finish(
        self,
        job_id: str,
        state: JobState,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        if not state.terminal:
            raise ValueError(f"finish requires a terminal state, got {state.value}")
        with self._lock:
            self._check()
            record = self._jobs.get(job_id)
            if record is None or record.state != JobState.ACTIVE:
                return False
            self._jobs[job_id] = replace(
                record,
                state=state,
                result=json.loads(json_dumps(result)) if result is not None else None,
                last_error=error,
                progress=100 if state == JobState.COMPLETED else record.progress,
                finished_at=utc_now_iso(),
                locked_by=None,
            )
            return True

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            self._check()
            record = self._jobs.get(job_id)
            if record is None:
                return False
            if record.state == JobState.QUEUED:
                self._jobs[job_id] = replace(
                    record,
                    state=JobState.CANCELLED,
                    last_error="cancelled",
                    finished_at=utc_now_iso(),
                )
                return True
            if record.state == JobState.ACTIVE:
                self._jobs[job_id] = replace(record, cancel_requested=True)
                return True
            return False

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            self._check()
            record = self._jobs.get(job_id)
            return bool(record and (record.cancel_requested or record.state == JobState.CANCELLED))

    def counts(self) -> dict[str, int]:
        with self._lock:
            self._check()
            counts = {state.value: 0 for state in JobState}
            for record in self._jobs.values():
                counts[record.state.value] += 1
            return counts

    def clean(self, completed_age_seconds: int, failed_age_seconds: int) -> int:
        completed_cutoff = utc_now_iso_offset(seconds=-completed_age_seconds)
        failed_cutoff = utc_now_iso_offset(seconds=-failed_age_seconds)
        with self._lock:
            self._check()
            doomed = []
            for job_id, record in self._jobs.items():
                if not record.finished_at:
                    continue
                cutoff = failed_cutoff if record.state == JobState.FAILED else completed_cutoff
                if record.state.terminal and record.finished_at < cutoff:
                    doomed.append(job_id)
            for job_id in doomed:
                del self._jobs[job_id]
                self._order.remove(job_id)
            return len(doomed)

    def ping(self) -> None:
        with self._lock:
            self._check()


class DisabledQueueBackend(QueueBackend):
    """No durable queue: every submission runs inline."""

    name = "disabled"

    def _unavailable(self) -> TransientInfrastructureError:
        return TransientInfrastructureError("queue backend disabled")

    def enqueue(self, job_type: str, payload: dict[str, Any]) -> JobRecord:
        raise self._unavailable()

    def claim(
        self,
        worker_id: str,
        job_types: list[str] | None = None,
        lock_timeout_seconds: int | None = None,
    ) -> JobRecord | None:
        return None

    def get(self, job_id: str) -> JobRecord | None:
        return None

    def list_jobs(self, limit: int = 50, state: JobState | None = None) -> list[JobRecord]:
        return []

    def update_progress(self, job_id: str, progress: int, detail: str | None, attempts: int) -> bool:
        return False

    def finish(
        self,
        job_id: str,
        state: JobState,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        return False

    def cancel(self, job_id: str) -> bool:
        return False

    def is_cancel_requested(self, job_id: str) -> bool:
        return False

    def counts(self) -> dict[str, int]:
        raise self._unavailable()

    def clean(self, completed_age_seconds: int, failed_age_seconds: int) -> int:
        return 0

    def ping(self) -> None:
        raise self._unavailable()
