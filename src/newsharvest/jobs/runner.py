from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable

from ..models import JobOptions, JobState
from ..utils import log_event


@dataclass(frozen=True)
class UnitContext:
    job_id: str
    index: int
    total: int
    attempt: int


UnitHandler = Callable[[dict[str, Any], UnitContext], "dict[str, Any] | None"]
ProgressCallback = Callable[[int, "str | None", int], None]


@dataclass(frozen=True)
class UnitRunOutcome:
    state: JobState
    result: dict[str, Any]
    last_error: str | None
    attempts: int


def describe_unit(unit: dict[str, Any], index: int) -> str:
    for key in ("id", "url", "target", "name"):
        value = unit.get(key) if isinstance(unit, dict) else None
        if value:
            return str(value)
    return f"unit-{index}"


def backoff_delay(options: JobOptions, attempt: int) -> float:
    return options.backoff_seconds * (2 ** (attempt - 1))


def run_units(
    job_id: str,
    handler: UnitHandler,
    units: list[dict[str, Any]],
    options: JobOptions,
    *,
    on_progress: ProgressCallback | None = None,
    should_cancel: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
) -> UnitRunOutcome:
    logger = logger or logging.getLogger("newsharvest.jobs")
    total = len(units)
    results: list[Any] = []
    errors: list[dict[str, Any]] = []
    succeeded = 0
    attempts_total = 0
    last_error: str | None = None
    cancelled = False

    for index, unit in enumerate(units):
        if should_cancel is not None and should_cancel():
            cancelled = True
            log_event(logger, logging.INFO, "job_cancel_honoured", job_id=job_id, at_unit=index)
            break
        detail = describe_unit(unit, index)
        if on_progress is not None:
            on_progress(_percentage(index, total), detail, attempts_total)

        error: str | None = None
        for attempt in range(1, options.attempts + 1):
            attempts_total += 1
            context = UnitContext(job_id=job_id, index=index, total=total, attempt=attempt)
            try:
                value = _call_with_timeout(handler, unit, context, options.timeout_seconds)
            except Exception as exc:  # noqa: BLE001
                error = _describe_error(exc, options.timeout_seconds)
                log_event(
                    logger,
                    logging.WARNING,
                    "job_unit_attempt_failed",
                    job_id=job_id,
                    unit=detail,
                    attempt=attempt,
                    max_attempts=options.attempts,
                    error=error,
                )
                if attempt < options.attempts:
                    sleep(backoff_delay(options, attempt))
                continue
            error = None
            results.append(value)
            succeeded += 1
            break

        if error is not None:
            last_error = error
            errors.append(
                {"unit": index, "id": detail, "error": error, "attempts": options.attempts}
            )
            log_event(logger, logging.ERROR, "job_unit_failed", job_id=job_id, unit=detail, error=error)

    if on_progress is not None and not cancelled:
        on_progress(100, None, attempts_total)

    failed = len(errors)
    result = {
        "total": total,
        "succeeded": succeeded,
        "failed": failed,
        "errors": errors,
        "results": results,
        "cancelled": cancelled,
    }
    if cancelled:
        state = JobState.CANCELLED
        last_error = last_error or "cancelled"
    elif total and not succeeded:
        state = JobState.FAILED
    else:
        state = JobState.COMPLETED
    return UnitRunOutcome(state=state, result=result, last_error=last_error, attempts=attempts_total)


def _call_with_timeout(
    handler: UnitHandler,
    unit: dict[str, Any],
    context: UnitContext,
    timeout_seconds: float,
) -> Any:
    if not timeout_seconds or timeout_seconds <= 0:
        return handler(unit, context)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"unit-{context.job_id[:12]}")
    try:
        future = executor.submit(handler, unit, context)
        return future.result(timeout=timeout_seconds)
    finally:
        # A timed-out unit keeps its thread; it is abandoned, not interrupted.
        executor.shutdown(wait=False)


def _describe_error(exc: Exception, timeout_seconds: float) -> str:
    if isinstance(exc, FutureTimeoutError):
        return f"timed out after {timeout_seconds}s"
    return str(exc) or type(exc).__name__


def _percentage(done: int, total: int) -> int:
    if not total:
        return 100
    return int(round(done * 100 / total))
