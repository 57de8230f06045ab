from __future__ import annotations

import argparse
import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

from .config import ConfigError, load_effective_config
from .errors import TransientInfrastructureError
from .jobs.queue import JobQueue
from .models import JobRecord, JobState
from .services.runtime import build_runtime
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("newsharvest.worker")


def run_once(queue: JobQueue, worker_id: str, logger: logging.Logger | None = None) -> int:
    logger = logger or _setup_logging()
    try:
        job = queue.claim(worker_id)
    except TransientInfrastructureError as exc:
        log_event(logger, logging.WARNING, "job_claim_failed", worker_id=worker_id, error=str(exc))
        return 1
    if not job:
        return 0
    return _process_claimed_job(queue, job, worker_id, logger)


def _process_claimed_job(
    queue: JobQueue, job: JobRecord, worker_id: str, logger: logging.Logger
) -> int:
    log_event(logger, logging.INFO, "job_claimed", job_id=job.id, job_type=job.job_type, worker_id=worker_id)
    try:
        final = queue.execute(job, worker_id)
    except Exception as exc:  # noqa: BLE001
        _record_crash(queue, job, exc, logger)
        return 1
    if final is not None and final.state == JobState.FAILED:
        return 1
    return 0


def _record_crash(queue: JobQueue, job: JobRecord, exc: Exception, logger: logging.Logger) -> None:
    error = f"worker crashed: {exc}"
    try:
        recorded = queue.backend.finish(job.id, JobState.FAILED, error=error)
    except TransientInfrastructureError as finish_exc:
        recorded = False
        log_event(logger, logging.ERROR, "job_crash_unrecorded", job_id=job.id, error=str(finish_exc))
    log_event(
        logger,
        logging.ERROR,
        "job_failed",
        job_id=job.id,
        job_type=job.job_type,
        error=error,
        recorded=recorded,
    )


def run_loop(
    queue: JobQueue,
    worker_id: str,
    sleep_seconds: float,
    concurrency: int = 1,
    stop_event: threading.Event | None = None,
) -> int:
    logger = _setup_logging()
    stop_event = stop_event or threading.Event()
    max_workers = max(1, concurrency)
    log_event(logger, logging.INFO, "worker_started", worker_id=worker_id, concurrency=max_workers)
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job-worker") as executor:
        futures = set()
        while not stop_event.is_set():
            while len(futures) < max_workers:
                try:
                    job = queue.claim(worker_id)
                except TransientInfrastructureError as exc:
                    log_event(logger, logging.WARNING, "job_claim_failed", worker_id=worker_id, error=str(exc))
                    break
                if not job:
                    break
                futures.add(executor.submit(_process_claimed_job, queue, job, worker_id, logger))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                stop_event.wait(sleep_seconds)
        if futures:
            wait(futures)
    log_event(logger, logging.INFO, "worker_stopped", worker_id=worker_id)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsharvest-worker")
    parser.add_argument("--config", default=os.environ.get("NH_CONFIG"), help="Path to config YAML")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=float, default=None, help="Seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("NH_WORKER_CONCURRENCY", "0")) or None,
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    try:
        config = load_effective_config(args.config)
        runtime = build_runtime(config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        if args.once:
            return run_once(runtime.queue, args.worker_id, logger)
        return run_loop(
            runtime.queue,
            args.worker_id,
            args.sleep if args.sleep is not None else config.queue.poll_interval_seconds,
            args.concurrency or config.queue.worker_concurrency,
        )
    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
