from __future__ import annotations

import argparse
import logging
import os
from typing import Callable

from .config import ConfigError, load_config, load_effective_config
from .errors import FatalConfigurationError
from .models import JobOptions, SourceDescriptor
from .pipelines.batch import enqueue_batch
from .services.runtime import Runtime, build_runtime
from .services.sources_service import enabled_sources, import_sources, list_source_rows
from .storage import get_source, init_db
from .utils import configure_logging, log_event
from .worker import run_loop, run_once

DEFAULT_SOURCES_PATHS = ("/config/sources.yml", "/config/sources.example.yml")


def _setup_logging() -> logging.Logger:
    return configure_logging("newsharvest")


def _with_runtime(
    args: argparse.Namespace,
    logger: logging.Logger,
    action: Callable[[Runtime], int],
) -> int:
    try:
        config = load_effective_config(args.config)
        runtime = build_runtime(config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        return action(runtime)
    finally:
        runtime.close()


def _select_sources(
    runtime: Runtime, source_ids: list[str], logger: logging.Logger
) -> list[SourceDescriptor] | None:
    conn = runtime.connections.get()
    if not source_ids:
        sources = enabled_sources(conn)
        if not sources:
            log_event(
                logger,
                logging.WARNING,
                "no_sources",
                hint="Import sources with `newsharvest sources import /config/sources.yml`",
            )
            return None
        return sources
    selected = []
    for source_id in source_ids:
        source = get_source(conn, source_id)
        if source is None:
            log_event(logger, logging.ERROR, "source_not_found", source_id=source_id)
            return None
        selected.append(source)
    return selected


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _run(runtime: Runtime) -> int:
        sources = _select_sources(runtime, args.source, logger)
        if sources is None:
            return 1
        try:
            stats = runtime.orchestrator.run_batch(sources)
        except FatalConfigurationError as exc:
            log_event(logger, logging.ERROR, "batch_not_started", error=str(exc))
            return 1
        for error in stats.errors:
            log_event(
                logger,
                logging.WARNING,
                "batch_error",
                source_id=error.source_id,
                link=error.link,
                kind=error.kind,
                error=error.message,
            )
        log_event(
            logger,
            logging.INFO,
            "run_complete",
            processed=stats.processed,
            succeeded=stats.succeeded,
            duplicates=stats.duplicates,
            failed=stats.failed,
            sources_failed=stats.sources_failed,
            sources_skipped=stats.sources_skipped,
            success_rate=stats.success_rate,
        )
        return 0

    return _with_runtime(args, logger, _run)


def _cmd_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _enqueue(runtime: Runtime) -> int:
        sources = _select_sources(runtime, args.source, logger)
        if sources is None:
            return 1
        options = None
        if args.attempts is not None:
            options = JobOptions(attempts=args.attempts, timeout_seconds=0)
        record = enqueue_batch(runtime.queue, sources, options)
        log_event(
            logger,
            logging.INFO,
            "job_enqueued",
            job_id=record.id,
            state=record.state.value,
            synchronous=record.executed_synchronously,
            sources=len(sources),
        )
        return 0

    return _with_runtime(args, logger, _enqueue)


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _work(runtime: Runtime) -> int:
        if args.once:
            return run_once(runtime.queue, args.worker_id, logger)
        return run_loop(
            runtime.queue,
            args.worker_id,
            runtime.config.queue.poll_interval_seconds,
            args.concurrency or runtime.config.queue.worker_concurrency,
        )

    return _with_runtime(args, logger, _work)


def _cmd_jobs_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _status(runtime: Runtime) -> int:
        record = runtime.queue.get_status(args.job_id)
        if record is None:
            log_event(logger, logging.ERROR, "job_not_found", job_id=args.job_id)
            return 1
        log_event(logger, logging.INFO, "job", **record.to_dict())
        return 0

    return _with_runtime(args, logger, _status)


def _cmd_jobs_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _cancel(runtime: Runtime) -> int:
        if not runtime.queue.cancel(args.job_id):
            log_event(logger, logging.ERROR, "job_not_cancellable", job_id=args.job_id)
            return 1
        log_event(logger, logging.INFO, "job_cancel_requested", job_id=args.job_id)
        return 0

    return _with_runtime(args, logger, _cancel)


def _cmd_jobs_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _stats(runtime: Runtime) -> int:
        stats = runtime.queue.stats()
        stats.pop("breaker", None)
        log_event(logger, logging.INFO, "job_stats", **stats)
        return 0

    return _with_runtime(args, logger, _stats)


def _cmd_jobs_clean(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _clean(runtime: Runtime) -> int:
        runtime.queue.clean(args.completed_age, args.failed_age)
        return 0

    return _with_runtime(args, logger, _clean)


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    sources_path = args.path
    if sources_path is None:
        candidates = (config.paths.sources_file, *DEFAULT_SOURCES_PATHS)
        sources_path = next((path for path in candidates if os.path.exists(path)), None)
        if sources_path is None:
            log_event(
                logger,
                logging.ERROR,
                "sources_import_error",
                error="no sources.yml found",
                hint="Pass a path: `newsharvest sources import path/to/sources.yml`",
            )
            return 1
    log_event(logger, logging.INFO, "sources_import_path", path=sources_path)
    conn = init_db(config.paths.state_db)
    try:
        imported = import_sources(conn, sources_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "sources_import_error", error=str(exc))
        return 1
    finally:
        conn.close()
    if not imported:
        log_event(logger, logging.ERROR, "sources_import_error", error="no sources found")
        return 1
    log_event(logger, logging.INFO, "sources_imported", count=len(imported))
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    conn = init_db(config.paths.state_db)
    try:
        rows = list_source_rows(conn)
    finally:
        conn.close()
    if not rows:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `newsharvest sources import /config/sources.yml`",
        )
        return 1
    for row in rows:
        last_run = row.get("last_run") or {}
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=row["id"],
            enabled=row["enabled"],
            kind=row["kind"],
            target=row["target"],
            last_status=last_run.get("status"),
            last_saved=last_run.get("items_saved"),
        )
    return 0


def _cmd_cache_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _stats(runtime: Runtime) -> int:
        stats = runtime.cache.stats()
        breaker = stats.pop("breaker", {})
        stats.pop("previous_period", None)
        log_event(logger, logging.INFO, "cache_stats", breaker_state=breaker.get("state"), **stats)
        return 0

    return _with_runtime(args, logger, _stats)


def _cmd_cache_invalidate(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _invalidate(runtime: Runtime) -> int:
        removed = 0
        for key in args.key:
            removed += int(runtime.cache.delete(key))
        for prefix in args.prefix:
            try:
                removed += runtime.cache.delete_by_prefix(prefix)
            except ValueError as exc:
                log_event(logger, logging.ERROR, "cache_invalidate_error", error=str(exc))
                return 1
        if args.all:
            removed += runtime.cache.clear_all()
        log_event(logger, logging.INFO, "cache_invalidated", removed=removed)
        return 0

    return _with_runtime(args, logger, _invalidate)


def _cmd_cache_purge(args: argparse.Namespace, logger: logging.Logger) -> int:
    def _purge(runtime: Runtime) -> int:
        removed = runtime.cache.purge_expired()
        log_event(logger, logging.INFO, "cache_purged", removed=removed)
        return 0

    return _with_runtime(args, logger, _purge)


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    conn = init_db(config.paths.state_db)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    from .admin import create_app

    def _serve(runtime: Runtime) -> int:
        uvicorn.run(create_app(runtime), host=args.host, port=args.port, log_config=None)
        return 0

    return _with_runtime(args, logger, _serve)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsharvest", description="NewsHarvest CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to NH_CONFIG)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a batch over sources now")
    run_parser.add_argument(
        "--source", action="append", default=[], help="Source id (repeatable; default: all enabled)"
    )
    run_parser.set_defaults(func=_cmd_run)

    enqueue_parser = subparsers.add_parser("enqueue", help="Submit a batch to the job queue")
    enqueue_parser.add_argument(
        "--source", action="append", default=[], help="Source id (repeatable; default: all enabled)"
    )
    enqueue_parser.add_argument("--attempts", type=int, default=None, help="Attempts for the batch unit")
    enqueue_parser.set_defaults(func=_cmd_enqueue)

    worker_parser = subparsers.add_parser("worker", help="Process queued jobs")
    worker_parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    worker_parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    worker_parser.add_argument("--concurrency", type=int, default=None)
    worker_parser.set_defaults(func=_cmd_worker)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_status = jobs_subparsers.add_parser("status", help="Show a job")
    jobs_status.add_argument("job_id")
    jobs_status.set_defaults(func=_cmd_jobs_status)

    jobs_cancel = jobs_subparsers.add_parser("cancel", help="Cancel a job")
    jobs_cancel.add_argument("job_id")
    jobs_cancel.set_defaults(func=_cmd_jobs_cancel)

    jobs_stats = jobs_subparsers.add_parser("stats", help="Queue counts by state")
    jobs_stats.set_defaults(func=_cmd_jobs_stats)

    jobs_clean = jobs_subparsers.add_parser("clean", help="Remove old finished jobs")
    jobs_clean.add_argument("--completed-age", type=int, default=86400, help="Seconds")
    jobs_clean.add_argument("--failed-age", type=int, default=7 * 86400, help="Seconds")
    jobs_clean.set_defaults(func=_cmd_jobs_clean)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", nargs="?", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    cache_parser = subparsers.add_parser("cache", help="Cache commands")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command", required=True)

    cache_stats = cache_subparsers.add_parser("stats", help="Hit/miss counters")
    cache_stats.set_defaults(func=_cmd_cache_stats)

    cache_invalidate = cache_subparsers.add_parser("invalidate", help="Delete cache entries")
    cache_invalidate.add_argument("--key", action="append", default=[], help="Exact key (repeatable)")
    cache_invalidate.add_argument("--prefix", action="append", default=[], help="Key prefix (repeatable)")
    cache_invalidate.add_argument("--all", action="store_true", help="Clear every entry")
    cache_invalidate.set_defaults(func=_cmd_cache_invalidate)

    cache_purge = cache_subparsers.add_parser("purge", help="Remove expired entries")
    cache_purge.set_defaults(func=_cmd_cache_purge)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
