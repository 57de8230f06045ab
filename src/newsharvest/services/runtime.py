from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from ..cache import (
    CacheBackend,
    CacheStats,
    CacheStore,
    CircuitBreaker,
    DatabaseCacheBackend,
    MemoryCacheBackend,
    NullCacheBackend,
)
from ..classify import Classifier
from ..config import Config, ConfigError
from ..db import ThreadLocalConnections
from ..dedupe import DuplicateDetector
from ..ingest import SourceKindExtractor, UrlPageFetcher
from ..jobs import DatabaseQueueBackend, DisabledQueueBackend, JobQueue, MemoryQueueBackend, QueueBackend
from ..llm import MinIntervalRateLimiter, OpenAICompatibleCompletion, RateLimitedCompletion
from ..models import JobOptions
from ..persistence import DatabasePersistence
from ..pipelines.batch import BatchOrchestrator, BatchSettings, register_batch_job
from ..ports import Completion, Extractor, PageFetcher
from ..titles import TitleResolver
from ..utils import log_event


@dataclass
class Runtime:
    config: Config
    connections: ThreadLocalConnections
    cache: CacheStore
    queue: JobQueue
    persistence: DatabasePersistence
    classifier: Classifier
    titles: TitleResolver
    detector: DuplicateDetector
    orchestrator: BatchOrchestrator
    completion: Completion | None = None

    def close(self) -> None:
        self.cache.close()
        self.queue.backend.close()
        self.connections.close_all()


def build_runtime(
    config: Config,
    *,
    fetcher: PageFetcher | None = None,
    extractor: Extractor | None = None,
    completion: Completion | None = None,
    logger: logging.Logger | None = None,
) -> Runtime:
    logger = logger or logging.getLogger("newsharvest.runtime")
    connections = ThreadLocalConnections(config.paths.state_db)

    cache_backend = _cache_backend(config.cache.backend, connections)
    cache = CacheStore(
        cache_backend,
        breaker=CircuitBreaker(
            f"cache:{cache_backend.name}",
            threshold=config.cache.breaker.failure_threshold,
            cooldown_seconds=config.cache.breaker.cooldown_seconds,
        ),
        ttl_classes=config.cache.ttl_classes,
        default_ttl=config.cache.default_ttl_seconds,
        purge_every_writes=config.cache.purge_every_writes,
        stats=CacheStats(
            reset_operations=config.cache.stats_reset_operations,
            reset_interval_seconds=config.cache.stats_reset_interval_seconds,
        ),
        writer_threads=config.cache.writer_threads,
    )

    queue_backend = _queue_backend(config.queue.backend, connections)
    queue = JobQueue(
        queue_backend,
        breaker=CircuitBreaker(
            f"queue:{queue_backend.name}",
            threshold=config.queue.breaker.failure_threshold,
            cooldown_seconds=config.queue.breaker.cooldown_seconds,
        ),
        default_options=JobOptions(
            attempts=config.queue.default_attempts,
            backoff_seconds=config.queue.default_backoff_seconds,
            timeout_seconds=config.queue.default_timeout_seconds,
        ),
        lock_timeout_seconds=config.queue.lock_timeout_seconds,
    )

    completion = completion or _default_completion(config)
    if completion is not None:
        completion = RateLimitedCompletion(
            completion, MinIntervalRateLimiter(config.llm.min_interval_seconds)
        )

    persistence = DatabasePersistence(connections)
    classifier = Classifier(
        completion if config.classification.ai_enabled else None,
        min_confidence=config.classification.min_confidence,
    )
    titles = TitleResolver(
        completion,
        min_length=config.titles.min_length,
        max_length=config.titles.max_length,
        description_words=config.titles.description_words,
    )
    detector = DuplicateDetector(
        persistence,
        min_content_length=config.dedupe.min_content_length,
        similarity_threshold=config.dedupe.similarity_threshold,
        time_window_hours=config.dedupe.time_window_hours,
        candidate_limit=config.dedupe.candidate_limit,
        title_prefix_chars=config.dedupe.title_prefix_chars,
        enabled=config.dedupe.enabled,
    )
    orchestrator = BatchOrchestrator(
        fetcher
        or UrlPageFetcher(
            timeout_seconds=config.http.timeout_seconds,
            user_agent=config.http.user_agent,
            max_retries=config.http.max_retries,
            backoff_seconds=config.http.backoff_seconds,
        ),
        extractor or SourceKindExtractor(),
        persistence,
        cache=cache,
        titles=titles,
        classifier=classifier,
        detector=detector,
        settings=BatchSettings.from_config(config),
        run_recorder=persistence.record_source_run,
        thread_cleanup=connections.discard,
    )
    register_batch_job(queue, orchestrator)
    log_event(
        logger,
        logging.INFO,
        "runtime_ready",
        cache_backend=cache_backend.name,
        queue_backend=queue_backend.name,
        llm=completion is not None,
    )
    return Runtime(
        config=config,
        connections=connections,
        cache=cache,
        queue=queue,
        persistence=persistence,
        classifier=classifier,
        titles=titles,
        detector=detector,
        orchestrator=orchestrator,
        completion=completion,
    )


def _cache_backend(name: str, connections: ThreadLocalConnections) -> CacheBackend:
    if name == "database":
        return DatabaseCacheBackend(connections)
    if name == "memory":
        return MemoryCacheBackend()
    if name == "disabled":
        return NullCacheBackend()
    raise ConfigError(f"unknown cache backend: {name}")


def _queue_backend(name: str, connections: ThreadLocalConnections) -> QueueBackend:
    if name == "database":
        return DatabaseQueueBackend(connections)
    if name == "memory":
        return MemoryQueueBackend()
    if name == "disabled":
        return DisabledQueueBackend()
    raise ConfigError(f"unknown queue backend: {name}")


def _default_completion(config: Config) -> Completion | None:
    if not config.llm.enabled:
        return None
    api_key = os.environ.get("NH_LLM_API_KEY")
    if not api_key and not config.llm.base_url:
        raise ConfigError("llm.enabled requires NH_LLM_API_KEY or llm.base_url")
    return OpenAICompatibleCompletion(
        base_url=config.llm.base_url or None,
        model=config.llm.model,
        api_key=api_key,
        timeout_seconds=config.llm.timeout_seconds,
        temperature=config.llm.temperature,
        max_tokens=config.llm.max_tokens,
    )
