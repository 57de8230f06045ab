from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from ..cache.keys import InvalidationScopes, scrape_key
from ..cache.store import CacheStore
from ..classify import Classifier
from ..config import Config
from ..dedupe import DuplicateDetector
from ..errors import FatalConfigurationError, error_kind
from ..ingest import extract_readable_text
from ..jobs.queue import JobQueue
from ..jobs.runner import UnitContext
from ..models import (
    ArticleError,
    ArticleRecord,
    BatchRunStats,
    ExtractedArticle,
    JobOptions,
    JobRecord,
    SourceDescriptor,
)
from ..normalize import normalize_content
from ..ports import Extractor, PageFetcher, Persistence
from ..titles import TitleResolver, clean_title, fallback_title, is_valid_title
from ..utils import log_event, utc_now, utc_now_iso

BATCH_JOB_TYPE = "run_batch"

RunRecorder = Callable[..., None]

# Poll interval while an article is queued behind running ones.
_START_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class BatchSettings:
    fetch_concurrency: int = 5
    article_concurrency: int = 3
    article_timeout_seconds: float = 60.0
    batch_timeout_seconds: float = 1800.0
    recent_scrape_window_hours: int = 24
    max_items_per_source: int = 0
    min_content_length: int = 50
    fallback_title_chars: int = 100

    @classmethod
    def from_config(cls, config: Config) -> "BatchSettings":
        pipeline = config.pipeline
        return cls(
            fetch_concurrency=pipeline.fetch_concurrency,
            article_concurrency=pipeline.article_concurrency,
            article_timeout_seconds=pipeline.article_timeout_seconds,
            batch_timeout_seconds=pipeline.batch_timeout_seconds,
            recent_scrape_window_hours=pipeline.recent_scrape_window_hours,
            max_items_per_source=pipeline.max_items_per_source,
            min_content_length=config.dedupe.min_content_length,
            fallback_title_chars=config.titles.fallback_chars,
        )


@dataclass
class SourceOutcome:
    source_id: str
    status: str = "ok"
    found: int = 0
    processed: int = 0
    succeeded: int = 0
    duplicates: int = 0
    failed: int = 0
    error: str | None = None
    errors: list[ArticleError] = field(default_factory=list)


@dataclass(frozen=True)
class _ArticleOutcome:
    status: str
    error: ArticleError | None = None


class BatchOrchestrator:
    def __init__(
        self,
        fetcher: PageFetcher,
        extractor: Extractor,
        persistence: Persistence,
        *,
        cache: CacheStore | None = None,
        titles: TitleResolver | None = None,
        classifier: Classifier | None = None,
        detector: DuplicateDetector | None = None,
        settings: BatchSettings | None = None,
        run_recorder: RunRecorder | None = None,
        thread_cleanup: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("fetcher", fetcher),
                ("extractor", extractor),
                ("persistence", persistence),
            )
            if value is None
        ]
        if missing:
            raise FatalConfigurationError(f"batch orchestrator missing {', '.join(missing)}")
        self.settings = settings or BatchSettings()
        if self.settings.fetch_concurrency < 1 or self.settings.article_concurrency < 1:
            raise FatalConfigurationError("batch concurrency limits must be >= 1")
        self.fetcher = fetcher
        self.extractor = extractor
        self.persistence = persistence
        self.cache = cache
        self.titles = titles or TitleResolver()
        self.classifier = classifier or Classifier()
        self.detector = detector or DuplicateDetector(
            persistence, min_content_length=self.settings.min_content_length
        )
        self.run_recorder = run_recorder
        self.thread_cleanup = thread_cleanup
        self._clock = clock
        self._logger = logger or logging.getLogger("newsharvest.batch")

    def run_batch(self, sources: Sequence[SourceDescriptor]) -> BatchRunStats:
        if isinstance(sources, (str, bytes)) or not isinstance(sources, Sequence):
            raise FatalConfigurationError("run_batch expects a sequence of SourceDescriptor")
        if not all(isinstance(source, SourceDescriptor) for source in sources):
            raise FatalConfigurationError("run_batch expects a sequence of SourceDescriptor")

        started_at = utc_now_iso()
        started = self._clock()
        deadline = started + self.settings.batch_timeout_seconds
        scopes = InvalidationScopes()
        outcomes: list[SourceOutcome] = []
        skipped = 0
        timed_out = False
        size = self.settings.fetch_concurrency
        waves = [list(sources[i : i + size]) for i in range(0, len(sources), size)]
        log_event(
            self._logger,
            logging.INFO,
            "batch_started",
            sources=len(sources),
            waves=len(waves),
        )

        with ThreadPoolExecutor(max_workers=size, thread_name_prefix="nh-source") as pool:
            for index, wave in enumerate(waves):
                if self.settings.batch_timeout_seconds > 0 and self._clock() >= deadline:
                    remaining = sum(len(rest) for rest in waves[index:])
                    skipped += remaining
                    timed_out = True
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "batch_timeout",
                        skipped_sources=remaining,
                    )
                    break
                futures = [(source, pool.submit(self._source_task, source, scopes)) for source in wave]
                for source, future in futures:
                    try:
                        outcomes.append(future.result())
                    except Exception as exc:  # noqa: BLE001
                        outcomes.append(self._failed_source(source, exc))

        invalidated = 0
        if self.cache is not None and len(scopes):
            invalidated = scopes.flush(self.cache)

        finished = self._clock()
        errors: list[ArticleError] = []
        for outcome in outcomes:
            errors.extend(outcome.errors)
        stats = BatchRunStats(
            started_at=started_at,
            finished_at=utc_now_iso(),
            duration_seconds=round(finished - started, 3),
            processed=sum(outcome.processed for outcome in outcomes),
            succeeded=sum(outcome.succeeded for outcome in outcomes),
            failed=sum(outcome.failed for outcome in outcomes),
            duplicates=sum(outcome.duplicates for outcome in outcomes),
            sources_total=len(sources),
            sources_failed=sum(1 for outcome in outcomes if outcome.status == "error"),
            sources_skipped=skipped,
            invalidated_keys=invalidated,
            timed_out=timed_out,
            errors=tuple(errors),
        )
        log_event(
            self._logger,
            logging.INFO,
            "batch_finished",
            processed=stats.processed,
            succeeded=stats.succeeded,
            duplicates=stats.duplicates,
            failed=stats.failed,
            sources_failed=stats.sources_failed,
            sources_skipped=stats.sources_skipped,
            invalidated_keys=invalidated,
            duration_seconds=stats.duration_seconds,
        )
        return stats

    def _run_source(self, source: SourceDescriptor, scopes: InvalidationScopes) -> SourceOutcome:
        started_at = utc_now_iso()
        try:
            markup = self.fetcher.fetch(source.target)
            articles = self.extractor.extract(markup, source)
        except Exception as exc:  # noqa: BLE001
            outcome = self._failed_source(source, exc)
            self._record_run(source, started_at, outcome)
            return outcome

        outcome = SourceOutcome(source_id=source.id, found=len(articles))
        limit = source.max_items or self.settings.max_items_per_source
        if limit > 0:
            articles = articles[:limit]
        if articles:
            self._run_articles(source, articles, scopes, outcome)
        log_event(
            self._logger,
            logging.INFO,
            "source_processed",
            source_id=source.id,
            found=outcome.found,
            succeeded=outcome.succeeded,
            duplicates=outcome.duplicates,
            failed=outcome.failed,
        )
        self._record_run(source, started_at, outcome)
        return outcome

    def release_thread(self) -> None:
        """Runs the thread cleanup hook, usually closing this thread's DB connection."""
        if self.thread_cleanup is None:
            return
        try:
            self.thread_cleanup()
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.WARNING, "thread_cleanup_failed", error=str(exc))

    def _source_task(self, source: SourceDescriptor, scopes: InvalidationScopes) -> SourceOutcome:
        try:
            return self._run_source(source, scopes)
        finally:
            self.release_thread()

    def _run_articles(
        self,
        source: SourceDescriptor,
        articles: list[ExtractedArticle],
        scopes: InvalidationScopes,
        outcome: SourceOutcome,
    ) -> None:
        timeout = self.settings.article_timeout_seconds
        limit = self.settings.article_concurrency
        results: list[_ArticleOutcome | None] = [None] * len(articles)
        started: dict[int, float] = {}
        queued = deque(range(len(articles)))
        running: dict[Future, int] = {}

        def _article_task(index: int) -> _ArticleOutcome:
            started[index] = time.monotonic()
            try:
                return self._process_article(source, articles[index], scopes)
            finally:
                self.release_thread()

        # An abandoned article keeps its thread, so the pool is sized for every
        # article while ``limit`` bounds how many are in flight.
        pool = ThreadPoolExecutor(max_workers=len(articles), thread_name_prefix=f"nh-{source.id}")
        try:
            while queued or running:
                while queued and len(running) < limit:
                    index = queued.popleft()
                    running[pool.submit(_article_task, index)] = index
                done, _ = wait(
                    running,
                    timeout=self._next_article_wait(running, started, timeout),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    index = running.pop(future)
                    try:
                        results[index] = future.result()
                    except Exception as exc:  # noqa: BLE001
                        results[index] = _ArticleOutcome(
                            status="failed",
                            error=_article_error(
                                source, articles[index].link, error_kind(exc), str(exc)
                            ),
                        )
                if timeout <= 0:
                    continue
                now = time.monotonic()
                for future, index in list(running.items()):
                    began = started.get(index)
                    if future.done() or began is None or now - began < timeout:
                        continue
                    running.pop(future)
                    results[index] = _ArticleOutcome(
                        status="failed",
                        error=_article_error(
                            source,
                            articles[index].link,
                            "timeout",
                            f"article timed out after {timeout}s",
                        ),
                    )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        for article, result in zip(articles, results):
            outcome.processed += 1
            if result is None:
                continue
            if result.status == "saved":
                outcome.succeeded += 1
            elif result.status == "duplicate":
                outcome.duplicates += 1
            else:
                outcome.failed += 1
                if result.error is not None:
                    outcome.errors.append(result.error)
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "article_failed",
                        source_id=source.id,
                        link=article.link,
                        kind=result.error.kind,
                        error=result.error.message,
                    )

    @staticmethod
    def _next_article_wait(
        running: dict[Future, int], started: dict[int, float], timeout: float
    ) -> float | None:
        if timeout <= 0:
            return None
        now = time.monotonic()
        waits = []
        for index in running.values():
            began = started.get(index)
            if began is None:
                waits.append(_START_POLL_SECONDS)
            else:
                waits.append(max(0.0, began + timeout - now))
        return min(waits) if waits else None

    def _process_article(
        self, source: SourceDescriptor, article: ExtractedArticle, scopes: InvalidationScopes
    ) -> _ArticleOutcome:
        link = article.link
        if link and self.settings.recent_scrape_window_hours > 0:
            since = (utc_now() - timedelta(hours=self.settings.recent_scrape_window_hours)).isoformat()
            if self.persistence.find_recent_by_link(source.id, link, since) is not None:
                return _ArticleOutcome(status="duplicate")

        body = article.body or ""
        markup = article.markup
        candidate_title = clean_title(article.title)
        needs_page = not is_valid_title(candidate_title) or len(normalize_content(body)) < (
            self.settings.min_content_length
        )
        if needs_page and markup is None and link:
            try:
                markup = self._fetch_page(link)
            except Exception as exc:  # noqa: BLE001
                if not body.strip():
                    raise
                log_event(
                    self._logger,
                    logging.INFO,
                    "page_fetch_failed",
                    source_id=source.id,
                    link=link,
                    kind=error_kind(exc),
                    error=str(exc),
                )
            else:
                page_text = extract_readable_text(markup)
                if len(page_text) > len(body):
                    body = page_text

        title, title_source = self._resolve_title(candidate_title, markup, link, body)
        classification = self.classifier.classify(
            url=link,
            domain=source.domain,
            title=title,
            content=body,
            hint=source.category_hint,
        )
        check = self.detector.check_duplicate(title, body, domain=source.domain)
        if check.is_duplicate:
            return _ArticleOutcome(status="duplicate")

        record = ArticleRecord(
            source_id=source.id,
            domain=source.domain,
            title=title,
            title_source=title_source,
            body=body,
            cleaned_content=normalize_content(body),
            content_hash=check.fingerprint.digest if check.fingerprint else None,
            category=classification.category,
            category_method=classification.method,
            category_confidence=classification.confidence,
            scraped_at=utc_now_iso(),
            link=link,
            owner_id=source.owner_id,
            region=source.region_hint,
            summary=article.summary,
            author=article.author,
            published_at=article.published_at,
        )
        result = self.persistence.save(record)
        if result.status == "saved":
            scopes.add(owner_id=source.owner_id, domain=source.domain)
            return _ArticleOutcome(status="saved")
        if result.status == "conflict":
            return _ArticleOutcome(status="duplicate")
        return _ArticleOutcome(
            status="failed",
            error=_article_error(source, link, "persistence", result.error or "save failed"),
        )

    def _resolve_title(
        self, candidate: str, markup: str | None, link: str | None, body: str
    ) -> tuple[str, str]:
        if is_valid_title(candidate):
            return candidate, "extracted"
        if markup:
            resolution = self.titles.resolve(markup, url=link, content=body)
            title = getattr(resolution, "title", None)
            if title:
                return title, resolution.source
        chars = self.settings.fallback_title_chars
        fallback = fallback_title(body, link, chars)
        if not is_valid_title(fallback):
            fallback = fallback_title(None, link, chars)
        return fallback, "fallback"

    def _fetch_page(self, link: str) -> str:
        if self.cache is None:
            return self.fetcher.fetch(link)
        return self.cache.get_or_compute(scrape_key(link), lambda: self.fetcher.fetch(link))

    def _failed_source(self, source: SourceDescriptor, exc: Exception) -> SourceOutcome:
        kind = error_kind(exc)
        log_event(
            self._logger,
            logging.WARNING,
            "source_failed",
            source_id=source.id,
            kind=kind,
            error=str(exc),
        )
        return SourceOutcome(
            source_id=source.id,
            status="error",
            failed=1,
            error=str(exc),
            errors=[_article_error(source, source.target, kind, str(exc))],
        )

    def _record_run(self, source: SourceDescriptor, started_at: str, outcome: SourceOutcome) -> None:
        if self.run_recorder is None:
            return
        try:
            self.run_recorder(
                source.id,
                started_at,
                outcome.status,
                items_found=outcome.found,
                items_saved=outcome.succeeded,
                duplicates=outcome.duplicates,
                failed=outcome.failed,
                error=outcome.error,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.WARNING,
                "source_run_record_failed",
                source_id=source.id,
                error=str(exc),
            )


def _article_error(source: SourceDescriptor, link: str | None, kind: str, message: str) -> ArticleError:
    return ArticleError(source_id=source.id, link=link, kind=kind, message=message, at=utc_now_iso())


def register_batch_job(queue: JobQueue, orchestrator: BatchOrchestrator) -> None:
    def _handle(unit: dict[str, Any], context: UnitContext) -> dict[str, Any]:
        sources = [SourceDescriptor.from_dict(item) for item in unit.get("sources") or []]
        try:
            return orchestrator.run_batch(sources).to_dict()
        finally:
            orchestrator.release_thread()

    queue.register(BATCH_JOB_TYPE, _handle)


def enqueue_batch(
    queue: JobQueue,
    sources: Sequence[SourceDescriptor],
    options: JobOptions | None = None,
) -> JobRecord:
    """Submits the whole run as one unit; the batch enforces its own deadline."""
    options = options or JobOptions(
        attempts=1, backoff_seconds=queue.default_options.backoff_seconds, timeout_seconds=0
    )
    unit = {"sources": [source.to_dict() for source in sources]}
    return queue.enqueue(BATCH_JOB_TYPE, [unit], options)
