from __future__ import annotations

import logging

from .db import ThreadLocalConnections
from .models import ArticleRecord, SaveResult, StoredArticle
from .storage import (
    find_article_by_hash,
    find_articles_by_title,
    find_recent_article_by_link,
    insert_article,
    record_source_run,
)
from .utils import log_event


class DatabasePersistence:
    """Article persistence over the ``articles`` table, one connection per thread."""

    def __init__(self, connections: ThreadLocalConnections, logger: logging.Logger | None = None) -> None:
        self.connections = connections
        self._logger = logger or logging.getLogger("newsharvest.persistence")

    def save(self, record: ArticleRecord) -> SaveResult:
        try:
            result = insert_article(self.connections.get(), record)
        except Exception as exc:  # noqa: BLE001
            self.connections.discard()
            log_event(
                self._logger,
                logging.ERROR,
                "article_save_failed",
                source_id=record.source_id,
                link=record.link,
                error=str(exc),
            )
            return SaveResult(status="error", error=str(exc))
        if result.status == "conflict":
            log_event(
                self._logger,
                logging.DEBUG,
                "article_save_conflict",
                source_id=record.source_id,
                link=record.link,
            )
        return result

    def find_by_fingerprint(
        self, digest: str, domain: str | None, since: str | None
    ) -> StoredArticle | None:
        return find_article_by_hash(self.connections.get(), digest, domain, since)

    def find_candidates_by_title_prefix(
        self, prefix: str, domain: str | None, since: str | None, limit: int
    ) -> list[StoredArticle]:
        return find_articles_by_title(self.connections.get(), prefix, domain, since, limit)

    def find_recent_by_link(self, source_id: str, link: str, since: str) -> StoredArticle | None:
        return find_recent_article_by_link(self.connections.get(), source_id, link, since)

    def record_source_run(
        self,
        source_id: str,
        started_at: str,
        status: str,
        *,
        items_found: int = 0,
        items_saved: int = 0,
        duplicates: int = 0,
        failed: int = 0,
        error: str | None = None,
    ) -> None:
        record_source_run(
            self.connections.get(),
            source_id,
            started_at,
            status,
            items_found=items_found,
            items_saved=items_saved,
            duplicates=duplicates,
            failed=failed,
            error=error,
        )
