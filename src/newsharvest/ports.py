from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .models import ArticleRecord, ExtractedArticle, SaveResult, SourceDescriptor, StoredArticle


@runtime_checkable
class PageFetcher(Protocol):
    def fetch(self, url: str) -> str: ...


@runtime_checkable
class Extractor(Protocol):
    def extract(self, markup: str, source: SourceDescriptor) -> list[ExtractedArticle]: ...


@runtime_checkable
class Persistence(Protocol):
    def save(self, record: ArticleRecord) -> SaveResult: ...

    def find_by_fingerprint(
        self, digest: str, domain: str | None, since: str | None
    ) -> StoredArticle | None: ...

    def find_candidates_by_title_prefix(
        self, prefix: str, domain: str | None, since: str | None, limit: int
    ) -> list[StoredArticle]: ...

    def find_recent_by_link(
        self, source_id: str, link: str, since: str
    ) -> StoredArticle | None: ...


@runtime_checkable
class Completion(Protocol):
    def classify(self, prompt: str) -> dict[str, Any]: ...

    def generate_title(self, content: str) -> dict[str, Any]: ...
