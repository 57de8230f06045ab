from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class SourceDescriptor:
    id: str
    target: str
    name: str = ""
    domain: str = ""
    owner_id: str | None = None
    kind: str = "html"
    max_items: int = 0
    region_hint: str | None = None
    category_hint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SourceDescriptor":
        return cls(
            id=str(data["id"]),
            target=str(data["target"]),
            name=str(data.get("name") or ""),
            domain=str(data.get("domain") or ""),
            owner_id=data.get("owner_id"),
            kind=str(data.get("kind") or "html"),
            max_items=int(data.get("max_items") or 0),
            region_hint=data.get("region_hint"),
            category_hint=data.get("category_hint"),
        )


@dataclass(frozen=True)
class ExtractedArticle:
    title: str
    body: str
    link: str | None
    author: str | None = None
    published_at: str | None = None
    summary: str | None = None
    markup: str | None = None


@dataclass(frozen=True)
class ContentFingerprint:
    digest: str
    length: int


@dataclass(frozen=True)
class ClassificationResult:
    category: str
    confidence: float
    method: str
    attempted: tuple[str, ...] = ()


@dataclass(frozen=True)
class TitleResolution:
    title: str
    source: str
    confidence: float
    site_name: str | None = None
    attempted: tuple[str, ...] = ()


@dataclass(frozen=True)
class Unresolved:
    site_name: str | None = None
    attempted: tuple[str, ...] = ()


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff_seconds: float = 2.0
    timeout_seconds: float = 300.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, defaults: "JobOptions | None" = None) -> "JobOptions":
        base = defaults or cls()
        data = data or {}
        return cls(
            attempts=max(1, int(data.get("attempts", base.attempts))),
            backoff_seconds=float(data.get("backoff_seconds", base.backoff_seconds)),
            timeout_seconds=float(data.get("timeout_seconds", base.timeout_seconds)),
        )


@dataclass(frozen=True)
class JobRecord:
    id: str
    job_type: str
    state: JobState
    payload: dict[str, Any]
    requested_at: str
    progress: int = 0
    progress_detail: str | None = None
    attempts: int = 0
    last_error: str | None = None
    result: dict[str, Any] | None = None
    executed_synchronously: bool = False
    started_at: str | None = None
    finished_at: str | None = None
    locked_by: str | None = None
    cancel_requested: bool = False

    @property
    def units(self) -> list[dict[str, Any]]:
        return list(self.payload.get("units") or [])

    @property
    def options(self) -> JobOptions:
        return JobOptions.from_dict(self.payload.get("options"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "state": self.state.value,
            "progress": self.progress,
            "progress_detail": self.progress_detail,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "result": self.result,
            "executed_synchronously": self.executed_synchronously,
            "requested_at": self.requested_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "cancel_requested": self.cancel_requested,
        }


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: str
    ttl_seconds: int
    ttl_class: str


@dataclass(frozen=True)
class BreakerStatus:
    state: str
    failures: int
    threshold: int
    cooldown_seconds: float
    last_failure_at: float | None = None
    opened_until: float | None = None
    probe_in_flight: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StoredArticle:
    id: int
    source_id: str
    domain: str
    title: str
    link: str | None
    content_hash: str | None
    cleaned_content: str | None
    category: str | None
    scraped_at: str


@dataclass(frozen=True)
class ArticleRecord:
    source_id: str
    domain: str
    title: str
    title_source: str
    body: str
    cleaned_content: str
    content_hash: str | None
    category: str
    category_method: str
    category_confidence: float
    scraped_at: str
    link: str | None = None
    owner_id: str | None = None
    region: str | None = None
    summary: str | None = None
    author: str | None = None
    published_at: str | None = None


@dataclass(frozen=True)
class SaveResult:
    status: str
    article_id: int | None = None
    error: str | None = None

    @property
    def saved(self) -> bool:
        return self.status == "saved"


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    fingerprint: ContentFingerprint | None = None
    matched: StoredArticle | None = None
    method: str | None = None
    similarity: float | None = None


@dataclass(frozen=True)
class ArticleError:
    source_id: str
    link: str | None
    kind: str
    message: str
    at: str


@dataclass(frozen=True)
class BatchRunStats:
    started_at: str
    finished_at: str
    duration_seconds: float
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    duplicates: int = 0
    sources_total: int = 0
    sources_failed: int = 0
    sources_skipped: int = 0
    invalidated_keys: int = 0
    timed_out: bool = False
    errors: tuple[ArticleError, ...] = field(default_factory=tuple)

    @property
    def success_rate(self) -> float:
        if not self.processed:
            return 0.0
        return round(self.succeeded / self.processed, 4)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["errors"] = [asdict(error) for error in self.errors]
        data["success_rate"] = self.success_rate
        return data
