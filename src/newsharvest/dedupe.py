from __future__ import annotations

import hashlib
import logging
import threading
from datetime import timedelta
from typing import Any

from .models import ContentFingerprint, DuplicateCheck
from .normalize import normalize_content, tokenize
from .ports import Persistence
from .utils import log_event, utc_now

MIN_CONTENT_LENGTH = 50


def fingerprint(content: str | None, min_length: int = MIN_CONTENT_LENGTH) -> ContentFingerprint | None:
    normalized = normalize_content(content)
    if len(normalized) < min_length:
        return None
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return ContentFingerprint(digest=digest, length=len(normalized))


def token_similarity(left: str | None, right: str | None) -> float:
    left_tokens = tokenize(left)
    right_tokens = tokenize(right)
    if not left_tokens or not right_tokens:
        return 0.0
    union = left_tokens | right_tokens
    return len(left_tokens & right_tokens) / len(union)


class DuplicateDetector:
    def __init__(
        self,
        persistence: Persistence,
        *,
        min_content_length: int = MIN_CONTENT_LENGTH,
        similarity_threshold: float = 0.85,
        time_window_hours: int = 72,
        candidate_limit: int = 10,
        title_prefix_chars: int = 50,
        enabled: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.persistence = persistence
        self.min_content_length = min_content_length
        self.similarity_threshold = similarity_threshold
        self.time_window_hours = time_window_hours
        self.candidate_limit = candidate_limit
        self.title_prefix_chars = title_prefix_chars
        self.enabled = enabled
        self._logger = logger or logging.getLogger("newsharvest.dedupe")
        self._lock = threading.Lock()
        self._stats = _empty_stats()

    def check_duplicate(
        self,
        title: str,
        content: str,
        domain: str | None = None,
        time_window_hours: int | None = None,
    ) -> DuplicateCheck:
        fp = fingerprint(content, self.min_content_length)
        self._bump("checked")
        if not self.enabled or fp is None:
            return DuplicateCheck(is_duplicate=False, fingerprint=fp)
        window = self.time_window_hours if time_window_hours is None else time_window_hours
        since = (utc_now() - timedelta(hours=window)).isoformat() if window else None
        try:
            match = self.persistence.find_by_fingerprint(fp.digest, domain, since)
            if match is not None:
                self._bump("duplicates_found", "hash_matches")
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "duplicate_hash_match",
                    domain=domain,
                    article_id=match.id,
                )
                return DuplicateCheck(
                    is_duplicate=True, fingerprint=fp, matched=match, method="hash", similarity=1.0
                )
            near = self._near_duplicate(title, content, domain, since)
        except Exception as exc:  # noqa: BLE001
            self._bump("errors")
            log_event(self._logger, logging.WARNING, "duplicate_check_failed", domain=domain, error=str(exc))
            return DuplicateCheck(is_duplicate=False, fingerprint=fp)
        if near is not None:
            match, score = near
            self._bump("duplicates_found", "similarity_matches")
            return DuplicateCheck(
                is_duplicate=True,
                fingerprint=fp,
                matched=match,
                method="similarity",
                similarity=round(score, 4),
            )
        return DuplicateCheck(is_duplicate=False, fingerprint=fp)

    def _near_duplicate(self, title: str, content: str, domain: str | None, since: str | None):
        prefix = (title or "").strip()[: self.title_prefix_chars]
        if len(prefix) < 10:
            return None
        candidates = self.persistence.find_candidates_by_title_prefix(
            prefix, domain, since, self.candidate_limit
        )
        best = None
        for candidate in candidates:
            score = token_similarity(content, candidate.cleaned_content)
            if score >= self.similarity_threshold and (best is None or score > best[1]):
                best = (candidate, score)
        return best

    def stats(self) -> dict[str, Any]:
        with self._lock:
            data: dict[str, Any] = dict(self._stats)
        checked = data["checked"]
        data["duplicate_rate"] = round(data["duplicates_found"] / checked, 4) if checked else 0.0
        return data

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = _empty_stats()

    def _bump(self, *fields: str) -> None:
        with self._lock:
            for name in fields:
                self._stats[name] += 1


def _empty_stats() -> dict[str, int]:
    return {
        "checked": 0,
        "duplicates_found": 0,
        "hash_matches": 0,
        "similarity_matches": 0,
        "errors": 0,
    }
