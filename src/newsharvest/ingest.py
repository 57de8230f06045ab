from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin, urlsplit
from urllib.request import Request, urlopen

import feedparser
from bs4 import BeautifulSoup

from .errors import ExternalCallError, ValidationFailure
from .models import ExtractedArticle, SourceDescriptor
from .ports import Extractor
from .utils import extract_published_at, log_event

BOILERPLATE_TAGS = [
    "head", "script", "style", "nav", "footer", "header", "aside", "noscript", "form",
]
HEADLINE_CONTAINERS = ["article", "h2", "h3"]


class UrlPageFetcher:
    def __init__(
        self,
        *,
        timeout_seconds: int = 20,
        user_agent: str = "NewsHarvest/0.1",
        max_retries: int = 2,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._logger = logger or logging.getLogger("newsharvest.ingest")

    def fetch(self, url: str) -> str:
        headers = {"User-Agent": self.user_agent, "Accept": "text/html,application/xml;q=0.9,*/*;q=0.8"}
        attempt = 0
        while True:
            try:
                request = Request(url, headers=headers)
                with urlopen(request, timeout=self.timeout_seconds) as response:
                    charset = response.headers.get_content_charset() or "utf-8"
                    content = response.read()
                return content.decode(charset, errors="replace")
            except HTTPError as exc:
                log_event(self._logger, logging.WARNING, "fetch_http_error", url=url, status=exc.code)
                raise ExternalCallError(f"http_error {exc.code} for {url}") from exc
            except (URLError, TimeoutError) as exc:
                if attempt >= self.max_retries:
                    log_event(self._logger, logging.WARNING, "fetch_failed", url=url, error=str(exc))
                    raise ExternalCallError(f"network_error for {url}: {exc}") from exc
                attempt += 1
                self._sleep(self.backoff_seconds * attempt)


def extract_readable_text(html: str | None) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(BOILERPLATE_TAGS):
        tag.decompose()
    article = soup.find("article")
    if article:
        return _normalize_text(article.get_text(" ", strip=True))
    best = None
    best_len = 0
    for div in soup.find_all("div"):
        text = div.get_text(" ", strip=True)
        if len(text) > best_len:
            best_len = len(text)
            best = text
    if best:
        return _normalize_text(best)
    return _normalize_text(soup.get_text(" ", strip=True))


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _html_to_text(value: str | None) -> str:
    if not value:
        return ""
    return _normalize_text(BeautifulSoup(value, "html.parser").get_text(" ", strip=True))


class FeedExtractor:
    """RSS/Atom entries via feedparser."""

    def extract(self, markup: str, source: SourceDescriptor) -> list[ExtractedArticle]:
        parsed = feedparser.parse(markup)
        articles: list[ExtractedArticle] = []
        for entry in parsed.entries:
            link = entry.get("link") or entry.get("id")
            title = _normalize_text(entry.get("title") or "")
            if not link and not title:
                continue
            summary = _html_to_text(entry.get("summary") or entry.get("description"))
            body = _entry_body(entry) or summary
            articles.append(
                ExtractedArticle(
                    title=title,
                    body=body,
                    link=link,
                    author=entry.get("author"),
                    published_at=extract_published_at(entry),
                    summary=summary or None,
                )
            )
        return articles


def _entry_body(entry: Any) -> str:
    content = entry.get("content") or []
    parts = [_html_to_text(item.get("value")) for item in content if item.get("value")]
    return " ".join(part for part in parts if part)


class HtmlListingExtractor:
    """Headline links from a section or front page."""

    def extract(self, markup: str, source: SourceDescriptor) -> list[ExtractedArticle]:
        soup = BeautifulSoup(markup or "", "html.parser")
        base_host = urlsplit(source.target).netloc
        seen: set[str] = set()
        articles: list[ExtractedArticle] = []
        for container in soup.find_all(HEADLINE_CONTAINERS):
            anchor = container if container.name == "a" else container.find("a", href=True)
            if anchor is None or not anchor.get("href"):
                continue
            link = urljoin(source.target, anchor["href"].strip())
            parts = urlsplit(link)
            if parts.scheme not in ("http", "https") or link in seen:
                continue
            if base_host and parts.netloc and parts.netloc != base_host:
                continue
            title = _normalize_text(anchor.get_text(" ", strip=True))
            if not title:
                heading = container.find(["h2", "h3"])
                title = _normalize_text(heading.get_text(" ", strip=True)) if heading else ""
            summary_tag = container.find("p") if container.name == "article" else None
            summary = _normalize_text(summary_tag.get_text(" ", strip=True)) if summary_tag else ""
            seen.add(link)
            articles.append(
                ExtractedArticle(title=title, body="", link=link, summary=summary or None)
            )
        return articles


class SourceKindExtractor:
    def __init__(self, extractors: dict[str, Extractor] | None = None) -> None:
        self.extractors: dict[str, Extractor] = extractors or {
            "rss": FeedExtractor(),
            "html": HtmlListingExtractor(),
        }

    def extract(self, markup: str, source: SourceDescriptor) -> list[ExtractedArticle]:
        extractor = self.extractors.get(source.kind)
        if extractor is None:
            raise ValidationFailure(f"no extractor for source kind {source.kind!r}")
        return extractor.extract(markup, source)
