from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from bs4 import BeautifulSoup

from .cascade import CascadeRunner, StrategyOutcome
from .models import TitleResolution, Unresolved
from .normalize import collapse_whitespace
from .ports import Completion
from .utils import log_event

GENERIC_TITLES = frozenset(
    {
        "inicio",
        "home",
        "página principal",
        "bienvenido",
        "welcome",
        "untitled",
        "sin título",
        "no title",
        "página de inicio",
        "homepage",
        "index",
        "default",
        "main page",
    }
)
TITLE_SEPARATORS = (" | ", " - ", " :: ", " — ", " – ", " » ")
SITE_NAME_SEPARATORS = (" | ", " - ", " :: ")
_ONLY_SYMBOLS = re.compile(r"^[\W\d\s]+$")


def extract_site_name(soup: BeautifulSoup) -> str | None:
    for attrs in ({"property": "og:site_name"}, {"name": "application-name"}):
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            return tag["content"].strip()
    title_tag = soup.find("title")
    text = title_tag.get_text() if title_tag else ""
    for sep in SITE_NAME_SEPARATORS:
        if sep in text:
            candidate = text.split(sep)[-1].strip()
            if 0 < len(candidate) < 50:
                return candidate
    return None


def clean_title(title: str | None, site_name: str | None = None) -> str:
    if not title:
        return ""
    cleaned = title.strip()
    site = (site_name or "").lower().strip()
    for sep in TITLE_SEPARATORS:
        if sep not in cleaned:
            continue
        parts = cleaned.split(sep)
        if site and parts[-1].lower().strip() == site:
            cleaned = sep.join(parts[:-1]).strip()
        elif site and parts[0].lower().strip() == site:
            cleaned = sep.join(parts[1:]).strip()
        else:
            cleaned = max(parts, key=len).strip()
        break
    return collapse_whitespace(cleaned)


def is_valid_title(
    title: str | None,
    site_name: str | None = None,
    *,
    min_length: int = 10,
    max_length: int = 200,
) -> bool:
    if not title or not isinstance(title, str):
        return False
    normalized = title.lower().strip()
    if len(normalized) < min_length or len(normalized) > max_length:
        return False
    if normalized in GENERIC_TITLES:
        return False
    if site_name and normalized == site_name.lower().strip():
        return False
    return not _ONLY_SYMBOLS.match(normalized)


def fallback_title(content: str | None, link: str | None = None, max_chars: int = 100) -> str:
    """First non-empty line of the content, truncated; the link when there is no content."""
    for line in (content or "").splitlines():
        line = collapse_whitespace(line)
        if line:
            if len(line) > max_chars:
                return line[: max_chars - 3].rstrip() + "..."
            return line
    return link or "Untitled"


@dataclass(frozen=True)
class _TitleSubject:
    soup: BeautifulSoup
    site_name: str | None
    content: str | None


class _MetaStrategy:
    def __init__(self, name: str, attrs: dict[str, str], confidence: float) -> None:
        self.name = name
        self.attrs = attrs
        self.confidence = confidence

    def attempt(self, subject: _TitleSubject) -> StrategyOutcome[str]:
        tag = subject.soup.find("meta", attrs=self.attrs)
        raw = (tag.get("content") or "").strip() if tag else ""
        if not raw:
            return StrategyOutcome(strategy=self.name, value=None)
        return StrategyOutcome(
            strategy=self.name, value=clean_title(raw, subject.site_name), confidence=self.confidence
        )


class _TagStrategy:
    def __init__(self, name: str, tag_name: str, confidence: float) -> None:
        self.name = name
        self.tag_name = tag_name
        self.confidence = confidence

    def attempt(self, subject: _TitleSubject) -> StrategyOutcome[str]:
        tag = subject.soup.find(self.tag_name)
        raw = tag.get_text().strip() if tag else ""
        if not raw:
            return StrategyOutcome(strategy=self.name, value=None)
        return StrategyOutcome(
            strategy=self.name, value=clean_title(raw, subject.site_name), confidence=self.confidence
        )


class _DescriptionStrategy:
    name = "description"
    confidence = 0.60

    def __init__(self, words: int) -> None:
        self.words = words

    def attempt(self, subject: _TitleSubject) -> StrategyOutcome[str]:
        tag = subject.soup.find("meta", attrs={"name": "description"})
        description = (tag.get("content") or "").strip() if tag else ""
        if len(description) <= 20:
            return StrategyOutcome(strategy=self.name, value=None)
        title = clean_title(" ".join(description.split()[: self.words]), subject.site_name)
        return StrategyOutcome(strategy=self.name, value=title or None, confidence=self.confidence)


class _AiStrategy:
    name = "ai"
    confidence = 0.70

    def __init__(self, completion: Completion, content_chars: int = 3000) -> None:
        self.completion = completion
        self.content_chars = content_chars

    def attempt(self, subject: _TitleSubject) -> StrategyOutcome[str]:
        if not subject.content or not subject.content.strip():
            return StrategyOutcome(strategy=self.name, value=None)
        reply = self.completion.generate_title(subject.content[: self.content_chars])
        title = clean_title(str(reply.get("title") or ""), subject.site_name)
        return StrategyOutcome(
            strategy=self.name, value=title or None, confidence=self.confidence
        )


class TitleResolver:
    """Resolves an article title from page markup, structural tags first, AI last."""

    def __init__(
        self,
        completion: Completion | None = None,
        *,
        min_length: int = 10,
        max_length: int = 200,
        description_words: int = 15,
        logger: logging.Logger | None = None,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        strategies: list[Any] = [
            _MetaStrategy("og:title", {"property": "og:title"}, 0.95),
            _MetaStrategy("twitter:title", {"name": "twitter:title"}, 0.90),
            _TagStrategy("title", "title", 0.85),
            _TagStrategy("h1", "h1", 0.80),
            _DescriptionStrategy(description_words),
        ]
        if completion is not None:
            strategies.append(_AiStrategy(completion))
        self._logger = logger or logging.getLogger("newsharvest.titles")
        self._runner = CascadeRunner(strategies, logger=self._logger)

    def resolve(
        self, markup: str | None, url: str | None = None, content: str | None = None
    ) -> TitleResolution | Unresolved:
        soup = BeautifulSoup(markup or "", "html.parser")
        site_name = extract_site_name(soup)
        subject = _TitleSubject(soup=soup, site_name=site_name, content=content)
        result = self._runner.run(
            subject,
            accept=lambda outcome: is_valid_title(
                outcome.value,
                site_name,
                min_length=self.min_length,
                max_length=self.max_length,
            ),
        )
        if result.selected is None:
            log_event(self._logger, logging.DEBUG, "title_unresolved", url=url, site_name=site_name)
            return Unresolved(site_name=site_name, attempted=result.attempted)
        return TitleResolution(
            title=str(result.selected.value),
            source=result.selected.strategy,
            confidence=result.selected.confidence,
            site_name=site_name,
            attempted=result.attempted,
        )
