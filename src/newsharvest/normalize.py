from __future__ import annotations

import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")
_STANDALONE_PUNCT = re.compile(r"(?:(?<=\s)|^)[^\w\s]+(?=\s|$)")
_NON_WORD = re.compile(r"[^\w\s]")


def normalize_content(text: str | None) -> str:
    if not text:
        return ""
    normalized = _WHITESPACE.sub(" ", text.casefold().strip())
    normalized = _STANDALONE_PUNCT.sub(" ", normalized)
    normalized = _NON_WORD.sub("", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def tokenize(text: str | None) -> set[str]:
    normalized = normalize_content(text)
    return set(normalized.split()) if normalized else set()


def normalize_label(value: str | None) -> str:
    """Lowercase ascii slug used for category names: "Medio Ambiente" -> "medio_ambiente"."""
    if not value:
        return ""
    ascii_text = (
        unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    )
    cleaned = re.sub(r"[^a-z0-9]+", "_", ascii_text.lower()).strip("_")
    return cleaned


def collapse_whitespace(text: str | None) -> str:
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text).strip()
