from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.request
from typing import Any, Callable

import jsonschema

from ..errors import ExternalCallError
from ..utils import log_event

DEFAULT_BASE_URL = "https://api.openai.com/v1"

CLASSIFY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["category"],
    "properties": {
        "category": {"type": "string", "minLength": 1},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
}

TITLE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "summary": {"type": ["string", "null"]},
    },
}

CLASSIFY_SYSTEM_PROMPT = (
    "You are a news desk editor. Answer with a single JSON object and nothing else."
)
TITLE_SYSTEM_PROMPT = (
    "You write headlines for news articles. Answer with a single JSON object "
    'of the form {"title": "...", "summary": "..."} and nothing else. '
    "The title must be factual and at most 120 characters; the summary at most two sentences."
)
REPAIR_SUFFIX = "\n\nReturn valid JSON only. Fix schema violations."

Transport = Callable[[str, str, dict[str, str], "dict[str, Any] | None", float], dict[str, Any]]

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class OpenAICompatibleCompletion:
    """Chat-completions client that returns schema-checked JSON replies."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        timeout_seconds: float = 30,
        temperature: float = 0.2,
        max_tokens: int = 300,
        transport: Transport | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url or DEFAULT_BASE_URL
        self.model = model
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport or _http_request
        self._logger = logger or logging.getLogger("newsharvest.llm")

    def classify(self, prompt: str) -> dict[str, Any]:
        return self._call_json("classify", CLASSIFY_SYSTEM_PROMPT, prompt, CLASSIFY_SCHEMA)

    def generate_title(self, content: str) -> dict[str, Any]:
        return self._call_json("generate_title", TITLE_SYSTEM_PROMPT, content, TITLE_SCHEMA)

    def _call_json(
        self, operation: str, system: str, user: str, schema: dict[str, Any]
    ) -> dict[str, Any]:
        raw = self._chat(system, user)
        parsed = _maybe_parse_json(raw)
        validation = _validate_json(schema, parsed)
        if not validation["ok"]:
            log_event(
                self._logger,
                logging.INFO,
                "llm_schema_repair",
                operation=operation,
                error=validation["error"],
            )
            raw = self._chat(system, user + REPAIR_SUFFIX)
            parsed = _maybe_parse_json(raw)
            validation = _validate_json(schema, parsed)
        if not validation["ok"]:
            raise ExternalCallError(f"llm_schema_invalid {operation}: {validation['error']}")
        return parsed

    def _chat(self, system: str, user: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        url = self.base_url.rstrip("/") + "/chat/completions"
        try:
            response = self._transport("POST", url, headers, payload, self.timeout_seconds)
        except ExternalCallError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ExternalCallError(f"llm_request_failed: {exc}") from exc
        return _read_openai(response)


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: float,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise ExternalCallError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise ExternalCallError(f"network_error: {exc}") from exc
    except TimeoutError as exc:
        raise ExternalCallError(f"timeout: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise ExternalCallError("openai_missing_choices")
    return choices[0].get("message", {}).get("content") or ""


def _maybe_parse_json(raw: str) -> Any:
    text = _FENCE.sub("", raw.strip())
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return raw


def _validate_json(schema: dict[str, Any], payload: Any) -> dict[str, Any]:
    try:
        jsonschema.validate(payload, schema)
        return {"ok": True}
    except jsonschema.ValidationError as exc:
        return {"ok": False, "error": exc.message}
