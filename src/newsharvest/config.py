from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from typing import Any

import yaml

from .db import connect_db
from .errors import FatalConfigurationError
from .storage import get_setting, set_setting


class ConfigError(FatalConfigurationError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str
    sources_file: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: float


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int
    cooldown_seconds: float


@dataclass(frozen=True)
class CacheConfig:
    backend: str
    default_ttl_seconds: int
    ttl_classes: dict[str, int]
    stats_reset_operations: int
    stats_reset_interval_seconds: int
    writer_threads: int
    purge_every_writes: int
    breaker: BreakerConfig


@dataclass(frozen=True)
class QueueConfig:
    backend: str
    worker_concurrency: int
    poll_interval_seconds: float
    lock_timeout_seconds: int
    default_attempts: int
    default_backoff_seconds: float
    default_timeout_seconds: float
    breaker: BreakerConfig


@dataclass(frozen=True)
class PipelineConfig:
    fetch_concurrency: int
    article_concurrency: int
    article_timeout_seconds: float
    batch_timeout_seconds: float
    recent_scrape_window_hours: int
    max_items_per_source: int


@dataclass(frozen=True)
class ClassificationConfig:
    min_confidence: float
    ai_enabled: bool


@dataclass(frozen=True)
class DedupeConfig:
    enabled: bool
    min_content_length: int
    similarity_threshold: float
    time_window_hours: int
    candidate_limit: int
    title_prefix_chars: int


@dataclass(frozen=True)
class TitlesConfig:
    min_length: int
    max_length: int
    description_words: int
    fallback_chars: int


@dataclass(frozen=True)
class LlmConfig:
    enabled: bool
    base_url: str
    model: str
    timeout_seconds: int
    min_interval_seconds: float
    temperature: float
    max_tokens: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    cache: CacheConfig
    queue: QueueConfig
    pipeline: PipelineConfig
    classification: ClassificationConfig
    dedupe: DedupeConfig
    titles: TitlesConfig
    llm: LlmConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "NewsHarvest",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
        "sources_file": "/config/sources.yml",
    },
    "http": {
        "timeout_seconds": 20,
        "user_agent": "NewsHarvest/0.1",
        "max_retries": 2,
        "backoff_seconds": 2.0,
    },
    "cache": {
        "backend": "database",
        "default_ttl_seconds": 300,
        "ttl_classes": {
            "scrape": 3600,
            "config": 600,
            "token": 300,
            "static": 86400,
            "search": 1800,
            "stats": 300,
            "user": 600,
        },
        "stats_reset_operations": 1_000_000,
        "stats_reset_interval_seconds": 3600,
        "writer_threads": 2,
        "purge_every_writes": 500,
        "breaker": {
            "failure_threshold": 10,
            "cooldown_seconds": 60.0,
        },
    },
    "queue": {
        "backend": "database",
        "worker_concurrency": 3,
        "poll_interval_seconds": 5.0,
        "lock_timeout_seconds": 3600,
        "default_attempts": 3,
        "default_backoff_seconds": 2.0,
        "default_timeout_seconds": 300.0,
        "breaker": {
            "failure_threshold": 5,
            "cooldown_seconds": 60.0,
        },
    },
    "pipeline": {
        "fetch_concurrency": 5,
        "article_concurrency": 3,
        "article_timeout_seconds": 60.0,
        "batch_timeout_seconds": 1800.0,
        "recent_scrape_window_hours": 24,
        "max_items_per_source": 0,
    },
    "classification": {
        "min_confidence": 0.7,
        "ai_enabled": True,
    },
    "dedupe": {
        "enabled": True,
        "min_content_length": 50,
        "similarity_threshold": 0.85,
        "time_window_hours": 72,
        "candidate_limit": 10,
        "title_prefix_chars": 50,
    },
    "titles": {
        "min_length": 10,
        "max_length": 200,
        "description_words": 15,
        "fallback_chars": 100,
    },
    "llm": {
        "enabled": False,
        "base_url": "",
        "model": "gpt-4o-mini",
        "timeout_seconds": 30,
        "min_interval_seconds": 1.0,
        "temperature": 0.2,
        "max_tokens": 300,
    },
}

CONFIG_KEY = "config.runtime"
CACHE_BACKENDS = ("database", "memory", "disabled")
QUEUE_BACKENDS = ("database", "memory", "disabled")


def get_state_db_path() -> str:
    data_dir = os.environ.get("NH_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def load_config(path: str | None = None) -> Config:
    return _build_config(load_config_dict(path))


def load_config_dict(path: str | None = None) -> dict[str, Any]:
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = path or os.environ.get("NH_CONFIG")
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a mapping")
        cfg = _deep_merge(cfg, raw)
    _apply_env_overrides(cfg)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return cfg


def load_effective_config(path: str | None = None) -> Config:
    """File config with the stored runtime config, when one has been saved, merged over it.

    ``paths`` always come from the file and environment, since they locate the
    database the stored config lives in.
    """
    cfg = load_config_dict(path)
    conn = connect_db(cfg["paths"]["state_db"])
    try:
        merged = get_runtime_config(conn, cfg)
    finally:
        conn.close()
    merged["paths"] = cfg["paths"]
    _apply_env_overrides(merged)
    errors = validate_runtime_config(merged)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return _build_config(merged)


def config_to_dict(config: Config) -> dict[str, Any]:
    return _deep_copy(asdict(config))


def get_runtime_config(conn, fallback: dict[str, Any] | None = None) -> dict[str, Any]:
    """The stored runtime config merged over ``fallback`` (defaults when omitted)."""
    base = _deep_copy(fallback if fallback is not None else DEFAULT_CONFIG)
    stored = get_setting(conn, CONFIG_KEY, None)
    if stored is None:
        return base
    if not isinstance(stored, dict):
        raise ConfigError("config.runtime must be a JSON object")
    cfg = _deep_merge(base, stored)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    if cfg["cache"]["backend"] not in CACHE_BACKENDS:
        errors.append(f"config.cache.backend must be one of {', '.join(CACHE_BACKENDS)}")
    if cfg["queue"]["backend"] not in QUEUE_BACKENDS:
        errors.append(f"config.queue.backend must be one of {', '.join(QUEUE_BACKENDS)}")
    for path, value in (
        ("config.pipeline.fetch_concurrency", cfg["pipeline"]["fetch_concurrency"]),
        ("config.pipeline.article_concurrency", cfg["pipeline"]["article_concurrency"]),
        ("config.queue.worker_concurrency", cfg["queue"]["worker_concurrency"]),
        ("config.cache.breaker.failure_threshold", cfg["cache"]["breaker"]["failure_threshold"]),
        ("config.queue.breaker.failure_threshold", cfg["queue"]["breaker"]["failure_threshold"]),
        ("config.cache.writer_threads", cfg["cache"]["writer_threads"]),
        ("config.cache.purge_every_writes", cfg["cache"]["purge_every_writes"]),
    ):
        if value < 1:
            errors.append(f"{path} must be >= 1")
    for path, value in (
        ("config.classification.min_confidence", cfg["classification"]["min_confidence"]),
        ("config.dedupe.similarity_threshold", cfg["dedupe"]["similarity_threshold"]),
    ):
        if not 0.0 <= float(value) <= 1.0:
            errors.append(f"{path} must be between 0 and 1")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if path == "config.cache.ttl_classes":
        _validate_ttl_classes(value, path, errors)
        return
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_ttl_classes(value: Any, path: str, errors: list[str]) -> None:
    # Open-ended mapping: any prefix may carry its own TTL.
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key, ttl in value.items():
        if not isinstance(key, str) or not key:
            errors.append(f"{path} keys must be non-empty strings")
            continue
        if not isinstance(ttl, int) or isinstance(ttl, bool) or ttl <= 0:
            errors.append(f"{path}.{key} must be a positive integer")


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    data_dir = os.environ.get("NH_DATA_DIR")
    if data_dir:
        cfg["paths"]["data_dir"] = data_dir
        cfg["paths"]["state_db"] = os.path.join(data_dir, "state.sqlite3")
    base_url = os.environ.get("NH_LLM_BASE_URL")
    if base_url:
        cfg["llm"]["base_url"] = base_url


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict) and key != "ttl_classes":
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_breaker(cfg: dict[str, Any]) -> BreakerConfig:
    return BreakerConfig(
        failure_threshold=int(cfg.get("failure_threshold")),
        cooldown_seconds=float(cfg.get("cooldown_seconds")),
    )


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    http_cfg = cfg.get("http") or {}
    cache_cfg = cfg.get("cache") or {}
    queue_cfg = cfg.get("queue") or {}
    pipeline_cfg = cfg.get("pipeline") or {}
    classification_cfg = cfg.get("classification") or {}
    dedupe_cfg = cfg.get("dedupe") or {}
    titles_cfg = cfg.get("titles") or {}
    llm_cfg = cfg.get("llm") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        state_db=str(paths_cfg.get("state_db")),
        sources_file=str(paths_cfg.get("sources_file")),
    )

    http = HttpConfig(
        timeout_seconds=int(http_cfg.get("timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
        max_retries=int(http_cfg.get("max_retries")),
        backoff_seconds=float(http_cfg.get("backoff_seconds")),
    )

    cache = CacheConfig(
        backend=str(cache_cfg.get("backend")),
        default_ttl_seconds=int(cache_cfg.get("default_ttl_seconds")),
        ttl_classes={str(k): int(v) for k, v in (cache_cfg.get("ttl_classes") or {}).items()},
        stats_reset_operations=int(cache_cfg.get("stats_reset_operations")),
        stats_reset_interval_seconds=int(cache_cfg.get("stats_reset_interval_seconds")),
        writer_threads=int(cache_cfg.get("writer_threads")),
        purge_every_writes=int(cache_cfg.get("purge_every_writes")),
        breaker=_build_breaker(cache_cfg.get("breaker") or {}),
    )

    queue = QueueConfig(
        backend=str(queue_cfg.get("backend")),
        worker_concurrency=int(queue_cfg.get("worker_concurrency")),
        poll_interval_seconds=float(queue_cfg.get("poll_interval_seconds")),
        lock_timeout_seconds=int(queue_cfg.get("lock_timeout_seconds")),
        default_attempts=int(queue_cfg.get("default_attempts")),
        default_backoff_seconds=float(queue_cfg.get("default_backoff_seconds")),
        default_timeout_seconds=float(queue_cfg.get("default_timeout_seconds")),
        breaker=_build_breaker(queue_cfg.get("breaker") or {}),
    )

    pipeline = PipelineConfig(
        fetch_concurrency=int(pipeline_cfg.get("fetch_concurrency")),
        article_concurrency=int(pipeline_cfg.get("article_concurrency")),
        article_timeout_seconds=float(pipeline_cfg.get("article_timeout_seconds")),
        batch_timeout_seconds=float(pipeline_cfg.get("batch_timeout_seconds")),
        recent_scrape_window_hours=int(pipeline_cfg.get("recent_scrape_window_hours")),
        max_items_per_source=int(pipeline_cfg.get("max_items_per_source")),
    )

    classification = ClassificationConfig(
        min_confidence=float(classification_cfg.get("min_confidence")),
        ai_enabled=bool(classification_cfg.get("ai_enabled")),
    )

    dedupe = DedupeConfig(
        enabled=bool(dedupe_cfg.get("enabled")),
        min_content_length=int(dedupe_cfg.get("min_content_length")),
        similarity_threshold=float(dedupe_cfg.get("similarity_threshold")),
        time_window_hours=int(dedupe_cfg.get("time_window_hours")),
        candidate_limit=int(dedupe_cfg.get("candidate_limit")),
        title_prefix_chars=int(dedupe_cfg.get("title_prefix_chars")),
    )

    titles = TitlesConfig(
        min_length=int(titles_cfg.get("min_length")),
        max_length=int(titles_cfg.get("max_length")),
        description_words=int(titles_cfg.get("description_words")),
        fallback_chars=int(titles_cfg.get("fallback_chars")),
    )

    llm = LlmConfig(
        enabled=bool(llm_cfg.get("enabled")),
        base_url=str(llm_cfg.get("base_url")),
        model=str(llm_cfg.get("model")),
        timeout_seconds=int(llm_cfg.get("timeout_seconds")),
        min_interval_seconds=float(llm_cfg.get("min_interval_seconds")),
        temperature=float(llm_cfg.get("temperature")),
        max_tokens=int(llm_cfg.get("max_tokens")),
    )

    return Config(
        app=app,
        paths=paths,
        http=http,
        cache=cache,
        queue=queue,
        pipeline=pipeline,
        classification=classification,
        dedupe=dedupe,
        titles=titles,
        llm=llm,
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
