from __future__ import annotations

from typing import Any

import yaml

from ..config import ConfigError
from ..models import SourceDescriptor
from ..storage import get_last_source_run, list_sources, upsert_source


def load_sources_file(path: str) -> list[dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"sources file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = raw.get("sources")
    if not isinstance(raw, list):
        raise ConfigError("sources file must be a list or a mapping with a 'sources' list")
    sources: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"sources[{index}] must be a mapping")
        sources.append(item)
    return sources


def import_sources(conn: Any, path: str) -> list[SourceDescriptor]:
    imported: list[SourceDescriptor] = []
    for index, item in enumerate(load_sources_file(path)):
        try:
            imported.append(upsert_source(conn, item))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"sources[{index}]: {exc}") from exc
    return imported


def enabled_sources(conn: Any) -> list[SourceDescriptor]:
    return list_sources(conn, enabled_only=True)


def list_source_rows(conn: Any, include_disabled: bool = True) -> list[dict[str, Any]]:
    enabled_ids = {source.id for source in list_sources(conn, enabled_only=True)}
    rows = []
    for source in list_sources(conn, enabled_only=not include_disabled):
        data = source.to_dict()
        data["enabled"] = source.id in enabled_ids
        data["last_run"] = get_last_source_run(conn, source.id)
        rows.append(data)
    return rows
