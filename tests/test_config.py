import os

import pytest

from newsharvest.config import (
    CONFIG_KEY,
    ConfigError,
    config_to_dict,
    get_runtime_config,
    load_config,
    load_effective_config,
    set_runtime_config,
    validate_runtime_config,
)
from newsharvest.storage import init_db, set_setting


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("NH_CONFIG", "NH_DATA_DIR", "NH_LLM_BASE_URL"):
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, text):
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_defaults_load_without_a_file():
    config = load_config()

    assert config.cache.backend == "database"
    assert config.cache.ttl_classes["scrape"] == 3600
    assert config.classification.min_confidence == 0.7
    assert config.dedupe.similarity_threshold == 0.85
    assert config.queue.breaker.failure_threshold == 5


def test_env_overrides_data_dir_and_llm_url(tmp_path, monkeypatch):
    monkeypatch.setenv("NH_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("NH_LLM_BASE_URL", "http://llm.local/v1")

    config = load_config()

    assert config.paths.data_dir == str(tmp_path)
    assert config.paths.state_db == os.path.join(str(tmp_path), "state.sqlite3")
    assert config.llm.base_url == "http://llm.local/v1"


def test_file_merges_over_defaults(tmp_path):
    path = _write(
        tmp_path,
        """
cache:
  backend: memory
  ttl_classes:
    scrape: 10
pipeline:
  fetch_concurrency: 2
""",
    )

    config = load_config(path)

    assert config.cache.backend == "memory"
    assert config.cache.ttl_classes == {"scrape": 10}
    assert config.cache.default_ttl_seconds == 300
    assert config.pipeline.fetch_concurrency == 2
    assert config.pipeline.article_concurrency == 3


def test_config_path_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("NH_CONFIG", _write(tmp_path, "queue:\n  backend: disabled\n"))

    assert load_config().queue.backend == "disabled"


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("cache:\n  colour: blue\n", "unknown config.cache.colour"),
        ("queue:\n  default_attempts: 2.5\n", "config.queue.default_attempts must be an integer"),
        ("cache:\n  backend: redis\n", "config.cache.backend must be one of"),
        ("classification:\n  min_confidence: 1.5\n", "min_confidence must be between 0 and 1"),
        ("pipeline:\n  fetch_concurrency: 0\n", "fetch_concurrency must be >= 1"),
        ("cache:\n  ttl_classes:\n    scrape: -1\n", "ttl_classes.scrape must be a positive integer"),
    ],
)
def test_invalid_values_are_rejected(tmp_path, text, message):
    with pytest.raises(ConfigError) as excinfo:
        load_config(_write(tmp_path, text))
    assert str(excinfo.value).startswith("Invalid config: ")
    assert message in str(excinfo.value)


def test_float_fields_accept_integers(tmp_path):
    config = load_config(_write(tmp_path, "queue:\n  default_backoff_seconds: 3\n"))
    assert config.queue.default_backoff_seconds == 3.0


def test_missing_file_and_bad_yaml(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yml"))
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "cache: [unclosed\n"))
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "- just\n- a list\n"))


def test_runtime_config_round_trip(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    cfg = get_runtime_config(conn)
    assert validate_runtime_config(cfg) == []

    cfg["dedupe"]["similarity_threshold"] = 0.9
    set_runtime_config(conn, cfg)
    assert get_runtime_config(conn)["dedupe"]["similarity_threshold"] == 0.9

    cfg["dedupe"]["similarity_threshold"] = "high"
    with pytest.raises(ConfigError):
        set_runtime_config(conn, cfg)


def test_effective_config_layers_stored_runtime_config(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    monkeypatch.setenv("NH_DATA_DIR", str(data_dir))
    path = _write(tmp_path, "pipeline:\n  article_concurrency: 4\n")
    assert load_effective_config(path).dedupe.similarity_threshold == 0.85

    conn = init_db(str(data_dir / "state.sqlite3"))
    try:
        stored = config_to_dict(load_config(path))
        stored["dedupe"]["similarity_threshold"] = 0.9
        stored["paths"]["state_db"] = str(tmp_path / "elsewhere.sqlite3")
        set_runtime_config(conn, stored)
    finally:
        conn.close()

    config = load_effective_config(path)
    assert config.dedupe.similarity_threshold == 0.9
    assert config.pipeline.article_concurrency == 4
    assert config.paths.state_db == str(data_dir / "state.sqlite3")


def test_partial_stored_config_keeps_file_values(tmp_path, monkeypatch):
    monkeypatch.setenv("NH_DATA_DIR", str(tmp_path))
    path = _write(tmp_path, "pipeline:\n  article_concurrency: 4\n")
    conn = init_db(str(tmp_path / "state.sqlite3"))
    try:
        set_setting(conn, CONFIG_KEY, {"queue": {"worker_concurrency": 3}})
    finally:
        conn.close()

    config = load_effective_config(path)
    assert config.queue.worker_concurrency == 3
    assert config.pipeline.article_concurrency == 4
    assert config.cache.purge_every_writes == 500

    conn = init_db(str(tmp_path / "state.sqlite3"))
    try:
        set_setting(conn, CONFIG_KEY, {"queue": {"worker_concurrency": 0}})
    finally:
        conn.close()
    with pytest.raises(ConfigError):
        load_effective_config(path)
