import logging
import os
import sys

from newsharvest.utils import configure_logging, log_event


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "logs" / "app.log"
    monkeypatch.setenv("NH_LOG_LEVEL", "INFO")
    monkeypatch.setenv("NH_LOG_FILE", str(log_file))
    monkeypatch.delenv("NH_LOG_LEVELS", raising=False)

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("newsharvest.worker")
        configure_logging("newsharvest.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stdout
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(str(log_file))
    finally:
        for handler in root.handlers:
            if handler not in original_handlers:
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_per_logger_level_overrides(monkeypatch):
    monkeypatch.setenv("NH_LOG_LEVELS", "newsharvest.cache=ERROR, bogus")
    monkeypatch.delenv("NH_LOG_FILE", raising=False)
    target = logging.getLogger("newsharvest.cache")
    original = target.level
    try:
        configure_logging("newsharvest")
        assert target.level == logging.ERROR
    finally:
        target.setLevel(original)


def test_log_event_formats_key_values(caplog):
    logger = logging.getLogger("newsharvest.test")
    with caplog.at_level(logging.INFO, logger="newsharvest.test"):
        log_event(logger, logging.INFO, "batch_finished", processed=4, failed=1)

    assert "event=batch_finished processed=4 failed=1" in caplog.text
