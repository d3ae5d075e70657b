import json
import logging
import os
import sys
from dataclasses import dataclass

from newsline.states import ArticleStatus
from newsline.tagger import normalize_tag, normalize_tags
from newsline.utils import configure_logging, error_summary, json_dumps, parse_iso, utc_now_iso


@dataclass
class _Sample:
    name: str


def test_json_dumps_handles_dataclasses_and_enums():
    payload = json.loads(json_dumps({"item": _Sample("x"), "status": ArticleStatus.EXTRACTED}))
    assert payload == {"item": {"name": "x"}, "status": "extracted"}


def test_error_summary_truncates():
    assert error_summary(ValueError("bad input")) == "ValueError: bad input"
    assert error_summary(RuntimeError()) == "RuntimeError"
    assert len(error_summary(ValueError("x" * 1000), limit=50)) == 50


def test_timestamps_sort_lexically():
    first = utc_now_iso()
    second = utc_now_iso()
    assert first <= second
    assert parse_iso(first).tzinfo is not None
    assert parse_iso("2026-01-02T03:04:05Z").hour == 3


def test_normalize_tags():
    assert normalize_tag("  Local Government ") == "local-government"
    assert normalize_tag("C++/Rust") == "c-rust"
    assert normalize_tags(["AI", "ai", "", "Machine Learning"]) == ["ai", "machine-learning"]


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("NL_LOG_LEVEL", "INFO")
    monkeypatch.setenv("NL_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("newsline.worker.extract")
        configure_logging("newsline.worker.extract")

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


def test_log_level_overrides(monkeypatch):
    monkeypatch.setenv("NL_LOG_LEVELS", "newsline.jobqueue=DEBUG")
    monkeypatch.delenv("NL_LOG_FILE", raising=False)
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    target = logging.getLogger("newsline.jobqueue")
    original = target.level
    try:
        configure_logging("newsline")
        assert target.level == logging.DEBUG
    finally:
        target.setLevel(original)
        root.handlers = original_handlers
