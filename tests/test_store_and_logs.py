from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import allure

from pi_daemon.engine.store import JsonFileStore, from_iso, to_iso, write_json_atomic
from pi_daemon.logs import configure_logging, tail_log

pytestmark = [
    allure.epic("Daemon Runtime"),
    allure.feature("State Files & Logging"),
]


def test_atomic_write_replaces_document_without_leftovers(tmp_path: Path) -> None:
    target = tmp_path / "state" / "queue.json"

    write_json_atomic(target, {"tasks": [1]})
    write_json_atomic(target, {"tasks": [1, 2]})

    assert json.loads(target.read_text("utf-8")) == {"tasks": [1, 2]}
    assert sorted(path.name for path in target.parent.iterdir()) == ["queue.json"]


def test_store_loads_default_for_missing_or_corrupt_documents(tmp_path: Path) -> None:
    store = JsonFileStore(tmp_path / "state")

    assert store.load("triggers", {"pending": []}) == {"pending": []}

    store.path("triggers").write_text("{truncated", "utf-8")
    assert store.load("triggers", {}) == {}

    store.save("triggers", {"pending": [], "last_processed": None})
    assert store.load("triggers", {}) == {"pending": [], "last_processed": None}


def test_iso_helpers_normalize_to_utc() -> None:
    local = datetime(2026, 6, 15, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert to_iso(local) == "2026-06-15T12:00:00+00:00"
    assert from_iso("2026-06-15T12:00:00Z") == datetime(2026, 6, 15, 12, 0, tzinfo=UTC)
    assert from_iso("2026-06-15T12:00:00").tzinfo is UTC


def test_configure_logging_writes_file_and_is_idempotent(tmp_path: Path) -> None:
    log_file = tmp_path / "state" / "daemon.log"

    configure_logging("debug", log_file)
    root = configure_logging("warn", log_file)
    logging.getLogger("pi_daemon.engine.queue").warning("Task failed: %s", "digest")

    daemon_handlers = [
        handler for handler in root.handlers if type(handler).__name__.startswith("_Daemon")
    ]
    assert len(daemon_handlers) == 2
    assert root.level == logging.WARNING
    for handler in daemon_handlers:
        handler.flush()
    content = log_file.read_text("utf-8")
    assert "[WARNING] pi_daemon.engine.queue: Task failed: digest" in content

    for handler in daemon_handlers:
        root.removeHandler(handler)
        handler.close()


def test_tail_log_returns_last_lines(tmp_path: Path) -> None:
    log_file = tmp_path / "daemon.log"
    log_file.write_text("".join(f"line {index}\n" for index in range(10)), "utf-8")

    assert tail_log(log_file, 3) == ["line 7", "line 8", "line 9"]
    assert tail_log(log_file, 0) == []
    assert tail_log(tmp_path / "missing.log", 5) == []
