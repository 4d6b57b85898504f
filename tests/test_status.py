from __future__ import annotations

import json

import allure
from support import FakeClock

from pi_daemon.engine.context import DaemonContext
from pi_daemon.engine.models import WatcherConfig
from pi_daemon.engine.status import StatusWriter

pytestmark = [
    allure.epic("Daemon Runtime"),
    allure.feature("Status Snapshot"),
]


def test_save_writes_heartbeat_and_stats(context: DaemonContext, clock: FakeClock) -> None:
    writer = StatusWriter(context, pid=4242)
    writer.set_watchers([WatcherConfig(name="wf-inbox", pattern="inbox/*.md")])
    writer.set_running(True)
    writer.record_handler_run()
    writer.record_error()
    clock.advance(minutes=1)

    writer.save()
    saved = json.loads((context.state_dir / "status.json").read_text("utf-8"))

    assert saved["running"] is True
    assert saved["pid"] == 4242
    assert saved["started_at"] == "2026-06-15T12:00:00+00:00"
    assert saved["heartbeat"] == "2026-06-15T12:01:00+00:00"
    assert saved["stats"] == {"handlers_run": 1, "errors": 1}
    assert saved["watchers"] == [
        {"name": "wf-inbox", "pattern": "inbox/*.md", "enabled": True, "last_triggered": None},
    ]


def test_last_triggered_survives_watcher_rebuild(
    context: DaemonContext,
    clock: FakeClock,
) -> None:
    writer = StatusWriter(context, pid=1)
    watchers = [
        WatcherConfig(name="wf-inbox", pattern="inbox/*.md"),
        WatcherConfig(name="wf-docs", pattern="docs/*.md"),
    ]
    writer.set_watchers(watchers)
    clock.advance(seconds=30)

    writer.mark_triggered("wf-inbox")
    writer.set_watchers(watchers)
    snapshot = writer.snapshot()

    by_name = {item["name"]: item for item in snapshot["watchers"]}
    assert by_name["wf-inbox"]["last_triggered"] == "2026-06-15T12:00:30+00:00"
    assert by_name["wf-docs"]["last_triggered"] is None
