"""Heartbeat status snapshot persisted to ``status.json``."""

from __future__ import annotations

import os
from typing import Any

from pi_daemon.engine.context import DaemonContext
from pi_daemon.engine.models import DaemonStatus, WatcherConfig, WatcherSummary
from pi_daemon.engine.store import to_iso

STATUS_DOCUMENT = "status"


class StatusWriter:
    """Owns the in-memory ``DaemonStatus`` and rewrites it atomically."""

    def __init__(self, context: DaemonContext, *, pid: int | None = None) -> None:
        self.context = context
        started_at = to_iso(context.now())
        self.status = DaemonStatus(
            pid=pid if pid is not None else os.getpid(),
            started_at=started_at,
            heartbeat=started_at,
        )

    def set_watchers(self, configs: list[WatcherConfig]) -> None:
        previous = {summary.name: summary.last_triggered for summary in self.status.watchers}
        self.status.watchers = [
            WatcherSummary(
                name=config.name,
                pattern=config.pattern,
                enabled=True,
                last_triggered=previous.get(config.name),
            )
            for config in configs
        ]

    def mark_triggered(self, watcher: str) -> None:
        for summary in self.status.watchers:
            if summary.name == watcher:
                summary.last_triggered = to_iso(self.context.now())

    def record_handler_run(self) -> None:
        self.status.stats.handlers_run += 1

    def record_error(self) -> None:
        self.status.stats.errors += 1

    def set_running(self, running: bool) -> None:
        self.status.running = running

    def snapshot(self) -> dict[str, Any]:
        return self.status.to_dict()

    def save(self) -> None:
        self.status.heartbeat = to_iso(self.context.now())
        self.context.store.save(STATUS_DOCUMENT, self.snapshot())
