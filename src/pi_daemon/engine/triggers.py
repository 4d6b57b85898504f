"""Durable pending-trigger set written by watchers and read by the rules engine."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import timedelta

from pi_daemon.engine.context import DaemonContext
from pi_daemon.engine.models import TriggerEvent, TriggerRecord, TriggersState
from pi_daemon.engine.store import from_iso, to_iso

logger = logging.getLogger(__name__)

TRIGGERS_DOCUMENT = "triggers"


class TriggerStore:
    """Pending file-change records, deduplicated by path (latest wins)."""

    def __init__(self, context: DaemonContext) -> None:
        self.context = context

    def load(self) -> TriggersState:
        raw = self.context.store.load(TRIGGERS_DOCUMENT, {})
        if not isinstance(raw, dict):
            return TriggersState()
        pending: list[TriggerRecord] = []
        for item in raw.get("pending") or []:
            try:
                pending.append(TriggerRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as error:
                logger.warning("Dropping malformed trigger record %r: %s", item, error)
        return TriggersState(pending=pending, last_processed=raw.get("last_processed") or None)

    def add(self, *, watcher: str, path: str, event: TriggerEvent) -> TriggerRecord:
        state = self.load()
        state.pending = [record for record in state.pending if record.path != path]
        record = TriggerRecord(
            path=path,
            event=event,
            timestamp=to_iso(self.context.now()),
            watcher=watcher,
        )
        state.pending.append(record)
        self._save(state)
        logger.debug("Trigger added: %s -> %s (%s)", watcher, path, event.value)
        return record

    def clear_processed(self, paths: Iterable[str]) -> None:
        processed = set(paths)
        state = self.load()
        state.pending = [record for record in state.pending if record.path not in processed]
        state.last_processed = to_iso(self.context.now())
        self._save(state)

    def has_trigger(self, watcher: str) -> bool:
        return any(record.watcher == watcher for record in self.load().pending)

    def get_triggers(self, watcher: str) -> list[TriggerRecord]:
        return [record for record in self.load().pending if record.watcher == watcher]

    def has_stale_trigger(self, watcher: str, minutes: float) -> bool:
        """True when any pending record from ``watcher`` is older than ``minutes``."""

        cutoff = self.context.now() - timedelta(minutes=minutes)
        return any(
            record.watcher == watcher and from_iso(record.timestamp) < cutoff
            for record in self.load().pending
        )

    def _save(self, state: TriggersState) -> None:
        self.context.store.save(TRIGGERS_DOCUMENT, state.to_dict())
