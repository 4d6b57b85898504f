"""Rules engine: turns pending triggers and schedules into ready-to-run tasks.

Each heartbeat ``RulesEngine.evaluate`` checks every rule against the trigger
store and the persisted run history (``rules-state.json``):

- trigger rules fire when their watcher has pending records; with
  ``stale_minutes`` they instead wait until a record is older than that many
  minutes so that bursts of changes are batched into one run;
- schedule rules support ``hourly`` and ``daily:HH`` (local hour).

A rule whose history says ``running`` is never matched again until the queue
records its outcome.  ``catch_up`` runs once at startup and re-queues rules left
``running`` by an unclean shutdown and rules whose last failure looks transient.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

from pi_daemon.engine.context import DaemonContext
from pi_daemon.engine.failure_classifier import classify_rule_failure
from pi_daemon.engine.models import QueuedTask, RuleConfig, RuleResult, RuleRunRecord, TaskPriority
from pi_daemon.engine.store import from_iso, to_iso
from pi_daemon.engine.triggers import TriggerStore

logger = logging.getLogger(__name__)

RULES_DOCUMENT = "rules-state"
HOURLY_SECONDS = 3600
_DAILY_RE = re.compile(r"^daily:(\d{1,2})$")


class RuleHistory:
    """Per-rule run history keyed by rule name."""

    def __init__(self, context: DaemonContext) -> None:
        self.context = context

    def load(self) -> dict[str, RuleRunRecord]:
        raw = self.context.store.load(RULES_DOCUMENT, {})
        if not isinstance(raw, dict):
            return {}
        history: dict[str, RuleRunRecord] = {}
        for name, payload in raw.items():
            try:
                history[name] = RuleRunRecord.from_dict(payload)
            except (KeyError, TypeError, ValueError) as error:
                logger.warning("Dropping malformed history for rule %s: %s", name, error)
        return history

    def get(self, rule: str) -> RuleRunRecord | None:
        return self.load().get(rule)

    def update(self, rule: str, result: RuleResult, error: str | None = None) -> None:
        history = self.load()
        history[rule] = RuleRunRecord(
            last_run=to_iso(self.context.now()),
            last_result=result,
            last_error=error,
        )
        self.context.store.save(
            RULES_DOCUMENT,
            {name: record.to_dict() for name, record in history.items()},
        )


class RulesEngine:
    """Evaluates rule conditions against the trigger store and run history."""

    def __init__(
        self,
        context: DaemonContext,
        triggers: TriggerStore,
        history: RuleHistory,
    ) -> None:
        self.context = context
        self.triggers = triggers
        self.history = history

    def evaluate(self, rules: list[RuleConfig]) -> list[QueuedTask]:
        state = self.history.load()
        now = self.context.now()
        tasks: list[QueuedTask] = []

        for rule in rules:
            record = state.get(rule.name)
            if record is not None and record.last_result is RuleResult.RUNNING:
                logger.debug("Rule already running: %s", rule.name)
                continue

            context: dict[str, Any] | None = None
            if rule.trigger:
                if self._trigger_matches(rule):
                    paths = [record.path for record in self.triggers.get_triggers(rule.trigger)]
                    context = {"paths": paths, "triggered_paths": list(paths)}
            elif rule.schedule:
                if self._schedule_matches(rule, record, now):
                    context = {"date": now.astimezone().strftime("%Y-%m-%d")}

            if context is None:
                continue
            logger.info("Rule matched: %s", rule.name)
            tasks.append(
                QueuedTask(
                    id=f"{rule.name}-{_epoch_ms(now)}",
                    rule=rule.name,
                    handler=rule.handler,
                    context=context,
                    priority=TaskPriority.NORMAL,
                ),
            )
        return tasks

    def catch_up(self, rules: list[RuleConfig]) -> list[QueuedTask]:
        state = self.history.load()
        now = self.context.now()
        tasks: list[QueuedTask] = []

        for rule in rules:
            record = state.get(rule.name)
            if record is None:
                continue

            if record.last_result is RuleResult.RUNNING:
                logger.info("Catch-up: resuming interrupted rule %s", rule.name)
                priority = TaskPriority.HIGH
            elif record.last_result is RuleResult.FAILED:
                classification = classify_rule_failure(record.last_error)
                if not classification.transient:
                    continue
                logger.info(
                    "Catch-up: retrying failed rule %s (transient error: %s)",
                    rule.name,
                    classification.matched_pattern,
                )
                priority = TaskPriority.NORMAL
            else:
                continue

            tasks.append(
                QueuedTask(
                    id=f"{rule.name}-catchup-{_epoch_ms(now)}",
                    rule=rule.name,
                    handler=rule.handler,
                    context={},
                    priority=priority,
                ),
            )
        return tasks

    def _trigger_matches(self, rule: RuleConfig) -> bool:
        assert rule.trigger is not None
        if rule.stale_minutes is not None:
            return self.triggers.has_stale_trigger(rule.trigger, rule.stale_minutes)
        return self.triggers.has_trigger(rule.trigger)

    def _schedule_matches(
        self,
        rule: RuleConfig,
        record: RuleRunRecord | None,
        now: datetime,
    ) -> bool:
        last_run = from_iso(record.last_run) if record is not None else None

        if rule.schedule == "hourly":
            if last_run is None:
                return True
            return (now - last_run).total_seconds() >= HOURLY_SECONDS

        match = _DAILY_RE.match(rule.schedule or "")
        if match:
            local_now = now.astimezone()
            if local_now.hour < int(match.group(1)):
                return False
            if last_run is None:
                return True
            return last_run.astimezone().date() != local_now.date()

        logger.debug("Unknown schedule format: %s", rule.schedule)
        return False


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)
