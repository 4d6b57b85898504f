from __future__ import annotations

from datetime import datetime

import allure
from support import FakeClock

from pi_daemon.engine.context import DaemonContext
from pi_daemon.engine.models import RuleConfig, RuleResult, TaskPriority, TriggerEvent
from pi_daemon.engine.rules import RuleHistory, RulesEngine
from pi_daemon.engine.triggers import TriggerStore

pytestmark = [
    allure.epic("Rules Engine"),
    allure.feature("Evaluation & Catch-up"),
]

HOURLY = RuleConfig(name="digest", handler="digest", schedule="hourly")


def _engine(context: DaemonContext, triggers: TriggerStore, history: RuleHistory) -> RulesEngine:
    return RulesEngine(context, triggers, history)


def test_hourly_rule_fires_on_first_run_then_every_hour(
    context: DaemonContext,
    triggers: TriggerStore,
    history: RuleHistory,
    clock: FakeClock,
) -> None:
    engine = _engine(context, triggers, history)

    (task,) = engine.evaluate([HOURLY])
    assert task.rule == "digest"
    assert task.priority is TaskPriority.NORMAL
    assert task.id == f"digest-{int(clock().timestamp() * 1000)}"
    assert task.context == {"date": clock().astimezone().strftime("%Y-%m-%d")}

    history.update("digest", RuleResult.SUCCESS)
    clock.advance(minutes=10)
    assert engine.evaluate([HOURLY]) == []

    clock.advance(minutes=51)
    assert [task.rule for task in engine.evaluate([HOURLY])] == ["digest"]


def test_running_rule_is_never_rematched(
    context: DaemonContext,
    triggers: TriggerStore,
    history: RuleHistory,
    clock: FakeClock,
) -> None:
    history.update("digest", RuleResult.RUNNING)
    clock.advance(hours=5)

    assert _engine(context, triggers, history).evaluate([HOURLY]) == []


def test_daily_rule_waits_for_local_hour_and_runs_once_per_day(
    context: DaemonContext,
    triggers: TriggerStore,
    history: RuleHistory,
    clock: FakeClock,
) -> None:
    clock.current = datetime(2026, 6, 15, 8, 0).astimezone()
    rule = RuleConfig(name="morning", handler="morning", schedule="daily:9")
    engine = _engine(context, triggers, history)

    assert engine.evaluate([rule]) == []

    clock.advance(hours=2)
    assert [task.rule for task in engine.evaluate([rule])] == ["morning"]

    history.update("morning", RuleResult.SUCCESS)
    clock.advance(hours=3)
    assert engine.evaluate([rule]) == []

    clock.advance(hours=24)
    assert [task.rule for task in engine.evaluate([rule])] == ["morning"]


def test_unknown_schedule_never_fires(
    context: DaemonContext,
    triggers: TriggerStore,
    history: RuleHistory,
) -> None:
    rule = RuleConfig(name="weekly", handler="weekly", schedule="weekly:mon")

    assert _engine(context, triggers, history).evaluate([rule]) == []


def test_trigger_rule_carries_pending_paths(
    context: DaemonContext,
    triggers: TriggerStore,
    history: RuleHistory,
) -> None:
    rule = RuleConfig(name="inbox", handler="inbox", trigger="wf-inbox")
    engine = _engine(context, triggers, history)
    assert engine.evaluate([rule]) == []

    triggers.add(watcher="wf-inbox", path="/ws/inbox/a.md", event=TriggerEvent.ADD)
    triggers.add(watcher="wf-other", path="/ws/other/b.md", event=TriggerEvent.ADD)
    (task,) = engine.evaluate([rule])

    assert task.context == {
        "paths": ["/ws/inbox/a.md"],
        "triggered_paths": ["/ws/inbox/a.md"],
    }


def test_stale_minutes_batches_recent_triggers(
    context: DaemonContext,
    triggers: TriggerStore,
    history: RuleHistory,
    clock: FakeClock,
) -> None:
    rule = RuleConfig(name="inbox", handler="inbox", trigger="wf-inbox", stale_minutes=5)
    engine = _engine(context, triggers, history)
    triggers.add(watcher="wf-inbox", path="/ws/inbox/a.md", event=TriggerEvent.ADD)

    clock.advance(minutes=3)
    assert engine.evaluate([rule]) == []

    clock.advance(minutes=3)
    assert [task.rule for task in engine.evaluate([rule])] == ["inbox"]


def test_catch_up_requeues_interrupted_and_transient_failures(
    context: DaemonContext,
    triggers: TriggerStore,
    history: RuleHistory,
    clock: FakeClock,
) -> None:
    history.update("interrupted", RuleResult.RUNNING)
    history.update("flaky", RuleResult.FAILED, "Workflow flaky: timeout after 2 attempt(s)")
    history.update("broken", RuleResult.FAILED, "Workflow broken: exited with code 1: boom")
    history.update("fine", RuleResult.SUCCESS)
    rules = [
        RuleConfig(name=name, handler=name, schedule="hourly")
        for name in ("interrupted", "flaky", "broken", "fine", "never-ran")
    ]

    tasks = {task.rule: task for task in _engine(context, triggers, history).catch_up(rules)}

    assert set(tasks) == {"interrupted", "flaky"}
    assert tasks["interrupted"].priority is TaskPriority.HIGH
    assert tasks["flaky"].priority is TaskPriority.NORMAL
    stamp = int(clock().timestamp() * 1000)
    assert tasks["flaky"].id == f"flaky-catchup-{stamp}"


def test_history_round_trips_and_drops_malformed(
    context: DaemonContext,
    history: RuleHistory,
) -> None:
    history.update("digest", RuleResult.FAILED, "ECONNRESET")
    raw = context.store.load("rules-state", {})
    raw["bad"] = {"last_result": "success"}
    context.store.save("rules-state", raw)

    loaded = history.load()

    assert set(loaded) == {"digest"}
    assert loaded["digest"].last_result is RuleResult.FAILED
    assert loaded["digest"].last_error == "ECONNRESET"
    assert history.get("missing") is None
