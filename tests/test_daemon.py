from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import allure
import pytest
from support import FakePiBackend, write_workflow

from pi_daemon.config import DaemonSettings, EngineSettings
from pi_daemon.engine.daemon import Daemon, DaemonMode
from pi_daemon.engine.errors import HandlerNotFoundError
from pi_daemon.engine.handlers import HandlerRegistry
from pi_daemon.engine.models import RuleConfig, TaskStatus

pytestmark = [
    allure.epic("Daemon Runtime"),
    allure.feature("Lifecycle"),
]


def _settings(**overrides: Any) -> DaemonSettings:
    return DaemonSettings(
        enabled=True,
        state_dir=".state",
        engine=EngineSettings(validator_timeout_seconds=10.0, kill_grace_seconds=1.0),
        **overrides,
    )


def _daemon(root: Path, backend: FakePiBackend, **kwargs: Any) -> Daemon:
    settings = kwargs.pop("settings", None) or _settings()
    return Daemon(root, settings, backend=backend, configure_logs=False, **kwargs)


def _status(root: Path) -> dict[str, Any]:
    return json.loads((root / ".state" / "status.json").read_text("utf-8"))


async def _until(condition: Any, timeout: float = 5.0) -> None:
    for _ in range(int(timeout / 0.05)):
        if condition():
            return
        await asyncio.sleep(0.05)
    raise AssertionError("condition never became true")


@pytest.mark.asyncio
async def test_startup_workflow_runs_on_first_heartbeat(tmp_path: Path) -> None:
    write_workflow(
        tmp_path / ".pi" / "workflows",
        "boot",
        '[trigger]\nstartup = true\n[agent]\nprompt = "Boot."\n',
    )
    backend = FakePiBackend()
    daemon = _daemon(tmp_path, backend)

    await daemon.open()
    try:
        assert daemon.mode is DaemonMode.WORKFLOWS
        assert [entry.rule for entry in daemon.queue.load().tasks] == ["boot"]
        assert _status(tmp_path)["running"] is True

        await (await daemon.heartbeat())

        assert backend.prompts == ["Boot."]
        history = daemon.queue.load().history
        assert [(entry.rule, entry.status) for entry in history] == [
            ("boot", TaskStatus.COMPLETED),
        ]
        assert _status(tmp_path)["stats"]["handlers_run"] == 1
    finally:
        await daemon.close()

    assert _status(tmp_path)["running"] is False


@pytest.mark.asyncio
async def test_manual_trigger_enqueues_high_and_wakes_queue(tmp_path: Path) -> None:
    write_workflow(tmp_path / ".pi" / "workflows", "digest", '[agent]\nprompt = "Digest."\n')
    backend = FakePiBackend()
    daemon = _daemon(tmp_path, backend)

    await daemon.open()
    try:
        with pytest.raises(HandlerNotFoundError, match="Workflow not found: nope"):
            await daemon.trigger("nope", {})

        assert await daemon.trigger("digest", {"date": "2026-06-15"}) == "Triggered digest"
        assert await daemon.trigger("digest", {}) == "Already queued: digest"

        await _until(lambda: backend.agent_requests)
        await _until(lambda: daemon.queue.status_summary()["completed_today"] == 1)
    finally:
        await daemon.close()

    (request,) = backend.agent_requests
    assert request.env["WORKFLOW_DATE"] == "2026-06-15"


@pytest.mark.asyncio
async def test_reload_rediscovers_workflows(tmp_path: Path) -> None:
    workflows_dir = tmp_path / ".pi" / "workflows"
    write_workflow(workflows_dir, "hourly", '[trigger]\nschedule = "hourly"\n')
    daemon = _daemon(tmp_path, FakePiBackend())

    await daemon.open()
    try:
        (tmp_path / "inbox").mkdir()
        write_workflow(workflows_dir, "inbox", '[trigger]\nwatcher = "inbox/*.md"\n')

        message = await daemon.reload()

        assert message == "Reloaded: 2 workflow(s), 1 watcher(s), 2 rule(s)"
        assert [watcher["name"] for watcher in daemon.status_snapshot()["watchers"]] == [
            "wf-inbox",
        ]
    finally:
        await daemon.close()


@pytest.mark.asyncio
async def test_legacy_mode_runs_registered_handlers(tmp_path: Path) -> None:
    registry = HandlerRegistry()
    seen: list[dict[str, Any]] = []

    @registry.register("notify")
    async def notify(context: dict[str, Any]) -> None:
        seen.append(context)

    settings = _settings(rules=[RuleConfig(name="ping", handler="notify", schedule="hourly")])
    daemon = _daemon(tmp_path, FakePiBackend(), settings=settings, registry=registry)

    await daemon.open()
    try:
        assert daemon.mode is DaemonMode.LEGACY
        await (await daemon.heartbeat())
    finally:
        await daemon.close()

    (context,) = seen
    assert context["_rule"] == "ping"
    assert context["_handler"] == "notify"
    assert "date" in context
    assert "pi-spawn" in registry.names()


@pytest.mark.asyncio
async def test_disabled_daemon_exits_immediately(tmp_path: Path) -> None:
    daemon = Daemon(tmp_path, DaemonSettings(enabled=False), configure_logs=False)

    assert await daemon.start() == 0
    assert not (tmp_path / ".bosun-daemon").exists()


@pytest.mark.asyncio
async def test_start_resumes_interrupted_rule_and_stops_cleanly(tmp_path: Path) -> None:
    write_workflow(
        tmp_path / ".pi" / "workflows",
        "nightly",
        '[trigger]\nschedule = "hourly"\n[agent]\nprompt = "Nightly."\n',
    )
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    (state_dir / "rules-state.json").write_text(
        json.dumps(
            {"nightly": {"last_run": "2026-06-15T11:00:00+00:00", "last_result": "running"}},
        ),
        "utf-8",
    )
    backend = FakePiBackend()
    daemon = _daemon(tmp_path, backend)

    task = asyncio.create_task(daemon.start())
    await _until(lambda: backend.agent_requests)
    await _until(lambda: daemon.queue.status_summary()["completed_today"] >= 1)
    daemon.request_stop()

    assert await asyncio.wait_for(task, timeout=5) == 0
    assert backend.prompts[0] == "Nightly."
    assert _status(tmp_path)["running"] is False


@pytest.mark.asyncio
async def test_heartbeat_keeps_ticking_while_a_task_runs(tmp_path: Path) -> None:
    write_workflow(
        tmp_path / ".pi" / "workflows",
        "slow",
        '[trigger]\nstartup = true\n[agent]\nprompt = "Slow."\n',
    )
    backend = FakePiBackend(delay=3.0)
    daemon = _daemon(tmp_path, backend, settings=_settings(heartbeat_interval_seconds=1))

    task = asyncio.create_task(daemon.start())
    try:
        await _until(lambda: backend.agent_requests)
        first = _status(tmp_path)["heartbeat"]

        await _until(lambda: _status(tmp_path)["heartbeat"] != first, timeout=2.0)

        assert daemon.queue.status_summary()["current_task"] == "slow"
    finally:
        daemon.request_stop()
        assert await asyncio.wait_for(task, timeout=5) == 0

    assert _status(tmp_path)["running"] is False
