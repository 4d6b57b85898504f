"""Controllers for daemon CLI commands."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pi_daemon.config import DaemonSettings
from pi_daemon.engine.control import DEFAULT_LOG_LINES, ControlClient
from pi_daemon.engine.daemon import Daemon
from pi_daemon.engine.errors import ControlTimeoutError
from pi_daemon.engine.workflows import WorkflowConfig, discover_workflows
from pi_daemon.logs import tail_log


@dataclass(slots=True)
class CommandOutcome:
    """Lines to print plus whether the command succeeded."""

    lines: list[str] = field(default_factory=list)
    success: bool = True
    error: str | None = None


@dataclass(slots=True)
class RunCommand:
    """CLI input for running the daemon in the foreground."""

    root: Path | None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for daemon status."""

    root: Path | None


@dataclass(slots=True)
class TriggerCommand:
    """CLI input for a manual workflow or handler trigger."""

    root: Path | None
    name: str
    context_json: str | None = None


@dataclass(slots=True)
class LogsCommand:
    root: Path | None
    lines: int = DEFAULT_LOG_LINES


@dataclass(slots=True)
class ReloadCommand:
    root: Path | None


@dataclass(slots=True)
class StopCommand:
    root: Path | None


@dataclass(slots=True)
class WorkflowsCommand:
    """CLI input for listing discovered workflows."""

    root: Path | None


@dataclass(slots=True)
class DaemonCliController:
    """Bridges CLI commands to the daemon process and its control channel."""

    def run(self, command: RunCommand) -> CommandOutcome:
        root = _resolve_root(command.root)
        settings = DaemonSettings.load(root)
        if not settings.enabled:
            return CommandOutcome(
                lines=[
                    "Daemon disabled in config (enabled: false).",
                    "Set enabled in .pi/daemon.json or PI_DAEMON_ENABLED=1.",
                ],
            )
        exit_code = asyncio.run(Daemon(root, settings).start())
        if exit_code != 0:
            return CommandOutcome(
                success=False,
                error=f"Daemon exited with code {exit_code}",
            )
        return CommandOutcome(lines=["Daemon stopped."])

    def status(self, command: StatusCommand) -> CommandOutcome:
        client = _client(_resolve_root(command.root))
        if not client.is_daemon_running():
            lines = ["daemon=not running"]
            last = client.read_status()
            if last is not None and last.get("heartbeat"):
                lines.append(f"last_heartbeat={last['heartbeat']}")
            return CommandOutcome(lines=lines)

        outcome = _send(client, {"action": "status"})
        if not outcome.success:
            return CommandOutcome(success=False, error=outcome.error)
        return CommandOutcome(lines=render_status_lines(outcome.payload.get("status") or {}))

    def trigger(self, command: TriggerCommand) -> CommandOutcome:
        try:
            context = json.loads(command.context_json) if command.context_json else {}
        except json.JSONDecodeError as error:
            return CommandOutcome(success=False, error=f"Invalid --context JSON: {error}")
        if not isinstance(context, dict):
            return CommandOutcome(success=False, error="--context must be a JSON object.")

        client = _client(_resolve_root(command.root))
        if not client.is_daemon_running():
            return _not_running()
        outcome = _send(
            client,
            {"action": "trigger", "workflow": command.name, "context": context},
        )
        return _message_outcome(outcome)

    def logs(self, command: LogsCommand) -> CommandOutcome:
        root = _resolve_root(command.root)
        client = _client(root)
        if not client.is_daemon_running():
            # The log file outlives the daemon; read it directly.
            log_file = client.state_dir / "daemon.log"
            return CommandOutcome(lines=tail_log(log_file, command.lines))

        outcome = _send(client, {"action": "logs", "lines": command.lines})
        if not outcome.success:
            return CommandOutcome(success=False, error=outcome.error)
        logs = outcome.payload.get("logs")
        return CommandOutcome(lines=[str(line) for line in logs] if isinstance(logs, list) else [])

    def reload(self, command: ReloadCommand) -> CommandOutcome:
        client = _client(_resolve_root(command.root))
        if not client.is_daemon_running():
            return _not_running()
        return _message_outcome(_send(client, {"action": "reload"}))

    def stop(self, command: StopCommand) -> CommandOutcome:
        client = _client(_resolve_root(command.root))
        if not client.is_daemon_running():
            return CommandOutcome(lines=["daemon=not running"])
        return _message_outcome(_send(client, {"action": "stop"}))

    def workflows(self, command: WorkflowsCommand) -> CommandOutcome:
        workflows = discover_workflows(_resolve_root(command.root))
        if not workflows:
            return CommandOutcome(lines=["No workflows found."])
        return CommandOutcome(
            lines=[render_workflow_line(workflow) for workflow in workflows],
        )


@dataclass(slots=True)
class _SendOutcome:
    success: bool
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


def render_status_lines(status: dict[str, Any]) -> list[str]:
    """Format a status snapshot (with queue summary) for terminal output."""

    queue = status.get("queue") or {}
    stats = status.get("stats") or {}
    lines = [
        f"daemon={'running' if status.get('running') else 'stopped'}",
        f"pid={status.get('pid')}",
        f"started_at={status.get('started_at')}",
        f"heartbeat={status.get('heartbeat')}",
        (
            f"queue: queued={queue.get('queued', 0)} running={queue.get('running', 0)} "
            f"completed_today={queue.get('completed_today', 0)} "
            f"failed_today={queue.get('failed_today', 0)}"
        ),
    ]
    if queue.get("current_task"):
        lines.append(f"current_task={queue['current_task']}")
    lines.append(
        f"stats: handlers_run={stats.get('handlers_run', 0)} errors={stats.get('errors', 0)}",
    )
    for watcher in status.get("watchers") or []:
        lines.append(
            f"watcher {watcher.get('name')}: pattern={watcher.get('pattern')} "
            f"last_triggered={watcher.get('last_triggered') or '-'}",
        )
    return lines


def render_workflow_line(workflow: WorkflowConfig) -> str:
    trigger = workflow.trigger
    parts: list[str] = []
    if trigger.watcher:
        parts.append(f"watcher={trigger.watcher}")
    elif trigger.schedule:
        parts.append(f"schedule={trigger.schedule}")
    if trigger.startup:
        parts.append("startup")
    if trigger.manual:
        parts.append("manual")
    workflow_type = workflow.type.value if workflow.type else "-"
    return (
        f"{workflow.name} source={workflow.source.value} type={workflow_type} "
        f"trigger={','.join(parts) or 'manual-only'}"
    )


def _resolve_root(root: Path | None) -> Path:
    return (root or Path.cwd()).resolve()


def _client(root: Path) -> ControlClient:
    settings = DaemonSettings.load(root)
    return ControlClient(
        settings.state_path(root),
        settings.engine,
        heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
    )


def _send(client: ControlClient, command: dict[str, Any]) -> _SendOutcome:
    try:
        response = client.send(command)
    except ControlTimeoutError as error:
        return _SendOutcome(success=False, error=str(error))
    if not response.get("success"):
        return _SendOutcome(
            success=False,
            payload=response,
            error=str(response.get("error") or "Command failed"),
        )
    return _SendOutcome(success=True, payload=response)


def _message_outcome(outcome: _SendOutcome) -> CommandOutcome:
    if not outcome.success:
        return CommandOutcome(success=False, error=outcome.error)
    message = outcome.payload.get("message")
    return CommandOutcome(lines=[str(message)] if message else [])


def _not_running() -> CommandOutcome:
    return CommandOutcome(success=False, error="Daemon is not running.")
