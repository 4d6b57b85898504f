"""CLI entrypoint for pi-daemon."""

from pathlib import Path

import rich_click as click

from pi_daemon import __version__
from pi_daemon.controllers import (
    CommandOutcome,
    DaemonCliController,
    LogsCommand,
    ReloadCommand,
    RunCommand,
    StatusCommand,
    StopCommand,
    TriggerCommand,
    WorkflowsCommand,
)
from pi_daemon.engine.control import DEFAULT_LOG_LINES

click.rich_click.USE_MARKDOWN = True
DAEMON_CONTROLLER = DaemonCliController()

_ROOT_OPTION = click.option(
    "--root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace root (defaults to the current directory).",
)


@click.group()
@click.version_option(version=__version__, prog_name="pi-daemon")
def pi_daemon() -> None:
    """Background workflow automation daemon.

    Runs **agent** and **script** workflows on file changes, schedules or manual
    triggers, and answers control commands dropped into its state directory.
    """


@pi_daemon.command("run")
@_ROOT_OPTION
def run(root: Path | None) -> None:
    """Run the daemon in the foreground until SIGINT/SIGTERM or `stop`."""

    _finish(DAEMON_CONTROLLER.run(RunCommand(root=root)))


@pi_daemon.command("status")
@_ROOT_OPTION
def status(root: Path | None) -> None:
    """Show heartbeat, queue summary, stats and watchers."""

    _finish(DAEMON_CONTROLLER.status(StatusCommand(root=root)))


@pi_daemon.command("trigger")
@_ROOT_OPTION
@click.argument("name")
@click.option(
    "--context",
    "context_json",
    default=None,
    help="Task context as a JSON object.",
)
def trigger(root: Path | None, name: str, context_json: str | None) -> None:
    """Queue a workflow (or legacy handler) at high priority."""

    _finish(
        DAEMON_CONTROLLER.trigger(
            TriggerCommand(root=root, name=name, context_json=context_json),
        ),
    )


@pi_daemon.command("logs")
@_ROOT_OPTION
@click.option(
    "--lines",
    type=click.IntRange(min=1),
    default=DEFAULT_LOG_LINES,
    show_default=True,
    help="Number of trailing log lines.",
)
def logs(root: Path | None, lines: int) -> None:
    """Print the tail of the daemon log."""

    _finish(DAEMON_CONTROLLER.logs(LogsCommand(root=root, lines=lines)))


@pi_daemon.command("reload")
@_ROOT_OPTION
def reload(root: Path | None) -> None:
    """Re-discover workflows and rebuild watchers and rules."""

    _finish(DAEMON_CONTROLLER.reload(ReloadCommand(root=root)))


@pi_daemon.command("stop")
@_ROOT_OPTION
def stop(root: Path | None) -> None:
    """Ask a running daemon to shut down."""

    _finish(DAEMON_CONTROLLER.stop(StopCommand(root=root)))


@pi_daemon.command("workflows")
@_ROOT_OPTION
def workflows(root: Path | None) -> None:
    """List discovered workflows after package/repo/user merging."""

    _finish(DAEMON_CONTROLLER.workflows(WorkflowsCommand(root=root)))


def _finish(outcome: CommandOutcome) -> None:
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException(outcome.error or "Command failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pi_daemon()
