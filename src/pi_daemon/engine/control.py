"""File-drop control channel.

Callers drop ``<id>.json`` command files into ``<state_dir>/control/``.  The
daemon answers each with ``<state_dir>/responses/<id>.json`` and deletes the
command.  Supported actions: ``status``, ``trigger``, ``logs``, ``reload`` and
``stop``.  Every response carries a boolean ``success``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from pi_daemon.config import EngineSettings
from pi_daemon.engine.context import DaemonContext
from pi_daemon.engine.errors import ControlTimeoutError, DaemonError
from pi_daemon.engine.store import from_iso, utc_now, write_json_atomic
from pi_daemon.logs import tail_log

logger = logging.getLogger(__name__)

DEFAULT_LOG_LINES = 50
_PARTIAL_READ_RETRY_SECONDS = 0.2


class ControlTarget(Protocol):
    """Daemon operations reachable through the control channel."""

    def status_snapshot(self) -> dict[str, Any]:
        """Current status document merged with the queue summary."""

    async def trigger(self, name: str, context: dict[str, Any]) -> str:
        """Queue a workflow or handler run; raise ``DaemonError`` for unknown names."""

    async def reload(self) -> str:
        """Re-discover workflows and rebuild watchers and rules."""

    def request_stop(self) -> None:
        """Begin orderly shutdown."""


class ControlChannel:
    """Daemon side of the control protocol."""

    def __init__(self, context: DaemonContext, target: ControlTarget) -> None:
        self.context = context
        self.target = target
        self._observer: Observer | None = None  # type: ignore[valid-type]
        self._loop: asyncio.AbstractEventLoop | None = None
        self._in_flight: set[Path] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self.context.control_dir.mkdir(parents=True, exist_ok=True)
        self.context.responses_dir.mkdir(parents=True, exist_ok=True)

        self._observer = Observer()
        self._observer.schedule(  # type: ignore[attr-defined]
            _ControlEventHandler(self),
            str(self.context.control_dir),
            recursive=False,
        )
        self._observer.daemon = True  # type: ignore[attr-defined]
        self._observer.start()  # type: ignore[attr-defined]

        # Commands dropped while the daemon was down
        for path in sorted(self.context.control_dir.glob("*.json")):
            self.dispatch(path)
        logger.info("Control channel listening on %s", self.context.control_dir)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()  # type: ignore[attr-defined]
            self._observer.join(timeout=3)  # type: ignore[attr-defined]
            self._observer = None

    def on_command_file(self, path: Path) -> None:
        """Called from the observer thread."""

        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self.dispatch, path)

    def dispatch(self, path: Path) -> None:
        if path.suffix != ".json" or path in self._in_flight:
            return
        self._in_flight.add(path)
        task = asyncio.get_running_loop().create_task(self.process_file(path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def process_file(self, path: Path) -> dict[str, Any] | None:
        try:
            if not path.exists():
                return None
            command = await self._read_command(path)
            command_id = path.stem
            if command is None:
                response: dict[str, Any] = {"success": False, "error": "Invalid command file"}
            else:
                logger.info("Received command: %s (%s)", command.get("action"), command_id)
                response = await self.handle_command(command)
            write_json_atomic(self.context.responses_dir / f"{command_id}.json", response)
            path.unlink(missing_ok=True)
            return response
        except OSError as error:
            logger.error("Failed to process command %s: %s", path, error)
            return None
        finally:
            self._in_flight.discard(path)

    async def handle_command(self, command: dict[str, Any]) -> dict[str, Any]:
        action = command.get("action")

        if action == "status":
            return {"success": True, "status": self.target.status_snapshot()}

        if action == "trigger":
            name = command.get("workflow") or command.get("handler")
            if not isinstance(name, str) or not name:
                return {"success": False, "error": "workflow or handler name required"}
            context = command.get("context")
            try:
                message = await self.target.trigger(
                    name,
                    context if isinstance(context, dict) else {},
                )
            except DaemonError as error:
                return {"success": False, "error": str(error)}
            return {"success": True, "message": message}

        if action == "logs":
            lines = command.get("lines")
            if isinstance(lines, bool) or not isinstance(lines, int):
                lines = DEFAULT_LOG_LINES
            return {"success": True, "logs": tail_log(self.context.log_file, lines)}

        if action == "reload":
            return {"success": True, "message": await self.target.reload()}

        if action == "stop":
            logger.info("Received stop command")
            # Runs after the response is written
            asyncio.get_running_loop().call_soon(self.target.request_stop)
            return {"success": True, "message": "Stopping"}

        return {"success": False, "error": f"Unknown action: {action}"}

    async def _read_command(self, path: Path) -> dict[str, Any] | None:
        for attempt in range(2):
            try:
                payload = json.loads(path.read_text("utf-8"))
            except json.JSONDecodeError as error:
                if attempt == 0:
                    # Writer may still be flushing a non-atomic write
                    await asyncio.sleep(_PARTIAL_READ_RETRY_SECONDS)
                    continue
                logger.error("Invalid command file %s: %s", path, error)
                return None
            return payload if isinstance(payload, dict) else None
        return None


class _ControlEventHandler(FileSystemEventHandler):
    def __init__(self, channel: ControlChannel) -> None:
        self._channel = channel

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._channel.on_command_file(Path(str(event.src_path)))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory and hasattr(event, "dest_path"):
            self._channel.on_command_file(Path(str(event.dest_path)))


class ControlClient:
    """Caller side: drop a command file and wait for the daemon's response."""

    def __init__(
        self,
        state_dir: Path,
        engine: EngineSettings | None = None,
        *,
        heartbeat_interval_seconds: int = 60,
    ) -> None:
        self.state_dir = state_dir
        self.engine = engine or EngineSettings()
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.control_dir = state_dir / "control"
        self.responses_dir = state_dir / "responses"

    def send(self, command: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        timeout = self.engine.control_timeout_seconds if timeout is None else timeout
        self.control_dir.mkdir(parents=True, exist_ok=True)
        self.responses_dir.mkdir(parents=True, exist_ok=True)

        command_id = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        command_path = self.control_dir / f"{command_id}.json"
        response_path = self.responses_dir / f"{command_id}.json"

        arrived = threading.Event()
        observer = Observer()
        observer.schedule(  # type: ignore[attr-defined]
            _ResponseEventHandler(response_path, arrived),
            str(self.responses_dir),
            recursive=False,
        )
        observer.daemon = True  # type: ignore[attr-defined]
        observer.start()  # type: ignore[attr-defined]
        try:
            write_json_atomic(command_path, command)
            if not arrived.wait(timeout) and not response_path.exists():
                command_path.unlink(missing_ok=True)
                raise ControlTimeoutError(f"Daemon did not respond within {timeout:g}s")
        finally:
            observer.stop()  # type: ignore[attr-defined]
            observer.join(timeout=3)  # type: ignore[attr-defined]

        try:
            response = json.loads(response_path.read_text("utf-8"))
        finally:
            response_path.unlink(missing_ok=True)
        return response if isinstance(response, dict) else {"success": False}

    def read_status(self) -> dict[str, Any] | None:
        status_path = self.state_dir / "status.json"
        try:
            payload = json.loads(status_path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    def is_daemon_running(self) -> bool:
        """True when ``status.json`` says running with a recent heartbeat."""

        status = self.read_status()
        if not status or not status.get("running"):
            return False
        heartbeat = status.get("heartbeat")
        if not isinstance(heartbeat, str):
            return False
        try:
            age = (utc_now() - from_iso(heartbeat)).total_seconds()
        except ValueError:
            return False
        return age <= self.stale_after_seconds

    @property
    def stale_after_seconds(self) -> int:
        """Heartbeat age past which the daemon counts as gone (two missed ticks)."""

        return max(self.engine.status_stale_after_seconds, 2 * self.heartbeat_interval_seconds)


class _ResponseEventHandler(FileSystemEventHandler):
    def __init__(self, response_path: Path, arrived: threading.Event) -> None:
        self._response_path = response_path
        self._arrived = arrived

    def on_created(self, event: FileSystemEvent) -> None:
        self._check(str(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if hasattr(event, "dest_path"):
            self._check(str(event.dest_path))

    def _check(self, path: str) -> None:
        if Path(path).name == self._response_path.name:
            self._arrived.set()
