"""Daemon lifecycle: wiring, heartbeat loop, control target and shutdown."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pi_daemon.config import DaemonSettings
from pi_daemon.engine.agent_runner import WorkflowRunner
from pi_daemon.engine.backend import ProcessBackend
from pi_daemon.engine.context import DaemonContext
from pi_daemon.engine.control import ControlChannel
from pi_daemon.engine.errors import HandlerNotFoundError
from pi_daemon.engine.handlers import HandlerRegistry, register_builtin_handlers
from pi_daemon.engine.models import QueuedTask, RuleConfig, TaskPriority, WatcherConfig
from pi_daemon.engine.queue import TaskQueue
from pi_daemon.engine.routing import ModelRouting
from pi_daemon.engine.rules import RuleHistory, RulesEngine
from pi_daemon.engine.status import StatusWriter
from pi_daemon.engine.triggers import TriggerStore
from pi_daemon.engine.watcher import WatcherManager
from pi_daemon.engine.workflows import (
    WorkflowConfig,
    derive_rules,
    derive_watchers,
    discover_workflows,
    has_workflow_dirs,
)
from pi_daemon.logs import configure_logging

logger = logging.getLogger(__name__)


class DaemonMode(str, Enum):
    WORKFLOWS = "workflows"
    LEGACY = "legacy"


class Daemon:
    """Single-process automation daemon.

    One heartbeat drives rule evaluation and queue processing; watchers and the
    control channel feed it from watchdog threads through the event loop.
    """

    def __init__(
        self,
        root: Path,
        settings: DaemonSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        backend: ProcessBackend | None = None,
        registry: HandlerRegistry | None = None,
        configure_logs: bool = True,
    ) -> None:
        self.root = root.resolve()
        self.settings = settings or DaemonSettings.load(self.root)
        self.clock = clock
        self.backend = backend
        self.registry = registry or HandlerRegistry()
        self.configure_logs = configure_logs
        self.mode = DaemonMode.WORKFLOWS
        self.workflows: dict[str, WorkflowConfig] = {}
        self.rules: list[RuleConfig] = []
        self._stop_event: asyncio.Event | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._opened = False

    async def start(self) -> int:
        """Run until stopped; returns the process exit code."""

        if not self.settings.enabled:
            logger.info("Daemon disabled in config (enabled: false)")
            return 0

        await self.open()
        loop = asyncio.get_running_loop()
        assert self._stop_event is not None
        try:
            with self._signal_handlers(loop):
                catch_up = self.rules_engine.catch_up(self.rules)
                if catch_up:
                    logger.info("Catch-up: %d task(s) to resume", len(catch_up))
                    self.queue.enqueue(catch_up)

                interval = self.settings.heartbeat_interval_seconds
                logger.info("Starting heartbeat (%ss interval)", interval)
                logger.info("Daemon ready")
                while not self._stop_event.is_set():
                    await self.heartbeat()
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    except TimeoutError:
                        continue
        finally:
            await self.close()
        return 0

    async def open(self) -> None:
        """Build components, start the control channel and select the run mode."""

        loop = asyncio.get_running_loop()
        state_dir = self.settings.state_path(self.root)
        state_dir.mkdir(parents=True, exist_ok=True)
        self.context = DaemonContext.create(
            root=self.root,
            state_dir=state_dir,
            engine=self.settings.engine,
            clock=self.clock,
        )
        if self.configure_logs:
            configure_logging(self.settings.log_level, self.context.log_file)

        self.routing = ModelRouting.load(self.root)
        self.triggers = TriggerStore(self.context)
        self.history = RuleHistory(self.context)
        self.rules_engine = RulesEngine(self.context, self.triggers, self.history)
        self.queue = TaskQueue(self.context, triggers=self.triggers, history=self.history)
        self.queue.set_handler_runner(self._run_handler)
        self.runner = WorkflowRunner(
            root=self.root,
            routing=self.routing,
            pi_path=self.settings.pi_path,
            engine=self.settings.engine,
            backend=self.backend,
        )
        register_builtin_handlers(
            self.registry,
            root=self.root,
            routing=self.routing,
            pi_path=self.settings.pi_path,
            engine=self.settings.engine,
            backend=self.backend,
        )
        self.status = StatusWriter(self.context)
        self.watchers = WatcherManager(
            root=self.root,
            triggers=self.triggers,
            on_trigger=self.status.mark_triggered,
            exclude=state_dir,
        )
        self.control = ControlChannel(self.context, self)
        self._stop_event = asyncio.Event()

        self.control.start(loop)
        if has_workflow_dirs(self.root) or not self.settings.handlers_dir:
            self.mode = DaemonMode.WORKFLOWS
            self._load_workflows(loop, enqueue_startup=True)
        else:
            self.mode = DaemonMode.LEGACY
            self._load_legacy(loop, self.settings)

        self.status.set_running(True)
        self.status.save()
        self._opened = True
        logger.info("Daemon started (PID: %d)", os.getpid())
        logger.info("Root: %s", self.root)
        logger.info("State: %s", state_dir)

    async def close(self) -> None:
        if not self._opened:
            return
        logger.info("Shutting down daemon...")
        self.watchers.stop()
        self.control.stop()
        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        self.status.set_running(False)
        self.status.save()
        self._opened = False
        logger.info("Daemon stopped")

    async def heartbeat(self) -> asyncio.Task[None]:
        """Evaluate rules, refresh ``status.json`` and start a queue pass.

        The pass runs in the background so ticks keep coming while a workload
        runs; the queue lock keeps passes from overlapping.
        """

        try:
            tasks = self.rules_engine.evaluate(self.rules)
            if tasks:
                self.queue.enqueue(tasks)
        except Exception as error:  # noqa: BLE001
            logger.error("Rule evaluation error: %s", error)
            self.status.record_error()

        self.status.save()
        return self._spawn_queue_pass()

    def request_stop(self) -> None:
        logger.info("Stop requested")
        if self._stop_event is not None:
            self._stop_event.set()

    # --- control target ---

    def status_snapshot(self) -> dict[str, Any]:
        return {**self.status.snapshot(), "queue": self.queue.status_summary()}

    async def trigger(self, name: str, context: dict[str, Any]) -> str:
        if self.mode is DaemonMode.WORKFLOWS:
            if name not in self.workflows:
                raise HandlerNotFoundError(f"Workflow not found: {name}")
        else:
            self.registry.resolve(name)

        accepted = self.queue.enqueue(
            [
                QueuedTask(
                    id=f"{name}-manual-{int(self.context.now().timestamp() * 1000)}",
                    rule=name,
                    handler=name,
                    context=dict(context),
                    priority=TaskPriority.HIGH,
                ),
            ],
        )
        if not accepted:
            return f"Already queued: {name}"

        self._spawn_queue_pass()
        return f"Triggered {name}"

    async def reload(self) -> str:
        loop = asyncio.get_running_loop()
        self.watchers.stop()
        if self.mode is DaemonMode.WORKFLOWS:
            self._load_workflows(loop, enqueue_startup=False)
        else:
            self._load_legacy(loop, DaemonSettings.load(self.root))
        self.status.save()
        return (
            f"Reloaded: {len(self.workflows)} workflow(s), "
            f"{len(self.watchers.configs)} watcher(s), {len(self.rules)} rule(s)"
        )

    # --- internals ---

    def _spawn_queue_pass(self) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(self._process_queue())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _process_queue(self) -> None:
        try:
            await self.queue.process()
        except Exception as error:  # noqa: BLE001
            logger.error("Queue processing error: %s", error)
            self.status.record_error()
        self.status.save()

    async def _run_handler(self, name: str, context: dict[str, Any]) -> None:
        self.status.record_handler_run()
        if self.mode is DaemonMode.LEGACY:
            await self.registry.run(name, context)
            return

        workflow = self.workflows.get(name)
        if workflow is None:
            logger.error("Workflow not found: %s", name)
            raise HandlerNotFoundError(f"Workflow not found: {name}")
        result = await self.runner.run_checked(workflow, context)
        if result.skipped:
            logger.info("[%s] Skipped (input validation)", name)

    def _load_workflows(self, loop: asyncio.AbstractEventLoop, *, enqueue_startup: bool) -> None:
        workflows = discover_workflows(self.root)
        self.workflows = {workflow.name: workflow for workflow in workflows}
        watchers = derive_watchers(workflows)
        self.rules = derive_rules(workflows)
        self._start_watchers(watchers, loop)
        logger.info("Workflows: %d", len(workflows))
        logger.info("Watchers: %d", len(watchers))
        logger.info("Rules: %d", len(self.rules))

        startup = [workflow for workflow in workflows if workflow.trigger.startup]
        if enqueue_startup and startup:
            logger.info("Running %d startup workflow(s)", len(startup))
            stamp = int(self.context.now().timestamp() * 1000)
            self.queue.enqueue(
                [
                    QueuedTask(
                        id=f"{workflow.name}-startup-{stamp}",
                        rule=workflow.name,
                        handler=workflow.name,
                        context={},
                        priority=TaskPriority.NORMAL,
                    )
                    for workflow in startup
                ],
            )

    def _load_legacy(self, loop: asyncio.AbstractEventLoop, settings: DaemonSettings) -> None:
        logger.info(
            "Running in legacy mode (handlers: %s)",
            ", ".join(self.registry.names()) or "none",
        )
        self.workflows = {}
        self.rules = list(settings.rules)
        self._start_watchers(list(settings.watchers), loop)

    def _start_watchers(
        self,
        configs: list[WatcherConfig],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.watchers.start(configs, loop)
        self.status.set_watchers(configs)

    @contextmanager
    def _signal_handlers(self, loop: asyncio.AbstractEventLoop) -> Iterator[None]:
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_stop)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or outside the main thread.
                continue
            installed.append(signum)
        try:
            yield
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
