"""Durable single-consumer task queue with retry backoff and stale recovery."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from pi_daemon.engine.context import DaemonContext
from pi_daemon.engine.models import (
    QueuedTask,
    QueueEntry,
    QueueState,
    RuleResult,
    TaskStatus,
)
from pi_daemon.engine.rules import RuleHistory
from pi_daemon.engine.store import from_iso, to_iso
from pi_daemon.engine.triggers import TriggerStore

logger = logging.getLogger(__name__)

QUEUE_DOCUMENT = "queue"

HandlerRunner = Callable[[str, dict[str, Any]], Awaitable[None]]


class TaskQueue:
    """Priority-banded FIFO (high, normal, low) persisted to ``queue.json``.

    At most one queued-or-running entry exists per rule.  ``process`` runs at
    most one task per call and never overlaps with itself.
    """

    def __init__(
        self,
        context: DaemonContext,
        *,
        triggers: TriggerStore,
        history: RuleHistory,
    ) -> None:
        self.context = context
        self.triggers = triggers
        self.history = history
        self._runner: HandlerRunner | None = None

    def set_handler_runner(self, runner: HandlerRunner) -> None:
        self._runner = runner

    def load(self) -> QueueState:
        raw = self.context.store.load(QUEUE_DOCUMENT, {})
        max_history = self.context.engine.max_history
        if not isinstance(raw, dict):
            return QueueState(max_history=max_history)
        return QueueState(
            tasks=_entries(raw.get("tasks")),
            history=_entries(raw.get("history")),
            max_history=int(raw.get("max_history") or max_history),
        )

    def enqueue(self, tasks: list[QueuedTask]) -> list[QueueEntry]:
        """Add tasks, silently dropping rules already queued or running."""

        if not tasks:
            return []

        state = self.load()
        accepted: list[QueueEntry] = []
        for task in tasks:
            if any(entry.rule == task.rule and entry.is_active for entry in state.tasks):
                logger.debug("Task already in queue: %s", task.rule)
                continue
            entry = QueueEntry(
                id=task.id,
                rule=task.rule,
                handler=task.handler,
                context=dict(task.context),
                priority=task.priority,
                status=TaskStatus.QUEUED,
                created_at=to_iso(self.context.now()),
                max_attempts=self.context.engine.queue_max_attempts,
            )
            state.tasks.append(entry)
            accepted.append(entry)
            logger.info("Enqueued task: %s (priority: %s)", task.rule, task.priority.value)

        # sort is stable: FIFO inside each priority band
        state.tasks.sort(key=lambda entry: entry.priority.rank)
        self._save(state)
        return accepted

    async def process(self) -> QueueEntry | None:
        """Recover stale entries, then run the next ready task (if any).

        Returns the entry that was executed, in its post-run state.
        """

        lock = self.context.queue_lock
        if lock.locked():
            logger.debug("Queue processing already in progress")
            return None

        async with lock:
            state = self.load()
            self._recover_stale(state)

            entry = self._next_ready(state)
            if entry is None:
                logger.debug("No tasks ready for processing")
                return None
            if self._runner is None:
                logger.error("No handler runner configured, cannot process queue")
                return None

            logger.info(
                "Processing task: %s (attempt %d/%d)",
                entry.rule,
                entry.attempts + 1,
                entry.max_attempts,
            )
            entry.status = TaskStatus.RUNNING
            entry.started_at = to_iso(self.context.now())
            entry.attempts += 1
            self._save(state)
            self.history.update(entry.rule, RuleResult.RUNNING)

            try:
                await self._runner(
                    entry.handler,
                    {
                        **entry.context,
                        "_task_id": entry.id,
                        "_rule": entry.rule,
                        "_handler": entry.handler,
                    },
                )
            except Exception as error:  # noqa: BLE001
                state, entry = self._reload_running(entry)
                self._handle_failure(state, entry, str(error) or type(error).__name__)
            else:
                state, entry = self._reload_running(entry)
                self._handle_success(state, entry)

            self._save(state)
            return entry

    def status_summary(self) -> dict[str, Any]:
        state = self.load()
        today = self.context.now().astimezone().date()
        current = next(
            (entry for entry in state.tasks if entry.status is TaskStatus.RUNNING),
            None,
        )

        def finished_today(entry: QueueEntry, status: TaskStatus) -> bool:
            return (
                entry.status is status
                and entry.completed_at is not None
                and from_iso(entry.completed_at).astimezone().date() == today
            )

        summary: dict[str, Any] = {
            "queued": sum(1 for entry in state.tasks if entry.status is TaskStatus.QUEUED),
            "running": 1 if current is not None else 0,
            "completed_today": sum(
                1 for entry in state.history if finished_today(entry, TaskStatus.COMPLETED)
            ),
            "failed_today": sum(
                1 for entry in state.history if finished_today(entry, TaskStatus.FAILED)
            ),
        }
        if current is not None:
            summary["current_task"] = current.rule
        return summary

    def _recover_stale(self, state: QueueState) -> None:
        now = self.context.now()
        threshold = self.context.engine.stale_running_seconds
        for entry in list(state.tasks):
            if entry.status is not TaskStatus.RUNNING or entry.started_at is None:
                continue
            elapsed = (now - from_iso(entry.started_at)).total_seconds()
            if elapsed <= threshold:
                continue

            message = (
                f"Stale running task: {entry.rule} ({round(elapsed / 60)}m). Resetting."
            )
            logger.warning("%s", message)
            if entry.attempts >= entry.max_attempts:
                entry.status = TaskStatus.FAILED
                entry.completed_at = to_iso(now)
                entry.last_error = message
                self._move_to_history(state, entry)
            else:
                entry.status = TaskStatus.QUEUED
                entry.backoff_until = None
            self.history.update(entry.rule, RuleResult.FAILED, message)
            self._save(state)

    def _reload_running(self, entry: QueueEntry) -> tuple[QueueState, QueueEntry]:
        """Re-read the queue after a handler ran; enqueues made meanwhile are kept."""

        state = self.load()
        for fresh in state.tasks:
            if fresh.id == entry.id:
                return state, fresh
        logger.warning("Running task vanished from queue during run: %s", entry.rule)
        state.tasks.append(entry)
        return state, entry

    def _next_ready(self, state: QueueState) -> QueueEntry | None:
        now = self.context.now()
        for entry in state.tasks:
            if entry.status is not TaskStatus.QUEUED:
                continue
            if entry.backoff_until and now < from_iso(entry.backoff_until):
                continue
            return entry
        return None

    def _handle_success(self, state: QueueState, entry: QueueEntry) -> None:
        entry.status = TaskStatus.COMPLETED
        entry.completed_at = to_iso(self.context.now())
        self.history.update(entry.rule, RuleResult.SUCCESS)

        triggered = entry.context.get("triggered_paths")
        if isinstance(triggered, list):
            self.triggers.clear_processed(str(path) for path in triggered)

        self._move_to_history(state, entry)
        logger.info("Task completed: %s", entry.rule)

    def _handle_failure(self, state: QueueState, entry: QueueEntry, message: str) -> None:
        entry.last_error = message
        logger.error("Task failed: %s: %s", entry.rule, message)

        if entry.attempts >= entry.max_attempts:
            entry.status = TaskStatus.FAILED
            entry.completed_at = to_iso(self.context.now())
            self.history.update(entry.rule, RuleResult.FAILED, message)
            self._move_to_history(state, entry)
            logger.info(
                "Task permanently failed after %d attempts: %s",
                entry.attempts,
                entry.rule,
            )
            return

        entry.status = TaskStatus.QUEUED
        delay = self._compute_retry_delay(attempts=entry.attempts)
        entry.backoff_until = to_iso(self.context.now() + timedelta(seconds=delay))
        logger.info("Task will retry at %s: %s", entry.backoff_until, entry.rule)

    def _compute_retry_delay(self, *, attempts: int) -> float:
        return self.context.engine.retry_base_seconds * (2**attempts)

    def _move_to_history(self, state: QueueState, entry: QueueEntry) -> None:
        state.tasks = [task for task in state.tasks if task.id != entry.id]
        state.history.insert(0, entry)
        del state.history[state.max_history :]

    def _save(self, state: QueueState) -> None:
        self.context.store.save(QUEUE_DOCUMENT, state.to_dict())


def _entries(raw: Any) -> list[QueueEntry]:
    if not isinstance(raw, list):
        return []
    entries: list[QueueEntry] = []
    for item in raw:
        try:
            entries.append(QueueEntry.from_dict(item))
        except (KeyError, TypeError, ValueError) as error:
            logger.warning("Dropping malformed queue entry %r: %s", item, error)
    return entries
