"""Domain models for triggers, rules, the task queue and daemon status."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable queue entry lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(str, Enum):
    """Priority bands; queue order is high, normal, low."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.HIGH: 0,
    TaskPriority.NORMAL: 1,
    TaskPriority.LOW: 2,
}


class RuleResult(str, Enum):
    """Last recorded outcome of a rule."""

    SUCCESS = "success"
    FAILED = "failed"
    RUNNING = "running"


class TriggerEvent(str, Enum):
    ADD = "add"
    CHANGE = "change"


@dataclass(slots=True)
class WatcherConfig:
    """Filesystem glob subscription that produces trigger records."""

    name: str
    pattern: str
    debounce_ms: int = 5000


@dataclass(slots=True)
class RuleConfig:
    """Trigger-condition half of a workflow, evaluated each heartbeat."""

    name: str
    handler: str
    trigger: str | None = None
    schedule: str | None = None
    stale_minutes: float | None = None


@dataclass(slots=True)
class TriggerRecord:
    """One pending "file changed" event."""

    path: str
    event: TriggerEvent
    timestamp: str
    watcher: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "event": self.event.value,
            "timestamp": self.timestamp,
            "watcher": self.watcher,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TriggerRecord:
        return cls(
            path=str(payload["path"]),
            event=TriggerEvent(payload.get("event", TriggerEvent.CHANGE.value)),
            timestamp=str(payload["timestamp"]),
            watcher=str(payload["watcher"]),
        )


@dataclass(slots=True)
class TriggersState:
    """Pending triggers deduplicated by path across all watchers."""

    pending: list[TriggerRecord] = field(default_factory=list)
    last_processed: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": [record.to_dict() for record in self.pending],
            "last_processed": self.last_processed,
        }


@dataclass(slots=True)
class RuleRunRecord:
    """Run history for one rule, keyed by rule name in ``rules-state.json``."""

    last_run: str
    last_result: RuleResult
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "last_run": self.last_run,
            "last_result": self.last_result.value,
        }
        if self.last_error:
            payload["last_error"] = self.last_error
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RuleRunRecord:
        return cls(
            last_run=str(payload["last_run"]),
            last_result=RuleResult(payload["last_result"]),
            last_error=payload.get("last_error") or None,
        )


@dataclass(slots=True)
class QueuedTask:
    """Ready-to-run task emitted by the rules engine."""

    id: str
    rule: str
    handler: str
    context: dict[str, Any] = field(default_factory=dict)
    priority: TaskPriority = TaskPriority.NORMAL


@dataclass(slots=True)
class QueueEntry:
    """Queued task with runtime bookkeeping."""

    id: str
    rule: str
    handler: str
    context: dict[str, Any]
    priority: TaskPriority
    status: TaskStatus
    created_at: str
    attempts: int = 0
    max_attempts: int = 3
    started_at: str | None = None
    completed_at: str | None = None
    last_error: str | None = None
    backoff_until: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in {TaskStatus.QUEUED, TaskStatus.RUNNING}

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["priority"] = self.priority.value
        payload["status"] = self.status.value
        return {key: value for key, value in payload.items() if value is not None}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QueueEntry:
        return cls(
            id=str(payload["id"]),
            rule=str(payload["rule"]),
            handler=str(payload["handler"]),
            context=dict(payload.get("context") or {}),
            priority=TaskPriority(payload.get("priority", TaskPriority.NORMAL.value)),
            status=TaskStatus(payload["status"]),
            created_at=str(payload["created_at"]),
            attempts=int(payload.get("attempts", 0)),
            max_attempts=int(payload.get("max_attempts", 3)),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            last_error=payload.get("last_error"),
            backoff_until=payload.get("backoff_until"),
        )


@dataclass(slots=True)
class QueueState:
    """Persisted queue document: live tasks plus bounded most-recent-first history."""

    tasks: list[QueueEntry] = field(default_factory=list)
    history: list[QueueEntry] = field(default_factory=list)
    max_history: int = 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [entry.to_dict() for entry in self.tasks],
            "history": [entry.to_dict() for entry in self.history],
            "max_history": self.max_history,
        }


@dataclass(slots=True)
class WatcherSummary:
    name: str
    pattern: str
    enabled: bool = True
    last_triggered: str | None = None


@dataclass(slots=True)
class DaemonStats:
    handlers_run: int = 0
    errors: int = 0


@dataclass(slots=True)
class DaemonStatus:
    """Heartbeat snapshot rewritten atomically every tick."""

    pid: int
    started_at: str
    heartbeat: str
    running: bool = False
    watchers: list[WatcherSummary] = field(default_factory=list)
    stats: DaemonStats = field(default_factory=DaemonStats)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
