"""Explicit daemon context shared by all engine components."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pi_daemon.config import EngineSettings
from pi_daemon.engine.store import JsonFileStore, StateStore, utc_now


@dataclass(slots=True)
class DaemonContext:
    """State-directory paths, storage, clock and the queue's in-progress lock."""

    root: Path
    state_dir: Path
    store: StateStore
    engine: EngineSettings = field(default_factory=EngineSettings)
    clock: Callable[[], datetime] = utc_now
    queue_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @classmethod
    def create(
        cls,
        *,
        root: Path,
        state_dir: Path,
        engine: EngineSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> DaemonContext:
        return cls(
            root=root,
            state_dir=state_dir,
            store=JsonFileStore(state_dir),
            engine=engine or EngineSettings(),
            clock=clock or utc_now,
        )

    @property
    def log_file(self) -> Path:
        return self.state_dir / "daemon.log"

    @property
    def control_dir(self) -> Path:
        return self.state_dir / "control"

    @property
    def responses_dir(self) -> Path:
        return self.state_dir / "responses"

    def now(self) -> datetime:
        return self.clock()
