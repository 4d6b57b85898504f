"""Backend interface for supervised workload processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

TIMEOUT_EXIT_CODE = 124
SPAWN_ERROR_EXIT_CODE = 127


@dataclass(slots=True)
class ProcessRequest:
    """Inputs required to run one external process."""

    argv: list[str]
    env: dict[str, str]
    timeout_seconds: float
    cwd: Path | None = None
    stdin: str | None = None
    kill_grace_seconds: float = 5.0


@dataclass(slots=True)
class ProcessResult:
    """Captured process outcome; ``exit_code`` 124 means the timeout fired."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    argv: list[str] = field(default_factory=list)


class ProcessBackend(Protocol):
    """Protocol implemented by process runners."""

    async def run(self, request: ProcessRequest) -> ProcessResult:
        """Run a process to completion (or timeout) and capture its output."""
