"""Test helpers shared by several modules."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from pi_daemon.engine.backend import ProcessRequest, ProcessResult, run_process

FAKE_PI = "pi"
PYTHON = sys.executable


class FakeClock:
    """Settable clock passed to ``DaemonContext``."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakePiBackend:
    """Answers host-runtime invocations from a script; real processes for the rest.

    Validators and script workflows still run through ``run_process`` so their
    behaviour is exercised for real.
    """

    def __init__(
        self,
        results: list[ProcessResult] | None = None,
        responder: Callable[[ProcessRequest], ProcessResult] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.results = list(results or [])
        self.responder = responder
        self.delay = delay
        self.agent_requests: list[ProcessRequest] = []

    @property
    def prompts(self) -> list[str]:
        return [request.argv[-1] for request in self.agent_requests]

    async def run(self, request: ProcessRequest) -> ProcessResult:
        if request.argv[0] != FAKE_PI:
            return await run_process(request)
        self.agent_requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.responder is not None:
            return self.responder(request)
        if self.results:
            return self.results.pop(0)
        return ProcessResult(exit_code=0, stdout="ok")


def write_workflow(
    base_dir: Path,
    name: str,
    config: str,
    files: dict[str, str] | None = None,
) -> Path:
    """Create ``base_dir/name/config.toml`` plus optional sibling files."""

    directory = base_dir / name
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "config.toml").write_text(config, "utf-8")
    for filename, content in (files or {}).items():
        (directory / filename).write_text(content, "utf-8")
    return directory


def python_script(path: Path, body: str) -> Path:
    """Write a Python helper script; ``.py`` files run through ``sys.executable``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"import sys\n{body}\n", "utf-8")
    return path
