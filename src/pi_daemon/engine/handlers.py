"""Explicit handler registry for legacy (rule + handler) configurations.

Handlers are plain async callables taking the task context.  They are
registered by name at startup; nothing is imported from ``handlers_dir`` at
runtime.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from pi_daemon.config import EngineSettings
from pi_daemon.engine.backend import (
    SPAWN_ERROR_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    AsyncProcessBackend,
    ProcessBackend,
    ProcessRequest,
)
from pi_daemon.engine.errors import DaemonError, HandlerNotFoundError, WorkflowRunError
from pi_daemon.engine.routing import ModelRouting

logger = logging.getLogger(__name__)

HandlerFn = Callable[[dict[str, Any]], Awaitable[None]]

PI_SPAWN_HANDLER = "pi-spawn"
PI_SPAWN_TIMEOUT_MINUTES = 10


class HandlerRegistry:
    """Name -> handler mapping resolved when a queued task runs."""

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerFn] = {}

    def register(self, name: str) -> Callable[[HandlerFn], HandlerFn]:
        """Decorator form of ``add``."""

        def decorator(fn: HandlerFn) -> HandlerFn:
            self.add(name, fn)
            return fn

        return decorator

    def add(self, name: str, fn: HandlerFn) -> None:
        if name in self._handlers:
            logger.warning("Replacing registered handler: %s", name)
        self._handlers[name] = fn

    def resolve(self, name: str) -> HandlerFn:
        try:
            return self._handlers[name]
        except KeyError as error:
            raise HandlerNotFoundError(f"Handler not found: {name}") from error

    async def run(self, name: str, context: dict[str, Any]) -> None:
        handler = self.resolve(name)
        logger.info("Running handler: %s", name)
        await handler(context)

    def names(self) -> list[str]:
        return sorted(self._handlers)


def register_builtin_handlers(  # noqa: PLR0913
    registry: HandlerRegistry,
    *,
    root: Path,
    routing: ModelRouting,
    pi_path: str = "pi",
    engine: EngineSettings | None = None,
    backend: ProcessBackend | None = None,
) -> HandlerRegistry:
    """Register ``pi-spawn``: run the host runtime in print mode on ``context["prompt"]``.

    Optional context keys: ``model`` (tier or id), ``timeout_minutes`` and
    ``output`` (file, relative to the root, receiving stdout).
    """

    engine = engine or EngineSettings()
    backend = backend or AsyncProcessBackend()

    @registry.register(PI_SPAWN_HANDLER)
    async def pi_spawn(context: dict[str, Any]) -> None:
        prompt = context.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise DaemonError("pi-spawn requires a non-empty 'prompt' in the task context")

        requested_model = context.get("model")
        model = routing.resolve(requested_model if isinstance(requested_model, str) else None)
        timeout_minutes = context.get("timeout_minutes")
        if isinstance(timeout_minutes, bool) or not isinstance(timeout_minutes, int | float):
            timeout_minutes = PI_SPAWN_TIMEOUT_MINUTES

        result = await backend.run(
            ProcessRequest(
                argv=[pi_path, "--print", "--model", model, prompt],
                env={**os.environ, "PI_DAEMON": "1"},
                timeout_seconds=float(timeout_minutes) * 60,
                cwd=root,
                kill_grace_seconds=engine.kill_grace_seconds,
            ),
        )
        if result.exit_code == TIMEOUT_EXIT_CODE:
            raise WorkflowRunError(
                f"Host runtime timeout after {timeout_minutes} minute(s)",
                transient=True,
            )
        if result.exit_code == SPAWN_ERROR_EXIT_CODE:
            raise WorkflowRunError(
                f"Host runtime spawn failed: {result.stderr.strip()}",
                transient=True,
            )
        if result.exit_code != 0:
            raise WorkflowRunError(
                f"Host runtime exited with code {result.exit_code}: {result.stderr.strip()}",
                transient=False,
            )

        output = context.get("output")
        if isinstance(output, str) and output:
            target = root / output
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(result.stdout, "utf-8")
            logger.info("pi-spawn output written to %s", target)

    return registry
