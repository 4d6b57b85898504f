"""Filesystem watchers that debounce file events into trigger records.

Watchdog delivers events on its observer thread; they are handed to the event
loop with ``call_soon_threadsafe`` and debounced there per (watcher, path).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

import pathspec
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from pi_daemon.engine.models import TriggerEvent, WatcherConfig
from pi_daemon.engine.triggers import TriggerStore

logger = logging.getLogger(__name__)

_GLOB_CHARS = frozenset("*?[")


def compile_pattern(pattern: str) -> pathspec.PathSpec:
    """Compile a watcher glob; it is anchored at the root and ``**`` spans directories."""

    anchored = pattern if pattern.startswith("/") else f"/{pattern}"
    return pathspec.GitIgnoreSpec.from_lines([anchored])


def static_base(root: Path, pattern: str) -> Path:
    """Deepest existing directory that can contain every match of ``pattern``."""

    base = root
    for segment in pattern.lstrip("/").split("/")[:-1]:
        if not segment or _GLOB_CHARS & set(segment):
            break
        base = base / segment
    while not base.is_dir() and base != root:
        base = base.parent
    return base


class WatcherManager:
    """Owns the watchdog observer and the per-path debounce timers."""

    def __init__(
        self,
        *,
        root: Path,
        triggers: TriggerStore,
        on_trigger: Callable[[str], None] | None = None,
        exclude: Path | None = None,
    ) -> None:
        self.root = root.resolve()
        self.exclude = exclude.resolve() if exclude is not None else None
        self.triggers = triggers
        self.on_trigger = on_trigger
        self._observer: Observer | None = None  # type: ignore[valid-type]
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: dict[tuple[str, str], asyncio.TimerHandle] = {}
        self._configs: list[WatcherConfig] = []

    @property
    def configs(self) -> list[WatcherConfig]:
        return list(self._configs)

    def start(self, configs: list[WatcherConfig], loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._configs = list(configs)
        if not configs:
            return

        self._observer = Observer()
        for config in configs:
            base = static_base(self.root, config.pattern)
            logger.info(
                "Setting up watcher: %s -> %s (under %s)",
                config.name,
                config.pattern,
                base,
            )
            self._observer.schedule(  # type: ignore[attr-defined]
                _WatcherEventHandler(self, config, compile_pattern(config.pattern)),
                str(base),
                recursive=True,
            )
        self._observer.daemon = True  # type: ignore[attr-defined]
        self._observer.start()  # type: ignore[attr-defined]

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()  # type: ignore[attr-defined]
            self._observer.join(timeout=3)  # type: ignore[attr-defined]
            self._observer = None
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        self._configs = []

    def relative_path(self, path: str) -> str | None:
        """Root-relative POSIX path, or None outside the root or inside ``exclude``."""

        resolved = Path(path).resolve()
        if self.exclude is not None and resolved.is_relative_to(self.exclude):
            return None
        try:
            return resolved.relative_to(self.root).as_posix()
        except ValueError:
            return None

    def on_file_event(self, config: WatcherConfig, path: str, event: TriggerEvent) -> None:
        """Called from the observer thread."""

        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self.schedule, config, path, event)

    def schedule(self, config: WatcherConfig, path: str, event: TriggerEvent) -> None:
        """Restart the debounce timer for ``path``; runs on the event loop."""

        if self._loop is None:
            return
        key = (config.name, path)
        existing = self._pending.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._pending[key] = self._loop.call_later(
            max(config.debounce_ms, 0) / 1000,
            self._fire,
            config,
            path,
            event,
        )

    def _fire(self, config: WatcherConfig, path: str, event: TriggerEvent) -> None:
        self._pending.pop((config.name, path), None)
        logger.debug("File %s: %s", event.value, path)
        try:
            self.triggers.add(watcher=config.name, path=path, event=event)
        except OSError as error:
            logger.error("Failed to record trigger for %s: %s", path, error)
            return
        if self.on_trigger is not None:
            self.on_trigger(config.name)


class _WatcherEventHandler(FileSystemEventHandler):
    """Watchdog handler that filters events through one watcher's pattern."""

    def __init__(
        self,
        manager: WatcherManager,
        config: WatcherConfig,
        spec: pathspec.PathSpec,
    ) -> None:
        self._manager = manager
        self._config = config
        self._spec = spec

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch(str(event.src_path), TriggerEvent.ADD)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch(str(event.src_path), TriggerEvent.CHANGE)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory and hasattr(event, "dest_path"):
            self._dispatch(str(event.dest_path), TriggerEvent.ADD)

    def _dispatch(self, path: str, event: TriggerEvent) -> None:
        relative = self._manager.relative_path(path)
        if relative is None or not self._spec.match_file(relative):
            return
        self._manager.on_file_event(self._config, str(Path(path).resolve()), event)
