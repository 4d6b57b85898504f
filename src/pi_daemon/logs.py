"""Daemon log setup: leveled stderr output plus an append-only log file."""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class _DaemonHandlerMixin:
    """Marks handlers installed here so reconfiguration can replace them."""


class _DaemonStreamHandler(_DaemonHandlerMixin, logging.StreamHandler):
    pass


class _DaemonFileHandler(_DaemonHandlerMixin, logging.FileHandler):
    pass


def configure_logging(level: str, log_file: Path | None = None) -> logging.Logger:
    """Install daemon handlers on the ``pi_daemon`` logger tree."""

    root = logging.getLogger("pi_daemon")
    for handler in list(root.handlers):
        if isinstance(handler, _DaemonHandlerMixin):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    console = _DaemonStreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = _DaemonFileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(_LEVELS.get(level, logging.INFO))
    return root


def tail_log(path: Path, lines: int) -> list[str]:
    """Return the last ``lines`` lines of a log file (empty when missing)."""

    if lines <= 0 or not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=lines)]
