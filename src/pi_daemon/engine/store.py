"""Plain-file persistence for engine state documents."""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class StateStore(Protocol):
    """Named JSON-document storage used by every stateful component."""

    def path(self, name: str) -> Path:
        """Location of the named document (for diagnostics)."""

    def load(self, name: str, default: Any) -> Any:
        """Return the stored document or ``default`` when missing or unreadable."""

    def save(self, name: str, payload: Any) -> None:
        """Persist the document so readers never observe a partial write."""


class JsonFileStore:
    """Stores ``<state_dir>/<name>.json`` with write-to-temp-then-rename."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def path(self, name: str) -> Path:
        return self.state_dir / f"{name}.json"

    def load(self, name: str, default: Any) -> Any:
        target = self.path(name)
        if not target.exists():
            return default
        try:
            return json.loads(target.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.error("Failed to load %s: %s", target, error)
            return default

    def save(self, name: str, payload: Any) -> None:
        write_json_atomic(self.path(name), payload)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Persist JSON payload via a sibling temp file and ``os.replace``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)
