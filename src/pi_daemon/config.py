"""Runtime configuration for the daemon and its engine."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pi_daemon.engine.models import RuleConfig, WatcherConfig

logger = logging.getLogger(__name__)

DAEMON_CONFIG_PATH = Path(".pi") / "daemon.json"
LOG_LEVELS = ("debug", "info", "warn", "error")


@dataclass(slots=True)
class EngineSettings:
    """Fixed engine constants; tests shrink them to keep runs fast."""

    stale_running_seconds: int = 600
    retry_base_seconds: float = 30.0
    queue_max_attempts: int = 3
    max_history: int = 100
    validator_timeout_seconds: float = 30.0
    kill_grace_seconds: float = 5.0
    control_timeout_seconds: float = 30.0
    status_stale_after_seconds: int = 120


@dataclass(slots=True)
class DaemonSettings:
    """Daemon-wide settings from ``.pi/daemon.json`` with environment overrides."""

    enabled: bool = False
    handlers_dir: str = "scripts/daemon/handlers"
    heartbeat_interval_seconds: int = 60
    state_dir: str = ".bosun-daemon"
    log_level: str = "info"
    pi_path: str = "pi"
    watchers: list[WatcherConfig] = field(default_factory=list)
    rules: list[RuleConfig] = field(default_factory=list)
    engine: EngineSettings = field(default_factory=EngineSettings)

    @classmethod
    def load(cls, root: Path) -> DaemonSettings:
        """Read settings for a workspace root; unreadable config means defaults."""

        settings = cls._from_file(root / DAEMON_CONFIG_PATH)
        settings._apply_env()
        return settings

    def state_path(self, root: Path) -> Path:
        return (root / self.state_dir).resolve()

    @classmethod
    def _from_file(cls, config_path: Path) -> DaemonSettings:
        defaults = cls()
        if not config_path.exists():
            return defaults
        try:
            raw = json.loads(config_path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable daemon config %s: %s", config_path, error)
            return defaults
        if not isinstance(raw, dict):
            return defaults

        log_level = raw.get("log_level")
        return cls(
            enabled=_typed(raw, "enabled", bool, defaults.enabled),
            handlers_dir=_typed(raw, "handlers_dir", str, defaults.handlers_dir),
            heartbeat_interval_seconds=_typed(
                raw,
                "heartbeat_interval_seconds",
                int,
                defaults.heartbeat_interval_seconds,
            ),
            state_dir=_typed(raw, "state_dir", str, defaults.state_dir),
            log_level=log_level if log_level in LOG_LEVELS else defaults.log_level,
            watchers=_parse_watchers(raw.get("watchers")),
            rules=_parse_rules(raw.get("rules")),
        )

    def _apply_env(self) -> None:
        enabled = _env_bool("PI_DAEMON_ENABLED")
        if enabled is not None:
            self.enabled = enabled
        state_dir = os.getenv("PI_DAEMON_STATE_DIR", "").strip()
        if state_dir:
            self.state_dir = state_dir
        interval = _env_int("PI_DAEMON_HEARTBEAT_INTERVAL_SECONDS")
        if interval is not None:
            self.heartbeat_interval_seconds = interval
        log_level = os.getenv("PI_DAEMON_LOG_LEVEL", "").strip().lower()
        if log_level:
            if log_level not in LOG_LEVELS:
                raise ValueError(f"Invalid PI_DAEMON_LOG_LEVEL: {log_level!r}")
            self.log_level = log_level
        pi_path = os.getenv("PI_DAEMON_PI_PATH", "").strip()
        if pi_path:
            self.pi_path = pi_path


def _typed(raw: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = raw.get(key)
    # bool is a subclass of int; a boolean heartbeat interval is a config mistake
    if kind is int and isinstance(value, bool):
        return default
    if kind is int and isinstance(value, float) and value.is_integer():
        return int(value)
    return value if isinstance(value, kind) else default


def _parse_watchers(raw: Any) -> list[WatcherConfig]:
    if not isinstance(raw, list):
        return []
    watchers: list[WatcherConfig] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name, pattern = item.get("name"), item.get("pattern")
        if not isinstance(name, str) or not isinstance(pattern, str):
            continue
        watchers.append(
            WatcherConfig(
                name=name,
                pattern=pattern,
                debounce_ms=_typed(item, "debounce_ms", int, 5000),
            ),
        )
    return watchers


def _parse_rules(raw: Any) -> list[RuleConfig]:
    if not isinstance(raw, list):
        return []
    rules: list[RuleConfig] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name, handler = item.get("name"), item.get("handler")
        if not isinstance(name, str) or not isinstance(handler, str):
            continue
        stale = item.get("stale_minutes")
        rules.append(
            RuleConfig(
                name=name,
                handler=handler,
                trigger=item.get("trigger") if isinstance(item.get("trigger"), str) else None,
                schedule=item.get("schedule") if isinstance(item.get("schedule"), str) else None,
                stale_minutes=(
                    stale
                    if isinstance(stale, int | float) and not isinstance(stale, bool)
                    else None
                ),
            ),
        )
    return rules


def _env_bool(name: str) -> bool | None:
    value = os.getenv(name)
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        parsed = int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
    if parsed <= 0:
        raise ValueError(f"{name} must be > 0.")
    return parsed
