"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
from support import FakeClock

from pi_daemon.config import EngineSettings
from pi_daemon.engine.context import DaemonContext
from pi_daemon.engine.rules import RuleHistory
from pi_daemon.engine.triggers import TriggerStore


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 6, 15, 12, 0, tzinfo=UTC))


@pytest.fixture()
def engine_settings() -> EngineSettings:
    """Engine constants with short process timeouts."""

    return EngineSettings(
        validator_timeout_seconds=10.0,
        kill_grace_seconds=1.0,
        control_timeout_seconds=5.0,
    )


@pytest.fixture()
def context(tmp_path: Path, clock: FakeClock, engine_settings: EngineSettings) -> DaemonContext:
    return DaemonContext.create(
        root=tmp_path,
        state_dir=tmp_path / ".state",
        engine=engine_settings,
        clock=clock,
    )


@pytest.fixture()
def triggers(context: DaemonContext) -> TriggerStore:
    return TriggerStore(context)


@pytest.fixture()
def history(context: DaemonContext) -> RuleHistory:
    return RuleHistory(context)


@pytest.fixture(autouse=True)
def _clean_daemon_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PI_DAEMON_ENABLED",
        "PI_DAEMON_STATE_DIR",
        "PI_DAEMON_HEARTBEAT_INTERVAL_SECONDS",
        "PI_DAEMON_LOG_LEVEL",
        "PI_DAEMON_PI_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
