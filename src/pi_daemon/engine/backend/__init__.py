"""Workload process backends."""

from pi_daemon.engine.backend.base import (
    SPAWN_ERROR_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ProcessBackend,
    ProcessRequest,
    ProcessResult,
)
from pi_daemon.engine.backend.process import AsyncProcessBackend, command_argv, run_process

__all__ = [
    "SPAWN_ERROR_EXIT_CODE",
    "TIMEOUT_EXIT_CODE",
    "AsyncProcessBackend",
    "ProcessBackend",
    "ProcessRequest",
    "ProcessResult",
    "command_argv",
    "run_process",
]
