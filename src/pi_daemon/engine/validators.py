"""Validator pipeline: operator-supplied gate scripts around each workflow run.

Input validators run before the workload; a nonzero exit skips the run.
Output validators receive the workload's stdout on stdin and its exit code in
``AGENT_EXIT_CODE``; a nonzero exit fails the attempt and the validator's
stderr becomes feedback for the next one.  A validator path that does not
exist passes automatically.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pi_daemon.engine.backend import (
    AsyncProcessBackend,
    ProcessBackend,
    ProcessRequest,
    command_argv,
)
from pi_daemon.engine.workflows import WorkflowConfig, workflow_env

logger = logging.getLogger(__name__)

DEFAULT_VALIDATOR_TIMEOUT_SECONDS = 30.0


class ValidatorKind(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


@dataclass(slots=True)
class ValidatorResult:
    passed: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


async def run_validator(  # noqa: PLR0913
    kind: ValidatorKind,
    script: Path | None,
    *,
    workflow: WorkflowConfig,
    context: Mapping[str, Any],
    stdout: str = "",
    exit_code: int = 0,
    timeout_seconds: float = DEFAULT_VALIDATOR_TIMEOUT_SECONDS,
    cwd: Path | None = None,
    backend: ProcessBackend | None = None,
) -> ValidatorResult:
    if script is None or not script.exists():
        logger.debug("Validator not found: %s, passing by default", script)
        return ValidatorResult(passed=True)

    env = {
        **os.environ,
        **workflow_env(workflow, context),
        "WORKFLOW_TYPE": workflow.type.value if workflow.type else "",
        "VALIDATOR_TYPE": kind.value,
    }
    if kind is ValidatorKind.OUTPUT:
        env["AGENT_EXIT_CODE"] = str(exit_code)

    result = await (backend or AsyncProcessBackend()).run(
        ProcessRequest(
            argv=command_argv(script),
            env=env,
            timeout_seconds=timeout_seconds,
            cwd=cwd,
            stdin=stdout if kind is ValidatorKind.OUTPUT else "",
        ),
    )
    if result.exit_code != 0:
        logger.debug(
            "%s validator %s exited %d: %s",
            kind.value,
            script,
            result.exit_code,
            result.stderr.strip(),
        )
    return ValidatorResult(
        passed=result.exit_code == 0,
        stdout=result.stdout,
        stderr=result.stderr.strip(),
        exit_code=result.exit_code,
    )
