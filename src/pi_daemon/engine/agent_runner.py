"""Workflow execution: input gate, workload attempts with feedback, output gate."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pi_daemon.config import EngineSettings
from pi_daemon.engine.backend import (
    SPAWN_ERROR_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    AsyncProcessBackend,
    ProcessBackend,
    ProcessRequest,
    ProcessResult,
    command_argv,
)
from pi_daemon.engine.errors import WorkflowRunError
from pi_daemon.engine.routing import ModelRouting
from pi_daemon.engine.validators import ValidatorKind, ValidatorResult, run_validator
from pi_daemon.engine.workflows import WorkflowConfig, WorkflowType, workflow_env

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "Run the workflow task."
DAEMON_MARKER_ENV = "PI_DAEMON"


@dataclass(slots=True)
class RunResult:
    """Outcome of one workflow run across all of its attempts."""

    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    skipped: bool = False
    validation_passed: bool = False
    attempts: int = 0
    feedback: str = ""


def build_prompt(base_prompt: str, feedback: str) -> str:
    prompt = base_prompt or DEFAULT_PROMPT
    if feedback:
        prompt += (
            "\n\n[Previous attempt failed validation]\n"
            f"Validator feedback: {feedback}\n"
            "Please fix the issue and try again."
        )
    return prompt


class WorkflowRunner:
    """Runs agent and script workflows through one shared process backend."""

    def __init__(
        self,
        *,
        root: Path,
        routing: ModelRouting,
        pi_path: str = "pi",
        engine: EngineSettings | None = None,
        backend: ProcessBackend | None = None,
    ) -> None:
        self.root = root
        self.routing = routing
        self.pi_path = pi_path
        self.engine = engine or EngineSettings()
        self.backend = backend or AsyncProcessBackend()

    async def run(self, workflow: WorkflowConfig, context: Mapping[str, Any]) -> RunResult:
        result = RunResult()

        if workflow.validators.input is not None:
            gate = await self._validate(ValidatorKind.INPUT, workflow, context)
            if not gate.passed:
                logger.info(
                    "[%s] Input validation failed, skipping: %s",
                    workflow.name,
                    gate.stderr,
                )
                result.skipped = True
                return result
            logger.debug("[%s] Input validation passed", workflow.name)

        feedback = ""
        max_attempts = workflow.max_attempts
        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            logger.info("[%s] Running (attempt %d/%d)", workflow.name, attempt, max_attempts)

            execution = await self._execute(workflow, context, feedback)
            result.exit_code = execution.exit_code
            result.stdout = execution.stdout
            result.stderr = execution.stderr

            if execution.exit_code != 0:
                logger.error("[%s] Exited with code %d", workflow.name, execution.exit_code)
                result.feedback = (
                    f"Process exited with code {execution.exit_code}: {execution.stderr}"
                )
                feedback = result.feedback if workflow.feedback else ""
                continue

            if workflow.validators.output is not None:
                gate = await self._validate(
                    ValidatorKind.OUTPUT,
                    workflow,
                    context,
                    stdout=execution.stdout,
                    exit_code=execution.exit_code,
                )
                if not gate.passed:
                    logger.error("[%s] Output validation failed: %s", workflow.name, gate.stderr)
                    result.feedback = gate.stderr
                    feedback = gate.stderr if workflow.feedback else ""
                    if attempt < max_attempts:
                        logger.info("[%s] Will retry after failed validation", workflow.name)
                    continue
                logger.debug("[%s] Output validation passed", workflow.name)

            result.validation_passed = True
            logger.info("[%s] Completed successfully", workflow.name)
            return result

        return result

    async def run_checked(self, workflow: WorkflowConfig, context: Mapping[str, Any]) -> RunResult:
        """Run and raise ``WorkflowRunError`` unless the run passed or was skipped."""

        result = await self.run(workflow, context)
        if result.skipped or result.validation_passed:
            return result

        if result.exit_code == TIMEOUT_EXIT_CODE:
            message = f"Workflow {workflow.name}: timeout after {result.attempts} attempt(s)"
        elif result.exit_code == SPAWN_ERROR_EXIT_CODE:
            message = f"Workflow {workflow.name}: spawn failed: {result.stderr.strip()}"
        elif result.exit_code != 0:
            message = (
                f"Workflow {workflow.name}: exited with code {result.exit_code}: "
                f"{result.stderr.strip()}"
            )
        else:
            message = f"Workflow {workflow.name}: output validation failed: {result.feedback}"
        raise WorkflowRunError(
            message,
            transient=result.exit_code in {TIMEOUT_EXIT_CODE, SPAWN_ERROR_EXIT_CODE},
        )

    async def _execute(
        self,
        workflow: WorkflowConfig,
        context: Mapping[str, Any],
        feedback: str,
    ) -> ProcessResult:
        if workflow.type is WorkflowType.SCRIPT:
            return await self._run_script(workflow, context)
        return await self._spawn_agent(workflow, context, feedback)

    async def _spawn_agent(
        self,
        workflow: WorkflowConfig,
        context: Mapping[str, Any],
        feedback: str,
    ) -> ProcessResult:
        agent = workflow.agent
        model = self.routing.resolve(agent.model if agent else None)
        argv = [self.pi_path, "--print", "--model", model]
        if agent and agent.system_prompt_file and agent.system_prompt_file.exists():
            argv += ["--append-system-prompt", str(agent.system_prompt_file)]
        argv.append(build_prompt(agent.prompt if agent else "", feedback))

        env = {
            **os.environ,
            "PI_AGENT": workflow.name,
            "PI_AGENT_NAME": workflow.name,
            DAEMON_MARKER_ENV: "1",
            **workflow_env(workflow, context),
        }
        return await self.backend.run(self._request(workflow, argv, env))

    async def _run_script(
        self,
        workflow: WorkflowConfig,
        context: Mapping[str, Any],
    ) -> ProcessResult:
        command = workflow.script.command if workflow.script else None
        if command is None:
            return ProcessResult(exit_code=1, stderr="No script command configured")
        if not command.exists():
            return ProcessResult(exit_code=1, stderr=f"Script not found: {command}")

        env = {
            **os.environ,
            DAEMON_MARKER_ENV: "1",
            **workflow_env(workflow, context),
        }
        return await self.backend.run(self._request(workflow, command_argv(command), env))

    def _request(
        self,
        workflow: WorkflowConfig,
        argv: list[str],
        env: dict[str, str],
    ) -> ProcessRequest:
        return ProcessRequest(
            argv=argv,
            env=env,
            timeout_seconds=workflow.timeout_seconds,
            cwd=self.root,
            kill_grace_seconds=self.engine.kill_grace_seconds,
        )

    async def _validate(
        self,
        kind: ValidatorKind,
        workflow: WorkflowConfig,
        context: Mapping[str, Any],
        *,
        stdout: str = "",
        exit_code: int = 0,
    ) -> ValidatorResult:
        if kind is ValidatorKind.INPUT:
            script = workflow.validators.input
        else:
            script = workflow.validators.output
        return await run_validator(
            kind,
            script,
            workflow=workflow,
            context=context,
            stdout=stdout,
            exit_code=exit_code,
            timeout_seconds=self.engine.validator_timeout_seconds,
            cwd=self.root,
            backend=self.backend,
        )
