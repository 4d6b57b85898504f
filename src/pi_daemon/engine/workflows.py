"""Workflow discovery and override merging.

Workflows are directories holding a ``config.toml`` definition.  They are
discovered from three locations, in order:

1. package workflows: ``packages/*/workflows/<name>/``
2. repo workflows:    ``.pi/workflows/<name>/``
3. user workflows:    ``workspace/workflows/<name>/``

A later definition with the same name overrides the earlier one field by
field; fields the override leaves unset keep the earlier value.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from pi_daemon.engine.errors import WorkflowConfigError
from pi_daemon.engine.models import RuleConfig, WatcherConfig
from pi_daemon.engine.simple_toml import Scalar, parse_simple_toml

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

DEFINITION_FILE = "config.toml"
SYSTEM_PROMPT_FILE = "agent.md"
WATCHER_PREFIX = "wf-"
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_TIMEOUT_MINUTES = 10
DEFAULT_DEBOUNCE_MS = 5000


class WorkflowType(str, Enum):
    AGENT = "agent"
    SCRIPT = "script"


class WorkflowSource(str, Enum):
    PACKAGE = "package"
    REPO = "repo"
    USER = "user"


@dataclass(frozen=True, slots=True)
class TriggerSpec:
    schedule: str | None = None
    watcher: str | None = None
    debounce_ms: int | None = None
    manual: bool | None = None
    startup: bool | None = None


@dataclass(frozen=True, slots=True)
class AgentSpec:
    prompt: str = ""
    model: str | None = None
    system_prompt_file: Path | None = None


@dataclass(frozen=True, slots=True)
class ScriptSpec:
    command: Path | None = None


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int | None = None
    feedback: bool | None = None


@dataclass(frozen=True, slots=True)
class ValidatorPaths:
    input: Path | None = None
    output: Path | None = None


@dataclass(frozen=True, slots=True)
class WorkflowConfig:
    """One workflow definition.

    Parsed definitions keep ``None`` for every field the file leaves unset so
    that merging can tell "unset" from "explicitly set".  ``with_defaults``
    produces the effective record used by the engine.
    """

    name: str
    dir: Path
    source: WorkflowSource
    description: str | None = None
    type: WorkflowType | None = None
    trigger: TriggerSpec = field(default_factory=TriggerSpec)
    agent: AgentSpec | None = None
    script: ScriptSpec | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    validators: ValidatorPaths = field(default_factory=ValidatorPaths)
    timeout_minutes: float | None = None

    @property
    def watcher_name(self) -> str | None:
        return f"{WATCHER_PREFIX}{self.name}" if self.trigger.watcher else None

    @property
    def max_attempts(self) -> int:
        return self.retry.max_attempts or DEFAULT_MAX_ATTEMPTS

    @property
    def feedback(self) -> bool:
        return self.retry.feedback is not False

    @property
    def timeout_seconds(self) -> float:
        return (self.timeout_minutes or DEFAULT_TIMEOUT_MINUTES) * 60

    def with_defaults(self) -> WorkflowConfig:
        workflow_type = self.type or WorkflowType.AGENT
        return replace(
            self,
            description=self.description or "",
            type=workflow_type,
            trigger=replace(
                self.trigger,
                manual=bool(self.trigger.manual),
                startup=bool(self.trigger.startup),
            ),
            agent=(self.agent or AgentSpec()) if workflow_type is WorkflowType.AGENT else None,
            script=(self.script or ScriptSpec()) if workflow_type is WorkflowType.SCRIPT else None,
            retry=RetryPolicy(max_attempts=self.max_attempts, feedback=self.feedback),
            timeout_minutes=self.timeout_minutes or DEFAULT_TIMEOUT_MINUTES,
        )


def parse_workflow_dir(directory: Path, source: WorkflowSource) -> WorkflowConfig | None:
    """Parse ``directory/config.toml``; ``None`` when the directory has no definition."""

    config_path = directory / DEFINITION_FILE
    if not config_path.is_file():
        logger.debug("No %s in %s, skipping", DEFINITION_FILE, directory)
        return None

    raw = parse_simple_toml(config_path.read_text("utf-8"))
    workflow = raw.get("workflow", {})
    trigger = raw.get("trigger", {})
    retry = raw.get("retry", {})
    validators = raw.get("validators", {})
    timeout = raw.get("timeout", {})

    system_prompt = directory / SYSTEM_PROMPT_FILE
    agent: AgentSpec | None = None
    if "agent" in raw or system_prompt.is_file():
        agent_section = raw.get("agent", {})
        agent = AgentSpec(
            prompt=_str(agent_section, "prompt") or "",
            model=_str(agent_section, "model"),
            system_prompt_file=system_prompt if system_prompt.is_file() else None,
        )

    script: ScriptSpec | None = None
    if "script" in raw:
        command = _str(raw["script"], "command")
        script = ScriptSpec(command=(directory / command).resolve() if command else None)

    return WorkflowConfig(
        name=_str(workflow, "name") or directory.name,
        dir=directory.resolve(),
        source=source,
        description=_str(workflow, "description"),
        type=_workflow_type(workflow.get("type")),
        trigger=TriggerSpec(
            schedule=_str(trigger, "schedule"),
            watcher=_str(trigger, "watcher"),
            debounce_ms=_int(trigger, "debounce_ms"),
            manual=_bool(trigger, "manual"),
            startup=_bool(trigger, "startup"),
        ),
        agent=agent,
        script=script,
        retry=RetryPolicy(
            max_attempts=_int(retry, "max_attempts"),
            feedback=_bool(retry, "feedback"),
        ),
        validators=ValidatorPaths(
            input=_relative_path(directory, validators, "input"),
            output=_relative_path(directory, validators, "output"),
        ),
        timeout_minutes=_number(timeout, "minutes"),
    )


def merge_workflows(base: WorkflowConfig, override: WorkflowConfig) -> WorkflowConfig:
    """Override wins per field; unset override fields fall back to ``base``."""

    return WorkflowConfig(
        name=override.name,
        dir=override.dir,
        source=override.source,
        description=override.description or base.description,
        type=_pick(override.type, base.type),
        trigger=TriggerSpec(
            schedule=_pick(override.trigger.schedule, base.trigger.schedule),
            watcher=_pick(override.trigger.watcher, base.trigger.watcher),
            debounce_ms=_pick(override.trigger.debounce_ms, base.trigger.debounce_ms),
            manual=_pick(override.trigger.manual, base.trigger.manual),
            startup=_pick(override.trigger.startup, base.trigger.startup),
        ),
        agent=_pick(override.agent, base.agent),
        script=_pick(override.script, base.script),
        retry=RetryPolicy(
            max_attempts=_pick(override.retry.max_attempts, base.retry.max_attempts),
            feedback=_pick(override.retry.feedback, base.retry.feedback),
        ),
        validators=ValidatorPaths(
            input=_pick(override.validators.input, base.validators.input),
            output=_pick(override.validators.output, base.validators.output),
        ),
        timeout_minutes=_pick(override.timeout_minutes, base.timeout_minutes),
    )


def discover_workflows(root: Path) -> list[WorkflowConfig]:
    """Return the merged, effective workflow list for a workspace root."""

    by_name: dict[str, WorkflowConfig] = {}
    for source, base_dir in _source_dirs(root):
        for workflow in _scan_workflows_in(base_dir, source):
            existing = by_name.get(workflow.name)
            if existing is None:
                by_name[workflow.name] = workflow
                continue
            logger.info(
                "Workflow override: %s (%s overrides %s)",
                workflow.name,
                workflow.source.value,
                existing.source.value,
            )
            by_name[workflow.name] = merge_workflows(existing, workflow)

    workflows = [workflow.with_defaults() for workflow in by_name.values()]
    logger.info("Discovered %d workflow(s)", len(workflows))
    return workflows


def has_workflow_dirs(root: Path) -> bool:
    """True when any discovery location exists (selects workflow mode)."""

    return any(base_dir.is_dir() for _, base_dir in _source_dirs(root))


def derive_watchers(workflows: list[WorkflowConfig]) -> list[WatcherConfig]:
    return [
        WatcherConfig(
            name=workflow.watcher_name,
            pattern=workflow.trigger.watcher,
            debounce_ms=(
                workflow.trigger.debounce_ms
                if workflow.trigger.debounce_ms is not None
                else DEFAULT_DEBOUNCE_MS
            ),
        )
        for workflow in workflows
        if workflow.watcher_name is not None and workflow.trigger.watcher is not None
    ]


def derive_rules(workflows: list[WorkflowConfig]) -> list[RuleConfig]:
    rules: list[RuleConfig] = []
    for workflow in workflows:
        if not workflow.trigger.watcher and not workflow.trigger.schedule:
            continue
        if workflow.trigger.watcher and workflow.trigger.schedule:
            logger.warning(
                "Workflow %s declares both watcher and schedule; using watcher",
                workflow.name,
            )
        rules.append(
            RuleConfig(
                name=workflow.name,
                handler=workflow.name,
                trigger=workflow.watcher_name,
                schedule=None if workflow.trigger.watcher else workflow.trigger.schedule,
            ),
        )
    return rules


def workflow_env(workflow: WorkflowConfig, context: Mapping[str, Any]) -> dict[str, str]:
    """Environment variables describing a workflow run to child processes."""

    env = {
        "WORKFLOW_NAME": workflow.name,
        "WORKFLOW_DIR": str(workflow.dir),
    }
    date = context.get("date")
    if date:
        env["WORKFLOW_DATE"] = str(date)
    paths = context.get("paths")
    if isinstance(paths, list) and paths:
        env["WORKFLOW_PATHS"] = ",".join(str(path) for path in paths)
    return env


def _source_dirs(root: Path) -> Iterator[tuple[WorkflowSource, Path]]:
    packages_dir = root / "packages"
    if packages_dir.is_dir():
        for package in sorted(packages_dir.iterdir()):
            if package.is_dir():
                yield WorkflowSource.PACKAGE, package / "workflows"
    yield WorkflowSource.REPO, root / ".pi" / "workflows"
    yield WorkflowSource.USER, root / "workspace" / "workflows"


def _scan_workflows_in(base_dir: Path, source: WorkflowSource) -> list[WorkflowConfig]:
    if not base_dir.is_dir():
        return []

    workflows: list[WorkflowConfig] = []
    for directory in sorted(base_dir.iterdir()):
        if not directory.is_dir():
            continue
        try:
            workflow = parse_workflow_dir(directory, source)
        except (OSError, UnicodeDecodeError, WorkflowConfigError) as error:
            logger.error("Failed to parse workflow at %s: %s", directory, error)
            continue
        if workflow is not None:
            logger.debug(
                "Discovered workflow: %s (%s) at %s",
                workflow.name,
                source.value,
                directory,
            )
            workflows.append(workflow)
    return workflows


def _pick(override: _T | None, base: _T | None) -> _T | None:
    return override if override is not None else base


def _workflow_type(value: Scalar | None) -> WorkflowType | None:
    if value is None:
        return None
    try:
        return WorkflowType(str(value))
    except ValueError as error:
        raise WorkflowConfigError(f"Unknown workflow type: {value!r}") from error


def _str(section: dict[str, Scalar], key: str) -> str | None:
    value = section.get(key)
    if value is None or isinstance(value, bool):
        return None
    text = str(value)
    return text if text else None


def _int(section: dict[str, Scalar], key: str) -> int | None:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)


def _number(section: dict[str, Scalar], key: str) -> float | None:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _bool(section: dict[str, Scalar], key: str) -> bool | None:
    value = section.get(key)
    return value if isinstance(value, bool) else None


def _relative_path(directory: Path, section: dict[str, Scalar], key: str) -> Path | None:
    value = _str(section, key)
    return (directory / value).resolve() if value else None
