from __future__ import annotations

from pathlib import Path

import allure
import pytest
from support import python_script, write_workflow

from pi_daemon.engine.validators import ValidatorKind, run_validator
from pi_daemon.engine.workflows import WorkflowConfig, discover_workflows

pytestmark = [
    allure.epic("Workflows"),
    allure.feature("Validator Pipeline"),
]


@pytest.fixture()
def workflow(tmp_path: Path) -> WorkflowConfig:
    write_workflow(tmp_path / ".pi" / "workflows", "digest", '[workflow]\ntype = "agent"\n')
    (workflow,) = discover_workflows(tmp_path)
    return workflow


@pytest.mark.asyncio
async def test_missing_validator_passes(tmp_path: Path, workflow: WorkflowConfig) -> None:
    result = await run_validator(
        ValidatorKind.INPUT,
        tmp_path / "missing.py",
        workflow=workflow,
        context={},
    )
    assert result.passed is True

    result = await run_validator(ValidatorKind.OUTPUT, None, workflow=workflow, context={})
    assert result.passed is True


@pytest.mark.asyncio
async def test_output_validator_reads_stdout_and_exit_code(
    tmp_path: Path,
    workflow: WorkflowConfig,
) -> None:
    script = python_script(
        tmp_path / "check.py",
        "import os\n"
        "data = sys.stdin.read()\n"
        "print(os.environ['VALIDATOR_TYPE'], os.environ['AGENT_EXIT_CODE'],"
        " os.environ['WORKFLOW_NAME'], os.environ['WORKFLOW_TYPE'], os.environ['WORKFLOW_DATE'])\n"
        "if '# Digest' not in data:\n"
        "    print('  missing heading  ', file=sys.stderr)\n"
        "    sys.exit(1)\n",
    )

    failed = await run_validator(
        ValidatorKind.OUTPUT,
        script,
        workflow=workflow,
        context={"date": "2026-06-15"},
        stdout="no heading here",
        exit_code=0,
    )
    passed = await run_validator(
        ValidatorKind.OUTPUT,
        script,
        workflow=workflow,
        context={"date": "2026-06-15"},
        stdout="# Digest\n- item",
        exit_code=0,
    )

    assert failed.passed is False
    assert failed.exit_code == 1
    assert failed.stderr == "missing heading"
    assert passed.passed is True
    assert passed.stdout.split() == ["output", "0", "digest", "agent", "2026-06-15"]


@pytest.mark.asyncio
async def test_input_validator_gets_no_agent_exit_code(
    tmp_path: Path,
    workflow: WorkflowConfig,
) -> None:
    script = python_script(
        tmp_path / "gate.py",
        "import os\nsys.exit(0 if 'AGENT_EXIT_CODE' not in os.environ else 5)\n",
    )

    result = await run_validator(ValidatorKind.INPUT, script, workflow=workflow, context={})

    assert result.passed is True
