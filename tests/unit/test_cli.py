import asyncio
import json

import pytest
from typer.testing import CliRunner

import durastep.persistence as persistence
from durastep.cli import app
from durastep.persistence import (
    ErrorInfo,
    Execution,
    ExecutionStatus,
    InMemoryHistoryRepository,
    StepRecord,
    StepStatus,
    WaitToken,
)

runner = CliRunner()


@pytest.fixture
def repo(monkeypatch):
    repository = InMemoryHistoryRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repository)
    return repository


def _seed(repo):
    async def _populate():
        await repo.create_execution(
            Execution(execution_id="exec-1", workflow_name="price-albums", input={"key": "a.jpg"})
        )
        await repo.append_step(
            StepRecord(
                execution_id="exec-1",
                name="process",
                status=StepStatus.SUCCEEDED,
                result=["Blue"],
            )
        )
        await repo.append_step(
            StepRecord(
                execution_id="exec-1",
                namespace="price-0",
                name="estimate",
                status=StepStatus.FAILED,
                error=ErrorInfo(kind="InvocationError", message="busy"),
                attempts=3,
            )
        )
        await repo.update_execution(
            "exec-1",
            ExecutionStatus.FAILED,
            error=ErrorInfo(kind="FanOutError", message="1 branch(es) failed"),
        )
        await repo.create_wait_token(
            WaitToken(token="cb-1", execution_id="exec-2", name="approval")
        )

    asyncio.run(_populate())


def test_execution_list_empty(repo):
    result = runner.invoke(app, ["execution", "list"])
    assert result.exit_code == 0
    assert "No executions found" in result.stdout


def test_execution_list_and_show(repo):
    _seed(repo)

    result = runner.invoke(app, ["execution", "list"])
    assert result.exit_code == 0
    assert "exec-1\tprice-albums\tfailed" in result.stdout

    result = runner.invoke(app, ["execution", "show", "exec-1"])
    assert result.exit_code == 0
    assert "Execution exec-1: failed" in result.stdout
    assert 'Input: {"key": "a.jpg"}' in result.stdout
    assert "Error: FanOutError: 1 branch(es) failed" in result.stdout
    assert "#1 process [step] succeeded" in result.stdout
    assert "#2 price-0/estimate [step] failed after 3 attempts: InvocationError: busy" in result.stdout


def test_execution_show_missing(repo):
    result = runner.invoke(app, ["execution", "show", "nope"])
    assert result.exit_code == 1
    assert "Execution not found" in result.stdout


def test_signal_send_accepted_then_rejected(repo):
    _seed(repo)

    result = runner.invoke(app, ["signal", "send", "cb-1", "--payload", '{"ok": true}'])
    assert result.exit_code == 0
    assert "Signal accepted for execution exec-2" in result.stdout
    token = asyncio.run(repo.get_wait_token("cb-1"))
    assert token.payload == {"ok": True}

    result = runner.invoke(app, ["signal", "send", "cb-1"])
    assert result.exit_code == 1
    assert "Signal rejected: callback already resolved" in result.stdout

    result = runner.invoke(app, ["signal", "send", "unknown"])
    assert result.exit_code == 1
    assert "Signal rejected: unknown callback id" in result.stdout


def test_signal_send_rejects_bad_json(repo):
    result = runner.invoke(app, ["signal", "send", "cb-1", "--payload", "{not json"])
    assert result.exit_code == 1
    assert "Invalid JSON payload" in result.stdout


def test_statemachine_lint(tmp_path):
    good = tmp_path / "good.asl.json"
    good.write_text(
        json.dumps(
            {
                "StartAt": "Process",
                "States": {
                    "Process": {"Type": "Task", "Resource": "process", "Next": "Done"},
                    "Done": {"Type": "Succeed"},
                },
            }
        )
    )
    result = runner.invoke(app, ["statemachine", "lint", str(good)])
    assert result.exit_code == 0
    assert "good.asl.json: OK (2 states)" in result.stdout

    bad = tmp_path / "bad.asl.json"
    bad.write_text(
        json.dumps({"StartAt": "A", "States": {"A": {"Type": "Task", "Resource": "a"}}})
    )
    result = runner.invoke(app, ["statemachine", "lint", str(bad)])
    assert result.exit_code == 1
    assert "$.States.A: needs Next or End" in result.stdout

    result = runner.invoke(app, ["statemachine", "lint", str(tmp_path / "missing.json")])
    assert result.exit_code == 1
    assert "Specified path does not exist" in result.stdout
