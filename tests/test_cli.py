from unittest.mock import AsyncMock

import pytest
from click.testing import CliRunner

from contextkeeper import db
from contextkeeper.cli import main


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_tools_lists_registry(runner: CliRunner) -> None:
    result = runner.invoke(main, ["tools"])
    assert result.exit_code == 0
    assert "Tools (37)" in result.output
    assert "session_start" in result.output


def test_call_rejects_bad_json(runner: CliRunner) -> None:
    result = runner.invoke(main, ["call", "get_system_status", "{not json"])
    assert result.exit_code == 2
    assert "not valid JSON" in result.output


def test_call_rejects_non_object(runner: CliRunner) -> None:
    result = runner.invoke(main, ["call", "get_system_status", "[1, 2]"])
    assert result.exit_code == 2
    assert "must be a JSON object" in result.output


def test_call_failure_exits_non_zero(runner: CliRunner) -> None:
    result = runner.invoke(main, ["call", "no_such_tool"])
    assert result.exit_code == 1
    assert "UnknownToolError" in result.output


def test_schema_check_reports_missing_tables(runner: CliRunner, monkeypatch) -> None:
    monkeypatch.setattr(db, "get_missing_tables", AsyncMock(return_value=["session_reminders"]))
    result = runner.invoke(main, ["schema-check"])
    assert result.exit_code == 1
    assert "session_reminders" in result.output


def test_schema_check_ready(runner: CliRunner, monkeypatch) -> None:
    monkeypatch.setattr(db, "get_missing_tables", AsyncMock(return_value=[]))
    result = runner.invoke(main, ["schema-check"])
    assert result.exit_code == 0
    assert "Schema ready" in result.output
