from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from productflow_agent.cli import main
from productflow_agent.sdk.openai_client import OpenAIClientFactory

from .fakes import BLOCKING_REVIEW, FakeModel


@pytest.fixture()
def model(monkeypatch) -> FakeModel:
    fake = FakeModel()
    monkeypatch.setattr(OpenAIClientFactory, "create", staticmethod(lambda config: fake))
    return fake


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(main, ["--database-url", "sqlite:///pf.db", *args])


def test_init_and_run_step(model):
    runner = CliRunner()
    with runner.isolated_filesystem():
        created = _invoke(runner, "init", "Invoice helper", "--requirement", "Invoices for freelancers")
        assert created.exit_code == 0, created.output
        assert "Created project 1" in created.output

        result = _invoke(runner, "run-step", "1", "0")
        assert result.exit_code == 0, result.output
        assert "passed=True" in result.output
        assert "Final deliverable text" in result.output

        trace = _invoke(runner, "trace", "1", "0")
        assert trace.exit_code == 0, trace.output
        assert "status=completed" in trace.output
        assert " - plan:" in trace.output

        raw = _invoke(runner, "trace", "1", "0", "--json")
        payload = json.loads(raw.output)
        assert [action["action_type"] for action in payload["actions"]][0] == "context"


def test_run_step_reports_degraded_result(model):
    model.reviews = [BLOCKING_REVIEW] * 3
    runner = CliRunner()
    with runner.isolated_filesystem():
        _invoke(runner, "init", "Invoice helper", "--requirement", "Invoices")
        result = _invoke(runner, "run-step", "1", "0")
        assert result.exit_code == 0, result.output
        assert "rounds=3" in result.output
        assert "passed=False" in result.output


def test_run_step_requires_previous_phase(model):
    runner = CliRunner()
    with runner.isolated_filesystem():
        _invoke(runner, "init", "Invoice helper", "--requirement", "Invoices")
        result = _invoke(runner, "run-step", "1", "2")
        assert result.exit_code == 1
        assert "Previous phase (1) not completed" in result.output


def test_analyze_change_and_apply(model):
    model.change = {"intent": "scope_change", "recommendedStartStep": 0, "reason": "New audience"}
    runner = CliRunner()
    with runner.isolated_filesystem():
        _invoke(runner, "init", "Invoice helper", "--requirement", "Invoices")
        analysis = _invoke(runner, "analyze-change", "1", "Add agencies")
        assert analysis.exit_code == 0, analysis.output
        assert "Intent: scope_change" in analysis.output
        assert "Reason: New audience" in analysis.output

        applied = _invoke(runner, "apply-change", "1", "0", "--request", "Add agencies")
        assert applied.exit_code == 0, applied.output
        assert "Reset phases: 0, 1, 2, 3, 4, 5, 6, 7, 8" in applied.output


def test_phase_argument_is_range_checked(model):
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = _invoke(runner, "run-step", "1", "9")
        assert result.exit_code == 2


def test_trace_without_runs(model):
    runner = CliRunner()
    with runner.isolated_filesystem():
        _invoke(runner, "init", "Invoice helper", "--requirement", "Invoices")
        result = _invoke(runner, "trace", "1", "4")
        assert result.exit_code == 0
        assert "No runs recorded" in result.output
