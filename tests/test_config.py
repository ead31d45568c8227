from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from productflow_agent.config import AgentLoopConfig, ContextConfig, Settings, load_settings


def test_defaults():
    settings = Settings()
    assert settings.agent.max_iterations == 3
    assert settings.agent.pass_score == 85
    assert settings.context.conversation_messages == 8
    assert settings.context.artifact_limit == 24


def test_environment_overrides_nested_values(monkeypatch):
    monkeypatch.setenv("PRODUCTFLOW_AGENT__MAX_ITERATIONS", "4")
    monkeypatch.setenv("PRODUCTFLOW_OPENAI__MODEL", "gpt-env")

    settings = Settings()

    assert settings.agent.max_iterations == 4
    assert settings.openai.model == "gpt-env"


@pytest.mark.parametrize("value", [0, 6])
def test_iteration_bound_is_validated(value):
    with pytest.raises(ValidationError):
        AgentLoopConfig(max_iterations=value)


def test_pass_score_is_a_percentage():
    with pytest.raises(ValidationError):
        AgentLoopConfig(pass_score=101)


def test_to_dict_redacts_api_key():
    settings = Settings(openai={"api_key": "sk-secret"})
    assert settings.to_dict()["openai"]["api_key"] == "***"


def test_load_settings_merges_file_and_overrides(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps({"agent": {"pass_score": 70}, "database": {"url": "sqlite:///file.db"}}),
        encoding="utf-8",
    )

    settings = load_settings(path, database={"url": "sqlite:///override.db"})

    assert settings.agent.pass_score == 70
    assert settings.database.url == "sqlite:///override.db"


def test_total_budget_sums_section_caps():
    config = ContextConfig(
        input_chars=1,
        conversation_chars=2,
        prior_outputs_total_chars=3,
        artifacts_total_chars=4,
        assets_total_chars=5,
    )
    assert config.total_budget() == 15
