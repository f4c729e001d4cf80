import pytest
import json
from taskflow_engine.config.settings import Settings, split_model_list


def test_model_list_accepts_comma_separated_and_json():
    assert split_model_list("gpt-4o-mini, claude-3-5-haiku ,") == ["gpt-4o-mini", "claude-3-5-haiku"]
    assert split_model_list('["deepseek-chat", "qwen-plus"]') == ["deepseek-chat", "qwen-plus"]


def test_settings_model_ladders():
    settings = Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        generator_models="model-a,model-b",
        trigger_models='["model-c"]'
    )

    assert settings.generator_model_list == ["model-a", "model-b"]
    assert settings.trigger_model_list == ["model-c"]
    assert settings.task_model_list


def test_empty_model_ladder_is_rejected():
    with pytest.raises(ValueError, match="at least one model"):
        Settings(generator_models=" , ")


def test_agent_event_triggers_parsing():
    raw = json.dumps({
        "gmail": ["gmail.new_email"],
        "slack": ["slack.message", "slack.reaction"]
    })

    settings = Settings(agent_event_triggers=raw)

    assert settings.get_event_ids_for_agents(["gmail", "calendar"]) == {"gmail": ["gmail.new_email"]}
    assert settings.get_event_ids_for_agents(["slack"])["slack"] == ["slack.message", "slack.reaction"]


def test_invalid_agent_event_triggers():
    with pytest.raises(ValueError, match="Invalid JSON"):
        Settings(agent_event_triggers="invalid json")
