"""
Tests for configuration module.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from metaclaw.config import Settings


def test_settings_default_values():
    """Test that settings have sensible defaults."""
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

        assert settings.app_name == "metaclaw"
        assert settings.default_provider == "openai"
        assert settings.restrict_to_workspace is True
        assert settings.allow_self_modify is False
        assert settings.context.compression_threshold == 0.8
        assert settings.context.keep_recent_messages == 20
        assert settings.recall.limit == 6
        assert settings.session_ids == ["default"]


def test_settings_from_env():
    """Test loading settings from environment variables."""
    env = {
        "ANTHROPIC_API_KEY": "test_anthropic_key",
        "DEFAULT_MODEL": "claude-opus-4",
        "ALLOW_SELF_MODIFY": "true",
        "CONTEXT__CAP": "32000",
        "RECALL__SALIENCE_WEIGHT": "0.4",
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings(_env_file=None)

        assert settings.anthropic_api_key == "test_anthropic_key"
        assert settings.default_model == "claude-opus-4"
        assert settings.allow_self_modify is True
        assert settings.context.cap == 32000
        assert settings.recall.salience_weight == 0.4


def test_session_ids_list():
    """Test parsing the session list."""
    with patch.dict(os.environ, {"SESSIONS": " work, home ,,research "}, clear=True):
        settings = Settings(_env_file=None)

        assert settings.session_ids == ["work", "home", "research"]


def test_session_ids_empty():
    """Test an empty session list."""
    with patch.dict(os.environ, {"SESSIONS": ""}, clear=True):
        settings = Settings(_env_file=None)

        assert settings.session_ids == []


def test_workspace_for(tmp_path):
    """Test per-session workspace resolution."""
    settings = Settings(_env_file=None, workspace_root=tmp_path)

    assert settings.workspace_for("work") == (tmp_path / "work").resolve()


def test_get_llm_config():
    """Test getting LLM configuration."""
    env = {
        "ANTHROPIC_API_KEY": "test_key",
        "DEFAULT_PROVIDER": "anthropic",
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings(_env_file=None)
        config = settings.get_llm_config()

        assert config.provider == "anthropic"
        assert config.api_key == "test_key"
        assert "claude" in config.model.lower()


def test_get_llm_config_openai():
    """Test getting OpenAI LLM configuration."""
    env = {
        "OPENAI_API_KEY": "test_openai_key",
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings(_env_file=None)
        config = settings.get_llm_config("openai")

        assert config.provider == "openai"
        assert config.api_key == "test_openai_key"
        assert config.embedding_api_key == "test_openai_key"
        assert "gpt" in config.model.lower()


def test_get_llm_config_openrouter():
    """Test OpenRouter defaults."""
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "or-key"}, clear=True):
        config = Settings(_env_file=None).get_llm_config("openrouter")

        assert config.api_key == "or-key"
        assert config.base_url == "https://openrouter.ai/api/v1"


def test_invalid_context_settings():
    """Test validation of context budgets."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, context={"compression_threshold": 1.5})
    with pytest.raises(ValidationError):
        Settings(_env_file=None, context={"keep_recent_messages": 0})


def test_to_compaction_config():
    """Test the bridge to the runtime context config."""
    settings = Settings(
        _env_file=None,
        context_window=200_000,
        context={"cap": 16_000, "compression_threshold": 0.7, "prune_target": 0.9},
    )

    config = settings.to_compaction_config()

    assert config.context_limit == 16_000
    assert config.compression_threshold == 0.7
    assert config.effective_prune_target == 0.9
    assert config.keep_recent == 16


def test_to_recall_options():
    """Test the bridge to the runtime recall options."""
    settings = Settings(
        _env_file=None,
        recall={
            "salience_weight": 0.5,
            "recall_weight": 0.2,
            "limit": 3,
            "recent_recall_penalty": 0.6,
            "recent_recall_window": 120,
        },
    )

    options = settings.to_recall_options()

    assert options.salience_weight == 0.5
    assert options.recall_weight == 0.2
    assert options.limit == 3
    assert options.recent_recall_penalty == 0.6
    assert options.recent_recall_window == 120.0
    assert options.mark_as_recalled is True

    defaults = Settings(_env_file=None).to_recall_options()
    assert defaults.recent_recall_penalty == 0.85
    assert defaults.recent_recall_window == 30.0


def test_validate_provider():
    """Test configuration problem reporting."""
    with patch.dict(os.environ, {}, clear=True):
        problems = Settings(_env_file=None).validate_provider()
        assert any("No API key" in p for p in problems)
        assert any("Embeddings" in p for p in problems)

    with patch.dict(os.environ, {"OPENAI_API_KEY": "sk"}, clear=True):
        assert Settings(_env_file=None).validate_provider() == []
