import os

import pytest

from activity_categorizer.config import Settings


def test_settings_default_values(mocker):
    """
    Test that the Settings class loads default values correctly when no
    environment variables are set.
    """
    mocker.patch.dict(os.environ, {}, clear=True)

    settings = Settings()

    assert settings.LLM_PROVIDER == "ollama"
    assert settings.OLLAMA_BASE_URL == "http://localhost:11434"
    assert settings.OPENAI_API_KEY is None
    assert settings.GENERATIVE_MODEL == "gemma3"
    assert settings.EMBEDDING_MODEL == "all-minilm"
    assert settings.EMBEDDINGS_ENABLED is True
    assert settings.MAX_TOKENS == 2000
    assert settings.TEMPERATURE == 0.7
    assert settings.REQUEST_TIMEOUT == 60.0
    assert settings.RULES_PATH == "activity_rules.csv"
    assert settings.SEED_RULES_PATH is None
    assert settings.CLASSIFY_STRATEGY == "merge"
    assert settings.MATCH_CONFIDENCE_THRESHOLD == "B"
    assert settings.BATCH_WORKERS == 4
    assert settings.LOG_FORMAT == "console"


def test_settings_from_environment_variables(mocker):
    """
    Test that the Settings class correctly loads values from environment variables.
    """
    mocker.patch.dict(
        os.environ,
        {
            "OLLAMA_BASE_URL": "http://ollama:11434/",
            "GENERATIVE_MODEL": "llama3.2",
            "EMBEDDINGS_ENABLED": "false",
            "MAX_TOKENS": "512",
            "TEMPERATURE": "0.1",
            "REQUEST_TIMEOUT": "5",
            "RULES_PATH": "/data/rules.csv",
            "CLASSIFY_STRATEGY": "rules_first",
            "MATCH_CONFIDENCE_THRESHOLD": "c",
            "BATCH_WORKERS": "8",
            "LOG_FORMAT": "json",
            "LOG_LEVEL": "debug",
        },
        clear=True,
    )

    settings = Settings()

    assert settings.OLLAMA_BASE_URL == "http://ollama:11434"
    assert settings.GENERATIVE_MODEL == "llama3.2"
    assert settings.EMBEDDINGS_ENABLED is False
    assert settings.MAX_TOKENS == 512
    assert settings.TEMPERATURE == 0.1
    assert settings.REQUEST_TIMEOUT == 5.0
    assert settings.RULES_PATH == "/data/rules.csv"
    assert settings.CLASSIFY_STRATEGY == "rules_first"
    assert settings.MATCH_CONFIDENCE_THRESHOLD == "C"
    assert settings.BATCH_WORKERS == 8
    assert settings.LOG_FORMAT == "json"
    assert settings.LOG_LEVEL == "DEBUG"


def test_openai_configuration(mocker):
    """
    Test that the settings for the OpenAI provider are configured correctly.
    """
    mocker.patch.dict(
        os.environ,
        {
            "LLM_PROVIDER": "openai",
            "OPENAI_API_KEY": "test_api_key",
            "OPENAI_BASE_URL": "http://gateway:8080/v1",
        },
        clear=True,
    )

    settings = Settings()

    assert settings.LLM_PROVIDER == "openai"
    assert settings.OLLAMA_BASE_URL is None
    assert settings.OPENAI_API_KEY == "test_api_key"
    assert settings.OPENAI_BASE_URL == "http://gateway:8080/v1"
    assert settings.GENERATIVE_MODEL == "gpt-4o-mini"
    assert settings.EMBEDDING_MODEL == "text-embedding-3-small"


def test_openai_requires_api_key(mocker):
    mocker.patch.dict(os.environ, {"LLM_PROVIDER": "openai"}, clear=True)

    with pytest.raises(
        ValueError, match="Required environment variable 'OPENAI_API_KEY' is not set."
    ):
        Settings()


def test_invalid_llm_provider(mocker):
    """
    Test that an invalid LLM_PROVIDER value raises a ValueError.
    """
    mocker.patch.dict(os.environ, {"LLM_PROVIDER": "invalid_provider"}, clear=True)

    with pytest.raises(ValueError, match="LLM_PROVIDER must be 'ollama' or 'openai'"):
        Settings()


@pytest.mark.parametrize(
    "env, message",
    [
        ({"CLASSIFY_STRATEGY": "guess"}, "CLASSIFY_STRATEGY must be one of"),
        ({"MATCH_CONFIDENCE_THRESHOLD": "E"}, "MATCH_CONFIDENCE_THRESHOLD must be one of"),
        ({"MAX_TOKENS": "lots"}, "MAX_TOKENS must be an integer"),
        ({"BATCH_WORKERS": "0"}, "BATCH_WORKERS must be >= 1"),
        ({"REQUEST_TIMEOUT": "0"}, "REQUEST_TIMEOUT must be > 0"),
        ({"EMBEDDINGS_ENABLED": "maybe"}, "EMBEDDINGS_ENABLED must be a boolean"),
        ({"LOG_FORMAT": "xml"}, "LOG_FORMAT must be 'console' or 'json'"),
    ],
)
def test_invalid_values_raise(mocker, env, message):
    mocker.patch.dict(os.environ, env, clear=True)

    with pytest.raises(ValueError, match=message):
        Settings()
