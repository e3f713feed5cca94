"""
Configuration module for the activity categorizer.

This module centralizes the loading and validation of all configuration
parameters from environment variables. It provides a single `Settings`
class that acts as a container for all configurable values, ensuring
that they are defined in one place and can be easily imported and used
throughout the application.
"""

import os
from typing import Literal

VALID_STRATEGIES = ("merge", "rules_first", "generative")
VALID_GRADES = ("A", "B", "C", "D", "F")


class Settings:
    """
    A container for all configuration settings, loaded from environment variables.

    This class centralizes configuration, providing default values for optional
    settings and raising errors for missing or invalid settings.
    """

    # --- LLM Provider Configuration ---
    LLM_PROVIDER: Literal["ollama", "openai"]
    OLLAMA_BASE_URL: str | None
    OPENAI_API_KEY: str | None
    OPENAI_BASE_URL: str | None

    # --- Model Selection ---
    GENERATIVE_MODEL: str
    EMBEDDING_MODEL: str
    EMBEDDINGS_ENABLED: bool

    # --- Decoding Parameters ---
    MAX_TOKENS: int
    TEMPERATURE: float
    REQUEST_TIMEOUT: float

    # --- Rule Storage ---
    RULES_PATH: str
    SEED_RULES_PATH: str | None
    SYSTEM_PROMPT_PATH: str | None

    # --- Classification Policy ---
    CLASSIFY_STRATEGY: Literal["merge", "rules_first", "generative"]
    MATCH_CONFIDENCE_THRESHOLD: str
    BATCH_WORKERS: int

    # --- Logging ---
    LOG_LEVEL: str
    LOG_FORMAT: Literal["console", "json"]

    def __init__(self):
        """
        Loads settings from environment variables and performs validation.
        """
        # --- LLM Provider Configuration ---
        self.LLM_PROVIDER = os.getenv("LLM_PROVIDER", "ollama").strip().lower()
        if self.LLM_PROVIDER not in ("ollama", "openai"):
            raise ValueError("LLM_PROVIDER must be 'ollama' or 'openai'")

        # --- Model Selection ---
        if self.LLM_PROVIDER == "ollama":
            self.OLLAMA_BASE_URL = os.getenv(
                "OLLAMA_BASE_URL", "http://localhost:11434"
            ).rstrip("/")
            self.OPENAI_API_KEY = None  # Not used for Ollama
            self.OPENAI_BASE_URL = None
            self.GENERATIVE_MODEL = os.getenv("GENERATIVE_MODEL", "gemma3")
            self.EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "all-minilm")
        else:  # openai
            self.OLLAMA_BASE_URL = None
            self.OPENAI_API_KEY = self._get_required_env("OPENAI_API_KEY")
            self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
            self.GENERATIVE_MODEL = os.getenv("GENERATIVE_MODEL", "gpt-4o-mini")
            self.EMBEDDING_MODEL = os.getenv(
                "EMBEDDING_MODEL", "text-embedding-3-small"
            )
        self.EMBEDDINGS_ENABLED = self._get_bool_env("EMBEDDINGS_ENABLED", True)

        # --- Decoding Parameters ---
        self.MAX_TOKENS = self._get_int_env("MAX_TOKENS", 2000, minimum=1)
        self.TEMPERATURE = self._get_float_env("TEMPERATURE", 0.7)
        self.REQUEST_TIMEOUT = self._get_float_env("REQUEST_TIMEOUT", 60.0)
        if self.REQUEST_TIMEOUT <= 0:
            raise ValueError("REQUEST_TIMEOUT must be > 0")

        # --- Rule Storage ---
        self.RULES_PATH = os.getenv("RULES_PATH", "activity_rules.csv")
        self.SEED_RULES_PATH = os.getenv("SEED_RULES_PATH") or None
        self.SYSTEM_PROMPT_PATH = os.getenv("SYSTEM_PROMPT_PATH") or None

        # --- Classification Policy ---
        self.CLASSIFY_STRATEGY = os.getenv("CLASSIFY_STRATEGY", "merge").strip().lower()
        if self.CLASSIFY_STRATEGY not in VALID_STRATEGIES:
            raise ValueError(
                "CLASSIFY_STRATEGY must be one of: " + ", ".join(VALID_STRATEGIES)
            )
        self.MATCH_CONFIDENCE_THRESHOLD = (
            os.getenv("MATCH_CONFIDENCE_THRESHOLD", "B").strip().upper()
        )
        if self.MATCH_CONFIDENCE_THRESHOLD not in VALID_GRADES:
            raise ValueError(
                "MATCH_CONFIDENCE_THRESHOLD must be one of: " + ", ".join(VALID_GRADES)
            )
        self.BATCH_WORKERS = self._get_int_env("BATCH_WORKERS", 4, minimum=1)

        # --- Logging ---
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", "console").strip().lower()
        if self.LOG_FORMAT not in ("console", "json"):
            raise ValueError("LOG_FORMAT must be 'console' or 'json'")

    def _get_required_env(self, var_name: str) -> str:
        """
        Gets a required environment variable, raising an error if it's not set.
        """
        value = os.getenv(var_name)
        if value is None:
            raise ValueError(f"Required environment variable '{var_name}' is not set.")
        return value

    def _get_int_env(self, var_name: str, default: int, minimum: int | None = None) -> int:
        raw = os.getenv(var_name)
        if raw is None or not raw.strip():
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(f"{var_name} must be an integer, got {raw!r}") from None
        if minimum is not None and value < minimum:
            raise ValueError(f"{var_name} must be >= {minimum}")
        return value

    def _get_float_env(self, var_name: str, default: float) -> float:
        raw = os.getenv(var_name)
        if raw is None or not raw.strip():
            return default
        try:
            return float(raw)
        except ValueError:
            raise ValueError(f"{var_name} must be a number, got {raw!r}") from None

    def _get_bool_env(self, var_name: str, default: bool) -> bool:
        raw = os.getenv(var_name)
        if raw is None or not raw.strip():
            return default
        value = raw.strip().lower()
        if value in ("1", "true", "yes", "on"):
            return True
        if value in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"{var_name} must be a boolean, got {raw!r}")
