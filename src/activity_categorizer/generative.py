"""
Generative Classification
=========================

This module asks a generative model to categorize an activity description
and turns its free-form reply into a `CategoryResult`.

Model output is treated as untrusted input and parsed in two stages:

1. extraction: strict JSON parsing, then a retry on the text between the
   first ``{`` and the last ``}`` (covers markdown fences and chatter around
   the object). Failure raises `UnparsableResponse` with the raw text.
2. validation: the object must carry a non-empty ``task`` and scalar values
   for the other fields. Failure raises `SchemaError`.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass

import openai
import requests
import structlog

from .config import Settings
from .errors import DecodeError, SchemaError, UnparsableResponse
from .llm import OllamaAPIMixin, create_openai_client, translate_openai_error

log = structlog.get_logger(__name__)

CONFIDENCE_LEVELS = {"high", "medium", "low"}


@dataclass(frozen=True)
class CategoryResult:
    task: str
    ticket_ref: str = ""
    timespan: str = ""
    confidence: str = ""
    reason: str = ""
    strategy: str = "generative"

    def to_dict(self) -> dict[str, str]:
        return {
            "task": self.task,
            "ticketRef": self.ticket_ref,
            "timespan": self.timespan,
            "confidence": self.confidence,
            "reason": self.reason,
            "strategy": self.strategy,
        }


def _extract_json(text: str) -> object:
    """Parse JSON from raw model output, trimming surrounding text if needed."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


def parse_category_response(text: str) -> CategoryResult:
    """
    Parse and validate the model's reply.

    Accepts the aliases ``jira`` for ``ticketRef`` and ``time``/``duration``
    for ``timespan``. Missing optional fields become empty strings.
    """
    raw = text.strip()
    if not raw:
        raise UnparsableResponse("Generated text is empty", raw_text=text)

    try:
        data = _extract_json(raw)
    except json.JSONDecodeError as e:
        raise UnparsableResponse(
            f"Generated text does not contain a JSON object: {e}", raw_text=text
        ) from e

    if not isinstance(data, dict):
        raise SchemaError("Generated JSON is not an object", raw_text=text)

    def get_str(*keys: str) -> str:
        for key in keys:
            value = data.get(key)
            if value is None:
                continue
            if isinstance(value, (dict, list)):
                raise SchemaError(f"Field '{key}' must be a string", raw_text=text)
            return str(value).strip()
        return ""

    task = get_str("task")
    if not task:
        raise SchemaError("Generated JSON has no task", raw_text=text)

    confidence = get_str("confidence")
    if confidence.lower() in CONFIDENCE_LEVELS:
        confidence = confidence.lower()

    return CategoryResult(
        task=task,
        ticket_ref=get_str("ticketRef", "ticket_ref", "jira"),
        timespan=get_str("timespan", "time", "duration"),
        confidence=confidence,
        reason=get_str("reason"),
    )


class GenerativeClassifier(ABC):
    """Abstract base class for generative classifiers."""

    @abstractmethod
    def classify(self, description: str, system_prompt: str) -> CategoryResult:
        """Classify ``description`` under ``system_prompt``."""

    def close(self) -> None:
        """Release any held connections."""

    def _parse(self, text: str, *, model: str) -> CategoryResult:
        try:
            return parse_category_response(text)
        except (UnparsableResponse, SchemaError) as e:
            log.warning(
                "Classification response invalid",
                model=model,
                error=e.message,
                raw_text=text,
            )
            raise


class OllamaGenerativeClassifier(OllamaAPIMixin, GenerativeClassifier):
    """Generative classifier for Ollama's ``/api/generate`` endpoint."""

    def __init__(self, settings: Settings, session: requests.Session | None = None):
        self.settings = settings
        self._session = session or requests.Session()

    def classify(self, description: str, system_prompt: str) -> CategoryResult:
        payload = {
            "model": self.settings.GENERATIVE_MODEL,
            "prompt": description,
            "system": system_prompt,
            "stream": False,
            "max_tokens": self.settings.MAX_TOKENS,
            "temperature": self.settings.TEMPERATURE,
            # Ollama reads decoding parameters from "options"
            "options": {
                "num_predict": self.settings.MAX_TOKENS,
                "temperature": self.settings.TEMPERATURE,
            },
        }
        data = self._post("/api/generate", payload, operation="Generate request")

        text = data.get("response")
        if not isinstance(text, str):
            raise DecodeError("Generate response has no text", service="ollama")
        if data.get("done") is False:
            log.warning("Generate response is incomplete", model=data.get("model"))

        log.debug(
            "Received generated text",
            model=data.get("model"),
            chars=len(text),
        )
        return self._parse(text, model=self.settings.GENERATIVE_MODEL)


class OpenAIGenerativeClassifier(GenerativeClassifier):
    """Generative classifier using OpenAI-compatible chat completions."""

    def __init__(self, settings: Settings, client: openai.OpenAI | None = None):
        self.settings = settings
        self._client = client or create_openai_client(settings)

    def classify(self, description: str, system_prompt: str) -> CategoryResult:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": description},
        ]
        try:
            response = self._client.chat.completions.create(
                model=self.settings.GENERATIVE_MODEL,
                messages=messages,
                max_tokens=self.settings.MAX_TOKENS,
                temperature=self.settings.TEMPERATURE,
            )
        except openai.APIError as e:
            raise translate_openai_error(e, operation="Chat completion") from e

        try:
            text = response.choices[0].message.content or ""
        except (AttributeError, IndexError, TypeError) as e:
            raise DecodeError("Chat completion has no choices", service="openai") from e

        return self._parse(text, model=self.settings.GENERATIVE_MODEL)

    def close(self) -> None:
        self._client.close()


def create_generative_classifier(settings: Settings) -> GenerativeClassifier:
    if settings.LLM_PROVIDER == "ollama":
        return OllamaGenerativeClassifier(settings)
    return OpenAIGenerativeClassifier(settings)
