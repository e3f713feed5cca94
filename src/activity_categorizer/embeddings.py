"""
Embedding Clients
=================

Turn a text string into a vector using an external embedding model. Both
clients expose ``embed(text) -> list[float]`` and raise the pipeline's
service errors; neither retries.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import openai
import requests
import structlog

from .config import Settings
from .errors import DecodeError
from .llm import OllamaAPIMixin, create_openai_client, translate_openai_error

log = structlog.get_logger(__name__)


def _as_vector(value: object, *, service: str) -> list[float]:
    if not isinstance(value, list) or not value:
        raise DecodeError("Embedding response has no embedding vector", service=service)
    vector = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            raise DecodeError("Embedding vector contains non-numeric values", service=service)
        vector.append(float(item))
    return vector


class EmbeddingClient(ABC):
    """Abstract base class for embedding clients."""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Return the embedding vector for ``text``."""

    def close(self) -> None:
        """Release any held connections."""


class OllamaEmbeddingClient(OllamaAPIMixin, EmbeddingClient):
    """Embedding client for Ollama's ``/api/embeddings`` endpoint."""

    def __init__(self, settings: Settings, session: requests.Session | None = None):
        self.settings = settings
        self._session = session or requests.Session()

    def embed(self, text: str) -> list[float]:
        payload = {"model": self.settings.EMBEDDING_MODEL, "prompt": text}
        data = self._post("/api/embeddings", payload, operation="Embedding request")
        return _as_vector(data.get("embedding"), service="ollama")


class OpenAIEmbeddingClient(EmbeddingClient):
    """Embedding client for OpenAI-compatible ``embeddings.create``."""

    def __init__(self, settings: Settings, client: openai.OpenAI | None = None):
        self.settings = settings
        self._client = client or create_openai_client(settings)

    def embed(self, text: str) -> list[float]:
        try:
            response = self._client.embeddings.create(
                model=self.settings.EMBEDDING_MODEL,
                input=text,
            )
        except openai.APIError as e:
            raise translate_openai_error(e, operation="Embedding request") from e

        try:
            value = response.data[0].embedding
        except (AttributeError, IndexError, TypeError) as e:
            raise DecodeError("Embedding response has no data", service="openai") from e
        return _as_vector(value, service="openai")

    def close(self) -> None:
        self._client.close()


def create_embedding_client(settings: Settings) -> EmbeddingClient | None:
    """Return the configured embedding client, or None when embeddings are disabled."""
    if not settings.EMBEDDINGS_ENABLED:
        log.info("Embedding matching disabled")
        return None
    if settings.LLM_PROVIDER == "ollama":
        return OllamaEmbeddingClient(settings)
    return OpenAIEmbeddingClient(settings)
