"""
Shared LLM helpers.

This module centralizes the outbound calls to the model services so the
generative classifier and the embedding clients report failures the same
way. Two backends are supported:

- Ollama's native REST API, called with ``requests``.
- Any OpenAI-compatible API, called through the ``openai`` SDK.

No retries happen here: failures surface as typed errors for the caller to
act on.

``REQUEST_TIMEOUT`` bounds each call as a whole. ``requests`` applies its
``timeout`` to the connect step and to each socket read, so a server that
trickles bytes could otherwise keep a call alive indefinitely; the Ollama
body is therefore streamed and checked against a deadline. The ``openai``
SDK is given the same value as its ``httpx`` timeout, which likewise
applies per connect/read/write step.
"""

from __future__ import annotations

import json
from time import monotonic

import openai
import requests
import structlog

from .config import Settings
from .errors import DecodeError, ServiceError, ServiceTimeout, ServiceUnavailable

log = structlog.get_logger(__name__)

MAX_ERROR_BODY_CHARS = 2000
BODY_CHUNK_BYTES = 8192


def create_openai_client(settings: Settings) -> openai.OpenAI:
    """Build an OpenAI-compatible client with SDK-level retries disabled."""
    return openai.OpenAI(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        timeout=settings.REQUEST_TIMEOUT,
        max_retries=0,
    )


def translate_openai_error(error: openai.APIError, *, operation: str) -> ServiceError:
    """Map an ``openai`` SDK exception onto the pipeline's service errors."""
    if isinstance(error, openai.APITimeoutError):
        return ServiceTimeout(f"{operation} timed out", service="openai")
    if isinstance(error, openai.APIConnectionError):
        return ServiceUnavailable(f"{operation} failed: {error}", service="openai")
    if isinstance(error, openai.APIStatusError):
        return ServiceError(
            f"{operation} returned HTTP {error.status_code}",
            service="openai",
            status_code=error.status_code,
            body=_truncate(error.response.text if error.response is not None else ""),
        )
    return ServiceError(f"{operation} failed: {error}", service="openai")


class OllamaAPIMixin:
    """
    Mixin providing a JSON POST against the Ollama REST API.

    The mixin expects ``self.settings`` to expose ``OLLAMA_BASE_URL`` and
    ``REQUEST_TIMEOUT``, and ``self._session`` to be a ``requests.Session``.
    """

    settings: Settings
    _session: requests.Session

    def _post(self, path: str, payload: dict, *, operation: str) -> dict:
        """POST ``payload`` to ``path`` and return the decoded JSON object."""
        url = f"{self.settings.OLLAMA_BASE_URL}{path}"
        timeout = self.settings.REQUEST_TIMEOUT
        deadline = monotonic() + timeout
        try:
            response = self._session.post(url, json=payload, timeout=timeout, stream=True)
            with response:
                body = self._read_body(response, deadline, operation=operation)
        except requests.exceptions.Timeout as e:
            raise ServiceTimeout(f"{operation} timed out: {e}", service="ollama") from e
        except requests.exceptions.ConnectionError as e:
            raise ServiceUnavailable(f"{operation} failed: {e}", service="ollama") from e
        except requests.exceptions.RequestException as e:
            raise ServiceError(f"{operation} failed: {e}", service="ollama") from e

        text = body.decode(response.encoding or "utf-8", errors="replace")
        if not response.ok:
            log.warning(
                "Model service returned an error status",
                operation=operation,
                status_code=response.status_code,
            )
            raise ServiceError(
                f"{operation} returned HTTP {response.status_code}",
                service="ollama",
                status_code=response.status_code,
                body=_truncate(text),
            )

        try:
            data = json.loads(body)
        except ValueError as e:
            raise DecodeError(
                f"{operation} response is not valid JSON",
                service="ollama",
                status_code=response.status_code,
                body=_truncate(text),
            ) from e
        if not isinstance(data, dict):
            raise DecodeError(
                f"{operation} response is not a JSON object",
                service="ollama",
                status_code=response.status_code,
                body=_truncate(text),
            )
        return data

    def _read_body(
        self, response: requests.Response, deadline: float, *, operation: str
    ) -> bytes:
        """Read the streamed body, raising ServiceTimeout once ``deadline`` passes."""
        chunks = []
        for chunk in response.iter_content(chunk_size=BODY_CHUNK_BYTES):
            chunks.append(chunk)
            if monotonic() > deadline:
                raise ServiceTimeout(
                    f"{operation} exceeded {self.settings.REQUEST_TIMEOUT}s",
                    service="ollama",
                )
        return b"".join(chunks)

    def close(self) -> None:
        self._session.close()


def _truncate(text: str) -> str:
    if len(text) <= MAX_ERROR_BODY_CHARS:
        return text
    return text[:MAX_ERROR_BODY_CHARS] + "..."
