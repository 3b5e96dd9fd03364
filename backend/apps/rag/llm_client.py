"""
LLM Client Abstraction Layer.

Provides a unified streaming interface for chat completions that can switch
between:
- OpenAI-compatible APIs (OpenAI, Azure OpenAI, Groq, local servers, ...)
- Ollama (local inference)

Clients yield text deltas in generation order. Closing the generator closes
the upstream HTTP response, which is how a client disconnect stops
generation.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional

import httpx
from django.conf import settings

from apps.rag.deadline import RequestDeadline
from apps.rag.errors import DeadlineExceeded, UpstreamUnavailable

logger = logging.getLogger(__name__)


class LLMError(UpstreamUnavailable):
    """Raised when an LLM call fails."""
    pass


class BaseLLMClient(ABC):
    """Abstract base class for streaming LLM clients."""

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self.transport = transport
        self.read_timeout = float(getattr(settings, 'LLM_STREAM_READ_TIMEOUT', 30))
        self.temperature = float(getattr(settings, 'LLM_TEMPERATURE', 0.7))

    @abstractmethod
    def stream_chat(
        self,
        messages: List[Dict[str, str]],
        deadline: Optional[RequestDeadline] = None,
    ) -> Iterator[str]:
        """
        Stream a chat completion.

        Args:
            messages: Ordered messages with 'role' and 'content' keys
            deadline: Request budget; no phase of the call may outlive it and
                the stream is abandoned if no text arrives in time

        Yields:
            Non-empty text deltas in generation order

        Raises:
            LLMError: If the request fails or the stream breaks off
        """
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name being used."""
        pass

    def _timeout(self, deadline: Optional[RequestDeadline]) -> httpx.Timeout:
        if deadline is None:
            return httpx.Timeout(self.read_timeout)
        # Every phase, including the wait for the first chunk, ends by the deadline
        remaining = deadline.remaining()
        return httpx.Timeout(remaining, read=min(self.read_timeout, remaining))

    @staticmethod
    def _check_started(deadline: Optional[RequestDeadline], started: bool) -> None:
        if deadline is not None and not started and deadline.expired:
            raise DeadlineExceeded(
                f"Completion did not start within {deadline.seconds:.0f}s"
            )


class OpenAICompatibleClient(BaseLLMClient):
    """
    LLM client for OpenAI-compatible APIs.

    Reads the ``text/event-stream`` body of ``/chat/completions``: one
    ``data: {json}`` line per chunk, terminated by ``data: [DONE]``.
    """

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(transport)
        self.api_key = getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
        self.model = getattr(settings, 'OPENAI_CHAT_MODEL', 'gpt-4-turbo')

        if not self.api_key:
            raise LLMError("OPENAI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def stream_chat(
        self,
        messages: List[Dict[str, str]],
        deadline: Optional[RequestDeadline] = None,
    ) -> Iterator[str]:
        logger.info(f"Calling OpenAI API (stream): model={self.model}, temp={self.temperature}")

        try:
            with httpx.Client(timeout=self._timeout(deadline), transport=self.transport) as client:
                with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json={
                        "model": self.model,
                        "messages": messages,
                        "temperature": self.temperature,
                        "stream": True,
                    },
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    }
                ) as response:
                    response.raise_for_status()

                    started = False
                    for line in response.iter_lines():
                        self._check_started(deadline, started)
                        if not line.startswith("data:"):
                            continue
                        payload = line[len("data:"):].strip()
                        if payload == "[DONE]":
                            return

                        data = json.loads(payload)
                        if "error" in data:
                            raise LLMError(f"OpenAI stream error: {data['error']}")

                        choices = data.get("choices") or []
                        if not choices:
                            continue
                        delta = (choices[0].get("delta") or {}).get("content")
                        if delta:
                            started = True
                            yield delta

            raise LLMError("OpenAI stream ended before completion")

        except httpx.HTTPStatusError as e:
            logger.error(f"OpenAI HTTP error: {e}")
            raise LLMError(f"OpenAI API error: {e.response.status_code}")
        except httpx.TimeoutException:
            logger.error("OpenAI request timed out")
            raise LLMError("OpenAI API timed out")
        except httpx.RequestError as e:
            logger.error(f"OpenAI connection error: {e}")
            raise LLMError("Could not connect to OpenAI API")
        except (ValueError, AttributeError, TypeError) as e:
            logger.error(f"Unexpected OpenAI stream format: {e}")
            raise LLMError("Invalid response from OpenAI API")


class OllamaClient(BaseLLMClient):
    """
    LLM client for Ollama local inference.

    ``/api/chat`` streams newline-delimited JSON objects; the last one has
    ``"done": true``.
    """

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(transport)
        self.base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        self.model = getattr(settings, 'OLLAMA_CHAT_MODEL', 'llama3.2')

    @property
    def model_name(self) -> str:
        return self.model

    def stream_chat(
        self,
        messages: List[Dict[str, str]],
        deadline: Optional[RequestDeadline] = None,
    ) -> Iterator[str]:
        logger.info(f"Calling Ollama chat (stream): model={self.model}, temp={self.temperature}")

        try:
            with httpx.Client(timeout=self._timeout(deadline), transport=self.transport) as client:
                with client.stream(
                    "POST",
                    f"{self.base_url}/api/chat",
                    json={
                        "model": self.model,
                        "messages": messages,
                        "stream": True,
                        "options": {
                            "temperature": self.temperature,
                        }
                    }
                ) as response:
                    response.raise_for_status()

                    started = False
                    for line in response.iter_lines():
                        self._check_started(deadline, started)
                        if not line.strip():
                            continue

                        data = json.loads(line)
                        if "error" in data:
                            raise LLMError(f"Ollama stream error: {data['error']}")

                        delta = (data.get("message") or {}).get("content")
                        if delta:
                            started = True
                            yield delta
                        if data.get("done"):
                            return

            raise LLMError("Ollama stream ended before completion")

        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama HTTP error: {e}")
            raise LLMError(f"Ollama service error: {e.response.status_code}")
        except httpx.TimeoutException:
            logger.error("Ollama request timed out")
            raise LLMError("Ollama service timed out")
        except httpx.RequestError as e:
            logger.error(f"Ollama connection error: {e}")
            raise LLMError("Could not connect to Ollama")
        except (ValueError, AttributeError, TypeError) as e:
            logger.error(f"Unexpected Ollama stream format: {e}")
            raise LLMError("Invalid response from Ollama")


# =============================================================================
# Client Factory
# =============================================================================

_client_instance: Optional[BaseLLMClient] = None


def get_llm_client() -> BaseLLMClient:
    """
    Get the configured LLM client instance.

    Uses LLM_PROVIDER setting to determine which client to use:
    - "openai" (default): OpenAI or compatible API
    - "ollama": Local Ollama inference

    Returns:
        Configured LLM client instance
    """
    global _client_instance

    # Return cached instance if available
    if _client_instance is not None:
        return _client_instance

    provider = getattr(settings, 'LLM_PROVIDER', 'openai').lower()

    if provider == 'ollama':
        logger.info("Using Ollama for LLM inference")
        _client_instance = OllamaClient()
    else:
        logger.info("Using OpenAI-compatible API for LLM inference")
        _client_instance = OpenAICompatibleClient()

    return _client_instance


def reset_llm_client():
    """Reset the cached client instance. Useful for testing."""
    global _client_instance
    _client_instance = None
