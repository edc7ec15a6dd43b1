"""
Model backends and dispatcher.

Every backend turns a list of prompt segments into one generated string.
Transport failures, error statuses and payloads without generated text
all surface as GenerationError, so callers never branch on the backend.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
import time
from typing import Any, Dict, Mapping, Optional, Sequence

import groq
import httpx

from chatgate.core.config import Settings, settings as default_settings
from chatgate.core.errors import GenerationError
from chatgate.core.metrics import model_call_seconds, model_calls_in_flight, model_calls_total
from chatgate.features.quota.service import HOSTED_BACKEND, SELF_HOSTED_BACKEND
from chatgate.models.conversation import PromptSegment

logger = logging.getLogger(__name__)


class ModelBackend(ABC):
    name: str = "abstract"

    @abstractmethod
    async def generate(self, segments: Sequence[PromptSegment]) -> str:
        """Return the generated text or raise GenerationError."""

    def _fail(self, message: str, exc: Optional[BaseException] = None) -> GenerationError:
        logger.warning(
            "[model] generation failed",
            extra={"backend": self.name, "reason": message, "exc_type": type(exc).__name__ if exc else None},
        )
        return GenerationError(message, backend=self.name)


def _require_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


class HostedBackend(ModelBackend):
    """Hosted commercial API through the Groq SDK (chat completions)."""

    name = HOSTED_BACKEND

    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[groq.AsyncGroq] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> groq.AsyncGroq:
        if self._client is None:
            if not self.api_key:
                raise self._fail("GROQ_API_KEY is not configured")
            kwargs: Dict[str, Any] = {"api_key": self.api_key, "timeout": self.timeout, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = groq.AsyncGroq(**kwargs)
        return self._client

    async def generate(self, segments: Sequence[PromptSegment]) -> str:
        client = self._get_client()
        try:
            completion = await client.chat.completions.create(
                model=self.model,
                messages=[segment.as_chat_message() for segment in segments],
                stream=False,
            )
        except groq.APIStatusError as exc:
            raise self._fail(f"Hosted API returned status {exc.status_code}", exc) from exc
        except groq.GroqError as exc:
            raise self._fail(f"Hosted API request failed: {exc}", exc) from exc

        choices = getattr(completion, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        content = _require_text(getattr(message, "content", None))
        if content is None:
            raise self._fail("Hosted API response has no generated content")
        return content


class SelfHostedBackend(ModelBackend):
    """Self-hosted inference server (Ollama /api/chat, or OpenAI-compatible)."""

    name = SELF_HOSTED_BACKEND

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _extract(data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        # Ollama shape
        message = data.get("message")
        if isinstance(message, dict) and _require_text(message.get("content")):
            return message["content"]
        # OpenAI-compatible shape (vLLM, llama.cpp server)
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            inner = choices[0].get("message") or {}
            return _require_text(inner.get("content")) or _require_text(choices[0].get("text"))
        return _require_text(data.get("response"))

    async def generate(self, segments: Sequence[PromptSegment]) -> str:
        payload = {
            "model": self.model,
            "messages": [segment.as_chat_message() for segment in segments],
            "stream": False,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise self._fail(f"Self-hosted backend unreachable: {exc}", exc) from exc

        if response.status_code >= 400:
            raise self._fail(f"Self-hosted backend returned status {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise self._fail("Self-hosted backend returned invalid JSON", exc) from exc

        content = self._extract(data)
        if content is None:
            raise self._fail("Self-hosted backend response has no generated content")
        return content


class ModelDispatcher:
    """Routes a prompt to a named backend with a per-call timeout."""

    def __init__(self, backends: Mapping[str, ModelBackend], *, timeout: Optional[float] = None):
        self.backends = dict(backends)
        self.timeout = timeout

    def available(self) -> Sequence[str]:
        return tuple(self.backends)

    async def dispatch(self, backend_name: str, segments: Sequence[PromptSegment]) -> str:
        backend = self.backends.get(backend_name)
        if backend is None:
            raise GenerationError(f"Model backend '{backend_name}' is not configured", backend=backend_name)

        labels = {"backend": backend_name}
        model_calls_in_flight.inc(labels=labels)
        started = time.perf_counter()
        try:
            if self.timeout:
                content = await asyncio.wait_for(backend.generate(segments), timeout=self.timeout)
            else:
                content = await backend.generate(segments)
        except asyncio.TimeoutError as exc:
            model_calls_total.inc(labels={"backend": backend_name, "outcome": "timeout"})
            raise GenerationError(f"Model backend '{backend_name}' timed out", backend=backend_name) from exc
        except GenerationError:
            model_calls_total.inc(labels={"backend": backend_name, "outcome": "error"})
            raise
        except asyncio.CancelledError:
            model_calls_total.inc(labels={"backend": backend_name, "outcome": "cancelled"})
            raise
        finally:
            model_calls_in_flight.dec(labels=labels)
            model_call_seconds.observe(time.perf_counter() - started, labels=labels)

        model_calls_total.inc(labels={"backend": backend_name, "outcome": "ok"})
        return content


def build_dispatcher(cfg: Optional[Settings] = None) -> ModelDispatcher:
    cfg = cfg or default_settings
    backends = {
        HOSTED_BACKEND: HostedBackend(
            api_key=cfg.GROQ_API_KEY,
            model=cfg.HOSTED_MODEL,
            base_url=cfg.HOSTED_BASE_URL,
            timeout=cfg.MODEL_TIMEOUT_SECONDS,
        ),
        SELF_HOSTED_BACKEND: SelfHostedBackend(
            base_url=cfg.SELF_HOSTED_URL,
            model=cfg.SELF_HOSTED_MODEL,
            api_key=cfg.SELF_HOSTED_API_KEY,
            timeout=cfg.MODEL_TIMEOUT_SECONDS,
        ),
    }
    return ModelDispatcher(backends, timeout=cfg.MODEL_TIMEOUT_SECONDS)
