"""Ollama chat backend over plain HTTP with httpx."""

import logging
import time

import httpx

from metapanel.backends.base import FALLBACK_TEXT, BackendError, ChatBackend
from metapanel.models import ChatRequest, ChatResult

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"


def chat_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/chat"


def request_body(request: ChatRequest) -> dict:
    return {
        "model": request.model,
        "messages": [{"role": m.role.value, "content": m.content} for m in request.messages],
        "stream": False,
    }


class OllamaChatBackend(ChatBackend):
    """Ollama `/api/chat` backend with a fixed fallback sentence on failure."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_sec: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)

    def name(self) -> str:
        return "ollama"

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _post(self, request: ChatRequest) -> str:
        try:
            response = await self._client.post(chat_url(self._base_url), json=request_body(request))
        except httpx.HTTPError as exc:
            raise BackendError(self.name(), f"Request failed: {exc}") from exc

        if not response.is_success:
            raise BackendError(self.name(), f"Ollama HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError(self.name(), "Malformed JSON body") from exc

        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content:
            raise BackendError(self.name(), "Empty content")
        return content

    async def complete(self, request: ChatRequest) -> ChatResult:
        start = time.monotonic()
        try:
            content = await self._post(request)
        except BackendError as exc:
            logger.warning("Ollama error for model %s, using fallback: %s", request.model, exc)
            return ChatResult(
                text=FALLBACK_TEXT,
                model=request.model,
                latency_sec=time.monotonic() - start,
                fallback=True,
                error=str(exc),
            )

        latency = time.monotonic() - start
        logger.info("Ollama %s: %.2fs, %d chars", request.model, latency, len(content))
        return ChatResult(text=content, model=request.model, latency_sec=latency)

    async def aclose(self) -> None:
        await self._client.aclose()
