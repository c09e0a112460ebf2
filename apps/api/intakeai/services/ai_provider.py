"""AI Provider abstraction layer.

Supports OpenAI and Google Gemini with a unified interface. Provider HTTP
failures are translated into the domain AI errors here, so callers only
ever see AIUnavailableError / AITimeoutError / AIContentRejectedError.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from intakeai.core.config import settings
from intakeai.core.exceptions import (
    AIContentRejectedError,
    AITimeoutError,
    AIUnavailableError,
)

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"


@dataclass
class ChatMessage:
    """A single message in a conversation."""

    role: str  # 'system', 'user', 'assistant'
    content: str


@dataclass
class ChatResponse:
    """Response from an AI provider."""

    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    model: str


@dataclass
class ChatStreamChunk:
    """One streamed fragment. The final chunk carries usage totals."""

    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    is_final: bool = False


@contextmanager
def provider_errors(provider: str):
    """Translate transport failures into domain AI errors."""
    try:
        yield
    except httpx.TimeoutException as exc:
        raise AITimeoutError("provider_timeout", provider=provider) from exc
    except httpx.TransportError as exc:
        raise AIUnavailableError("provider_transport_error", provider=provider) from exc


def check_status(provider: str, response: httpx.Response) -> None:
    """5xx and 429 are transient; any other 4xx is terminal."""
    status = response.status_code
    if status < 400:
        return
    logger.warning("%s returned HTTP %s", provider, status)
    if status == 429 or status >= 500:
        raise AIUnavailableError("provider_http_error", provider=provider, status=status)
    raise AIContentRejectedError("provider_rejected_request", provider=provider, status=status)


def iter_sse_data(line: str) -> dict[str, Any] | None:
    """Decode one ``data:`` line of a provider event stream."""
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None
    return json.loads(data)


class AIProvider(ABC):
    """Abstract base class for AI providers."""

    default_model: str

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> ChatResponse:
        """Send a chat completion request."""

    @abstractmethod
    def stream_chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> AsyncIterator[ChatStreamChunk]:
        """Stream a chat completion. Closing the iterator aborts the request."""


class OpenAIProvider(AIProvider):
    """OpenAI API provider."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        default_model: str = DEFAULT_OPENAI_MODEL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://api.openai.com/v1"
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.AI_REQUEST_DEADLINE_SECONDS, transport=self._transport
        )

    def _body(self, messages, model, temperature, max_tokens) -> dict[str, Any]:
        return {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> ChatResponse:
        model = model or self.default_model

        with provider_errors(self.name):
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._headers,
                    json=self._body(messages, model, temperature, max_tokens),
                )
                check_status(self.name, response)
                data = response.json()

        choice = data["choices"][0]
        if choice.get("finish_reason") == "content_filter":
            raise AIContentRejectedError("content_filter", provider=self.name)

        usage = data.get("usage", {})
        return ChatResponse(
            content=choice["message"]["content"] or "",
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
            model=data.get("model", model),
        )

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> AsyncIterator[ChatStreamChunk]:
        model = model or self.default_model
        body = self._body(messages, model, temperature, max_tokens)
        body["stream"] = True
        body["stream_options"] = {"include_usage": True}

        usage: dict[str, int] = {}
        with provider_errors(self.name):
            async with self._client() as client:
                async with client.stream(
                    "POST", f"{self.base_url}/chat/completions", headers=self._headers, json=body
                ) as response:
                    check_status(self.name, response)
                    async for line in response.aiter_lines():
                        event = iter_sse_data(line)
                        if event is None:
                            continue
                        if event.get("usage"):
                            usage = event["usage"]
                        for choice in event.get("choices") or []:
                            if choice.get("finish_reason") == "content_filter":
                                raise AIContentRejectedError("content_filter", provider=self.name)
                            text = (choice.get("delta") or {}).get("content")
                            if text:
                                yield ChatStreamChunk(text=text, model=model)

        yield ChatStreamChunk(
            text="",
            model=model,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
            is_final=True,
        )


class GeminiProvider(AIProvider):
    """Google Gemini API provider."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        default_model: str = DEFAULT_GEMINI_MODEL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://generativelanguage.googleapis.com/v1beta"
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.AI_REQUEST_DEADLINE_SECONDS, transport=self._transport
        )

    def _body(self, messages, temperature, max_tokens) -> dict[str, Any]:
        # Gemini uses 'user' and 'model' roles, system goes in systemInstruction
        system_instruction = None
        contents = []
        for msg in messages:
            if msg.role == "system":
                system_instruction = msg.content
            else:
                role = "model" if msg.role == "assistant" else "user"
                contents.append({"role": role, "parts": [{"text": msg.content}]})

        request_body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        if system_instruction:
            request_body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        return request_body

    def _check_blocked(self, data: dict[str, Any]) -> None:
        if (data.get("promptFeedback") or {}).get("blockReason"):
            raise AIContentRejectedError("prompt_blocked", provider=self.name)
        for candidate in data.get("candidates") or []:
            if candidate.get("finishReason") in ("SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST"):
                raise AIContentRejectedError("candidate_blocked", provider=self.name)

    @staticmethod
    def _text(data: dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> ChatResponse:
        model = model or self.default_model

        with provider_errors(self.name):
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/models/{model}:generateContent",
                    params={"key": self.api_key},
                    headers={"Content-Type": "application/json"},
                    json=self._body(messages, temperature, max_tokens),
                )
                check_status(self.name, response)
                data = response.json()

        self._check_blocked(data)
        usage = data.get("usageMetadata", {})
        prompt_tokens = usage.get("promptTokenCount", 0)
        completion_tokens = usage.get("candidatesTokenCount", 0)
        return ChatResponse(
            content=self._text(data),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            model=model,
        )

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> AsyncIterator[ChatStreamChunk]:
        model = model or self.default_model

        usage: dict[str, int] = {}
        with provider_errors(self.name):
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/models/{model}:streamGenerateContent",
                    params={"key": self.api_key, "alt": "sse"},
                    headers={"Content-Type": "application/json"},
                    json=self._body(messages, temperature, max_tokens),
                ) as response:
                    check_status(self.name, response)
                    async for line in response.aiter_lines():
                        event = iter_sse_data(line)
                        if event is None:
                            continue
                        self._check_blocked(event)
                        usage = event.get("usageMetadata") or usage
                        text = self._text(event)
                        if text:
                            yield ChatStreamChunk(text=text, model=model)

        prompt_tokens = usage.get("promptTokenCount", 0)
        completion_tokens = usage.get("candidatesTokenCount", 0)
        yield ChatStreamChunk(
            text="",
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            is_final=True,
        )


def get_provider(
    provider_name: str,
    api_key: str,
    model: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AIProvider:
    """Factory function to get the appropriate AI provider."""
    if provider_name == "openai":
        return OpenAIProvider(api_key, default_model=model or DEFAULT_OPENAI_MODEL, transport=transport)
    elif provider_name == "gemini":
        return GeminiProvider(api_key, default_model=model or DEFAULT_GEMINI_MODEL, transport=transport)
    else:
        raise ValueError(f"Unknown provider: {provider_name}")


def get_configured_provider() -> AIProvider:
    """Provider from settings; a missing key reads as the service being unavailable."""
    if not settings.AI_API_KEY:
        raise AIUnavailableError("ai_not_configured")
    return get_provider(settings.AI_PROVIDER, settings.AI_API_KEY, settings.AI_MODEL or None)
