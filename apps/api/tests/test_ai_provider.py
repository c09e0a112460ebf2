"""Tests for provider adapters and their error mapping."""

import json

import httpx
import pytest

from intakeai.core.exceptions import AIContentRejectedError, AITimeoutError, AIUnavailableError
from intakeai.services import ai_provider
from intakeai.services.ai_provider import (
    ChatMessage,
    GeminiProvider,
    OpenAIProvider,
    get_configured_provider,
    get_provider,
)

MESSAGES = [
    ChatMessage(role="system", content="You summarize intakes."),
    ChatMessage(role="user", content="Summarize this patient intake."),
]


def _openai(handler) -> OpenAIProvider:
    return OpenAIProvider("sk-test", transport=httpx.MockTransport(handler))


def _gemini(handler) -> GeminiProvider:
    return GeminiProvider("gm-test", transport=httpx.MockTransport(handler))


def _sse(*events: dict) -> bytes:
    return "".join(f"data: {json.dumps(event)}\n\n" for event in events).encode()


# =============================================================================
# OpenAI
# =============================================================================


@pytest.mark.asyncio
async def test_openai_chat_parses_completion():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "model": "gpt-4o-mini-2024",
                "choices": [{"message": {"content": "Summary text"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 4, "total_tokens": 16},
            },
        )

    response = await _openai(handler).chat(MESSAGES, temperature=0.1, max_tokens=300)
    assert response.content == "Summary text"
    assert response.total_tokens == 16
    assert response.model == "gpt-4o-mini-2024"
    assert seen[0]["messages"][0] == {"role": "system", "content": "You summarize intakes."}
    assert seen[0]["max_tokens"] == 300


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_openai_transient_status_is_unavailable(status):
    provider = _openai(lambda request: httpx.Response(status))
    with pytest.raises(AIUnavailableError) as exc_info:
        await provider.chat(MESSAGES)
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401, 403])
async def test_openai_client_error_is_terminal(status):
    provider = _openai(lambda request: httpx.Response(status))
    with pytest.raises(AIContentRejectedError) as exc_info:
        await provider.chat(MESSAGES)
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_openai_content_filter_is_rejected():
    provider = _openai(
        lambda request: httpx.Response(
            200,
            json={"choices": [{"message": {"content": None}, "finish_reason": "content_filter"}]},
        )
    )
    with pytest.raises(AIContentRejectedError):
        await provider.chat(MESSAGES)


@pytest.mark.asyncio
async def test_transport_timeout_maps_to_ai_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(AITimeoutError):
        await _openai(handler).chat(MESSAGES)


@pytest.mark.asyncio
async def test_connection_failure_maps_to_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(AIUnavailableError):
        await _openai(handler).chat(MESSAGES)


@pytest.mark.asyncio
async def test_openai_stream_yields_deltas_then_usage():
    body = _sse(
        {"choices": [{"delta": {"content": "Chest "}}]},
        {"choices": [{"delta": {"content": "pain."}}]},
        {"choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11}},
    ) + b"data: [DONE]\n\n"
    provider = _openai(lambda request: httpx.Response(200, content=body))

    chunks = [chunk async for chunk in provider.stream_chat(MESSAGES)]
    assert [c.text for c in chunks if not c.is_final] == ["Chest ", "pain."]
    assert chunks[-1].is_final
    assert chunks[-1].total_tokens == 11


@pytest.mark.asyncio
async def test_openai_stream_error_status_raises_before_chunks():
    provider = _openai(lambda request: httpx.Response(502))
    with pytest.raises(AIUnavailableError):
        async for _ in provider.stream_chat(MESSAGES):
            pass


# =============================================================================
# Gemini
# =============================================================================


@pytest.mark.asyncio
async def test_gemini_chat_moves_system_prompt():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "Summary"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 20, "candidatesTokenCount": 5},
            },
        )

    response = await _gemini(handler).chat(MESSAGES)
    assert response.content == "Summary"
    assert response.total_tokens == 25
    assert seen[0]["systemInstruction"]["parts"][0]["text"] == "You summarize intakes."
    assert [c["role"] for c in seen[0]["contents"]] == ["user"]


@pytest.mark.asyncio
async def test_gemini_blocked_prompt_is_rejected():
    provider = _gemini(
        lambda request: httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})
    )
    with pytest.raises(AIContentRejectedError):
        await provider.chat(MESSAGES)


@pytest.mark.asyncio
async def test_gemini_stream_uses_sse_and_sums_usage():
    requests = []
    body = _sse(
        {"candidates": [{"content": {"parts": [{"text": "Red flags: "}]}}]},
        {
            "candidates": [{"content": {"parts": [{"text": "none."}]}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 30, "candidatesTokenCount": 4},
        },
    )

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=body)

    chunks = [chunk async for chunk in _gemini(handler).stream_chat(MESSAGES)]
    assert "".join(c.text for c in chunks) == "Red flags: none."
    assert chunks[-1].is_final
    assert chunks[-1].total_tokens == 34
    assert requests[0].url.params["alt"] == "sse"


@pytest.mark.asyncio
async def test_gemini_stream_safety_stop_is_rejected():
    body = _sse(
        {"candidates": [{"content": {"parts": [{"text": "Partial"}]}}]},
        {"candidates": [{"finishReason": "SAFETY"}]},
    )
    provider = _gemini(lambda request: httpx.Response(200, content=body))
    with pytest.raises(AIContentRejectedError):
        async for _ in provider.stream_chat(MESSAGES):
            pass


# =============================================================================
# Factory
# =============================================================================


def test_get_provider_defaults_models():
    assert get_provider("openai", "k").default_model == ai_provider.DEFAULT_OPENAI_MODEL
    assert get_provider("gemini", "k", "gemini-custom").default_model == "gemini-custom"
    with pytest.raises(ValueError):
        get_provider("unknown", "k")


def test_missing_api_key_reads_as_unavailable(monkeypatch):
    monkeypatch.setattr(ai_provider.settings, "AI_API_KEY", "")
    with pytest.raises(AIUnavailableError):
        get_configured_provider()
