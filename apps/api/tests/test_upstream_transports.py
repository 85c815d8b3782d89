from unittest.mock import patch

import httpx
import pytest
from openai import AuthenticationError, BadRequestError, InternalServerError, RateLimitError

from llm.gemini import GeminiTransport, build_payload, classify_gemini_error
from llm.models import GenerationConfig, UpstreamCallError, UpstreamErrorKind
from llm.openrouter import _classify, build_messages

_RealAsyncClient = httpx.AsyncClient


def _mock_clients(handler):
    """Route every httpx client built inside the transport through ``handler``."""
    return patch(
        "llm.gemini.httpx.AsyncClient",
        side_effect=lambda **kwargs: _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs),
    )


def _openai_error(error_class, status_code, message):
    request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
    return error_class(message, response=httpx.Response(status_code, request=request), body=None)


def test_gemini_error_classification():
    assert classify_gemini_error(400, "API key not valid. Please pass a valid API key.", "INVALID_ARGUMENT") == UpstreamErrorKind.INVALID_CREDENTIAL
    assert classify_gemini_error(403, "Permission denied") == UpstreamErrorKind.INVALID_CREDENTIAL
    assert classify_gemini_error(429, "You exceeded your current quota", "RESOURCE_EXHAUSTED") == UpstreamErrorKind.QUOTA
    assert classify_gemini_error(429, "Too many requests") == UpstreamErrorKind.RATE_LIMITED
    assert classify_gemini_error(503, "The service is overloaded") == UpstreamErrorKind.TRANSIENT
    assert classify_gemini_error(404, "models/gemini-9 is not found") == UpstreamErrorKind.MODEL
    assert classify_gemini_error(None, "connection reset") == UpstreamErrorKind.TRANSIENT


def test_gemini_payload_keeps_part_order_and_thinking():
    payload = build_payload(
        "system text",
        ["<knowledge_base>\nnotes\n</knowledge_base>", "", "<task>\nQ\n</task>"],
        GenerationConfig(temperature=0.2, max_output_tokens=256, thinking_budget=0),
    )

    assert payload["systemInstruction"] == {"parts": [{"text": "system text"}]}
    texts = [part["text"] for part in payload["contents"][0]["parts"]]
    assert texts == ["<knowledge_base>\nnotes\n</knowledge_base>", "<task>\nQ\n</task>"]
    assert payload["generationConfig"] == {
        "temperature": 0.2,
        "maxOutputTokens": 256,
        "thinkingConfig": {"thinkingBudget": 0},
    }


def test_reasoning_effort_derived_from_thinking_hints():
    assert GenerationConfig(thinking_level="high").reasoning_effort == "high"
    assert GenerationConfig(thinking_budget=4096).reasoning_effort == "low"
    assert GenerationConfig(thinking_budget=8192).reasoning_effort == "high"
    assert GenerationConfig().reasoning_effort is None


@pytest.mark.asyncio
async def test_gemini_generate_parses_answer_and_usage():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {
                            "parts": [
                                {"text": "thinking...", "thought": True},
                                {"text": "A. Paris"},
                            ]
                        }
                    }
                ],
                "usageMetadata": {
                    "promptTokenCount": 50,
                    "candidatesTokenCount": 3,
                    "totalTokenCount": 53,
                    "cachedContentTokenCount": 40,
                },
            },
        )

    with _mock_clients(handler):
        result = await GeminiTransport(base_url="https://gemini.test/v1beta").generate(
            "AIzaSy-test-key-000000000000",
            "gemini-2.0-flash",
            "system",
            ["<task>\nCapital of France?\n</task>"],
            GenerationConfig(),
        )

    assert seen["url"].startswith("https://gemini.test/v1beta/models/gemini-2.0-flash:generateContent")
    assert "key=AIzaSy-test-key-000000000000" in seen["url"]
    assert result.text == "A. Paris"
    assert result.total_tokens == 53
    assert result.cached is True


@pytest.mark.asyncio
async def test_gemini_generate_raises_typed_errors():
    def rate_limited(request):
        return httpx.Response(429, json={"error": {"message": "Rate limit exceeded", "status": "UNAVAILABLE"}})

    with _mock_clients(rate_limited):
        with pytest.raises(UpstreamCallError) as excinfo:
            await GeminiTransport(base_url="https://gemini.test").generate("k" * 30, "m", "s", ["q"], GenerationConfig())
    assert excinfo.value.kind == UpstreamErrorKind.RATE_LIMITED
    assert excinfo.value.status_code == 429

    def blocked(request):
        return httpx.Response(200, json={"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}})

    with _mock_clients(blocked):
        with pytest.raises(UpstreamCallError) as excinfo:
            await GeminiTransport(base_url="https://gemini.test").generate("k" * 30, "m", "s", ["q"], GenerationConfig())
    assert excinfo.value.kind == UpstreamErrorKind.MODEL


@pytest.mark.asyncio
async def test_gemini_key_validation():
    def reject(request):
        return httpx.Response(400, json={"error": {"message": "API key not valid", "status": "INVALID_ARGUMENT"}})

    def accept(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})

    transport = GeminiTransport(base_url="https://gemini.test")
    with _mock_clients(reject):
        assert await transport.test_api_key("AIzaSy-bad-key-0000000000000") is False
    with _mock_clients(accept):
        assert await transport.test_api_key("AIzaSy-good-key-000000000000") is True


def test_openrouter_messages_join_parts():
    messages = build_messages("sys", ["<knowledge_base>\nk\n</knowledge_base>", "", "<task>\nq\n</task>"])
    assert messages == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "<knowledge_base>\nk\n</knowledge_base>\n\n<task>\nq\n</task>"},
    ]


def test_openrouter_messages_mark_knowledge_block_for_caching():
    parts = ["<knowledge_base>\nk\n</knowledge_base>", "<examples>\ne\n</examples>", "<task>\nq\n</task>"]

    cached = build_messages("sys", parts, GenerationConfig(cache_enabled=True, cache_ttl_seconds=3600))
    plain = build_messages("sys", parts, GenerationConfig())

    assert cached[1]["content"] == [
        {
            "type": "text",
            "text": "<knowledge_base>\nk\n</knowledge_base>",
            "cache_control": {"type": "ephemeral", "ttl": "1h"},
        },
        {"type": "text", "text": "<examples>\ne\n</examples>\n\n<task>\nq\n</task>"},
    ]
    assert isinstance(plain[1]["content"], str)


def test_openrouter_error_classification():
    assert _classify(_openai_error(AuthenticationError, 401, "No auth credentials found")) == UpstreamErrorKind.INVALID_CREDENTIAL
    assert _classify(_openai_error(RateLimitError, 429, "Rate limit exceeded")) == UpstreamErrorKind.RATE_LIMITED
    assert _classify(_openai_error(RateLimitError, 429, "Insufficient credits")) == UpstreamErrorKind.QUOTA
    assert _classify(_openai_error(BadRequestError, 400, "unknown model")) == UpstreamErrorKind.MODEL
    assert _classify(_openai_error(InternalServerError, 502, "bad gateway")) == UpstreamErrorKind.TRANSIENT
