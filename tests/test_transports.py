"""Tests for the provider HTTP transports."""
import json

import httpx
import pytest

from core.errors import ClientError, RateLimitedError, ServerError, TransportError
from llmgate.transports import (
    AnthropicTransport,
    GoogleTransport,
    OpenAICompatibleTransport,
    create_transport,
    parse_retry_after,
)
from llmgate.types import FunctionDef, GenerateRequest


def make_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def sse(*events):
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


async def collect(stream):
    return [chunk async for chunk in stream]


class TestOpenAICompatible:

    @pytest.mark.asyncio
    async def test_complete_builds_payload_and_parses(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "model": "gpt-4o-2024-08-06",
                "choices": [{"message": {"content": "Hi there"}, "finish_reason": "stop"}],
                "usage": {
                    "prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15,
                    "prompt_tokens_details": {"cached_tokens": 4},
                },
            })

        transport = OpenAICompatibleTransport("openai", api_key="sk-test", client=make_client(handler))
        request = GenerateRequest(
            prompt="Hello", model="gpt-4o", system_prompt="Be nice", temperature=0.1,
            stop_sequences=["END"], json_mode=True,
            tools=[FunctionDef("lookup", "Look up a word", {"type": "object"})],
        )
        result = await transport.complete(request)

        assert seen["url"] == "https://api.openai.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        body = seen["body"]
        assert body["messages"] == [
            {"role": "system", "content": "Be nice"},
            {"role": "user", "content": "Hello"},
        ]
        assert body["temperature"] == 0.1
        assert body["stop"] == ["END"]
        assert body["response_format"] == {"type": "json_object"}
        assert body["tools"][0]["function"]["name"] == "lookup"
        assert "max_tokens" not in body

        assert result.text == "Hi there"
        assert result.finish_reason == "stop"
        assert result.usage.total_tokens == 15
        assert result.usage.cached_tokens == 4

    @pytest.mark.asyncio
    async def test_empty_choices_is_no_choice(self):
        client = make_client(lambda r: httpx.Response(200, json={"choices": []}))
        result = await OpenAICompatibleTransport("groq", client=client).complete(
            GenerateRequest(prompt="p", model="gemma2-9b-it")
        )
        assert result.text is None

    @pytest.mark.asyncio
    async def test_tool_calls(self):
        client = make_client(lambda r: httpx.Response(200, json={"choices": [{
            "message": {"content": None, "tool_calls": [
                {"id": "call_1", "function": {"name": "lookup", "arguments": '{"word": "gate"}'}},
            ]},
            "finish_reason": "tool_calls",
        }]}))
        result = await OpenAICompatibleTransport("openai", client=client).complete(
            GenerateRequest(prompt="p", model="gpt-4o")
        )
        assert result.text == ""
        assert result.tool_calls[0].arguments == {"word": "gate"}

    @pytest.mark.asyncio
    async def test_grok_usage_extras_and_base_url(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "choices": [{"message": {"content": "news"}, "finish_reason": "stop"}],
                "usage": {
                    "prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7,
                    "completion_tokens_details": {"reasoning_tokens": 1},
                    "num_sources_used": 3,
                },
            })

        transport = OpenAICompatibleTransport("grok", client=make_client(handler))
        request = GenerateRequest(prompt="p", model="grok-3", provider_options={"search_parameters": {"mode": "on"}})
        result = await transport.complete(request)

        assert seen["url"].startswith("https://api.x.ai/v1")
        assert seen["body"]["search_parameters"] == {"mode": "on"}
        assert result.usage.live_search_sources == 3
        assert result.usage.reasoning_tokens == 1

    @pytest.mark.asyncio
    async def test_stream(self):
        body = sse(
            {"model": "gpt-4o", "choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 2, "completion_tokens": 1, "total_tokens": 3}},
            "[DONE]",
        )
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        transport = OpenAICompatibleTransport("openai", client=make_client(handler))
        chunks = await collect(transport.stream(GenerateRequest(prompt="p", model="gpt-4o")))

        assert seen["body"]["stream"] is True
        assert seen["body"]["stream_options"] == {"include_usage": True}
        assert "".join(c.text for c in chunks) == "Hello"
        assert chunks[1].finish_reason == "stop"
        assert chunks[-1].usage.total_tokens == 3


class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_429_with_retry_after(self):
        client = make_client(lambda r: httpx.Response(
            429, json={"error": {"message": "slow down"}}, headers={"retry-after": "12"}
        ))
        with pytest.raises(RateLimitedError) as exc_info:
            await OpenAICompatibleTransport("openai", client=client).complete(GenerateRequest(prompt="p", model="m"))
        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.message == "slow down"
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_5xx(self):
        client = make_client(lambda r: httpx.Response(503, text="unavailable"))
        with pytest.raises(ServerError) as exc_info:
            await AnthropicTransport("anthropic", client=client).complete(GenerateRequest(prompt="p", model="m"))
        assert exc_info.value.status == 503

    @pytest.mark.parametrize("status,code", [(400, "HTTP_ERROR"), (401, "AUTHENTICATION_ERROR"), (403, "PERMISSION_ERROR")])
    @pytest.mark.asyncio
    async def test_4xx(self, status, code):
        client = make_client(lambda r: httpx.Response(status, json={"error": "nope"}))
        with pytest.raises(ClientError) as exc_info:
            await GoogleTransport("google", client=client).complete(GenerateRequest(prompt="p", model="m"))
        assert exc_info.value.code == code
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError) as exc_info:
            await OpenAICompatibleTransport("openai", client=make_client(handler)).complete(
                GenerateRequest(prompt="p", model="m")
            )
        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        assert exc_info.value.__cause__ is exc_info.value.cause

    @pytest.mark.asyncio
    async def test_stream_error_status(self):
        client = make_client(lambda r: httpx.Response(500, text="boom"))
        with pytest.raises(ServerError):
            await collect(OpenAICompatibleTransport("openai", client=client).stream(GenerateRequest(prompt="p", model="m")))

    def test_parse_retry_after(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("3") == 3.0
        assert parse_retry_after("garbage") is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


class TestAnthropic:

    @pytest.mark.asyncio
    async def test_complete(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "model": "claude-3-5-haiku-latest",
                "content": [{"type": "text", "text": "Bonjour"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 7, "output_tokens": 2},
            })

        transport = AnthropicTransport("anthropic", api_key="key", client=make_client(handler))
        result = await transport.complete(GenerateRequest(prompt="hi", model="claude-3-5-haiku-latest", system_prompt="fr"))

        assert seen["headers"]["x-api-key"] == "key"
        assert seen["body"]["system"] == "fr"
        assert seen["body"]["max_tokens"] == AnthropicTransport.DEFAULT_MAX_TOKENS
        assert result.text == "Bonjour"
        assert result.finish_reason == "stop"
        assert result.usage.total_tokens == 9

    @pytest.mark.asyncio
    async def test_stream_events(self):
        body = sse(
            {"type": "message_start", "message": {"model": "claude-sonnet-4-0", "usage": {"input_tokens": 11}}},
            {"type": "content_block_start", "index": 0},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}},
            {"type": "message_delta", "delta": {"stop_reason": "max_tokens"}, "usage": {"output_tokens": 2}},
            {"type": "message_stop"},
        )
        client = make_client(lambda r: httpx.Response(200, content=body))
        chunks = await collect(AnthropicTransport("anthropic", client=client).stream(
            GenerateRequest(prompt="p", model="claude-sonnet-4-0")
        ))
        assert [c.text for c in chunks if c.text] == ["Hel", "lo"]
        final = chunks[-1]
        assert final.finish_reason == "length"
        assert (final.usage.prompt_tokens, final.usage.completion_tokens) == (11, 2)

    @pytest.mark.asyncio
    async def test_overloaded_stream_event(self):
        body = sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        client = make_client(lambda r: httpx.Response(200, content=body))
        with pytest.raises(ServerError):
            await collect(AnthropicTransport("anthropic", client=client).stream(GenerateRequest(prompt="p", model="m")))


class TestGoogle:

    @pytest.mark.asyncio
    async def test_complete(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": "Ciao"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 1, "totalTokenCount": 4},
            })

        transport = GoogleTransport("google", client=make_client(handler))
        request = GenerateRequest(prompt="hi", model="gemini-2.5-flash-preview-05-20", max_tokens=50, json_mode=True)
        result = await transport.complete(request)

        assert seen["url"].endswith("/models/gemini-2.5-flash-preview-05-20:generateContent")
        assert seen["body"]["generationConfig"] == {"maxOutputTokens": 50, "responseMimeType": "application/json"}
        assert result.text == "Ciao"
        assert result.finish_reason == "stop"
        assert result.usage.total_tokens == 4

    @pytest.mark.asyncio
    async def test_no_candidates(self):
        client = make_client(lambda r: httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}}))
        result = await GoogleTransport("google", client=client).complete(GenerateRequest(prompt="p", model="m"))
        assert result.text is None

    @pytest.mark.asyncio
    async def test_stream(self):
        body = sse(
            {"candidates": [{"content": {"parts": [{"text": "Bu"}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "ongiorno"}]}, "finishReason": "STOP"}],
             "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 3, "totalTokenCount": 5}},
        )
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, content=body)

        chunks = await collect(GoogleTransport("google", client=make_client(handler)).stream(
            GenerateRequest(prompt="p", model="gemini-2.5-pro-preview-06-05")
        ))
        assert "streamGenerateContent?alt=sse" in seen["url"]
        assert "".join(c.text for c in chunks) == "Buongiorno"
        assert chunks[-1].usage.total_tokens == 5


class TestFactory:

    def test_selects_variant(self):
        assert isinstance(create_transport("anthropic", api_key="k"), AnthropicTransport)
        assert isinstance(create_transport("google", api_key="k"), GoogleTransport)
        mistral = create_transport("mistral", api_key="k")
        assert isinstance(mistral, OpenAICompatibleTransport)
        assert mistral.base_url == "https://api.mistral.ai/v1"

    def test_custom_base_url(self):
        transport = create_transport("openai", api_key="k", base_url="http://localhost:8080/v1/")
        assert transport.base_url == "http://localhost:8080/v1"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_transport("carrier-pigeon", api_key="k")

    def test_api_key_from_settings(self, monkeypatch):
        from core.config import reset_settings

        monkeypatch.setenv("GROK_API_KEY", "xai-from-env")
        monkeypatch.delenv("XAI_API_KEY", raising=False)
        reset_settings()
        try:
            assert create_transport("grok").api_key == "xai-from-env"
        finally:
            reset_settings()
