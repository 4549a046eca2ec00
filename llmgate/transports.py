"""HTTP transports for the supported LLM providers.

Each transport turns a GenerateRequest into one provider call and normalizes
the answer into a TransportResult (``complete``) or a stream of StreamChunks
(``stream``).  HTTP and network failures are mapped onto the typed errors in
``core.errors`` so the retry layer can classify them.
"""
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from core.config import get_settings
from core.errors import (
    ClientError,
    ProviderError,
    RateLimitedError,
    ServerError,
    TransportError,
)
from core.logging import logger

from .types import GenerateRequest, StreamChunk, TokenUsage, ToolCall, TransportResult

__all__ = [
    "ProviderTransport",
    "OpenAICompatibleTransport",
    "AnthropicTransport",
    "GoogleTransport",
    "create_transport",
    "parse_retry_after",
]

DEFAULT_TIMEOUT = 120.0


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _error_message(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body[:200]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    if error:
        return str(error)
    return body[:200]


class ProviderTransport(ABC):
    """Base class for provider HTTP transports."""

    def __init__(
        self,
        provider: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.provider = provider
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url()).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def default_base_url(self) -> str:
        return ""

    @abstractmethod
    def _headers(self) -> Dict[str, str]: ...

    @abstractmethod
    async def complete(self, request: GenerateRequest) -> TransportResult:
        """Non-streaming call."""

    @abstractmethod
    def stream(self, request: GenerateRequest) -> AsyncIterator[StreamChunk]:
        """Streaming call yielding normalized chunks."""

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        body = (await response.aread()).decode("utf-8", errors="replace")
        message = _error_message(body)
        status = response.status_code
        logger.error(f"{self.provider} API error {status}: {message}")
        if status == 429:
            raise RateLimitedError(
                self.provider, message, retry_after=parse_retry_after(response.headers.get("retry-after"))
            )
        if status >= 500:
            raise ServerError(self.provider, message, status=status)
        raise ClientError(self.provider, message, status=status)

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(url, json=payload, headers=self._headers())
        except httpx.TransportError as e:
            logger.error(f"{self.provider} transport error: {type(e).__name__}")
            raise TransportError(self.provider, str(e) or type(e).__name__, cause=e) from e
        await self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(self.provider, "response body is not JSON", code="INVALID_RESPONSE", cause=e) from e

    async def _sse_data(self, url: str, payload: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded ``data:`` payloads of a server-sent event stream."""
        try:
            async with self._client.stream("POST", url, json=payload, headers=self._headers()) as response:
                await self._raise_for_status(response)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if not data:
                        continue
                    if data == "[DONE]":
                        return
                    try:
                        yield json.loads(data)
                    except ValueError:
                        logger.warning(f"{self.provider} sent an undecodable stream event")
        except httpx.TransportError as e:
            logger.error(f"{self.provider} stream transport error: {type(e).__name__}")
            raise TransportError(self.provider, str(e) or type(e).__name__, cause=e) from e


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------


class OpenAICompatibleTransport(ProviderTransport):
    """Chat completions API as spoken by OpenAI and compatible gateways."""

    BASE_URLS = {
        "openai": "https://api.openai.com/v1",
        "groq": "https://api.groq.com/openai/v1",
        "mistral": "https://api.mistral.ai/v1",
        "perplexity": "https://api.perplexity.ai",
        "openrouter": "https://openrouter.ai/api/v1",
        "requesty": "https://router.requesty.ai/v1",
        "grok": "https://api.x.ai/v1",
    }

    def default_base_url(self) -> str:
        return self.BASE_URLS.get(self.provider, self.BASE_URLS["openai"])

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, request: GenerateRequest, stream: bool) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        payload: Dict[str, Any] = {"model": request.model, "messages": messages}
        optional = {
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "top_p": request.top_p,
            "frequency_penalty": request.frequency_penalty,
            "presence_penalty": request.presence_penalty,
            "stop": request.stop_sequences,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in request.tools
            ]
        if request.json_mode:
            payload["response_format"] = {"type": "json_object"}
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        payload.update(request.provider_options)
        return payload

    @staticmethod
    def _usage(data: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
        if not data:
            return None
        completion_details = data.get("completion_tokens_details") or {}
        prompt_details = data.get("prompt_tokens_details") or {}
        prompt = data.get("prompt_tokens", 0)
        completion = data.get("completion_tokens", 0)
        return TokenUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=data.get("total_tokens", prompt + completion),
            reasoning_tokens=completion_details.get("reasoning_tokens"),
            cached_tokens=prompt_details.get("cached_tokens"),
            live_search_sources=data.get("num_sources_used"),
        )

    @staticmethod
    def _tool_calls(raw_calls: Optional[List[Dict[str, Any]]]) -> List[ToolCall]:
        calls = []
        for call in raw_calls or []:
            function = call.get("function", {})
            arguments = function.get("arguments") or "{}"
            try:
                parsed = json.loads(arguments) if isinstance(arguments, str) else arguments
            except ValueError:
                parsed = {"_raw": arguments}
            calls.append(ToolCall(id=call.get("id", ""), name=function.get("name", ""), arguments=parsed))
        return calls

    async def complete(self, request: GenerateRequest) -> TransportResult:
        data = await self._post_json(f"{self.base_url}/chat/completions", self._payload(request, stream=False))
        choices = data.get("choices") or []
        usage = self._usage(data.get("usage"))
        if not choices:
            return TransportResult(text=None, usage=usage, model=data.get("model"), raw=data)
        message = choices[0].get("message") or {}
        return TransportResult(
            text=message.get("content") or "",
            usage=usage,
            finish_reason=choices[0].get("finish_reason"),
            model=data.get("model"),
            tool_calls=self._tool_calls(message.get("tool_calls")),
            raw=data,
        )

    async def stream(self, request: GenerateRequest) -> AsyncIterator[StreamChunk]:
        events = self._sse_data(f"{self.base_url}/chat/completions", self._payload(request, stream=True))
        try:
            async for event in events:
                choices = event.get("choices") or []
                delta = choices[0].get("delta", {}) if choices else {}
                yield StreamChunk(
                    text=delta.get("content") or "",
                    finish_reason=choices[0].get("finish_reason") if choices else None,
                    usage=self._usage(event.get("usage")),
                    model=event.get("model"),
                )
        finally:
            await events.aclose()


# ---------------------------------------------------------------------------
# Anthropic messages
# ---------------------------------------------------------------------------


class AnthropicTransport(ProviderTransport):
    API_VERSION = "2023-06-01"
    DEFAULT_MAX_TOKENS = 4096
    STOP_REASONS = {"end_turn": "stop", "stop_sequence": "stop", "max_tokens": "length", "tool_use": "tool_calls"}

    def default_base_url(self) -> str:
        return "https://api.anthropic.com/v1"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "anthropic-version": self.API_VERSION}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _payload(self, request: GenerateRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or self.DEFAULT_MAX_TOKENS,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        optional = {
            "system": request.system_prompt,
            "temperature": request.temperature,
            "top_p": request.top_p,
            "stop_sequences": request.stop_sequences,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        if request.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in request.tools
            ]
        if stream:
            payload["stream"] = True
        payload.update(request.provider_options)
        return payload

    def _finish(self, reason: Optional[str]) -> Optional[str]:
        return self.STOP_REASONS.get(reason, reason) if reason else None

    async def complete(self, request: GenerateRequest) -> TransportResult:
        data = await self._post_json(f"{self.base_url}/messages", self._payload(request, stream=False))
        blocks = data.get("content") or []
        raw_usage = data.get("usage") or {}
        usage = None
        if raw_usage:
            usage = TokenUsage.from_counts(
                raw_usage.get("input_tokens", 0),
                raw_usage.get("output_tokens", 0),
                cached_tokens=raw_usage.get("cache_read_input_tokens"),
            )
        if not blocks:
            return TransportResult(text=None, usage=usage, model=data.get("model"), raw=data)
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        tool_calls = [
            ToolCall(id=b.get("id", ""), name=b.get("name", ""), arguments=b.get("input") or {})
            for b in blocks if b.get("type") == "tool_use"
        ]
        return TransportResult(
            text=text,
            usage=usage,
            finish_reason=self._finish(data.get("stop_reason")),
            model=data.get("model"),
            tool_calls=tool_calls,
            raw=data,
        )

    async def stream(self, request: GenerateRequest) -> AsyncIterator[StreamChunk]:
        events = self._sse_data(f"{self.base_url}/messages", self._payload(request, stream=True))
        input_tokens = 0
        model = None
        try:
            async for event in events:
                kind = event.get("type")
                if kind == "message_start":
                    message = event.get("message") or {}
                    model = message.get("model")
                    input_tokens = (message.get("usage") or {}).get("input_tokens", 0)
                elif kind == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta":
                        yield StreamChunk(text=delta.get("text", ""), model=model)
                elif kind == "message_delta":
                    output_tokens = (event.get("usage") or {}).get("output_tokens", 0)
                    yield StreamChunk(
                        finish_reason=self._finish((event.get("delta") or {}).get("stop_reason")),
                        usage=TokenUsage.from_counts(input_tokens, output_tokens),
                        model=model,
                    )
                elif kind == "error":
                    error = event.get("error") or {}
                    if error.get("type") == "overloaded_error":
                        raise ServerError(self.provider, error.get("message", "overloaded"), status=529)
                    raise ProviderError(self.provider, error.get("message", "stream error"), code="STREAM_ERROR")
        finally:
            await events.aclose()


# ---------------------------------------------------------------------------
# Google Gemini
# ---------------------------------------------------------------------------


class GoogleTransport(ProviderTransport):
    FINISH_REASONS = {"STOP": "stop", "MAX_TOKENS": "length", "SAFETY": "content_filter"}

    def default_base_url(self) -> str:
        return "https://generativelanguage.googleapis.com/v1beta"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        return headers

    def _payload(self, request: GenerateRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": request.prompt}]}]}
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        generation = {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_tokens,
            "topP": request.top_p,
            "frequencyPenalty": request.frequency_penalty,
            "presencePenalty": request.presence_penalty,
            "stopSequences": request.stop_sequences,
        }
        generation = {k: v for k, v in generation.items() if v is not None}
        if request.json_mode:
            generation["responseMimeType"] = "application/json"
        if generation:
            payload["generationConfig"] = generation
        if request.tools:
            payload["tools"] = [{
                "functionDeclarations": [
                    {"name": t.name, "description": t.description, "parameters": t.parameters}
                    for t in request.tools
                ]
            }]
        payload.update(request.provider_options)
        return payload

    @staticmethod
    def _usage(data: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
        if not data:
            return None
        prompt = data.get("promptTokenCount", 0)
        completion = data.get("candidatesTokenCount", 0)
        return TokenUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=data.get("totalTokenCount", prompt + completion),
            reasoning_tokens=data.get("thoughtsTokenCount"),
            cached_tokens=data.get("cachedContentTokenCount"),
        )

    def _parse_candidate(self, candidate: Dict[str, Any]):
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if not p.get("thought"))
        tool_calls = [
            ToolCall(id=p["functionCall"].get("name", ""), name=p["functionCall"].get("name", ""),
                     arguments=p["functionCall"].get("args") or {})
            for p in parts if "functionCall" in p
        ]
        reason = candidate.get("finishReason")
        return text, tool_calls, self.FINISH_REASONS.get(reason, reason.lower() if reason else None)

    async def complete(self, request: GenerateRequest) -> TransportResult:
        url = f"{self.base_url}/models/{request.model}:generateContent"
        data = await self._post_json(url, self._payload(request))
        candidates = data.get("candidates") or []
        usage = self._usage(data.get("usageMetadata"))
        if not candidates:
            return TransportResult(text=None, usage=usage, model=data.get("modelVersion"), raw=data)
        text, tool_calls, finish = self._parse_candidate(candidates[0])
        return TransportResult(
            text=text,
            usage=usage,
            finish_reason=finish,
            model=data.get("modelVersion"),
            tool_calls=tool_calls,
            raw=data,
        )

    async def stream(self, request: GenerateRequest) -> AsyncIterator[StreamChunk]:
        url = f"{self.base_url}/models/{request.model}:streamGenerateContent?alt=sse"
        events = self._sse_data(url, self._payload(request))
        try:
            async for event in events:
                candidates = event.get("candidates") or []
                text, tool_calls, finish = self._parse_candidate(candidates[0]) if candidates else ("", [], None)
                yield StreamChunk(
                    text=text,
                    finish_reason=finish,
                    usage=self._usage(event.get("usageMetadata")),
                    model=event.get("modelVersion"),
                    tool_calls=tool_calls or None,
                )
        finally:
            await events.aclose()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_TRANSPORTS = {
    "anthropic": AnthropicTransport,
    "google": GoogleTransport,
}


def create_transport(
    provider: str,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> ProviderTransport:
    """Transport for ``provider``; the API key defaults to the one in settings."""
    if provider not in _TRANSPORTS and provider not in OpenAICompatibleTransport.BASE_URLS:
        raise ValueError(f"Unknown provider: {provider}")
    if api_key is None:
        api_key = get_settings().api_key_for(provider)
    transport_cls = _TRANSPORTS.get(provider, OpenAICompatibleTransport)
    return transport_cls(provider, api_key=api_key, base_url=base_url, client=client)
