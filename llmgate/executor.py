"""Adapter execution core.

Every request runs the same pipeline:

    cache lookup -> rate-limit slot -> retry + circuit breaker -> transport
    -> stream aggregation -> usage / cost -> cache write

The shared pieces (registry, cache, retry executor, cost accounting) live in
an ExecutionContext built once at startup and handed to each provider's
AdapterExecutor.  Each executor owns its own rate limiter.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Union

from core.config import GatewayConfig, load_config
from core.errors import NoResponseChoiceError, ResponseFormatError, UnknownModelError
from core.logging import logger
from core.monitoring import COST_USD, REQUEST_LATENCY, REQUESTS, TOKENS

from .cache import BaseCache, CacheMetrics, FileCache, LRUCache, compute_cache_key
from .cost import CostAccountant, CostAnalyzer
from .ratelimit import SlidingWindowRateLimiter
from .registry import ModelRegistry, load_default_registry
from .retry import RetryExecutor, default_retry_condition
from .streaming import StreamAggregator, StreamResult, TokenCallback, estimate_usage
from .types import GenerateRequest, LLMResponse, StreamChunk, TokenUsage, TransportResult

__all__ = ["ExecutionContext", "AdapterExecutor", "build_cache"]

CompleteFn = Callable[[GenerateRequest], Awaitable[Union[TransportResult, Mapping[str, Any]]]]
StreamFn = Callable[[GenerateRequest], AsyncIterator[StreamChunk]]
ResponseCallback = Callable[[LLMResponse], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[BaseException], Union[None, Awaitable[None]]]


def build_cache(config: GatewayConfig) -> BaseCache[LLMResponse]:
    cache_cfg = config.cache
    if cache_cfg.backend == "file" or cache_cfg.persist_to_disk:
        return FileCache(
            cache_dir=cache_cfg.cache_dir,
            max_size=cache_cfg.max_size,
            default_ttl=cache_cfg.default_ttl,
            serializer=lambda response: response.model_dump(mode="json"),
            deserializer=LLMResponse.model_validate,
        )
    return LRUCache(max_size=cache_cfg.max_size, default_ttl=cache_cfg.default_ttl)


@dataclass
class ExecutionContext:
    """Process-wide collaborators shared by all adapter executors."""
    config: GatewayConfig
    registry: ModelRegistry
    cache: BaseCache[LLMResponse]
    retry: RetryExecutor
    accountant: CostAccountant
    # Opt-in: when set, every executed (non-cached) request is recorded.
    analyzer: Optional[CostAnalyzer] = None

    @classmethod
    def from_config(
        cls,
        config: Optional[GatewayConfig] = None,
        registry: Optional[ModelRegistry] = None,
        cache: Optional[BaseCache[LLMResponse]] = None,
        retry: Optional[RetryExecutor] = None,
        analyzer: Optional[CostAnalyzer] = None,
    ) -> "ExecutionContext":
        config = config or GatewayConfig()
        registry = registry or load_default_registry()
        return cls(
            config=config,
            registry=registry,
            cache=cache or build_cache(config),
            retry=retry or RetryExecutor(config.retry, config.circuit_breaker),
            accountant=CostAccountant(registry),
            analyzer=analyzer,
        )

    @classmethod
    def from_file(cls, path: Optional[str] = None, **kwargs) -> "ExecutionContext":
        return cls.from_config(load_config(path), **kwargs)


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class AdapterExecutor:
    """Runs GenerateRequests against one provider."""

    def __init__(
        self,
        provider: str,
        context: ExecutionContext,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        default_model: Optional[str] = None,
    ) -> None:
        self.provider = provider
        self.context = context
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter.from_config(
            context.config.rate_limit_for(provider), name=provider
        )
        if default_model is None:
            spec = context.registry.default_model(provider)
            default_model = spec.name if spec else None
        self.default_model = default_model

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def execute(self, request: GenerateRequest, transport: Any) -> LLMResponse:
        """Run one non-streaming request.

        ``transport`` is either a callable taking the request and returning a
        TransportResult (or a mapping with the same fields) or an object with
        such a ``complete`` method.  A callable is always called directly.
        """
        call: CompleteFn = transport if callable(transport) else transport.complete
        request = self._resolve(request)
        return await self._with_timeout(request, self._run(request, call))

    async def execute_stream(
        self,
        request: GenerateRequest,
        transport: Any,
        on_token: Optional[TokenCallback] = None,
        on_complete: Optional[ResponseCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> LLMResponse:
        """Run one streaming request, delivering each delta to ``on_token`` in order.

        Resolves with the aggregated response once the stream has finished.
        Errors are passed to ``on_error`` and then re-raised.
        """
        call: StreamFn = transport if callable(transport) else transport.stream
        request = self._resolve(request)
        try:
            response = await self._with_timeout(request, self._run_stream(request, call, on_token))
        except Exception as exc:
            if on_error is not None:
                await _maybe_await(on_error(exc))
            raise
        if on_complete is not None:
            await _maybe_await(on_complete(response))
        return response

    async def generate_json(self, request: GenerateRequest, transport: Any, schema: Optional[Dict[str, Any]] = None) -> Any:
        """Execute in JSON mode and parse the answer.

        ``schema`` is a small JSON-schema subset: ``type``, ``required``,
        ``properties`` and ``items``, checked recursively.  A response that
        fails to parse or validate is not cached.
        """
        if not request.json_mode:
            request = request.model_copy(update={"json_mode": True})
        call: CompleteFn = transport if callable(transport) else transport.complete
        request = self._resolve(request)

        def parse(response: LLMResponse) -> Any:
            try:
                data = json.loads(_strip_code_fence(response.text))
            except ValueError as e:
                raise ResponseFormatError(self.provider, f"response is not valid JSON: {e}", cause=e) from e
            if schema:
                _check_schema(self.provider, data, schema)
            return data

        response = await self._with_timeout(request, self._run(request, call, validate=parse))
        return parse(response)

    def cache_metrics(self) -> CacheMetrics:
        return self.context.cache.metrics()

    async def clear_cache(self) -> None:
        await self.context.cache.clear()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def _with_timeout(self, request: GenerateRequest, coro: Awaitable[LLMResponse]) -> LLMResponse:
        started = time.monotonic()
        outcome = "error"
        try:
            if request.timeout is not None:
                response = await asyncio.wait_for(coro, timeout=request.timeout)
            else:
                response = await coro
            outcome = "cached" if response.cached else "ok"
            return response
        except asyncio.TimeoutError:
            outcome = "timeout"
            logger.warning(f"{self.provider} request timed out after {request.timeout}s")
            raise
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        finally:
            REQUESTS.labels(provider=self.provider, outcome=outcome).inc()
            REQUEST_LATENCY.labels(provider=self.provider).observe(time.monotonic() - started)

    def _resolve(self, request: GenerateRequest) -> GenerateRequest:
        if request.model:
            return request
        if not self.default_model:
            raise ValueError(f"No model given and no default model for provider {self.provider}")
        return request.model_copy(update={"model": self.default_model})

    def _cache_key(self, request: GenerateRequest) -> str:
        return f"{self.provider}:{compute_cache_key(request)}"

    async def _cached(self, request: GenerateRequest) -> Optional[LLMResponse]:
        if request.cache_disabled:
            return None
        key = self._cache_key(request)
        hit = await self.context.cache.get(key)
        if hit is None:
            logger.debug(f"Cache miss for {self.provider}", extra={"cache_key": key[:24]})
            return None
        logger.debug(f"Cache hit for {self.provider}", extra={"cache_key": key[:24]})
        metadata = dict(hit.metadata, cache_hit=True)
        return hit.model_copy(update={"cached": True, "metadata": metadata})

    async def _run(
        self,
        request: GenerateRequest,
        call: CompleteFn,
        validate: Optional[Callable[[LLMResponse], Any]] = None,
    ) -> LLMResponse:
        cached = await self._cached(request)
        if cached is not None:
            return cached

        await self.rate_limiter.wait_for_slot()

        async def attempt() -> TransportResult:
            raw = await call(request)
            return raw if isinstance(raw, TransportResult) else TransportResult.model_validate(raw)

        result = await self.context.retry.with_retry_and_circuit_breaker(attempt, self.provider)
        if result.text is None:
            raise NoResponseChoiceError(self.provider, "provider returned no response choice")

        response = self._finalize(
            request,
            StreamResult(
                text=result.text,
                finish_reason=result.finish_reason,
                usage=result.usage,
                model=result.model,
                tool_calls=list(result.tool_calls),
            ),
        )
        if validate is not None:
            validate(response)
        await self._store(request, response)
        return response

    async def _run_stream(
        self, request: GenerateRequest, call: StreamFn, on_token: Optional[TokenCallback]
    ) -> LLMResponse:
        cached = await self._cached(request)
        if cached is not None:
            if on_token is not None and cached.text:
                await _maybe_await(on_token(cached.text))
            return cached

        await self.rate_limiter.wait_for_slot()

        aggregator = StreamAggregator(on_token)

        async def attempt() -> StreamResult:
            return await aggregator.aggregate(call(request))

        def retry_condition(exc: BaseException) -> bool:
            # Deltas already delivered cannot be taken back.
            if aggregator.started:
                return False
            return default_retry_condition(exc)

        result = await self.context.retry.with_retry_and_circuit_breaker(
            attempt, self.provider, retry_condition=retry_condition
        )
        if not result.text and not result.tool_calls and result.finish_reason is None:
            raise NoResponseChoiceError(self.provider, "stream ended without any content")
        response = self._finalize(request, result)
        await self._store(request, response)
        return response

    def _finalize(self, request: GenerateRequest, result: StreamResult) -> LLMResponse:
        model = request.model
        usage = result.usage
        if usage is None:
            prompt_text = f"{request.system_prompt}\n{request.prompt}" if request.system_prompt else request.prompt
            usage = estimate_usage(prompt_text, result.text)
        metadata: Dict[str, Any] = {"reported_model": result.model} if result.model else {}

        cost = None
        try:
            cost = self.context.accountant.compute_cost_strict(self.provider, model, usage)
        except UnknownModelError as e:
            logger.warning(f"No pricing for {self.provider}/{model}; cost not computed")
            metadata["cost_error"] = str(e)

        self._record(model, usage, cost)
        return LLMResponse(
            text=result.text,
            model=model,
            provider=self.provider,
            usage=usage,
            cost=cost,
            finish_reason=result.finish_reason or "stop",
            tool_calls=result.tool_calls,
            cached=False,
            metadata=metadata,
        )

    def _record(self, model: str, usage: TokenUsage, cost) -> None:
        TOKENS.labels(provider=self.provider, direction="input").inc(usage.prompt_tokens)
        TOKENS.labels(provider=self.provider, direction="output").inc(usage.completion_tokens)
        if cost is not None:
            COST_USD.labels(provider=self.provider, model=model).inc(cost.total_cost)
        if self.context.analyzer is not None:
            self.context.analyzer.add(self.provider, model, usage, cost)

    async def _store(self, request: GenerateRequest, response: LLMResponse) -> None:
        if request.cache_disabled:
            return
        await self.context.cache.set(self._cache_key(request), response, ttl=request.cache_ttl)


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


_JSON_TYPES = {
    "object": dict,
    "array": list,
    "string": str,
    "number": (int, float),
    "integer": int,
    "boolean": bool,
    "null": type(None),
}


def _matches_type(value: Any, type_name: str) -> bool:
    # bool is an int subclass but not a JSON number.
    if type_name in ("number", "integer") and isinstance(value, bool):
        return False
    expected = _JSON_TYPES.get(type_name)
    return expected is None or isinstance(value, expected)


def _check_schema(provider: str, data: Any, schema: Dict[str, Any], path: str = "$") -> None:
    type_name = schema.get("type")
    if type_name and not _matches_type(data, type_name):
        raise ResponseFormatError(provider, f"{path}: expected JSON {type_name}, got {type(data).__name__}")
    if isinstance(data, dict):
        missing = [key for key in schema.get("required", []) if key not in data]
        if missing:
            raise ResponseFormatError(provider, f"{path}: missing required keys: {', '.join(missing)}")
        for key, sub_schema in schema.get("properties", {}).items():
            if key in data and isinstance(sub_schema, dict):
                _check_schema(provider, data[key], sub_schema, f"{path}.{key}")
    elif isinstance(data, list) and isinstance(schema.get("items"), dict):
        for i, item in enumerate(data):
            _check_schema(provider, item, schema["items"], f"{path}[{i}]")
