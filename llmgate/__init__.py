"""Unified execution layer for LLM providers.

Caching, retries with circuit breaking, rate limiting, streaming aggregation
and cost accounting around pluggable provider transports.
"""

from __future__ import annotations

from .cache import FileCache, LRUCache, compute_cache_key
from .cost import CostAccountant, CostAnalyzer
from .executor import AdapterExecutor, ExecutionContext
from .ratelimit import SlidingWindowRateLimiter
from .registry import ModelRegistry, ModelSpec, load_default_registry
from .retry import CircuitState, RetryExecutor
from .streaming import StreamAggregator, estimate_tokens
from .transports import create_transport
from .types import (
    FunctionDef,
    GenerateRequest,
    LLMResponse,
    StreamChunk,
    TokenUsage,
    ToolCall,
    TransportResult,
)

__all__ = [
    "AdapterExecutor",
    "ExecutionContext",
    "GenerateRequest",
    "LLMResponse",
    "StreamChunk",
    "TokenUsage",
    "TransportResult",
    "FunctionDef",
    "ToolCall",
    "LRUCache",
    "FileCache",
    "compute_cache_key",
    "RetryExecutor",
    "CircuitState",
    "SlidingWindowRateLimiter",
    "StreamAggregator",
    "estimate_tokens",
    "CostAccountant",
    "CostAnalyzer",
    "ModelRegistry",
    "ModelSpec",
    "load_default_registry",
    "create_transport",
]
