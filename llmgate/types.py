"""Request, response and usage types shared by the execution layer."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "FunctionDef",
    "ToolCall",
    "GenerateRequest",
    "TokenUsage",
    "CachedDiscount",
    "SearchCost",
    "CostBreakdown",
    "LLMResponse",
    "StreamChunk",
    "TransportResult",
]


@dataclass
class FunctionDef:
    """Function definition for tool calling."""
    name: str
    description: str
    parameters: Dict[str, Any]


@dataclass
class ToolCall:
    """Tool call request from LLM."""
    id: str
    name: str
    arguments: Dict[str, Any]


class GenerateRequest(BaseModel):
    """One provider-agnostic text generation call. Immutable once built."""
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    prompt: str
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(None, gt=0)
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    tools: List[FunctionDef] = Field(default_factory=list)
    json_mode: bool = False
    stream: bool = False
    cache_disabled: bool = False
    cache_ttl: Optional[float] = Field(None, gt=0, description="Per-request cache lifetime in seconds.")
    timeout: Optional[float] = Field(None, gt=0, description="Upper bound for the whole call in seconds.")
    provider_options: Dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: Optional[int] = None
    cached_tokens: Optional[int] = None
    live_search_sources: Optional[int] = None
    # "estimated" marks counts derived from text length, not reported by the provider
    source: Literal["provider", "estimated"] = "provider"

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int, **extra: Any) -> "TokenUsage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            **extra,
        )


class CachedDiscount(BaseModel):
    model_config = ConfigDict(frozen=True)

    tokens: int
    cost: float
    discount_percent: float


class SearchCost(BaseModel):
    model_config = ConfigDict(frozen=True)

    sources: int
    cost: float
    rate_per_source: float


class CostBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_cost: float
    output_cost: float
    total_cost: float
    currency: str = "USD"
    rate_input_per_million: float
    rate_output_per_million: float
    cached_discount: Optional[CachedDiscount] = None
    search_cost: Optional[SearchCost] = None


class LLMResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    text: str
    model: str
    provider: str
    usage: TokenUsage
    cost: Optional[CostBreakdown] = None
    finish_reason: str = "stop"
    tool_calls: List[ToolCall] = Field(default_factory=list)
    cached: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StreamChunk(BaseModel):
    """A single normalized streaming delta."""
    model_config = ConfigDict(protected_namespaces=())

    text: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None


class TransportResult(BaseModel):
    """What a non-streaming transport hands back. ``text=None`` means no choice was returned."""
    model_config = ConfigDict(protected_namespaces=())

    text: Optional[str] = None
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None
    model: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    raw: Optional[Dict[str, Any]] = None
