"""Streaming aggregation and token estimation."""
from __future__ import annotations

import inspect
import math
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

from .types import StreamChunk, TokenUsage, ToolCall

__all__ = [
    "CHARS_PER_TOKEN",
    "estimate_tokens",
    "estimate_usage",
    "StreamResult",
    "StreamAggregator",
]

CHARS_PER_TOKEN = 4

TokenCallback = Callable[[str], Union[None, Awaitable[None]]]


def estimate_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(prompt_text: str, completion_text: str) -> TokenUsage:
    return TokenUsage.from_counts(
        estimate_tokens(prompt_text),
        estimate_tokens(completion_text),
        source="estimated",
    )


@dataclass
class StreamResult:
    text: str
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


class StreamAggregator:
    """Folds a chunk stream into one StreamResult, forwarding every delta to ``on_token``.

    ``started`` turns true once the first delta has been delivered; callers
    use it to decide whether a failed stream may still be retried.
    """

    def __init__(self, on_token: Optional[TokenCallback] = None) -> None:
        self._on_token = on_token
        self.started = False

    async def aggregate(self, chunks: AsyncIterator[StreamChunk]) -> StreamResult:
        parts: List[str] = []
        finish_reason: Optional[str] = None
        usage: Optional[TokenUsage] = None
        model: Optional[str] = None
        tool_calls: List[ToolCall] = []
        try:
            async for chunk in chunks:
                if isinstance(chunk, dict):
                    chunk = StreamChunk.model_validate(chunk)
                if chunk.text:
                    parts.append(chunk.text)
                    self.started = True
                    await self._emit(chunk.text)
                if chunk.finish_reason:
                    finish_reason = chunk.finish_reason
                if chunk.usage is not None:
                    usage = chunk.usage
                if chunk.model:
                    model = chunk.model
                if chunk.tool_calls:
                    tool_calls.extend(chunk.tool_calls)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
        return StreamResult(
            text="".join(parts),
            finish_reason=finish_reason,
            usage=usage,
            model=model,
            tool_calls=tool_calls,
        )

    async def _emit(self, text: str) -> None:
        if self._on_token is None:
            return
        result = self._on_token(text)
        if inspect.isawaitable(result):
            await result
