"""Cost accounting from token usage and registry pricing.

CostAccountant turns one TokenUsage into a CostBreakdown.
CostAnalyzer aggregates breakdowns across requests for reporting.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from core.errors import UnknownModelError
from core.logging import logger

from .registry import ModelRegistry
from .types import CachedDiscount, CostBreakdown, SearchCost, TokenUsage

__all__ = ["LIVE_SEARCH_COST_PER_SOURCE", "CostAccountant", "CostRecord", "CostAnalyzer"]

LIVE_SEARCH_COST_PER_SOURCE = 0.025
PER_MILLION = 1_000_000


class CostAccountant:
    def __init__(self, registry: ModelRegistry, search_cost_per_source: float = LIVE_SEARCH_COST_PER_SOURCE):
        self._registry = registry
        self._search_rate = search_cost_per_source

    def compute_cost(self, provider: str, model: str, usage: TokenUsage) -> Optional[CostBreakdown]:
        """Cost of ``usage`` on ``provider/model``; None if the model is not registered."""
        spec = self._registry.lookup(provider, model)
        if spec is None:
            return None

        in_rate = spec.input_cost_per_million
        out_rate = spec.output_cost_per_million
        input_cost = usage.prompt_tokens / PER_MILLION * in_rate
        output_cost = usage.completion_tokens / PER_MILLION * out_rate
        total = input_cost + output_cost

        cached_discount = None
        if usage.cached_tokens and spec.cached_input_discount:
            # Charged on top of the full input cost, matching provider invoices as
            # observed so far. See DESIGN.md before changing.
            cached_cost = usage.cached_tokens / PER_MILLION * in_rate * (1 - spec.cached_input_discount)
            total += cached_cost
            cached_discount = CachedDiscount(
                tokens=usage.cached_tokens,
                cost=cached_cost,
                discount_percent=spec.cached_input_discount * 100,
            )

        search_cost = None
        if usage.live_search_sources:
            sources_cost = usage.live_search_sources * self._search_rate
            total += sources_cost
            search_cost = SearchCost(
                sources=usage.live_search_sources,
                cost=sources_cost,
                rate_per_source=self._search_rate,
            )

        return CostBreakdown(
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=total,
            rate_input_per_million=in_rate,
            rate_output_per_million=out_rate,
            cached_discount=cached_discount,
            search_cost=search_cost,
        )

    def compute_cost_strict(self, provider: str, model: str, usage: TokenUsage) -> CostBreakdown:
        cost = self.compute_cost(provider, model, usage)
        if cost is None:
            raise UnknownModelError(provider, model)
        return cost


# ---------------------------------------------------------------------------
# Aggregated reporting
# ---------------------------------------------------------------------------


@dataclass
class CostRecord:
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    total_cost: float


@dataclass
class CostAnalyzer:
    """Running totals over executed requests."""
    records: List[CostRecord] = field(default_factory=list)

    def add(self, provider: str, model: str, usage: TokenUsage, cost: Optional[CostBreakdown]) -> None:
        self.records.append(
            CostRecord(
                provider=provider,
                model=model,
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                total_cost=cost.total_cost if cost else 0.0,
            )
        )

    @property
    def total_cost(self) -> float:
        return sum(r.total_cost for r in self.records)

    def report(self) -> Dict[str, object]:
        by_provider: Dict[str, float] = {}
        by_model: Dict[str, float] = {}
        for r in self.records:
            by_provider[r.provider] = by_provider.get(r.provider, 0.0) + r.total_cost
            key = f"{r.provider}/{r.model}"
            by_model[key] = by_model.get(key, 0.0) + r.total_cost
        count = len(self.records)
        return {
            "total_requests": count,
            "total_input_tokens": sum(r.input_tokens for r in self.records),
            "total_output_tokens": sum(r.output_tokens for r in self.records),
            "total_cost": self.total_cost,
            "average_cost_per_request": self.total_cost / count if count else 0.0,
            "cost_by_provider": by_provider,
            "cost_by_model": by_model,
        }

    def most_expensive(self) -> Optional[CostRecord]:
        return max(self.records, key=lambda r: r.total_cost, default=None)

    def cheapest(self) -> Optional[CostRecord]:
        return min(self.records, key=lambda r: r.total_cost, default=None)

    def cost_by_provider(self) -> List[Dict[str, object]]:
        """Per-provider totals, most expensive first, with share of overall cost."""
        total = self.total_cost
        rows: Dict[str, Dict[str, object]] = {}
        for r in self.records:
            row = rows.setdefault(r.provider, {"provider": r.provider, "cost": 0.0, "requests": 0})
            row["cost"] += r.total_cost
            row["requests"] += 1
        for row in rows.values():
            row["percentage"] = row["cost"] / total * 100 if total else 0.0
        return sorted(rows.values(), key=lambda row: row["cost"], reverse=True)

    def reset(self) -> None:
        self.records.clear()

    def export_json(self) -> str:
        return json.dumps({"records": [asdict(r) for r in self.records], "summary": self.report()})

    def import_json(self, data: str) -> None:
        try:
            payload = json.loads(data)
            self.records.extend(CostRecord(**r) for r in payload["records"])
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to import cost records: {e}")
            raise
