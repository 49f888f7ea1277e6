from __future__ import annotations

import json
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Mapping, Optional

EXTERNAL_TOOL_PREFIX = "@"


@dataclass(frozen=True)
class CostConfig:
    """Pricing knobs, in cents.

    ``token_rate`` is per 1000 tokens and ``time_rate`` per second of wall time.
    External (``@namespace/...``) tools are scaled by ``external_api_multiplier``.
    """

    base_rate: float = 0.0
    token_rate: float = 0.1
    external_api_multiplier: float = 1.5
    time_rate: float = 0.0


DEFAULT_COST_CONFIG = CostConfig()

# Exact tool ids or "prefix/*" patterns
TOOL_COST_OVERRIDES: Dict[str, Dict[str, float]] = {
    "@openai/*": {"base_rate": 1, "token_rate": 0.5},
    "@anthropic/*": {"base_rate": 1, "token_rate": 0.3},
    "@stripe/*": {"base_rate": 2, "external_api_multiplier": 2},
    "@twilio/*": {"base_rate": 5},
    "@sendgrid/*": {"base_rate": 1},
    "weather": {"base_rate": 0},
    "calculator": {"base_rate": 0},
    "timer": {"base_rate": 0},
}


def is_external_tool(tool_id: str) -> bool:
    return tool_id.startswith(EXTERNAL_TOOL_PREFIX)


def get_cost_config(
    tool_id: str,
    overrides: Optional[Mapping[str, Mapping[str, float]]] = None,
    *,
    base: CostConfig = DEFAULT_COST_CONFIG,
) -> CostConfig:
    table = TOOL_COST_OVERRIDES if overrides is None else overrides
    if tool_id in table:
        return replace(base, **table[tool_id])
    for pattern, values in table.items():
        if pattern.endswith("/*") and tool_id.startswith(pattern[:-1]):
            return replace(base, **values)
    return base


@dataclass(frozen=True)
class CostBreakdown:
    cost_cents: int
    base: float
    tokens: float
    time: float
    external_multiplier: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "cost_cents": self.cost_cents,
            "base": self.base,
            "tokens": self.tokens,
            "time": self.time,
            "external_multiplier": self.external_multiplier,
        }


def calculate_cost(
    tool_id: str,
    execution_time_ms: float = 0,
    tokens_used: int = 0,
    *,
    is_external: Optional[bool] = None,
    config: Optional[CostConfig] = None,
) -> CostBreakdown:
    cfg = config or get_cost_config(tool_id)
    external = is_external_tool(tool_id) if is_external is None else is_external
    multiplier = cfg.external_api_multiplier if external else 1.0
    token_cost = (max(tokens_used, 0) / 1000.0) * cfg.token_rate
    time_cost = (max(execution_time_ms, 0) / 1000.0) * cfg.time_rate
    subtotal = (cfg.base_rate + token_cost + time_cost) * multiplier
    # round first so float noise like 1.0000000002 does not bump a cent
    cents = math.ceil(round(subtotal, 6))
    return CostBreakdown(
        cost_cents=int(cents),
        base=cfg.base_rate,
        tokens=token_cost,
        time=time_cost,
        external_multiplier=multiplier,
    )


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def payload_tokens(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return estimate_tokens(value)
    return estimate_tokens(json.dumps(value, default=str))


@dataclass(frozen=True)
class CostEstimate:
    estimated_tokens: int
    estimated_cost_cents: int
    is_external: bool
    note: str


def estimate_cost(tool_id: str, params: Optional[Mapping[str, Any]] = None) -> CostEstimate:
    # Assume the response is about as large as the request
    tokens = payload_tokens(dict(params or {})) * 2
    external = is_external_tool(tool_id)
    breakdown = calculate_cost(tool_id, 0, tokens, is_external=external)
    note = (
        "External API pricing may vary with provider charges"
        if external
        else "Estimate based on request size"
    )
    return CostEstimate(
        estimated_tokens=tokens,
        estimated_cost_cents=breakdown.cost_cents,
        is_external=external,
        note=note,
    )


def format_cost(cents: float) -> str:
    if cents <= 0:
        return "Free"
    if cents < 100:
        return f"{int(math.ceil(cents))}¢"
    return f"${cents / 100:.2f}"


@dataclass
class ToolCostTotals:
    cost_cents: int = 0
    tokens: int = 0
    calls: int = 0


@dataclass
class CostSummary:
    total_cost_cents: int = 0
    total_tokens: int = 0
    total_calls: int = 0
    by_tool: Dict[str, ToolCostTotals] = field(default_factory=dict)


def aggregate_costs(records: Iterable[Any]) -> CostSummary:
    """Sum usage rows (anything with tool_id, cost_cents and tokens_used)."""
    summary = CostSummary()
    for record in records:
        cost = int(getattr(record, "cost_cents", 0) or 0)
        tokens = int(getattr(record, "tokens_used", 0) or 0)
        totals = summary.by_tool.setdefault(record.tool_id, ToolCostTotals())
        totals.cost_cents += cost
        totals.tokens += tokens
        totals.calls += 1
        summary.total_cost_cents += cost
        summary.total_tokens += tokens
        summary.total_calls += 1
    return summary
