from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from generous.service.cost import (
    CostConfig,
    aggregate_costs,
    calculate_cost,
    estimate_cost,
    estimate_tokens,
    format_cost,
    get_cost_config,
)
from generous.service.quota import MemoryUsageCounters, QuotaConfig, QuotaService, usage_key


class Clock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _service(clock: Clock) -> QuotaService:
    return QuotaService(MemoryUsageCounters(clock=clock), clock=clock)


@pytest.fixture
def clock():
    return Clock(datetime(2024, 3, 1, 10, 15, 5, tzinfo=timezone.utc))


async def test_no_quota_config_never_blocks(clock):
    service = _service(clock)
    for _ in range(5):
        await service.record_usage("u", "ts", tokens=100)
    assert await service.check_quota("u", "ts", None) is None
    assert await service.check_quota("u", "ts", QuotaConfig(max_requests_per_minute=0)) is None


async def test_minute_limit_blocks_then_resets_next_minute(clock):
    service = _service(clock)
    quotas = QuotaConfig(max_requests_per_minute=2, max_requests_per_hour=10)
    await service.record_usage("u", "ts")
    assert await service.check_quota("u", "ts", quotas) is None
    await service.record_usage("u", "ts")
    assert await service.check_quota("u", "ts", quotas) == (
        "Rate limit exceeded: 2 requests per minute"
    )

    clock.advance(minutes=1)
    assert await service.check_quota("u", "ts", quotas) is None


async def test_first_exceeded_limit_is_reported_in_order(clock):
    service = _service(clock)
    quotas = QuotaConfig(max_requests_per_hour=1, max_requests_per_day=1, max_tokens_per_day=10)
    await service.record_usage("u", "ts", tokens=50)
    assert await service.check_quota("u", "ts", quotas) == (
        "Rate limit exceeded: 1 requests per hour"
    )


async def test_predicted_tokens_and_cost_count_against_daily_limits(clock):
    service = _service(clock)
    await service.record_usage("u", "ts", tokens=80, cost_cents=150)

    tokens = QuotaConfig(max_tokens_per_day=100)
    assert await service.check_quota("u", "ts", tokens, tokens=10) is None
    assert await service.check_quota("u", "ts", tokens, tokens=30) == (
        "Token limit exceeded: 100 tokens per day"
    )

    cost = QuotaConfig(max_cost_cents_per_day=200)
    assert await service.check_quota("u", "ts", cost, cost_cents=60) == (
        "Cost limit exceeded: $2.00 per day"
    )


async def test_usage_is_isolated_per_user_and_toolspace(clock):
    service = _service(clock)
    quotas = QuotaConfig(max_requests_per_day=1)
    await service.record_usage("u", "ts")
    assert await service.check_quota("u", "other", quotas) is None
    assert await service.check_quota("someone", "ts", quotas) is None


async def test_remaining_quota_floors_at_zero(clock):
    service = _service(clock)
    quotas = QuotaConfig(max_requests_per_minute=1, max_tokens_per_day=100)
    for _ in range(3):
        await service.record_usage("u", "ts", tokens=40)

    remaining = await service.get_remaining_quota("u", "ts", quotas)
    assert remaining.requests_per_minute == 0
    assert remaining.tokens_per_day == 0
    assert remaining.requests_per_hour is None
    assert remaining.cost_cents_per_day is None


async def test_reset_usage_clears_all_buckets(clock):
    service = _service(clock)
    await service.record_usage("u", "ts")
    await service.record_usage("u", "keep")

    assert await service.reset_usage("u", "ts") == 3
    stats = await service.get_usage_stats("u", "ts")
    assert all(snapshot.count == 0 for snapshot in stats.values())
    assert (await service.get_usage_stats("u", "keep"))["day"].count == 1


async def test_memory_counters_expire_buckets(clock):
    counters = MemoryUsageCounters(clock=clock)
    key = usage_key("u", "ts", "minute", clock())
    await counters.increment(key, {"count": 1}, ttl_seconds=60)
    assert (await counters.read(key))["count"] == 1

    clock.advance(seconds=61)
    assert await counters.read(key) == {}


def test_quota_config_accepts_camel_and_snake_keys():
    config = QuotaConfig.from_record({"maxRequestsPerMinute": "5", "max_cost_cents_per_day": 12})
    assert config.max_requests_per_minute == 5
    assert config.max_cost_cents_per_day == 12.0
    assert config.to_record() == {"maxRequestsPerMinute": 5, "maxCostCentsPerDay": 12.0}
    assert QuotaConfig.from_record(None).is_empty


@pytest.mark.parametrize(
    "tool_id,tokens,expected",
    [
        ("calculator", 0, 0),
        ("calculator", 5000, 1),
        ("@stripe/createPayment", 0, 4),
        ("@openai/chat", 2000, 3),
        ("unknownTool", 0, 0),
        ("@acme/thing", 1000, 1),
    ],
)
def test_calculate_cost(tool_id, tokens, expected):
    assert calculate_cost(tool_id, 0, tokens).cost_cents == expected


def test_cost_overrides_match_exact_ids_and_prefixes():
    assert get_cost_config("@twilio/sms").base_rate == 5
    assert get_cost_config("weather").base_rate == 0
    custom = {"special": {"time_rate": 1.0}}
    assert get_cost_config("special", custom).time_rate == 1.0
    breakdown = calculate_cost("special", 2500, config=CostConfig(time_rate=1.0))
    assert breakdown.cost_cents == 3


def test_format_cost():
    assert format_cost(0) == "Free"
    assert format_cost(42) == "42¢"
    assert format_cost(250) == "$2.50"


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_estimate_cost_flags_external_tools():
    external = estimate_cost("@stripe/refund", {"amount": 10})
    assert external.is_external
    assert external.estimated_cost_cents >= 4
    assert "External" in external.note

    local = estimate_cost("weather", {})
    assert not local.is_external
    assert local.estimated_tokens == 2


@dataclass
class UsageRow:
    tool_id: str
    cost_cents: int
    tokens_used: int


def test_aggregate_costs_groups_by_tool():
    summary = aggregate_costs(
        [UsageRow("weather", 0, 10), UsageRow("@openai/chat", 3, 500), UsageRow("weather", 1, 5)]
    )
    assert summary.total_calls == 3
    assert summary.total_cost_cents == 4
    assert summary.total_tokens == 515
    assert summary.by_tool["weather"].calls == 2
    assert summary.by_tool["weather"].tokens == 15
