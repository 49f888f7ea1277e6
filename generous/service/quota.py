from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from generous.logging import get_logger

logger = get_logger(__name__)

PERIODS = ("minute", "hour", "day")
PERIOD_SECONDS = {"minute": 60, "hour": 3600, "day": 86400}
_PERIOD_FORMATS = {
    "minute": "%Y-%m-%dT%H:%M",
    "hour": "%Y-%m-%dT%H",
    "day": "%Y-%m-%d",
}
# Buckets outlive their period by an hour; day buckets are kept for 25h
BUCKET_GRACE_SECONDS = 3600

_QUOTA_FIELDS = {
    "max_requests_per_minute": "maxRequestsPerMinute",
    "max_requests_per_hour": "maxRequestsPerHour",
    "max_requests_per_day": "maxRequestsPerDay",
    "max_tokens_per_day": "maxTokensPerDay",
    "max_cost_cents_per_day": "maxCostCentsPerDay",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enforced(limit: Optional[float]) -> bool:
    return limit is not None and limit > 0


@dataclass(frozen=True)
class QuotaConfig:
    """Per (user, toolspace) limits. Missing, zero or negative limits are not enforced."""

    max_requests_per_minute: Optional[int] = None
    max_requests_per_hour: Optional[int] = None
    max_requests_per_day: Optional[int] = None
    max_tokens_per_day: Optional[int] = None
    max_cost_cents_per_day: Optional[float] = None

    @classmethod
    def from_record(cls, raw: Optional[Mapping[str, Any]]) -> "QuotaConfig":
        if not raw:
            return cls()
        values: Dict[str, Any] = {}
        for attr, camel in _QUOTA_FIELDS.items():
            value = raw.get(camel, raw.get(attr))
            if value is not None:
                values[attr] = float(value) if attr == "max_cost_cents_per_day" else int(value)
        return cls(**values)

    def to_record(self) -> Dict[str, Any]:
        return {
            camel: getattr(self, attr)
            for attr, camel in _QUOTA_FIELDS.items()
            if getattr(self, attr) is not None
        }

    @property
    def is_empty(self) -> bool:
        return not any(_enforced(getattr(self, attr)) for attr in _QUOTA_FIELDS)


@dataclass(frozen=True)
class UsageSnapshot:
    count: int = 0
    tokens: int = 0
    cost_cents: float = 0.0

    @classmethod
    def from_counters(cls, raw: Mapping[str, Any]) -> "UsageSnapshot":
        return cls(
            count=int(float(raw.get("count", 0) or 0)),
            tokens=int(float(raw.get("tokens", 0) or 0)),
            cost_cents=float(raw.get("cost_cents", 0) or 0),
        )


@dataclass(frozen=True)
class RemainingQuota:
    requests_per_minute: Optional[int] = None
    requests_per_hour: Optional[int] = None
    requests_per_day: Optional[int] = None
    tokens_per_day: Optional[int] = None
    cost_cents_per_day: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "requests_per_minute": self.requests_per_minute,
            "requests_per_hour": self.requests_per_hour,
            "requests_per_day": self.requests_per_day,
            "tokens_per_day": self.tokens_per_day,
            "cost_cents_per_day": self.cost_cents_per_day,
        }


class UsageCounterStore(Protocol):
    """Atomic per-key counters; the only place usage is ever incremented."""

    async def increment(
        self, key: str, deltas: Mapping[str, float], ttl_seconds: int
    ) -> Dict[str, float]: ...

    async def read(self, key: str) -> Dict[str, float]: ...

    async def delete_prefix(self, prefix: str) -> int: ...


class MemoryUsageCounters:
    """Process-local counters guarded by a single lock."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[str, float]] = {}
        self._expires: Dict[str, datetime] = {}

    def _prune(self, now: datetime) -> None:
        expired = [key for key, at in self._expires.items() if at <= now]
        for key in expired:
            self._counters.pop(key, None)
            self._expires.pop(key, None)

    async def increment(
        self, key: str, deltas: Mapping[str, float], ttl_seconds: int
    ) -> Dict[str, float]:
        now = self._clock()
        with self._lock:
            self._prune(now)
            entry = self._counters.setdefault(key, {})
            if key not in self._expires:
                self._expires[key] = now + timedelta(seconds=ttl_seconds)
            for name, delta in deltas.items():
                entry[name] = entry.get(name, 0) + delta
            return dict(entry)

    async def read(self, key: str) -> Dict[str, float]:
        with self._lock:
            self._prune(self._clock())
            return dict(self._counters.get(key, {}))

    async def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._counters if key.startswith(prefix)]
            for key in doomed:
                self._counters.pop(key, None)
                self._expires.pop(key, None)
            return len(doomed)


def usage_key_prefix(user_id: str, toolspace_id: str) -> str:
    return f"quota:{user_id}:{toolspace_id}:"


def usage_key(user_id: str, toolspace_id: str, period: str, now: datetime) -> str:
    bucket = now.astimezone(timezone.utc).strftime(_PERIOD_FORMATS[period])
    return f"{usage_key_prefix(user_id, toolspace_id)}{period}:{bucket}"


class QuotaService:
    """Checks and records usage per (user, toolspace) in minute, hour and day buckets."""

    def __init__(
        self,
        counters: UsageCounterStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.counters = counters
        self._clock = clock or _utcnow

    async def get_usage_stats(self, user_id: str, toolspace_id: str) -> Dict[str, UsageSnapshot]:
        now = self._clock()
        stats: Dict[str, UsageSnapshot] = {}
        for period in PERIODS:
            raw = await self.counters.read(usage_key(user_id, toolspace_id, period, now))
            stats[period] = UsageSnapshot.from_counters(raw)
        return stats

    async def check_quota(
        self,
        user_id: str,
        toolspace_id: str,
        quotas: Optional[QuotaConfig],
        *,
        tokens: int = 0,
        cost_cents: float = 0,
    ) -> Optional[str]:
        """Return a message naming the first exceeded limit, or ``None``.

        A limit is exceeded once the current value has reached it, or when the
        predicted increment (``tokens``/``cost_cents``) would carry it past.
        """
        if quotas is None or quotas.is_empty:
            return None
        stats = await self.get_usage_stats(user_id, toolspace_id)
        minute, hour, day = stats["minute"], stats["hour"], stats["day"]

        error: Optional[str] = None
        if _enforced(quotas.max_requests_per_minute) and minute.count >= quotas.max_requests_per_minute:
            error = f"Rate limit exceeded: {quotas.max_requests_per_minute} requests per minute"
        elif _enforced(quotas.max_requests_per_hour) and hour.count >= quotas.max_requests_per_hour:
            error = f"Rate limit exceeded: {quotas.max_requests_per_hour} requests per hour"
        elif _enforced(quotas.max_requests_per_day) and day.count >= quotas.max_requests_per_day:
            error = f"Daily limit exceeded: {quotas.max_requests_per_day} requests per day"
        elif _enforced(quotas.max_tokens_per_day) and (
            day.tokens >= quotas.max_tokens_per_day
            or day.tokens + tokens > quotas.max_tokens_per_day
        ):
            error = f"Token limit exceeded: {quotas.max_tokens_per_day} tokens per day"
        elif _enforced(quotas.max_cost_cents_per_day) and (
            day.cost_cents >= quotas.max_cost_cents_per_day
            or day.cost_cents + cost_cents > quotas.max_cost_cents_per_day
        ):
            error = f"Cost limit exceeded: ${quotas.max_cost_cents_per_day / 100:.2f} per day"

        if error:
            logger.info(
                "quota_exceeded",
                user_id=user_id,
                toolspace_id=toolspace_id,
                reason=error,
            )
        return error

    async def record_usage(
        self,
        user_id: str,
        toolspace_id: str,
        tokens: int = 0,
        cost_cents: float = 0,
    ) -> None:
        now = self._clock()
        deltas = {"count": 1, "tokens": max(int(tokens), 0), "cost_cents": max(float(cost_cents), 0.0)}
        for period in PERIODS:
            await self.counters.increment(
                usage_key(user_id, toolspace_id, period, now),
                deltas,
                PERIOD_SECONDS[period] + BUCKET_GRACE_SECONDS,
            )

    async def get_remaining_quota(
        self, user_id: str, toolspace_id: str, quotas: Optional[QuotaConfig]
    ) -> RemainingQuota:
        quotas = quotas or QuotaConfig()
        stats = await self.get_usage_stats(user_id, toolspace_id)

        def remaining(limit, used):
            if not _enforced(limit):
                return None
            return max(0, limit - used)

        return RemainingQuota(
            requests_per_minute=remaining(quotas.max_requests_per_minute, stats["minute"].count),
            requests_per_hour=remaining(quotas.max_requests_per_hour, stats["hour"].count),
            requests_per_day=remaining(quotas.max_requests_per_day, stats["day"].count),
            tokens_per_day=remaining(quotas.max_tokens_per_day, stats["day"].tokens),
            cost_cents_per_day=remaining(quotas.max_cost_cents_per_day, stats["day"].cost_cents),
        )

    async def reset_usage(self, user_id: str, toolspace_id: str) -> int:
        removed = await self.counters.delete_prefix(usage_key_prefix(user_id, toolspace_id))
        logger.info("quota_usage_reset", user_id=user_id, toolspace_id=toolspace_id, keys=removed)
        return removed
