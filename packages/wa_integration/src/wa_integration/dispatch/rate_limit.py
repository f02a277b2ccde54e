"""
Per-tenant send rate limiting.

Fixed-window counters in Redis for minute, hour, day and month (30 days)
windows. Each tenant is on a plan; plans are stored in a Redis hash so the
CLI can change them without a restart.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "wa:ratelimit"
PLANS_KEY = KEY_PREFIX + ":plans"

# (window name, seconds)
WINDOWS: tuple[tuple[str, int], ...] = (
    ("minute", 60),
    ("hour", 3600),
    ("day", 86400),
    ("month", 2592000),
)


@dataclass(frozen=True)
class RatePlan:
    per_minute: int
    per_hour: int
    per_day: int
    per_month: int

    def limit_for(self, window: str) -> int:
        return getattr(self, f"per_{window}")

    def as_dict(self) -> dict[str, int]:
        return {window: self.limit_for(window) for window, _ttl in WINDOWS}


RATE_PLANS: dict[str, RatePlan] = {
    "basic": RatePlan(per_minute=20, per_hour=500, per_day=5000, per_month=50000),
    "pro": RatePlan(per_minute=60, per_hour=2000, per_day=20000, per_month=200000),
    "enterprise": RatePlan(per_minute=200, per_hour=10000, per_day=100000, per_month=1000000),
}


@dataclass
class RateLimitDecision:
    allowed: bool
    plan: str
    reason: str | None = None
    retry_after_seconds: int = 0
    window: str | None = None
    used: int | None = None
    limits: dict[str, int] = field(default_factory=dict)


class TenantRateLimiter:
    """
    Fixed-window limiter keyed by tenant.

    `check` consumes one unit in every window when it allows a send; a denied
    check consumes nothing.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        default_plan: str = "basic",
        clock: Callable[[], float] = time.time,
    ):
        if default_plan not in RATE_PLANS:
            raise ValueError(f"Unknown rate plan: {default_plan}")
        self.redis = redis_client
        self.default_plan = default_plan
        self.clock = clock

    def _key(self, tenant_id: UUID | str, window: str, ttl: int, now: float) -> str:
        return f"{KEY_PREFIX}:{tenant_id}:{window}:{int(now // ttl)}"

    def get_plan(self, tenant_id: UUID | str) -> tuple[str, RatePlan]:
        name = self.redis.hget(PLANS_KEY, str(tenant_id)) or self.default_plan
        if name not in RATE_PLANS:
            logger.warning(f"Tenant {tenant_id} has unknown plan '{name}', using {self.default_plan}")
            name = self.default_plan
        return name, RATE_PLANS[name]

    def set_plan(self, tenant_id: UUID | str, plan: str) -> None:
        if plan not in RATE_PLANS:
            raise ValueError(f"Unknown rate plan: {plan}. Available: {', '.join(RATE_PLANS)}")
        self.redis.hset(PLANS_KEY, str(tenant_id), plan)
        logger.info(f"Rate plan for tenant {tenant_id} set to {plan}")

    def check(self, tenant_id: UUID | str) -> RateLimitDecision:
        """Consume one send for a tenant if every window has room."""
        plan_name, plan = self.get_plan(tenant_id)
        now = self.clock()

        keys = []
        pipe = self.redis.pipeline()
        for window, ttl in WINDOWS:
            key = self._key(tenant_id, window, ttl, now)
            keys.append(key)
            pipe.incr(key)
            pipe.expire(key, ttl)
        results = pipe.execute()
        counts = results[::2]

        violations = [
            (window, ttl, count)
            for (window, ttl), count in zip(WINDOWS, counts)
            if count > plan.limit_for(window)
        ]
        if not violations:
            return RateLimitDecision(allowed=True, plan=plan_name, limits=plan.as_dict())

        # Give the units back; a denied send is not counted
        pipe = self.redis.pipeline()
        for key in keys:
            pipe.decr(key)
        pipe.execute()

        window, ttl, count = max(violations, key=lambda v: v[1] - (now % v[1]))
        retry_after = math.ceil(ttl - (now % ttl))
        return RateLimitDecision(
            allowed=False,
            plan=plan_name,
            reason=f"Limit of {plan.limit_for(window)} messages per {window} exceeded",
            retry_after_seconds=max(retry_after, 1),
            window=window,
            used=count - 1,
            limits=plan.as_dict(),
        )

    def get_usage(self, tenant_id: UUID | str) -> dict[str, Any]:
        """Current usage, limits and percentage used per window."""
        plan_name, plan = self.get_plan(tenant_id)
        now = self.clock()

        keys = [self._key(tenant_id, window, ttl, now) for window, ttl in WINDOWS]
        values = self.redis.mget(keys)
        usage = {window: int(value or 0) for (window, _ttl), value in zip(WINDOWS, values)}
        limits = plan.as_dict()

        return {
            "plan": plan_name,
            "usage": usage,
            "limits": limits,
            "percentages": {
                window: round(usage[window] / limits[window] * 100, 2) for window in usage
            },
        }

    def reset(self, tenant_id: UUID | str) -> int:
        """Delete all counters of a tenant. Returns the number of keys removed."""
        keys = list(self.redis.scan_iter(match=f"{KEY_PREFIX}:{tenant_id}:*"))
        if keys:
            self.redis.delete(*keys)
        logger.info(f"Rate limits reset for tenant {tenant_id}")
        return len(keys)
