"""
Outbound Dispatch Queue

Durable, rate-limited, retrying queue for single, bulk and scheduled sends.
"""

from wa_integration.dispatch.executor import DispatchExecutor, ExecutionOutcome
from wa_integration.dispatch.jobs import DispatchJob, JobKind, JobStatus
from wa_integration.dispatch.queue import BulkResult, DispatchQueue, QueueStats
from wa_integration.dispatch.rate_limit import (
    RATE_PLANS,
    RateLimitDecision,
    RatePlan,
    TenantRateLimiter,
)
from wa_integration.dispatch.store import DispatchStore

__all__ = [
    "DispatchExecutor",
    "ExecutionOutcome",
    "DispatchJob",
    "JobKind",
    "JobStatus",
    "BulkResult",
    "DispatchQueue",
    "QueueStats",
    "RATE_PLANS",
    "RateLimitDecision",
    "RatePlan",
    "TenantRateLimiter",
    "DispatchStore",
]
