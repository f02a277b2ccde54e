"""Auto-response policy: configuration, decisions, generation and usage quotas."""

from wa_integration.policy.config import (
    BusinessHours,
    DayWindow,
    GenerationSettings,
    Personality,
    PolicyUpdate,
    ResponseMode,
    TenantPolicy,
    UsageCounters,
    UsageQuotas,
)
from wa_integration.policy.engine import AutoResponsePolicyEngine, GeneratedReply
from wa_integration.policy.llm import ChatCompletionClient, CompletionResult
from wa_integration.policy.service import PolicyService
from wa_integration.policy.usage import TenantUsageLedger

__all__ = [
    "AutoResponsePolicyEngine",
    "BusinessHours",
    "ChatCompletionClient",
    "CompletionResult",
    "DayWindow",
    "GeneratedReply",
    "GenerationSettings",
    "Personality",
    "PolicyService",
    "PolicyUpdate",
    "ResponseMode",
    "TenantPolicy",
    "TenantUsageLedger",
    "UsageCounters",
    "UsageQuotas",
]
