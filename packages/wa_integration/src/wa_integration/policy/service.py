"""
Auto-Response Policy Service

Application-facing operations on tenant policies: read (created with defaults
on first access), update, toggle, usage statistics and usage reset.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from wacore.clock import utcnow

from wa_integration.persistence.models import AutoResponsePolicy
from wa_integration.persistence.repo import WhatsAppRepository
from wa_integration.policy.config import PolicyUpdate, TenantPolicy
from wa_integration.policy.usage import TenantUsageLedger, effective_usage

logger = logging.getLogger(__name__)


def _percentage(used: int, limit: int | None) -> float | None:
    if not limit:
        return None
    return round(used / limit * 100, 2)


class PolicyService:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.clock = clock

    def get_or_create_row(self, tenant_id: UUID) -> AutoResponsePolicy:
        """Load a tenant's policy row, creating it with defaults if absent."""
        row = self.repo.get_policy(tenant_id)
        if row is not None:
            return row

        defaults = TenantPolicy().to_columns()
        row = self.repo.create_policy(tenant_id, usage_reset_at=self.clock(), **defaults)
        self.db.commit()
        logger.info(f"Default auto-response policy created for tenant {tenant_id}")
        return row

    def get_policy(self, tenant_id: UUID) -> TenantPolicy:
        return TenantPolicy.from_model(self.get_or_create_row(tenant_id))

    def update_policy(self, tenant_id: UUID, update: PolicyUpdate) -> TenantPolicy:
        """
        Apply a partial update.

        Raises:
            pydantic.ValidationError: The merged policy is invalid
        """
        row = self.get_or_create_row(tenant_id)
        policy = update.apply_to(TenantPolicy.from_model(row))
        for column, value in policy.to_columns().items():
            setattr(row, column, value)
        self.db.commit()
        logger.info(
            f"Auto-response policy updated for tenant {tenant_id}",
            extra={"fields": sorted(update.model_dump(exclude_unset=True))},
        )
        return TenantPolicy.from_model(row)

    def toggle(self, tenant_id: UUID, enabled: bool) -> TenantPolicy:
        row = self.get_or_create_row(tenant_id)
        row.enabled = enabled
        self.db.commit()
        logger.info(f"Auto-response {'enabled' if enabled else 'disabled'} for tenant {tenant_id}")
        return TenantPolicy.from_model(row)

    def get_usage_stats(self, tenant_id: UUID) -> dict[str, Any]:
        """
        Usage against quotas as of now.

        Calendar resets that have not been persisted yet are reflected in the
        figures; the row itself is left to the usage ledger.
        """
        policy = self.get_policy(tenant_id)
        usage = effective_usage(policy.usage, self.clock())
        quotas = policy.quotas

        return {
            "enabled": policy.enabled,
            "model": policy.model,
            "reset_at": usage.reset_at.isoformat() if usage.reset_at else None,
            "daily": {
                "tokens": {
                    "used": usage.tokens_today,
                    "limit": quotas.tokens_per_day,
                    "percentage": _percentage(usage.tokens_today, quotas.tokens_per_day),
                },
                "conversations": {
                    "used": usage.conversations_today,
                    "limit": quotas.conversations_per_day,
                    "percentage": _percentage(usage.conversations_today, quotas.conversations_per_day),
                },
            },
            "monthly": {
                "tokens": {
                    "used": usage.tokens_this_month,
                    "limit": quotas.tokens_per_month,
                    "percentage": _percentage(usage.tokens_this_month, quotas.tokens_per_month),
                },
            },
        }

    def reset_usage(self, tenant_id: UUID) -> TenantPolicy:
        self.get_or_create_row(tenant_id)
        TenantUsageLedger(self.db, clock=self.clock).reset(tenant_id)
        return self.get_policy(tenant_id)
