"""
Auto-Response Usage Ledger

Token and conversation counters live on the tenant's policy row. Every
read-modify-write goes through TenantUsageLedger, which holds an in-process
lock per tenant and a row lock on the policy for the whole update.

Counters reset at UTC calendar boundaries: the daily counters when the UTC
date changes, the monthly counter when the UTC month changes.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from wacore.clock import as_utc, utcnow

from wa_integration.errors import QuotaExceeded
from wa_integration.persistence.models import AutoResponsePolicy, WhatsAppConversation
from wa_integration.persistence.repo import WhatsAppRepository
from wa_integration.policy.config import TenantPolicy, UsageCounters, UsageQuotas

logger = logging.getLogger(__name__)


def effective_usage(counters: UsageCounters, now: datetime) -> UsageCounters:
    """
    Counters as they stand at `now`, with any boundary since the last reset applied.

    A `now` earlier than the last reset never zeroes anything.
    """
    reset_at = as_utc(counters.reset_at)
    now = as_utc(now)
    if reset_at is None or now <= reset_at:
        return counters

    new_day = now.date() > reset_at.date()
    new_month = (now.year, now.month) > (reset_at.year, reset_at.month)
    if not new_day and not new_month:
        return counters

    return UsageCounters(
        tokens_today=0,
        tokens_this_month=0 if new_month else counters.tokens_this_month,
        conversations_today=0,
        reset_at=now,
    )


def _counters_of(row: AutoResponsePolicy) -> UsageCounters:
    return UsageCounters(
        tokens_today=row.tokens_today or 0,
        tokens_this_month=row.tokens_this_month or 0,
        conversations_today=row.conversations_today or 0,
        reset_at=as_utc(row.usage_reset_at),
    )


def roll_usage(row: AutoResponsePolicy, now: datetime) -> bool:
    """
    Apply pending calendar resets to a policy row in place.

    Returns:
        True if any counter was reset
    """
    counters = _counters_of(row)
    if counters.reset_at is None:
        row.usage_reset_at = now
        return False

    rolled = effective_usage(counters, now)
    if rolled is counters:
        return False

    row.tokens_today = rolled.tokens_today
    row.tokens_this_month = rolled.tokens_this_month
    row.conversations_today = rolled.conversations_today
    row.usage_reset_at = rolled.reset_at
    logger.info(
        f"Auto-response usage reset for tenant {row.tenant_id}",
        extra={"tenant_id": str(row.tenant_id), "monthly": rolled.tokens_this_month == 0},
    )
    return True


def is_first_reply_today(conversation: WhatsAppConversation, now: datetime) -> bool:
    """Whether an automated reply in this conversation would be its first of the UTC day."""
    last = as_utc(conversation.last_automated_at)
    return last is None or last.date() < as_utc(now).date()


def check_quotas(
    counters: UsageCounters,
    quotas: UsageQuotas,
    new_conversation: bool,
) -> None:
    """
    Raise QuotaExceeded when a limit is reached.

    The conversations quota applies only when the reply would open a new
    automated conversation for the day.
    """
    if quotas.tokens_per_day is not None and counters.tokens_today >= quotas.tokens_per_day:
        raise QuotaExceeded("tokens_per_day", counters.tokens_today, quotas.tokens_per_day)
    if quotas.tokens_per_month is not None and counters.tokens_this_month >= quotas.tokens_per_month:
        raise QuotaExceeded("tokens_per_month", counters.tokens_this_month, quotas.tokens_per_month)
    if (
        new_conversation
        and quotas.conversations_per_day is not None
        and counters.conversations_today >= quotas.conversations_per_day
    ):
        raise QuotaExceeded(
            "conversations_per_day", counters.conversations_today, quotas.conversations_per_day
        )


class TenantUsageLedger:
    """Serialized quota checks and usage recording per tenant."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.repo = WhatsAppRepository(db)
        self.clock = clock
        self._locks: dict[UUID, asyncio.Lock] = {}

    def lock_for(self, tenant_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def _locked_row(self, tenant_id: UUID) -> AutoResponsePolicy:
        row = self.repo.get_policy(tenant_id, for_update=True)
        if row is None:
            raise LookupError(f"No auto-response policy for tenant {tenant_id}")
        return row

    async def check(self, tenant_id: UUID, conversation: WhatsAppConversation) -> UsageCounters:
        """
        Verify that the tenant may generate one more reply.

        Resets are persisted even when the check fails.

        Raises:
            QuotaExceeded: A quota is exhausted
        """
        async with self.lock_for(tenant_id):
            now = self.clock()
            row = self._locked_row(tenant_id)
            roll_usage(row, now)
            counters = _counters_of(row)
            quotas = TenantPolicy.from_model(row).quotas
            self.db.commit()
            check_quotas(counters, quotas, is_first_reply_today(conversation, now))
            return counters

    async def record(
        self,
        tenant_id: UUID,
        conversation: WhatsAppConversation,
        total_tokens: int,
    ) -> UsageCounters:
        """Add a generated reply's tokens to the daily and monthly counters."""
        async with self.lock_for(tenant_id):
            now = self.clock()
            row = self._locked_row(tenant_id)
            roll_usage(row, now)

            row.tokens_today = (row.tokens_today or 0) + total_tokens
            row.tokens_this_month = (row.tokens_this_month or 0) + total_tokens
            if is_first_reply_today(conversation, now):
                row.conversations_today = (row.conversations_today or 0) + 1
            conversation.last_automated_at = now
            row.last_response_at = now

            counters = _counters_of(row)
            self.db.commit()
            return counters

    def reset(self, tenant_id: UUID) -> None:
        """Zero every counter and move the reset marker to now."""
        row = self._locked_row(tenant_id)
        row.tokens_today = 0
        row.tokens_this_month = 0
        row.conversations_today = 0
        row.usage_reset_at = self.clock()
        self.db.commit()
        logger.info(f"Auto-response usage manually reset for tenant {tenant_id}")
