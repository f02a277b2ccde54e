"""
Dispatch Jobs

The unit of work of the outbound dispatch queue. Jobs are stored in Redis as
JSON documents and owned by the queue once enqueued.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from wacore.clock import as_utc, utcnow


class JobKind(str, Enum):
    SINGLE = "single"
    BULK_ITEM = "bulk_item"
    SCHEDULED = "scheduled"


class JobStatus(str, Enum):
    """
    Lifecycle of a dispatch job.

    queued -> active -> delivered
                     -> queued (retry / rate limited)
                     -> dead_lettered
    queued -> cancelled (only before any worker claimed the job)
    """

    QUEUED = "queued"
    ACTIVE = "active"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {JobStatus.DELIVERED, JobStatus.DEAD_LETTERED, JobStatus.CANCELLED}

_DATETIME_FIELDS = ("not_before", "created_at", "updated_at", "finished_at")
_UUID_FIELDS = ("job_id", "tenant_id", "account_id", "message_id", "batch_id")


@dataclass
class DispatchJob:
    """
    A request to send one text message from an account.

    Attributes:
        job_id: Unique job identifier
        tenant_id: Owning tenant (rate limits are per tenant)
        account_id: Sending account; its credential is resolved at execution
        recipient: Destination address (digits)
        text: Message body
        kind: single, bulk_item or scheduled
        not_before: Earliest execution time (UTC)
        max_attempts: Attempt ceiling for transient failures
        backoff_ms: Base delay of the exponential retry backoff
        attempts: Gateway calls made so far
        status: JobStatus value
        last_error: Message of the last failure
        last_error_code: Code of the last failure
        message_id: Originating Message row, if any
        batch_id: Bulk submission the job belongs to
        provider_message_id: Gateway message ID once delivered
    """

    job_id: UUID
    tenant_id: UUID
    account_id: UUID
    recipient: str
    text: str
    kind: JobKind
    not_before: datetime
    max_attempts: int = 3
    backoff_ms: int = 2000
    attempts: int = 0
    status: JobStatus = JobStatus.QUEUED
    last_error: str | None = None
    last_error_code: str | None = None
    message_id: UUID | None = None
    batch_id: UUID | None = None
    provider_message_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def create(
        cls,
        tenant_id: UUID,
        account_id: UUID,
        recipient: str,
        text: str,
        kind: JobKind,
        not_before: datetime,
        max_attempts: int,
        backoff_ms: int,
        message_id: UUID | None = None,
        batch_id: UUID | None = None,
    ) -> "DispatchJob":
        return cls(
            job_id=uuid4(),
            tenant_id=tenant_id,
            account_id=account_id,
            recipient=recipient,
            text=text,
            kind=kind,
            not_before=not_before,
            max_attempts=max_attempts,
            backoff_ms=backoff_ms,
            message_id=message_id,
            batch_id=batch_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def retry_delay_ms(self, cap_ms: int) -> int:
        """Exponential backoff after the current attempt: base * 2^(attempts-1)."""
        exponent = max(self.attempts - 1, 0)
        return min(self.backoff_ms * (2**exponent), cap_ms)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in _UUID_FIELDS:
            data[name] = str(data[name]) if data[name] else None
        for name in _DATETIME_FIELDS:
            data[name] = data[name].isoformat() if data[name] else None
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "DispatchJob":
        data = json.loads(raw)
        for name in _UUID_FIELDS:
            data[name] = UUID(data[name]) if data.get(name) else None
        for name in _DATETIME_FIELDS:
            data[name] = as_utc(datetime.fromisoformat(data[name])) if data.get(name) else None
        data["kind"] = JobKind(data["kind"])
        data["status"] = JobStatus(data["status"])
        return cls(**data)
