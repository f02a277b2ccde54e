"""
Outbound Dispatch Queue

Durable Redis-backed queue for single, bulk and scheduled sends.

Jobs due now are announced on the dispatch ready stream; future jobs wait in
a sorted set until the promoter moves them to the stream. Execution (credential
resolution, rate limiting, retries) lives in DispatchExecutor.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import redis

from wacore.clock import as_utc, to_millis, utcnow
from wacore.settings import Settings

from wa_integration.dispatch.jobs import DispatchJob, JobKind, JobStatus
from wa_integration.dispatch.store import CANCELLED_KEY, COMPLETED_KEY, DispatchStore
from wa_integration.streams.producer import IntegrationStreamProducer

logger = logging.getLogger(__name__)


@dataclass
class BulkResult:
    """Outcome of a bulk submission."""

    batch_id: UUID
    job_ids: list[UUID] = field(default_factory=list)
    total_queued: int = 0
    estimated_seconds: float = 0.0


@dataclass
class QueueStats:
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    cancelled: int
    paused: bool

    @property
    def total(self) -> int:
        """Jobs not yet finished."""
        return self.waiting + self.active + self.delayed

    def to_dict(self) -> dict:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "cancelled": self.cancelled,
            "paused": self.paused,
            "total": self.total,
        }


class DispatchQueue:
    """
    Enqueue and administer dispatch jobs.

    Enqueue is synchronous: when a call returns, the job is persisted in Redis
    and survives a process restart.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        max_attempts: int = 3,
        backoff_ms: int = 2000,
        bulk_backoff_ms: int = 5000,
        bulk_default_delay_ms: int = 3000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis = redis_client
        self.store = DispatchStore(redis_client)
        self.producer = IntegrationStreamProducer(redis_client)
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self.bulk_backoff_ms = bulk_backoff_ms
        self.bulk_default_delay_ms = bulk_default_delay_ms
        self.clock = clock

    @classmethod
    def from_settings(cls, redis_client: redis.Redis, settings: Settings) -> "DispatchQueue":
        return cls(
            redis_client,
            max_attempts=settings.DISPATCH_MAX_ATTEMPTS,
            backoff_ms=settings.DISPATCH_BACKOFF_MS,
            bulk_backoff_ms=settings.BULK_BACKOFF_MS,
            bulk_default_delay_ms=settings.BULK_DEFAULT_DELAY_MS,
        )

    # =========================================================================
    # Enqueue
    # =========================================================================

    def _push(self, job: DispatchJob) -> None:
        """Persist a job and route it to the ready stream or the delayed set."""
        now = self.clock()
        job.status = JobStatus.QUEUED
        job.updated_at = now
        self.store.save(job)

        if as_utc(job.not_before) <= now:
            self.store.mark_waiting(job.job_id)
            self.producer.publish_dispatch_ready(job.job_id, job.tenant_id)
        else:
            self.store.schedule(job, to_millis(job.not_before))

    def enqueue_single(
        self,
        tenant_id: UUID,
        account_id: UUID,
        recipient: str,
        text: str,
        message_id: UUID | None = None,
        delay_ms: int = 0,
    ) -> DispatchJob:
        """Queue one message for sending now, or `delay_ms` from now."""
        job = DispatchJob.create(
            tenant_id=tenant_id,
            account_id=account_id,
            recipient=recipient,
            text=text,
            kind=JobKind.SINGLE,
            not_before=self.clock() + timedelta(milliseconds=delay_ms),
            max_attempts=self.max_attempts,
            backoff_ms=self.backoff_ms,
            message_id=message_id,
        )
        self._push(job)
        logger.info(
            f"Dispatch job queued: {job.job_id}",
            extra={"tenant_id": str(tenant_id), "account_id": str(account_id), "kind": job.kind.value},
        )
        return job

    def enqueue_bulk(
        self,
        tenant_id: UUID,
        account_id: UUID,
        recipients: list[str],
        text: str,
        delay_ms: int | None = None,
        message_ids: list[UUID | None] | None = None,
    ) -> BulkResult:
        """
        Queue the same text for many recipients.

        Job i is not sent before submission + i * delay_ms.

        Raises:
            ValueError: Empty recipient list or non-positive delay
        """
        if not recipients:
            raise ValueError("At least one recipient is required")
        delay_ms = self.bulk_default_delay_ms if delay_ms is None else delay_ms
        if delay_ms <= 0:
            raise ValueError("Bulk delay must be a positive number of milliseconds")
        if message_ids is not None and len(message_ids) != len(recipients):
            raise ValueError("message_ids must match recipients")

        submitted_at = self.clock()
        result = BulkResult(batch_id=uuid4())

        for index, recipient in enumerate(recipients):
            job = DispatchJob.create(
                tenant_id=tenant_id,
                account_id=account_id,
                recipient=recipient,
                text=text,
                kind=JobKind.BULK_ITEM,
                not_before=submitted_at + timedelta(milliseconds=index * delay_ms),
                max_attempts=self.max_attempts,
                backoff_ms=self.bulk_backoff_ms,
                message_id=message_ids[index] if message_ids else None,
                batch_id=result.batch_id,
            )
            self._push(job)
            result.job_ids.append(job.job_id)

        result.total_queued = len(result.job_ids)
        result.estimated_seconds = result.total_queued * delay_ms / 1000
        logger.info(
            f"Bulk batch queued: {result.total_queued} jobs",
            extra={"tenant_id": str(tenant_id), "batch_id": str(result.batch_id), "delay_ms": delay_ms},
        )
        return result

    def enqueue_scheduled(
        self,
        tenant_id: UUID,
        account_id: UUID,
        recipient: str,
        text: str,
        send_at: datetime,
        message_id: UUID | None = None,
    ) -> DispatchJob:
        """
        Queue a message for a future time.

        Raises:
            ValueError: send_at is not in the future
        """
        send_at = as_utc(send_at)
        if send_at <= self.clock():
            raise ValueError("Scheduled send time must be in the future")

        job = DispatchJob.create(
            tenant_id=tenant_id,
            account_id=account_id,
            recipient=recipient,
            text=text,
            kind=JobKind.SCHEDULED,
            not_before=send_at,
            max_attempts=self.max_attempts,
            backoff_ms=self.backoff_ms,
            message_id=message_id,
        )
        self._push(job)
        logger.info(f"Dispatch job scheduled for {send_at.isoformat()}: {job.job_id}")
        return job

    # =========================================================================
    # Job access and state transitions (used by the executor)
    # =========================================================================

    def get_job(self, job_id: UUID | str) -> DispatchJob | None:
        return self.store.get(job_id)

    def promote_due(self, limit: int = 100) -> int:
        """
        Move due jobs from the delayed set to the ready stream.

        Safe to run in several workers at once; ZREM decides which one
        promotes a given job.
        """
        if self.store.is_paused():
            return 0

        promoted = 0
        for job_id in self.store.due_job_ids(to_millis(self.clock()), limit):
            if not self.store.take_due(job_id):
                continue
            job = self.store.get(job_id)
            if job is None or job.is_terminal:
                continue
            self.store.mark_waiting(job.job_id)
            self.producer.publish_dispatch_ready(job.job_id, job.tenant_id)
            promoted += 1

        if promoted:
            logger.debug(f"Promoted {promoted} delayed dispatch jobs")
        return promoted

    def mark_active(self, job: DispatchJob) -> None:
        job.status = JobStatus.ACTIVE
        job.updated_at = self.clock()
        self.store.save(job)
        self.store.mark_active(job.job_id)

    def reschedule(self, job: DispatchJob, delay_ms: int) -> None:
        """Put a job back in the delayed set. Attempts are left as they are."""
        now = self.clock()
        job.status = JobStatus.QUEUED
        job.not_before = now + timedelta(milliseconds=delay_ms)
        job.updated_at = now
        self.store.save(job)
        self.store.schedule(job, to_millis(job.not_before))

    def complete(self, job: DispatchJob, provider_message_id: str | None) -> None:
        now = self.clock()
        job.status = JobStatus.DELIVERED
        job.provider_message_id = provider_message_id
        job.last_error = None
        job.last_error_code = None
        job.updated_at = now
        job.finished_at = now
        self.store.save(job)
        self.store.mark_completed(job, to_millis(now))

    def dead_letter(self, job: DispatchJob, error: str, code: str | None = None) -> None:
        now = self.clock()
        job.status = JobStatus.DEAD_LETTERED
        job.last_error = error
        job.last_error_code = code
        job.updated_at = now
        job.finished_at = now
        self.store.save(job)
        self.store.mark_dead(job, to_millis(now))
        self.producer.publish_dead_letter(job.to_dict(), error, job.tenant_id)
        logger.warning(
            f"Dispatch job dead-lettered: {job.job_id}",
            extra={
                "tenant_id": str(job.tenant_id),
                "attempts": job.attempts,
                "error": error,
                "code": code,
            },
        )

    def mark_cancelled(self, job: DispatchJob) -> None:
        now = self.clock()
        job.status = JobStatus.CANCELLED
        job.updated_at = now
        job.finished_at = now
        self.store.save(job)
        self.store.mark_cancelled(job, to_millis(now))

    # =========================================================================
    # Administration
    # =========================================================================

    def cancel(self, job_id: UUID | str) -> bool:
        """
        Withdraw a job that no worker has claimed yet.

        Returns:
            True if the job was cancelled
        """
        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return False
        if not self.store.cancel_claim(job.job_id):
            logger.info(f"Dispatch job {job_id} already claimed, cannot cancel")
            return False

        self.mark_cancelled(job)
        logger.info(f"Dispatch job cancelled: {job_id}")
        return True

    def list_dead_letters(self, tenant_id: UUID) -> list[DispatchJob]:
        jobs = (self.store.get(job_id) for job_id in self.store.dead_job_ids(tenant_id))
        return [job for job in jobs if job is not None]

    def retry_failed_messages(self, tenant_id: UUID) -> int:
        """
        Re-enqueue a tenant's dead-lettered jobs with attempt counters reset.

        Returns:
            Number of jobs re-enqueued
        """
        retried = 0
        for job in self.list_dead_letters(tenant_id):
            self.store.unmark_dead(job)
            job.attempts = 0
            job.last_error = None
            job.last_error_code = None
            job.finished_at = None
            job.not_before = self.clock()
            self._push(job)
            retried += 1

        logger.info(f"{retried} dead-lettered jobs re-enqueued", extra={"tenant_id": str(tenant_id)})
        return retried

    def get_queue_stats(self) -> QueueStats:
        counts = self.store.counts()
        return QueueStats(paused=self.store.is_paused(), **counts)

    def pause(self) -> None:
        self.store.set_paused(True)
        logger.warning("Dispatch queue paused")

    def resume(self) -> None:
        self.store.set_paused(False)
        logger.info("Dispatch queue resumed")

    def is_paused(self) -> bool:
        return self.store.is_paused()

    def clean_completed(self, grace_seconds: int = 3600) -> dict[str, int]:
        """
        Delete delivered and cancelled jobs finished more than `grace_seconds` ago.

        Dead letters are kept until retried.
        """
        cutoff_ms = to_millis(self.clock()) - grace_seconds * 1000
        completed = self.store.finished_before(COMPLETED_KEY, cutoff_ms)
        cancelled = self.store.finished_before(CANCELLED_KEY, cutoff_ms)
        self.store.purge(COMPLETED_KEY, completed)
        self.store.purge(CANCELLED_KEY, cancelled)

        logger.info(f"Queue cleanup: {len(completed)} completed, {len(cancelled)} cancelled")
        return {"completed": len(completed), "cancelled": len(cancelled)}
