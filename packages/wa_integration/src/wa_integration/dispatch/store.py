"""
Dispatch Job Store

Redis layout of the dispatch queue:

- wa:dispatch:job:{job_id}      JSON job document
- wa:dispatch:claim:{job_id}    claim marker, written once (SET NX) by the first
                                worker to pick the job up, or "cancelled"
- wa:dispatch:delayed           sorted set of job ids scored by not_before (ms)
- wa:dispatch:waiting           set of job ids announced on the ready stream
- wa:dispatch:active            set of job ids being executed
- wa:dispatch:completed         sorted set of delivered job ids (finish ms)
- wa:dispatch:dead              sorted set of dead-lettered job ids (finish ms)
- wa:dispatch:dead:{tenant_id}  the same, per tenant
- wa:dispatch:cancelled         sorted set of cancelled job ids (finish ms)
- wa:dispatch:paused            present while the queue is paused
"""

from uuid import UUID

import redis

from wa_integration.dispatch.jobs import DispatchJob

KEY_PREFIX = "wa:dispatch"
JOB_KEY = KEY_PREFIX + ":job:{job_id}"
CLAIM_KEY = KEY_PREFIX + ":claim:{job_id}"
DELAYED_KEY = KEY_PREFIX + ":delayed"
WAITING_KEY = KEY_PREFIX + ":waiting"
ACTIVE_KEY = KEY_PREFIX + ":active"
COMPLETED_KEY = KEY_PREFIX + ":completed"
DEAD_KEY = KEY_PREFIX + ":dead"
TENANT_DEAD_KEY = KEY_PREFIX + ":dead:{tenant_id}"
CANCELLED_KEY = KEY_PREFIX + ":cancelled"
PAUSED_KEY = KEY_PREFIX + ":paused"

CANCELLED_MARKER = "cancelled"


class DispatchStore:
    """Low-level Redis operations on dispatch jobs and their indexes."""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    # Jobs

    def save(self, job: DispatchJob) -> None:
        self.redis.set(JOB_KEY.format(job_id=job.job_id), job.to_json())

    def get(self, job_id: UUID | str) -> DispatchJob | None:
        raw = self.redis.get(JOB_KEY.format(job_id=job_id))
        return DispatchJob.from_json(raw) if raw else None

    def delete(self, job_id: UUID | str) -> None:
        self.redis.delete(JOB_KEY.format(job_id=job_id), CLAIM_KEY.format(job_id=job_id))

    # Claims

    def claim(self, job_id: UUID | str, owner: str) -> str | None:
        """
        Record the first claim on a job.

        Returns:
            None if this call wrote the claim, otherwise the existing marker
        """
        key = CLAIM_KEY.format(job_id=job_id)
        if self.redis.set(key, owner, nx=True):
            return None
        return self.redis.get(key)

    def cancel_claim(self, job_id: UUID | str) -> bool:
        """Write the cancellation marker; fails if any worker claimed the job first."""
        return bool(self.redis.set(CLAIM_KEY.format(job_id=job_id), CANCELLED_MARKER, nx=True))

    def is_cancelled(self, job_id: UUID | str) -> bool:
        return self.redis.get(CLAIM_KEY.format(job_id=job_id)) == CANCELLED_MARKER

    # Indexes

    def schedule(self, job: DispatchJob, due_ms: int) -> None:
        """Put a job in the delayed set (and out of waiting/active)."""
        job_id = str(job.job_id)
        pipe = self.redis.pipeline()
        pipe.zadd(DELAYED_KEY, {job_id: due_ms})
        pipe.srem(WAITING_KEY, job_id)
        pipe.srem(ACTIVE_KEY, job_id)
        pipe.execute()

    def due_job_ids(self, now_ms: int, limit: int = 100) -> list[str]:
        return self.redis.zrangebyscore(DELAYED_KEY, "-inf", now_ms, start=0, num=limit)

    def take_due(self, job_id: str) -> bool:
        """Remove a job from the delayed set. Only one promoter wins."""
        return self.redis.zrem(DELAYED_KEY, job_id) == 1

    def mark_waiting(self, job_id: UUID | str) -> None:
        pipe = self.redis.pipeline()
        pipe.zrem(DELAYED_KEY, str(job_id))
        pipe.sadd(WAITING_KEY, str(job_id))
        pipe.execute()

    def mark_active(self, job_id: UUID | str) -> None:
        pipe = self.redis.pipeline()
        pipe.srem(WAITING_KEY, str(job_id))
        pipe.sadd(ACTIVE_KEY, str(job_id))
        pipe.execute()

    def mark_completed(self, job: DispatchJob, finished_ms: int) -> None:
        job_id = str(job.job_id)
        pipe = self.redis.pipeline()
        pipe.srem(WAITING_KEY, job_id)
        pipe.srem(ACTIVE_KEY, job_id)
        pipe.zadd(COMPLETED_KEY, {job_id: finished_ms})
        pipe.execute()

    def mark_dead(self, job: DispatchJob, finished_ms: int) -> None:
        job_id = str(job.job_id)
        pipe = self.redis.pipeline()
        pipe.srem(WAITING_KEY, job_id)
        pipe.srem(ACTIVE_KEY, job_id)
        pipe.zrem(DELAYED_KEY, job_id)
        pipe.zadd(DEAD_KEY, {job_id: finished_ms})
        pipe.zadd(TENANT_DEAD_KEY.format(tenant_id=job.tenant_id), {job_id: finished_ms})
        pipe.execute()

    def unmark_dead(self, job: DispatchJob) -> None:
        job_id = str(job.job_id)
        pipe = self.redis.pipeline()
        pipe.zrem(DEAD_KEY, job_id)
        pipe.zrem(TENANT_DEAD_KEY.format(tenant_id=job.tenant_id), job_id)
        pipe.execute()

    def mark_cancelled(self, job: DispatchJob, finished_ms: int) -> None:
        job_id = str(job.job_id)
        pipe = self.redis.pipeline()
        pipe.zrem(DELAYED_KEY, job_id)
        pipe.srem(WAITING_KEY, job_id)
        pipe.zadd(CANCELLED_KEY, {job_id: finished_ms})
        pipe.execute()

    def dead_job_ids(self, tenant_id: UUID | str) -> list[str]:
        return self.redis.zrange(TENANT_DEAD_KEY.format(tenant_id=tenant_id), 0, -1)

    def finished_before(self, key: str, cutoff_ms: int) -> list[str]:
        return self.redis.zrangebyscore(key, "-inf", cutoff_ms)

    def purge(self, key: str, job_ids: list[str]) -> None:
        """Remove finished jobs from an index and delete their documents."""
        if not job_ids:
            return
        pipe = self.redis.pipeline()
        pipe.zrem(key, *job_ids)
        for job_id in job_ids:
            pipe.delete(JOB_KEY.format(job_id=job_id), CLAIM_KEY.format(job_id=job_id))
        pipe.execute()

    # Pause flag

    def set_paused(self, paused: bool) -> None:
        if paused:
            self.redis.set(PAUSED_KEY, "1")
        else:
            self.redis.delete(PAUSED_KEY)

    def is_paused(self) -> bool:
        return bool(self.redis.exists(PAUSED_KEY))

    def counts(self) -> dict[str, int]:
        pipe = self.redis.pipeline()
        pipe.scard(WAITING_KEY)
        pipe.scard(ACTIVE_KEY)
        pipe.zcard(COMPLETED_KEY)
        pipe.zcard(DEAD_KEY)
        pipe.zcard(DELAYED_KEY)
        pipe.zcard(CANCELLED_KEY)
        waiting, active, completed, failed, delayed, cancelled = pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
            "cancelled": cancelled,
        }
