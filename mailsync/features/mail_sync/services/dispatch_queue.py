"""
Job dispatch for the mailbox sync workers.

Producers depend only on the DispatchQueue protocol; the Redis
implementation is a priority queue with at-least-once delivery:

    {name}:pending     sorted set, score = priority * PRIORITY_SPAN + ready ms
    {name}:processing  sorted set of reserved job ids, score = visibility deadline
    {name}:jobs        hash of job id -> job JSON
    {name}:delayed     sorted set of jobs waiting out a retry backoff, score = due ms
    {name}:dead        list of jobs that exhausted their attempts
"""

import json
import time
import uuid
from typing import Any, Protocol

import redis.asyncio as redis

from mailsync.config import settings
from mailsync.features.mail_sync.domain.models import DEFAULT_JOB_ATTEMPTS, Job
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PRIORITY_SPAN = 10**13  # ms; FIFO order within a priority band
RETRY_BACKOFF_MS = 5_000

# Promotes due delayed jobs, then moves the most urgent pending job into the
# processing set atomically.
RESERVE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[4], '-inf', ARGV[2])
for _, due_id in ipairs(due) do
    redis.call('ZREM', KEYS[4], due_id)
    local due_raw = redis.call('HGET', KEYS[3], due_id)
    if due_raw then
        local due_job = cjson.decode(due_raw)
        redis.call('ZADD', KEYS[1], due_job['priority'] * ARGV[3] + ARGV[2], due_id)
    end
end
local ids = redis.call('ZRANGE', KEYS[1], 0, 0)
if #ids == 0 then
    return nil
end
local job_id = ids[1]
redis.call('ZREM', KEYS[1], job_id)
redis.call('ZADD', KEYS[2], ARGV[1], job_id)
return redis.call('HGET', KEYS[3], job_id)
"""

# Deletes the lease only if this job still holds it.
RELEASE_LEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# Pushes out the lease TTL only if this job still holds it.
EXTEND_LEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""


class DispatchQueueError(Exception):
    """Custom exception for queue operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class DispatchQueue(Protocol):
    async def add(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        priority: int,
        attempts: int = DEFAULT_JOB_ATTEMPTS,
    ) -> Job: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


def _score(priority: int, available_at_ms: int) -> int:
    return priority * PRIORITY_SPAN + available_at_ms


class RedisDispatchQueue:
    """Redis-backed DispatchQueue with reservation, retry and dead-lettering."""

    def __init__(
        self,
        client: redis.Redis,
        name: str | None = None,
        visibility_timeout: int | None = None,
    ):
        self.client = client
        self.name = name or settings.QUEUE_NAME
        self.visibility_timeout = (
            visibility_timeout if visibility_timeout is not None else settings.JOB_VISIBILITY_TIMEOUT
        )
        self.pending_key = f"{self.name}:pending"
        self.processing_key = f"{self.name}:processing"
        self.jobs_key = f"{self.name}:jobs"
        self.delayed_key = f"{self.name}:delayed"
        self.dead_key = f"{self.name}:dead"

    async def add(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        priority: int,
        attempts: int = DEFAULT_JOB_ATTEMPTS,
    ) -> Job:
        job = Job(
            id=str(uuid.uuid4()),
            name=str(name),
            payload=payload,
            priority=int(priority),
            attempts=attempts,
        )

        try:
            await self.client.hset(self.jobs_key, job.id, json.dumps(job.to_dict()))
            await self.client.zadd(self.pending_key, {job.id: _score(job.priority, _now_ms())})
        except redis.RedisError as e:
            logger.error("Failed to enqueue job", job_name=job.name, error=str(e))
            raise DispatchQueueError(f"Failed to enqueue {job.name}: {e}", operation="add") from e

        logger.debug(
            "Job enqueued",
            job_id=job.id,
            job_name=job.name,
            priority=job.priority,
            account_id=job.account_id,
        )
        return job

    async def reserve(self) -> Job | None:
        """Take the most urgent job; it is redelivered if not acked in time."""
        now = _now_ms()
        deadline = now + self.visibility_timeout * 1000
        try:
            raw = await self.client.eval(
                RESERVE_SCRIPT,
                4,
                self.pending_key,
                self.processing_key,
                self.jobs_key,
                self.delayed_key,
                deadline,
                now,
                PRIORITY_SPAN,
            )
        except redis.RedisError as e:
            raise DispatchQueueError(f"Failed to reserve job: {e}", operation="reserve") from e

        if not raw:
            return None
        return Job.from_dict(json.loads(raw))

    async def complete(self, job: Job) -> None:
        await self.client.zrem(self.processing_key, job.id)
        await self.client.hdel(self.jobs_key, job.id)

    async def fail(self, job: Job, error: str) -> bool:
        """
        Record a failed attempt.

        Returns True when the job was scheduled for another attempt, False
        when it was moved to the dead-letter list.
        """
        job.attempts_made += 1
        await self.client.zrem(self.processing_key, job.id)

        if job.attempts_made < job.attempts:
            await self.client.hset(self.jobs_key, job.id, json.dumps(job.to_dict()))
            retry_at = _now_ms() + RETRY_BACKOFF_MS * (2 ** (job.attempts_made - 1))
            await self.client.zadd(self.delayed_key, {job.id: retry_at})
            logger.warning(
                "Job failed, will retry",
                job_id=job.id,
                job_name=job.name,
                attempts_made=job.attempts_made,
                attempts=job.attempts,
                error=error,
            )
            return True

        await self._dead_letter(job, error)
        logger.error(
            "Job exhausted its attempts",
            job_id=job.id,
            job_name=job.name,
            attempts=job.attempts,
            error=error,
        )
        return False

    async def discard(self, job: Job, error: str) -> None:
        """Dead-letter a job whose failure no retry can fix, whatever attempts remain."""
        job.attempts_made += 1
        await self.client.zrem(self.processing_key, job.id)
        await self._dead_letter(job, error)
        logger.error(
            "Job failed permanently",
            job_id=job.id,
            job_name=job.name,
            attempts_made=job.attempts_made,
            error=error,
        )

    async def _dead_letter(self, job: Job, error: str) -> None:
        await self.client.hdel(self.jobs_key, job.id)
        await self.client.rpush(self.dead_key, json.dumps({**job.to_dict(), "error": error}))

    async def requeue_expired(self) -> int:
        """Return reserved jobs whose visibility deadline passed to the pending set."""
        now = _now_ms()
        expired = await self.client.zrangebyscore(self.processing_key, "-inf", now)

        requeued = 0
        for job_id in expired:
            # Another worker may have acked or requeued it in between
            if not await self.client.zrem(self.processing_key, job_id):
                continue

            raw = await self.client.hget(self.jobs_key, job_id)
            if not raw:
                continue

            job = Job.from_dict(json.loads(raw))
            await self.client.zadd(self.pending_key, {job.id: _score(job.priority, now)})
            requeued += 1

        if requeued:
            logger.warning("Requeued jobs past their visibility deadline", count=requeued)
        return requeued

    async def release(self, job: Job, delay_ms: int = 0) -> None:
        """Return a reserved job to the pending set without spending an attempt."""
        await self.client.zrem(self.processing_key, job.id)
        if delay_ms > 0:
            await self.client.zadd(self.delayed_key, {job.id: _now_ms() + delay_ms})
        else:
            await self.client.zadd(self.pending_key, {job.id: _score(job.priority, _now_ms())})

    async def acquire_account_lease(self, account_id: str, job_id: str) -> bool:
        """Exclusive per-account lease, expiring with the visibility timeout."""
        acquired = await self.client.set(
            f"{self.name}:lease:{account_id}", job_id, ex=self.visibility_timeout, nx=True
        )
        return bool(acquired)

    async def release_account_lease(self, account_id: str, job_id: str) -> None:
        await self.client.eval(RELEASE_LEASE_SCRIPT, 1, f"{self.name}:lease:{account_id}", job_id)

    async def extend(self, job: Job, *, lease_account_id: str | None = None) -> bool:
        """
        Push the job's visibility deadline, and the account lease it holds,
        one visibility timeout into the future.

        Returns False when the job is no longer reserved (acked or requeued
        elsewhere) or the lease has passed to another job.
        """
        timeout_ms = self.visibility_timeout * 1000
        reserved = await self.client.zadd(
            self.processing_key, {job.id: _now_ms() + timeout_ms}, xx=True, ch=True
        )
        if lease_account_id is None:
            return bool(reserved)

        leased = await self.client.eval(
            EXTEND_LEASE_SCRIPT, 1, f"{self.name}:lease:{lease_account_id}", job.id, timeout_ms
        )
        return bool(reserved) and bool(leased)
