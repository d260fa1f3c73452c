"""
Queue consumer for the mailbox sync jobs.

Reserves jobs from the Redis dispatch queue and routes them by name to
their processor, with at most WORKER_CONCURRENCY jobs in flight. While a
job runs, a heartbeat keeps its visibility deadline and account lease
from expiring. Setting the stop event stops reserving new work and
cancels in-flight history passes between pages.
"""

import asyncio
import signal
from typing import Any, Protocol

from mailsync.config import settings
from mailsync.db.pool import db_pool
from mailsync.features.mail_sync.domain.errors import MailSyncError, SyncCancelledError
from mailsync.features.mail_sync.domain.models import Job, JobName
from mailsync.features.mail_sync.services.dispatch_queue import RedisDispatchQueue
from mailsync.features.mail_sync.services.factory import build_mail_sync_services
from mailsync.infrastructure.observability.logging import (
    bind_job_context,
    clear_job_context,
    get_logger,
    setup_logging,
)
from mailsync.services.infrastructure.redis_client import redis_client

logger = get_logger(__name__)

LEASE_RETRY_DELAY_MS = 2_000
REQUEUE_CHECK_INTERVAL = 30.0  # seconds


class JobProcessor(Protocol):
    names: frozenset[str]

    async def process(self, job: Job, cancel_event: asyncio.Event | None = None) -> Any: ...


class SyncWorker:
    def __init__(
        self,
        queue: RedisDispatchQueue,
        processors: list[JobProcessor],
        concurrency: int | None = None,
        poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
    ):
        self.queue = queue
        self.registry: dict[str, JobProcessor] = {
            str(name): processor for processor in processors for name in processor.names
        }
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL
        )
        self.heartbeat_interval = heartbeat_interval or settings.JOB_VISIBILITY_TIMEOUT / 3
        self.stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    def stop(self) -> None:
        logger.info("Sync worker stopping", in_flight=len(self._tasks))
        self.stop_event.set()

    async def run(self) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)
        loop = asyncio.get_running_loop()
        last_requeue_check = 0.0

        logger.info(
            "Sync worker started",
            queue=self.queue.name,
            concurrency=self.concurrency,
            job_names=sorted(self.registry),
        )

        while not self.stop_event.is_set():
            if loop.time() - last_requeue_check >= REQUEUE_CHECK_INTERVAL:
                await self.queue.requeue_expired()
                last_requeue_check = loop.time()

            await semaphore.acquire()
            try:
                job = await self.queue.reserve()
            except Exception:
                semaphore.release()
                raise

            if job is None:
                semaphore.release()
                await self._idle()
                continue

            task = asyncio.create_task(self._run_job(job, semaphore))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Sync worker stopped")

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def _run_job(self, job: Job, semaphore: asyncio.Semaphore) -> None:
        try:
            await self.handle(job)
        finally:
            semaphore.release()

    async def handle(self, job: Job) -> None:
        """Process one reserved job and ack, retry, or release it."""
        bind_job_context(job.id, job.name, job.account_id)
        try:
            processor = self.registry.get(job.name)
            if processor is None:
                logger.error("No processor registered for job", job_name=job.name)
                await self.queue.fail(job, f"No processor registered for '{job.name}'")
                return

            serialized = job.name == JobName.SYNC_HISTORY and job.account_id
            if serialized and not await self.queue.acquire_account_lease(job.account_id, job.id):
                logger.debug("Account busy, deferring history sync")
                await self.queue.release(job, delay_ms=LEASE_RETRY_DELAY_MS)
                return

            try:
                await self._process_with_heartbeat(
                    processor, job, job.account_id if serialized else None
                )
            except SyncCancelledError:
                await self.queue.release(job)
            except MailSyncError as e:
                if e.recoverable:
                    await self.queue.fail(job, str(e) or type(e).__name__)
                else:
                    await self.queue.discard(job, str(e) or type(e).__name__)
            except Exception as e:
                await self.queue.fail(job, str(e) or type(e).__name__)
            else:
                await self.queue.complete(job)
            finally:
                if serialized:
                    await self.queue.release_account_lease(job.account_id, job.id)
        finally:
            clear_job_context()

    async def _process_with_heartbeat(
        self, processor: JobProcessor, job: Job, lease_account_id: str | None
    ) -> Any:
        heartbeat = asyncio.create_task(self._heartbeat(job, lease_account_id))
        try:
            return await processor.process(job, cancel_event=self.stop_event)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat(self, job: Job, lease_account_id: str | None) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                held = await self.queue.extend(job, lease_account_id=lease_account_id)
            except Exception as e:
                logger.warning("Job heartbeat failed", error=str(e))
                continue

            if not held:
                logger.warning("Job reservation lost before completion")
                return


async def start_sync_worker() -> None:
    """Entry point: consume the sync queue until SIGINT/SIGTERM."""
    setup_logging(settings.LOG_LEVEL)
    await db_pool.initialize()
    await redis_client.initialize()
    logger.info("Database pool status", **await db_pool.health_check())

    try:
        services = build_mail_sync_services(await redis_client.get_client())
        worker = SyncWorker(services.queue, services.processors())

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, worker.stop)

        await worker.run()
        await services.gmail.close()
    finally:
        await redis_client.close()
        await db_pool.close()


if __name__ == "__main__":
    asyncio.run(start_sync_worker())
