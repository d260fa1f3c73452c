"""
Background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and starts the matching long-running loop.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from mailsync.features.mail_sync.jobs.scheduled_sync_job import start_scheduled_sync_scheduler
from mailsync.features.mail_sync.jobs.sync_worker import start_sync_worker
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "mail_sync": start_sync_worker,
    "scheduled_sync": start_scheduled_sync_scheduler,
}

DEFAULT_JOB = "mail_sync"


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", DEFAULT_JOB).strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    asyncio.run(run_worker(_resolve_job_name()))


if __name__ == "__main__":
    main()
