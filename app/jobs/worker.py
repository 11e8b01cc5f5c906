"""
Queue worker process.

Reads the job kind to consume from CLI args or the WORKER_JOB environment
variable ("import", "resolve", "activity", "refresh" or "all") and runs a
WorkerPool against the Redis queue until interrupted.

    python -m app.jobs.worker all
"""

import asyncio
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from functools import partial

from app.config import settings
from app.db.pool import db_pool
from app.features.social_graph.context import build_job_context
from app.features.social_graph.jobs import JOB_HANDLERS
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.queue import JOB_POLICIES, RedisJobDispatcher
from app.jobs.worker_pool import WorkerPool
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


class WorkerConfigError(RuntimeError):
    """Raised when the worker cannot run with the current settings."""


async def run_consumers(kinds: list[str]) -> None:
    """Bootstrap resources, consume the given kinds, tear down on exit."""
    if not fast_redis.configured:
        raise WorkerConfigError("REDIS_URL is required to run queue workers")

    await db_pool.initialize()
    await fast_redis.initialize()

    dispatcher = RedisJobDispatcher(fast_redis)
    context = build_job_context(dispatcher)
    dispatcher.bind(JOB_HANDLERS, context)
    pool = WorkerPool(dispatcher, kinds, poll_timeout=settings.WORKER_POLL_TIMEOUT_SECONDS)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pool.stop)
        except NotImplementedError:
            logger.debug("Signal handlers unsupported on this platform", signal=sig.name)

    try:
        await pool.run()
    finally:
        await context.close()
        await fast_redis.close()
        await db_pool.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    **{kind: partial(run_consumers, [kind]) for kind in JOB_POLICIES},
    "all": partial(run_consumers, list(JOB_POLICIES)),
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "all").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested worker."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
