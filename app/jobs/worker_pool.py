"""
Queue consumers for the Redis dispatcher.

One WorkerPool serves a set of job kinds. Each kind gets `concurrency`
consumer tasks plus one promoter task that moves delayed retries back onto
the queue once their backoff has elapsed.
"""

import asyncio
from collections.abc import Iterable

from app.infrastructure.observability.logging import get_logger
from app.jobs.queue import RedisJobDispatcher

logger = get_logger(__name__)

PROMOTE_INTERVAL_SECONDS = 1.0


class WorkerPool:
    """Bounded per-kind consumers over a RedisJobDispatcher."""

    def __init__(
        self,
        dispatcher: RedisJobDispatcher,
        kinds: Iterable[str],
        *,
        poll_timeout: float = 1.0,
        promote_interval: float = PROMOTE_INTERVAL_SECONDS,
    ):
        self.dispatcher = dispatcher
        self.kinds = list(kinds)
        self.poll_timeout = poll_timeout
        self.promote_interval = promote_interval
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def process_next(self, kind: str) -> bool:
        """Reserve and run one job of kind. Returns False when the queue was empty."""
        reserved = await self.dispatcher.reserve(kind, self.poll_timeout)
        if reserved is None:
            return False

        raw, envelope = reserved
        try:
            await self.dispatcher.runner.run(envelope)
        except Exception as e:
            await self.dispatcher.fail(raw, envelope, e)
        else:
            await self.dispatcher.ack(kind, raw)
        return True

    async def _consume(self, kind: str, slot: int) -> None:
        logger.debug("Consumer started", kind=kind, slot=slot)
        while not self._stopping.is_set():
            try:
                await self.process_next(kind)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Queue backend trouble; back off and keep the consumer alive
                logger.error("Queue consumer error", kind=kind, slot=slot, error=str(e))
                await asyncio.sleep(self.poll_timeout)

    async def _promote(self, kind: str) -> None:
        while not self._stopping.is_set():
            try:
                moved = await self.dispatcher.promote_due(kind)
                if moved:
                    logger.info("Delayed jobs requeued", kind=kind, job_count=moved)
            except Exception as e:
                logger.error("Delayed job promotion failed", kind=kind, error=str(e))
            await asyncio.sleep(self.promote_interval)

    async def run(self) -> None:
        """Recover in-flight jobs, then consume until stop() is called."""
        for kind in self.kinds:
            await self.dispatcher.recover_in_flight(kind)

        for kind in self.kinds:
            policy = self.dispatcher.policy_for(kind)
            self._tasks.append(asyncio.create_task(self._promote(kind)))
            for slot in range(policy.concurrency):
                self._tasks.append(asyncio.create_task(self._consume(kind, slot)))

        logger.info(
            "Worker pool started",
            kinds=self.kinds,
            consumers=sum(self.dispatcher.policy_for(kind).concurrency for kind in self.kinds),
        )

        try:
            await self._stopping.wait()
        finally:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()
            logger.info("Worker pool stopped", kinds=self.kinds)

    def stop(self) -> None:
        self._stopping.set()
