"""
Job dispatch: durable Redis queue or inline execution behind one interface.

State machine for every job:

    queued -> running -> completed
                      -> failed -> (retry) queued
                      -> failed -> dead

create_dispatcher() picks the implementation once at startup. Callers only
ever see `await dispatcher.enqueue(kind, payload)`.

Redis layout per kind:
    jobs:{kind}:queued      LIST of JSON envelopes (LPUSH / BLMOVE from the right)
    jobs:{kind}:processing  LIST of envelopes currently held by a worker
    jobs:{kind}:delayed     ZSET of envelopes scored by ready-at epoch seconds
    jobs:{kind}:dead        LIST of envelopes that exhausted their attempts
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal, Protocol
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from app.config import settings
from app.infrastructure.observability.logging import get_logger, log_job_event
from app.services.rate_limiter import (
    LocalSlidingWindowLimiter,
    RedisSlidingWindowLimiter,
    SlidingWindowLimiter,
)
from app.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

JobKind = Literal["import", "resolve", "activity", "refresh"]
JobHandler = Callable[[dict[str, Any], Any], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]

MAX_ERROR_LENGTH = 500


@dataclass(frozen=True, slots=True)
class JobPolicy:
    """Retry, concurrency and throughput settings for one job kind."""

    attempts: int
    backoff_seconds: float
    concurrency: int
    rate_per_second: int | None = None

    def backoff_for(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (1-based)."""
        return self.backoff_seconds * 2 ** (attempt - 1)


JOB_POLICIES: dict[str, JobPolicy] = {
    "import": JobPolicy(attempts=3, backoff_seconds=5.0, concurrency=2),
    "resolve": JobPolicy(attempts=3, backoff_seconds=3.0, concurrency=5, rate_per_second=10),
    "activity": JobPolicy(attempts=3, backoff_seconds=5.0, concurrency=3, rate_per_second=5),
    "refresh": JobPolicy(attempts=2, backoff_seconds=10.0, concurrency=1),
}


class JobEnvelope(BaseModel):
    """Serialized form of a queued job."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    kind: JobKind
    payload: dict[str, Any]
    attempt: int = 1
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_error: str | None = None

    def next_attempt(self, error: BaseException) -> "JobEnvelope":
        return self.model_copy(
            update={"attempt": self.attempt + 1, "last_error": str(error)[:MAX_ERROR_LENGTH]}
        )

    def failed(self, error: BaseException) -> "JobEnvelope":
        return self.model_copy(update={"last_error": str(error)[:MAX_ERROR_LENGTH]})


class JobDispatchError(Exception):
    """Raised for misconfigured dispatch (unknown kind, unbound handlers)."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def _payload_dict(payload: BaseModel | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return dict(payload)


class JobRunner:
    """
    Executes single attempts of jobs.

    Holds the handler registry, the shared job context, one semaphore per
    kind (concurrency ceiling) and one optional limiter per kind (requests
    per second). Retry decisions belong to the dispatcher.
    """

    def __init__(
        self,
        handlers: Mapping[str, JobHandler],
        context: Any,
        limiters: Mapping[str, SlidingWindowLimiter],
        policies: Mapping[str, JobPolicy] = JOB_POLICIES,
    ):
        self.handlers = dict(handlers)
        self.context = context
        self.limiters = dict(limiters)
        self.policies = policies
        self._semaphores = {
            kind: asyncio.Semaphore(policy.concurrency) for kind, policy in policies.items()
        }

    async def run(self, envelope: JobEnvelope) -> None:
        handler = self.handlers.get(envelope.kind)
        if handler is None:
            raise JobDispatchError(f"No handler registered for job kind '{envelope.kind}'")

        async with self._semaphores[envelope.kind]:
            limiter = self.limiters.get(envelope.kind)
            if limiter is not None:
                await limiter.acquire()

            with structlog.contextvars.bound_contextvars(
                job_id=envelope.id, kind=envelope.kind, attempt=envelope.attempt
            ):
                log_job_event(
                    "running", kind=envelope.kind, job_id=envelope.id, attempt=envelope.attempt
                )
                started = time.monotonic()
                await handler(envelope.payload, self.context)
                log_job_event(
                    "completed",
                    kind=envelope.kind,
                    job_id=envelope.id,
                    attempt=envelope.attempt,
                    duration_ms=round((time.monotonic() - started) * 1000, 1),
                )


class JobDispatcher(Protocol):
    mode: str

    def bind(self, handlers: Mapping[str, JobHandler], context: Any) -> None: ...

    async def enqueue(self, kind: JobKind, payload: BaseModel | Mapping[str, Any]) -> str: ...

    async def close(self) -> None: ...


class _BaseDispatcher:
    mode = "base"

    def __init__(self, policies: Mapping[str, JobPolicy] = JOB_POLICIES):
        self.policies = policies
        self._runner: JobRunner | None = None

    def _build_limiters(self) -> dict[str, SlidingWindowLimiter]:
        raise NotImplementedError

    def bind(self, handlers: Mapping[str, JobHandler], context: Any) -> None:
        """Attach handlers and the context they receive. Must run before jobs execute."""
        self._runner = JobRunner(handlers, context, self._build_limiters(), self.policies)

    @property
    def runner(self) -> JobRunner:
        if self._runner is None:
            raise JobDispatchError("Dispatcher has no handlers bound", operation="run")
        return self._runner

    def policy_for(self, kind: str) -> JobPolicy:
        policy = self.policies.get(kind)
        if policy is None:
            raise JobDispatchError(f"Unknown job kind '{kind}'", operation="enqueue")
        return policy

    def _new_envelope(self, kind: JobKind, payload: BaseModel | Mapping[str, Any]) -> JobEnvelope:
        self.policy_for(kind)
        return JobEnvelope(kind=kind, payload=_payload_dict(payload))


class InlineJobDispatcher(_BaseDispatcher):
    """
    Runs jobs as detached asyncio tasks in the current process.

    Retries sleep in-process with the same exponential backoff the queue
    uses. Nothing survives a restart.
    """

    mode = "inline"

    def __init__(
        self,
        policies: Mapping[str, JobPolicy] = JOB_POLICIES,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        super().__init__(policies)
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    def _build_limiters(self) -> dict[str, SlidingWindowLimiter]:
        return {
            kind: LocalSlidingWindowLimiter(policy.rate_per_second, 1.0, name=f"jobs:{kind}")
            for kind, policy in self.policies.items()
            if policy.rate_per_second
        }

    async def enqueue(self, kind: JobKind, payload: BaseModel | Mapping[str, Any]) -> str:
        envelope = self._new_envelope(kind, payload)
        log_job_event("queued", kind=kind, job_id=envelope.id, attempt=envelope.attempt)

        task = asyncio.create_task(self._run_with_retries(envelope))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return envelope.id

    async def _run_with_retries(self, envelope: JobEnvelope) -> None:
        policy = self.policy_for(envelope.kind)
        while True:
            try:
                await self.runner.run(envelope)
                return
            except Exception as e:
                log_job_event(
                    "failed",
                    kind=envelope.kind,
                    job_id=envelope.id,
                    attempt=envelope.attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if envelope.attempt >= policy.attempts:
                    log_job_event(
                        "dead",
                        kind=envelope.kind,
                        job_id=envelope.id,
                        attempt=envelope.attempt,
                        payload=envelope.payload,
                        error=str(e),
                    )
                    return

                delay = policy.backoff_for(envelope.attempt)
                envelope = envelope.next_attempt(e)
                log_job_event(
                    "retry scheduled",
                    kind=envelope.kind,
                    job_id=envelope.id,
                    attempt=envelope.attempt,
                    delay_seconds=delay,
                )
                await self._sleep(delay)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight inline job, including jobs they enqueue."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)


class RedisJobDispatcher(_BaseDispatcher):
    """
    Durable queue on Redis lists. Producers only LPUSH; workers reserve with
    BLMOVE into a processing list and acknowledge with LREM.
    """

    mode = "queue"

    # Move due delayed jobs back onto the queued list
    PROMOTE_LUA_SCRIPT = """
    local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
    for _, job in ipairs(due) do
        redis.call('ZREM', KEYS[1], job)
        redis.call('LPUSH', KEYS[2], job)
    end
    return #due
    """

    PROMOTE_BATCH_SIZE = 100

    def __init__(
        self,
        redis_client: FastRedisClient,
        policies: Mapping[str, JobPolicy] = JOB_POLICIES,
        *,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(policies)
        self.redis = redis_client
        self._clock = clock

    @staticmethod
    def key(kind: str, suffix: str) -> str:
        return f"jobs:{kind}:{suffix}"

    def _build_limiters(self) -> dict[str, SlidingWindowLimiter]:
        return {
            kind: RedisSlidingWindowLimiter(self.redis, f"jobs:{kind}", policy.rate_per_second, 1.0)
            for kind, policy in self.policies.items()
            if policy.rate_per_second
        }

    async def _client(self):
        await self.redis._ensure_initialized()
        return self.redis.client

    async def enqueue(self, kind: JobKind, payload: BaseModel | Mapping[str, Any]) -> str:
        envelope = self._new_envelope(kind, payload)
        client = await self._client()
        await client.lpush(self.key(kind, "queued"), envelope.model_dump_json())
        log_job_event("queued", kind=kind, job_id=envelope.id, attempt=envelope.attempt)
        return envelope.id

    async def reserve(self, kind: str, timeout: float) -> tuple[str, JobEnvelope] | None:
        """Block up to timeout seconds for the next job. Returns (raw, envelope)."""
        client = await self._client()
        raw = await client.blmove(
            self.key(kind, "queued"), self.key(kind, "processing"), timeout, "RIGHT", "LEFT"
        )
        if raw is None:
            return None
        return raw, JobEnvelope.model_validate_json(raw)

    async def ack(self, kind: str, raw: str) -> None:
        client = await self._client()
        await client.lrem(self.key(kind, "processing"), 1, raw)

    async def fail(self, raw: str, envelope: JobEnvelope, error: BaseException) -> None:
        """Schedule the next attempt, or move the job to the dead list."""
        policy = self.policy_for(envelope.kind)
        log_job_event(
            "failed",
            kind=envelope.kind,
            job_id=envelope.id,
            attempt=envelope.attempt,
            error=str(error),
            error_type=type(error).__name__,
        )

        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            if envelope.attempt >= policy.attempts:
                dead = envelope.failed(error)
                pipe.lpush(self.key(envelope.kind, "dead"), dead.model_dump_json())
                log_job_event(
                    "dead",
                    kind=envelope.kind,
                    job_id=envelope.id,
                    attempt=envelope.attempt,
                    payload=envelope.payload,
                    error=str(error),
                )
            else:
                delay = policy.backoff_for(envelope.attempt)
                retry = envelope.next_attempt(error)
                pipe.zadd(
                    self.key(envelope.kind, "delayed"),
                    {retry.model_dump_json(): self._clock() + delay},
                )
                log_job_event(
                    "retry scheduled",
                    kind=retry.kind,
                    job_id=retry.id,
                    attempt=retry.attempt,
                    delay_seconds=delay,
                )
            pipe.lrem(self.key(envelope.kind, "processing"), 1, raw)
            await pipe.execute()

    async def promote_due(self, kind: str) -> int:
        """Move delayed jobs whose backoff has elapsed back onto the queue."""
        client = await self._client()
        moved = await client.eval(
            self.PROMOTE_LUA_SCRIPT,
            2,
            self.key(kind, "delayed"),
            self.key(kind, "queued"),
            self._clock(),
            self.PROMOTE_BATCH_SIZE,
        )
        return int(moved or 0)

    async def recover_in_flight(self, kind: str) -> int:
        """
        Requeue jobs left in the processing list by a crashed worker.

        Assumes no other live worker process is consuming this kind.
        """
        client = await self._client()
        recovered = 0
        while await client.lmove(
            self.key(kind, "processing"), self.key(kind, "queued"), "RIGHT", "RIGHT"
        ):
            recovered += 1

        if recovered:
            logger.warning("Recovered in-flight jobs", kind=kind, job_count=recovered)
        return recovered

    async def queue_depths(self, kind: str) -> dict[str, int]:
        client = await self._client()
        return {
            "queued": await client.llen(self.key(kind, "queued")),
            "processing": await client.llen(self.key(kind, "processing")),
            "delayed": await client.zcard(self.key(kind, "delayed")),
            "dead": await client.llen(self.key(kind, "dead")),
        }

    async def close(self) -> None:
        return None


def create_dispatcher(
    redis_client: FastRedisClient = fast_redis, *, queue_enabled: bool | None = None
) -> InlineJobDispatcher | RedisJobDispatcher:
    """Choose the dispatcher once, at startup."""
    enabled = settings.queue_enabled if queue_enabled is None else queue_enabled
    if enabled and redis_client.configured:
        logger.info("Job dispatch mode selected", mode=RedisJobDispatcher.mode)
        return RedisJobDispatcher(redis_client)

    logger.info("Job dispatch mode selected", mode=InlineJobDispatcher.mode)
    return InlineJobDispatcher()
