import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, call

import pytest

from app.jobs.queue import (
    InlineJobDispatcher,
    JobDispatchError,
    JobEnvelope,
    JobPolicy,
    RedisJobDispatcher,
    create_dispatcher,
)
from app.services.redis_client import FastRedisClient

POLICIES = {"resolve": JobPolicy(attempts=3, backoff_seconds=5.0, concurrency=2)}


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def lpush(self, key, value):
        self.commands.append(("lpush", key, value))

    def zadd(self, key, mapping):
        self.commands.append(("zadd", key, mapping))

    def lrem(self, key, count, value):
        self.commands.append(("lrem", key, value))

    async def execute(self):
        for name, key, value in self.commands:
            if name == "lpush":
                await self.redis.lpush(key, value)
            elif name == "zadd":
                self.redis.zsets.setdefault(key, {}).update(value)
            else:
                await self.redis.lrem(key, 1, value)


class FakeQueueRedis:
    """List and sorted-set subset of the redis client used by the queue."""

    def __init__(self):
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    async def blmove(self, source, destination, timeout, wherefrom, whereto):
        items = self.lists.get(source) or []
        if not items:
            return None
        value = items.pop()
        self.lists.setdefault(destination, []).insert(0, value)
        return value

    async def lrem(self, key, count, value):
        items = self.lists.get(key, [])
        if value in items:
            items.remove(value)

    def pipeline(self, transaction=True):
        return FakePipeline(self)


def _redis_dispatcher(fake, now=1000.0):
    redis_client = SimpleNamespace(_ensure_initialized=AsyncMock(), client=fake)
    return RedisJobDispatcher(redis_client, POLICIES, clock=lambda: now)


def test_backoff_doubles_per_attempt():
    policy = JobPolicy(attempts=3, backoff_seconds=5.0, concurrency=1)

    assert [policy.backoff_for(attempt) for attempt in (1, 2, 3)] == [5.0, 10.0, 20.0]


def test_envelope_next_attempt_truncates_error():
    envelope = JobEnvelope(kind="resolve", payload={})

    retry = envelope.next_attempt(RuntimeError("x" * 1000))

    assert retry.id == envelope.id
    assert retry.attempt == 2
    assert len(retry.last_error) == 500


@pytest.mark.asyncio
async def test_inline_job_retries_then_goes_dead():
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    sleep = AsyncMock()
    dispatcher = InlineJobDispatcher(POLICIES, sleep=sleep)
    dispatcher.bind({"resolve": handler}, context="ctx")

    await dispatcher.enqueue("resolve", {"connection_id": "conn-1"})
    await dispatcher.drain()

    assert handler.await_count == 3
    handler.assert_awaited_with({"connection_id": "conn-1"}, "ctx")
    assert sleep.await_args_list == [call(5.0), call(10.0)]
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_inline_job_succeeds_after_retry():
    handler = AsyncMock(side_effect=[RuntimeError("flaky"), None])
    sleep = AsyncMock()
    dispatcher = InlineJobDispatcher(POLICIES, sleep=sleep)
    dispatcher.bind({"resolve": handler}, context=None)

    await dispatcher.enqueue("resolve", {})
    await dispatcher.drain()

    assert handler.await_count == 2
    sleep.assert_awaited_once_with(5.0)


@pytest.mark.asyncio
async def test_inline_concurrency_is_capped_per_kind():
    active = {"now": 0, "max": 0}

    async def handler(payload, context):
        active["now"] += 1
        active["max"] = max(active["max"], active["now"])
        await asyncio.sleep(0.01)
        active["now"] -= 1

    dispatcher = InlineJobDispatcher(POLICIES, sleep=AsyncMock())
    dispatcher.bind({"resolve": handler}, context=None)

    for i in range(6):
        await dispatcher.enqueue("resolve", {"n": i})
    await dispatcher.drain()

    assert active["max"] == 2


@pytest.mark.asyncio
async def test_enqueue_unknown_kind_raises():
    dispatcher = InlineJobDispatcher(POLICIES, sleep=AsyncMock())
    dispatcher.bind({}, context=None)

    with pytest.raises(JobDispatchError):
        await dispatcher.enqueue("unknown", {})


def test_unbound_dispatcher_has_no_runner():
    with pytest.raises(JobDispatchError):
        InlineJobDispatcher(POLICIES).runner


@pytest.mark.asyncio
async def test_redis_enqueue_and_reserve_round_trip():
    fake = FakeQueueRedis()
    dispatcher = _redis_dispatcher(fake)

    job_id = await dispatcher.enqueue("resolve", {"connection_id": "conn-1"})
    reserved = await dispatcher.reserve("resolve", timeout=0)

    raw, envelope = reserved
    assert envelope.id == job_id
    assert envelope.payload == {"connection_id": "conn-1"}
    assert fake.lists["jobs:resolve:processing"] == [raw]

    await dispatcher.ack("resolve", raw)

    assert fake.lists["jobs:resolve:processing"] == []


@pytest.mark.asyncio
async def test_redis_reserve_empty_queue():
    assert await _redis_dispatcher(FakeQueueRedis()).reserve("resolve", timeout=0) is None


@pytest.mark.asyncio
async def test_redis_failure_schedules_delayed_retry():
    fake = FakeQueueRedis()
    dispatcher = _redis_dispatcher(fake, now=1000.0)
    await dispatcher.enqueue("resolve", {})
    raw, envelope = await dispatcher.reserve("resolve", timeout=0)

    await dispatcher.fail(raw, envelope, RuntimeError("boom"))

    delayed = fake.zsets["jobs:resolve:delayed"]
    [(retry_raw, ready_at)] = delayed.items()
    retry = JobEnvelope.model_validate_json(retry_raw)
    assert ready_at == 1005.0
    assert retry.attempt == 2
    assert retry.last_error == "boom"
    assert fake.lists["jobs:resolve:processing"] == []


@pytest.mark.asyncio
async def test_redis_final_failure_goes_to_dead_list():
    fake = FakeQueueRedis()
    dispatcher = _redis_dispatcher(fake)
    envelope = JobEnvelope(kind="resolve", payload={}, attempt=3)
    raw = envelope.model_dump_json()
    fake.lists["jobs:resolve:processing"] = [raw]

    await dispatcher.fail(raw, envelope, RuntimeError("gone"))

    [dead_raw] = fake.lists["jobs:resolve:dead"]
    assert JobEnvelope.model_validate_json(dead_raw).last_error == "gone"
    assert "jobs:resolve:delayed" not in fake.zsets
    assert fake.lists["jobs:resolve:processing"] == []


def test_create_dispatcher_without_redis_is_inline():
    dispatcher = create_dispatcher(FastRedisClient(None), queue_enabled=True)

    assert dispatcher.mode == "inline"


def test_create_dispatcher_with_redis_uses_queue():
    dispatcher = create_dispatcher(FastRedisClient("redis://localhost:6379"), queue_enabled=True)

    assert dispatcher.mode == "queue"


def test_create_dispatcher_queue_disabled():
    dispatcher = create_dispatcher(FastRedisClient("redis://localhost:6379"), queue_enabled=False)

    assert isinstance(dispatcher, InlineJobDispatcher)
