import json

import pytest
import redis
import redis.asyncio as aioredis

from src.personality.infrastructure import events


class FakeRedisClient:
    attempt = 0
    published = []
    publish_should_fail = False
    closed = 0

    async def ping(self):
        if FakeRedisClient.attempt == 0:
            FakeRedisClient.attempt += 1
            raise redis.ConnectionError("connect failed")

    async def publish(self, channel, payload):
        FakeRedisClient.published.append((channel, payload))
        if FakeRedisClient.publish_should_fail:
            FakeRedisClient.publish_should_fail = False
            raise redis.ConnectionError("publish failed")

    async def aclose(self):
        FakeRedisClient.closed += 1


@pytest.fixture
def fake_redis(monkeypatch):
    FakeRedisClient.attempt = 0
    FakeRedisClient.published = []
    FakeRedisClient.publish_should_fail = False
    FakeRedisClient.closed = 0
    monkeypatch.setattr(aioredis.Redis, "from_url", staticmethod(lambda url, socket_timeout=0.5: FakeRedisClient()))
    monkeypatch.setenv("REDIS_URL", "redis://localhost")


@pytest.mark.asyncio
async def test_publish_event_no_url_returns_quietly():
    assert events._get_publisher() is None
    await events.publish_event("analysis.started", {"payload": "ignored"})


@pytest.mark.asyncio
async def test_redis_publisher_recovers_after_connection_failure(fake_redis):
    publisher = events._get_publisher()
    assert publisher is not None

    await events.publish_event("analysis.started", {"username": "jack"})  # first ping fails, dropped
    assert FakeRedisClient.attempt == 1
    assert FakeRedisClient.published == []
    assert FakeRedisClient.closed == 1

    await events.publish_event("analysis.completed", {"username": "jack"})
    channel, payload = FakeRedisClient.published[-1]
    assert channel == "personality.events.analysis.completed"
    assert json.loads(payload) == {"username": "jack"}

    FakeRedisClient.publish_should_fail = True
    await events.publish_event("analysis.failed", {"username": "jack"})  # swallowed
    await events.publish_event("analysis.failed", {"username": "jack"})
    assert events._get_publisher() is publisher
    assert FakeRedisClient.published[-1][0] == "personality.events.analysis.failed"
    assert len(FakeRedisClient.published) == 3


@pytest.mark.asyncio
async def test_shutdown_closes_the_client(fake_redis):
    FakeRedisClient.attempt = 1
    await events.publish_event("analysis.started", {"username": "jack"})

    await events.shutdown_publisher()

    assert FakeRedisClient.closed == 1
    assert events._publisher is None
