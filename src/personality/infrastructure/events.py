from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config import get_settings

LOG = logging.getLogger("personality.events")


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Optional[aioredis.Redis] = None

    async def _connect(self) -> None:
        client = aioredis.Redis.from_url(self._url, socket_timeout=0.5)
        try:
            await client.ping()
        except RedisError as exc:
            LOG.debug("redis_connect_failed", extra={"err": str(exc)})
            await client.aclose()
            return
        self._client = client

    async def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        if not self._client:
            await self._connect()
        if not self._client:
            return
        try:
            await self._client.publish(channel, json.dumps(payload, default=str))
        except RedisError as exc:
            LOG.debug("redis_publish_failed", extra={"channel": channel, "err": str(exc)})
            await self.aclose()

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = get_settings().redis_url
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


async def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    """Publish a run lifecycle event; a missing or unreachable broker is ignored."""

    publisher = _get_publisher()
    if not publisher:
        return
    await publisher.publish(f"personality.events.{event_type}", payload)


async def shutdown_publisher() -> None:
    global _publisher
    if _publisher is not None:
        await _publisher.aclose()
    _publisher = None


def reset_publisher() -> None:
    global _publisher
    _publisher = None
