# =============================================================================
# Realtime Notifier — Per-Owner Push Channel (Redis Pub/Sub)
# =============================================================================
#
# Pushes query lifecycle events to whoever is listening for an owner:
#
#   query-status     {"queryId", "status", "message"}
#   query-completed  {"queryId", "response"}
#   query-error      {"queryId", "error"}
#
# Channel: "{REALTIME_CHANNEL_PREFIX}:{owner_id}". Messages are JSON:
#   {"event": "<name>", "data": {...}}
#
# The WebSocket endpoint (api/realtime.py) subscribes to the same channel
# and forwards every message to the connected client.
#
# DESIGN DECISION: Redis pub/sub, not a socket registry in the API process.
# Celery workers publish too, and they have no access to the API's open
# connections.
#
# DELIVERY GUARANTEE: at most once, not durable. Nobody subscribed means the
# message is gone. Publish failures are logged and swallowed.
# =============================================================================

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Protocol

from pydantic_core import to_jsonable_python
from redis.asyncio import Redis
from redis.exceptions import RedisError

from legal_qa.config import settings

logger = logging.getLogger(__name__)

QUERY_STATUS = "query-status"
QUERY_COMPLETED = "query-completed"
QUERY_ERROR = "query-error"


def channel_for(owner_id: uuid.UUID | str, prefix: str | None = None) -> str:
    return f"{prefix or settings.realtime_channel_prefix}:{owner_id}"


class RealtimeNotifier(Protocol):
    """Anything that can push the three query lifecycle events."""

    async def status(
        self, owner_id: uuid.UUID, query_id: uuid.UUID, status: str, message: str,
    ) -> None:
        ...

    async def completed(
        self, owner_id: uuid.UUID, query_id: uuid.UUID, response: dict,
    ) -> None:
        ...

    async def error(
        self, owner_id: uuid.UUID, query_id: uuid.UUID, error: str,
    ) -> None:
        ...


class RedisNotifier:
    """RealtimeNotifier backed by Redis PUBLISH."""

    def __init__(self, redis: Redis, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix or settings.realtime_channel_prefix

    async def status(
        self, owner_id: uuid.UUID, query_id: uuid.UUID, status: str, message: str,
    ) -> None:
        await self._emit(owner_id, QUERY_STATUS, {
            "queryId": query_id,
            "status": status,
            "message": message,
        })

    async def completed(
        self, owner_id: uuid.UUID, query_id: uuid.UUID, response: dict,
    ) -> None:
        await self._emit(owner_id, QUERY_COMPLETED, {
            "queryId": query_id,
            "response": response,
        })

    async def error(
        self, owner_id: uuid.UUID, query_id: uuid.UUID, error: str,
    ) -> None:
        await self._emit(owner_id, QUERY_ERROR, {
            "queryId": query_id,
            "error": error,
        })

    async def _emit(self, owner_id: uuid.UUID, event: str, data: dict[str, Any]) -> None:
        channel = channel_for(owner_id, self._prefix)
        message = json.dumps(
            {"event": event, "data": to_jsonable_python(data)},
            ensure_ascii=False,
        )
        try:
            receivers = await self._redis.publish(channel, message)
        except RedisError as exc:
            logger.warning("Realtime event '%s' for %s not published: %s", event, channel, exc)
            return
        logger.debug("Realtime event '%s' → %s (%d receivers)", event, channel, receivers)


def create_redis_client() -> Redis:
    return Redis.from_url(settings.redis_url, decode_responses=True)
