# =============================================================================
# Realtime API — WebSocket Bridge to the Owner's Channel
# =============================================================================
#
#   WS /ws/{owner_id}
#
# Subscribes to the owner's Redis channel ("{prefix}:{owner_id}") and
# forwards every message, unchanged, as a WebSocket text frame:
#   {"event": "query-status" | "query-completed" | "query-error", "data": {...}}
#
# The caller must be the owner: the gateway's X-User-Id header has to match
# the path, otherwise the handshake is closed with 1008 (policy violation).
#
# Events published while no client is connected are lost (pub/sub is not
# durable); clients fall back to GET /queries/{id}.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import APIRouter, Header, WebSocket, WebSocketDisconnect, status
from redis.exceptions import RedisError

from legal_qa.api.deps import parse_user_id
from legal_qa.services.notifier import channel_for, create_redis_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


@router.websocket("/ws/{owner_id}")
async def owner_channel(
    websocket: WebSocket,
    owner_id: uuid.UUID,
    x_user_id: str | None = Header(default=None),
) -> None:
    if parse_user_id(x_user_id) != owner_id:
        logger.warning("Rejected WebSocket for %s: caller is not the owner", owner_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    channel = channel_for(owner_id)

    redis = create_redis_client()
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    logger.info("WebSocket subscribed to %s", channel)

    # Detect client disconnects while waiting on Redis
    receiver = asyncio.create_task(_drain_client(websocket))
    try:
        while not receiver.done():
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message is not None:
                await websocket.send_text(message["data"])
    except WebSocketDisconnect:
        pass
    except RedisError as exc:
        logger.warning("Realtime channel %s closed on Redis error: %s", channel, exc)
    finally:
        receiver.cancel()
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await redis.aclose()
        logger.info("WebSocket for %s closed", channel)


async def _drain_client(websocket: WebSocket) -> None:
    """Read and discard client frames until the client disconnects."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return
