"""
Storefront — イベント発行

コミット済みの事実を Redis Pub/Sub に発行する。
発行はベストエフォート: Redis が落ちていても注文処理は失敗させず、ログだけ残す。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from .order.events import ORDER_EVENTS_CHANNEL

logger = logging.getLogger(__name__)


async def publish_event(
    redis: aioredis.Redis | None,
    event: BaseModel,
    channel: str = ORDER_EVENTS_CHANNEL,
) -> bool:
    """イベントを発行する。発行できたら True を返す。"""
    event_type = type(event).__name__
    if redis is None:
        logger.warning("Redis not configured, dropping %s event", event_type)
        return False
    try:
        await redis.publish(
            channel,
            json.dumps(
                {
                    "event_type": event_type,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except (RedisError, OSError):
        logger.exception("Failed to publish %s event", event_type)
        return False
    return True
