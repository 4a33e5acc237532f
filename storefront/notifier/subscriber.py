"""
Notifier — Redis Pub/Sub サブスクライバー

order_events チャネルを購読し、受信したイベントをディスパッチャへ渡す。

注意: Redis Pub/Sub は fire-and-forget 方式。
ワーカーが落ちている間のイベント (= 確認メール) は失われる。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from ..order.events import ORDER_EVENTS_CHANNEL
from .handlers import EventDispatcher

logger = logging.getLogger(__name__)


async def process_message(dispatcher: EventDispatcher, raw: str) -> None:
    """Pub/Sub メッセージ 1 件を処理する。壊れたメッセージはログに残して捨てる。"""
    try:
        event = json.loads(raw)
    except ValueError:
        logger.warning("Dropping undecodable message: %r", raw[:200])
        return
    event_type = event.get("event_type")
    await dispatcher.handle_event(event_type, event.get("data", {}))
    logger.info("Handled event: %s", event_type)


async def run_subscriber(
    redis_url: str,
    dispatcher: EventDispatcher,
    shutdown_event: asyncio.Event,
) -> None:
    """
    order_events チャネルを購読し、イベントごとに副作用を実行する。
    shutdown_event がセットされるまで無限ループで待機する。
    """
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    pubsub = redis_conn.pubsub()
    await pubsub.subscribe(ORDER_EVENTS_CHANNEL)
    logger.info("Subscribed to %s channel", ORDER_EVENTS_CHANNEL)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    await process_message(dispatcher, message["data"])
                except Exception:
                    logger.exception("Failed to process event")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(ORDER_EVENTS_CHANNEL)
        await pubsub.aclose()
        await redis_conn.aclose()
