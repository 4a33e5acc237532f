"""
Notifier Worker — FastAPI エントリーポイント

order_events を購読し、注文確認メールと監査エクスポートを行う。
API プロセスとは別に動かすので、SMTP や外部エンドポイントが遅くても
決済通知への応答は遅れない。

┌───────────────┐   order_events   ┌──────────────────┐     SMTP
│ Order Service │ ──── Redis ────▶ │ Notifier Worker  │ ──▶ 確認メール
│ (Write 側)    │   Pub/Sub        │                  │ ──▶ 監査シート (HTTP)
└───────────────┘                  └──────────────────┘
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..config import load_notifier_config
from .handlers import EventDispatcher
from .subscriber import run_subscriber

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に Redis サブスクライバをバックグラウンドタスクとして開始する。"""
    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(REDIS_URL, EventDispatcher(load_notifier_config()), shutdown_event)
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass


app = FastAPI(title="Storefront Notifier", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront-notifier"}
