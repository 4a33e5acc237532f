"""
Payment — 決済セッションの保持期間管理

決済セッションは通知処理のあとも自動では消えないため、
保持期間を過ぎたものを定期的に削除するバックグラウンドタスクを API プロセスで動かす。
カートの差し引き済みマーカー (cart_reconciliations) も同じ保持期間で削除する。
保持期間より古い注文参照で差し引きを再実行すると、もう一度差し引かれる。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import sessionmaker

from ..cart import commands as cart_commands
from ..config import SessionRetentionConfig
from .sessions import PaymentSessionManager

logger = logging.getLogger(__name__)


async def run_session_janitor(
    async_session_factory: sessionmaker,
    manager: PaymentSessionManager,
    retention: SessionRetentionConfig,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで、一定間隔で期限切れセッションとマーカーを削除する。"""
    while not shutdown_event.is_set():
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention.retention_days)
        try:
            async with async_session_factory() as session:
                await manager.purge_expired(session, cutoff)
                await cart_commands.purge_reconciliations(session, cutoff)
        except Exception:
            logger.exception("Failed to purge expired payment sessions")

        try:
            await asyncio.wait_for(
                shutdown_event.wait(), timeout=retention.sweep_interval_seconds
            )
        except asyncio.TimeoutError:
            pass
