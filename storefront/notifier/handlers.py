"""
Notifier — イベントハンドラ

order_events から受け取ったイベントごとに副作用を実行する。
どの副作用も失敗したらログに残すだけで、他の副作用や次のイベントの処理は続ける。
注文そのものは既にコミット済みなので、ここでの失敗が注文に影響することはない。
"""

import logging

import httpx
from aiosmtplib import SMTPException

from ..config import NotifierConfig
from ..errors import BestEffortFailure
from . import audit, mail

logger = logging.getLogger(__name__)


class EventDispatcher:
    """イベント種別 → 副作用 の振り分け"""

    def __init__(self, config: NotifierConfig):
        self.config = config

    async def handle_event(self, event_type: str, data: dict) -> None:
        if event_type == "OrderCreated":
            await self._on_order_created(data)
        else:
            logger.debug("No side effects for %s", event_type)

    async def _on_order_created(self, data: dict) -> None:
        try:
            await mail.send_order_confirmation(self.config, data)
        except (SMTPException, OSError):
            logger.exception("Failed to send order confirmation for %s", data.get("order_id"))

        try:
            await audit.append_order_row(self.config, data)
        except (httpx.HTTPError, BestEffortFailure):
            logger.exception("Failed to export order %s", data.get("order_id"))
