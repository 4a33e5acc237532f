"""
Payment — 決済セッションマネージャ

チェックアウト開始時に「これから作られる注文」のペイロード全体を注文参照をキーに保存する。
決済通知が届いたとき、まだ注文が存在しなくてもここから注文を実体化できる。

  open_session        UPSERT (同じ参照で再開したら最後の書き込みが勝つ)
  get_session         保存済みペイロードを返す
  get_payment_status  注文 → セッション → NotFound の 3 段階で「支払いは済んだか」に答える
  build_redirect      ゲートウェイのホスト型フォームへ渡す署名付きパラメータを作る
  purge_expired       保持期間を過ぎたセッションを削除する
"""

import json
import logging
from datetime import datetime, timezone
from urllib.parse import urlencode

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import GatewayConfig
from ..db import payment_sessions, upsert
from ..errors import NotFoundError
from ..order import queries as order_queries
from ..order.aggregate import OrderStatus
from ..schemas import OrderPayload
from .signature import build_outbound_hash, format_amount

logger = logging.getLogger(__name__)


class PaymentSessionManager:
    """決済セッションの保存・取得と、ゲートウェイへのリダイレクト生成"""

    def __init__(self, config: GatewayConfig):
        self.config = config

    async def open_session(self, session: AsyncSession, payload: OrderPayload) -> None:
        now = datetime.now(timezone.utc)
        document = json.dumps(payload.model_dump(mode="json"))
        stmt = upsert(session, payment_sessions).values(
            id=payload.order_id,
            payload=document,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[payment_sessions.c.id],
            set_={"payload": stmt.excluded.payload, "updated_at": stmt.excluded.updated_at},
        )
        try:
            await session.execute(stmt)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        logger.info("Opened payment session %s", payload.order_id)

    async def get_session(self, session: AsyncSession, order_ref: str) -> OrderPayload:
        result = await session.execute(
            select(payment_sessions.c.payload).where(payment_sessions.c.id == order_ref)
        )
        document = result.scalar_one_or_none()
        if document is None:
            raise NotFoundError(f"Payment session not found: {order_ref}")
        return OrderPayload.model_validate_json(document)

    async def get_payment_status(self, session: AsyncSession, order_ref: str) -> dict:
        """
        1. 注文が実体化済みならその状態 (正)
        2. セッションだけあれば PENDING
        3. どちらも無ければ NotFoundError
        """
        agg = await order_queries.get_order(session, order_ref)
        if agg is not None:
            return {
                "order_id": order_ref,
                "status": agg.status.value,
                "payment_status": agg.payment_status.value,
                "source": "order",
            }

        result = await session.execute(
            select(payment_sessions.c.id).where(payment_sessions.c.id == order_ref)
        )
        if result.scalar_one_or_none() is not None:
            return {
                "order_id": order_ref,
                "status": OrderStatus.PENDING.value,
                "payment_status": "pending",
                "source": "session",
            }

        raise NotFoundError(f"No order or payment session for {order_ref}")

    def build_redirect(self, payload: OrderPayload) -> dict:
        """ホスト型チェックアウトフォームのパラメータを組み立てる。"""
        cfg = self.config
        amount = format_amount(payload.amount)
        customer = payload.customer
        billing = payload.billing_address
        shipping = payload.shipping_address
        return {
            "action_url": cfg.checkout_url,
            "merchant_id": cfg.merchant_id,
            "return_url": f"{cfg.return_url}?{urlencode({'order_id': payload.order_id})}",
            "cancel_url": cfg.cancel_url,
            "notify_url": cfg.notify_url,
            "order_id": payload.order_id,
            "items": ", ".join(item.name for item in payload.items),
            "currency": cfg.currency,
            "amount": amount,
            "first_name": customer.first_name,
            "last_name": customer.last_name,
            "email": customer.email,
            "phone": customer.phone,
            "address": billing.street1,
            "city": billing.city,
            "country": billing.country,
            "delivery_address": shipping.street1,
            "delivery_city": shipping.city,
            "delivery_country": shipping.country,
            "hash": build_outbound_hash(
                cfg.merchant_id,
                payload.order_id,
                amount,
                cfg.currency,
                cfg.merchant_secret.get_secret_value(),
            ),
        }

    async def purge_expired(self, session: AsyncSession, before: datetime) -> int:
        """before より前に最後に書き込まれたセッションを削除し、件数を返す。"""
        try:
            result = await session.execute(
                delete(payment_sessions).where(payment_sessions.c.updated_at < before)
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        if result.rowcount:
            logger.info("Purged %d expired payment sessions", result.rowcount)
        return result.rowcount
