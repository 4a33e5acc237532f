"""
Payment — 決済通知プロセッサ (Webhook の状態機械)

ゲートウェイからの非同期通知を受け取り、次の順で処理する:

  1. 署名を再計算して検証する (このエンドポイント唯一の認可ゲート)
  2. 注文参照で決済セッションを引く。無ければ何もしない
  3. ステータスコードを注文ステータスに変換する
  4. PAID            → 請求額・通貨がセッションと一致すれば注文集約を作成する
                        一致しなければ決済ログを追記するだけ (注文は作らない)
                        既に存在すれば (再送・並行配送) 成功扱いの no-op
  5. CANCELED 等     → 決済ログを追記するだけ (注文は作らない)
  6. 認識できた結果は 200、署名不一致は 403、インフラ障害は 500 を返す
     → ゲートウェイは「インフラ障害のときだけ」再送する
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import GatewayConfig
from ..db import payment_logs
from ..errors import AuthenticationError, DuplicateOrderError, NotFoundError
from ..order import commands as order_commands
from ..order.aggregate import OrderStatus, status_from_gateway_code
from ..order.events import OrderStatusChanged, PaymentFailed
from ..publisher import publish_event
from ..schemas import OrderPayload
from .sessions import PaymentSessionManager
from .signature import format_amount, verify_inbound_signature

logger = logging.getLogger(__name__)

# 請求額・通貨がセッションと食い違った PAID 通知の決済ログ上のステータス
AMOUNT_MISMATCH = "AMOUNT_MISMATCH"


class PaymentNotification(BaseModel):
    """ゲートウェイの通知フィールド。チェックアウト時の任意フィールドもそのまま受け取る。"""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    merchant_id: str
    order_id: str = Field(min_length=1, max_length=64)
    payment_id: str = Field(default="", max_length=64)
    payhere_amount: str = Field(max_length=32)
    payhere_currency: str = Field(max_length=8)
    status_code: str
    md5sig: str


@dataclass
class NotificationAck:
    """ゲートウェイへ返す応答 (プレーンテキスト)"""
    status_code: int
    body: str
    outcome: str


class NotificationProcessor:
    """決済通知を検証し、注文ステータスの状態機械を進める"""

    def __init__(
        self,
        config: GatewayConfig,
        redis: aioredis.Redis | None,
        sessions: PaymentSessionManager | None = None,
    ):
        self.config = config
        self.redis = redis
        self.sessions = sessions or PaymentSessionManager(config)

    async def handle(self, session: AsyncSession, fields: dict) -> NotificationAck:
        try:
            note = PaymentNotification.model_validate(fields)
        except PydanticValidationError:
            logger.warning("Malformed payment notification: fields=%s", sorted(fields))
            return NotificationAck(400, "Malformed notification", "malformed")

        # 1. 署名検証 (加盟店 ID は受信値ではなく設定値で再計算する)
        if not verify_inbound_signature(
            self.config.merchant_id,
            note.order_id,
            note.payhere_amount,
            note.payhere_currency,
            note.status_code,
            note.md5sig,
            self.config.merchant_secret.get_secret_value(),
        ):
            logger.warning(
                "Rejected payment notification with invalid signature: "
                "order=%s merchant=%s status_code=%s",
                note.order_id,
                note.merchant_id,
                note.status_code,
            )
            error = AuthenticationError("Invalid signature")
            return NotificationAck(error.status_code, error.message, "invalid_signature")

        try:
            # 2. セッション取得
            try:
                payload = await self.sessions.get_session(session, note.order_id)
            except NotFoundError:
                logger.warning("Payment notification for unknown session %s", note.order_id)
                return NotificationAck(200, "Session not found", "session_not_found")

            # 3. ステータス変換
            target = status_from_gateway_code(note.status_code)

            # 4-5. 状態機械
            if target == OrderStatus.PAID:
                if self._charge_matches(payload, note):
                    outcome = await self._materialize(session, payload, note)
                else:
                    outcome = await self._record_mismatch(session, payload, note)
            elif target in (OrderStatus.CANCELED, OrderStatus.CHARGED_BACK):
                outcome = await self._record_failure(session, note, target)
            else:
                logger.info("Payment for %s still pending", note.order_id)
                outcome = "pending"
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("Failed to process payment notification for %s", note.order_id)
            return NotificationAck(500, "Processing error", "error")

        return NotificationAck(200, "OK", outcome)

    async def _materialize(self, session, payload, note: PaymentNotification) -> str:
        """決済完了: セッションのペイロードから注文集約を作成する。"""
        try:
            await order_commands.create_order_from_payload(
                session,
                self.redis,
                payload,
                initial_status=OrderStatus.PAID,
                payment_reference=note.payment_id or None,
            )
        except DuplicateOrderError:
            # 再送または並行配送。既存の注文が PENDING なら PAID に進め、それ以外は何もしない
            changed = await order_commands.mark_status(
                session, note.order_id, OrderStatus.PAID, note.payment_id or None
            )
            await session.commit()
            if changed:
                await self._publish_status(note, OrderStatus.PAID)
                return "paid"
            logger.info("Order %s already materialized, ignoring replay", note.order_id)
            return "duplicate"
        return "created"

    def _charge_matches(self, payload: OrderPayload, note: PaymentNotification) -> bool:
        """ゲートウェイの請求額・通貨が、保存済みペイロードと一致するか。"""
        try:
            charged = format_amount(note.payhere_amount)
            expected = format_amount(payload.amount)
        except ValueError:
            return False
        return (
            charged == expected
            and note.payhere_currency.strip().upper() == self.config.currency.upper()
        )

    async def _record_mismatch(
        self, session, payload: OrderPayload, note: PaymentNotification
    ) -> str:
        """請求額の不一致: 決済ログだけを残し、注文は作らない。"""
        logger.warning(
            "Charged amount for %s does not match its session: "
            "charged=%s %s expected=%s %s",
            note.order_id,
            note.payhere_amount,
            note.payhere_currency,
            format_amount(payload.amount),
            self.config.currency,
        )
        try:
            await self._append_log(session, note, AMOUNT_MISMATCH)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return "amount_mismatch"

    async def _append_log(self, session, note: PaymentNotification, status: str) -> None:
        await session.execute(
            insert(payment_logs).values(
                order_id=note.order_id,
                status=status,
                payment_id=note.payment_id or None,
                amount=note.payhere_amount,
                currency=note.payhere_currency,
                raw_payload=json.dumps(note.model_dump(), default=str),
                created_at=datetime.now(timezone.utc),
            )
        )

    async def _record_failure(
        self, session, note: PaymentNotification, target: OrderStatus
    ) -> str:
        """キャンセル・チャージバック: 決済ログを追記し、PENDING の注文があれば同じ状態へ進める。"""
        now = datetime.now(timezone.utc)
        try:
            await self._append_log(session, note, target.value)
            changed = await order_commands.mark_status(session, note.order_id, target)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info("Payment for %s ended as %s", note.order_id, target.value)
        await publish_event(
            self.redis,
            PaymentFailed(
                order_id=note.order_id,
                status=target.value,
                payment_id=note.payment_id or None,
                timestamp=now,
            ),
        )
        if changed:
            await self._publish_status(note, target)
        return target.value.lower()

    async def _publish_status(self, note: PaymentNotification, target: OrderStatus) -> None:
        await publish_event(
            self.redis,
            OrderStatusChanged(
                order_id=note.order_id,
                status=target.value,
                payment_reference=note.payment_id or None,
                timestamp=datetime.now(timezone.utc),
            ),
        )

