"""
Order — イベント定義

コミット後に Redis Pub/Sub (order_events チャネル) へ発行するイベント。
イベントは過去形で命名し、不変(immutable)として扱う。
購読側 (notifier) がメール送信や監査エクスポートを行う。
"""

from datetime import datetime

from pydantic import BaseModel

ORDER_EVENTS_CHANNEL = "order_events"


class OrderLine(BaseModel):
    product_id: str
    name: str
    price: str
    quantity: int


class OrderCreated(BaseModel):
    """注文集約が作成された"""
    order_id: str
    status: str
    payment_method: str
    total_amount: str
    is_guest_order: bool
    customer_id: str | None
    customer_name: str
    customer_email: str
    items: list[OrderLine]
    shipping_address: dict
    billing_address: dict
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが終端状態へ遷移した"""
    order_id: str
    status: str
    payment_reference: str | None = None
    timestamp: datetime


class PaymentFailed(BaseModel):
    """決済がキャンセル・チャージバックで終わった (注文は作成しない)"""
    order_id: str
    status: str
    payment_id: str | None
    timestamp: datetime
