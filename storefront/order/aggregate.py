"""
Order — 注文集約 (Order Aggregate)

注文行・顧客リンク・住所 2 件・明細 N 件をひとまとまりとして扱う。
集約は 1 トランザクションで作成され、以後変更されるのはステータスだけ。

状態遷移:
    PENDING → PAID          (決済完了)
    PENDING → CANCELED      (決済キャンセル / 失敗)
    PENDING → CHARGED_BACK  (チャージバック)

PAID / CANCELED / CHARGED_BACK は終端状態。終端状態から先へは遷移しない。
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELED = "CANCELED"
    CHARGED_BACK = "CHARGED_BACK"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELED = "canceled"
    CHARGED_BACK = "charged_back"


TERMINAL_STATUSES = frozenset(
    {OrderStatus.PAID, OrderStatus.CANCELED, OrderStatus.CHARGED_BACK}
)

# 支払いステータスは注文ステータスと常に連動させる
PAYMENT_STATUS_FOR = {
    OrderStatus.PENDING: PaymentStatus.PENDING,
    OrderStatus.PAID: PaymentStatus.PAID,
    OrderStatus.CANCELED: PaymentStatus.CANCELED,
    OrderStatus.CHARGED_BACK: PaymentStatus.CHARGED_BACK,
}

# ゲートウェイのステータスコード → 注文ステータス
GATEWAY_STATUS_CODES = {
    2: OrderStatus.PAID,
    0: OrderStatus.PENDING,
    -1: OrderStatus.CANCELED,
    -2: OrderStatus.CANCELED,
    -3: OrderStatus.CHARGED_BACK,
}


def status_from_gateway_code(code: str | int) -> OrderStatus:
    """
    ゲートウェイのステータスコードを注文ステータスに変換する。
    未知のコードは PENDING として扱うが、プロトコル変更に気付けるよう警告を残す。
    """
    try:
        return GATEWAY_STATUS_CODES[int(code)]
    except (KeyError, TypeError, ValueError):
        logger.warning("Unrecognized gateway status code %r, treating as PENDING", code)
        return OrderStatus.PENDING


def order_total(items: Iterable[Any]) -> Decimal:
    """明細の price * quantity の合計 (小数点以下 2 桁)。"""
    total = sum(
        (Decimal(str(item.price)) * item.quantity for item in items), Decimal("0")
    )
    return total.quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_match(amount: Decimal, items: Iterable[Any]) -> bool:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP) == order_total(items)


class OrderAggregate:
    """注文集約 — 永続化された行、または作成時のペイロードから組み立てる。"""

    def __init__(self) -> None:
        self.id: str | None = None
        self.total_amount: Decimal = Decimal("0.00")
        self.status: OrderStatus = OrderStatus.PENDING
        self.payment_status: PaymentStatus = PaymentStatus.PENDING
        self.payment_method: str = ""
        self.payment_reference: str | None = None
        self.is_guest_order: bool = True
        self.customer: dict = {}
        self.shipping_address: dict | None = None
        self.billing_address: dict | None = None
        self.items: list[dict] = []
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None

    # ── 状態変更 ──────────────────────────────────

    def apply_created(self, data: dict) -> None:
        self.id = data["order_id"]
        self.total_amount = Decimal(str(data["amount"])).quantize(CENT)
        self.status = OrderStatus(data["status"])
        self.payment_status = PAYMENT_STATUS_FOR[self.status]
        self.payment_method = data["payment_method"]
        self.payment_reference = data.get("payment_reference")
        self.customer = data["customer"]
        self.is_guest_order = self.customer.get("customer_id") is None
        self.shipping_address = data["shipping_address"]
        self.billing_address = data["billing_address"]
        self.items = data["items"]
        self.created_at = data.get("created_at")
        self.updated_at = data.get("created_at")

    # ── 読み出し ─────────────────────────────────

    @classmethod
    def from_rows(
        cls,
        order_row: Any,
        customer: dict,
        addresses: list[Any],
        items: list[Any],
    ) -> "OrderAggregate":
        """orders 行と関連テーブルの行から集約を再構築する。"""
        agg = cls()
        agg.id = order_row.id
        agg.total_amount = Decimal(str(order_row.total_amount)).quantize(CENT)
        agg.status = OrderStatus(order_row.status)
        agg.payment_status = PaymentStatus(order_row.payment_status)
        agg.payment_method = order_row.payment_method
        agg.payment_reference = order_row.payment_reference
        agg.is_guest_order = bool(order_row.is_guest_order)
        agg.created_at = order_row.created_at
        agg.updated_at = order_row.updated_at
        agg.customer = customer
        for row in addresses:
            address = {
                "street1": row.street1,
                "street2": row.street2,
                "city": row.city,
                "state": row.state,
                "postal_code": row.postal_code,
                "country": row.country,
            }
            if row.address_type == "shipping":
                agg.shipping_address = address
            else:
                agg.billing_address = address
        agg.items = [
            {
                "product_id": row.product_id,
                "name": row.name,
                "price": Decimal(str(row.price)).quantize(CENT),
                "quantity": row.quantity,
            }
            for row in items
        ]
        return agg

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "is_guest_order": self.is_guest_order,
            "customer": self.customer,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "items": [{**item, "price": str(item["price"])} for item in self.items],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
