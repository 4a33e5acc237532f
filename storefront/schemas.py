"""
Storefront — 共有ペイロードモデル

チェックアウト時にクライアントから受け取り、決済セッションに丸ごと保存し、
決済通知の到着時に注文集約として実体化する注文ペイロードの定義。
"""

from decimal import Decimal
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from .order.aggregate import amounts_match, order_total


class PaymentMethod(str, Enum):
    GATEWAY_REDIRECT = "gateway_redirect"
    CASH_ON_DELIVERY = "cash_on_delivery"
    BANK_TRANSFER = "bank_transfer"


class Address(BaseModel):
    street1: str = Field(min_length=1, max_length=255)
    street2: str | None = Field(default=None, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str | None = Field(default=None, max_length=100)
    postal_code: str | None = Field(default=None, max_length=20)
    country: str = Field(min_length=1, max_length=100)


class CustomerInfo(BaseModel):
    """
    顧客情報。customer_id があれば登録顧客の注文、
    無ければゲスト注文 (この時点の連絡先スナップショット) として扱う。
    """
    first_name: str = Field(max_length=100)
    last_name: str = Field(max_length=100)
    email: str = Field(max_length=255)
    phone: str = Field(max_length=50)
    company: str | None = Field(default=None, max_length=255)
    customer_id: str | None = Field(default=None, min_length=1, max_length=64)

    @property
    def is_guest(self) -> bool:
        return self.customer_id is None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class OrderItemIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    name: str = Field(max_length=255)
    price: Decimal = Field(ge=0, decimal_places=2)
    quantity: int = Field(gt=0)


class OrderPayload(BaseModel):
    """注文 1 件分の完全なペイロード"""
    order_id: str = Field(default_factory=lambda: str(uuid4()), min_length=1, max_length=64)
    customer: CustomerInfo
    shipping_address: Address
    billing_address: Address
    items: list[OrderItemIn] = Field(min_length=1)
    amount: Decimal = Field(ge=0)
    payment_method: PaymentMethod = PaymentMethod.GATEWAY_REDIRECT

    @model_validator(mode="after")
    def _amount_matches_items(self) -> "OrderPayload":
        if not amounts_match(self.amount, self.items):
            raise ValueError(
                f"amount {self.amount} does not equal item total {order_total(self.items)}"
            )
        return self


class CartItemIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    weight: Decimal = Decimal("0")


class OrderedItem(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
