"""
Cart — 注文済み商品の差し引き (ゲストカート版)

ゲストのカートはクライアントが保持しているので、カートを受け取り、差し引いた結果を返す。
ルールはサーバ側カート (commands.remove_ordered) と同じ:

  カートに無い商品               → 何もしない (カートと注文は既に食い違ってよい)
  カート数量 <= 注文数量          → 行を削除
  カート数量 >  注文数量          → 数量を減らし、小計はカート自身の単価で再計算

reconciled_orders に注文参照を記録するので、同じ注文で 2 回呼んでも 2 回目は何もしない。
"""

from collections import OrderedDict
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel, Field

from ..schemas import OrderedItem


class CartLine(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    weight: Decimal = Decimal("0")
    subtotal: Decimal | None = None


class GuestCart(BaseModel):
    items: list[CartLine] = []
    reconciled_orders: list[str] = []


def merge_ordered_items(ordered_items: Iterable[OrderedItem]) -> "OrderedDict[str, int]":
    """同じ商品の注文行をまとめる。"""
    merged: OrderedDict[str, int] = OrderedDict()
    for item in ordered_items:
        merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    return merged


def remaining_quantity(cart_quantity: int, ordered_quantity: int) -> int | None:
    """差し引き後の数量。行を消すべきなら None。"""
    if cart_quantity <= ordered_quantity:
        return None
    return cart_quantity - ordered_quantity


def reconcile_lines(
    lines: list[CartLine], ordered_items: Iterable[OrderedItem]
) -> list[CartLine]:
    ordered = merge_ordered_items(ordered_items)
    result = []
    for line in lines:
        if line.product_id not in ordered:
            result.append(line)
            continue
        remaining = remaining_quantity(line.quantity, ordered[line.product_id])
        if remaining is None:
            continue
        result.append(
            line.model_copy(
                update={
                    "quantity": remaining,
                    "subtotal": (line.unit_price * remaining).quantize(Decimal("0.01")),
                }
            )
        )
    return result


def reconcile_guest_cart(
    cart: GuestCart, order_ref: str, ordered_items: Iterable[OrderedItem]
) -> GuestCart:
    if order_ref in cart.reconciled_orders:
        return cart
    return GuestCart(
        items=reconcile_lines(cart.items, ordered_items),
        reconciled_orders=[*cart.reconciled_orders, order_ref],
    )
