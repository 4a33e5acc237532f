"""
Order — コマンドハンドラ (CQRS の Write 側)

注文集約の作成とステータス遷移だけがここを通る。

作成は 1 トランザクション:
  orders → 顧客リンク (ゲスト XOR 登録顧客) → 住所 2 件 → 明細 N 件 → COMMIT
どこかで失敗したら全体をロールバックし、明細の無い注文も注文の無い明細も残さない。

二重作成の検知は「存在確認してから INSERT」ではなく主キー制約に任せる。
同じ注文参照の Webhook が並行して届いても、片方は一意制約違反で
DuplicateOrderError になるだけで注文は 1 件しかできない。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import customer_orders, guest_customers, order_addresses, order_items, orders
from ..errors import (
    DuplicateOrderError,
    InvalidStatusTransitionError,
    NotFoundError,
    ValidationError,
)
from ..publisher import publish_event
from ..schemas import Address, CustomerInfo, OrderItemIn, OrderPayload, PaymentMethod
from . import queries
from .aggregate import (
    CENT,
    PAYMENT_STATUS_FOR,
    TERMINAL_STATUSES,
    OrderAggregate,
    OrderStatus,
    amounts_match,
    order_total,
)
from .events import OrderCreated, OrderLine, OrderStatusChanged

logger = logging.getLogger(__name__)


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_ref: str,
    customer: CustomerInfo,
    shipping_address: Address,
    billing_address: Address,
    items: list[OrderItemIn],
    amount: Decimal,
    payment_method: PaymentMethod | str,
    initial_status: OrderStatus = OrderStatus.PENDING,
    payment_reference: str | None = None,
) -> OrderAggregate:
    """
    注文作成コマンド

    1. 入力を検証 (永続化の前に拒否する)
    2. 集約全体を 1 トランザクションで INSERT
    3. COMMIT 後に OrderCreated を発行 (ベストエフォート)
    """
    _validate_order(order_ref, items, amount)
    method = PaymentMethod(payment_method)
    status = OrderStatus(initial_status)
    amount = Decimal(str(amount)).quantize(CENT)
    now = datetime.now(timezone.utc)

    try:
        # 1. 注文行 (主キー制約が二重作成を検知する)
        try:
            await session.execute(
                insert(orders).values(
                    id=order_ref,
                    total_amount=amount,
                    status=status.value,
                    payment_method=method.value,
                    payment_status=PAYMENT_STATUS_FOR[status].value,
                    payment_reference=payment_reference,
                    is_guest_order=customer.is_guest,
                    created_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError as exc:
            raise DuplicateOrderError(order_ref) from exc

        # 2. 顧客リンク (ゲストのスナップショット XOR 登録顧客への参照)
        await _insert_customer_link(session, order_ref, customer)

        # 3. 住所
        await _insert_address(session, order_ref, "shipping", shipping_address)
        await _insert_address(session, order_ref, "billing", billing_address)

        # 4. 明細
        for item in items:
            await _insert_item(session, order_ref, item)

        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Created order %s (%s, %s)", order_ref, status.value, method.value)

    data = {
        "order_id": order_ref,
        "amount": amount,
        "status": status.value,
        "payment_method": method.value,
        "payment_reference": payment_reference,
        "customer": customer.model_dump(),
        "shipping_address": shipping_address.model_dump(),
        "billing_address": billing_address.model_dump(),
        "items": [item.model_dump() for item in items],
        "created_at": now,
    }
    agg = OrderAggregate()
    agg.apply_created(data)

    await publish_event(
        redis,
        OrderCreated(
            order_id=order_ref,
            status=status.value,
            payment_method=method.value,
            total_amount=str(amount),
            is_guest_order=customer.is_guest,
            customer_id=customer.customer_id,
            customer_name=customer.full_name,
            customer_email=customer.email,
            items=[
                OrderLine(
                    product_id=item.product_id,
                    name=item.name,
                    price=str(Decimal(str(item.price)).quantize(CENT)),
                    quantity=item.quantity,
                )
                for item in items
            ],
            shipping_address=data["shipping_address"],
            billing_address=data["billing_address"],
            timestamp=now,
        ),
    )
    return agg


async def create_order_from_payload(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    payload: OrderPayload,
    initial_status: OrderStatus = OrderStatus.PENDING,
    payment_reference: str | None = None,
) -> OrderAggregate:
    return await create_order(
        session,
        redis,
        payload.order_id,
        payload.customer,
        payload.shipping_address,
        payload.billing_address,
        payload.items,
        payload.amount,
        payload.payment_method,
        initial_status=initial_status,
        payment_reference=payment_reference,
    )


async def mark_status(
    session: AsyncSession,
    order_ref: str,
    target: OrderStatus,
    payment_reference: str | None = None,
) -> bool:
    """
    PENDING の注文だけを target へ遷移させる条件付き UPDATE。
    COMMIT は呼び出し側が行う。遷移したら True。
    """
    values = {
        "status": target.value,
        "payment_status": PAYMENT_STATUS_FOR[target].value,
        "updated_at": datetime.now(timezone.utc),
    }
    if payment_reference:
        values["payment_reference"] = payment_reference
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_ref, orders.c.status == OrderStatus.PENDING.value)
        .values(**values)
    )
    return result.rowcount > 0


async def update_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_ref: str,
    target: OrderStatus,
    payment_reference: str | None = None,
) -> OrderStatus:
    """
    ステータス遷移コマンド (管理画面・代引き入金確認など)

    PENDING → 終端状態 だけを許可する。既に同じステータスなら何もしない。
    """
    target = OrderStatus(target)
    if target not in TERMINAL_STATUSES:
        raise ValidationError(f"Orders can only move to a terminal status, not {target.value}")

    try:
        changed = await mark_status(session, order_ref, target, payment_reference)
        if changed:
            await session.commit()
        else:
            await session.rollback()
    except Exception:
        await session.rollback()
        raise

    if not changed:
        current = await queries.get_order_status(session, order_ref)
        if current is None:
            raise NotFoundError(f"Order not found: {order_ref}")
        if current != target:
            raise InvalidStatusTransitionError(order_ref, current.value, target.value)
        return current

    logger.info("Order %s moved to %s", order_ref, target.value)
    await publish_event(
        redis,
        OrderStatusChanged(
            order_id=order_ref,
            status=target.value,
            payment_reference=payment_reference,
            timestamp=datetime.now(timezone.utc),
        ),
    )
    return target


# ── 内部ヘルパー ─────────────────────────────────

def _validate_order(order_ref: str, items: list[OrderItemIn], amount: Decimal) -> None:
    if not order_ref:
        raise ValidationError("Order reference is required")
    if not items:
        raise ValidationError("An order needs at least one item")
    for item in items:
        if item.quantity <= 0:
            raise ValidationError(f"Quantity must be positive for {item.product_id}")
        if Decimal(str(item.price)) < 0:
            raise ValidationError(f"Price must not be negative for {item.product_id}")
    if not amounts_match(amount, items):
        raise ValidationError(
            f"Amount {amount} does not equal item total {order_total(items)}"
        )


async def _insert_customer_link(
    session: AsyncSession, order_ref: str, customer: CustomerInfo
) -> None:
    if customer.is_guest:
        await session.execute(
            insert(guest_customers).values(
                order_id=order_ref,
                first_name=customer.first_name,
                last_name=customer.last_name,
                email=customer.email,
                phone=customer.phone,
                company=customer.company,
            )
        )
    else:
        await session.execute(
            insert(customer_orders).values(
                order_id=order_ref,
                customer_id=customer.customer_id,
            )
        )


async def _insert_address(
    session: AsyncSession, order_ref: str, address_type: str, address: Address
) -> None:
    await session.execute(
        insert(order_addresses).values(
            order_id=order_ref,
            address_type=address_type,
            **address.model_dump(),
        )
    )


async def _insert_item(session: AsyncSession, order_ref: str, item: OrderItemIn) -> None:
    await session.execute(
        insert(order_items).values(
            order_id=order_ref,
            product_id=item.product_id,
            name=item.name,
            price=Decimal(str(item.price)).quantize(CENT),
            quantity=item.quantity,
        )
    )
