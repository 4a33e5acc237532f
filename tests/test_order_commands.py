"""
Order aggregate builder: atomic creation, duplicate detection and the
PENDING → terminal state machine.
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from storefront.db import customer_orders, guest_customers, order_addresses, order_items, orders
from storefront.errors import (
    DuplicateOrderError,
    InvalidStatusTransitionError,
    NotFoundError,
    ValidationError,
)
from storefront.order import commands, queries
from storefront.order.aggregate import OrderStatus, PaymentStatus
from storefront.schemas import OrderItemIn, PaymentMethod

pytestmark = pytest.mark.asyncio


def _items(count: int) -> list[OrderItemIn]:
    return [
        OrderItemIn(
            product_id=f"SKU-{n}", name=f"Item {n}", price=Decimal("100.00"), quantity=n
        )
        for n in range(1, count + 1)
    ]


async def _count(session, table) -> int:
    result = await session.execute(select(func.count()).select_from(table))
    return result.scalar_one()


class TestCreateOrder:
    async def test_guest_order_persists_every_part(self, session, redis, make_payload):
        payload = make_payload(order_id="ORD-100", items=_items(2))

        agg = await commands.create_order_from_payload(session, redis, payload)

        assert agg.id == "ORD-100"
        assert agg.status == OrderStatus.PENDING
        assert agg.total_amount == Decimal("300.00")
        assert await _count(session, orders) == 1
        assert await _count(session, guest_customers) == 1
        assert await _count(session, customer_orders) == 0
        assert await _count(session, order_addresses) == 2
        assert await _count(session, order_items) == 2

        stored = await queries.get_order(session, "ORD-100")
        assert stored.is_guest_order is True
        assert stored.customer["email"] == "nimal@example.com"
        assert stored.shipping_address["city"] == "Colombo"
        assert stored.billing_address["city"] == "Kandy"
        assert [item["quantity"] for item in stored.items] == [1, 2]

    async def test_account_order_links_customer(self, session, redis, make_payload):
        payload = make_payload(order_id="ORD-101", customer_id="cust-7")

        await commands.create_order_from_payload(session, redis, payload)

        assert await _count(session, guest_customers) == 0
        history = await queries.list_customer_orders(session, "cust-7")
        assert [order["id"] for order in history] == ["ORD-101"]
        assert history[0]["customer"] == {"customer_id": "cust-7"}

    async def test_publishes_order_created(self, session, redis, make_payload):
        await commands.create_order_from_payload(session, redis, make_payload())

        redis.publish.assert_awaited_once()
        channel, body = redis.publish.await_args.args
        message = json.loads(body)
        assert channel == "order_events"
        assert message["event_type"] == "OrderCreated"
        assert message["data"]["order_id"] == "ORD-1"
        assert message["data"]["total_amount"] == "1500.00"
        assert message["data"]["items"][0]["price"] == "1500.00"

    async def test_initial_status_and_payment_reference(self, session, redis, make_payload):
        agg = await commands.create_order_from_payload(
            session,
            redis,
            make_payload(),
            initial_status=OrderStatus.PAID,
            payment_reference="320025071278",
        )

        assert agg.status == OrderStatus.PAID
        assert agg.payment_status == PaymentStatus.PAID
        stored = await queries.get_order(session, "ORD-1")
        assert stored.payment_reference == "320025071278"

    async def test_duplicate_reference_rejected(self, session, redis, make_payload):
        await commands.create_order_from_payload(session, redis, make_payload())

        with pytest.raises(DuplicateOrderError):
            await commands.create_order_from_payload(session, redis, make_payload())

        assert await _count(session, orders) == 1
        assert await _count(session, order_items) == 1

    async def test_failure_mid_items_rolls_back_everything(
        self, session, redis, make_payload, monkeypatch
    ):
        original = commands._insert_item
        calls = {"n": 0}

        async def failing_insert(session, order_ref, item):
            calls["n"] += 1
            if calls["n"] == 3:
                raise RuntimeError("disk full")
            await original(session, order_ref, item)

        monkeypatch.setattr(commands, "_insert_item", failing_insert)

        with pytest.raises(RuntimeError):
            await commands.create_order_from_payload(
                session, redis, make_payload(order_id="ORD-ATOMIC", items=_items(5))
            )

        for table in (orders, guest_customers, order_addresses, order_items):
            assert await _count(session, table) == 0
        redis.publish.assert_not_awaited()

    async def test_amount_mismatch_rejected_before_persisting(self, session, redis, make_payload):
        payload = make_payload()

        with pytest.raises(ValidationError):
            await commands.create_order(
                session,
                redis,
                "ORD-BAD",
                payload.customer,
                payload.shipping_address,
                payload.billing_address,
                payload.items,
                Decimal("1499.99"),
                PaymentMethod.CASH_ON_DELIVERY,
            )
        assert await _count(session, orders) == 0

    async def test_empty_items_rejected(self, session, redis, make_payload):
        payload = make_payload()

        with pytest.raises(ValidationError):
            await commands.create_order(
                session,
                redis,
                "ORD-EMPTY",
                payload.customer,
                payload.shipping_address,
                payload.billing_address,
                [],
                Decimal("0"),
                PaymentMethod.CASH_ON_DELIVERY,
            )

    async def test_publish_failure_does_not_fail_order(self, session, make_payload):
        broken_redis = AsyncMock()
        broken_redis.publish.side_effect = RedisConnectionError("redis down")

        agg = await commands.create_order_from_payload(session, broken_redis, make_payload())

        assert agg.id == "ORD-1"
        assert await queries.get_order_status(session, "ORD-1") == OrderStatus.PENDING

    async def test_works_without_redis(self, session, make_payload):
        agg = await commands.create_order_from_payload(session, None, make_payload())
        assert agg.id == "ORD-1"


class TestUpdateStatus:
    async def test_pending_to_paid(self, session, redis, make_payload):
        await commands.create_order_from_payload(session, redis, make_payload())
        redis.publish.reset_mock()

        status = await commands.update_status(
            session, redis, "ORD-1", OrderStatus.PAID, payment_reference="PAY-1"
        )

        assert status == OrderStatus.PAID
        stored = await queries.get_order(session, "ORD-1")
        assert stored.status == OrderStatus.PAID
        assert stored.payment_status == PaymentStatus.PAID
        assert stored.payment_reference == "PAY-1"
        message = json.loads(redis.publish.await_args.args[1])
        assert message["event_type"] == "OrderStatusChanged"

    async def test_reapplying_same_status_is_noop(self, session, redis, make_payload):
        await commands.create_order_from_payload(session, redis, make_payload())
        await commands.update_status(session, redis, "ORD-1", OrderStatus.PAID)
        redis.publish.reset_mock()

        status = await commands.update_status(session, redis, "ORD-1", OrderStatus.PAID)

        assert status == OrderStatus.PAID
        redis.publish.assert_not_awaited()

    async def test_terminal_status_never_changes(self, session, redis, make_payload):
        await commands.create_order_from_payload(session, redis, make_payload())
        await commands.update_status(session, redis, "ORD-1", OrderStatus.PAID)

        with pytest.raises(InvalidStatusTransitionError):
            await commands.update_status(session, redis, "ORD-1", OrderStatus.CANCELED)

        assert await queries.get_order_status(session, "ORD-1") == OrderStatus.PAID

    async def test_cannot_move_back_to_pending(self, session, redis, make_payload):
        await commands.create_order_from_payload(session, redis, make_payload())

        with pytest.raises(ValidationError):
            await commands.update_status(session, redis, "ORD-1", OrderStatus.PENDING)

    async def test_unknown_order(self, session, redis):
        with pytest.raises(NotFoundError):
            await commands.update_status(session, redis, "ORD-404", OrderStatus.PAID)


class TestOrderQueries:
    async def test_list_orders_filters_by_status(self, session, redis, make_payload):
        await commands.create_order_from_payload(session, redis, make_payload(order_id="ORD-A"))
        await commands.create_order_from_payload(session, redis, make_payload(order_id="ORD-B"))
        await commands.update_status(session, redis, "ORD-B", OrderStatus.CANCELED)

        all_orders = await queries.list_orders(session)
        canceled = await queries.list_orders(session, OrderStatus.CANCELED)

        assert {order["id"] for order in all_orders} == {"ORD-A", "ORD-B"}
        assert [order["id"] for order in canceled] == ["ORD-B"]
        assert canceled[0]["payment_status"] == "canceled"

    async def test_missing_order_is_none(self, session):
        assert await queries.get_order(session, "nope") is None
        assert await queries.get_order_status(session, "nope") is None
