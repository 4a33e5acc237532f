"""
Payment notification processor: signature gate, order materialization,
replays and non-success outcomes.
"""

import asyncio
import json
import logging
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from storefront.db import order_items, orders, payment_logs
from storefront.order import commands as order_commands
from storefront.order import queries as order_queries
from storefront.order.aggregate import OrderStatus
from storefront.payment.notifications import NotificationProcessor
from storefront.payment.sessions import PaymentSessionManager
from storefront.payment.signature import build_inbound_signature
from storefront.schemas import OrderItemIn, PaymentMethod

pytestmark = pytest.mark.asyncio

PAID_SIGNATURE = "CCEEBB89DD76CBDEA78166A327BF24CD"


def _notification(
    config, order_id="ORD-1", amount="1500.00", status_code="2", currency="LKR", **overrides
):
    fields = {
        "merchant_id": config.merchant_id,
        "order_id": order_id,
        "payment_id": "320025071278",
        "payhere_amount": amount,
        "payhere_currency": currency,
        "status_code": status_code,
        "md5sig": build_inbound_signature(
            config.merchant_id,
            order_id,
            amount,
            currency,
            status_code,
            config.merchant_secret.get_secret_value(),
        ),
    }
    fields.update(overrides)
    return fields


async def _count(session, table) -> int:
    result = await session.execute(select(func.count()).select_from(table))
    return result.scalar_one()


@pytest.fixture
def processor(gateway_config, redis):
    return NotificationProcessor(gateway_config, redis)


@pytest_asyncio.fixture
async def opened(session, gateway_config, make_payload):
    payload = make_payload()
    await PaymentSessionManager(gateway_config).open_session(session, payload)
    return payload


class TestPaidNotification:
    async def test_happy_path_creates_paid_order(self, session, processor, gateway_config, opened):
        fields = _notification(gateway_config)
        assert fields["md5sig"] == PAID_SIGNATURE

        ack = await processor.handle(session, fields)

        assert (ack.status_code, ack.body, ack.outcome) == (200, "OK", "created")
        agg = await order_queries.get_order(session, "ORD-1")
        assert agg.status == OrderStatus.PAID
        assert agg.payment_reference == "320025071278"
        assert len(agg.items) == 1
        assert str(agg.total_amount) == "1500.00"

    async def test_replay_creates_exactly_one_order(self, session, processor, gateway_config, opened):
        fields = _notification(gateway_config)

        first = await processor.handle(session, fields)
        second = await processor.handle(session, fields)

        assert first.outcome == "created"
        assert (second.status_code, second.outcome) == (200, "duplicate")
        assert await _count(session, orders) == 1
        assert await _count(session, order_items) == 1

    async def test_paid_moves_existing_pending_order(
        self, session, redis, processor, gateway_config, opened
    ):
        await order_commands.create_order_from_payload(session, redis, opened)

        ack = await processor.handle(session, _notification(gateway_config))

        assert ack.outcome == "paid"
        assert await order_queries.get_order_status(session, "ORD-1") == OrderStatus.PAID

    async def test_concurrent_deliveries_create_one_order(
        self, session, session_factory, gateway_config, redis, opened
    ):
        fields = _notification(gateway_config)
        processor = NotificationProcessor(gateway_config, redis)

        async def deliver():
            async with session_factory() as own_session:
                return await processor.handle(own_session, fields)

        acks = await asyncio.gather(deliver(), deliver())

        assert all(ack.status_code == 200 for ack in acks)
        assert sorted(ack.outcome for ack in acks) == ["created", "duplicate"]
        assert await _count(session, orders) == 1
        assert await _count(session, order_items) == 1

    async def test_lowercase_signature_accepted(self, session, processor, gateway_config, opened):
        ack = await processor.handle(
            session, _notification(gateway_config, md5sig=PAID_SIGNATURE.lower())
        )
        assert ack.outcome == "created"


class TestRejectedNotification:
    async def test_tampered_amount_creates_nothing(
        self, session, processor, gateway_config, opened, caplog
    ):
        fields = _notification(gateway_config, payhere_amount="1.00")

        with caplog.at_level(logging.WARNING):
            ack = await processor.handle(session, fields)

        assert (ack.status_code, ack.body) == (403, "Invalid signature")
        assert await _count(session, orders) == 0
        assert await _count(session, payment_logs) == 0
        assert "MERCHANT-SECRET" not in caplog.text

    async def test_foreign_merchant_id_is_ignored_for_verification(
        self, session, processor, gateway_config, opened
    ):
        fields = _notification(gateway_config, merchant_id="9999999")

        ack = await processor.handle(session, fields)

        assert ack.outcome == "created"

    async def test_amount_differing_from_session_creates_nothing(
        self, session, processor, gateway_config, opened, make_payload
    ):
        bigger_cart = make_payload(
            items=[
                OrderItemIn(
                    product_id="SKU-9", name="Gift Box", price=Decimal("99999.00"), quantity=1
                )
            ]
        )
        await PaymentSessionManager(gateway_config).open_session(session, bigger_cart)

        ack = await processor.handle(session, _notification(gateway_config, amount="1500.00"))

        assert (ack.status_code, ack.body, ack.outcome) == (200, "OK", "amount_mismatch")
        assert await _count(session, orders) == 0
        rows = (await session.execute(select(payment_logs))).fetchall()
        assert [(row.status, row.amount) for row in rows] == [("AMOUNT_MISMATCH", "1500.00")]

    async def test_currency_differing_from_config_creates_nothing(
        self, session, processor, gateway_config, opened
    ):
        ack = await processor.handle(session, _notification(gateway_config, currency="USD"))

        assert ack.outcome == "amount_mismatch"
        assert await _count(session, orders) == 0

    async def test_overlong_payment_id_is_malformed(self, session, processor, gateway_config):
        ack = await processor.handle(
            session, _notification(gateway_config, payment_id="9" * 65)
        )

        assert (ack.status_code, ack.outcome) == (400, "malformed")

    async def test_unknown_session_acknowledged(self, session, processor, gateway_config):
        ack = await processor.handle(session, _notification(gateway_config, order_id="ORD-GONE"))

        assert (ack.status_code, ack.body) == (200, "Session not found")
        assert await _count(session, orders) == 0

    async def test_malformed_notification(self, session, processor):
        ack = await processor.handle(session, {"order_id": "ORD-1"})

        assert (ack.status_code, ack.outcome) == (400, "malformed")


class TestNonSuccessOutcomes:
    @pytest.mark.parametrize(
        "code, status", [("-1", "CANCELED"), ("-2", "CANCELED"), ("-3", "CHARGED_BACK")]
    )
    async def test_failure_logged_without_order(
        self, session, processor, gateway_config, opened, code, status
    ):
        ack = await processor.handle(session, _notification(gateway_config, status_code=code))

        assert ack.status_code == 200
        assert await _count(session, orders) == 0
        rows = (await session.execute(select(payment_logs))).fetchall()
        assert len(rows) == 1
        assert rows[0].status == status
        assert rows[0].order_id == "ORD-1"
        assert json.loads(rows[0].raw_payload)["status_code"] == code

    async def test_cancel_moves_pending_order(
        self, session, redis, processor, gateway_config, make_payload
    ):
        payload = make_payload(payment_method=PaymentMethod.GATEWAY_REDIRECT)
        await PaymentSessionManager(gateway_config).open_session(session, payload)
        await order_commands.create_order_from_payload(session, redis, payload)

        ack = await processor.handle(session, _notification(gateway_config, status_code="-1"))

        assert ack.outcome == "canceled"
        assert await order_queries.get_order_status(session, "ORD-1") == OrderStatus.CANCELED

    async def test_cancel_after_paid_leaves_order_paid(
        self, session, processor, gateway_config, opened
    ):
        await processor.handle(session, _notification(gateway_config))

        await processor.handle(session, _notification(gateway_config, status_code="-1"))

        assert await order_queries.get_order_status(session, "ORD-1") == OrderStatus.PAID
        assert await _count(session, payment_logs) == 1

    @pytest.mark.parametrize("code", ["0", "7"])
    async def test_pending_and_unknown_codes_do_nothing(
        self, session, processor, gateway_config, opened, code
    ):
        ack = await processor.handle(session, _notification(gateway_config, status_code=code))

        assert (ack.status_code, ack.outcome) == (200, "pending")
        assert await _count(session, orders) == 0
        assert await _count(session, payment_logs) == 0
