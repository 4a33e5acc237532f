"""
Shared fixtures: a throwaway SQLite database per test, a mocked Redis
connection and gateway credentials matching the published test vectors.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event

from storefront.config import GatewayConfig
from storefront.db import init_db, make_engine, make_session_factory
from storefront.schemas import (
    Address,
    CustomerInfo,
    OrderItemIn,
    OrderPayload,
    PaymentMethod,
)

MERCHANT_ID = "1211149"
MERCHANT_SECRET = "MERCHANT-SECRET"


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    return AsyncMock()


@pytest.fixture
def gateway_config():
    return GatewayConfig(
        merchant_id=MERCHANT_ID,
        merchant_secret=MERCHANT_SECRET,
        checkout_url="https://sandbox.example.test/pay/checkout",
        return_url="https://shop.example.test/payment-complete",
        cancel_url="https://shop.example.test/checkout",
        notify_url="https://api.example.test/commands/payments/notify",
    )


def build_address(**overrides) -> Address:
    defaults = {
        "street1": "12 Galle Road",
        "city": "Colombo",
        "postal_code": "00300",
        "country": "Sri Lanka",
    }
    defaults.update(overrides)
    return Address(**defaults)


def build_customer(**overrides) -> CustomerInfo:
    defaults = {
        "first_name": "Nimal",
        "last_name": "Perera",
        "email": "nimal@example.com",
        "phone": "+94771234567",
    }
    defaults.update(overrides)
    return CustomerInfo(**defaults)


@pytest.fixture
def make_payload():
    """Factory for order payloads. The amount always matches the items."""

    def _make(
        order_id: str = "ORD-1",
        items: list[OrderItemIn] | None = None,
        customer_id: str | None = None,
        payment_method: PaymentMethod = PaymentMethod.GATEWAY_REDIRECT,
    ) -> OrderPayload:
        if items is None:
            items = [
                OrderItemIn(
                    product_id="SKU-1", name="Ceylon Tea", price=Decimal("1500.00"), quantity=1
                )
            ]
        amount = sum((item.price * item.quantity for item in items), Decimal("0"))
        return OrderPayload(
            order_id=order_id,
            customer=build_customer(customer_id=customer_id),
            shipping_address=build_address(),
            billing_address=build_address(street1="1 Temple Road", city="Kandy"),
            items=items,
            amount=amount,
            payment_method=payment_method,
        )

    return _make


@pytest_asyncio.fixture
async def client(session_factory, redis, gateway_config):
    """API client wired to the test database, mocked Redis and test credentials."""
    from storefront import main

    async def _session():
        async with session_factory() as session:
            yield session

    main.app.dependency_overrides[main.get_session] = _session
    main.app.dependency_overrides[main.get_redis] = lambda: redis
    main.app.dependency_overrides[main.get_gateway_config] = lambda: gateway_config
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    main.app.dependency_overrides.clear()
