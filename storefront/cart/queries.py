"""
Cart — クエリハンドラ
"""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import cart

CENT = Decimal("0.01")


async def get_items(session: AsyncSession, customer_id: str) -> list[dict]:
    """顧客のカート行を返す。"""
    result = await session.execute(
        select(cart).where(cart.c.customer_id == customer_id).order_by(cart.c.product_id)
    )
    return [_row_dict(row) for row in result.fetchall()]


async def get_item(session: AsyncSession, customer_id: str, product_id: str) -> dict | None:
    result = await session.execute(
        select(cart).where(cart.c.customer_id == customer_id, cart.c.product_id == product_id)
    )
    row = result.fetchone()
    return _row_dict(row) if row else None


def _row_dict(row) -> dict:
    return {
        "product_id": row.product_id,
        "quantity": row.quantity,
        "unit_price": str(Decimal(str(row.unit_price)).quantize(CENT)),
        "weight": str(row.weight),
        "subtotal": str(Decimal(str(row.subtotal)).quantize(CENT)),
    }
