"""
Order — クエリハンドラ (CQRS の Read 側)

注文・顧客リンク・住所・明細を読み出して集約を組み立てる。
作成は 1 トランザクションでコミットされるので、注文行が見えれば集約全体も見える。
"""

from collections import defaultdict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import customer_orders, guest_customers, order_addresses, order_items, orders
from .aggregate import OrderAggregate, OrderStatus


async def get_order_status(session: AsyncSession, order_ref: str) -> OrderStatus | None:
    result = await session.execute(
        select(orders.c.status).where(orders.c.id == order_ref)
    )
    status = result.scalar_one_or_none()
    return OrderStatus(status) if status is not None else None


async def get_order(session: AsyncSession, order_ref: str) -> OrderAggregate | None:
    """注文集約を 1 件取得する。"""
    result = await session.execute(select(orders).where(orders.c.id == order_ref))
    row = result.fetchone()
    if not row:
        return None
    aggregates = await _load_aggregates(session, [row])
    return aggregates[0]


async def list_orders(
    session: AsyncSession, status: OrderStatus | None = None
) -> list[dict]:
    """注文一覧を新しい順に返す。status を指定すると絞り込む。"""
    stmt = select(orders).order_by(orders.c.created_at.desc())
    if status is not None:
        stmt = stmt.where(orders.c.status == OrderStatus(status).value)
    result = await session.execute(stmt)
    return [agg.to_dict() for agg in await _load_aggregates(session, result.fetchall())]


async def list_customer_orders(session: AsyncSession, customer_id: str) -> list[dict]:
    """登録顧客の注文履歴 (明細付き)。"""
    result = await session.execute(
        select(orders)
        .join(customer_orders, customer_orders.c.order_id == orders.c.id)
        .where(customer_orders.c.customer_id == customer_id)
        .order_by(orders.c.created_at.desc())
    )
    return [agg.to_dict() for agg in await _load_aggregates(session, result.fetchall())]


async def _load_aggregates(session: AsyncSession, order_rows: list) -> list[OrderAggregate]:
    if not order_rows:
        return []
    ids = [row.id for row in order_rows]

    guests = {
        row.order_id: row
        for row in (
            await session.execute(
                select(guest_customers).where(guest_customers.c.order_id.in_(ids))
            )
        ).fetchall()
    }
    accounts = {
        row.order_id: row.customer_id
        for row in (
            await session.execute(
                select(customer_orders).where(customer_orders.c.order_id.in_(ids))
            )
        ).fetchall()
    }

    addresses = defaultdict(list)
    for row in (
        await session.execute(
            select(order_addresses).where(order_addresses.c.order_id.in_(ids))
        )
    ).fetchall():
        addresses[row.order_id].append(row)

    items = defaultdict(list)
    for row in (
        await session.execute(
            select(order_items)
            .where(order_items.c.order_id.in_(ids))
            .order_by(order_items.c.id)
        )
    ).fetchall():
        items[row.order_id].append(row)

    return [
        OrderAggregate.from_rows(
            row,
            _customer_dict(guests.get(row.id), accounts.get(row.id)),
            addresses[row.id],
            items[row.id],
        )
        for row in order_rows
    ]


def _customer_dict(guest, customer_id: str | None) -> dict:
    if guest is not None:
        return {
            "first_name": guest.first_name,
            "last_name": guest.last_name,
            "email": guest.email,
            "phone": guest.phone,
            "company": guest.company,
            "customer_id": None,
        }
    return {"customer_id": customer_id}
