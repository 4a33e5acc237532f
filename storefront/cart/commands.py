"""
Cart — コマンドハンドラ

カートは「顧客がいま買おうとしているもの」だけを持つ。1 商品 (バリアント) につき 1 行。

remove_ordered (注文済み商品の差し引き) は読み取り → 計算 → 書き込みをせず、
条件付きの DELETE / UPDATE 1 文ずつで行うので、顧客のカート操作と並行しても
数量が負になることはない。同じ注文で 2 回呼ばれても 2 回目は何もしない
(cart_reconciliations の主キー制約で検知する)。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import cart, cart_reconciliations, upsert
from ..errors import NotFoundError
from ..schemas import CartItemIn, OrderedItem
from .reconcile import merge_ordered_items

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


async def add_item(session: AsyncSession, customer_id: str, item: CartItemIn) -> None:
    """
    カートに商品を追加する。既にあれば数量を加算し、単価は最新の値で置き換える。
    """
    now = datetime.now(timezone.utc)
    stmt = upsert(session, cart).values(
        customer_id=customer_id,
        product_id=item.product_id,
        quantity=item.quantity,
        unit_price=item.unit_price,
        weight=item.weight,
        subtotal=(item.unit_price * item.quantity).quantize(CENT),
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[cart.c.customer_id, cart.c.product_id],
        set_={
            "quantity": cart.c.quantity + stmt.excluded.quantity,
            "unit_price": stmt.excluded.unit_price,
            "weight": stmt.excluded.weight,
            "subtotal": (cart.c.quantity + stmt.excluded.quantity) * stmt.excluded.unit_price,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await _execute_and_commit(session, stmt)


async def update_quantity(
    session: AsyncSession, customer_id: str, product_id: str, quantity: int
) -> None:
    """数量を上書きし、小計をカートの単価で再計算する。"""
    result = await _execute_and_commit(
        session,
        update(cart)
        .where(cart.c.customer_id == customer_id, cart.c.product_id == product_id)
        .values(
            quantity=quantity,
            subtotal=cart.c.unit_price * quantity,
            updated_at=datetime.now(timezone.utc),
        ),
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Cart item not found: {product_id}")


async def remove_item(session: AsyncSession, customer_id: str, product_id: str) -> None:
    result = await _execute_and_commit(
        session,
        delete(cart).where(cart.c.customer_id == customer_id, cart.c.product_id == product_id),
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Cart item not found: {product_id}")


async def clear(session: AsyncSession, customer_id: str) -> int:
    result = await _execute_and_commit(
        session, delete(cart).where(cart.c.customer_id == customer_id)
    )
    return result.rowcount


async def sync(session: AsyncSession, customer_id: str, items: Iterable[CartItemIn]) -> None:
    """
    カート全体を置き換える (ログイン時にゲストカートを顧客カートへ移すときに使う)。
    同じ商品の行は数量をまとめる。削除と挿入は 1 トランザクション。
    """
    merged: dict[str, CartItemIn] = {}
    for item in items:
        if item.product_id in merged:
            previous = merged[item.product_id]
            merged[item.product_id] = item.model_copy(
                update={"quantity": previous.quantity + item.quantity}
            )
        else:
            merged[item.product_id] = item

    now = datetime.now(timezone.utc)
    try:
        await session.execute(delete(cart).where(cart.c.customer_id == customer_id))
        for item in merged.values():
            await session.execute(
                insert(cart).values(
                    customer_id=customer_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    weight=item.weight,
                    subtotal=(item.unit_price * item.quantity).quantize(CENT),
                    updated_at=now,
                )
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise


async def remove_ordered(
    session: AsyncSession,
    customer_id: str,
    order_ref: str,
    ordered_items: Iterable[OrderedItem],
) -> bool:
    """
    注文済み商品をカートから差し引く。

    1. (customer_id, order_ref) の記録行を INSERT。一意制約違反なら適用済みなので何もしない
    2. 商品ごとに
         カート数量 <= 注文数量 → DELETE
         それ以外で行があれば  → 数量を減らし、小計をカート自身の単価で再計算
    3. COMMIT

    差し引きを行ったら True、適用済みだったら False を返す。
    """
    now = datetime.now(timezone.utc)
    try:
        try:
            await session.execute(
                insert(cart_reconciliations).values(
                    customer_id=customer_id, order_id=order_ref, created_at=now
                )
            )
        except IntegrityError:
            await session.rollback()
            logger.info("Cart of %s already reconciled for order %s", customer_id, order_ref)
            return False

        for product_id, ordered_quantity in merge_ordered_items(ordered_items).items():
            row_filter = (cart.c.customer_id == customer_id, cart.c.product_id == product_id)
            removed = await session.execute(
                delete(cart).where(*row_filter, cart.c.quantity <= ordered_quantity)
            )
            if removed.rowcount:
                continue
            await session.execute(
                update(cart)
                .where(*row_filter, cart.c.quantity > ordered_quantity)
                .values(
                    quantity=cart.c.quantity - ordered_quantity,
                    subtotal=(cart.c.quantity - ordered_quantity) * cart.c.unit_price,
                    updated_at=now,
                )
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Reconciled cart of %s against order %s", customer_id, order_ref)
    return True


async def purge_reconciliations(session: AsyncSession, before: datetime) -> int:
    """before より前に記録された差し引き済みマーカーを削除し、件数を返す。"""
    result = await _execute_and_commit(
        session,
        delete(cart_reconciliations).where(cart_reconciliations.c.created_at < before),
    )
    if result.rowcount:
        logger.info("Purged %d cart reconciliation markers", result.rowcount)
    return result.rowcount


async def _execute_and_commit(session: AsyncSession, stmt):
    try:
        result = await session.execute(stmt)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return result
