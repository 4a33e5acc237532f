"""
Notifier — 監査エクスポート

注文 1 件を 1 行として外部の表計算エンドポイントへ POST する。
AUDIT_EXPORT_URL が未設定なら何もしない。
"""

import logging

import httpx

from ..config import NotifierConfig
from ..errors import BestEffortFailure

logger = logging.getLogger(__name__)


def order_row(order: dict) -> dict:
    return {
        "order_id": order["order_id"],
        "timestamp": order["timestamp"],
        "customer_name": order["customer_name"],
        "customer_email": order["customer_email"],
        "is_guest_order": order["is_guest_order"],
        "status": order["status"],
        "payment_method": order["payment_method"],
        "total_amount": order["total_amount"],
        "items": ", ".join(
            f"{item['name']} x {item['quantity']}" for item in order.get("items", [])
        ),
    }


async def append_order_row(config: NotifierConfig, order: dict) -> bool:
    """エクスポートしたら True、エクスポート先が未設定なら False。"""
    if not config.audit_export_url:
        logger.debug("Audit export disabled, skipping %s", order["order_id"])
        return False
    async with httpx.AsyncClient(timeout=config.audit_timeout_seconds) as client:
        resp = await client.post(config.audit_export_url, json=order_row(order))
    if resp.is_error:
        raise BestEffortFailure(
            f"Audit export rejected order {order['order_id']}: HTTP {resp.status_code}"
        )
    logger.info("Exported order %s to audit sheet", order["order_id"])
    return True
