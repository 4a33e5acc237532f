"""
Notifier — 注文確認メール

aiosmtplib で SMTP サーバへ直接送信する。失敗は呼び出し側 (handlers) でログに残すだけ。
"""

import logging
from email.message import EmailMessage

import aiosmtplib

from ..config import NotifierConfig

logger = logging.getLogger(__name__)


def build_order_confirmation(sender: str, order: dict) -> EmailMessage:
    """OrderCreated イベントのデータから確認メールを組み立てる。"""
    lines = [
        f"Dear {order['customer_name']},",
        "",
        f"Thank you for your order {order['order_id']}.",
        "",
    ]
    for item in order.get("items", []):
        lines.append(f"  {item['name']} x {item['quantity']}  {item['price']}")
    lines += [
        "",
        f"Total: {order['total_amount']}",
        f"Payment: {order['payment_method']} ({order['status']})",
    ]
    shipping = order.get("shipping_address") or {}
    if shipping:
        lines += [
            "",
            "Shipping to:",
            f"  {shipping.get('street1', '')}",
            f"  {shipping.get('city', '')}, {shipping.get('country', '')}",
        ]

    message = EmailMessage()
    message["From"] = sender
    message["To"] = order["customer_email"]
    message["Subject"] = f"Order confirmation #{order['order_id']}"
    message.set_content("\n".join(lines))
    return message


async def send_order_confirmation(config: NotifierConfig, order: dict) -> None:
    message = build_order_confirmation(config.mail_sender, order)
    await aiosmtplib.send(
        message,
        hostname=config.smtp_host,
        port=config.smtp_port,
        username=config.smtp_username,
        password=(
            config.smtp_password.get_secret_value() if config.smtp_password else None
        ),
        start_tls=config.smtp_start_tls,
    )
    logger.info("Sent order confirmation for %s", order["order_id"])
