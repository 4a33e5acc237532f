"""
Storefront — 設定

環境変数から設定を読み込み、明示的なオブジェクトとして各コンポーネントへ渡す。
ビジネスロジックの中で os.environ を直接読まないことで、
署名コーデックやセッションマネージャを単体でテストできる。

秘密鍵は SecretStr として保持し、ログや repr に平文が出ないようにする。
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, SecretStr


class GatewayConfig(BaseModel):
    """決済ゲートウェイ (ホスト型チェックアウト) の設定"""
    merchant_id: str
    merchant_secret: SecretStr
    currency: str = "LKR"
    checkout_url: str = "https://sandbox.payhere.lk/pay/checkout"
    return_url: str = "http://localhost:8081/payment-complete"
    cancel_url: str = "http://localhost:8081/checkout"
    notify_url: str = "http://localhost:8000/commands/payments/notify"


class SessionRetentionConfig(BaseModel):
    """決済セッションの保持期間"""
    retention_days: int = 30
    sweep_interval_seconds: float = 3600.0


class NotifierConfig(BaseModel):
    """ベストエフォートの副作用 (メール・監査エクスポート) の設定"""
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: SecretStr | None = None
    smtp_start_tls: bool = True
    mail_sender: str = "orders@localhost"
    audit_export_url: str | None = None
    audit_timeout_seconds: float = 10.0


def load_gateway_config(env: Mapping[str, str] = os.environ) -> GatewayConfig:
    """環境変数から GatewayConfig を組み立てる。"""
    return GatewayConfig(
        merchant_id=env["PAYMENT_MERCHANT_ID"],
        merchant_secret=env["PAYMENT_MERCHANT_SECRET"],
        currency=env.get("PAYMENT_CURRENCY", "LKR"),
        checkout_url=env.get(
            "PAYMENT_CHECKOUT_URL", "https://sandbox.payhere.lk/pay/checkout"
        ),
        return_url=env.get(
            "PAYMENT_RETURN_URL", "http://localhost:8081/payment-complete"
        ),
        cancel_url=env.get("PAYMENT_CANCEL_URL", "http://localhost:8081/checkout"),
        notify_url=env.get(
            "PAYMENT_NOTIFY_URL", "http://localhost:8000/commands/payments/notify"
        ),
    )


def load_retention_config(
    env: Mapping[str, str] = os.environ,
) -> SessionRetentionConfig:
    return SessionRetentionConfig(
        retention_days=int(env.get("PAYMENT_SESSION_RETENTION_DAYS", "30")),
        sweep_interval_seconds=float(env.get("PAYMENT_SESSION_SWEEP_SECONDS", "3600")),
    )


def load_notifier_config(env: Mapping[str, str] = os.environ) -> NotifierConfig:
    return NotifierConfig(
        smtp_host=env.get("SMTP_HOST", "localhost"),
        smtp_port=int(env.get("SMTP_PORT", "587")),
        smtp_username=env.get("SMTP_USER") or None,
        smtp_password=env.get("SMTP_PASSWORD") or None,
        smtp_start_tls=env.get("SMTP_START_TLS", "true").lower() == "true",
        mail_sender=env.get("MAIL_SENDER", "orders@localhost"),
        audit_export_url=env.get("AUDIT_EXPORT_URL") or None,
        audit_timeout_seconds=float(env.get("AUDIT_EXPORT_TIMEOUT", "10")),
    )
