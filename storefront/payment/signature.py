"""
Payment — 署名コーデック

ゲートウェイの MD5 ベースの認証トークンを計算・検証する純粋関数。状態を持たない。

  secret_digest = UPPER(MD5(merchant_secret))
  送信 hash     = UPPER(MD5(merchant_id + order_id + amount + currency + secret_digest))
  受信 md5sig   = UPPER(MD5(merchant_id + order_id + amount + currency + status_code + secret_digest))

金額は文字列として連結されるので、必ず小数点以下 2 桁で整形する ("1500.00")。
秘密鍵は絶対にログに出さないこと。
"""

import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation


def md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def format_amount(amount: Decimal | str | int | float) -> str:
    """金額を常に小数点以下 2 桁の文字列にする。"""
    try:
        value = Decimal(str(amount))
        if not value.is_finite():
            raise InvalidOperation
        value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    return str(value)


def build_outbound_hash(
    merchant_id: str,
    order_ref: str,
    amount: Decimal | str,
    currency: str,
    merchant_secret: str,
) -> str:
    """チェックアウト (リダイレクト) 用の hash を計算する。"""
    return md5_upper(
        f"{merchant_id}{order_ref}{format_amount(amount)}{currency}"
        f"{md5_upper(merchant_secret)}"
    )


def build_inbound_signature(
    merchant_id: str,
    order_ref: str,
    gateway_amount: Decimal | str,
    gateway_currency: str,
    status_code: str | int,
    merchant_secret: str,
) -> str:
    """決済通知の md5sig を計算する。"""
    return md5_upper(
        f"{merchant_id}{order_ref}{format_amount(gateway_amount)}{gateway_currency}"
        f"{status_code}{md5_upper(merchant_secret)}"
    )


def verify_inbound_signature(
    merchant_id: str,
    order_ref: str,
    gateway_amount: Decimal | str,
    gateway_currency: str,
    status_code: str | int,
    supplied_token: str,
    merchant_secret: str,
) -> bool:
    """受信した md5sig が再計算した値と一致するか (大文字小文字は区別しない)。"""
    if not supplied_token or not supplied_token.isascii():
        return False
    try:
        expected = build_inbound_signature(
            merchant_id,
            order_ref,
            gateway_amount,
            gateway_currency,
            status_code,
            merchant_secret,
        )
    except ValueError:
        return False
    return hmac.compare_digest(expected, supplied_token.strip().upper())
