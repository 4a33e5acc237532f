"""
Storefront — エラー分類

  ValidationError              リクエスト不正。永続化の前に拒否する
  NotFoundError                注文・セッション・カート行が存在しない
  ConflictError                一意制約や状態遷移の衝突
  AuthenticationError          Webhook 署名の不一致 (セキュリティイベント)
  TransientInfrastructureError DB やネットワークの一時障害。ゲートウェイに再送させる
  BestEffortFailure            メール・監査エクスポートの失敗。呼び出し元には伝播しない
"""


class ShopError(Exception):
    """ストアフロントのドメインエラーの基底クラス"""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ShopError):
    status_code = 400


class NotFoundError(ShopError):
    status_code = 404


class ConflictError(ShopError):
    status_code = 409


class DuplicateOrderError(ConflictError):
    """同じ注文参照の注文が既に存在する"""

    def __init__(self, order_ref: str) -> None:
        super().__init__(f"Order already exists: {order_ref}")
        self.order_ref = order_ref


class InvalidStatusTransitionError(ConflictError):
    """終端状態からの遷移など、許可されていない状態遷移"""

    def __init__(self, order_ref: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move order {order_ref} from {current} to {target}"
        )
        self.order_ref = order_ref
        self.current = current
        self.target = target


class AuthenticationError(ShopError):
    status_code = 403


class TransientInfrastructureError(ShopError):
    status_code = 503


class BestEffortFailure(ShopError):
    pass
