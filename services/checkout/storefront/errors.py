"""
Checkout Service — エラー分類

HTTP 層はこの例外を 1 つのハンドラで {"error": kind, "message": ...} に変換する。
kind はクライアントが分岐に使う安定した識別子。
"""


class CheckoutError(Exception):
    kind = "CheckoutError"
    status_code = 500

    def __init__(self, message: str, **extra) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, **self.extra}


class InvalidCart(CheckoutError):
    """入力不正。副作用なし。"""
    kind = "InvalidCart"
    status_code = 400


class InsufficientStock(CheckoutError):
    """いずれかの明細が引き当てられなかった。在庫は一切変化していない。"""
    kind = "InsufficientStock"
    status_code = 409


class PaymentDeclined(CheckoutError):
    """プロバイダが決済を拒否した。注文はキャンセル・在庫は返却済み。"""
    kind = "PaymentDeclined"
    status_code = 402


class PaymentNotApproved(CheckoutError):
    """顧客がまだプロバイダ上で承認していない。注文はそのまま残る。"""
    kind = "PaymentNotApproved"
    status_code = 409


class GatewayUnavailable(CheckoutError):
    """プロバイダ呼び出しの失敗またはタイムアウト。補償は実行済み。"""
    kind = "GatewayUnavailable"
    status_code = 502


class OrderNotFound(CheckoutError):
    kind = "OrderNotFound"
    status_code = 404


class AlreadyCaptured(CheckoutError):
    """既に COMPLETED の注文への再キャプチャ。失敗ではなく冪等な応答。"""
    kind = "AlreadyCaptured"
    status_code = 200

    def __init__(self, order_id: str, capture_id: str | None) -> None:
        super().__init__(
            "Order already captured",
            localOrderId=order_id,
            captureId=capture_id,
            status="COMPLETED",
        )
        self.order_id = order_id
        self.capture_id = capture_id


class SignatureInvalid(CheckoutError):
    kind = "SignatureInvalid"
    status_code = 400


class InternalInconsistency(CheckoutError):
    """台帳とプロバイダの状態が食い違っている。自動修復はしない。"""
    kind = "InternalInconsistency"
    status_code = 500
