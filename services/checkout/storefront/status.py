"""
Checkout Service — 注文の状態機械

状態遷移:
    PENDING ──(プロバイダ注文作成 成功)──▶ PENDING_PAYMENT
    PENDING ──(プロバイダ注文作成 失敗 / 放置)──▶ CANCELLED
    PENDING_PAYMENT ──(キャプチャ / Webhook 成功)──▶ COMPLETED
    PENDING_PAYMENT ──(キャプチャ / Webhook 失敗, 明示キャンセル, 放置)──▶ CANCELLED

COMPLETED と CANCELLED は終端状態。終端状態への再遷移はエラーではなく
現在の状態を返す no-op として扱う。

遷移は常に「期待する直前状態」を WHERE 句に含む条件付き UPDATE で行い、
更新件数が 1 の呼び出し元だけが副作用を適用する。
"""


class OrderStatus:
    PENDING = "PENDING"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    TERMINAL = frozenset({COMPLETED, CANCELLED})
    # キャンセル（補償）可能な状態
    CANCELLABLE = (PENDING, PENDING_PAYMENT)


class TransactionStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
