"""
Checkout Service — イベント定義

コミット済みの状態変更を他サービスへ通知するためのイベント。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime

from pydantic import BaseModel


class ReservedLine(BaseModel):
    product_code: str
    size: str
    quantity: int


class InventoryReserved(BaseModel):
    """在庫が引き当てられた（チェックアウト開始時）"""
    order_id: str
    lines: list[ReservedLine]
    timestamp: datetime


class InventoryReleased(BaseModel):
    """引き当て済み在庫が戻された（補償トランザクション）"""
    order_id: str
    lines: list[ReservedLine]
    reason: str
    timestamp: datetime


class OrderCreated(BaseModel):
    """注文が PENDING で作成された"""
    order_id: str
    owner_id: str
    total_cents: int
    currency: str
    timestamp: datetime


class OrderAwaitingPayment(BaseModel):
    """プロバイダ側の注文が作成され、顧客の承認待ちになった"""
    order_id: str
    provider_order_id: str
    timestamp: datetime


class OrderCompleted(BaseModel):
    """決済がキャプチャされ注文が確定した"""
    order_id: str
    owner_id: str
    provider_order_id: str | None
    capture_id: str | None
    total_cents: int
    source: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた"""
    order_id: str
    reason: str
    source: str
    timestamp: datetime
