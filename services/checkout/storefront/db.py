"""
Checkout Service — データベース定義

在庫・注文・決済トランザクションを単一のリレーショナルストアに置く。
チェックアウトの整合性はこのストアのトランザクション境界で担保する。

  inventory_slots   商品×サイズごとの在庫数 (条件付き減算のみで更新)
  orders            注文 (status が状態機械を駆動する)
  order_lines       注文明細 (注文と同一トランザクションで作成、以後不変)
  transactions      決済プロバイダ側の注文に対応する決済記録
  customer_spend    顧客ごとの累計購入額
  webhook_events    処理済み Webhook イベント ID
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

metadata = MetaData()


inventory_slots = Table(
    "inventory_slots",
    metadata,
    Column("product_code", String(64), primary_key=True),
    Column("size", String(16), primary_key=True),
    Column("name", String(200), nullable=False, default=""),
    Column("stock", Integer, nullable=False, default=0),
    Column("active", Boolean, nullable=False, default=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("stock >= 0", name="ck_inventory_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("owner_id", String(64), nullable=False, index=True),
    Column("total_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("provider_order_id", String(64), nullable=True, unique=True),
    Column("cancel_reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_code", String(64), nullable=False),
    Column("size", String(16), nullable=False),
    Column("name", String(200), nullable=False, default=""),
    Column("quantity", Integer, nullable=False),
    Column("unit_price_cents", Integer, nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_line_quantity_positive"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("owner_id", String(64), nullable=False),
    Column("amount_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("provider", String(20), nullable=False),
    Column("provider_order_id", String(64), nullable=False, index=True),
    Column("capture_id", String(64), nullable=True),
    Column("status", String(20), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

customer_spend = Table(
    "customer_spend",
    metadata,
    Column("owner_id", String(64), primary_key=True),
    Column("total_spent_cents", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

webhook_events = Table(
    "webhook_events",
    metadata,
    Column("event_id", String(64), primary_key=True),
    Column("event_type", String(64), nullable=False),
    Column("resource_id", String(64), nullable=True),
    Column("received_at", DateTime(timezone=True), nullable=False),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """未作成のテーブルだけを作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
