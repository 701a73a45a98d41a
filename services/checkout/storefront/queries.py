"""
Checkout Service — クエリハンドラ (Read 側)

カタログ表示・注文履歴・累計購入額の照会。状態は変更しない。
金額は "1000.00" 形式の文字列で返す。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .cart import format_amount
from .db import customer_spend, inventory_slots, order_lines, orders, transactions


def _slot_dict(row) -> dict:
    return {
        "productCode": row.product_code,
        "size": row.size,
        "name": row.name,
        "stock": row.stock,
        "active": row.active,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_slot(session: AsyncSession, product_code: str, size: str) -> dict | None:
    result = await session.execute(
        select(inventory_slots).where(
            inventory_slots.c.product_code == product_code,
            inventory_slots.c.size == size,
        )
    )
    row = result.first()
    if not row:
        return None
    return _slot_dict(row)


async def list_slots(session: AsyncSession, available_only: bool = False) -> list[dict]:
    stmt = select(inventory_slots).order_by(
        inventory_slots.c.product_code, inventory_slots.c.size
    )
    if available_only:
        stmt = stmt.where(inventory_slots.c.active.is_(True), inventory_slots.c.stock > 0)
    result = await session.execute(stmt)
    return [_slot_dict(row) for row in result.fetchall()]


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.first()
    if not row:
        return None

    lines = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id == order_id)
        .order_by(order_lines.c.id)
    )
    txns = await session.execute(
        select(transactions)
        .where(transactions.c.order_id == order_id)
        .order_by(transactions.c.id)
    )
    order = _order_dict(row)
    order["lines"] = [
        {
            "productCode": line.product_code,
            "size": line.size,
            "name": line.name,
            "quantity": line.quantity,
            "unitPrice": format_amount(line.unit_price_cents),
        }
        for line in lines.fetchall()
    ]
    order["transactions"] = [
        {
            "provider": t.provider,
            "providerOrderId": t.provider_order_id,
            "captureId": t.capture_id,
            "amount": format_amount(t.amount_cents),
            "status": t.status,
            "createdAt": t.created_at.isoformat() if t.created_at else None,
        }
        for t in txns.fetchall()
    ]
    return order


async def list_orders_for_owner(session: AsyncSession, owner_id: str) -> list[dict]:
    """顧客の注文履歴 (新しい順)"""
    result = await session.execute(
        select(orders)
        .where(orders.c.owner_id == owner_id)
        .order_by(orders.c.created_at.desc())
    )
    return [_order_dict(row) for row in result.fetchall()]


async def get_spend(session: AsyncSession, owner_id: str) -> dict:
    result = await session.execute(
        select(customer_spend).where(customer_spend.c.owner_id == owner_id)
    )
    row = result.first()
    return {
        "ownerId": owner_id,
        "totalSpent": format_amount(row.total_spent_cents if row else 0),
    }


def _order_dict(row) -> dict:
    return {
        "id": row.id,
        "ownerId": row.owner_id,
        "total": format_amount(row.total_cents),
        "currency": row.currency,
        "status": row.status,
        "providerOrderId": row.provider_order_id,
        "cancelReason": row.cancel_reason,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }
