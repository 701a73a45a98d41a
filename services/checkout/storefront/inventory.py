"""
Checkout Service — 在庫コマンド (引き当て / 解放)

引き当ては「読んでから書く」ではなく条件付き減算で行う:

    UPDATE inventory_slots SET stock = stock - :qty
    WHERE product_code = :code AND size = :size AND active AND stock >= :qty

更新件数が 1 のときだけ、その明細を引き当て済みとみなす。
同じ商品・サイズへの同時チェックアウトはストアの行ロックだけで直列化され、
在庫が負になることはない（クランプせず拒否する）。

どちらの関数も呼び出し元のトランザクション内で動き、commit はしない。
解放は注文の CANCELLED への条件付き遷移と同じトランザクションで行うため、
1 つの引き当てに対する解放は高々 1 回になる。
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .cart import PricedLine
from .db import inventory_slots, utcnow
from .errors import InsufficientStock, InternalInconsistency

logger = logging.getLogger(__name__)


async def reserve_lines(session: AsyncSession, lines: list[PricedLine]) -> None:
    """
    全明細を引き当てる。

    1 明細でも失敗したら InsufficientStock を送出する。呼び出し元の
    トランザクションがロールバックされ、先に減算した明細も元に戻る。
    """
    now = utcnow()
    for line in lines:
        result = await session.execute(
            update(inventory_slots)
            .where(
                inventory_slots.c.product_code == line.product_code,
                inventory_slots.c.size == line.size,
                inventory_slots.c.active.is_(True),
                inventory_slots.c.stock >= line.quantity,
            )
            .values(stock=inventory_slots.c.stock - line.quantity, updated_at=now)
        )
        if result.rowcount != 1:
            raise await _refusal(session, line)


async def release_lines(session: AsyncSession, lines: list[PricedLine]) -> None:
    """引き当て済みの在庫を戻す（補償トランザクション）。"""
    now = utcnow()
    for line in lines:
        result = await session.execute(
            update(inventory_slots)
            .where(
                inventory_slots.c.product_code == line.product_code,
                inventory_slots.c.size == line.size,
            )
            .values(stock=inventory_slots.c.stock + line.quantity, updated_at=now)
        )
        if result.rowcount != 1:
            logger.error(
                "Cannot release %s x %s/%s: inventory slot is missing",
                line.quantity,
                line.product_code,
                line.size,
            )
            raise InternalInconsistency(
                "Inventory slot referenced by order line is missing",
                productCode=line.product_code,
                size=line.size,
            )


async def upsert_slot(
    session: AsyncSession,
    product_code: str,
    size: str,
    stock: int,
    active: bool = True,
    name: str = "",
) -> None:
    """在庫数を絶対値で設定する（入荷・棚卸し用）。"""
    now = utcnow()
    result = await session.execute(
        update(inventory_slots)
        .where(
            inventory_slots.c.product_code == product_code,
            inventory_slots.c.size == size,
        )
        .values(stock=stock, active=active, name=name, updated_at=now)
    )
    if result.rowcount == 0:
        await session.execute(
            inventory_slots.insert().values(
                product_code=product_code,
                size=size,
                name=name,
                stock=stock,
                active=active,
                updated_at=now,
            )
        )


async def _refusal(session: AsyncSession, line: PricedLine) -> InsufficientStock:
    result = await session.execute(
        select(inventory_slots.c.stock, inventory_slots.c.active).where(
            inventory_slots.c.product_code == line.product_code,
            inventory_slots.c.size == line.size,
        )
    )
    row = result.first()
    detail = {
        "productCode": line.product_code,
        "size": line.size,
        "requested": line.quantity,
    }
    if row is None:
        return InsufficientStock(
            f"Product {line.product_code} size {line.size} not available", **detail
        )
    if not row.active:
        return InsufficientStock(
            f"Product {line.product_code} size {line.size} is not active", **detail
        )
    return InsufficientStock(
        f"Insufficient stock for {line.product_code} size {line.size}",
        available=row.stock,
        **detail,
    )
