"""
Checkout Service — 注文台帳コマンド (Write 側)

注文・明細・決済トランザクション・累計購入額を更新する。
すべての関数は呼び出し元のトランザクション内で動き、commit はしない。

状態遷移は transition() の条件付き UPDATE に集約する。
キャプチャと Webhook が同じ注文を同時に確定しようとしても、
更新件数 1 を得た側だけが後続の副作用 (決済記録・累計額加算) を適用する。
"""

from sqlalchemy import Row, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .cart import PricedLine, cart_total_cents
from .db import customer_spend, order_lines, orders, transactions, utcnow
from .status import OrderStatus, TransactionStatus

PROVIDER = "PAYPAL"


async def insert_order(
    session: AsyncSession,
    order_id: str,
    owner_id: str,
    lines: list[PricedLine],
    currency: str,
) -> int:
    """
    注文 (PENDING) と明細を作成し、合計金額 (centavos) を返す。

    単価はカートのスナップショットから固定する。
    """
    now = utcnow()
    total = cart_total_cents(lines)
    await session.execute(
        orders.insert().values(
            id=order_id,
            owner_id=owner_id,
            total_cents=total,
            currency=currency,
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
    )
    await session.execute(
        order_lines.insert(),
        [
            {
                "order_id": order_id,
                "product_code": line.product_code,
                "size": line.size,
                "name": line.name,
                "quantity": line.quantity,
                "unit_price_cents": line.unit_price_cents,
            }
            for line in lines
        ],
    )
    return total


async def transition(
    session: AsyncSession,
    order_id: str,
    expected: tuple[str, ...],
    new_status: str,
    **values,
) -> bool:
    """注文が expected のいずれかの状態にある場合だけ new_status へ遷移させる。"""
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.status.in_(expected))
        .values(status=new_status, updated_at=utcnow(), **values)
    )
    return result.rowcount == 1


async def open_transaction(
    session: AsyncSession,
    order: Row,
    provider_order_id: str,
) -> None:
    now = utcnow()
    await session.execute(
        transactions.insert().values(
            order_id=order.id,
            owner_id=order.owner_id,
            amount_cents=order.total_cents,
            currency=order.currency,
            provider=PROVIDER,
            provider_order_id=provider_order_id,
            status=TransactionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
    )


async def settle_transaction(
    session: AsyncSession,
    order_id: str,
    status: str,
    capture_id: str | None = None,
) -> int:
    """保留中の決済トランザクションを確定またはキャンセルし、更新件数を返す。"""
    values = {"status": status, "updated_at": utcnow()}
    if capture_id is not None:
        values["capture_id"] = capture_id
    result = await session.execute(
        update(transactions)
        .where(
            transactions.c.order_id == order_id,
            transactions.c.status == TransactionStatus.PENDING,
        )
        .values(**values)
    )
    return result.rowcount


async def credit_spend(session: AsyncSession, owner_id: str, amount_cents: int) -> None:
    """顧客の累計購入額に加算する (UPSERT)。"""
    now = utcnow()
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(customer_spend)
    elif dialect == "sqlite":
        stmt = sqlite.insert(customer_spend)
    else:
        raise NotImplementedError(f"Unsupported database dialect: {dialect}")

    stmt = stmt.values(owner_id=owner_id, total_spent_cents=amount_cents, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=[customer_spend.c.owner_id],
        set_={
            "total_spent_cents": customer_spend.c.total_spent_cents + amount_cents,
            "updated_at": now,
        },
    )
    await session.execute(stmt)


async def get_order_row(session: AsyncSession, order_id: str) -> Row | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    return result.first()


async def get_order_row_by_provider_id(
    session: AsyncSession, provider_order_id: str
) -> Row | None:
    """プロバイダ注文 ID からローカル注文を引く。決済記録も併せて確認する。"""
    result = await session.execute(
        select(orders).where(orders.c.provider_order_id == provider_order_id)
    )
    row = result.first()
    if row is not None:
        return row

    # 再試行で決済記録が複数できた場合に備え、決済記録側からも引く
    result = await session.execute(
        select(orders)
        .join(transactions, transactions.c.order_id == orders.c.id)
        .where(transactions.c.provider_order_id == provider_order_id)
    )
    return result.first()


async def get_capture_id(session: AsyncSession, order_id: str) -> str | None:
    result = await session.execute(
        select(transactions.c.capture_id)
        .where(
            transactions.c.order_id == order_id,
            transactions.c.status == TransactionStatus.COMPLETED,
        )
        .order_by(transactions.c.updated_at.desc())
    )
    return result.scalars().first()


async def load_lines(session: AsyncSession, order_id: str) -> list[PricedLine]:
    result = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id == order_id)
        .order_by(order_lines.c.id)
    )
    return [
        PricedLine(
            product_code=row.product_code,
            size=row.size,
            quantity=row.quantity,
            unit_price_cents=row.unit_price_cents,
            name=row.name,
        )
        for row in result.fetchall()
    ]
