"""
Checkout Service — 放置チェックアウトのスイーパー

プロセスのクラッシュや顧客の離脱で途中のまま残った注文を解決する。

  PENDING          在庫確保後、プロバイダの結果を記録する前に止まった
                   → TTL 経過でキャンセルし在庫を戻す
  PENDING_PAYMENT  顧客の承認待ちのまま TTL を過ぎた
                   → プロバイダに問い合わせて
                       COMPLETED  … 注文を確定
                       APPROVED   … 代わりにキャプチャ
                       通信不可   … 次回に持ち越し
                       それ以外   … キャンセルし在庫を戻す

アプリの lifespan でバックグラウンドタスクとして起動する。
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select

from .config import Settings
from .db import orders, utcnow
from .errors import CheckoutError
from .gateway import ProviderErrorKind
from .orchestrator import CheckoutOrchestrator
from .status import OrderStatus

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    cancelled: int = 0
    completed: int = 0
    deferred: int = 0


async def sweep_stale_checkouts(
    orchestrator: CheckoutOrchestrator,
    settings: Settings,
    now: datetime | None = None,
) -> SweepReport:
    now = now or utcnow()
    report = SweepReport()

    pending_cutoff = now - timedelta(seconds=settings.pending_order_ttl_seconds)
    for order in await _stale_orders(orchestrator, OrderStatus.PENDING, pending_cutoff):
        outcome = await orchestrator.cancel_order(
            order.id, "Checkout abandoned before payment was opened", source="sweeper"
        )
        if outcome.applied:
            report.cancelled += 1

    payment_cutoff = now - timedelta(seconds=settings.payment_approval_ttl_seconds)
    for order in await _stale_orders(
        orchestrator, OrderStatus.PENDING_PAYMENT, payment_cutoff
    ):
        await _resolve_awaiting_payment(orchestrator, order, report)

    if report.cancelled or report.completed or report.deferred:
        logger.info(
            "Sweep: cancelled=%d completed=%d deferred=%d",
            report.cancelled,
            report.completed,
            report.deferred,
        )
    return report


async def _resolve_awaiting_payment(
    orchestrator: CheckoutOrchestrator, order, report: SweepReport
) -> None:
    result = await orchestrator.gateway.get_provider_order(order.provider_order_id)

    if not result.success:
        if result.error.kind == ProviderErrorKind.UNAVAILABLE:
            report.deferred += 1
            return
        outcome = await orchestrator.cancel_order(
            order.id, f"Provider order {result.error.kind.lower()}", source="sweeper"
        )
        if outcome.applied:
            report.cancelled += 1
        return

    provider_order = result.value
    if provider_order.status == "COMPLETED":
        outcome = await orchestrator.complete_order(
            order.id, provider_order.capture_id, source="sweeper"
        )
        if outcome.applied:
            report.completed += 1
        return

    if provider_order.status == "APPROVED":
        try:
            capture = await orchestrator.capture_checkout(order.provider_order_id)
        except CheckoutError as e:
            logger.warning("Sweeper capture of order %s failed: %s", order.id, e.message)
            return
        if capture.status == OrderStatus.COMPLETED:
            report.completed += 1
        return

    outcome = await orchestrator.cancel_order(
        order.id, "Payment approval window expired", source="sweeper"
    )
    if outcome.applied:
        report.cancelled += 1


async def _stale_orders(
    orchestrator: CheckoutOrchestrator, status: str, cutoff: datetime
) -> list:
    async with orchestrator.session_factory() as session:
        result = await session.execute(
            select(orders.c.id, orders.c.provider_order_id)
            .where(orders.c.status == status, orders.c.updated_at < cutoff)
            .order_by(orders.c.updated_at)
        )
        return result.fetchall()


async def run_sweeper(
    orchestrator: CheckoutOrchestrator,
    settings: Settings,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで一定間隔でスイープする。"""
    logger.info("Stale checkout sweeper started (every %ss)", settings.sweep_interval_seconds)
    while not shutdown_event.is_set():
        try:
            await sweep_stale_checkouts(orchestrator, settings)
        except Exception:
            logger.exception("Stale checkout sweep failed")
        try:
            await asyncio.wait_for(
                shutdown_event.wait(), timeout=settings.sweep_interval_seconds
            )
        except asyncio.TimeoutError:
            pass
