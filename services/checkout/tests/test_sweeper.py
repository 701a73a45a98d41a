from datetime import timedelta

import pytest

from storefront import inventory, ledger
from storefront.cart import PricedLine
from storefront.db import utcnow
from storefront.schemas import CartLine
from storefront.status import OrderStatus
from storefront.sweeper import sweep_stale_checkouts

OWNER = "customer-1"


def later(days=1):
    return utcnow() + timedelta(days=days)


@pytest.fixture
async def started(orchestrator, seed):
    await seed("TENIS-01", "27", 3)
    return await orchestrator.initiate_checkout(
        [CartLine(product_code="TENIS-01", size="27", unit_price="500.00", quantity=2)],
        OWNER,
    )


async def test_orphaned_pending_order_is_released(
    orchestrator, settings, session_factory, seed, stock_of
):
    # プロバイダ注文を記録する前にプロセスが落ちた状態
    await seed("TENIS-01", "27", 3)
    lines = [PricedLine("TENIS-01", "27", 2, 50000)]
    async with session_factory() as session, session.begin():
        await inventory.reserve_lines(session, lines)
        await ledger.insert_order(session, "orphan-1", OWNER, lines, "MXN")

    report = await sweep_stale_checkouts(orchestrator, settings, now=later())

    assert report.cancelled == 1
    order = await orchestrator.get_order("orphan-1")
    assert order.status == OrderStatus.CANCELLED
    assert await stock_of("TENIS-01", "27") == 3


async def test_fresh_orders_are_left_alone(orchestrator, settings, started):
    report = await sweep_stale_checkouts(orchestrator, settings)

    assert (report.cancelled, report.completed, report.deferred) == (0, 0, 0)


async def test_abandoned_approval_is_cancelled(
    orchestrator, settings, started, stock_of
):
    report = await sweep_stale_checkouts(orchestrator, settings, now=later())

    assert report.cancelled == 1
    assert await stock_of("TENIS-01", "27") == 3


async def test_payment_captured_elsewhere_is_completed(
    orchestrator, settings, gateway, started, spend_of
):
    gateway.provider_orders[started.provider_order_id] = "COMPLETED"

    report = await sweep_stale_checkouts(orchestrator, settings, now=later())

    assert report.completed == 1
    assert await spend_of(OWNER) == "1000.00"
    assert gateway.count("capture") == 0


async def test_approved_payment_is_captured(
    orchestrator, settings, gateway, started, spend_of
):
    gateway.provider_orders[started.provider_order_id] = "APPROVED"

    report = await sweep_stale_checkouts(orchestrator, settings, now=later())

    assert report.completed == 1
    assert gateway.count("capture") == 1
    assert await spend_of(OWNER) == "1000.00"


async def test_unreachable_provider_defers(orchestrator, settings, gateway, started, stock_of):
    gateway.provider_orders[started.provider_order_id] = "UNREACHABLE"

    report = await sweep_stale_checkouts(orchestrator, settings, now=later())

    assert report.deferred == 1
    order = await orchestrator.get_order(started.local_order_id)
    assert order.status == OrderStatus.PENDING_PAYMENT
    assert await stock_of("TENIS-01", "27") == 1
