import asyncio

import pytest

from storefront.errors import (
    AlreadyCaptured,
    GatewayUnavailable,
    InsufficientStock,
    InvalidCart,
    OrderNotFound,
    PaymentDeclined,
    PaymentNotApproved,
)
from storefront.gateway import ProviderError, ProviderErrorKind
from storefront.schemas import CartLine
from storefront.status import OrderStatus

OWNER = "customer-1"


def cart(qty=2, price="500.00", code="TENIS-01", size="27"):
    return [CartLine(product_code=code, size=size, unit_price=price, quantity=qty)]


@pytest.fixture
async def stocked(seed):
    await seed("TENIS-01", "27", 3)


# ── initiate ─────────────────────────────────────


async def test_initiate_reserves_stock_and_opens_payment(
    orchestrator, gateway, stocked, stock_of, order_of, transaction_statuses
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)

    assert started.total_cents == 100000
    assert started.currency == "MXN"
    assert started.approval_url == f"https://paypal.test/approve/{started.provider_order_id}"
    assert await stock_of("TENIS-01", "27") == 1

    order = await order_of(started.local_order_id)
    assert order["status"] == OrderStatus.PENDING_PAYMENT
    assert order["total"] == "1000.00"
    assert order["providerOrderId"] == started.provider_order_id
    assert [(line["productCode"], line["quantity"]) for line in order["lines"]] == [("TENIS-01", 2)]
    assert await transaction_statuses(started.local_order_id) == ["PENDING"]

    create = gateway.calls[0]
    assert create == ("create", started.local_order_id, 100000, f"create-{started.local_order_id}")


async def test_initiate_with_insufficient_stock_changes_nothing(
    orchestrator, gateway, stocked, stock_of, redis
):
    with pytest.raises(InsufficientStock) as exc_info:
        await orchestrator.initiate_checkout(cart(qty=5), OWNER)

    assert exc_info.value.extra["available"] == 3
    assert await stock_of("TENIS-01", "27") == 3
    assert gateway.count("create") == 0
    assert redis.event_types("order_events") == []
    assert redis.event_types("saga_events") == ["SagaFailed"]


async def test_initiate_rejects_invalid_cart_before_touching_stock(
    orchestrator, stocked, stock_of
):
    with pytest.raises(InvalidCart):
        await orchestrator.initiate_checkout(cart(qty=0), OWNER)
    with pytest.raises(InvalidCart):
        await orchestrator.initiate_checkout(cart(), None)

    assert await stock_of("TENIS-01", "27") == 3


async def test_provider_create_failure_compensates(
    orchestrator, gateway, stocked, stock_of, redis
):
    gateway.create_error = ProviderError(ProviderErrorKind.UNAVAILABLE, "timed out")

    with pytest.raises(GatewayUnavailable) as exc_info:
        await orchestrator.initiate_checkout(cart(), OWNER)

    order_id = exc_info.value.extra["localOrderId"]
    order = await orchestrator.get_order(order_id)
    assert order.status == OrderStatus.CANCELLED
    assert "UNAVAILABLE" in order.cancel_reason
    assert await stock_of("TENIS-01", "27") == 3
    assert redis.event_types("inventory_events") == ["InventoryReserved", "InventoryReleased"]
    assert redis.event_types("saga_events") == ["SagaCompensated"]


async def test_single_item_purchase_is_a_one_line_cart(orchestrator, stocked, stock_of):
    started = await orchestrator.initiate_checkout(cart(qty=1, price="1299.99"), OWNER)

    assert started.total_cents == 129999
    assert await stock_of("TENIS-01", "27") == 2


# ── capture ──────────────────────────────────────


async def test_capture_completes_order_and_credits_spend(
    orchestrator, stocked, spend_of, transaction_statuses, redis
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)

    outcome = await orchestrator.capture_checkout(started.provider_order_id)

    assert outcome.status == OrderStatus.COMPLETED
    assert outcome.capture_id == f"CAP-{started.provider_order_id}"
    assert outcome.local_order_id == started.local_order_id
    assert await spend_of(OWNER) == "1000.00"
    assert await transaction_statuses(started.local_order_id) == ["COMPLETED"]
    assert "OrderCompleted" in redis.event_types("order_events")


async def test_second_capture_is_idempotent(
    orchestrator, gateway, stocked, stock_of, spend_of
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    await orchestrator.capture_checkout(started.provider_order_id)

    with pytest.raises(AlreadyCaptured) as exc_info:
        await orchestrator.capture_checkout(started.provider_order_id)

    assert exc_info.value.capture_id == f"CAP-{started.provider_order_id}"
    assert exc_info.value.status_code == 200
    assert gateway.count("capture") == 1
    assert await spend_of(OWNER) == "1000.00"
    assert await stock_of("TENIS-01", "27") == 1


async def test_declined_capture_cancels_and_restores_stock(
    orchestrator, gateway, stocked, stock_of, spend_of, transaction_statuses
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    gateway.capture_error = ProviderError(
        ProviderErrorKind.DECLINED, "Instrument declined", 422, "INSTRUMENT_DECLINED"
    )

    with pytest.raises(PaymentDeclined) as exc_info:
        await orchestrator.capture_checkout(started.provider_order_id)

    assert exc_info.value.extra["status"] == OrderStatus.CANCELLED
    assert await stock_of("TENIS-01", "27") == 3
    assert await spend_of(OWNER) == "0.00"
    assert await transaction_statuses(started.local_order_id) == ["CANCELLED"]


async def test_capture_timeout_cancels_and_reports_unavailable(
    orchestrator, gateway, stocked, stock_of
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    gateway.capture_error = ProviderError(ProviderErrorKind.UNAVAILABLE, "timed out")

    with pytest.raises(GatewayUnavailable):
        await orchestrator.capture_checkout(started.provider_order_id)

    order = await orchestrator.get_order(started.local_order_id)
    assert order.status == OrderStatus.CANCELLED
    assert await stock_of("TENIS-01", "27") == 3


async def test_unapproved_capture_keeps_order_open(
    orchestrator, gateway, stocked, stock_of
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    gateway.capture_error = ProviderError(
        ProviderErrorKind.NOT_APPROVED, "Payer has not approved", 422, "ORDER_NOT_APPROVED"
    )

    with pytest.raises(PaymentNotApproved):
        await orchestrator.capture_checkout(started.provider_order_id)

    order = await orchestrator.get_order(started.local_order_id)
    assert order.status == OrderStatus.PENDING_PAYMENT
    assert await stock_of("TENIS-01", "27") == 1


async def test_pending_capture_waits_for_webhook(orchestrator, gateway, stocked, spend_of):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    gateway.capture_status = "PENDING"

    outcome = await orchestrator.capture_checkout(started.provider_order_id)

    assert outcome.status == OrderStatus.PENDING_PAYMENT
    assert await spend_of(OWNER) == "0.00"


async def test_capture_of_unknown_provider_order(orchestrator):
    with pytest.raises(OrderNotFound):
        await orchestrator.capture_checkout("PAYPAL-UNKNOWN")


async def test_capture_after_cancel_does_not_call_provider(orchestrator, gateway, stocked):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    await orchestrator.cancel_checkout(started.provider_order_id)

    outcome = await orchestrator.capture_checkout(started.provider_order_id)

    assert outcome.status == OrderStatus.CANCELLED
    assert gateway.count("capture") == 0


def already_captured():
    return ProviderError(
        ProviderErrorKind.ALREADY_CAPTURED,
        "Order already captured",
        422,
        "ORDER_ALREADY_CAPTURED",
    )


async def test_concurrent_captures_complete_once(
    orchestrator, gateway, stocked, stock_of, spend_of, transaction_statuses
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    pid = started.provider_order_id
    captured_at_provider = asyncio.Event()
    arrivals = []

    async def provider(provider_order_id):
        arrivals.append(provider_order_id)
        if len(arrivals) == 1:
            # 1 回目はプロバイダ側で成立するが応答が遅れる
            gateway.provider_orders[provider_order_id] = "COMPLETED"
            captured_at_provider.set()
            await asyncio.sleep(0.2)
            return None
        await captured_at_provider.wait()
        return already_captured()

    gateway.before_capture = provider

    results = await asyncio.gather(
        orchestrator.capture_checkout(pid),
        orchestrator.capture_checkout(pid),
        return_exceptions=True,
    )

    outcomes = [r for r in results if not isinstance(r, BaseException)]
    errors = [r for r in results if isinstance(r, BaseException)]
    assert [o.status for o in outcomes] == [OrderStatus.COMPLETED]
    assert len(errors) == 1 and isinstance(errors[0], AlreadyCaptured)
    order = await orchestrator.get_order(started.local_order_id)
    assert order.status == OrderStatus.COMPLETED
    assert await spend_of(OWNER) == "1000.00"
    assert await stock_of("TENIS-01", "27") == 1
    assert await transaction_statuses(started.local_order_id) == ["COMPLETED"]


async def test_already_captured_completes_from_provider_state(
    orchestrator, gateway, stocked, spend_of
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    pid = started.provider_order_id
    gateway.provider_orders[pid] = "COMPLETED"
    gateway.capture_error = already_captured()

    outcome = await orchestrator.capture_checkout(pid)

    assert outcome.status == OrderStatus.COMPLETED
    assert outcome.capture_id == f"CAP-{pid}"
    assert await spend_of(OWNER) == "1000.00"


async def test_unconfirmed_already_captured_keeps_order_open(
    orchestrator, gateway, stocked, stock_of, spend_of
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    gateway.provider_orders[started.provider_order_id] = "UNREACHABLE"
    gateway.capture_error = already_captured()

    outcome = await orchestrator.capture_checkout(started.provider_order_id)

    assert outcome.status == OrderStatus.PENDING_PAYMENT
    order = await orchestrator.get_order(started.local_order_id)
    assert order.status == OrderStatus.PENDING_PAYMENT
    assert await stock_of("TENIS-01", "27") == 1
    assert await spend_of(OWNER) == "0.00"


async def test_webhook_completing_during_capture_counts_once(
    orchestrator, reconciler, gateway, stocked, spend_of, transaction_statuses
):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    pid = started.provider_order_id

    async def webhook_arrives_first(provider_order_id):
        await reconciler.handle(
            {
                "id": "WH-EVT-1",
                "event_type": "PAYMENT.CAPTURE.COMPLETED",
                "resource": {
                    "id": f"CAP-{pid}",
                    "supplementary_data": {"related_ids": {"order_id": pid}},
                },
            },
            {},
        )

    gateway.before_capture = webhook_arrives_first

    with pytest.raises(AlreadyCaptured):
        await orchestrator.capture_checkout(pid)

    assert await spend_of(OWNER) == "1000.00"
    assert await transaction_statuses(started.local_order_id) == ["COMPLETED"]


# ── cancel ───────────────────────────────────────


async def test_cancel_checkout_releases_stock_once(orchestrator, stocked, stock_of):
    started = await orchestrator.initiate_checkout(cart(), OWNER)

    first = await orchestrator.cancel_checkout(started.provider_order_id)
    second = await orchestrator.cancel_checkout(started.provider_order_id)

    assert first.applied and first.status == OrderStatus.CANCELLED
    assert not second.applied
    assert await stock_of("TENIS-01", "27") == 3


async def test_completed_order_cannot_be_cancelled(orchestrator, stocked, stock_of):
    started = await orchestrator.initiate_checkout(cart(), OWNER)
    await orchestrator.capture_checkout(started.provider_order_id)

    outcome = await orchestrator.cancel_checkout(started.provider_order_id)

    assert not outcome.applied
    assert outcome.status == OrderStatus.COMPLETED
    assert await stock_of("TENIS-01", "27") == 1
