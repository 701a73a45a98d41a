"""
Checkout Orchestrator — 在庫引き当て・注文作成・決済キャプチャの Saga

Saga パターン（オーケストレーション型）:
  ローカルの状態変更はすべて 1 つのリレーショナルストアのトランザクションで行う。
  外部の決済プロバイダ呼び出しだけはトランザクションに含められないため、
  その失敗は補償トランザクション(Compensating Transaction)で打ち消す。

  開始フロー (initiate_checkout):
  ┌──────────────────────────────────────────────────────────────┐
  │  1. 在庫引き当て + 注文(PENDING)作成  … 1 トランザクション     │
  │     └─ 失敗 → ロールバック (部分的な引き当ては残らない)         │
  │  2. プロバイダ注文作成 (トランザクション外)                     │
  │     ├─ 成功 → 注文を PENDING_PAYMENT に、決済記録を作成          │
  │     └─ 失敗 → 注文を CANCELLED に + 在庫を戻す (補償)           │
  └──────────────────────────────────────────────────────────────┘

  確定フロー (capture_checkout):
  ┌──────────────────────────────────────────────────────────────┐
  │  1. プロバイダでキャプチャ (トランザクション外)                 │
  │  2. 成功 → PENDING_PAYMENT → COMPLETED の条件付き更新            │
  │           勝った側だけが決済記録の確定と累計額加算を行う         │
  │  3. 失敗 → CANCELLED + 在庫を戻す (補償)。自動リトライはしない   │
  │     ただし「既にキャプチャ済み」はプロバイダに照会して確定させ、 │
  │     確認できなければ PENDING_PAYMENT のまま残す                  │
  └──────────────────────────────────────────────────────────────┘

DB トランザクションを開いたままプロバイダの応答を待つことはない。
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import Row
from sqlalchemy.orm import sessionmaker

from . import inventory, ledger
from .cart import PricedLine, validate_cart
from .errors import (
    AlreadyCaptured,
    CheckoutError,
    GatewayUnavailable,
    InternalInconsistency,
    OrderNotFound,
    PaymentDeclined,
    PaymentNotApproved,
)
from .events import (
    InventoryReleased,
    InventoryReserved,
    OrderAwaitingPayment,
    OrderCancelled,
    OrderCompleted,
    OrderCreated,
    ReservedLine,
)
from .gateway import PaymentGateway, ProviderError, ProviderErrorKind
from .publisher import INVENTORY_EVENTS, ORDER_EVENTS, SAGA_EVENTS, EventPublisher
from .schemas import CartLine
from .status import OrderStatus, TransactionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutStarted:
    local_order_id: str
    provider_order_id: str
    approval_url: str | None
    total_cents: int
    currency: str


@dataclass(frozen=True)
class CaptureOutcome:
    local_order_id: str
    capture_id: str | None
    status: str


@dataclass(frozen=True)
class TransitionOutcome:
    """条件付き遷移の結果。applied が True の呼び出し元だけが副作用を適用した。"""
    applied: bool
    order: Row | None

    @property
    def status(self) -> str | None:
        return self.order.status if self.order is not None else None


class CheckoutOrchestrator:
    """チェックアウト Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGateway,
        publisher: EventPublisher,
        currency: str = "MXN",
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.publisher = publisher
        self.currency = currency

    # ── チェックアウト開始 ─────────────────────────

    async def initiate_checkout(
        self, cart: list[CartLine], owner_id: str | None
    ) -> CheckoutStarted:
        """
        カートのスナップショットから注文を作成し、プロバイダ側の注文を開く。

        在庫の引き当てと注文・明細の作成は 1 トランザクション。
        プロバイダ呼び出しはコミット後に行い、失敗時は補償する。
        """
        lines = validate_cart(cart, owner_id)
        order_id = str(uuid.uuid4())
        saga_log: list[dict] = []

        # ── Step 1: 在庫引き当て + 注文作成 ────────────
        _begin_step(saga_log, "ReserveInventoryAndCreateOrder")
        try:
            async with self.session_factory() as session, session.begin():
                await inventory.reserve_lines(session, lines)
                total = await ledger.insert_order(
                    session, order_id, owner_id, lines, self.currency
                )
        except CheckoutError as e:
            _fail_step(saga_log, e.message)
            await self._publish_saga("SagaFailed", order_id, saga_log)
            raise
        _complete_step(saga_log)

        now = datetime.now(timezone.utc)
        await self.publisher.publish(
            INVENTORY_EVENTS,
            InventoryReserved(order_id=order_id, lines=_reserved(lines), timestamp=now),
        )
        await self.publisher.publish(
            ORDER_EVENTS,
            OrderCreated(
                order_id=order_id,
                owner_id=owner_id,
                total_cents=total,
                currency=self.currency,
                timestamp=now,
            ),
        )

        # ── Step 2: プロバイダ注文作成 ─────────────────
        _begin_step(saga_log, "CreateProviderOrder")
        try:
            result = await self.gateway.create_provider_order(
                total,
                self.currency,
                lines,
                reference_id=order_id,
                request_id=f"create-{order_id}",
            )
        except Exception:
            logger.exception("Gateway create raised for order %s", order_id)
            _fail_step(saga_log, "unexpected gateway error")
            await self._compensate(saga_log, order_id, "Payment provider error")
            raise

        if not result.success:
            _fail_step(saga_log, result.error.message)
            await self._compensate(
                saga_log, order_id, f"Provider order creation failed: {result.error.kind}"
            )
            raise GatewayUnavailable(
                "Payment provider is unavailable, try again later",
                localOrderId=order_id,
                reason=result.error.kind,
            )
        provider_order = result.value
        _complete_step(saga_log)

        # ── Step 3: 支払い待ちへ遷移 ──────────────────
        _begin_step(saga_log, "AwaitPayment")
        async with self.session_factory() as session, session.begin():
            applied = await ledger.transition(
                session,
                order_id,
                (OrderStatus.PENDING,),
                OrderStatus.PENDING_PAYMENT,
                provider_order_id=provider_order.id,
            )
            if applied:
                order = await ledger.get_order_row(session, order_id)
                await ledger.open_transaction(session, order, provider_order.id)

        if not applied:
            # プロバイダの応答が遅すぎ、スイーパーが先にキャンセルした
            logger.warning(
                "Order %s was resolved before provider order %s was recorded",
                order_id,
                provider_order.id,
            )
            _fail_step(saga_log, "order no longer pending")
            await self._publish_saga("SagaFailed", order_id, saga_log)
            raise GatewayUnavailable(
                "Checkout expired before the payment provider responded",
                localOrderId=order_id,
            )
        _complete_step(saga_log)

        await self.publisher.publish(
            ORDER_EVENTS,
            OrderAwaitingPayment(
                order_id=order_id,
                provider_order_id=provider_order.id,
                timestamp=datetime.now(timezone.utc),
            ),
        )
        await self._publish_saga("SagaCompleted", order_id, saga_log)

        logger.info(
            "Checkout started: order=%s provider_order=%s owner=%s total=%s",
            order_id,
            provider_order.id,
            owner_id,
            total,
        )
        return CheckoutStarted(
            local_order_id=order_id,
            provider_order_id=provider_order.id,
            approval_url=provider_order.approval_url,
            total_cents=total,
            currency=self.currency,
        )

    # ── キャプチャ ─────────────────────────────────

    async def capture_checkout(self, provider_order_id: str) -> CaptureOutcome:
        """
        顧客が承認したプロバイダ注文をキャプチャし、注文を確定する。

        何度呼ばれても確定の副作用は 1 回だけ。COMPLETED の注文に対しては
        AlreadyCaptured を送出する (HTTP 層では 200 の冪等応答)。
        """
        order = await self.find_order(provider_order_id)
        if order is None:
            raise OrderNotFound(f"No order for provider order {provider_order_id}")
        if order.status == OrderStatus.COMPLETED:
            raise AlreadyCaptured(order.id, await self._capture_id(order.id))
        if order.status == OrderStatus.CANCELLED:
            return CaptureOutcome(order.id, None, OrderStatus.CANCELLED)
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise InternalInconsistency(
                f"Order {order.id} is mapped to a provider order but is {order.status}",
                localOrderId=order.id,
            )

        result = await self.gateway.capture_provider_order(
            provider_order_id, request_id=f"capture-{provider_order_id}"
        )

        if result.success:
            capture = result.value
            if capture.status == "PENDING":
                # 審査保留。結果は Webhook で届く
                logger.info(
                    "Capture %s for order %s is pending at the provider",
                    capture.capture_id,
                    order.id,
                )
                return CaptureOutcome(
                    order.id, capture.capture_id, OrderStatus.PENDING_PAYMENT
                )
            return await self._finish_capture(order, capture.capture_id)

        if result.error.kind == ProviderErrorKind.ALREADY_CAPTURED:
            return await self._reconcile_already_captured(order, provider_order_id)
        return await self._handle_capture_failure(order, result.error)

    async def _finish_capture(self, order: Row, capture_id: str | None) -> CaptureOutcome:
        outcome = await self.complete_order(order.id, capture_id, source="capture")
        if outcome.applied:
            return CaptureOutcome(order.id, capture_id, OrderStatus.COMPLETED)
        if outcome.status == OrderStatus.COMPLETED:
            # Webhook が先に確定させた
            raise AlreadyCaptured(order.id, await self._capture_id(order.id))
        logger.error(
            "Provider captured %s for order %s but the order is %s; manual refund required",
            capture_id,
            order.id,
            outcome.status,
        )
        raise InternalInconsistency(
            "Payment was captured for an order that is no longer payable",
            localOrderId=order.id,
            captureId=capture_id,
        )

    async def _reconcile_already_captured(
        self, order: Row, provider_order_id: str
    ) -> CaptureOutcome:
        """
        プロバイダが ORDER_ALREADY_CAPTURED を返した場合。

        資金は既に動いている可能性があるため、キャンセルも在庫返却もしない。
        プロバイダの注文状態を確認し、COMPLETED ならこちらで確定させる。
        確認できなければ PENDING_PAYMENT のまま Webhook / スイーパーに任せる。
        """
        current = await self.get_order(order.id)
        if current is not None and current.status == OrderStatus.COMPLETED:
            raise AlreadyCaptured(order.id, await self._capture_id(order.id))

        result = await self.gateway.get_provider_order(provider_order_id)
        if result.success and result.value.status == "COMPLETED":
            return await self._finish_capture(order, result.value.capture_id)

        logger.warning(
            "Provider order %s reported as already captured but is not confirmed "
            "COMPLETED; order %s left awaiting payment",
            provider_order_id,
            order.id,
        )
        return CaptureOutcome(order.id, None, OrderStatus.PENDING_PAYMENT)

    async def _handle_capture_failure(
        self, order: Row, error: ProviderError
    ) -> CaptureOutcome:
        if error.kind == ProviderErrorKind.NOT_APPROVED:
            raise PaymentNotApproved(
                "The customer has not approved this payment yet",
                localOrderId=order.id,
                status=order.status,
            )

        outcome = await self.cancel_order(
            order.id, f"Capture failed: {error.kind}: {error.message}", source="capture"
        )
        if outcome.status == OrderStatus.COMPLETED:
            raise AlreadyCaptured(order.id, await self._capture_id(order.id))

        detail = {
            "localOrderId": order.id,
            "status": outcome.status,
            "reason": error.kind,
        }
        if error.kind == ProviderErrorKind.UNAVAILABLE:
            raise GatewayUnavailable(
                "Payment provider is unavailable, the order was cancelled", **detail
            )
        raise PaymentDeclined(error.message or "Payment was declined", **detail)

    # ── 明示キャンセル ─────────────────────────────

    async def cancel_checkout(self, provider_order_id: str) -> TransitionOutcome:
        """顧客がプロバイダの画面でキャンセルした注文を閉じ、在庫を戻す。"""
        order = await self.find_order(provider_order_id)
        if order is None:
            raise OrderNotFound(f"No order for provider order {provider_order_id}")
        if order.status in OrderStatus.TERMINAL:
            return TransitionOutcome(applied=False, order=order)
        return await self.cancel_order(
            order.id, "Cancelled by customer", source="customer"
        )

    # ── 状態遷移 (キャプチャ / Webhook / スイーパー共通) ──

    async def complete_order(
        self, order_id: str, capture_id: str | None, source: str
    ) -> TransitionOutcome:
        """
        PENDING_PAYMENT → COMPLETED。

        条件付き更新に勝った場合だけ、同じトランザクションで決済記録を確定し
        顧客の累計購入額を加算する。負けた側は現在の状態を返すだけ。
        """
        async with self.session_factory() as session, session.begin():
            applied = await ledger.transition(
                session,
                order_id,
                (OrderStatus.PENDING_PAYMENT,),
                OrderStatus.COMPLETED,
            )
            order = await ledger.get_order_row(session, order_id)
            if applied:
                settled = await ledger.settle_transaction(
                    session, order_id, TransactionStatus.COMPLETED, capture_id
                )
                if settled == 0:
                    logger.error(
                        "Order %s has no pending payment transaction to complete",
                        order_id,
                    )
                    raise InternalInconsistency(
                        "Order has no pending payment transaction",
                        localOrderId=order_id,
                    )
                await ledger.credit_spend(session, order.owner_id, order.total_cents)

        if applied:
            logger.info(
                "Order %s completed via %s (capture=%s)", order_id, source, capture_id
            )
            await self.publisher.publish(
                ORDER_EVENTS,
                OrderCompleted(
                    order_id=order_id,
                    owner_id=order.owner_id,
                    provider_order_id=order.provider_order_id,
                    capture_id=capture_id,
                    total_cents=order.total_cents,
                    source=source,
                    timestamp=datetime.now(timezone.utc),
                ),
            )
        return TransitionOutcome(applied=applied, order=order)

    async def cancel_order(
        self, order_id: str, reason: str, source: str
    ) -> TransitionOutcome:
        """
        PENDING / PENDING_PAYMENT → CANCELLED（補償トランザクション）

        状態遷移と在庫の返却を同じトランザクションで行うため、
        引き当て 1 回に対して返却は高々 1 回になる。
        """
        lines: list[PricedLine] = []
        async with self.session_factory() as session, session.begin():
            applied = await ledger.transition(
                session,
                order_id,
                OrderStatus.CANCELLABLE,
                OrderStatus.CANCELLED,
                cancel_reason=reason,
            )
            if applied:
                lines = await ledger.load_lines(session, order_id)
                await inventory.release_lines(session, lines)
                await ledger.settle_transaction(
                    session, order_id, TransactionStatus.CANCELLED
                )
            order = await ledger.get_order_row(session, order_id)

        if applied:
            logger.info("Order %s cancelled via %s: %s", order_id, source, reason)
            now = datetime.now(timezone.utc)
            await self.publisher.publish(
                INVENTORY_EVENTS,
                InventoryReleased(
                    order_id=order_id,
                    lines=_reserved(lines),
                    reason=reason,
                    timestamp=now,
                ),
            )
            await self.publisher.publish(
                ORDER_EVENTS,
                OrderCancelled(
                    order_id=order_id, reason=reason, source=source, timestamp=now
                ),
            )
        return TransitionOutcome(applied=applied, order=order)

    # ── 照会 ─────────────────────────────────────

    async def find_order(self, provider_order_id: str) -> Row | None:
        async with self.session_factory() as session:
            return await ledger.get_order_row_by_provider_id(session, provider_order_id)

    async def get_order(self, order_id: str) -> Row | None:
        async with self.session_factory() as session:
            return await ledger.get_order_row(session, order_id)

    async def _capture_id(self, order_id: str) -> str | None:
        async with self.session_factory() as session:
            return await ledger.get_capture_id(session, order_id)

    # ── Saga ログ ──────────────────────────────────

    async def _compensate(self, saga_log: list[dict], order_id: str, reason: str) -> None:
        _begin_step(saga_log, "CancelOrder (COMPENSATING)")
        try:
            await self.cancel_order(order_id, reason, source="checkout")
        except Exception:
            # 注文は PENDING のまま残り、スイーパーが後で補償する
            logger.exception("Compensation failed for order %s", order_id)
            _fail_step(saga_log, "compensation failed")
            await self._publish_saga("SagaFailed", order_id, saga_log)
            raise
        _complete_step(saga_log)
        await self._publish_saga("SagaCompensated", order_id, saga_log)

    async def _publish_saga(
        self, event_type: str, order_id: str, saga_log: list[dict]
    ) -> None:
        await self.publisher.publish_raw(
            SAGA_EVENTS, event_type, {"order_id": order_id, "saga_log": saga_log}
        )


def _begin_step(saga_log: list[dict], action: str) -> None:
    saga_log.append(
        {
            "step": len(saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )


def _complete_step(saga_log: list[dict]) -> None:
    saga_log[-1]["status"] = "COMPLETED"


def _fail_step(saga_log: list[dict], error: str) -> None:
    saga_log[-1]["status"] = "FAILED"
    saga_log[-1]["error"] = error


def _reserved(lines: list[PricedLine]) -> list[ReservedLine]:
    return [
        ReservedLine(
            product_code=line.product_code, size=line.size, quantity=line.quantity
        )
        for line in lines
    ]
