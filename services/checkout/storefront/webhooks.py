"""
Checkout Service — Webhook 照合 (Webhook Reconciler)

プロバイダから非同期に届く決済結果を台帳に反映する。
同期キャプチャが先に走ったかどうかは仮定しない。

  - 署名を検証できないイベントは適用せず 400 (SignatureInvalid)
  - 完了系イベント → キャプチャ成功時と同じ complete_order を適用
  - 拒否系イベント → 未キャンセルなら cancel_order (在庫を戻す)
  - 未知の注文・終端状態の注文・処理済みイベントは副作用なしで 200

プロバイダは 2xx を受け取るまで再送し続けるため、解決済みや
対応付けできないイベントにエラーを返してはいけない。
"""

import logging
from dataclasses import dataclass
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .db import utcnow, webhook_events
from .errors import SignatureInvalid
from .gateway import PaymentGateway
from .orchestrator import CheckoutOrchestrator
from .status import OrderStatus

logger = logging.getLogger(__name__)

COMPLETION_EVENTS = frozenset({"PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.COMPLETED"})
DENIAL_EVENTS = frozenset(
    {"PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED", "CHECKOUT.ORDER.VOIDED"}
)


class WebhookAction:
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str | None
    provider_order_id: str | None
    action: str


class WebhookReconciler:
    def __init__(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: PaymentGateway,
        session_factory: sessionmaker,
    ) -> None:
        self.orchestrator = orchestrator
        self.gateway = gateway
        self.session_factory = session_factory

    async def handle(self, event: dict, headers: Mapping[str, str]) -> WebhookOutcome:
        if not await self.gateway.verify_webhook_signature(event, headers):
            logger.warning(
                "Rejected webhook %s (%s): signature not verified",
                event.get("id"),
                event.get("event_type"),
            )
            raise SignatureInvalid("Webhook signature could not be verified")

        event_id = event.get("id")
        event_type = event.get("event_type")
        resource = event.get("resource") or {}
        provider_order_id = provider_order_id_of(event_type, resource)

        if event_id and await self._already_processed(event_id):
            logger.info("Webhook %s already processed", event_id)
            return WebhookOutcome(event_type, provider_order_id, WebhookAction.DUPLICATE)

        if event_type in COMPLETION_EVENTS:
            action = await self._complete(event_type, provider_order_id, resource)
        elif event_type in DENIAL_EVENTS:
            action = await self._deny(event_type, provider_order_id)
        else:
            logger.info("Unhandled webhook event: %s", event_type)
            action = WebhookAction.IGNORED

        if event_id:
            await self._remember(event_id, event_type, resource.get("id"))
        return WebhookOutcome(event_type, provider_order_id, action)

    async def _complete(
        self, event_type: str, provider_order_id: str | None, resource: dict
    ) -> str:
        order = await self._mapped_order(event_type, provider_order_id)
        if order is None:
            return WebhookAction.IGNORED
        if order.status == OrderStatus.CANCELLED:
            logger.error(
                "Provider reported %s for cancelled order %s (provider order %s); "
                "manual refund required",
                event_type,
                order.id,
                provider_order_id,
            )
            return WebhookAction.IGNORED
        if order.status != OrderStatus.PENDING_PAYMENT:
            return WebhookAction.IGNORED

        outcome = await self.orchestrator.complete_order(
            order.id, capture_id_of(event_type, resource), source="webhook"
        )
        return WebhookAction.COMPLETED if outcome.applied else WebhookAction.IGNORED

    async def _deny(self, event_type: str, provider_order_id: str | None) -> str:
        order = await self._mapped_order(event_type, provider_order_id)
        if order is None or order.status in OrderStatus.TERMINAL:
            return WebhookAction.IGNORED

        outcome = await self.orchestrator.cancel_order(
            order.id, f"Provider reported {event_type}", source="webhook"
        )
        return WebhookAction.CANCELLED if outcome.applied else WebhookAction.IGNORED

    async def _mapped_order(self, event_type: str, provider_order_id: str | None):
        if not provider_order_id:
            logger.info("Webhook %s carries no provider order id", event_type)
            return None
        order = await self.orchestrator.find_order(provider_order_id)
        if order is None:
            logger.info(
                "Webhook %s for unknown provider order %s", event_type, provider_order_id
            )
        return order

    async def _already_processed(self, event_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(webhook_events.c.event_id).where(
                    webhook_events.c.event_id == event_id
                )
            )
            return result.first() is not None

    async def _remember(
        self, event_id: str, event_type: str | None, resource_id: str | None
    ) -> None:
        try:
            async with self.session_factory() as session, session.begin():
                await session.execute(
                    webhook_events.insert().values(
                        event_id=event_id,
                        event_type=event_type or "",
                        resource_id=resource_id,
                        received_at=utcnow(),
                    )
                )
        except IntegrityError:
            # 同じイベントの並行再送。どちらか一方の記録で十分
            logger.info("Webhook %s recorded concurrently", event_id)


def provider_order_id_of(event_type: str | None, resource: dict) -> str | None:
    """
    イベントからプロバイダ注文 ID を取り出す。

    PAYMENT.CAPTURE.* の resource はキャプチャなので、注文 ID は
    supplementary_data.related_ids.order_id にある。
    CHECKOUT.ORDER.* の resource は注文そのもの。
    """
    if event_type and event_type.startswith("PAYMENT.CAPTURE."):
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        return related.get("order_id")
    return resource.get("id")


def capture_id_of(event_type: str | None, resource: dict) -> str | None:
    if event_type and event_type.startswith("PAYMENT.CAPTURE."):
        return resource.get("id")
    for unit in resource.get("purchase_units", []):
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0].get("id")
    return None
