"""Test doubles for the payment provider and Redis."""

import json

from storefront.gateway import (
    GatewayResult,
    ProviderCapture,
    ProviderError,
    ProviderErrorKind,
    ProviderOrder,
)


class FakeGateway:
    """In-memory payment provider with switchable failures."""

    def __init__(self) -> None:
        self.create_error: ProviderError | None = None
        self.capture_error: ProviderError | None = None
        self.capture_status = "COMPLETED"
        self.verify_result = True
        self.before_capture = None
        self.provider_orders: dict[str, str] = {}
        self.calls: list[tuple] = []
        self._seq = 0

    async def create_provider_order(
        self, amount_cents, currency, line_items, reference_id, request_id=None
    ):
        self.calls.append(("create", reference_id, amount_cents, request_id))
        if self.create_error is not None:
            return GatewayResult.fail(self.create_error)
        self._seq += 1
        order_id = f"PAYPAL-{self._seq}"
        self.provider_orders[order_id] = "CREATED"
        return GatewayResult.ok(
            ProviderOrder(
                id=order_id,
                status="CREATED",
                approval_url=f"https://paypal.test/approve/{order_id}",
            )
        )

    async def capture_provider_order(self, provider_order_id, request_id=None):
        self.calls.append(("capture", provider_order_id, request_id))
        error = self.capture_error
        if self.before_capture is not None:
            # フックが ProviderError を返したらその呼び出しだけ失敗させる
            error = await self.before_capture(provider_order_id) or error
        if error is not None:
            return GatewayResult.fail(error)
        self.provider_orders[provider_order_id] = "COMPLETED"
        return GatewayResult.ok(
            ProviderCapture(capture_id=f"CAP-{provider_order_id}", status=self.capture_status)
        )

    async def get_provider_order(self, provider_order_id):
        self.calls.append(("get", provider_order_id))
        status = self.provider_orders.get(provider_order_id)
        if status is None:
            return GatewayResult.fail(
                ProviderError(ProviderErrorKind.EXPIRED, "not found", 404, "RESOURCE_NOT_FOUND")
            )
        if status == "UNREACHABLE":
            return GatewayResult.fail(
                ProviderError(ProviderErrorKind.UNAVAILABLE, "Payment provider timed out")
            )
        capture_id = f"CAP-{provider_order_id}" if status == "COMPLETED" else None
        return GatewayResult.ok(
            ProviderOrder(id=provider_order_id, status=status, capture_id=capture_id)
        )

    async def verify_webhook_signature(self, event, headers):
        self.calls.append(("verify", event.get("id")))
        return self.verify_result

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class RecordingRedis:
    """Stands in for redis.asyncio.Redis; keeps every published message."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.messages.append((channel, json.loads(message)))
        return 1

    def event_types(self, channel: str) -> list[str]:
        return [m["event_type"] for c, m in self.messages if c == channel]
