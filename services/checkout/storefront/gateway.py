"""
Checkout Service — 決済ゲートウェイクライアント (PayPal Orders v2)

プロバイダ固有のプロトコルをこのモジュールに閉じ込める:

  - OAuth2 client-credentials トークンの取得とキャッシュ
    (有効期限の 60 秒前まで再利用し、その後に再取得)
  - 状態を変える呼び出しごとの冪等キー (PayPal-Request-Id)
  - Webhook 署名の検証

プロバイダのエラーは例外として投げず、GatewayResult{success, value, error}
として返す。オーケストレーターは例外の型を調べずに、成功 / 失敗の
分岐だけで補償処理を決められる。
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Generic, Mapping, Protocol, TypeVar

import httpx

from .cart import PricedLine, cart_total_cents, format_amount
from .config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOKEN_EXPIRY_MARGIN_SECONDS = 60

WEBHOOK_SIGNATURE_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)

_DECLINED_ISSUES = {
    "INSTRUMENT_DECLINED",
    "TRANSACTION_REFUSED",
    "PAYER_CANNOT_PAY",
    "PAYER_ACTION_REQUIRED",
    "PAYEE_BLOCKED_TRANSACTION",
    "COMPLIANCE_VIOLATION",
    "MAX_NUMBER_OF_PAYMENT_ATTEMPTS_EXCEEDED",
}
_EXPIRED_ISSUES = {"ORDER_EXPIRED", "RESOURCE_NOT_FOUND", "INVALID_RESOURCE_ID"}


class ProviderErrorKind:
    UNAVAILABLE = "UNAVAILABLE"
    DECLINED = "DECLINED"
    ALREADY_CAPTURED = "ALREADY_CAPTURED"
    EXPIRED = "EXPIRED"
    NOT_APPROVED = "NOT_APPROVED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class ProviderError:
    kind: str
    message: str
    status_code: int | None = None
    issue: str | None = None


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    success: bool
    value: T | None = None
    error: ProviderError | None = None

    @classmethod
    def ok(cls, value: T) -> "GatewayResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: ProviderError) -> "GatewayResult[T]":
        return cls(success=False, error=error)


@dataclass(frozen=True)
class ProviderOrder:
    id: str
    status: str
    approval_url: str | None = None
    capture_id: str | None = None


@dataclass(frozen=True)
class ProviderCapture:
    capture_id: str | None
    # COMPLETED または PENDING (審査保留)
    status: str


class PaymentGateway(Protocol):
    async def create_provider_order(
        self,
        amount_cents: int,
        currency: str,
        line_items: list[PricedLine],
        reference_id: str,
        request_id: str | None = None,
    ) -> GatewayResult[ProviderOrder]: ...

    async def capture_provider_order(
        self, provider_order_id: str, request_id: str | None = None
    ) -> GatewayResult[ProviderCapture]: ...

    async def get_provider_order(
        self, provider_order_id: str
    ) -> GatewayResult[ProviderOrder]: ...

    async def verify_webhook_signature(
        self, event: dict, headers: Mapping[str, str]
    ) -> bool: ...


class PayPalGateway:
    """PayPal REST API クライアント"""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.client = httpx.AsyncClient(
            base_url=settings.paypal_base_url,
            timeout=settings.paypal_timeout_seconds,
            transport=transport,
        )
        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self.client.aclose()

    # ── OAuth2 トークン ─────────────────────────────

    def _token_is_valid(self) -> bool:
        return (
            self._access_token is not None
            and time.monotonic() < self._token_expires_at
        )

    async def _get_access_token(self) -> str:
        if self._token_is_valid():
            return self._access_token

        # 同時リクエストが揃ってトークンを取りに行かないよう直列化する
        async with self._token_lock:
            if self._token_is_valid():
                return self._access_token

            resp = await self.client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            data = resp.json()
            self._access_token = data["access_token"]
            self._token_expires_at = (
                time.monotonic()
                + int(data.get("expires_in", 0))
                - TOKEN_EXPIRY_MARGIN_SECONDS
            )
            logger.info("Fetched PayPal access token")
            return self._access_token

    def _invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = 0.0

    # ── 共通リクエスト ─────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        request_id: str | None = None,
    ) -> GatewayResult[dict]:
        try:
            token = await self._get_access_token()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            }
            if request_id:
                headers["PayPal-Request-Id"] = request_id
            resp = await self.client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning("PayPal %s %s timed out", method, path)
            return GatewayResult.fail(
                ProviderError(ProviderErrorKind.UNAVAILABLE, "Payment provider timed out")
            )
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning("PayPal %s %s failed: %s", method, path, e)
            return GatewayResult.fail(
                ProviderError(ProviderErrorKind.UNAVAILABLE, f"Payment provider error: {e}")
            )

        if resp.status_code == 401:
            self._invalidate_token()

        if resp.is_success:
            try:
                body = resp.json()
            except ValueError:
                return GatewayResult.fail(
                    ProviderError(
                        ProviderErrorKind.UNAVAILABLE,
                        "Payment provider returned an unreadable response",
                        resp.status_code,
                    )
                )
            if not isinstance(body, dict):
                return GatewayResult.fail(
                    ProviderError(
                        ProviderErrorKind.REJECTED,
                        "Payment provider returned an unexpected response",
                        resp.status_code,
                    )
                )
            return GatewayResult.ok(body)

        error = classify_error(resp)
        logger.warning(
            "PayPal %s %s rejected: %s %s (%s)",
            method,
            path,
            resp.status_code,
            error.issue,
            error.kind,
        )
        return GatewayResult.fail(error)

    # ── 注文作成 ──────────────────────────────────

    async def create_provider_order(
        self,
        amount_cents: int,
        currency: str,
        line_items: list[PricedLine],
        reference_id: str,
        request_id: str | None = None,
    ) -> GatewayResult[ProviderOrder]:
        payload = build_order_payload(
            self.settings, amount_cents, currency, line_items, reference_id
        )
        result = await self._request(
            "POST",
            "/v2/checkout/orders",
            payload,
            request_id=request_id or generate_request_id(),
        )
        if not result.success:
            return GatewayResult.fail(result.error)

        body = result.value
        if not body.get("id"):
            return GatewayResult.fail(_missing_order_id())
        return GatewayResult.ok(
            ProviderOrder(
                id=body["id"],
                status=body.get("status", ""),
                approval_url=_approval_url(body),
            )
        )

    # ── キャプチャ ─────────────────────────────────

    async def capture_provider_order(
        self, provider_order_id: str, request_id: str | None = None
    ) -> GatewayResult[ProviderCapture]:
        result = await self._request(
            "POST",
            f"/v2/checkout/orders/{provider_order_id}/capture",
            {},
            request_id=request_id or generate_request_id(),
        )
        if not result.success:
            return GatewayResult.fail(result.error)

        capture = _first_capture(result.value)
        capture_status = capture.get("status") or result.value.get("status", "")
        if capture_status in ("DECLINED", "FAILED"):
            return GatewayResult.fail(
                ProviderError(
                    ProviderErrorKind.DECLINED,
                    f"Capture {capture_status.lower()}",
                    issue=capture_status,
                )
            )
        if capture_status not in ("COMPLETED", "PENDING"):
            return GatewayResult.fail(
                ProviderError(
                    ProviderErrorKind.REJECTED,
                    f"Unexpected capture status: {capture_status}",
                    issue=capture_status,
                )
            )
        return GatewayResult.ok(
            ProviderCapture(capture_id=capture.get("id"), status=capture_status)
        )

    # ── 照会 ─────────────────────────────────────

    async def get_provider_order(
        self, provider_order_id: str
    ) -> GatewayResult[ProviderOrder]:
        result = await self._request("GET", f"/v2/checkout/orders/{provider_order_id}")
        if not result.success:
            return GatewayResult.fail(result.error)

        body = result.value
        if not body.get("id"):
            return GatewayResult.fail(_missing_order_id())
        return GatewayResult.ok(
            ProviderOrder(
                id=body["id"],
                status=body.get("status", ""),
                approval_url=_approval_url(body),
                capture_id=_first_capture(body).get("id"),
            )
        )

    # ── Webhook 署名検証 ──────────────────────────

    async def verify_webhook_signature(
        self, event: dict, headers: Mapping[str, str]
    ) -> bool:
        """
        PayPal の verify-webhook-signature API で署名を検証する。

        ヘッダーの欠落・通信失敗・検証失敗はいずれも False。
        """
        normalized = {k.lower(): v for k, v in headers.items()}
        missing = [h for h in WEBHOOK_SIGNATURE_HEADERS if not normalized.get(h)]
        if missing:
            logger.warning("Webhook is missing signature headers: %s", ", ".join(missing))
            return False
        if not self.settings.paypal_webhook_id:
            logger.error("PAYPAL_WEBHOOK_ID is not configured; rejecting webhook")
            return False

        result = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            {
                "auth_algo": normalized["paypal-auth-algo"],
                "cert_url": normalized["paypal-cert-url"],
                "transmission_id": normalized["paypal-transmission-id"],
                "transmission_sig": normalized["paypal-transmission-sig"],
                "transmission_time": normalized["paypal-transmission-time"],
                "webhook_id": self.settings.paypal_webhook_id,
                "webhook_event": event,
            },
        )
        if not result.success:
            return False
        return result.value.get("verification_status") == "SUCCESS"


# ── ヘルパー ──────────────────────────────────────


def generate_request_id() -> str:
    return uuid.uuid4().hex


def build_order_payload(
    settings: Settings,
    amount_cents: int,
    currency: str,
    line_items: list[PricedLine],
    reference_id: str,
) -> dict:
    """
    PayPal v2 の注文作成リクエストを組み立てる。

    明細がある場合は item_total の内訳を付ける。PayPal は内訳と合計の
    一致を検証するため、明細合計と amount が食い違う場合は内訳を付けない。
    """
    amount = {"currency_code": currency, "value": format_amount(amount_cents)}
    items = [
        {
            "name": (line.name or line.product_code)[:127],
            "sku": line.product_code,
            "description": f"Talla: {line.size}",
            "quantity": str(line.quantity),
            "unit_amount": {
                "currency_code": currency,
                "value": format_amount(line.unit_price_cents),
            },
        }
        for line in line_items
    ]
    purchase_unit = {
        "reference_id": reference_id,
        "custom_id": reference_id,
        "description": f"Compra en {settings.brand_name}",
        "amount": amount,
    }
    if items and cart_total_cents(line_items) == amount_cents:
        amount["breakdown"] = {
            "item_total": {"currency_code": currency, "value": format_amount(amount_cents)}
        }
        purchase_unit["items"] = items

    base_url = settings.base_url.rstrip("/")
    return {
        "intent": "CAPTURE",
        "purchase_units": [purchase_unit],
        "application_context": {
            "brand_name": settings.brand_name,
            "landing_page": "BILLING",
            "shipping_preference": "GET_FROM_FILE",
            "user_action": "PAY_NOW",
            "return_url": f"{base_url}/checkout/return",
            "cancel_url": f"{base_url}/checkout/cancelled",
        },
    }


def classify_error(resp: httpx.Response) -> ProviderError:
    """HTTP ステータスと PayPal の details[].issue からエラー種別を決める。"""
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    details = body.get("details") or [{}]
    issue = details[0].get("issue") if isinstance(details[0], dict) else None
    message = body.get("message") or body.get("name") or resp.reason_phrase

    if resp.status_code >= 500 or resp.status_code in (401, 408, 429):
        kind = ProviderErrorKind.UNAVAILABLE
    elif issue == "ORDER_ALREADY_CAPTURED":
        kind = ProviderErrorKind.ALREADY_CAPTURED
    elif issue == "ORDER_NOT_APPROVED":
        kind = ProviderErrorKind.NOT_APPROVED
    elif issue in _DECLINED_ISSUES:
        kind = ProviderErrorKind.DECLINED
    elif issue in _EXPIRED_ISSUES or resp.status_code == 404:
        kind = ProviderErrorKind.EXPIRED
    else:
        kind = ProviderErrorKind.REJECTED
    return ProviderError(kind, message, resp.status_code, issue)


def _missing_order_id() -> ProviderError:
    return ProviderError(
        ProviderErrorKind.REJECTED, "Payment provider response has no order id"
    )


def _approval_url(body: dict) -> str | None:
    for link in body.get("links", []):
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


def _first_capture(body: dict) -> dict:
    for unit in body.get("purchase_units", []):
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return {}
