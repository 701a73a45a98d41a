"""
Checkout Service — FastAPI エントリーポイント

チェックアウト Saga を HTTP API として公開する。

  POST /checkout/initiate   カート → 在庫引き当て + 注文作成 + プロバイダ注文
  POST /checkout/capture    顧客承認後のキャプチャ
  POST /checkout/cancel     顧客によるキャンセル
  POST /checkout/webhook    プロバイダからの決済結果通知
  GET  /queries/...         カタログ在庫・注文・累計購入額の照会

顧客 ID は上流のセッション層が X-Customer-Id ヘッダーで渡す不透明な値。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from urllib.parse import urlencode

import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, Header, HTTPException, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse

from . import queries
from .cart import format_amount
from .config import Settings
from .db import create_engine, create_schema, create_session_factory
from .errors import AlreadyCaptured, CheckoutError, InvalidCart, SignatureInvalid
from .gateway import PaymentGateway, PayPalGateway
from .orchestrator import CheckoutOrchestrator
from .publisher import EventPublisher
from .schemas import InitiateCheckoutRequest, ProviderOrderRequest
from .sweeper import run_sweeper
from .webhooks import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


def create_app(
    settings: Settings | None = None,
    *,
    gateway: PaymentGateway | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    """
    アプリを組み立てる。

    gateway / redis を渡した場合はそれを使い、終了時にも閉じない
    (テストや別プロセスと共有する場合)。
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_engine(settings.database_url)
        await create_schema(engine)
        session_factory = create_session_factory(engine)

        redis_conn = redis
        if redis_conn is None:
            redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)

        payment_gateway = gateway
        if payment_gateway is None:
            missing = settings.missing_paypal_settings()
            if missing:
                logger.warning("PayPal is not fully configured: %s", ", ".join(missing))
            payment_gateway = PayPalGateway(settings)

        orchestrator = CheckoutOrchestrator(
            session_factory,
            payment_gateway,
            EventPublisher(redis_conn),
            currency=settings.currency,
        )
        app.state.settings = settings
        app.state.session_factory = session_factory
        app.state.orchestrator = orchestrator
        app.state.reconciler = WebhookReconciler(
            orchestrator, payment_gateway, session_factory
        )

        shutdown_event = asyncio.Event()
        sweeper_task = None
        if settings.sweep_interval_seconds > 0:
            sweeper_task = asyncio.create_task(
                run_sweeper(orchestrator, settings, shutdown_event)
            )

        yield

        shutdown_event.set()
        if sweeper_task is not None:
            sweeper_task.cancel()
            try:
                await sweeper_task
            except asyncio.CancelledError:
                pass
        if gateway is None:
            await payment_gateway.aclose()
        if redis is None:
            await redis_conn.aclose()
        await engine.dispose()

    app = FastAPI(title="Storefront Checkout Service", lifespan=lifespan)
    app.add_exception_handler(CheckoutError, handle_checkout_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.include_router(router)
    return app


async def handle_checkout_error(request: Request, exc: CheckoutError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s -> %s", request.method, request.url.path, exc.kind)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def handle_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """チェックアウト系の不正な入力は InvalidCart (400) として返す。"""
    if not request.url.path.startswith("/checkout/"):
        return await request_validation_exception_handler(request, exc)
    fields = [
        {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
        for error in exc.errors()
    ]
    return await handle_checkout_error(
        request, InvalidCart("Malformed request body", fields=fields)
    )


# ── Command Endpoints ────────────────────────────


@router.post("/checkout/initiate")
async def initiate_checkout(
    req: InitiateCheckoutRequest,
    request: Request,
    x_customer_id: str | None = Header(default=None),
):
    """カートのスナップショットでチェックアウトを開始する。"""
    started = await request.app.state.orchestrator.initiate_checkout(
        req.lines, x_customer_id
    )
    return {
        "providerOrderId": started.provider_order_id,
        "localOrderId": started.local_order_id,
        "approvalUrl": started.approval_url,
        "total": format_amount(started.total_cents),
        "currency": started.currency,
    }


@router.post("/checkout/capture")
async def capture_checkout(req: ProviderOrderRequest, request: Request):
    """承認済みの支払いをキャプチャする。2 回目以降は AlreadyCaptured (200)。"""
    outcome = await request.app.state.orchestrator.capture_checkout(
        req.provider_order_id
    )
    return {
        "captureId": outcome.capture_id,
        "localOrderId": outcome.local_order_id,
        "status": outcome.status,
    }


@router.post("/checkout/cancel")
async def cancel_checkout(req: ProviderOrderRequest, request: Request):
    outcome = await request.app.state.orchestrator.cancel_checkout(
        req.provider_order_id
    )
    return {"localOrderId": outcome.order.id, "status": outcome.status}


@router.post("/checkout/webhook")
async def checkout_webhook(request: Request):
    """
    プロバイダの Webhook。

    署名検証に失敗したら 400。それ以外は対応付けできない
    イベントも含めて 200 を返し、プロバイダの再送を止める。
    """
    try:
        event = await request.json()
    except ValueError:
        raise SignatureInvalid("Webhook payload is not valid JSON") from None
    if not isinstance(event, dict):
        raise SignatureInvalid("Webhook payload must be a JSON object")

    outcome = await request.app.state.reconciler.handle(event, request.headers)
    return {"success": True, "action": outcome.action}


# ── プロバイダからのリダイレクト ─────────────────


@router.get("/checkout/return")
async def checkout_return(request: Request, token: str | None = None):
    """承認後に PayPal から戻ってきた顧客の支払いをキャプチャする。"""
    if not token:
        return _redirect("/payment-error", message="orden-no-encontrada")
    try:
        outcome = await request.app.state.orchestrator.capture_checkout(token)
    except AlreadyCaptured as e:
        return _redirect("/payment-success", orderId=e.order_id, captureId=e.capture_id or "")
    except CheckoutError as e:
        return _redirect("/payment-error", message=e.kind)
    return _redirect(
        "/payment-success",
        orderId=outcome.local_order_id,
        captureId=outcome.capture_id or "",
        status=outcome.status,
    )


@router.get("/checkout/cancelled")
async def checkout_cancelled(request: Request, token: str | None = None):
    if token:
        try:
            await request.app.state.orchestrator.cancel_checkout(token)
        except CheckoutError as e:
            logger.info("Cancel return for %s: %s", token, e.kind)
    return _redirect("/payment-cancelled")


@router.get("/checkout/client-config")
async def client_config(request: Request):
    """フロントエンドの PayPal SDK 用設定"""
    settings = request.app.state.settings
    return {
        "clientId": settings.paypal_client_id,
        "environment": "production" if settings.paypal_environment == "live" else "sandbox",
        "currency": settings.currency,
    }


def _redirect(path: str, **params) -> RedirectResponse:
    if params:
        path = f"{path}?{urlencode(params)}"
    return RedirectResponse(path, status_code=303)


# ── Query Endpoints (Read 側) ────────────────────


@router.get("/queries/inventory")
async def query_list_inventory(request: Request, available: bool = False):
    """在庫一覧（カタログ表示用）"""
    async with request.app.state.session_factory() as session:
        return await queries.list_slots(session, available_only=available)


@router.get("/queries/inventory/{product_code}/{size}")
async def query_get_inventory(product_code: str, size: str, request: Request):
    async with request.app.state.session_factory() as session:
        slot = await queries.get_slot(session, product_code, size)
        if not slot:
            raise HTTPException(404, "Inventory slot not found")
        return slot


@router.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str, request: Request):
    async with request.app.state.session_factory() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@router.get("/queries/customers/{owner_id}/orders")
async def query_order_history(owner_id: str, request: Request):
    """顧客の注文履歴"""
    async with request.app.state.session_factory() as session:
        return await queries.list_orders_for_owner(session, owner_id)


@router.get("/queries/customers/{owner_id}/spend")
async def query_customer_spend(owner_id: str, request: Request):
    async with request.app.state.session_factory() as session:
        return await queries.get_spend(session, owner_id)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "checkout-service"}


app = create_app()
