"""Shared pytest fixtures for the checkout service tests."""

import pytest
from sqlalchemy import select

from storefront import inventory, queries
from storefront.config import Settings
from storefront.db import create_engine, create_schema, create_session_factory, transactions
from storefront.orchestrator import CheckoutOrchestrator
from storefront.publisher import EventPublisher
from storefront.webhooks import WebhookReconciler

from fakes import FakeGateway, RecordingRedis


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/checkout.db",
        paypal_client_id="client-id",
        paypal_client_secret="client-secret",
        paypal_webhook_id="WH-TEST",
        paypal_timeout_seconds=2.0,
        sweep_interval_seconds=0,
    )


@pytest.fixture
async def session_factory(settings):
    engine = create_engine(settings.database_url)
    await create_schema(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def orchestrator(session_factory, gateway, redis):
    return CheckoutOrchestrator(
        session_factory, gateway, EventPublisher(redis), currency="MXN"
    )


@pytest.fixture
def reconciler(orchestrator, gateway, session_factory):
    return WebhookReconciler(orchestrator, gateway, session_factory)


@pytest.fixture
def seed(session_factory):
    async def _seed(product_code, size, stock, active=True):
        async with session_factory() as session, session.begin():
            await inventory.upsert_slot(session, product_code, size, stock, active)

    return _seed


@pytest.fixture
def stock_of(session_factory):
    async def _stock_of(product_code, size):
        async with session_factory() as session:
            slot = await queries.get_slot(session, product_code, size)
            return slot["stock"]

    return _stock_of


@pytest.fixture
def order_of(session_factory):
    async def _order_of(order_id):
        async with session_factory() as session:
            return await queries.get_order(session, order_id)

    return _order_of


@pytest.fixture
def spend_of(session_factory):
    async def _spend_of(owner_id):
        async with session_factory() as session:
            return (await queries.get_spend(session, owner_id))["totalSpent"]

    return _spend_of


@pytest.fixture
def transaction_statuses(session_factory):
    async def _statuses(order_id):
        async with session_factory() as session:
            result = await session.execute(
                select(transactions.c.status).where(transactions.c.order_id == order_id)
            )
            return list(result.scalars())

    return _statuses
