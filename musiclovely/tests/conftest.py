"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

from src.config import get_settings
from src.database import Base
from src.models.order import Order, OrderStatus, PROVIDER_CAKTO
from src.models.quiz import Quiz

WEBHOOK_SECRET = "cakto_test_secret"
INTERNAL_KEY = "internal_test_key"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings: no real collaborators, no sleeps."""
    env = {
        "CAKTO_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "INTERNAL_SERVICE_KEY": INTERNAL_KEY,
        "CAKTO_EMPTY_STATUS_MEANS_APPROVED": "false",
        "NOTIFICATION_RECHECK_DELAY_MS": "0",
        "DUPLICATE_WEBHOOK_WINDOW_SECONDS": "30",
        "LYRICS_GENERATION_URL": "",
        "LYRICS_GENERATION_BACKOFF_SECONDS": "0",
        "SENDGRID_API_KEY": "",
        "ALERT_WEBHOOK_URL": "",
        "ALERT_RECIPIENT_EMAIL": "",
        "SENTRY_DSN": "",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def mock_redis(monkeypatch):
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.ping = AsyncMock(return_value=True)
    monkeypatch.setattr("src.utils.redis_client._redis_client", redis_mock)
    monkeypatch.setattr("src.utils.alerting._local_cooldowns", {})
    return redis_mock


@pytest.fixture
async def db_engine():
    """Shared in-memory SQLite engine (one connection, so every session sees the same data)."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def isolated_sessions(tmp_path):
    """
    File-backed SQLite with one connection per session, for concurrent deliveries.

    Every transaction starts with BEGIN IMMEDIATE, so concurrent sessions queue
    on the write lock (busy timeout) instead of sharing one connection's
    transaction or failing with "database is locked".
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"timeout": 15},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_confirmation_email():
    """Mock for send_payment_confirmation - prevents real SendGrid calls in tests."""
    with patch(
        "src.services.payment_notifications.send_payment_confirmation",
        new_callable=AsyncMock,
    ) as mock:
        mock.return_value = {"message_id": "sg_msg_123", "status": "sent", "error": None}
        yield mock


@pytest.fixture
def mock_lyrics():
    """Mock for the lyrics trigger as called by the reconciliation pipeline."""
    with patch(
        "src.services.payment_reconciliation.trigger_lyrics_generation",
        new_callable=AsyncMock,
    ) as mock:
        mock.return_value = True
        yield mock


@pytest.fixture
def make_order(db):
    """Factory for a quiz + pending Cakto order."""
    counter = {"n": 0}

    async def _make(**overrides) -> Order:
        counter["n"] += 1
        quiz = Quiz(
            session_id=uuid.uuid4(),
            about_who="Maria",
            style="sertanejo",
            answers={"occasion": "aniversario"},
            customer_email=overrides.get("customer_email", "buyer@example.com"),
        )
        db.add(quiz)
        await db.flush()
        fields = {
            "quiz_id": quiz.id,
            "status": OrderStatus.PENDING,
            "plan": "standard",
            "amount_cents": 4790,
            "provider": PROVIDER_CAKTO,
            "customer_email": "buyer@example.com",
            "customer_whatsapp": "+55 11 98765-4321",
            # Strictly increasing so "most recent" is deterministic
            "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["n"]),
        }
        fields.update(overrides)
        order = Order(**fields)
        db.add(order)
        await db.commit()
        return order

    return _make


def approved_payload(order_id=None, **data_overrides) -> dict:
    """Current Cakto purchase_approved payload shape."""
    data = {
        "id": "tx_abc123456",
        "status": "paid",
        "amount": 47.90,
        "paidAt": "2026-01-10T12:00:00Z",
        "customer": {"email": "buyer@example.com", "phone": "5511987654321"},
    }
    if order_id:
        data["checkoutUrl"] = f"https://pay.cakto.com.br/abc?order_id={order_id}"
    data.update(data_overrides)
    return {"event": "purchase_approved", "data": data}
