"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Fake Redis and a fake external transaction status API
- Test data factories (tickets, transactions)
"""
import json
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db.database import Base, get_db
from app.db.models.ticket import Ticket, TicketPriority, TicketStatus
from app.db.models.transaction import Transaction, TransactionStatus
from app.domain.services.status_source import ExternalStatus
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session() as session:
        yield session


@pytest.fixture
async def test_client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database override"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    # מונה ה-rate limit של webhooks חי בתוך ה-middleware stack - בנייה מחדש לכל בדיקה
    app.middleware_stack = None

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# External services
# ============================================================================

@pytest.fixture(autouse=True)
def offline_settings():
    """כל הספקים החיצוניים במצב סימולציה, ללא סודות webhook"""
    with patch.object(settings, "RESEND_API_KEY", ""), \
         patch.object(settings, "WHATSAPP_CLOUD_API_TOKEN", ""), \
         patch.object(settings, "WHATSAPP_CLOUD_API_PHONE_ID", ""), \
         patch.object(settings, "WHATSAPP_APP_SECRET", ""), \
         patch.object(settings, "WHATSAPP_VERIFY_TOKEN", ""), \
         patch.object(settings, "TRANSACTION_API_URL", ""), \
         patch.object(settings, "TRANSACTION_API_KEY", ""), \
         patch.object(settings, "TRANSACTION_WEBHOOK_SECRET", ""), \
         patch.object(settings, "CRM_WEBHOOK_SECRET", ""), \
         patch.object(settings, "SUPPORT_EMAILS", "support@company.com"), \
         patch.object(settings, "ADMIN_EMAILS", ""):
        yield


@pytest.fixture(autouse=True)
def reset_singletons():
    """איפוס ספקי WhatsApp/מייל ו-circuit breakers בין בדיקות"""
    from app.core.circuit_breaker import CircuitBreaker
    from app.domain.services.whatsapp.provider_factory import reset_providers

    CircuitBreaker.reset_all()
    reset_providers()
    with patch("app.domain.services.email_service._email_service", None):
        yield
    CircuitBreaker.reset_all()
    reset_providers()


class FakeStatusSource:
    """תחליף ל-API הסטטוסים החיצוני - סטטוסים מוגדרים מראש לפי מזהה.

    מזהה שלא הוגדר מחזיר None (כמו כשל רשת), וכך גם מזהה ב-failing.
    """

    def __init__(self) -> None:
        self.statuses: dict[str, ExternalStatus] = {}
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def set_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        amount: str = "100.00",
        currency: str = "USD",
        **metadata: Any,
    ) -> None:
        self.statuses[transaction_id] = ExternalStatus(
            transaction_id=transaction_id,
            status=status,
            amount=Decimal(amount),
            currency=currency,
            payment_method="credit_card",
            gateway_response={"response_code": "00"},
            metadata=metadata,
        )

    async def fetch_status(self, transaction_id: str) -> Optional[ExternalStatus]:
        self.calls.append(transaction_id)
        if transaction_id in self.failing:
            return None
        return self.statuses.get(transaction_id)


@pytest.fixture(autouse=True)
def status_source() -> FakeStatusSource:
    """מחליף את ה-singleton של get_status_source ב-FakeStatusSource"""
    fake = FakeStatusSource()
    with patch("app.domain.services.status_source._status_source", fake):
        yield fake


class FakePubSub:
    """pubsub מינימלי - מחזיר הודעות שהוכנסו מראש לפי הסדר"""

    def __init__(self, messages: list[dict[str, Any]]) -> None:
        self._messages = messages
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, channel: str) -> None:
        self.channels.add(channel)

    async def unsubscribe(self, channel: str) -> None:
        self.channels.discard(channel)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        if self._messages:
            return self._messages.pop(0)
        return None

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict + רשימות + רישום publish."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._lists: dict[str, list[str]] = {}
        self.published: list[tuple[str, str]] = []
        self.pending_messages: list[dict[str, Any]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._lists.pop(key, None)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    async def lpush(self, key: str, *values: str) -> int:
        items = self._lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        items = self._lists.get(key, [])
        self._lists[key] = items[start:end + 1]
        return True

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._lists.get(key, [])
        return items[start:end + 1] if end >= 0 else items[start:]

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self.pending_messages)

    def published_events(self) -> list[dict[str, Any]]:
        """האירועים שפורסמו, מפוענחים מ-JSON"""
        return [json.loads(message) for _, message in self.published]

    async def aclose(self) -> None:
        self._store.clear()
        self._lists.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את ה-singleton של Redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()
    with patch("app.core.redis_client._redis_client", _fake):
        yield _fake


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def ticket_factory(db_session: AsyncSession):
    """Factory for creating test tickets directly in the DB (no notifications)"""
    counter = {"n": 0}

    async def _create_ticket(
        customer_email: str = "customer@example.com",
        subject: str = "Payment not received",
        status: TicketStatus = TicketStatus.OPEN,
        priority: TicketPriority = TicketPriority.MEDIUM,
        **kwargs: Any,
    ) -> Ticket:
        counter["n"] += 1
        ticket = Ticket(
            ticket_number=kwargs.pop("ticket_number", f"TK1700000000000{counter['n']}"),
            customer_email=customer_email,
            subject=subject,
            status=status,
            priority=priority,
            tags=kwargs.pop("tags", []),
            metadata_=kwargs.pop("metadata", {}),
            **kwargs,
        )
        db_session.add(ticket)
        await db_session.commit()
        await db_session.refresh(ticket)
        return ticket

    return _create_ticket


@pytest.fixture
def transaction_factory(db_session: AsyncSession):
    """Factory for creating test transactions directly in the DB"""
    counter = {"n": 0}

    async def _create_transaction(
        transaction_id: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.PENDING,
        amount: str = "100.00",
        payer_email: str = "payer@example.com",
        merchant_email: str = "merchant@example.com",
        **kwargs: Any,
    ) -> Transaction:
        counter["n"] += 1
        transaction = Transaction(
            transaction_id=transaction_id or f"txn_{counter['n']:04d}",
            payer_email=payer_email,
            merchant_email=merchant_email,
            amount=Decimal(amount),
            currency=kwargs.pop("currency", "USD"),
            status=status,
            gateway_response={},
            metadata_=kwargs.pop("metadata", {}),
            **kwargs,
        )
        db_session.add(transaction)
        await db_session.commit()
        await db_session.refresh(transaction)
        return transaction

    return _create_transaction
