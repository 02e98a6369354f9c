"""
Pytest configuration and fixtures.
"""
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, Optional
from unittest.mock import AsyncMock
from urllib.parse import urlencode

# Settings are read once per process; set them before the app is imported.
os.environ.setdefault("CCAVENUE_MERCHANT_ID", "45990")
os.environ.setdefault("CCAVENUE_ACCESS_CODE", "AVTEST00KL12AB34CD")
os.environ.setdefault("CCAVENUE_WORKING_KEY", "0123456789ABCDEF0123456789ABCDEF")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("FRONTEND_URL", "https://app.example.test")
os.environ.setdefault("BACKEND_URL", "https://api.example.test")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from service_payments.api import dependencies
from service_payments.api.main import app
from service_payments.config import Settings, get_settings
from service_payments.core.initiator import PaymentInitiator
from service_payments.core.ledger import OrderLedger
from service_payments.core.link_issuer import PaymentLinkIssuer
from service_payments.core.milestones import MilestoneDraft, MilestoneService
from service_payments.core.orders import OrderDraft, OrderService
from service_payments.core.reconciler import CallbackReconciler
from service_payments.database.connection import get_db
from service_payments.database.models import Base, PaymentMethod
from service_payments.integrations.ccavenue_client import CCAvenueClient
from service_payments.integrations.email_client import EmailClient

ADMIN_API_KEY = "test-admin-key"


@pytest.fixture
def test_settings() -> Settings:
    """Settings loaded from the test environment."""
    return get_settings()


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[Any, Any]:
    """In-memory sqlite engine shared by every session of one test."""
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
def session_factory(engine: Any) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def email_client() -> AsyncMock:
    """SMTP is never touched in tests."""
    client = AsyncMock(spec=EmailClient)
    client.send_payment_link_email.return_value = None
    return client


@pytest.fixture
def ledger(test_settings: Settings) -> OrderLedger:
    return OrderLedger(test_settings)


@pytest.fixture
def gateway(test_settings: Settings) -> CCAvenueClient:
    return CCAvenueClient(test_settings)


@pytest.fixture
def issuer(test_settings: Settings, email_client: AsyncMock, ledger: OrderLedger) -> PaymentLinkIssuer:
    return PaymentLinkIssuer(test_settings, email_client, ledger)


@pytest.fixture
def initiator(
    test_settings: Settings,
    gateway: CCAvenueClient,
    ledger: OrderLedger,
    issuer: PaymentLinkIssuer,
) -> PaymentInitiator:
    return PaymentInitiator(test_settings, gateway, ledger, issuer)


@pytest.fixture
def redis_client() -> AsyncMock:
    """Dedup cache that has seen nothing yet."""
    client = AsyncMock()
    client.exists.return_value = 0
    client.setex.return_value = True
    return client


@pytest.fixture
def reconciler(
    test_settings: Settings,
    gateway: CCAvenueClient,
    ledger: OrderLedger,
    redis_client: AsyncMock,
) -> CallbackReconciler:
    return CallbackReconciler(test_settings, gateway, ledger, redis_client)


@pytest.fixture
def order_service(test_settings: Settings, ledger: OrderLedger) -> OrderService:
    return OrderService(test_settings, ledger)


@pytest.fixture
def milestone_service(test_settings: Settings, ledger: OrderLedger) -> MilestoneService:
    return MilestoneService(test_settings, ledger)


@pytest.fixture
def order_draft() -> Callable[..., OrderDraft]:
    """Factory for an online-payment service request of 5000 AED."""

    def _draft(
        total_price: Optional[Decimal] = Decimal("5000.00"),
        payment_method: str = PaymentMethod.ONLINE_PAYMENT.value,
    ) -> OrderDraft:
        return OrderDraft(
            user_name="Aisha Khan",
            user_email="aisha@example.com",
            user_phone="+971500000000",
            service_name="AC Maintenance",
            category_name="Home Services",
            request_type="Scheduled",
            requested_date=datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc),
            address="Marina Walk, Dubai",
            total_price=total_price,
            payment_method=payment_method,
        )

    return _draft


@pytest_asyncio.fixture
async def online_order(
    test_db: AsyncSession,
    order_service: OrderService,
    order_draft: Callable[..., OrderDraft],
) -> Dict[str, Any]:
    """A persisted online-payment service request."""
    return await order_service.create_order(test_db, order_draft())


@pytest_asyncio.fixture
async def milestone_order(
    test_db: AsyncSession,
    online_order: Dict[str, Any],
    milestone_service: MilestoneService,
) -> Dict[str, Any]:
    """The online order split into a 30% deposit and a 70% completion milestone."""
    return await milestone_service.create_milestones(
        test_db,
        online_order["id"],
        [
            MilestoneDraft(name="Deposit", percentage=Decimal("30")),
            MilestoneDraft(name="Completion", percentage=Decimal("70")),
        ],
    )


@pytest.fixture
def gateway_response(gateway: CCAvenueClient) -> Callable[..., str]:
    """Build an encrypted ``encResponse`` the way the gateway would."""

    def _response(
        order_id: str,
        order_status: str = "Success",
        tracking_id: str = "310009876543",
        amount: str = "5000.00",
        **extra: str,
    ) -> str:
        fields = {
            "order_id": order_id,
            "tracking_id": tracking_id,
            "bank_ref_no": "BRN-" + tracking_id,
            "order_status": order_status,
            "failure_message": "",
            "payment_mode": "Credit Card",
            "status_message": "Transaction Successful" if order_status == "Success" else order_status,
            "amount": amount,
            "currency": "AED",
            "trans_date": "17/10/2026 10:15:00",
        }
        fields.update(extra)
        return gateway.codec.encrypt(urlencode(fields))

    return _response


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-API-Key": ADMIN_API_KEY}


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    issuer: PaymentLinkIssuer,
    initiator: PaymentInitiator,
    reconciler: CallbackReconciler,
    order_service: OrderService,
    milestone_service: MilestoneService,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client over the app with test services and database."""

    async def _get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[dependencies.get_issuer] = lambda: issuer
    app.dependency_overrides[dependencies.get_initiator] = lambda: initiator
    app.dependency_overrides[dependencies.get_reconciler] = lambda: reconciler
    app.dependency_overrides[dependencies.get_order_service] = lambda: order_service
    app.dependency_overrides[dependencies.get_milestone_service] = lambda: milestone_service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
