"""
Pytest configuration and fixtures.
"""
import os

# Settings are read at import time by the application module
os.environ.setdefault("GATEWAY_API_KEY", "ek_test_api_key")
os.environ.setdefault("GATEWAY_HMAC_SECRET", "da9fe30575517d987762a859842b5631")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "admin-test-key")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import uuid
from typing import Any, AsyncGenerator, Callable, Dict, List

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from storefront_payments.config import Settings, get_settings
from storefront_payments.core.attempt_guard import DatabaseAttemptGuard, LockoutPolicy
from storefront_payments.core.discrepancies import DiscrepancyLog
from storefront_payments.core.initiation import PaymentInitiator
from storefront_payments.core.orders import CustomerInfo, OrderLine, OrderStore
from storefront_payments.core.payments import PaymentMethod, PaymentStore
from storefront_payments.core.reconciler import CallbackReconciler
from storefront_payments.database.connection import create_session_factory, init_db
from storefront_payments.database.models import Order, Payment, PaymentEvent, Product
from storefront_payments.integrations.easykash import CircuitBreaker, GatewayClient, compute_signature


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "race: concurrent access tests")
    config.addinivalue_line("markers", "integration: tests through the HTTP API")


class FakeGateway:
    """httpx MockTransport handler standing in for the EasyKash API."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.behaviour = "ok"  # ok, reject, timeout, connect_error, no_redirect
        self.product_code = "EDV4471"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.behaviour == "timeout":
            raise httpx.ReadTimeout("gateway timed out", request=request)
        if self.behaviour == "connect_error":
            raise httpx.ConnectError("connection refused", request=request)
        if self.behaviour == "reject":
            return httpx.Response(400, json={"message": "Invalid amount"})
        if self.behaviour == "no_redirect":
            return httpx.Response(200, json={})
        return httpx.Response(
            200,
            json={"redirectUrl": f"https://www.easykash.net/DirectPayV1/{self.product_code}"},
        )


@pytest.fixture
def test_settings() -> Settings:
    """Settings built from the test environment."""
    return get_settings()


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[Any, Any]:
    """File-backed SQLite database per test so separate sessions really are separate."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}",
        poolclass=NullPool,
    )
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: Any) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def products(test_db: AsyncSession) -> Dict[str, Product]:
    """Catalog: 50.00 and 100.00 items, plus an inactive and a sold-out one."""
    catalog = {
        "mug": Product(id=uuid.uuid4(), name="Ceramic Mug", price_cents=5000, stock=10),
        "lamp": Product(id=uuid.uuid4(), name="Desk Lamp", price_cents=10000, stock=5),
        "retired": Product(
            id=uuid.uuid4(), name="Old Poster", price_cents=2000, stock=3, is_active=False
        ),
        "sold_out": Product(id=uuid.uuid4(), name="Vinyl Record", price_cents=3000, stock=0),
    }
    test_db.add_all(catalog.values())
    await test_db.commit()
    return catalog


@pytest.fixture
def customer() -> CustomerInfo:
    return CustomerInfo(
        name="Mona Adel",
        phone="01000000000",
        email="mona@example.com",
        shipping_address="12 Tahrir St, Cairo",
    )


@pytest.fixture
def order_store() -> OrderStore:
    return OrderStore("EGP")


@pytest.fixture
def payment_store() -> PaymentStore:
    return PaymentStore()


@pytest_asyncio.fixture
async def order(
    test_db: AsyncSession,
    products: Dict[str, Product],
    order_store: OrderStore,
    customer: CustomerInfo,
) -> Order:
    """Pending order with two items totalling 150.00."""
    return await order_store.create_order(
        items=[
            OrderLine(product_id=products["mug"].id, quantity=1),
            OrderLine(product_id=products["lamp"].id, quantity=1),
        ],
        customer=customer,
        db=test_db,
    )


@pytest_asyncio.fixture
async def pending_payment(
    test_db: AsyncSession, order: Order, payment_store: PaymentStore
) -> Payment:
    """Pending EasyKash payment for ``order`` with correlation reference R1."""
    payment = await payment_store.create_pending_payment(
        order_id=order.id,
        method=PaymentMethod.EASYKASH,
        amount_cents=order.total_cents,
        currency=order.currency,
        correlation_ref="R1",
        db=test_db,
    )
    await test_db.commit()
    return payment


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def gateway_client(
    test_settings: Settings, fake_gateway: FakeGateway
) -> AsyncGenerator[GatewayClient, Any]:
    client = GatewayClient(
        test_settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_gateway)),
        circuit_breaker=CircuitBreaker(failure_threshold=100),
        retry_wait_seconds=0,
    )
    yield client
    await client.aclose()


@pytest.fixture
def attempt_guard(
    test_settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> DatabaseAttemptGuard:
    return DatabaseAttemptGuard(LockoutPolicy.from_settings(test_settings), session_factory)


@pytest.fixture
def reconciler(
    gateway_client: GatewayClient, payment_store: PaymentStore, order_store: OrderStore
) -> CallbackReconciler:
    return CallbackReconciler(
        gateway_client=gateway_client,
        payment_store=payment_store,
        order_store=order_store,
        discrepancies=DiscrepancyLog(),
    )


@pytest.fixture
def initiator(
    gateway_client: GatewayClient,
    attempt_guard: DatabaseAttemptGuard,
    order_store: OrderStore,
    payment_store: PaymentStore,
    test_settings: Settings,
) -> PaymentInitiator:
    return PaymentInitiator(
        gateway_client=gateway_client,
        attempt_guard=attempt_guard,
        order_store=order_store,
        payment_store=payment_store,
        settings=test_settings,
    )


@pytest.fixture
def make_callback(test_settings: Settings) -> Callable[..., Dict[str, Any]]:
    """Build a gateway callback body signed with the configured secret."""

    def _make(
        reference: str = "R1",
        status: str = "PAID",
        amount: str = "150.00",
        secret: str | None = None,
        **overrides: Any,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ProductCode": "EDV4471",
            "PaymentMethod": "Cash Through Fawry",
            "ProductType": "Direct Pay",
            "Amount": amount,
            "BuyerEmail": "mona@example.com",
            "BuyerMobile": "01000000000",
            "BuyerName": "Mona Adel",
            "Timestamp": "1700000000",
            "status": status,
            "voucher": "",
            "easykashRef": "2911105009",
            "VoucherData": "Direct Pay",
            "customerReference": reference,
        }
        payload.update(overrides)
        payload["signatureHash"] = compute_signature(
            payload, secret or test_settings.gateway_hmac_secret
        )
        return payload

    return _make


@pytest.fixture
def load_events() -> Callable[..., Any]:
    """Audit events for a payment, oldest first."""

    async def _load(db: AsyncSession, payment_id: uuid.UUID) -> List[PaymentEvent]:
        result = await db.execute(
            select(PaymentEvent)
            .where(PaymentEvent.payment_id == payment_id)
            .order_by(PaymentEvent.id)
        )
        return list(result.scalars().all())

    return _load


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    attempt_guard: DatabaseAttemptGuard,
    gateway_client: GatewayClient,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client wired to the per-test database and fake gateway."""
    from storefront_payments.api.dependencies import get_attempt_guard, get_gateway_client
    from storefront_payments.api.main import app
    from storefront_payments.database.connection import get_db

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_attempt_guard] = lambda: attempt_guard
    app.dependency_overrides[get_gateway_client] = lambda: gateway_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(test_settings: Settings) -> Dict[str, str]:
    return {test_settings.api_key_header: test_settings.admin_api_key}
