"""
Pytest configuration and shared fixtures for the fulfillment core tests.

Provides an in-memory SQLite session, a file-backed SQLite database for
concurrency tests, an ASGI test client and a fake payment gateway.
"""
import pytest
from typing import AsyncGenerator

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from config import settings
from domain.actors import Actor
from domain.enums import Role

# ── Test Configuration ───────────────────────────────────────────────
# Set test-only values for settings that would normally come from .env
if not settings.jwt_secret:
    settings.jwt_secret = "test-jwt-secret-for-pytest-only"
if not settings.paystack_secret_key:
    settings.paystack_secret_key = "sk_test_pytest_only"

BUYER_ID = "10001001"
OTHER_BUYER_ID = "10001002"
SELLER_A = "20002001"
SELLER_B = "20002002"
AGENT_X = "30003001"
AGENT_Y = "30003002"


# ── Database Fixtures ────────────────────────────────────────────────


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create an in-memory SQLite database session for each test.

    Uses StaticPool to allow in-memory SQLite with async SQLAlchemy.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session

    await engine.dispose()


@pytest.fixture(scope="function")
async def session_factory(tmp_path):
    """
    File-backed SQLite database for tests that need independent sessions.

    Each session gets its own connection, so concurrent writers serialize on
    the database lock the way separate worker processes would.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(autouse=True)
async def reset_fulfillment_state():
    """Start each test with an empty event queue and zeroed counters."""
    from services.event_bus import event_bus
    from services.fulfillment_metrics import get_fulfillment_metrics

    event_bus.clear_subscribers()
    await event_bus.drain()
    get_fulfillment_metrics().reset()
    yield
    event_bus.clear_subscribers()
    await event_bus.drain()


# ── Gateway ──────────────────────────────────────────────────────────


class FakeGateway:
    """Stands in for PaystackClient; records calls and answers from a script."""

    def __init__(self):
        self.initialized: list[dict] = []
        self.verify_calls: list[str] = []
        self.verify_responses: dict[str, dict] = {}
        self.error: Exception | None = None

    async def initialize_transaction(self, *, email, amount, reference, currency, metadata, callback_url=None):
        if self.error:
            raise self.error
        self.initialized.append(
            {"email": email, "amount": amount, "reference": reference, "currency": currency, "metadata": metadata}
        )
        return {
            "authorization_url": f"https://checkout.paystack.test/{reference}",
            "access_code": f"AC_{reference[-8:]}",
            "reference": reference,
        }

    async def verify_transaction(self, reference):
        self.verify_calls.append(reference)
        if self.error:
            raise self.error
        return self.verify_responses.get(reference, {"status": "pending", "reference": reference})

    def settle(self, reference: str, *, amount: int, buyer_id: str, status: str = "success", currency: str = "GHS"):
        """Script what the gateway reports for a reference."""
        self.verify_responses[reference] = {
            "status": status,
            "reference": reference,
            "amount": amount,
            "currency": currency,
            "gateway_response": "Approved" if status == "success" else "Declined",
            "metadata": {"buyer_id": buyer_id},
        }


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


# ── HTTP Client ──────────────────────────────────────────────────────


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession, fake_gateway: FakeGateway):
    """
    ASGI client bound to the in-memory database and the fake gateway.

    Runs on the test's own event loop, so the overridden session is safe to share.
    """
    from main import app
    from deps import get_gateway

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: fake_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build a bearer header for an actor id and role."""
    from middleware.auth import issue_access_token

    def _headers(actor_id: str, role: str = "student", delivery_approved: bool = False) -> dict:
        token = issue_access_token(student_id=actor_id, role=role, delivery_approved=delivery_approved)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ── Actors ───────────────────────────────────────────────────────────


@pytest.fixture
def buyer() -> Actor:
    return Actor(actor_id=BUYER_ID)


@pytest.fixture
def agent_x() -> Actor:
    return Actor(actor_id=AGENT_X, role=Role.DELIVERY, delivery_approved=True)


@pytest.fixture
def agent_y() -> Actor:
    return Actor(actor_id=AGENT_Y, role=Role.DELIVERY, delivery_approved=True)


# ── Test Data Fixtures ────────────────────────────────────────────────


async def _create_products(session: AsyncSession) -> dict:
    from db_models import Product

    products = {
        "a1": Product(seller_id=SELLER_A, title="Desk lamp", price=1000, quantity=5, hall_id=3, room_number="B12"),
        "a2": Product(seller_id=SELLER_A, title="Kettle", price=2500, quantity=None, hall_id=3, room_number="B12"),
        "b1": Product(seller_id=SELLER_B, title="Calculus notes", price=500, quantity=2),
        "gone": Product(seller_id=SELLER_B, title="Old bike", price=9000, quantity=1, status="deleted"),
    }
    session.add_all(products.values())
    await session.commit()
    return {key: p.id for key, p in products.items()}


@pytest.fixture
async def products(db_session: AsyncSession) -> dict:
    """Product ids keyed by short name: a1, a2 (seller A), b1, gone (seller B)."""
    return await _create_products(db_session)


@pytest.fixture
async def filled_cart(db_session: AsyncSession, products: dict) -> dict:
    """Buyer cart: 2 x a1 (10.00) from seller A, 1 x b1 (5.00) from seller B."""
    from services import cart_service

    await cart_service.add_item(db_session, buyer_id=BUYER_ID, product_id=products["a1"], quantity=2)
    await cart_service.add_item(db_session, buyer_id=BUYER_ID, product_id=products["b1"], quantity=1)
    return products


@pytest.fixture
async def pending_delivery(db_session: AsyncSession, filled_cart: dict, fake_gateway: FakeGateway):
    """
    Run the real flow up to an open delivery job for seller A's order:
    checkout (delivery) → initiate → gateway-confirmed charge.
    """
    from services import checkout_service, payment_service

    result = await checkout_service.checkout(
        db_session, buyer_id=BUYER_ID, delivery_option="delivery", seller_id=SELLER_A,
        delivery_hall_id=7, delivery_room_number="C3",
    )
    order = result.orders[0]
    payment = await payment_service.initiate(
        db_session, buyer_id=BUYER_ID, amount=order.total_price, email="buyer@campus.test",
        order_ids=[order.id], gateway=fake_gateway,
    )
    await payment_service.apply_successful_charge(
        db_session, reference=payment.reference, amount=order.total_price,
        correlation_id=BUYER_ID, source="webhook",
    )

    from sqlalchemy import select
    from db_models import Delivery

    res = await db_session.execute(select(Delivery).where(Delivery.order_id == order.id))
    return res.scalar_one()
