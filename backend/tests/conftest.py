"""
Pytest configuration and shared fixtures for ExamVault tests.

Provides an in-memory SQLite session per test, a file-backed engine for real
concurrency tests, seeded buyers/products, auth headers, an ASGI test client
and a fake payment gateway.
"""
import json
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings
from database import Base, SQLITE_CONNECT_ARGS, get_db
from db_models import CartItem, Product, User
from domain.errors import ProviderVerificationError
from middleware.auth import issue_access_token
from middleware.rate_limit import get_limiter
from services.content_service import ContentArtifact, ContentGenerator, artifact_filename
from services.payment_providers import (
    CheckoutSession,
    EventKind,
    GatewayRegistry,
    PaymentGateway,
    ProviderEvent,
)

# ── Test Configuration ───────────────────────────────────────────────
# Set test-only values for settings that would normally come from .env
if not settings.jwt_secret:
    settings.jwt_secret = "test-jwt-secret-for-pytest-only"


# ── Database Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
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


@pytest_asyncio.fixture(scope="function")
async def file_sessionmaker(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    Sessionmaker over a file-backed SQLite DB.

    Each session gets its own connection, so asyncio.gather over several
    sessions produces genuine lock contention.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args=dict(SQLITE_CONNECT_ARGS),
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    get_limiter().reset()
    yield
    get_limiter().reset()


# ── Test Data Fixtures ────────────────────────────────────────────────


async def create_user(db: AsyncSession, email: str) -> User:
    user = User(email=email, name=email.split("@")[0])
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def create_product(db: AsyncSession, name: str, price_cents: int, code: str | None = None) -> Product:
    product = Product(
        exam_name=name,
        exam_code=code,
        description=f"{name} practice bundle",
        difficulty_level="Intermediate",
        questions_count=60,
        price_cents=price_cents,
        is_active=True,
    )
    db.add(product)
    await db.commit()
    await db.refresh(product)
    return product


@pytest_asyncio.fixture
async def buyer(db_session: AsyncSession) -> User:
    return await create_user(db_session, "buyer@example.com")


@pytest_asyncio.fixture
async def other_buyer(db_session: AsyncSession) -> User:
    return await create_user(db_session, "someone.else@example.com")


@pytest_asyncio.fixture
async def product_a(db_session: AsyncSession) -> Product:
    """$25 bundle."""
    return await create_product(db_session, "Platform Administrator", 2500, "ADM-201")


@pytest_asyncio.fixture
async def product_b(db_session: AsyncSession) -> Product:
    """$10 bundle."""
    return await create_product(db_session, "Platform App Builder", 1000, "PAB-101")


@pytest_asyncio.fixture
async def inactive_product(db_session: AsyncSession) -> Product:
    product = await create_product(db_session, "Retired Exam", 500, "OLD-001")
    product.is_active = False
    await db_session.commit()
    return product


@pytest_asyncio.fixture
async def filled_cart(db_session: AsyncSession, buyer: User, product_a: Product, product_b: Product) -> list[CartItem]:
    """productA x1 @ $25 + productB x2 @ $10 = $45."""
    from services import cart_service

    await cart_service.add_to_cart(db_session, user_id=buyer.id, product_id=product_a.id, quantity=1)
    await cart_service.add_to_cart(db_session, user_id=buyer.id, product_id=product_b.id, quantity=2)
    await db_session.commit()
    return await cart_service.list_cart(db_session, user_id=buyer.id)


@pytest.fixture
def auth_headers(buyer: User) -> dict[str, str]:
    token = issue_access_token(user_id=buyer.id, email=buyer.email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_auth_headers(other_buyer: User) -> dict[str, str]:
    token = issue_access_token(user_id=other_buyer.id, email=other_buyer.email)
    return {"Authorization": f"Bearer {token}"}


# ── Content Fakes ─────────────────────────────────────────────────────


class FakeContentGenerator(ContentGenerator):
    """Returns a fixed PDF-like body without rendering."""

    def __init__(self):
        self.generated: list[int] = []

    def generate(self, product):
        self.generated.append(product.id)
        return ContentArtifact(
            content=b"%PDF-1.7\n" + product.exam_name.encode() + b"\n%%EOF\n",
            content_type="application/pdf",
            filename=artifact_filename(product.exam_name),
        )


@pytest.fixture
def content_generator() -> FakeContentGenerator:
    return FakeContentGenerator()


# ── Payment Gateway Fakes ─────────────────────────────────────────────


class FakeGateway(PaymentGateway):
    """
    Deterministic in-process gateway.

    - capture() returns `next_capture` if set, else a success for the full total.
    - Webhooks need header `x-fake-signature: valid`; the JSON body carries
      the event fields directly.
    """

    def __init__(self, name: str):
        self.name = name
        self.next_capture: ProviderEvent | None = None
        self.initiated: list[int] = []
        self.captured: list[tuple[int, str]] = []

    async def initiate(self, order):
        self.initiated.append(order.id)
        return CheckoutSession(
            provider=self.name,
            reference=f"{self.name}_session_{order.id}",
            redirect_url=f"https://pay.example.test/{self.name}/{order.id}",
        )

    async def capture(self, order, reference):
        self.captured.append((order.id, reference))
        if self.next_capture is not None:
            return self.next_capture
        return ProviderEvent(
            provider=self.name,
            kind=EventKind.SUCCEEDED,
            order_id=order.id,
            transaction_id=f"{self.name}_txn_{order.id}",
            amount_cents=order.total_cents,
            event_type="capture",
        )

    async def verify_and_parse_callback(self, payload, headers):
        if headers.get("x-fake-signature") != "valid":
            raise ProviderVerificationError(self.name)
        body = json.loads(payload)
        return ProviderEvent(
            provider=self.name,
            kind=EventKind(body["kind"]),
            order_id=body.get("order_id"),
            transaction_id=body.get("transaction_id"),
            amount_cents=body.get("amount_cents"),
            reason=body.get("reason"),
            event_type=body.get("type", "fake.event"),
        )


@pytest.fixture
def fake_gateways() -> dict[str, FakeGateway]:
    return {"stripe": FakeGateway("stripe"), "paypal": FakeGateway("paypal")}


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, fake_gateways, content_generator) -> AsyncGenerator[AsyncClient, None]:
    """
    ASGI test client bound to the in-memory DB and fake gateways.
    """
    from main import app
    from deps import get_content_generator, get_gateway_registry

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_registry] = lambda: GatewayRegistry(fake_gateways)
    app.dependency_overrides[get_content_generator] = lambda: content_generator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
