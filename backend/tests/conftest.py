"""
Pytest configuration and shared fixtures for BookScape tests.

Provides an in-memory SQLite DB, an httpx client bound to the app with the
DB / payment gateway / mailer dependencies overridden, and catalog + user
fixtures.
"""
import pytest
from typing import AsyncGenerator, Optional

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings
from database import Base, get_db
from domain.errors import EmailDeliveryError, PaymentGatewayError

# ── Test Configuration ───────────────────────────────────────────────
# Set test-only values for settings that would normally come from .env
if not settings.jwt_secret:
    settings.jwt_secret = "test-jwt-secret-for-pytest-only"
settings.reconciliation_policy = "manual_review"

from main import app  # noqa: E402
from deps import get_mailer, get_payment_gateway, get_reconciliation_policy  # noqa: E402
from middleware.auth import issue_access_token  # noqa: E402
from middleware.rate_limit import _limiter  # noqa: E402


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


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    _limiter.reset()
    yield
    _limiter.reset()


# ── Fakes ────────────────────────────────────────────────────────────


class FakeGateway:
    """
    Stand-in for PayPalClient.

    `details` and `capture` can be a dict (returned), a PaymentGatewayError
    (raised) or a list of those consumed one per call.
    """

    def __init__(self):
        self.created: list[dict] = []
        self.capture_calls: list[str] = []
        self.details_calls: list[str] = []
        self.details = {"status": "APPROVED"}
        self.capture = {"status": "COMPLETED"}
        self._counter = 0

    async def create_order(self, items, total, reference=None):
        self._counter += 1
        order_id = f"PAYPAL{self._counter:04d}"
        self.created.append({"id": order_id, "items": items, "total": total})
        return {
            "id": order_id,
            "status": "CREATED",
            "approvalUrl": f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}",
            "raw": {"id": order_id, "status": "CREATED"},
        }

    @staticmethod
    def _answer(source):
        value = source.pop(0) if isinstance(source, list) else source
        if isinstance(value, Exception):
            raise value
        return value

    async def get_order_details(self, paypal_order_id):
        self.details_calls.append(paypal_order_id)
        return self._answer(self.details)

    async def capture_order(self, paypal_order_id):
        self.capture_calls.append(paypal_order_id)
        return self._answer(self.capture)


class FakeMailer:
    def __init__(self, fail_for: Optional[set] = None):
        self.sent: list[tuple[str, str, str]] = []
        self.fail_for = fail_for or set()

    async def __call__(self, to, subject, html):
        if to in self.fail_for:
            raise EmailDeliveryError(f"refused: {to}")
        self.sent.append((to, subject, html))


def network_error() -> PaymentGatewayError:
    return PaymentGatewayError("PayPal request failed: ConnectError")


def already_captured_error() -> PaymentGatewayError:
    return PaymentGatewayError(
        "PayPal returned HTTP 422",
        gateway_status=422,
        gateway_body={
            "name": "UNPROCESSABLE_ENTITY",
            "details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
        },
    )


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fake_mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
async def client(db_session: AsyncSession, fake_gateway: FakeGateway, fake_mailer: FakeMailer):
    """
    httpx client bound to the app.

    get_db yields the test session; gateway and mailer are the fakes above.
    """
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_mailer] = lambda: fake_mailer

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def use_policy():
    """Switch the reconciliation policy for route tests."""
    def _use(policy: str):
        app.dependency_overrides[get_reconciliation_policy] = lambda: policy
    return _use


# ── Test Data Fixtures ────────────────────────────────────────────────


def auth_header(user) -> dict:
    token = issue_access_token(user_id=user.id, email=user.email, role=user.role)
    return {"Authorization": f"Bearer {token}"}


async def _make_user(db: AsyncSession, email: str, name: str, role: str):
    from db_models import User

    user = User(email=email, name=name, role=role)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest.fixture
async def customer(db_session: AsyncSession):
    return await _make_user(db_session, "reader@example.com", "Ada Reader", "customer")


@pytest.fixture
async def other_customer(db_session: AsyncSession):
    return await _make_user(db_session, "other@example.com", "Bo Other", "customer")


@pytest.fixture
async def courier(db_session: AsyncSession):
    return await _make_user(db_session, "courier@example.com", "Cy Courier", "courier")


@pytest.fixture
async def admin(db_session: AsyncSession):
    return await _make_user(db_session, "admin@example.com", "Di Admin", "admin")


async def make_book(db: AsyncSession, *, title: str, price: float, stock: int, slug: Optional[str] = None, **extra):
    from db_models import Author, Book

    book = Book(title=title, price=price, stock=stock, slug=slug, **extra)
    book.authors = [Author(name=f"Author of {title}")]
    db.add(book)
    await db.commit()
    await db.refresh(book)
    return book


@pytest.fixture
async def book_a(db_session: AsyncSession):
    """$10.00, 5 in stock."""
    return await make_book(db_session, title="A Tale of Stock", price=10.0, stock=5, slug="a-tale-of-stock")


@pytest.fixture
async def book_b(db_session: AsyncSession):
    """On sale: $20.00 list, $15.00 sale, 1 in stock."""
    return await make_book(
        db_session,
        title="The Last Copy",
        price=20.0,
        stock=1,
        slug="the-last-copy",
        is_on_sale=True,
        sale_percentage=25.0,
        sale_price=15.0,
    )


async def stock_of(db: AsyncSession, book) -> int:
    await db.refresh(book)
    return book.stock
