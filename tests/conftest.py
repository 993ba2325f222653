"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file; the payment gateway is mocked.
"""
import os
import uuid
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Optional, Tuple

# Settings() reads the environment; keep tests independent of the developer's .env
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_orderflow")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_orderflow")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from orderflow.api.main import create_app
from orderflow.config import Settings
from orderflow.core.inventory import InventoryLedger, StockLevel
from orderflow.database.connection import build_engine, create_session_factory, init_db
from orderflow.database.models import Cart, CartItem, InventoryItem, Order, Product
from orderflow.integrations.stripe_gateway import CheckoutSession, RefundResult, StripeGateway
from orderflow.services import ServiceContainer, build_services

from tests.helpers import ADMIN_API_KEY, WEBHOOK_SECRET, make_order_request


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line("markers", "race: concurrent access tests")
    config.addinivalue_line("markers", "integration: tests through the HTTP API")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_orderflow",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}",
        redis_url=None,
        app_name="orderflow-test",
        app_env="test",
        log_level="DEBUG",
        admin_api_key=ADMIN_API_KEY,
        notification_workers=1,
        order_number_retry_delay_seconds=0,
        gateway_max_attempts=2,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    engine = build_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def gateway(mocker: Any) -> Any:
    """Mocked gateway: sessions open unpaid and come back paid."""
    gateway = mocker.AsyncMock(spec=StripeGateway)
    gateway.create_checkout_session.return_value = CheckoutSession(
        id="cs_test_123",
        url="https://checkout.stripe.test/c/cs_test_123",
        payment_status="unpaid",
    )
    gateway.retrieve_checkout_session.return_value = CheckoutSession(
        id="cs_test_123",
        url=None,
        payment_status="paid",
        payment_intent_id="pi_test_123",
    )
    gateway.create_refund.return_value = RefundResult(id="re_test_1", status="succeeded", amount_cents=0)
    return gateway


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: Any,
) -> AsyncGenerator[ServiceContainer, Any]:
    container = build_services(test_settings, session_factory=session_factory, gateway=gateway)
    await container.start()
    yield container
    await container.stop()


@pytest_asyncio.fixture
async def client(services: ServiceContainer) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_product(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Product]]:
    async def _make(
        price_cents: int = 1000,
        on_hand: int = 10,
        is_active: bool = True,
        name: str = "Widget",
    ) -> Product:
        async with session_factory() as db:
            async with db.begin():
                product = Product(
                    id=uuid.uuid4(),
                    sku=f"SKU-{uuid.uuid4().hex[:10]}",
                    name=name,
                    price_cents=price_cents,
                    is_active=is_active,
                )
                db.add(product)
                db.add(
                    InventoryItem(
                        product_id=product.id, quantity_on_hand=on_hand, quantity_reserved=0
                    )
                )
        return product

    return _make


@pytest.fixture
def make_cart(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Cart]]:
    async def _make(user_id: uuid.UUID, lines: List[Tuple[Product, int]]) -> Cart:
        async with session_factory() as db:
            async with db.begin():
                cart = Cart(id=uuid.uuid4(), user_id=user_id, status="active")
                cart.items = [
                    CartItem(product_id=product.id, quantity=quantity) for product, quantity in lines
                ]
                db.add(cart)
        return cart

    return _make


@pytest.fixture
def place_order(
    services: ServiceContainer,
    make_product: Callable[..., Awaitable[Product]],
    make_cart: Callable[..., Awaitable[Cart]],
) -> Callable[..., Awaitable[Tuple[Order, Product]]]:
    """Create a product, fill a cart with it and order it."""

    async def _place(
        quantity: int = 2,
        on_hand: int = 10,
        price_cents: int = 1000,
        payment_method: str = "credit_card",
        user_id: Optional[uuid.UUID] = None,
    ) -> Tuple[Order, Product]:
        user_id = user_id or uuid.uuid4()
        product = await make_product(price_cents=price_cents, on_hand=on_hand)
        await make_cart(user_id, [(product, quantity)])
        order = await services.orders.create_order(user_id, make_order_request(payment_method))
        return order, product

    return _place


@pytest.fixture
def stock_of(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[uuid.UUID], Awaitable[StockLevel]]:
    async def _stock(product_id: uuid.UUID) -> StockLevel:
        async with session_factory() as db:
            return await InventoryLedger().check_availability(db, product_id)

    return _stock

