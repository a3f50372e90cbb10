"""Pytest configuration and fixtures for async testing."""
import asyncio
import os
import tempfile
from collections.abc import AsyncGenerator

# Settings are read at import time, so the test environment is fixed before
# anything from usage_billing is imported.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'usage_billing_app.db')}",
)
os.environ.setdefault("CRM_WEBHOOK_TOKEN", "test-crm-token")
os.environ.setdefault("BILLING_ADMIN_TOKEN", "test-billing-token")
os.environ.setdefault("DWOLLA_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("DWOLLA_OPERATOR_FUNDING_HREF", "https://api-sandbox.dwolla.com/funding-sources/operator")
os.environ.setdefault("DWOLLA_KEY", "test-key")
os.environ.setdefault("DWOLLA_SECRET", "test-secret")
os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from usage_billing.adapters.dwolla_adapter import DwollaAdapter  # noqa: E402
from usage_billing.models import Base  # noqa: E402
from usage_billing.services.billing_service import BillingService  # noqa: E402
from usage_billing.services.transfer_service import TransferService  # noqa: E402
from utils.dwolla import FakeDwolla  # noqa: E402

CRM_TOKEN = os.environ["CRM_WEBHOOK_TOKEN"]
BILLING_TOKEN = os.environ["BILLING_ADMIN_TOKEN"]
WEBHOOK_SECRET = os.environ["DWOLLA_WEBHOOK_SECRET"]
OPERATOR_FUNDING_HREF = os.environ["DWOLLA_OPERATOR_FUNDING_HREF"]


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite database, created fresh for each test.

    A file (rather than ``:memory:``) lets the billing run open its own
    sessions against the same data the test seeded.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database, configured like the app's."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    Database session for seeding and assertions.

    Tests commit their writes before handing control to code that opens its
    own sessions (SQLite allows a single writer).
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def fake_dwolla() -> FakeDwolla:
    """In-memory stand-in for the Dwolla API."""
    return FakeDwolla()


@pytest_asyncio.fixture(scope="function")
async def dwolla_adapter(fake_dwolla: FakeDwolla) -> AsyncGenerator[DwollaAdapter, None]:
    """Real adapter talking to ``fake_dwolla`` through httpx.MockTransport."""
    adapter = fake_dwolla.adapter()
    yield adapter
    await fake_dwolla.aclose()


@pytest.fixture(scope="function")
def transfer_service(dwolla_adapter: DwollaAdapter) -> TransferService:
    """Transfer initiator paying into the operator funding source."""
    return TransferService(dwolla_adapter, operator_funding_href=OPERATOR_FUNDING_HREF)


@pytest.fixture(scope="function")
def billing_service(
    transfer_service: TransferService,
    session_factory: async_sessionmaker[AsyncSession],
) -> BillingService:
    """Billing aggregator over the test database at the default 400 cents per unit."""
    return BillingService(
        transfer_service,
        session_factory=session_factory,
        price_per_unit_cents=400,
        run_lock=asyncio.Lock(),
    )


@pytest_asyncio.fixture(scope="function")
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    billing_service: BillingService,
    dwolla_adapter: DwollaAdapter,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for the FastAPI app with test dependencies.

    ASGITransport does not run the lifespan, so the adapter the lifespan
    would create is put on ``app.state`` here.

    Yields:
        AsyncClient: Async HTTP client for API testing
    """
    from usage_billing.api.deps import get_billing_service, get_db
    from usage_billing.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        """Override database dependency to use test database."""
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_service] = lambda: billing_service
    app.state.dwolla = dwolla_adapter

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def crm_headers() -> dict[str, str]:
    """Authorization header accepted by the CRM usage webhook."""
    return {"Authorization": f"Bearer {CRM_TOKEN}"}


@pytest.fixture(scope="function")
def billing_headers() -> dict[str, str]:
    """Authorization header accepted by the billing trigger."""
    return {"Authorization": f"Bearer {BILLING_TOKEN}"}
