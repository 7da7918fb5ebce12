"""
Test fixtures for the ledger API test suite.

This module provides shared fixtures used across all test files:

  - db_engine / session_factory: Fresh SQLite database file for each test
  - gateway: Deterministic settlement gateway double (FakeSettlementGateway)
  - client: Async HTTP test client (unauthenticated)
  - authenticated_client / second_authenticated_client: two MEMBER users
  - admin_client: a user with the admin role
  - open_account: helper that opens (and optionally funds) an account

Key design decisions:
  - A SQLite *file* under tmp_path rather than an in-memory database. Every
    atomic unit opens its own session, and concurrency tests need those
    sessions on separate connections, which in-memory SQLite can't give.
  - We override get_db, get_session_factory and the settlement dependencies
    so the application code works exactly as it does in production, just
    against the test database and the fake gateway.
  - Tokens are minted with app.security.create_access_token, the same
    format the identity service issues.
"""

import asyncio
import os
import uuid

# Must be set before app.config is imported
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-the-ledger-suite")
os.environ["RECONCILIATION_ENABLED"] = "false"
os.environ["SETTLEMENT_WEBHOOK_SECRET"] = "test-webhook-secret"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from app.clients.settlement import (
    DestinationInfo,
    GatewayResult,
    SettlementRequest,
    SettlementStatus,
    SupportedBank,
)
from app.database import Base, get_db, get_session_factory
from app.dependencies import get_settlement_adapter, get_settlement_gateway
from app.main import app
from app.security import create_access_token
from app.services.settlement_adapter import SettlementAdapter

WEBHOOK_SECRET = "test-webhook-secret"

# Gateway timeout used by the test adapter; FakeSettlementGateway.delay
# above this simulates a hung gateway.
TEST_GATEWAY_TIMEOUT = 0.2


class FakeSettlementGateway:
    """
    Settlement gateway double with scripted outcomes.

    Set `initiate_status`, `poll_status_result`, `initiate_error`,
    `initiate_delay` or `reported_fee_cents` before the call under test.
    Every submission is recorded in `submissions`.
    """

    def __init__(self):
        self.destinations = {
            ("001", "1234567890"): DestinationInfo("1234567890", "001", "John Smith", "Chase Bank"),
            ("101", "1111222233"): DestinationInfo("1111222233", "101", "Hans Mueller", "Deutsche Bank"),
        }
        self.initiate_status = SettlementStatus.COMPLETED
        self.poll_status_result = SettlementStatus.COMPLETED
        self.initiate_error: Exception | None = None
        self.initiate_delay = 0.0
        self.reported_fee_cents: int | None = None
        self.submissions: list[SettlementRequest] = []
        self.polled: list[str] = []

    async def verify_destination(self, account_number, bank_code):
        return self.destinations.get((bank_code, account_number))

    async def initiate(self, request):
        self.submissions.append(request)
        if self.initiate_delay:
            await asyncio.sleep(self.initiate_delay)
        if self.initiate_error is not None:
            raise self.initiate_error
        return GatewayResult(
            status=self.initiate_status,
            external_reference=f"EXT-{request.reference}",
            fee_cents=self.reported_fee_cents,
        )

    async def poll_status(self, reference):
        self.polled.append(reference)
        return GatewayResult(
            status=self.poll_status_result,
            external_reference=f"EXT-{reference}",
        )

    async def supported_banks(self):
        return [
            SupportedBank("001", "Chase Bank", "United States"),
            SupportedBank("101", "Deutsche Bank", "Germany"),
        ]


def auth_headers(user_id: uuid.UUID, role: str = "member") -> dict:
    token = create_access_token({"sub": str(user_id), "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger_test.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """A session for asserting directly against the database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeSettlementGateway()


@pytest.fixture
def adapter(gateway):
    return SettlementAdapter(gateway, timeout=TEST_GATEWAY_TIMEOUT)


@pytest_asyncio.fixture
async def app_overrides(session_factory, gateway, adapter):
    """Point the app at the test database and the fake gateway."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settlement_gateway] = lambda: gateway
    app.dependency_overrides[get_settlement_adapter] = lambda: adapter
    yield
    app.dependency_overrides.clear()


def _client(headers: dict | None = None) -> AsyncClient:
    return AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=headers or {},
    )


@pytest_asyncio.fixture
async def client(app_overrides):
    """Unauthenticated client."""
    async with _client() as ac:
        yield ac


@pytest.fixture
def member_id():
    return uuid.uuid4()


@pytest.fixture
def second_member_id():
    return uuid.uuid4()


@pytest_asyncio.fixture
async def authenticated_client(app_overrides, member_id):
    """Client whose bearer token identifies `member_id`."""
    async with _client(auth_headers(member_id)) as ac:
        yield ac


@pytest_asyncio.fixture
async def second_authenticated_client(app_overrides, second_member_id):
    """
    A second MEMBER user for cross-user tests.

    Use this alongside authenticated_client to verify that User A
    cannot touch User B's accounts.
    """
    async with _client(auth_headers(second_member_id)) as ac:
        yield ac


@pytest_asyncio.fixture
async def admin_client(app_overrides):
    async with _client(auth_headers(uuid.uuid4(), role="admin")) as ac:
        yield ac


@pytest.fixture
def open_account():
    """
    Open an account through the API and optionally fund it with a deposit.

    Usage:
        account = await open_account(authenticated_client, 10000)
    """

    async def _open(
        client: AsyncClient,
        amount_cents: int = 0,
        currency: str = "USD",
        account_type: str = "checking",
    ) -> dict:
        response = await client.post(
            "/accounts", json={"account_type": account_type, "currency": currency}
        )
        assert response.status_code == 201, response.text
        account = response.json()
        if amount_cents:
            deposit = await client.post(
                f"/accounts/{account['id']}/transactions",
                json={"type": "deposit", "amount_cents": amount_cents},
            )
            assert deposit.status_code == 201, deposit.text
        return account

    return _open


def idempotency_headers(key: str | None = None) -> dict:
    return {"Idempotency-Key": key or str(uuid.uuid4())}


@pytest.fixture
def new_key():
    """Fresh Idempotency-Key header per call."""
    return idempotency_headers
