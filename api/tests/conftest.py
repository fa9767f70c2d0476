"""
Pytest configuration and shared fixtures for testing
"""
import os

# Settings are read at import time, so the test environment goes first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "development"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["LOG_JSON"] = "false"

from typing import AsyncGenerator, Dict
import uuid

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tradelink.core.database import Base, get_db
from tradelink.core.exceptions import BrokerTokenInvalid, ExchangeRejected, InternalError, NetworkFailure
from tradelink.core.security import get_password_hash
from tradelink.main import app
from tradelink.models.user import DataProvider, User
from tradelink.services.auth_service import issue_token
from tradelink.services.broker_gateway import (
    BrokerGateway,
    FundsSnapshot,
    PortfolioSnapshot,
    TokenPair,
    TokenValidation,
    get_broker_gateways,
)
from tradelink.services.broker_service import BrokerLinkService
from tradelink.services.credential_store import CredentialStore

TEST_PASSWORD = "testpassword123"

# ================================
# SIMULATED BROKER
# ================================

class FakeBrokerGateway(BrokerGateway):
    """In-memory broker: auth codes are single-use, tokens can be revoked"""

    def __init__(self, provider: DataProvider):
        self.provider = provider
        super().__init__("https://broker.test/api/v3", timeout=1)
        self.redirect_uri = "http://localhost:3000/fyers-verification"
        self.issued_codes: set[str] = set()
        self.used_codes: set[str] = set()
        self.valid_tokens: set[str] = set()
        self.exchange_calls: list[str] = []
        self.validation_calls = 0
        self.network_down = False
        # Answer every call with a body of unknown shape
        self.malformed = False

    def issue_code(self) -> str:
        code = f"code-{uuid.uuid4().hex[:12]}"
        self.issued_codes.add(code)
        return code

    def revoke_all(self) -> None:
        self.valid_tokens.clear()

    def _fail_if_down(self) -> None:
        if self.network_down:
            raise NetworkFailure()
        if self.malformed:
            raise InternalError("Unexpected response from broker")

    def auth_url(self, client_id: str, state: str | None = None) -> str:
        return f"{self.base_url}/generate-authcode?client_id={client_id}&state={state or 'sample_state'}"

    async def exchange_auth_code(self, client_id: str, secret_key: str, auth_code: str) -> TokenPair:
        self.exchange_calls.append(auth_code)
        self._fail_if_down()
        if auth_code not in self.issued_codes or auth_code in self.used_codes:
            raise ExchangeRejected("Invalid auth code", error_code=-413)

        self.used_codes.add(auth_code)
        access_token = f"access-{auth_code}"
        self.valid_tokens.add(access_token)
        return TokenPair(
            access_token=access_token,
            refresh_token=f"refresh-{auth_code}",
            public_token=f"public-{auth_code}",
            broker_user_id="XY1234",
        )

    async def validate_access_token(self, client_id: str, access_token: str) -> TokenValidation:
        self.validation_calls += 1
        self._fail_if_down()
        if access_token in self.valid_tokens:
            return TokenValidation(valid=True, message="Token is valid", funds=[{"title": "Total Balance"}])
        return TokenValidation(valid=False, message="Token is invalid or expired")

    def _check(self, access_token: str) -> None:
        self._fail_if_down()
        if access_token not in self.valid_tokens:
            raise BrokerTokenInvalid("Token is invalid or expired")

    async def funds(self, client_id: str, access_token: str) -> FundsSnapshot:
        self._check(access_token)
        return FundsSnapshot(raw=[], total_balance=1000.0, used_amount=250.0, available_balance=750.0)

    async def positions(self, client_id: str, access_token: str) -> PortfolioSnapshot:
        self._check(access_token)
        return PortfolioSnapshot(
            items=[{"symbol": "NSE:SBIN-EQ", "netQty": 10, "pl": 42.5}],
            overall={"count_open": 1, "pl_total": 42.5},
        )

    async def holdings(self, client_id: str, access_token: str) -> PortfolioSnapshot:
        self._check(access_token)
        return PortfolioSnapshot(items=[{"symbol": "NSE:INFY-EQ", "quantity": 5}])


# ================================
# DATABASE FIXTURES
# ================================

@pytest_asyncio.fixture
async def test_db_engine():
    """Create test database engine with in-memory SQLite"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(test_db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session"""
    session_factory = async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with session_factory() as session:
        yield session


# ================================
# BROKER FIXTURES
# ================================

@pytest.fixture
def fyers_gateway() -> FakeBrokerGateway:
    return FakeBrokerGateway(DataProvider.FYERS)


@pytest.fixture
def zerodha_gateway() -> FakeBrokerGateway:
    return FakeBrokerGateway(DataProvider.ZERODHA)


@pytest.fixture
def gateways(fyers_gateway, zerodha_gateway) -> Dict[DataProvider, BrokerGateway]:
    return {
        DataProvider.FYERS: fyers_gateway,
        DataProvider.ZERODHA: zerodha_gateway,
    }


@pytest.fixture
def store(test_db) -> CredentialStore:
    return CredentialStore(test_db)


@pytest.fixture
def broker_service(store, gateways) -> BrokerLinkService:
    return BrokerLinkService(store, gateways)


# ================================
# HTTP CLIENT
# ================================

@pytest_asyncio.fixture
async def test_client(test_db, gateways) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async client bound to the app with the test database and simulated brokers"""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_broker_gateways] = lambda: gateways

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()


# ================================
# USER AND AUTH FIXTURES
# ================================

@pytest_asyncio.fixture
async def test_user(store: CredentialStore) -> User:
    """Create a verified test user"""
    user = await store.create_user(
        email="test@example.com",
        password_hash=get_password_hash(TEST_PASSWORD),
        name="Test User",
    )
    return await store.mark_verified(user.id)


@pytest_asyncio.fixture
async def unverified_user(store: CredentialStore) -> User:
    return await store.create_user(
        email="pending@example.com",
        password_hash=get_password_hash(TEST_PASSWORD),
        name="Pending User",
    )


@pytest.fixture
def auth_headers(test_user) -> dict:
    """Generate authentication headers for test requests"""
    return {"Authorization": f"Bearer {issue_token(test_user)}"}


@pytest_asyncio.fixture
async def fyers_linked_user(test_user, broker_service, fyers_gateway) -> User:
    """Verified user with Fyers credentials and a live access token"""
    result = await broker_service.save_credentials(
        test_user.id,
        DataProvider.FYERS,
        client_id="FYCLIENT-100",
        secret_key="fy-secret",
        auth_code=fyers_gateway.issue_code(),
    )
    assert result.token_exchange_error is None
    return result.user


@pytest.fixture(autouse=True)
def cleanup_after_test():
    """Automatic cleanup after each test"""
    yield
    app.dependency_overrides.clear()
