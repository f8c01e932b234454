"""Pytest configuration and fixtures for async testing."""
import base64
from typing import AsyncGenerator, Callable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

import agency_billing.models  # noqa: F401  (registers every table on the metadata)
from agency_billing.auth.context import BillingContext, Role
from agency_billing.auth.jwt import JWTAuth
from agency_billing.config import Settings
from agency_billing.core.vault import SecretsVault
from agency_billing.database import Base, create_engine_from_settings, create_session_factory
from agency_billing.main import create_app
from agency_billing.storage.artifact_store import LocalArtifactStore

TEST_SECRETS_KEY = bytes(range(32))
TEST_TENANT_ID = 42


@pytest.fixture(scope="function")
def settings(tmp_path) -> Settings:
    """
    Settings for one test: a SQLite file database and a local artifact root
    under the test's temporary directory.

    Returns:
        Settings: Frozen test settings
    """
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        app_env="test",
        log_level="WARNING",
        anchor_day_default=10,
        timezone_default="America/Argentina/Buenos_Aires",
        secrets_key_b64=base64.b64encode(TEST_SECRETS_KEY).decode("ascii"),
        batches_local_root=str(tmp_path / "artifacts"),
        pd_adapter="galicia_pd_v1",
        jwt_secret_key="test-jwt-secret",
    )


@pytest.fixture(scope="function")
def vault() -> SecretsVault:
    return SecretsVault(TEST_SECRETS_KEY)


@pytest.fixture(scope="function")
def artifact_store(settings: Settings) -> LocalArtifactStore:
    return LocalArtifactStore(settings.batches_local_root)


@pytest_asyncio.fixture(scope="function")
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create the schema on a fresh database for each test.

    Yields:
        AsyncEngine: Engine bound to the test database
    """
    test_engine = create_engine_from_settings(settings)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def tenant_ctx() -> BillingContext:
    """Owner of the default test tenant."""
    return BillingContext(tenant_id=TEST_TENANT_ID, actor_id="user-owner-1", role=Role.OWNER)


@pytest.fixture(scope="function")
def admin_ctx() -> BillingContext:
    return BillingContext(tenant_id=None, actor_id="admin-1", role=Role.PLATFORM_ADMIN)


@pytest_asyncio.fixture(scope="function")
async def app(settings: Settings, engine: AsyncEngine):
    """
    Application wired to the test database.

    The schema is created by the ``engine`` fixture before the app opens its
    own engine on the same database file.
    """
    application = create_app(settings)
    yield application
    await application.state.engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """
    Create an async HTTP client for API testing.

    Yields:
        AsyncClient: Async HTTP client bound to the app
    """
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture(scope="function")
def auth_headers(settings: Settings) -> Callable[..., dict[str, str]]:
    """
    Build bearer headers for a role.

    Returns:
        Callable taking a role and an optional tenant id
    """
    jwt_auth = JWTAuth(settings)

    def _headers(role: Role, tenant_id: Optional[int] = TEST_TENANT_ID, actor_id: str = "user-1") -> dict[str, str]:
        token = jwt_auth.create_access_token(actor_id, role, tenant_id=tenant_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers
