"""
Global pytest fixtures for the Backoffice test suite.

Provides:
- Async database session on a throwaway SQLite file
- Async FastAPI test client sharing that session
- Fernet key caches reset between tests
"""
import os

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = "32-byte-long-test-encryption-key"
os.environ["KDF_SALT"] = "S0RGX1NBTFRfRk9SX1RFU1RJTkdfMzJfQllURVNfT0s="  # Base64 for 'KDF_SALT_FOR_TESTING_32_BYTES_OK'
os.environ["KDF_ITERATIONS"] = "1000"  # Keep key derivation fast in tests
os.environ["DB_SSL_MODE"] = "disable"  # Disable SSL for tests
os.environ["ENVIRONMENT"] = "development"

from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio


def _register_models():
    # Import all models to register them in SQLAlchemy mapper globally for all tests
    import app.models  # noqa: F401


_register_models()


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine():
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine
    from app.shared.db.session import enable_sqlite_savepoints

    db_file = f"test_{uuid4().hex}.sqlite"
    db_url = f"sqlite+aiosqlite:///{db_file}"

    engine = create_async_engine(db_url, echo=False)
    # Sync code relies on SAVEPOINTs per member
    enable_sqlite_savepoints(engine)
    yield engine
    await engine.dispose()

    # Cleanup
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create database tables and provide async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from app.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    """The real application instance."""
    from app.main import app as backoffice_app
    return backoffice_app


@pytest_asyncio.fixture
async def async_client(app, db) -> AsyncGenerator:
    """Async test client for FastAPI. Overrides get_db to share test session."""
    from httpx import AsyncClient, ASGITransport
    from app.shared.db.session import get_db

    old_override = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = lambda: db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    if old_override:
        app.dependency_overrides[get_db] = old_override
    else:
        app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def ac(async_client):
    """Alias for async_client to match integration tests."""
    return async_client


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session to match integration tests."""
    return db_session


# ============================================================================
# Utility Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def set_testing_env():
    """Ensure TESTING is set for all tests."""
    os.environ["TESTING"] = "true"
    yield


@pytest.fixture(autouse=True)
def reset_key_caches():
    from app.shared.core.security import EncryptionKeyManager

    EncryptionKeyManager.clear_key_caches()
    yield
    EncryptionKeyManager.clear_key_caches()
