import pytest
import pytest_asyncio

from app.modules.directory_sync.domain.service import DirectorySyncService
from tests.unit.directory_sync.fakes import FakeDirectory, SeededOrg, seed_org


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest_asyncio.fixture
async def org(db) -> SeededOrg:
    return await seed_org(db)


@pytest.fixture
def service(db, directory) -> DirectorySyncService:
    return DirectorySyncService(db, client_factory=directory.factory)


@pytest.fixture
def route_service(app, db, directory):
    """Routes build their service around the fake directory for the test's lifetime."""
    from app.shared.core.dependencies import get_directory_sync_service

    app.dependency_overrides[get_directory_sync_service] = lambda: DirectorySyncService(
        db, client_factory=directory.factory
    )
    yield directory
    app.dependency_overrides.pop(get_directory_sync_service, None)
