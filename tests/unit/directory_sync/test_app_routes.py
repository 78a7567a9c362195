import pytest

from app.main import app as backoffice_app
from app.shared.core.app_routes import _validate_router_registry


@pytest.mark.asyncio
async def test_liveness(ac):
    response = await ac.get("/health/live")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_readiness_probes_database(ac):
    response = await ac.get("/health")

    assert response.status_code == 200
    assert response.json()["database"]["status"] == "up"


@pytest.mark.asyncio
async def test_metrics_are_exposed(ac):
    response = await ac.get("/metrics/")

    assert response.status_code == 200
    assert "backoffice_directory_sync_runs_total" in response.text


@pytest.mark.asyncio
async def test_responses_carry_request_id(ac):
    response = await ac.get("/health/live", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_sync_routes_are_registered():
    paths = {getattr(route, "path", None) for route in backoffice_app.routes}

    assert "/api/v1/settings/integrations/entra/sync" in paths
    assert "/api/v1/people/settings/sync" in paths
    assert "/scim/v2/sync" in paths


def test_router_registry_rejects_unknown_prefix():
    from app.modules.directory_sync.api.v1.scim import router as scim_router
    from app.modules.directory_sync.api.v1.sync import router as sync_router

    with pytest.raises(RuntimeError, match="unexpected API prefixes"):
        _validate_router_registry(
            [(sync_router, "/api/v1"), (scim_router, "/scim/v2"), (sync_router, "/api/v2")]
        )
    with pytest.raises(RuntimeError, match="missing required API prefixes"):
        _validate_router_registry([(sync_router, "/api/v1")])


@pytest.mark.asyncio
async def test_unprintable_request_id_is_replaced(ac):
    response = await ac.get("/health/live", headers={"X-Request-ID": "bad id with spaces"})

    assert response.headers["X-Request-ID"] != "bad id with spaces"
    assert len(response.headers["X-Request-ID"]) == 36
