from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import update

from app.models.integration import Integration
from app.models.people_settings import PeopleSettings
from app.modules.directory_sync.domain.sync_lock import acquire_sync_lock
from tests.unit.directory_sync.fakes import remote_user

SYNC_URL = "/api/v1/settings/integrations/entra/sync"
PEOPLE_SYNC_URL = "/api/v1/people/settings/sync"


def _headers(org_id) -> dict[str, str]:
    return {"X-Org-Id": str(org_id), "X-User-Id": "admin-1"}


@pytest.mark.asyncio
async def test_sync_requires_org_context(ac, route_service):
    response = await ac.post(SYNC_URL)

    assert response.status_code == 401
    assert response.json()["code"] == "HTTP_ERROR"
    assert response.json()["message"] == "Missing organization context"


@pytest.mark.asyncio
async def test_sync_rejects_malformed_org_id(ac, route_service):
    response = await ac.post(SYNC_URL, headers={"X-Org-Id": "not-a-uuid"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_sync_without_integration_is_not_found(ac, route_service):
    response = await ac.post(SYNC_URL, headers=_headers(uuid4()))

    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "not_found"
    assert error["message"] == "Integration not found"


@pytest.mark.asyncio
async def test_sync_with_scim_disabled_is_rejected(ac, db, org, route_service):
    await db.execute(
        update(Integration).where(Integration.org_id == org.org_id).values(scim_enabled=False)
    )
    await db.commit()

    response = await ac.post(SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "SCIM is not enabled"
    assert route_service.configs == []


@pytest.mark.asyncio
async def test_sync_success_reports_camel_case_stats(ac, org, route_service):
    route_service.add_group(
        "g1",
        "App-Admin",
        [remote_user("u1", "ada@example.com"), remote_user("u2", "bob@example.com")],
    )

    response = await ac.post(SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["syncedUserCount"] == 2
    assert body["syncedGroupCount"] == 1
    assert body["lastSyncAt"]
    assert body["stats"]["groupsSynced"] == 1
    assert body["stats"]["usersCreated"] == 2
    assert body["stats"]["rolesAssigned"] == 2
    assert body["stats"]["errors"] == []
    assert body["message"].startswith("Synced 1 groups")


@pytest.mark.asyncio
async def test_sync_while_another_run_holds_the_lock(ac, db, org, route_service):
    assert await acquire_sync_lock(db, org.org_id) is not None

    response = await ac.post(SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "sync_in_progress"


@pytest.mark.asyncio
async def test_failed_sync_with_nothing_synced_is_a_server_error(ac, org, route_service):
    route_service.token_error = "AADSTS7000215: Invalid client secret provided."

    response = await ac.post(SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "sync_failed"
    assert error["message"].startswith("Failed to authenticate with Microsoft Graph API")
    assert error["details"]["stats"]["groupsSynced"] == 0


@pytest.mark.asyncio
async def test_status_reflects_last_run(ac, db, org, route_service):
    route_service.add_group("g1", "App-Admin", [remote_user("u1", "ada@example.com")])
    await ac.post(SYNC_URL, headers=_headers(org.org_id))

    route_service.groups_error = "Failed to fetch groups: Graph API returned 503"
    failed = await ac.post(SYNC_URL, headers=_headers(org.org_id))
    assert failed.status_code == 500

    response = await ac.get(SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 200
    body = response.json()
    assert body["syncedUserCount"] == 1
    assert body["syncedGroupCount"] == 1
    assert body["lastSyncAt"] is not None
    assert body["lastError"] == "Failed to fetch groups: Graph API returned 503"
    assert body["lastErrorAt"] is not None


@pytest.mark.asyncio
async def test_status_without_integration_is_empty(ac, route_service):
    response = await ac.get(SYNC_URL, headers=_headers(uuid4()))

    assert response.status_code == 200
    assert response.json() == {
        "syncedUserCount": 0,
        "syncedGroupCount": 0,
        "lastSyncAt": None,
        "lastError": None,
        "lastErrorAt": None,
    }


@pytest.mark.asyncio
async def test_people_sync_requires_connected_integration(ac, route_service):
    response = await ac.post(PEOPLE_SYNC_URL, headers=_headers(uuid4()))

    assert response.status_code == 400
    assert response.json()["error"]["message"].startswith("Entra ID is not connected")


@pytest.mark.asyncio
async def test_people_sync_in_linked_mode_redirects(ac, db, org, route_service):
    db.add(PeopleSettings(org_id=org.org_id, sync_mode="linked"))
    await db.commit()

    response = await ac.post(PEOPLE_SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["message"].startswith("People sync is in linked mode")
    assert error["details"] == {"redirectTo": "/settings/integrations"}


@pytest.mark.asyncio
async def test_people_sync_without_settings_is_treated_as_linked(ac, org, route_service):
    response = await ac.post(PEOPLE_SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 400
    assert response.json()["error"]["details"] == {"redirectTo": "/settings/integrations"}


@pytest.mark.asyncio
async def test_people_sync_needs_a_group_pattern(ac, db, org, route_service):
    db.add(PeopleSettings(org_id=org.org_id, sync_mode="independent"))
    await db.commit()

    response = await ac.post(PEOPLE_SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 400
    assert response.json()["error"]["message"].startswith("No group pattern configured")


@pytest.mark.asyncio
async def test_people_sync_success(ac, db, org, route_service):
    db.add(
        PeopleSettings(
            org_id=org.org_id, sync_mode="independent", people_group_pattern="Staff-*"
        )
    )
    await db.commit()
    route_service.add_group(
        "s1", "Staff-All", [remote_user("u1", "ada@example.com", jobTitle="Engineer")]
    )

    response = await ac.post(PEOPLE_SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Synced 1 groups: +1 created, ~0 updated"
    assert body["stats"]["peopleCreated"] == 1
    assert body["stats"]["syncedCount"] == 1
    assert route_service.patterns == ["Staff-*"]


@pytest.mark.asyncio
async def test_people_sync_busy(ac, db, org, route_service):
    db.add(
        PeopleSettings(
            org_id=org.org_id, sync_mode="independent", people_group_pattern="Staff-*"
        )
    )
    await db.commit()
    assert await acquire_sync_lock(db, org.org_id) is not None

    response = await ac.post(PEOPLE_SYNC_URL, headers=_headers(org.org_id))

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "sync_in_progress"
