"""
Directory Sync API

Admin-triggered runs of the Entra ID sync:
- Full sync: users, groups, role grants and (in linked mode) People records.
- Independent People sync: People records only, from their own group pattern.

Handlers stay thin; all reconciliation lives in DirectorySyncService and every
outcome it reports is mapped onto a status code here.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.people_settings import PeopleSyncMode
from app.modules.directory_sync.api.v1.schemas import (
    FullSyncResponse,
    PeopleSyncResponse,
    PeopleSyncStatsResponse,
    SyncStatsResponse,
    SyncStatusResponse,
)
from app.modules.directory_sync.domain import (
    DirectorySyncService,
    PeopleSyncOptions,
    count_synced_entities,
)
from app.modules.directory_sync.domain.dates import utc_now
from app.modules.directory_sync.domain.settings import (
    get_integration,
    load_people_sync_settings,
)
from app.shared.core.dependencies import (
    get_current_actor_id,
    get_current_org_id,
    get_directory_sync_service,
)
from app.shared.core.exceptions import (
    BackofficeException,
    ConfigurationError,
    ConflictError,
    ResourceNotFoundError,
)
from app.shared.core.logging import audit_log
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Directory Sync"])


@router.post("/settings/integrations/entra/sync", response_model=FullSyncResponse)
async def trigger_full_sync(
    org_id: UUID = Depends(get_current_org_id),
    actor_id: str = Depends(get_current_actor_id),
    db: AsyncSession = Depends(get_db),
    service: DirectorySyncService = Depends(get_directory_sync_service),
) -> FullSyncResponse:
    """
    Run a full directory sync for the caller's organization.

    A run that synced at least one group is reported as 200 even when some
    records failed; `success` and `stats.errors` carry the details.
    """
    integration = await get_integration(db, org_id)
    if integration is None:
        raise ResourceNotFoundError("Integration not found")
    if not integration.scim_enabled:
        raise ConfigurationError("SCIM is not enabled")

    result = await service.perform_full_sync(org_id)
    stats = SyncStatsResponse.model_validate(result.stats.to_dict())
    if result.busy:
        raise ConflictError(result.message, code="sync_in_progress")
    if not result.success and result.stats.groups_synced == 0:
        raise BackofficeException(
            result.message,
            code="sync_failed",
            status_code=500,
            details={"stats": stats.model_dump(by_alias=True)},
        )

    user_count, group_count = await count_synced_entities(db, org_id)
    audit_log(
        "directory_sync_completed",
        actor_id,
        str(org_id),
        {
            "users_created": result.stats.users_created,
            "users_updated": result.stats.users_updated,
            "users_deleted": result.stats.users_deleted,
            "groups_synced": result.stats.groups_synced,
            "roles_assigned": result.stats.roles_assigned,
            "success": result.success,
        },
    )
    return FullSyncResponse(
        success=result.success,
        synced_user_count=user_count,
        synced_group_count=group_count,
        last_sync_at=utc_now(),
        message=result.message,
        stats=stats,
    )


@router.get("/settings/integrations/entra/sync", response_model=SyncStatusResponse)
async def get_sync_status(
    org_id: UUID = Depends(get_current_org_id),
    db: AsyncSession = Depends(get_db),
) -> SyncStatusResponse:
    """Live counts plus the outcome of the last run."""
    integration = await get_integration(db, org_id)
    if integration is None:
        return SyncStatusResponse()

    user_count, group_count = await count_synced_entities(db, org_id)
    return SyncStatusResponse(
        synced_user_count=user_count,
        synced_group_count=group_count,
        last_sync_at=integration.last_sync_at,
        last_error=integration.last_error,
        last_error_at=integration.last_error_at,
    )


@router.post("/people/settings/sync", response_model=PeopleSyncResponse)
async def trigger_people_sync(
    org_id: UUID = Depends(get_current_org_id),
    actor_id: str = Depends(get_current_actor_id),
    db: AsyncSession = Depends(get_db),
    service: DirectorySyncService = Depends(get_directory_sync_service),
) -> PeopleSyncResponse:
    integration = await get_integration(db, org_id)
    if integration is None or integration.status != "connected":
        raise ConfigurationError(
            "Entra ID is not connected. Configure it in Settings > Integrations."
        )

    settings = await load_people_sync_settings(db, org_id)
    sync_mode = settings.sync_mode if settings is not None else PeopleSyncMode.LINKED.value
    if settings is None or sync_mode == PeopleSyncMode.LINKED.value:
        raise ConfigurationError(
            "People sync is in linked mode. Sync users in Settings > Integrations to update people.",
            details={"redirectTo": "/settings/integrations"},
        )
    if not settings.people_group_pattern:
        raise ConfigurationError(
            "No group pattern configured for people sync. Configure it in People > Settings."
        )

    options = PeopleSyncOptions.from_settings(settings)
    result = await service.perform_people_sync(org_id, options)
    if result.busy:
        raise ConflictError(result.message, code="sync_in_progress")

    audit_log(
        "people_sync_completed",
        actor_id,
        str(org_id),
        {
            "groups_found": result.stats.groups_found,
            "people_created": result.stats.people_created,
            "people_updated": result.stats.people_updated,
            "people_deleted": result.stats.people_deleted,
            "synced_count": result.stats.synced_count,
            "success": result.success,
        },
    )
    return PeopleSyncResponse(
        success=result.success,
        message=result.message,
        stats=PeopleSyncStatsResponse.model_validate(result.stats.to_dict()),
    )
