from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncStatsResponse(_CamelModel):
    groups_found: int = 0
    groups_synced: int = 0
    groups_removed: int = 0
    users_created: int = 0
    users_updated: int = 0
    users_deleted: int = 0
    people_created: int = 0
    people_updated: int = 0
    people_deleted: int = 0
    roles_assigned: int = 0
    roles_removed: int = 0
    managers_updated: int = 0
    errors: list[str] = []


class PeopleSyncStatsResponse(_CamelModel):
    groups_found: int = 0
    people_created: int = 0
    people_updated: int = 0
    people_deleted: int = 0
    synced_count: int = 0
    managers_updated: int = 0
    errors: list[str] = []


class FullSyncResponse(_CamelModel):
    success: bool
    synced_user_count: int
    synced_group_count: int
    last_sync_at: datetime
    message: str
    stats: SyncStatsResponse


class SyncStatusResponse(_CamelModel):
    synced_user_count: int = 0
    synced_group_count: int = 0
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None


class PeopleSyncResponse(_CamelModel):
    success: bool
    message: str
    stats: PeopleSyncStatsResponse
