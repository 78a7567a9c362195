"""
Directory Sync Service

Entry points that reconcile an org's local users, people, groups and role
grants against Microsoft Entra ID.

Runs are sequential and commit after every group, so an interrupted run leaves
a consistent partial state the next run completes. Nothing here raises for
configuration, authentication or per-record failures: each is folded into the
returned result and the run carries on with the next record.
"""

from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import Callable, Protocol
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.integration import Integration, PROVIDER_ENTRA
from app.models.people_settings import PeopleSettings
from app.models.scim_group import ScimGroup
from app.models.user import User
from app.modules.directory_sync.domain.cleanup import cleanup_stale_groups
from app.modules.directory_sync.domain.dates import utc_now
from app.modules.directory_sync.domain.graph_client import GraphDirectoryClient
from app.modules.directory_sync.domain.graph_models import RemoteGroup, RemoteUser
from app.modules.directory_sync.domain.managers import (
    PendingManager,
    apply_manager_updates,
)
from app.modules.directory_sync.domain.membership import (
    cleanup_stale_memberships,
    sync_membership,
)
from app.modules.directory_sync.domain.people_sync import (
    profile_from_mapping,
    tracks_managers,
    upsert_directory_person,
)
from app.modules.directory_sync.domain.resolvers import (
    get_default_role,
    get_or_create_person,
    get_or_create_scim_group,
    get_or_create_user,
    map_group_to_role,
)
from app.modules.directory_sync.domain.results import (
    PeopleSyncResult,
    PeopleSyncStats,
    SyncResult,
    SyncStats,
)
from app.modules.directory_sync.domain.settings import (
    DirectoryConfig,
    PeopleSyncOptions,
    is_people_independent,
    load_directory_config,
    load_people_sync_settings,
)
from app.modules.directory_sync.domain.sync_lock import (
    acquire_sync_lock,
    release_sync_lock,
)
from app.modules.directory_sync.domain.token_cache import TokenCacheRegistry
from app.shared.core.config import get_settings
from app.shared.core.ops_metrics import record_sync_changes, time_sync_run
from app.shared.core.security import SecretsCodec

logger = structlog.get_logger()

NOT_CONFIGURED_MESSAGE = "Entra ID not configured"
SCIM_DISABLED_MESSAGE = "SCIM is not enabled"
AUTH_FAILED_MESSAGE = "Failed to authenticate with Microsoft Graph API"
BUSY_MESSAGE = "A directory sync is already running for this organization"


class DirectoryClient(Protocol):
    last_error: str | None

    async def get_access_token(self) -> str | None: ...

    async def fetch_groups(self, pattern: str | None) -> list[RemoteGroup]: ...

    async def fetch_group_members(
        self, group_id: str, include_extended: bool = True
    ) -> list[RemoteUser]: ...


ClientFactory = Callable[[DirectoryConfig], DirectoryClient]


@lru_cache
def get_token_cache_registry() -> TokenCacheRegistry:
    return TokenCacheRegistry(
        skew_seconds=get_settings().GRAPH_TOKEN_EXPIRY_SKEW_SECONDS
    )


def graph_client_factory(config: DirectoryConfig) -> DirectoryClient:
    cache = get_token_cache_registry().for_credentials(config.tenant_id, config.client_id)
    return GraphDirectoryClient(config, token_cache=cache)


async def count_synced_entities(db: AsyncSession, org_id: UUID) -> tuple[int, int]:
    """Live (directory-provisioned users, directory groups) counts for an org."""
    user_count = (
        await db.execute(
            select(func.count())
            .select_from(User)
            .where(User.org_id == org_id, User.scim_provisioned.is_(True))
        )
    ).scalar_one()
    group_count = (
        await db.execute(
            select(func.count()).select_from(ScimGroup).where(ScimGroup.org_id == org_id)
        )
    ).scalar_one()
    return int(user_count), int(group_count)


def _auth_failure_message(client: DirectoryClient) -> str:
    if client.last_error:
        return f"{AUTH_FAILED_MESSAGE}: {client.last_error}"
    return AUTH_FAILED_MESSAGE


class DirectorySyncService:
    def __init__(
        self,
        db: AsyncSession,
        *,
        codec: SecretsCodec | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.db = db
        self.codec = codec or SecretsCodec()
        self.client_factory = client_factory or graph_client_factory

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    @time_sync_run("full")
    async def perform_full_sync(self, org_id: UUID) -> SyncResult:
        structlog.contextvars.bind_contextvars(org_id=str(org_id))
        try:
            config = await load_directory_config(self.db, org_id, self.codec)
            if config is None:
                return SyncResult(success=False, message=NOT_CONFIGURED_MESSAGE)
            if not config.scim_enabled:
                return SyncResult(success=False, message=SCIM_DISABLED_MESSAGE)

            holder_id = await acquire_sync_lock(self.db, org_id)
            if holder_id is None:
                return SyncResult(success=False, message=BUSY_MESSAGE, busy=True)
            try:
                return await self._full_sync(org_id, config)
            finally:
                await self.db.rollback()
                await release_sync_lock(self.db, org_id, holder_id)
        finally:
            structlog.contextvars.unbind_contextvars("org_id")

    async def _full_sync(self, org_id: UUID, config: DirectoryConfig) -> SyncResult:
        stats = SyncStats()
        logger.info("directory_sync_started", pattern=config.group_pattern)

        client = self.client_factory(config)
        if not await client.get_access_token():
            return SyncResult(
                success=False, message=_auth_failure_message(client), stats=stats
            )

        pattern = config.group_pattern or ""
        people_settings = await load_people_sync_settings(self.db, org_id)
        people_independent = is_people_independent(people_settings)
        link_people = config.sync_people_enabled and not people_independent
        people_options: PeopleSyncOptions | None = None
        if (
            people_settings is not None
            and people_independent
            and people_settings.scim_enabled
            and people_settings.people_group_pattern
        ):
            people_options = PeopleSyncOptions.from_settings(people_settings)

        default_role = await get_default_role(self.db, org_id)
        default_role_id = default_role.id if default_role is not None else None
        if default_role is None:
            logger.warning("directory_sync_no_default_role")

        groups = await client.fetch_groups(pattern)
        groups_error = client.last_error
        stats.groups_found = len(groups)
        if groups_error:
            stats.errors.append(groups_error)
        if not groups and pattern and not groups_error:
            return SyncResult(
                success=True,
                message=f'No groups found matching pattern "{pattern}"',
                stats=stats,
            )

        pending_managers: list[PendingManager] = []
        for remote_group in groups:
            counts_before = stats.counts()
            managers_before = len(pending_managers)
            try:
                await self._sync_group(
                    org_id,
                    client,
                    remote_group,
                    pattern=pattern,
                    default_role_id=default_role_id,
                    link_people=link_people,
                    stats=stats,
                    pending_managers=pending_managers,
                )
                await self.db.commit()
                stats.groups_synced += 1
            except Exception as exc:  # noqa: BLE001 - one group must not abort the run
                await self.db.rollback()
                # The rollback discarded this group's writes, so none of its counts stand.
                stats.restore_counts(counts_before)
                del pending_managers[managers_before:]
                message = f"Error processing group {remote_group.display_name}: {exc}"
                stats.errors.append(message)
                logger.error(
                    "directory_sync_group_failed",
                    group_id=remote_group.external_id,
                    error=str(exc),
                )

        if pending_managers:
            stats.managers_updated = await self._apply_managers(
                org_id, pending_managers, stats.errors
            )

        if groups_error:
            logger.warning("directory_stale_cleanup_skipped", reason=groups_error)
        else:
            cleanup = await cleanup_stale_groups(
                self.db, org_id, [group.external_id for group in groups], config
            )
            await self.db.commit()
            stats.groups_removed = cleanup.groups_removed
            stats.users_deleted = cleanup.users_removed
            stats.people_deleted = cleanup.people_removed
            stats.roles_removed += cleanup.roles_removed
            stats.errors.extend(cleanup.errors)

        people_info = ""
        if link_people:
            people_info = (
                f", people (linked): +{stats.people_created}/-{stats.people_deleted}"
            )
        if people_options is not None:
            await self._merge_independent_people_sync(org_id, client, people_options, stats)
            people_info = (
                f", people (independent): +{stats.people_created}/-{stats.people_deleted}"
            )

        await self._persist_integration_counters(org_id, stats.errors)

        message = (
            f"Synced {stats.groups_synced} groups (removed {stats.groups_removed} stale), "
            f"users: +{stats.users_created}/-{stats.users_deleted}{people_info}, "
            f"roles: +{stats.roles_assigned}/-{stats.roles_removed}"
        )
        logger.info(
            "directory_sync_completed",
            message=message,
            error_count=len(stats.errors),
        )
        record_sync_changes(stats)
        return SyncResult(success=not stats.errors, message=message, stats=stats)

    async def _sync_group(
        self,
        org_id: UUID,
        client: DirectoryClient,
        remote_group: RemoteGroup,
        *,
        pattern: str,
        default_role_id: UUID | None,
        link_people: bool,
        stats: SyncStats,
        pending_managers: list[PendingManager],
    ) -> None:
        role = await map_group_to_role(
            self.db, org_id, remote_group.display_name, pattern or None
        )
        role_id = role.id if role is not None else default_role_id
        scim_group = await get_or_create_scim_group(self.db, org_id, remote_group, role_id)
        group_id = scim_group.id

        members = await client.fetch_group_members(remote_group.external_id)
        members_error = client.last_error
        if members_error:
            stats.errors.append(members_error)

        current_member_ids: list[UUID] = []
        failed_members = 0
        for member in members:
            try:
                user_id = await self._sync_member(
                    org_id,
                    member,
                    remote_group,
                    group_id=group_id,
                    role_id=role_id,
                    link_people=link_people,
                    stats=stats,
                    pending_managers=pending_managers,
                )
                current_member_ids.append(user_id)
            except Exception as exc:  # noqa: BLE001 - one member must not abort the group
                failed_members += 1
                stats.errors.append(f"Error processing member {member.email}: {exc}")
                logger.error(
                    "directory_sync_member_failed",
                    group_id=remote_group.external_id,
                    member_id=member.external_id,
                    error=str(exc),
                )

        # Without the full member list the diff would detach real members.
        if members_error or failed_members:
            logger.warning(
                "directory_membership_cleanup_skipped",
                group_id=remote_group.external_id,
                failed_members=failed_members,
            )
        else:
            removed = await cleanup_stale_memberships(
                self.db, org_id, group_id, current_member_ids
            )
            stats.roles_removed += removed.roles_removed

        await self.db.execute(
            update(ScimGroup)
            .where(ScimGroup.id == group_id)
            .values(member_count=len(members), last_sync_at=utc_now())
        )
        logger.info(
            "directory_sync_group_processed",
            group_id=remote_group.external_id,
            members=len(members),
        )

    async def _sync_member(
        self,
        org_id: UUID,
        member: RemoteUser,
        remote_group: RemoteGroup,
        *,
        group_id: UUID,
        role_id: UUID | None,
        link_people: bool,
        stats: SyncStats,
        pending_managers: list[PendingManager],
    ) -> UUID:
        people_created = people_updated = 0
        person_error: str | None = None
        manager: PendingManager | None = None

        async with self.db.begin_nested():
            resolution = await get_or_create_user(self.db, org_id, member)
            user_id = resolution.user.id

            if link_people:
                try:
                    async with self.db.begin_nested():
                        person = await get_or_create_person(
                            self.db, org_id, user_id, member, remote_group
                        )
                    people_created = int(person.created)
                    people_updated = int(person.updated)
                    if member.manager is not None:
                        manager = PendingManager(person.person.id, member.manager)
                except Exception as exc:  # noqa: BLE001 - people records are secondary
                    person_error = f"Error syncing person for {member.email}: {exc}"
                    logger.error(
                        "directory_sync_person_failed",
                        member_id=member.external_id,
                        error=str(exc),
                    )

            change = await sync_membership(self.db, user_id, group_id, role_id)

        # Counted only once the member's savepoint has been released.
        if resolution.created:
            stats.users_created += 1
        elif resolution.updated or change.membership_added:
            stats.users_updated += 1
        if change.role_assigned:
            stats.roles_assigned += 1
        stats.people_created += people_created
        stats.people_updated += people_updated
        if person_error:
            stats.errors.append(person_error)
        if manager is not None:
            pending_managers.append(manager)
        return user_id

    async def _apply_managers(
        self, org_id: UUID, pending: list[PendingManager], errors: list[str]
    ) -> int:
        try:
            updated = await apply_manager_updates(self.db, org_id, pending)
            await self.db.commit()
            return updated
        except Exception as exc:  # noqa: BLE001 - manager links are best effort
            await self.db.rollback()
            errors.append(f"Error updating manager relationships: {exc}")
            logger.error("directory_manager_update_failed", error=str(exc))
            return 0

    async def _merge_independent_people_sync(
        self,
        org_id: UUID,
        client: DirectoryClient,
        options: PeopleSyncOptions,
        stats: SyncStats,
    ) -> None:
        logger.info("directory_sync_running_people_sync")
        try:
            result = await self._people_sync(org_id, client, options)
            await self._record_people_sync(org_id, result)
        except Exception as exc:  # noqa: BLE001 - people sync must not fail the user sync
            await self.db.rollback()
            stats.errors.append(f"Error during people sync: {exc}")
            logger.error("directory_people_sync_failed", error=str(exc))
            return
        stats.people_created += result.stats.people_created
        stats.people_updated += result.stats.people_updated
        stats.people_deleted += result.stats.people_deleted
        stats.managers_updated += result.stats.managers_updated
        stats.errors.extend(result.stats.errors)

    async def _persist_integration_counters(self, org_id: UUID, errors: list[str]) -> None:
        user_count, group_count = await count_synced_entities(self.db, org_id)
        now = utc_now()
        await self.db.execute(
            update(Integration)
            .where(Integration.org_id == org_id, Integration.provider == PROVIDER_ENTRA)
            .values(
                synced_user_count=user_count,
                synced_group_count=group_count,
                last_sync_at=now,
                last_error="; ".join(errors) if errors else None,
                last_error_at=now if errors else None,
            )
        )
        await self.db.commit()

    # ------------------------------------------------------------------
    # Independent People sync
    # ------------------------------------------------------------------

    @time_sync_run("people")
    async def perform_people_sync(
        self, org_id: UUID, options: PeopleSyncOptions
    ) -> PeopleSyncResult:
        structlog.contextvars.bind_contextvars(org_id=str(org_id))
        try:
            config = await load_directory_config(self.db, org_id, self.codec)
            if config is None:
                return PeopleSyncResult(success=False, message=NOT_CONFIGURED_MESSAGE)

            holder_id = await acquire_sync_lock(self.db, org_id)
            if holder_id is None:
                return PeopleSyncResult(success=False, message=BUSY_MESSAGE, busy=True)
            try:
                result = await self._people_sync(
                    org_id, self.client_factory(config), options
                )
                await self._record_people_sync(org_id, result)
                record_sync_changes(result.stats)
                return result
            finally:
                await self.db.rollback()
                await release_sync_lock(self.db, org_id, holder_id)
        finally:
            structlog.contextvars.unbind_contextvars("org_id")

    async def _people_sync(
        self, org_id: UUID, client: DirectoryClient, options: PeopleSyncOptions
    ) -> PeopleSyncResult:
        stats = PeopleSyncStats()
        logger.info("people_sync_started", pattern=options.group_pattern)

        if not await client.get_access_token():
            return PeopleSyncResult(
                success=False, message=_auth_failure_message(client), stats=stats
            )

        groups = await client.fetch_groups(options.group_pattern)
        stats.groups_found = len(groups)
        if client.last_error:
            stats.errors.append(client.last_error)
        elif not groups:
            return PeopleSyncResult(
                success=True,
                message=f'No groups found matching pattern "{options.group_pattern}"',
                stats=stats,
            )

        mapping = options.property_mapping
        pending_managers: list[PendingManager] = []
        for group in groups:
            members = await client.fetch_group_members(group.external_id)
            if client.last_error:
                stats.errors.append(client.last_error)
            for member in members:
                try:
                    profile = profile_from_mapping(member, mapping, options.default_status)
                    async with self.db.begin_nested():
                        resolution = await upsert_directory_person(
                            self.db, org_id, member, group, profile
                        )
                except Exception as exc:  # noqa: BLE001 - one member must not abort the run
                    stats.errors.append(f"Error processing member {member.email}: {exc}")
                    logger.error(
                        "people_sync_member_failed",
                        member_id=member.external_id,
                        error=str(exc),
                    )
                    continue
                stats.people_created += int(resolution.created)
                stats.people_updated += int(resolution.updated)
                stats.synced_count += 1
                if member.manager is not None and tracks_managers(mapping):
                    pending_managers.append(
                        PendingManager(resolution.person.id, member.manager)
                    )
            await self.db.commit()

        if pending_managers:
            stats.managers_updated = await self._apply_managers(
                org_id, pending_managers, stats.errors
            )

        if options.auto_delete_on_removal:
            # Accepted but not honored; removal is left to an operator.
            logger.warning("people_sync_auto_delete_not_honored")

        message = (
            f"Synced {stats.groups_found} groups: "
            f"+{stats.people_created} created, ~{stats.people_updated} updated"
        )
        logger.info("people_sync_completed", message=message, error_count=len(stats.errors))
        return PeopleSyncResult(success=not stats.errors, message=message, stats=stats)

    async def _record_people_sync(self, org_id: UUID, result: PeopleSyncResult) -> None:
        now: datetime = utc_now()
        errors = result.stats.errors or ([] if result.success else [result.message])
        await self.db.execute(
            update(PeopleSettings)
            .where(PeopleSettings.org_id == org_id)
            .values(
                last_sync_at=now,
                synced_people_count=result.stats.synced_count,
                last_sync_error="; ".join(errors) if errors else None,
                last_sync_error_at=now if errors else None,
            )
        )
        await self.db.commit()
