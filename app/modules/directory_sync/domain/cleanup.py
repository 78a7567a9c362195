"""
Removal of groups that fell out of scope.

A local group whose provider id was not returned by the current run is stale:
its memberships and sync grants go, and any provisioned user it leaves without
a single group is deleted too. Manually created users are only detached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.person import Person, PersonSource
from app.models.rbac import RoleSource, UserRoleGrant
from app.models.scim_group import ScimGroup, UserScimGroup
from app.models.user import User
from app.modules.directory_sync.domain.membership import member_user_ids
from app.modules.directory_sync.domain.settings import DirectoryConfig

logger = structlog.get_logger()


@dataclass(slots=True)
class StaleGroupCleanup:
    groups_removed: int = 0
    users_removed: int = 0
    people_removed: int = 0
    roles_removed: int = 0
    errors: list[str] = field(default_factory=list)


async def delete_person(db: AsyncSession, person_id: UUID) -> None:
    """Delete a Person after clearing every reference to it."""
    await db.execute(
        update(Person).where(Person.manager_id == person_id).values(manager_id=None)
    )
    await db.execute(
        update(User).where(User.person_id == person_id).values(person_id=None)
    )
    await db.execute(delete(Person).where(Person.id == person_id))


async def _remaining_memberships(db: AsyncSession, user_id: UUID) -> int:
    return int(
        (
            await db.execute(
                select(func.count())
                .select_from(UserScimGroup)
                .where(UserScimGroup.user_id == user_id)
            )
        ).scalar_one()
    )


async def _remove_orphan(
    db: AsyncSession,
    user_id: UUID,
    config: DirectoryConfig,
    result: StaleGroupCleanup,
) -> None:
    row = (
        await db.execute(
            select(User.scim_provisioned, User.person_id).where(User.id == user_id)
        )
    ).one_or_none()
    if row is None or not row.scim_provisioned:
        return

    if config.delete_people_on_user_delete and row.person_id is not None:
        source = (
            await db.execute(select(Person.source).where(Person.id == row.person_id))
        ).scalar_one_or_none()
        if source == PersonSource.SYNC.value:
            await delete_person(db, row.person_id)
            result.people_removed += 1

    await db.execute(delete(UserRoleGrant).where(UserRoleGrant.user_id == user_id))
    await db.execute(delete(User).where(User.id == user_id))
    result.users_removed += 1
    logger.info("directory_orphan_user_deleted", user_id=str(user_id))


async def cleanup_stale_groups(
    db: AsyncSession,
    org_id: UUID,
    valid_external_ids: Iterable[str],
    config: DirectoryConfig,
) -> StaleGroupCleanup:
    valid = set(valid_external_ids)
    result = StaleGroupCleanup()

    rows = (
        await db.execute(
            select(ScimGroup.id, ScimGroup.external_id, ScimGroup.display_name).where(
                ScimGroup.org_id == org_id,
                ScimGroup.external_id.is_not(None),
            )
        )
    ).all()
    stale = [row for row in rows if row.external_id not in valid]
    if not stale:
        return result

    logger.info("directory_stale_groups_found", org_id=str(org_id), count=len(stale))
    for group_id, external_id, display_name in stale:
        users_before = result.users_removed
        people_before = result.people_removed
        roles_before = result.roles_removed
        try:
            async with db.begin_nested():
                members = await member_user_ids(db, group_id)
                await db.execute(
                    delete(UserScimGroup).where(UserScimGroup.scim_group_id == group_id)
                )
                grants = await db.execute(
                    delete(UserRoleGrant).where(
                        UserRoleGrant.scim_group_id == group_id,
                        UserRoleGrant.source == RoleSource.SYNC.value,
                    )
                )
                result.roles_removed += grants.rowcount or 0

                for user_id in sorted(members, key=str):
                    if await _remaining_memberships(db, user_id) == 0:
                        await _remove_orphan(db, user_id, config, result)

                await db.execute(delete(ScimGroup).where(ScimGroup.id == group_id))
            result.groups_removed += 1
            logger.info(
                "directory_stale_group_removed",
                org_id=str(org_id),
                scim_group_id=str(group_id),
                external_id=external_id,
                members=len(members),
            )
        except SQLAlchemyError as exc:
            # The savepoint rolled back, so none of this group's counts stand.
            result.users_removed = users_before
            result.people_removed = people_before
            result.roles_removed = roles_before
            message = f"Error cleaning up stale group {display_name}: {exc}"
            result.errors.append(message)
            logger.error(
                "directory_stale_group_cleanup_failed",
                org_id=str(org_id),
                scim_group_id=str(group_id),
                error=str(exc),
            )
    return result
