"""
Group membership and role-grant reconciliation.

Sync owns memberships and the grants whose ``source`` is ``sync``. A manual
grant is never removed here; when a group grants the same role it is taken
over (source switched to sync) so later cleanup treats it like any other
group-derived grant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
from uuid import UUID

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.rbac import RoleSource, UserRoleGrant
from app.models.scim_group import ScimGroup, UserScimGroup
from app.modules.directory_sync.domain.dates import utc_now

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class MembershipChange:
    membership_added: bool = False
    role_assigned: bool = False


@dataclass(frozen=True, slots=True)
class StaleMembershipCleanup:
    memberships_removed: int = 0
    roles_removed: int = 0


async def sync_membership(
    db: AsyncSession,
    user_id: UUID,
    group_id: UUID,
    role_id: UUID | None,
) -> MembershipChange:
    membership_added = False
    role_assigned = False
    now = utc_now()

    membership = await db.get(UserScimGroup, (user_id, group_id))
    if membership is None:
        db.add(UserScimGroup(user_id=user_id, scim_group_id=group_id, synced_at=now))
        membership_added = True

    if role_id is not None:
        grant = await db.get(UserRoleGrant, (user_id, role_id))
        if grant is None:
            db.add(
                UserRoleGrant(
                    user_id=user_id,
                    role_id=role_id,
                    source=RoleSource.SYNC.value,
                    scim_group_id=group_id,
                    assigned_at=now,
                )
            )
            role_assigned = True
        elif grant.source == RoleSource.MANUAL.value:
            grant.source = RoleSource.SYNC.value
            grant.scim_group_id = group_id
            grant.assigned_at = now
            role_assigned = True
            logger.info(
                "directory_role_grant_adopted",
                user_id=str(user_id),
                role_id=str(role_id),
                scim_group_id=str(group_id),
            )

    if membership_added or role_assigned:
        await db.flush()
    return MembershipChange(membership_added=membership_added, role_assigned=role_assigned)


async def member_user_ids(db: AsyncSession, group_id: UUID) -> set[UUID]:
    rows = (
        await db.execute(
            select(UserScimGroup.user_id).where(UserScimGroup.scim_group_id == group_id)
        )
    ).all()
    return {row[0] for row in rows}


async def cleanup_stale_memberships(
    db: AsyncSession,
    org_id: UUID,
    group_id: UUID,
    current_member_ids: Iterable[UUID],
) -> StaleMembershipCleanup:
    """Drop memberships (and this group's sync grants) of users no longer reported."""
    stale = sorted(await member_user_ids(db, group_id) - set(current_member_ids), key=str)
    if not stale:
        return StaleMembershipCleanup()

    await db.execute(
        delete(UserScimGroup).where(
            UserScimGroup.scim_group_id == group_id,
            UserScimGroup.user_id.in_(stale),
        )
    )
    grants = await db.execute(
        delete(UserRoleGrant).where(
            UserRoleGrant.scim_group_id == group_id,
            UserRoleGrant.source == RoleSource.SYNC.value,
            UserRoleGrant.user_id.in_(stale),
        )
    )
    result = StaleMembershipCleanup(
        memberships_removed=len(stale), roles_removed=grants.rowcount or 0
    )
    logger.info(
        "directory_stale_memberships_removed",
        org_id=str(org_id),
        scim_group_id=str(group_id),
        memberships_removed=result.memberships_removed,
        roles_removed=result.roles_removed,
    )
    return result


async def recalculate_user_roles(db: AsyncSession, user_id: UUID) -> int:
    """
    Rebuild a user's sync grants from their current memberships. Manual grants
    are left alone, and a role already held manually is not duplicated.
    Returns the number of sync grants in place afterwards.
    """
    await db.execute(
        delete(UserRoleGrant).where(
            UserRoleGrant.user_id == user_id,
            UserRoleGrant.source == RoleSource.SYNC.value,
        )
    )
    rows = (
        await db.execute(
            select(ScimGroup.id, ScimGroup.mapped_role_id)
            .join(UserScimGroup, UserScimGroup.scim_group_id == ScimGroup.id)
            .where(
                UserScimGroup.user_id == user_id,
                ScimGroup.mapped_role_id.is_not(None),
            )
            .order_by(ScimGroup.display_name)
        )
    ).all()
    manual_roles = set(
        (
            await db.execute(
                select(UserRoleGrant.role_id).where(UserRoleGrant.user_id == user_id)
            )
        ).scalars()
    )

    now = utc_now()
    granted: set[UUID] = set()
    for group_id, role_id in rows:
        if role_id in granted or role_id in manual_roles:
            continue
        db.add(
            UserRoleGrant(
                user_id=user_id,
                role_id=role_id,
                source=RoleSource.SYNC.value,
                scim_group_id=group_id,
                assigned_at=now,
            )
        )
        granted.add(role_id)
    await db.flush()
    return len(granted)
