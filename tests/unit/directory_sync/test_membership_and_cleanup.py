from __future__ import annotations

from datetime import date
from uuid import UUID

import pytest
from sqlalchemy import select

from app.models.person import Person, PersonSource
from app.models.rbac import RoleSource, UserRoleGrant
from app.models.scim_group import ScimGroup, UserScimGroup
from app.models.user import User
from app.modules.directory_sync.domain.cleanup import cleanup_stale_groups, delete_person
from app.modules.directory_sync.domain.membership import (
    cleanup_stale_memberships,
    recalculate_user_roles,
    sync_membership,
)
from app.modules.directory_sync.domain.settings import DirectoryConfig

CONFIG = DirectoryConfig(
    tenant_id="tenant-1",
    client_id="client-1",
    client_secret="secret",
    scim_enabled=True,
    group_pattern="App-*",
)


async def _user(db, org_id, email: str, *, provisioned: bool = True) -> User:
    user = User(org_id=org_id, email=email, name=email, scim_provisioned=provisioned)
    db.add(user)
    await db.flush()
    return user


async def _group(db, org_id, external_id: str | None, role_id: UUID | None) -> ScimGroup:
    group = ScimGroup(
        org_id=org_id,
        external_id=external_id,
        display_name=f"App-{external_id or 'manual'}",
        mapped_role_id=role_id,
    )
    db.add(group)
    await db.flush()
    return group


async def _grants(db, user_id) -> dict[UUID, str]:
    rows = (
        await db.execute(
            select(UserRoleGrant.role_id, UserRoleGrant.source).where(
                UserRoleGrant.user_id == user_id
            )
        )
    ).all()
    return {role_id: source for role_id, source in rows}


@pytest.mark.asyncio
async def test_sync_membership_is_idempotent(db, org):
    user = await _user(db, org.org_id, "ada@example.com")
    group = await _group(db, org.org_id, "g1", org.roles["admin"])

    first = await sync_membership(db, user.id, group.id, org.roles["admin"])
    second = await sync_membership(db, user.id, group.id, org.roles["admin"])
    await db.commit()

    assert first.membership_added and first.role_assigned
    assert not second.membership_added and not second.role_assigned
    assert await _grants(db, user.id) == {org.roles["admin"]: RoleSource.SYNC.value}


@pytest.mark.asyncio
async def test_manual_grant_is_adopted_by_matching_group(db, org):
    user = await _user(db, org.org_id, "ada@example.com")
    group = await _group(db, org.org_id, "g1", org.roles["admin"])
    db.add(UserRoleGrant(user_id=user.id, role_id=org.roles["admin"], source="manual"))
    await db.commit()

    change = await sync_membership(db, user.id, group.id, org.roles["admin"])
    await db.commit()

    assert change.role_assigned is True
    grant = await db.get(UserRoleGrant, (user.id, org.roles["admin"]))
    assert grant.source == RoleSource.SYNC.value
    assert grant.scim_group_id == group.id


@pytest.mark.asyncio
async def test_membership_without_role(db, org):
    user = await _user(db, org.org_id, "ada@example.com")
    group = await _group(db, org.org_id, "g1", None)

    change = await sync_membership(db, user.id, group.id, None)
    assert change.membership_added is True
    assert change.role_assigned is False
    assert await _grants(db, user.id) == {}


@pytest.mark.asyncio
async def test_stale_memberships_drop_only_this_groups_sync_grants(db, org):
    stays = await _user(db, org.org_id, "stays@example.com")
    leaves = await _user(db, org.org_id, "leaves@example.com")
    group = await _group(db, org.org_id, "g1", org.roles["admin"])
    for user in (stays, leaves):
        await sync_membership(db, user.id, group.id, org.roles["admin"])
    db.add(UserRoleGrant(user_id=leaves.id, role_id=org.roles["engineering"], source="manual"))
    await db.commit()

    result = await cleanup_stale_memberships(db, org.org_id, group.id, [stays.id])
    await db.commit()

    assert result.memberships_removed == 1
    assert result.roles_removed == 1
    assert await db.get(UserScimGroup, (stays.id, group.id)) is not None
    assert await db.get(UserScimGroup, (leaves.id, group.id)) is None
    assert await _grants(db, leaves.id) == {org.roles["engineering"]: "manual"}


@pytest.mark.asyncio
async def test_stale_memberships_noop_when_everyone_present(db, org):
    user = await _user(db, org.org_id, "ada@example.com")
    group = await _group(db, org.org_id, "g1", org.roles["admin"])
    await sync_membership(db, user.id, group.id, org.roles["admin"])

    result = await cleanup_stale_memberships(db, org.org_id, group.id, [user.id])
    assert result.memberships_removed == 0
    assert result.roles_removed == 0


@pytest.mark.asyncio
async def test_recalculate_user_roles_rebuilds_sync_grants(db, org):
    user = await _user(db, org.org_id, "ada@example.com")
    admins = await _group(db, org.org_id, "g1", org.roles["admin"])
    engineers = await _group(db, org.org_id, "g2", org.roles["engineering"])
    unmapped = await _group(db, org.org_id, "g3", None)
    for group in (admins, engineers, unmapped):
        db.add(UserScimGroup(user_id=user.id, scim_group_id=group.id))
    db.add(UserRoleGrant(user_id=user.id, role_id=org.roles["engineering"], source="manual"))
    db.add(
        UserRoleGrant(
            user_id=user.id,
            role_id=org.roles["user"],
            source=RoleSource.SYNC.value,
            scim_group_id=unmapped.id,
        )
    )
    await db.commit()

    granted = await recalculate_user_roles(db, user.id)
    await db.commit()

    assert granted == 1
    assert await _grants(db, user.id) == {
        org.roles["admin"]: RoleSource.SYNC.value,
        org.roles["engineering"]: "manual",
    }


@pytest.mark.asyncio
async def test_stale_group_removal_deletes_orphans_but_not_manual_users(db, org):
    provisioned = await _user(db, org.org_id, "sync@example.com")
    manual = await _user(db, org.org_id, "manual@example.com", provisioned=False)
    shared = await _user(db, org.org_id, "shared@example.com")
    stale = await _group(db, org.org_id, "old", org.roles["admin"])
    kept = await _group(db, org.org_id, "new", org.roles["engineering"])
    hand_made = await _group(db, org.org_id, None, None)

    for user in (provisioned, manual, shared):
        await sync_membership(db, user.id, stale.id, org.roles["admin"])
    await sync_membership(db, shared.id, kept.id, org.roles["engineering"])
    db.add(UserRoleGrant(user_id=manual.id, role_id=org.roles["user"], source="manual"))
    await db.commit()
    provisioned_id, manual_id, shared_id = provisioned.id, manual.id, shared.id
    stale_id = stale.id

    result = await cleanup_stale_groups(db, org.org_id, ["new"], CONFIG)
    await db.commit()

    assert result.groups_removed == 1
    assert result.users_removed == 1
    assert result.roles_removed == 3
    assert result.errors == []
    assert await db.get(ScimGroup, stale_id) is None
    assert await db.get(ScimGroup, kept.id) is not None
    assert await db.get(ScimGroup, hand_made.id) is not None

    remaining = set((await db.execute(select(User.id))).scalars())
    assert provisioned_id not in remaining
    assert {manual_id, shared_id} <= remaining
    assert await _grants(db, manual_id) == {org.roles["user"]: "manual"}
    assert await _grants(db, shared_id) == {org.roles["engineering"]: RoleSource.SYNC.value}


@pytest.mark.asyncio
async def test_orphan_person_deleted_only_when_synced(db, org):
    synced_person = Person(
        org_id=org.org_id,
        slug="synced",
        name="Synced",
        email="sync@example.com",
        start_date=date(2020, 1, 1),
        source=PersonSource.SYNC.value,
    )
    manual_person = Person(
        org_id=org.org_id,
        slug="manual",
        name="Manual",
        email="other@example.com",
        start_date=date(2020, 1, 1),
    )
    db.add_all([synced_person, manual_person])
    await db.flush()

    first = await _user(db, org.org_id, "sync@example.com")
    second = await _user(db, org.org_id, "other@example.com")
    first.person_id = synced_person.id
    second.person_id = manual_person.id
    stale = await _group(db, org.org_id, "old", None)
    for user in (first, second):
        await sync_membership(db, user.id, stale.id, None)
    await db.commit()
    synced_id, manual_id = synced_person.id, manual_person.id

    result = await cleanup_stale_groups(db, org.org_id, [], CONFIG)
    await db.commit()

    assert result.users_removed == 2
    assert result.people_removed == 1
    remaining = set((await db.execute(select(Person.id))).scalars())
    assert remaining == {manual_id}
    assert synced_id not in remaining


@pytest.mark.asyncio
async def test_people_kept_when_auto_delete_disabled(db, org):
    person = Person(
        org_id=org.org_id,
        slug="synced",
        name="Synced",
        email="sync@example.com",
        start_date=date(2020, 1, 1),
        source=PersonSource.SYNC.value,
    )
    db.add(person)
    await db.flush()
    user = await _user(db, org.org_id, "sync@example.com")
    user.person_id = person.id
    stale = await _group(db, org.org_id, "old", None)
    await sync_membership(db, user.id, stale.id, None)
    await db.commit()

    config = DirectoryConfig(
        tenant_id="t", client_id="c", client_secret="s", delete_people_on_user_delete=False
    )
    result = await cleanup_stale_groups(db, org.org_id, [], config)
    await db.commit()

    assert result.users_removed == 1
    assert result.people_removed == 0
    assert await db.get(Person, person.id) is not None


@pytest.mark.asyncio
async def test_delete_person_clears_references(db, org):
    boss = Person(
        org_id=org.org_id, slug="boss", name="Boss", email="boss@example.com",
        start_date=date(2020, 1, 1),
    )
    db.add(boss)
    await db.flush()
    report = Person(
        org_id=org.org_id, slug="report", name="Report", email="report@example.com",
        start_date=date(2020, 1, 1), manager_id=boss.id,
    )
    db.add(report)
    user = await _user(db, org.org_id, "boss@example.com")
    user.person_id = boss.id
    await db.commit()
    boss_id, report_id, user_id = boss.id, report.id, user.id

    await delete_person(db, boss_id)
    await db.commit()

    manager_id = (
        await db.execute(select(Person.manager_id).where(Person.id == report_id))
    ).scalar_one()
    linked = (await db.execute(select(User.person_id).where(User.id == user_id))).scalar_one()
    assert manager_id is None
    assert linked is None
