from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.models.directory_sync_lock import DirectorySyncLock
from app.models.person import Person
from app.modules.directory_sync.domain.graph_models import RemoteManager
from app.modules.directory_sync.domain.managers import (
    PendingManager,
    apply_manager_updates,
    resolve_manager_id,
)
from app.modules.directory_sync.domain.sync_lock import acquire_sync_lock, release_sync_lock


async def _person(db, org_id, slug: str, *, external_id: str | None = None, manager_id=None):
    person = Person(
        org_id=org_id,
        slug=slug,
        name=slug.title(),
        email=f"{slug}@example.com",
        start_date=date(2020, 1, 1),
        external_id=external_id,
        manager_id=manager_id,
    )
    db.add(person)
    await db.flush()
    return person


def _manager(external_id: str, email: str | None = None) -> RemoteManager:
    return RemoteManager.model_validate({"id": external_id, "mail": email})


@pytest.mark.asyncio
async def test_manager_resolved_by_external_id_then_email(db, org):
    boss = await _person(db, org.org_id, "boss", external_id="m1")

    assert await resolve_manager_id(db, org.org_id, _manager("m1")) == boss.id
    assert (
        await resolve_manager_id(db, org.org_id, _manager("unknown", "BOSS@example.com"))
        == boss.id
    )
    assert await resolve_manager_id(db, org.org_id, _manager("unknown")) is None
    assert await resolve_manager_id(db, org.org_id, None) is None


@pytest.mark.asyncio
async def test_manager_links_are_applied_once(db, org):
    boss = await _person(db, org.org_id, "boss", external_id="m1")
    report = await _person(db, org.org_id, "report", external_id="u1")
    pending = [PendingManager(report.id, _manager("m1"))]

    assert await apply_manager_updates(db, org.org_id, pending) == 1
    assert report.manager_id == boss.id
    assert await apply_manager_updates(db, org.org_id, pending) == 0


@pytest.mark.asyncio
async def test_self_managed_person_is_left_unset(db, org):
    person = await _person(db, org.org_id, "loop", external_id="u1")

    updated = await apply_manager_updates(
        db, org.org_id, [PendingManager(person.id, _manager("u1", "loop@example.com"))]
    )

    assert updated == 0
    assert person.manager_id is None


@pytest.mark.asyncio
async def test_multi_hop_cycle_is_refused(db, org):
    a = await _person(db, org.org_id, "alpha", external_id="a")
    b = await _person(db, org.org_id, "bravo", external_id="b", manager_id=a.id)
    c = await _person(db, org.org_id, "charlie", external_id="c", manager_id=b.id)

    # alpha -> charlie would close alpha <- bravo <- charlie <- alpha
    updated = await apply_manager_updates(
        db, org.org_id, [PendingManager(a.id, _manager("c"))]
    )

    assert updated == 0
    assert a.manager_id is None
    assert c.manager_id == b.id


@pytest.mark.asyncio
async def test_lock_is_exclusive_until_released(db, org):
    holder = await acquire_sync_lock(db, org.org_id)
    assert holder is not None

    assert await acquire_sync_lock(db, org.org_id) is None

    assert await release_sync_lock(db, org.org_id, holder) is True
    second = await acquire_sync_lock(db, org.org_id)
    assert second is not None and second != holder


@pytest.mark.asyncio
async def test_expired_lock_can_be_taken_over(db, org):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    crashed = await acquire_sync_lock(db, org.org_id, ttl_seconds=60, now=start)
    assert crashed is not None

    assert (
        await acquire_sync_lock(
            db, org.org_id, ttl_seconds=60, now=start + timedelta(seconds=30)
        )
        is None
    )
    takeover = await acquire_sync_lock(
        db, org.org_id, ttl_seconds=60, now=start + timedelta(seconds=61)
    )
    assert takeover is not None

    # The crashed run's late release must not free the new holder's lease.
    assert await release_sync_lock(db, org.org_id, crashed) is False
    row = (
        await db.execute(
            select(DirectorySyncLock.holder_id).where(DirectorySyncLock.org_id == org.org_id)
        )
    ).scalar_one()
    assert row == takeover


@pytest.mark.asyncio
async def test_locks_are_per_org(db, org):
    assert await acquire_sync_lock(db, org.org_id) is not None
    assert await acquire_sync_lock(db, uuid4()) is not None
