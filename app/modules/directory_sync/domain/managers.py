"""
Deferred manager resolution.

Runs after every member of a sync run has been resolved, so a manager listed
after their report in iteration order is already present locally.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.person import Person
from app.modules.directory_sync.domain.graph_models import RemoteManager

logger = structlog.get_logger()

# Longest reporting chain walked when checking for cycles.
MAX_CHAIN_DEPTH = 64


@dataclass(frozen=True, slots=True)
class PendingManager:
    person_id: UUID
    manager: RemoteManager


async def resolve_manager_id(
    db: AsyncSession, org_id: UUID, manager: RemoteManager | None
) -> UUID | None:
    if manager is None:
        return None

    if manager.external_id:
        found = (
            await db.execute(
                select(Person.id)
                .where(Person.org_id == org_id, Person.external_id == manager.external_id)
                .limit(1)
            )
        ).scalar_one_or_none()
        if found is not None:
            return found

    if manager.email:
        return (
            await db.execute(
                select(Person.id)
                .where(
                    Person.org_id == org_id,
                    func.lower(Person.email) == manager.email.strip().lower(),
                )
                .limit(1)
            )
        ).scalar_one_or_none()
    return None


async def _closes_cycle(db: AsyncSession, person_id: UUID, manager_id: UUID) -> bool:
    """True if ``person_id`` already sits above ``manager_id`` in the chain."""
    current: UUID | None = manager_id
    seen: set[UUID] = set()
    for _ in range(MAX_CHAIN_DEPTH):
        if current is None or current in seen:
            return False
        if current == person_id:
            return True
        seen.add(current)
        node = await db.get(Person, current)
        current = node.manager_id if node is not None else None
    return False


async def apply_manager_updates(
    db: AsyncSession, org_id: UUID, pending: Iterable[PendingManager]
) -> int:
    updated = 0
    for item in pending:
        manager_id = await resolve_manager_id(db, org_id, item.manager)
        if manager_id is None:
            continue
        if manager_id == item.person_id:
            logger.warning("directory_manager_self_reference", person_id=str(item.person_id))
            continue

        person = await db.get(Person, item.person_id)
        if person is None or person.manager_id == manager_id:
            continue
        if await _closes_cycle(db, item.person_id, manager_id):
            logger.warning(
                "directory_manager_cycle_skipped",
                person_id=str(item.person_id),
                manager_id=str(manager_id),
            )
            continue

        person.manager_id = manager_id
        await db.flush()
        updated += 1

    logger.info("directory_managers_updated", org_id=str(org_id), updated=updated)
    return updated
