"""
Per-org run guard for directory sync.

A lease row in ``directory_sync_locks``. Acquire inserts it, or takes it over
with a compare-and-set when the previous holder's lease has expired; release
deletes it only for the holder that owns it.
"""

from datetime import datetime, timedelta
from typing import Any, cast
from uuid import UUID, uuid4

import structlog
from sqlalchemy import CursorResult, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.directory_sync_lock import DirectorySyncLock
from app.modules.directory_sync.domain.dates import utc_now
from app.shared.core.config import get_settings

logger = structlog.get_logger()


async def acquire_sync_lock(
    db: AsyncSession,
    org_id: UUID,
    ttl_seconds: int | None = None,
    now: datetime | None = None,
) -> str | None:
    """Holder id on success; None while another run holds a live lease."""
    as_of = now or utc_now()
    ttl = ttl_seconds or get_settings().DIRECTORY_SYNC_LOCK_TTL_SECONDS
    holder_id = uuid4().hex
    expires_at = as_of + timedelta(seconds=int(ttl))

    existing = (
        await db.execute(
            select(DirectorySyncLock)
            .where(DirectorySyncLock.org_id == org_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()

    if existing is None:
        try:
            async with db.begin_nested():
                db.add(
                    DirectorySyncLock(
                        org_id=org_id,
                        holder_id=holder_id,
                        acquired_at=as_of,
                        expires_at=expires_at,
                    )
                )
                await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.info("directory_sync_lock_busy", org_id=str(org_id))
            return None
    else:
        takeover = cast(
            CursorResult[Any],
            await db.execute(
                update(DirectorySyncLock)
                .where(
                    DirectorySyncLock.org_id == org_id,
                    DirectorySyncLock.expires_at <= as_of,
                )
                .values(holder_id=holder_id, acquired_at=as_of, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            ),
        )
        if int(takeover.rowcount or 0) <= 0:
            await db.rollback()
            logger.info("directory_sync_lock_busy", org_id=str(org_id))
            return None
        logger.warning(
            "directory_sync_lock_taken_over",
            org_id=str(org_id),
            previous_holder=existing.holder_id,
        )

    await db.commit()
    logger.info("directory_sync_lock_acquired", org_id=str(org_id), holder_id=holder_id)
    return holder_id


async def release_sync_lock(db: AsyncSession, org_id: UUID, holder_id: str) -> bool:
    result = cast(
        CursorResult[Any],
        await db.execute(
            delete(DirectorySyncLock).where(
                DirectorySyncLock.org_id == org_id,
                DirectorySyncLock.holder_id == holder_id,
            )
        ),
    )
    await db.commit()
    released = int(result.rowcount or 0) > 0
    if not released:
        logger.warning(
            "directory_sync_lock_release_missed", org_id=str(org_id), holder_id=holder_id
        )
    return released
