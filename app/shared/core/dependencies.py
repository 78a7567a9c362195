from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.directory_sync.domain import DirectorySyncService
from app.shared.db.session import get_db


def get_current_org_id(
    x_org_id: Annotated[str | None, Header(alias="X-Org-Id")] = None,
) -> UUID:
    """
    Caller's organization, forwarded by the upstream auth gateway.
    Authentication and permission checks happen before requests reach us.
    """
    if not x_org_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing organization context",
        )
    try:
        return UUID(x_org_id.strip())
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid organization id",
        ) from exc


def get_current_actor_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    # Only recorded in audit events.
    return (x_user_id or "").strip() or "unknown"


def get_directory_sync_service(
    db: AsyncSession = Depends(get_db),
) -> DirectorySyncService:
    return DirectorySyncService(db)
