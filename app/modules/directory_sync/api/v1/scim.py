"""
Provisioning callback for the identity provider.

The provider calls `POST /scim/v2/sync` with the org's provisioning token as a
Bearer credential to ask for a full directory sync. The token is matched to an
org through its blind index and then confirmed against the decrypted stored
value in constant time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.integration import Integration, PROVIDER_ENTRA
from app.modules.directory_sync.api.v1.schemas import SyncStatsResponse
from app.modules.directory_sync.domain import DirectorySyncService
from app.shared.core.dependencies import get_directory_sync_service
from app.shared.core.logging import audit_log
from app.shared.core.security import (
    SecretsCodec,
    constant_time_equals,
    generate_secret_blind_index,
)
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["SCIM"])

SCIM_ERROR_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:Error"


class ScimError(Exception):
    def __init__(
        self, status_code: int, detail: str, *, scim_type: str | None = None
    ) -> None:
        super().__init__(detail)
        self.status_code = int(status_code)
        self.detail = str(detail)
        self.scim_type = scim_type


def scim_error_response(exc: ScimError) -> JSONResponse:
    payload: dict[str, Any] = {
        "schemas": [SCIM_ERROR_SCHEMA],
        "status": str(exc.status_code),
        "detail": exc.detail,
    }
    if exc.scim_type:
        payload["scimType"] = exc.scim_type
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)


@dataclass(frozen=True, slots=True)
class ScimContext:
    org_id: UUID


def _extract_bearer_token(request: Request) -> str:
    raw = (request.headers.get("Authorization") or "").strip()
    if not raw.lower().startswith("bearer "):
        raise ScimError(
            401, "Missing or invalid Authorization header", scim_type="invalidSyntax"
        )
    token = raw.split(" ", 1)[-1].strip()
    if not token:
        raise ScimError(401, "Missing bearer token", scim_type="invalidSyntax")
    return token


async def get_scim_context(
    request: Request, db: AsyncSession = Depends(get_db)
) -> ScimContext:
    token = _extract_bearer_token(request)
    token_bidx = generate_secret_blind_index(token)
    if not token_bidx:
        raise ScimError(401, "Invalid bearer token", scim_type="invalidSyntax")

    row = (
        await db.execute(
            select(
                Integration.org_id,
                Integration.scim_enabled,
                Integration.scim_token_encrypted,
            ).where(
                Integration.scim_token_bidx == token_bidx,
                Integration.provider == PROVIDER_ENTRA,
            )
        )
    ).first()
    if not row:
        raise ScimError(401, "Unauthorized", scim_type="invalidToken")

    org_id, scim_enabled, token_encrypted = row
    stored = SecretsCodec().decrypt(token_encrypted)
    if not stored or not constant_time_equals(token, stored):
        logger.warning("scim_token_mismatch", org_id=str(org_id))
        raise ScimError(401, "Unauthorized", scim_type="invalidToken")
    if not bool(scim_enabled):
        raise ScimError(403, "SCIM is disabled for this organization", scim_type="forbidden")

    request.state.org_id = org_id
    return ScimContext(org_id=org_id)


@router.post("/sync")
async def provider_triggered_sync(
    ctx: ScimContext = Depends(get_scim_context),
    service: DirectorySyncService = Depends(get_directory_sync_service),
) -> JSONResponse:
    result = await service.perform_full_sync(ctx.org_id)
    if result.busy:
        raise ScimError(409, result.message, scim_type="uniqueness")

    audit_log(
        "directory_sync_provider_triggered",
        "scim",
        str(ctx.org_id),
        {"success": result.success, "groups_synced": result.stats.groups_synced},
    )
    status_code = 500 if not result.success and result.stats.groups_synced == 0 else 200
    return JSONResponse(
        status_code=status_code,
        content={
            "success": result.success,
            "message": result.message,
            "stats": SyncStatsResponse.model_validate(result.stats.to_dict()).model_dump(
                by_alias=True
            ),
        },
    )
