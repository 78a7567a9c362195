"""
Directory sync configuration loaded from the integration and People settings rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.integration import PROVIDER_ENTRA, Integration
from app.models.people_settings import PeopleSettings, PeopleSyncMode
from app.models.person import PersonStatus
from app.shared.core.security import SecretsCodec, generate_secret_blind_index

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class DirectoryConfig:
    """Decrypted, ready-to-use Entra connection settings for one org."""

    tenant_id: str
    client_id: str
    client_secret: str
    scim_enabled: bool = False
    group_pattern: str = ""
    sync_people_enabled: bool = False
    delete_people_on_user_delete: bool = True
    status: str = "connected"

    def __repr__(self) -> str:
        return (
            f"DirectoryConfig(tenant_id={self.tenant_id!r}, client_id={self.client_id!r}, "
            f"scim_enabled={self.scim_enabled}, group_pattern={self.group_pattern!r})"
        )


class PeoplePropertyMapping(BaseModel):
    """
    Graph attribute -> Person field mapping for independent People sync.
    A target other than the default disables that attribute.
    """

    model_config = ConfigDict(extra="ignore")

    jobTitle: str | None = "role"
    department: str | None = "team"
    officeLocation: str | None = "location"
    mobilePhone: str | None = "phone"
    # "hireDate" or "startDate"
    employeeHireDate: str | None = "hireDate"
    employeeLeaveDateTime: str | None = "endDate"
    createdDateTime: str | None = "entraCreatedAt"
    manager: str | None = "managerId"

    @classmethod
    def from_stored(cls, raw: dict[str, Any] | None) -> "PeoplePropertyMapping":
        if not raw:
            return cls()
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            logger.warning("people_property_mapping_invalid", error=str(exc))
            return cls()


@dataclass(frozen=True, slots=True)
class PeopleSyncOptions:
    group_pattern: str
    property_mapping: PeoplePropertyMapping
    auto_delete_on_removal: bool = False
    default_status: str = PersonStatus.ACTIVE.value

    @classmethod
    def from_settings(cls, settings: PeopleSettings) -> "PeopleSyncOptions":
        return cls(
            group_pattern=settings.people_group_pattern or "",
            property_mapping=PeoplePropertyMapping.from_stored(settings.property_mapping),
            auto_delete_on_removal=settings.auto_delete_on_removal,
            default_status=settings.default_status,
        )


async def get_integration(db: AsyncSession, org_id: UUID) -> Integration | None:
    return (
        await db.execute(
            select(Integration).where(
                Integration.org_id == org_id,
                Integration.provider == PROVIDER_ENTRA,
            )
        )
    ).scalar_one_or_none()


async def load_directory_config(
    db: AsyncSession, org_id: UUID, codec: SecretsCodec
) -> DirectoryConfig | None:
    """None when the integration is missing, incomplete, or its secret won't decrypt."""
    integration = await get_integration(db, org_id)
    if integration is None:
        return None
    if (
        not integration.tenant_id
        or not integration.client_id
        or not integration.client_secret_encrypted
    ):
        return None

    client_secret = codec.decrypt(integration.client_secret_encrypted)
    if not client_secret:
        logger.error("entra_client_secret_decrypt_failed", org_id=str(org_id))
        return None

    return DirectoryConfig(
        tenant_id=integration.tenant_id,
        client_id=integration.client_id,
        client_secret=client_secret,
        scim_enabled=integration.scim_enabled,
        group_pattern=integration.scim_group_prefix or "",
        sync_people_enabled=integration.sync_people_enabled,
        delete_people_on_user_delete=integration.delete_people_on_user_delete,
        status=integration.status,
    )


async def load_people_sync_settings(
    db: AsyncSession, org_id: UUID
) -> PeopleSettings | None:
    return (
        await db.execute(select(PeopleSettings).where(PeopleSettings.org_id == org_id))
    ).scalar_one_or_none()


def is_people_independent(settings: PeopleSettings | None) -> bool:
    return settings is not None and settings.sync_mode == PeopleSyncMode.INDEPENDENT.value


def set_scim_token(integration: Integration, token: str | None, codec: SecretsCodec) -> None:
    """Store the provisioning callback token encrypted, plus its lookup index."""
    if not token:
        integration.scim_token_encrypted = None
        integration.scim_token_bidx = None
        return
    integration.scim_token_encrypted = codec.encrypt(token)
    integration.scim_token_bidx = generate_secret_blind_index(token)
