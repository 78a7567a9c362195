"""
Identity-provider integration

One row per (org, provider). Stores the app-registration credentials used for
the client-credentials exchange, the directory-sync switches, and the outcome
of the last sync run.

Design notes:
- Client secrets and provisioning tokens are encrypted at rest with the
  secrets codec; the columns only ever hold ciphertext.
- The provisioning token also gets a deterministic blind index so callback
  requests can be matched to an org without decrypting every row.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base

PROVIDER_ENTRA = "entra"


class Integration(Base):
    __tablename__ = "core_integrations"
    __table_args__ = (
        UniqueConstraint("org_id", "provider", name="uq_core_integrations_org_provider"),
    )

    id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    org_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(
        String(length=32), default=PROVIDER_ENTRA, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(length=32), default="connected", nullable=False
    )

    # App registration
    tenant_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    client_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    client_secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Directory sync
    scim_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    scim_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    scim_token_bidx: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    scim_group_prefix: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True
    )
    sync_people_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    delete_people_on_user_delete: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )

    # Last run
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    synced_user_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    synced_group_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Integration org={self.org_id} provider={self.provider} scim={self.scim_enabled}>"
