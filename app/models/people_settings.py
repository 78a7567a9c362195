from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    func,
    text,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class PeopleSyncMode(str, Enum):
    # People are created as a side effect of user provisioning.
    LINKED = "linked"
    # People are synced from their own group pattern, without user accounts.
    INDEPENDENT = "independent"


class PeopleSettings(Base):
    """Per-org People module configuration."""

    __tablename__ = "people_settings"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    org_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    sync_mode: Mapped[str] = mapped_column(
        String(length=16), default=PeopleSyncMode.LINKED.value, nullable=False
    )
    people_group_pattern: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True
    )
    property_mapping: Mapped[dict[str, Any] | None] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=True,
    )
    auto_delete_on_removal: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    default_status: Mapped[str] = mapped_column(
        String(length=32), default="active", nullable=False
    )
    scim_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )

    # Last independent People sync
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    synced_people_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_error_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<PeopleSettings org={self.org_id} mode={self.sync_mode}>"
