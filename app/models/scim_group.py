"""
Directory Group Models

Mirror of the identity-provider groups that fall under the configured group
pattern, plus the user memberships observed during the last sync.

Design:
- Org-scoped; `external_id` is the provider's group id and is unique per org.
- `mapped_role_id` is the role granted to every member through the group.
- Memberships are stored so stale ones can be diffed away on the next run.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class ScimGroup(Base):
    __tablename__ = "scim_groups"
    __table_args__ = (
        UniqueConstraint(
            "org_id",
            "external_id",
            name="uq_scim_groups_org_external_id",
        ),
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

    # Null for groups created by hand; those are never considered stale.
    external_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    display_name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    mapped_role_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(),
        ForeignKey("rbac_roles.id", ondelete="SET NULL"),
        nullable=True,
    )
    member_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<ScimGroup id={self.id} org={self.org_id} name={self.display_name}>"


class UserScimGroup(Base):
    __tablename__ = "user_scim_groups"

    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    scim_group_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("scim_groups.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<UserScimGroup group={self.scim_group_id} user={self.user_id}>"
