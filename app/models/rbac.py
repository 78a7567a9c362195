from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
    text,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class RoleSource(str, Enum):
    """Provenance of a role grant."""

    MANUAL = "manual"
    SYNC = "sync"


class Role(Base):
    __tablename__ = "rbac_roles"
    __table_args__ = (
        UniqueConstraint("org_id", "slug", name="uq_rbac_roles_org_slug"),
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
    slug: Mapped[str] = mapped_column(String(length=100), nullable=False)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    is_default: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    is_system: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Role id={self.id} org={self.org_id} slug={self.slug}>"


class UserRoleGrant(Base):
    """
    A role held by a user. Grants with `source = sync` are owned by directory
    sync and carry the group that produced them; manual grants are never
    touched by sync cleanup.
    """

    __tablename__ = "rbac_user_roles"

    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    role_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("rbac_roles.id", ondelete="CASCADE"),
        primary_key=True,
    )
    source: Mapped[str] = mapped_column(
        String(length=16), default=RoleSource.MANUAL.value, nullable=False
    )
    scim_group_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(),
        ForeignKey("scim_groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<UserRoleGrant user={self.user_id} role={self.role_id} source={self.source}>"
