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


class UserStatus(str, Enum):
    """Account lifecycle states."""

    ACTIVE = "active"
    INVITED = "invited"
    SUSPENDED = "suspended"
    DEACTIVATED = "deactivated"


class User(Base):
    """An application account. Directory-provisioned accounts carry `scim_provisioned`."""

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("org_id", "email", name="uq_users_org_email"),
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
    email: Mapped[str] = mapped_column(String(length=320), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(length=32), default=UserStatus.ACTIVE.value, nullable=False
    )
    external_id: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True, index=True
    )
    scim_provisioned: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    person_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(),
        ForeignKey("people_persons.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    invited_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} org={self.org_id} status={self.status}>"
