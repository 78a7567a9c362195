"""
People directory records.

A Person is the HR-side record of somebody in the organization. It may be
linked to an application User (`users.person_id`) and may be maintained by
directory sync (`source = sync`) or by hand (`source = manual`).
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    Date,
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


class PersonStatus(str, Enum):
    ACTIVE = "active"
    ONBOARDING = "onboarding"
    OFFBOARDING = "offboarding"
    INACTIVE = "inactive"


class PersonSource(str, Enum):
    MANUAL = "manual"
    SYNC = "sync"


class Person(Base):
    __tablename__ = "people_persons"
    __table_args__ = (
        UniqueConstraint("org_id", "email", name="uq_people_persons_org_email"),
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
    slug: Mapped[str] = mapped_column(String(length=255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    email: Mapped[str] = mapped_column(String(length=320), nullable=False, index=True)
    role: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    team: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    manager_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(),
        ForeignKey("people_persons.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        String(length=32), default=PersonStatus.ACTIVE.value, nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    location: Mapped[str | None] = mapped_column(String(length=255), nullable=True)

    # Directory sync provenance
    source: Mapped[str] = mapped_column(
        String(length=16), default=PersonSource.MANUAL.value, nullable=False
    )
    external_id: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True, index=True
    )
    external_group_id: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True
    )
    external_group_name: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )

    # Extended directory attributes
    hire_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    entra_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sign_in_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_password_change_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Person id={self.id} org={self.org_id} slug={self.slug}>"
