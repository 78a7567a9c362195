from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, String, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class DirectorySyncLock(Base):
    """
    Lease row guarding one directory sync run per org.

    A row whose `expires_at` is in the past belongs to a crashed run and may be
    taken over.
    """

    __tablename__ = "directory_sync_locks"

    org_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        primary_key=True,
    )
    holder_id: Mapped[str] = mapped_column(String(length=64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<DirectorySyncLock org={self.org_id} holder={self.holder_id}>"
