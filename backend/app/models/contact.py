import enum
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

NICKNAME_MAX_LENGTH = 50


class ContactStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    BLOCKED = "blocked"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Contact(Base):
    """One direction of a contact relation.

    Every relation between two users is stored as two rows, (owner=A, peer=B)
    and (owner=B, peer=A). Both rows share status, requested_by_id, created_at
    and accepted_at; only the nickname belongs to a single row.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("owner_id", "peer_id", name="uq_contact_owner_peer"),
        CheckConstraint("owner_id <> peer_id", name="ck_contact_not_self"),
        CheckConstraint("status IN ('pending', 'accepted', 'blocked')", name="ck_contact_status"),
        Index("ix_contacts_owner_status", "owner_id", "status"),
        Index("ix_contacts_peer_status", "peer_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    peer_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ContactStatus.PENDING.value)
    nickname: Mapped[str | None] = mapped_column(String(NICKNAME_MAX_LENGTH))
    requested_by_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
