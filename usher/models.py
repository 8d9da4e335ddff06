# usher/models.py
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    Index,
    DateTime,
    JSON,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from usher.db.base import Base

INVITATIONS_TABLE = "usher_invitations"
INVITATION_USAGES_TABLE = "usher_invitation_usages"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class UtcDateTime(TypeDecorator):
    """
    Stores naive UTC timestamps, always hands back aware UTC datetimes.

    SQLite drops tzinfo and Postgres "timestamp without time zone" does too,
    so values are normalized on the way in and re-tagged on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Invitation(Base):
    """
    Shareable invitation with a unique token and optional expiration.

    expires_at=None means the invitation never expires.
    """

    __tablename__ = INVITATIONS_TABLE

    id = Column(String(36), primary_key=True, default=_new_id)
    token = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    expires_at = Column(UtcDateTime(), nullable=True)
    joined_count = Column(Integer, nullable=False, default=0, server_default=sa.text("0"))

    # Generic JSON object, or the JSON dump of a host-supplied pydantic model
    custom_attributes = Column(JSON, nullable=True)

    inserted_at = Column(UtcDateTime(), nullable=False, default=_utcnow)
    updated_at = Column(UtcDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)

    usages = relationship(
        "InvitationUsage",
        back_populates="invitation",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index(f"{INVITATIONS_TABLE}_token_index", "token", unique=True),
        Index(f"{INVITATIONS_TABLE}_expires_at_index", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<Invitation id={self.id} name={self.name!r} expires_at={self.expires_at}>"


class InvitationUsage(Base):
    """
    One interaction of an entity (user, company, device, ...) with an invitation:
    visiting a signup page, registering, activating, etc.
    """

    __tablename__ = INVITATION_USAGES_TABLE

    id = Column(String(36), primary_key=True, default=_new_id)
    invitation_id = Column(
        String(36),
        ForeignKey(f"{INVITATIONS_TABLE}.id", ondelete="CASCADE"),
        nullable=False,
    )
    entity_type = Column(String(255), nullable=False)
    entity_id = Column(String(255), nullable=False)
    action = Column(String(255), nullable=False)

    # Underlying DB column is "metadata" (reserved attribute name on declarative classes)
    usage_metadata = Column("metadata", JSON, nullable=False, default=dict)

    inserted_at = Column(UtcDateTime(), nullable=False, default=_utcnow)
    updated_at = Column(UtcDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)

    invitation = relationship("Invitation", back_populates="usages")

    __table_args__ = (
        Index(f"{INVITATION_USAGES_TABLE}_invitation_id_index", "invitation_id"),
        Index(f"{INVITATION_USAGES_TABLE}_entity_type_entity_id_index", "entity_type", "entity_id"),
        Index(f"{INVITATION_USAGES_TABLE}_action_index", "action"),
        Index(f"{INVITATION_USAGES_TABLE}_inserted_at_index", "inserted_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invitation_id": self.invitation_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "metadata": dict(self.usage_metadata or {}),
            "inserted_at": self.inserted_at.isoformat() if self.inserted_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
