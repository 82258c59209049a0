"""SQLAlchemy models for EventScope."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

MEMBER_ROLES = ("co_host", "attendee", "invited", "requested")
FRIEND_STATUSES = ("pending", "accepted")
GUEST_PASS_STATUSES = ("pending", "confirmed", "used", "expired", "cancelled")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    username = Column(String(64), nullable=False, unique=True)
    display_name = Column(String(255), nullable=True)
    interests = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    hosted_events = relationship("Event", back_populates="host")


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    host_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    privacy_tier = Column(String(32), nullable=False, default="public")
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    category = Column(String(64), nullable=True)
    tags = Column(JSON, default=list, nullable=False)
    start_time = Column(DateTime, nullable=True)
    view_override = Column(String(32), nullable=True)
    join_override = Column(String(32), nullable=True)
    share_override = Column(String(32), nullable=True)
    invite_override = Column(String(32), nullable=True)
    feed_override = Column(Boolean, nullable=True)
    search_override = Column(Boolean, nullable=True)
    show_attendees_override = Column(Boolean, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    host = relationship("User", back_populates="hosted_events")
    members = relationship(
        "EventMember", back_populates="event", cascade="all, delete-orphan"
    )
    guest_passes = relationship(
        "GuestPass", back_populates="event", cascade="all, delete-orphan"
    )

    def member_ids(self, role: str) -> set[str]:
        return {member.user_id for member in self.members if member.role == role}


class EventMember(Base):
    __tablename__ = "event_members"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_event_member"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    invited_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="members")


class FriendEdge(Base):
    """One directed half of a friendship; an accepted friendship has two."""

    __tablename__ = "friend_edges"
    __table_args__ = (UniqueConstraint("user_id", "friend_id", name="uq_friend_edge"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    friend_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default="pending")
    initiated_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    accepted_at = Column(DateTime, nullable=True)


class Follow(Base):
    __tablename__ = "follows"
    __table_args__ = (
        UniqueConstraint("follower_id", "followee_id", name="uq_follow"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    follower_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    followee_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=_now, nullable=False)


class GuestPass(Base):
    __tablename__ = "guest_passes"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    guest_name = Column(String(255), nullable=False)
    token_hash = Column(String(64), nullable=False, unique=True)
    nonce = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    used_at = Column(DateTime, nullable=True)

    event = relationship("Event", back_populates="guest_passes")
