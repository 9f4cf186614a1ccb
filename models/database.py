"""
Database models
SQLAlchemy 2.0 async ORM

Timestamps are stored as naive UTC; the store layer converts them back to
aware datetimes before they reach the engine.
"""

from datetime import datetime
from typing import Dict, Any
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    DateTime,
    Text,
    Enum,
    Index,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from models.calendar import Visibility, RsvpStatus

Base = declarative_base()


# ============ Tables ============


class CalendarEvent(Base):
    """Calendar events (one row per series)"""

    __tablename__ = "calendar_events"

    id = Column(String(64), primary_key=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(300), nullable=True)
    start_time = Column(DateTime, nullable=False, comment="UTC")
    end_time = Column(DateTime, nullable=False, comment="UTC")
    owner_id = Column(String(64), nullable=False, index=True)
    visibility = Column(Enum(Visibility), nullable=False, default=Visibility.PRIVATE)
    community_id = Column(String(64), nullable=True, index=True)
    rrule = Column(String(500), nullable=True, comment="RFC 5545 style rule")
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    event_kind = Column(String(50), nullable=True)
    is_cancelled = Column(Boolean, nullable=False, default=False)
    cancellation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_event_start_end", "start_time", "end_time"),
        Index("idx_event_owner_start", "owner_id", "start_time"),
        Index("idx_event_visibility", "visibility", "community_id"),
    )

    def __repr__(self):
        return (
            f"<CalendarEvent(id={self.id}, owner={self.owner_id}, "
            f"visibility={self.visibility}, start={self.start_time})>"
        )


class EventRsvp(Base):
    """RSVP per user and occurrence (last write wins)"""

    __tablename__ = "event_rsvps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, index=True)
    occurrence_key = Column(String(120), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    status = Column(Enum(RsvpStatus), nullable=False)
    pinned = Column(Boolean, nullable=False, default=False)
    shareable = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "occurrence_key", name="uq_rsvp_user_occurrence"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "occurrence_key": self.occurrence_key,
            "user_id": self.user_id,
            "status": self.status.value if self.status else None,
            "pinned": self.pinned,
            "shareable": self.shareable,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class SessionInterval(Base):
    """Presence intervals (e.g. meditation sessions)"""

    __tablename__ = "session_intervals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(64), nullable=False, index=True)
    started_at = Column(DateTime, nullable=False, comment="UTC")
    ended_at = Column(DateTime, nullable=True, comment="UTC, NULL while open")
    closed_reason = Column(String(20), nullable=True, comment="closed / expired")

    __table_args__ = (
        Index("idx_session_started", "started_at"),
        Index("idx_session_open", "ended_at", "started_at"),
    )


class Friendship(Base):
    """Friend edges backing the SQL relationship oracle"""

    __tablename__ = "friendships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    friend_id = Column(String(64), nullable=False, index=True)
    accepted = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "friend_id", name="uq_friendship_pair"),
    )


class CommunityMember(Base):
    """Community membership backing the SQL relationship oracle"""

    __tablename__ = "community_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    community_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    joined_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("community_id", "user_id", name="uq_community_member"),
    )


# ============ Connection ============

from config.settings import fastapi_settings


def _engine_kwargs(url: str) -> Dict[str, Any]:
    """Pool settings; sqlite drivers manage their own pool"""
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


engine = create_async_engine(
    fastapi_settings.DATABASE_URL,
    echo=fastapi_settings.DEBUG,
    future=True,
    **_engine_kwargs(fastapi_settings.DATABASE_URL),
)

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


async def init_db():
    """Create all tables"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
