"""SQLAlchemy ORM models for the calendar sync schema.

The uniqueness rules the sync engine relies on live here, in the schema:
one connection per (user, provider), and one imported event per
(user, source, source_event_id).

Usage:
    from calsync.models.database import Base, CalendarConnectionRecord, CalendarEventRecord

    # For Alembic migrations, models are imported in alembic/env.py
"""

from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    JSON, Column, DateTime, Index, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""
    pass


class CalendarConnectionRecord(Base):
    """OAuth credentials for one user + provider pair."""

    __tablename__ = "calendar_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, comment="Authenticated user ID")
    provider = Column(String(16), nullable=False, comment="google | outlook")
    provider_account_email = Column(String, nullable=True, comment="Account email reported by the provider")
    provider_calendar_id = Column(String, nullable=False, default="primary", comment="Linked remote calendar")

    access_token = Column(Text, nullable=False, comment="Fernet-encrypted access token")
    refresh_token = Column(Text, nullable=True, comment="Fernet-encrypted refresh token")
    token_type = Column(String, nullable=True)
    scope = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True, comment="Access token expiry (UTC)")

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_calendar_connections_user_provider"),
        Index("idx_calendar_connections_user", "user_id"),
    )

    def __repr__(self):
        return f"<CalendarConnectionRecord(id={self.id}, user_id={self.user_id}, provider={self.provider})>"


class CalendarEventRecord(Base):
    """Local event: user-authored (source=local) or imported from a provider."""

    __tablename__ = "calendar_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, comment="Owner user ID")
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    starts_at = Column(DateTime, nullable=False, comment="Start (UTC)")
    ends_at = Column(DateTime, nullable=False, comment="End (UTC)")

    source = Column(String(16), nullable=False, default="local", comment="local | google | outlook")
    source_event_id = Column(String, nullable=True, comment="Remote id of an imported event")
    provider_event_ids = Column(JSON, nullable=False, default=dict, comment="provider -> remote id of outward mirrors")

    sync_state = Column(String(16), nullable=False, default="pending", comment="pending | synced | error")
    sync_error = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "source", "source_event_id", name="uq_calendar_events_user_source_event"),
        Index("idx_calendar_events_user_starts", "user_id", "starts_at"),
    )

    def __repr__(self):
        return f"<CalendarEventRecord(id={self.id}, user_id={self.user_id}, source={self.source})>"
