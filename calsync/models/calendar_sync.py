"""
Domain models for external calendar synchronization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CalendarProvider(str, Enum):
    """Supported external calendar providers."""
    GOOGLE = "google"
    OUTLOOK = "outlook"


class EventSource(str, Enum):
    """Where a local event record came from."""
    LOCAL = "local"
    GOOGLE = "google"
    OUTLOOK = "outlook"


class SyncState(str, Enum):
    """Outward sync status of a local event."""
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


SYNC_ERROR_MAX_LENGTH = 500


class CalendarConnection(BaseModel):
    """OAuth credentials linking one user to one provider account."""
    id: Optional[int] = None
    user_id: str
    provider: CalendarProvider
    provider_account_email: Optional[str] = None
    provider_calendar_id: str = "primary"

    # OAuth tokens (stored encrypted)
    access_token: str
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LocalEvent(BaseModel):
    """Event record owned by a user, authored locally or imported."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str = Field(alias="userId")
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    starts_at: datetime = Field(alias="startsAt")
    ends_at: datetime = Field(alias="endsAt")

    source: EventSource = EventSource.LOCAL
    source_event_id: Optional[str] = Field(default=None, alias="sourceEventId")  # Remote id for imported events
    provider_event_ids: Dict[CalendarProvider, str] = Field(
        default_factory=dict, alias="providerEventIds"
    )  # Outward mirrors

    sync_state: SyncState = Field(default=SyncState.PENDING, alias="syncState")
    sync_error: Optional[str] = Field(default=None, alias="syncError")

    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class LocalEventCreate(BaseModel):
    """Input for authoring a new local event."""
    model_config = ConfigDict(populate_by_name=True)

    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    starts_at: datetime = Field(alias="startsAt")
    ends_at: datetime = Field(alias="endsAt")

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        title = value.strip()
        if not title:
            raise ValueError("title is required")
        return title

    @field_validator("description", "location")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("starts_at", "ends_at")
    @classmethod
    def as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def validate_time_range(self) -> "LocalEventCreate":
        """Ensure end time is after start time."""
        if self.ends_at <= self.starts_at:
            raise ValueError("end time must be after start time")
        return self


class RemoteEventInput(BaseModel):
    """Provider-agnostic payload for creating or updating a remote event."""
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    starts_at: datetime
    ends_at: datetime


class RemoteEventRow(BaseModel):
    """Normalized single-instance event read from a provider."""
    provider_event_id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    starts_at: datetime
    ends_at: datetime


class TokenSet(BaseModel):
    """Result of an authorization-code exchange or token refresh."""
    access_token: str
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    expires_in: Optional[int] = None


class EmailLookup(BaseModel):
    """Outcome of a best-effort account email lookup."""
    email: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class OAuthStatePayload(BaseModel):
    """Authenticated (not encrypted) contents of an OAuth state token."""
    model_config = ConfigDict(populate_by_name=True)

    provider: str
    user_id: str = Field(alias="userId")
    return_path: str = Field(alias="returnPath")
    issued_at_ms: int = Field(alias="issuedAtMs")
    version: int = 1


class SyncSummary(BaseModel):
    """Structured, partial-success result of one sync run."""
    model_config = ConfigDict(populate_by_name=True)

    pushed: int = 0
    imported: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    synced_at: datetime = Field(alias="syncedAt")
    message: Optional[str] = None


class ProviderStatus(BaseModel):
    """Connection status of one provider, as shown to the user."""
    model_config = ConfigDict(populate_by_name=True)

    connected: bool = False
    provider_account_email: Optional[str] = Field(default=None, alias="providerAccountEmail")
    provider_calendar_id: Optional[str] = Field(default=None, alias="providerCalendarId")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class CalendarStatus(BaseModel):
    """Connection status across all supported providers."""
    model_config = ConfigDict(populate_by_name=True)

    providers: Dict[CalendarProvider, ProviderStatus]
    connected_count: int = Field(alias="connectedCount")
    has_any_connection: bool = Field(alias="hasAnyConnection")
