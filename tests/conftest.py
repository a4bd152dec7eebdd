"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from urllib.parse import urlencode

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from calsync.models.calendar_sync import (
    CalendarConnection,
    CalendarProvider,
    RemoteEventInput,
    RemoteEventRow,
    TokenSet,
)
from calsync.services.exceptions import (
    RemoteReadError,
    RemoteSyncError,
    TokenExchangeError,
    TokenRefreshError,
)
from calsync.services.providers import ProviderRegistry
from calsync.main import app
from calsync.services.sync_database import SyncDatabase


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeCalendarAdapter:
    """In-memory stand-in for a provider adapter.

    Remote events live in ``remote_events``; every call is recorded.
    """

    def __init__(self, provider: CalendarProvider):
        self.provider = provider
        self.remote_events: Dict[str, RemoteEventRow] = {}
        self.upsert_calls: List[dict] = []
        self.list_calls: List[dict] = []
        self.refresh_calls: List[str] = []
        self.exchange_calls: List[str] = []

        self.fail_push_titles = set()
        self.fail_refresh = False
        self.fail_list = False
        self.fail_exchange = False

        self.tokens = TokenSet(access_token=f"{provider.value}-fresh-token", token_type="Bearer", expires_in=3600)
        self.email: Optional[str] = f"someone@{provider.value}.example"
        self._next_id = 0

    def build_authorize_url(self, state: str) -> str:
        return f"https://auth.example/{self.provider.value}?{urlencode({'state': state})}"

    async def exchange_code(self, code: str) -> TokenSet:
        self.exchange_calls.append(code)
        if self.fail_exchange:
            raise TokenExchangeError(self.provider.value, "invalid_grant")
        return self.tokens

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        self.refresh_calls.append(refresh_token)
        if self.fail_refresh:
            raise TokenRefreshError(self.provider.value, "invalid_grant")
        return self.tokens

    async def fetch_account_email(self, access_token: str) -> Optional[str]:
        return self.email

    def add_remote_event(self, remote_id: str, title: str, starts_at: datetime, hours: int = 1) -> RemoteEventRow:
        row = RemoteEventRow(
            provider_event_id=remote_id,
            title=title,
            starts_at=starts_at,
            ends_at=starts_at + timedelta(hours=hours),
        )
        self.remote_events[remote_id] = row
        return row

    async def upsert_remote_event(
        self,
        access_token: str,
        calendar_id: str,
        event: RemoteEventInput,
        existing_remote_id: Optional[str] = None
    ) -> str:
        self.upsert_calls.append({
            "access_token": access_token,
            "calendar_id": calendar_id,
            "title": event.title,
            "existing_remote_id": existing_remote_id,
        })
        if event.title in self.fail_push_titles:
            raise RemoteSyncError(self.provider.value, event.title, f"{self.provider.value} event sync failed: quota exceeded")

        remote_id = existing_remote_id
        if not remote_id:
            self._next_id += 1
            remote_id = f"{self.provider.value}-remote-{self._next_id}"

        self.remote_events[remote_id] = RemoteEventRow(
            provider_event_id=remote_id,
            title=event.title,
            description=event.description,
            location=event.location,
            starts_at=event.starts_at,
            ends_at=event.ends_at,
        )
        return remote_id

    async def list_remote_events(
        self,
        access_token: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime
    ) -> List[RemoteEventRow]:
        self.list_calls.append({
            "access_token": access_token,
            "window_start": window_start,
            "window_end": window_end,
        })
        if self.fail_list:
            raise RemoteReadError(self.provider.value, "calendar read failed: backend error")
        return [
            row for row in self.remote_events.values()
            if window_start <= row.starts_at <= window_end
        ]


@pytest.fixture
def now():
    """Fixed current time for deterministic tests."""
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return FrozenClock(now)


@pytest.fixture
def sync_db(tmp_path):
    """Store backed by a throwaway SQLite file."""
    db = SyncDatabase(
        f"sqlite:///{tmp_path / 'calendar_sync.db'}",
        encryption_key=Fernet.generate_key()
    )
    yield db
    db.close()


@pytest.fixture
def google_adapter():
    return FakeCalendarAdapter(CalendarProvider.GOOGLE)


@pytest.fixture
def outlook_adapter():
    return FakeCalendarAdapter(CalendarProvider.OUTLOOK)


@pytest.fixture
def providers(google_adapter, outlook_adapter):
    return ProviderRegistry([google_adapter, outlook_adapter])


@pytest.fixture
def sample_user_id():
    """Sample user ID for testing."""
    return "user-123"


@pytest.fixture
def connect(sync_db, sample_user_id, now):
    """Store a connection for the sample user."""

    async def _connect(provider: CalendarProvider, **overrides) -> CalendarConnection:
        values = {
            "user_id": sample_user_id,
            "provider": provider,
            "access_token": f"{provider.value}-access-token",
            "refresh_token": f"{provider.value}-refresh-token",
            "expires_at": now + timedelta(hours=1),
        }
        values.update(overrides)
        return await sync_db.upsert_connection(CalendarConnection(**values))

    return _connect


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(app)
