"""Tests for the Google and Outlook provider adapters over a mocked HTTP transport."""

import json
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from calsync.models.calendar_sync import CalendarProvider, RemoteEventInput
from calsync.services.exceptions import (
    ProviderConfigurationError,
    RemoteReadError,
    RemoteSyncError,
    TokenExchangeError,
    TokenRefreshError,
    UnsupportedProviderError,
)
from calsync.services.providers import (
    GoogleCalendarAdapter,
    OutlookCalendarAdapter,
    ProviderRegistry,
    parse_provider,
)

REDIRECT_URI = "https://api.example/api/calendar/oauth/callback"
WINDOW_START = datetime(2026, 1, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2027, 3, 1, tzinfo=timezone.utc)


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler):
        self.requests = []

        def record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(record)


def _form(request: httpx.Request) -> dict:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


def _query(url) -> dict:
    return {key: values[0] for key, values in parse_qs(urlsplit(str(url)).query).items()}


def _google(transport=None, **overrides) -> GoogleCalendarAdapter:
    options = {
        "client_id": "google-client",
        "client_secret": "google-secret",
        "redirect_uri": REDIRECT_URI,
        "transport": transport,
    }
    options.update(overrides)
    return GoogleCalendarAdapter(**options)


def _outlook(transport=None, **overrides) -> OutlookCalendarAdapter:
    options = {
        "client_id": "outlook-client",
        "client_secret": "outlook-secret",
        "redirect_uri": REDIRECT_URI,
        "transport": transport,
    }
    options.update(overrides)
    return OutlookCalendarAdapter(**options)


@pytest.fixture
def event():
    return RemoteEventInput(
        title="Coffee Meetup",
        description="Bring a book",
        location="Violet Cafe",
        starts_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        ends_at=datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
    )


# ==================== Lookup ====================

class TestProviderLookup:

    def test_parse_provider(self):
        assert parse_provider("google") is CalendarProvider.GOOGLE
        assert parse_provider(CalendarProvider.OUTLOOK) is CalendarProvider.OUTLOOK

    @pytest.mark.parametrize("value", ["apple", "", None, 1])
    def test_parse_provider_rejects_unknown(self, value):
        with pytest.raises(UnsupportedProviderError):
            parse_provider(value)

    def test_registry_selects_adapter(self):
        google, outlook = _google(), _outlook()
        registry = ProviderRegistry([google, outlook])

        assert registry.get("google") is google
        assert registry.get(CalendarProvider.OUTLOOK) is outlook
        assert CalendarProvider.GOOGLE in registry

    def test_registry_missing_adapter(self):
        registry = ProviderRegistry([_google()])

        with pytest.raises(UnsupportedProviderError):
            registry.get("outlook")


# ==================== Authorize URL ====================

class TestAuthorizeUrl:

    def test_google_authorize_url(self):
        url = _google().build_authorize_url("signed-state")
        params = _query(url)

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert params == {
            "client_id": "google-client",
            "redirect_uri": REDIRECT_URI,
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "scope": "openid email https://www.googleapis.com/auth/calendar",
            "state": "signed-state",
        }

    def test_outlook_authorize_url(self):
        url = _outlook().build_authorize_url("signed-state")
        params = _query(url)

        assert url.startswith("https://login.microsoftonline.com/common/oauth2/v2.0/authorize?")
        assert params["response_mode"] == "query"
        assert params["scope"] == "offline_access openid profile email Calendars.ReadWrite"
        assert params["state"] == "signed-state"

    def test_missing_client_id(self):
        with pytest.raises(ProviderConfigurationError, match="GOOGLE_CALENDAR_CLIENT_ID"):
            _google(client_id=None).build_authorize_url("state")


# ==================== Tokens ====================

class TestTokens:

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        transport = RecordingTransport(lambda request: httpx.Response(200, json={
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "token_type": "Bearer",
            "scope": "openid email",
            "expires_in": 3599,
        }))

        tokens = await _google(transport).exchange_code("auth-code")

        assert tokens.access_token == "access-1"
        assert tokens.refresh_token == "refresh-1"
        assert tokens.expires_in == 3599

        request = transport.requests[0]
        assert str(request.url) == "https://oauth2.googleapis.com/token"
        assert _form(request) == {
            "grant_type": "authorization_code",
            "code": "auth-code",
            "redirect_uri": REDIRECT_URI,
            "client_id": "google-client",
            "client_secret": "google-secret",
        }

    @pytest.mark.asyncio
    async def test_exchange_failure_carries_description(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(400, json={
            "error": "invalid_grant",
            "error_description": "Bad Request",
        }))

        with pytest.raises(TokenExchangeError, match="OAuth token exchange failed for google: Bad Request"):
            await _google(transport).exchange_code("stale-code")

    @pytest.mark.asyncio
    async def test_exchange_without_access_token_fails(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"token_type": "Bearer"}))

        with pytest.raises(TokenExchangeError):
            await _google(transport).exchange_code("auth-code")

    @pytest.mark.asyncio
    async def test_outlook_refresh_sends_scope(self):
        transport = RecordingTransport(lambda request: httpx.Response(200, json={"access_token": "access-2"}))

        tokens = await _outlook(transport).refresh_token("refresh-1")

        assert tokens.access_token == "access-2"
        assert tokens.refresh_token is None
        form = _form(transport.requests[0])
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert form["scope"] == "offline_access openid profile email Calendars.ReadWrite"

    @pytest.mark.asyncio
    async def test_refresh_failure_uses_error_code(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "invalid_client"}))

        with pytest.raises(TokenRefreshError, match="invalid_client"):
            await _outlook(transport).refresh_token("refresh-1")

    @pytest.mark.asyncio
    async def test_refresh_timeout_becomes_refresh_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(TokenRefreshError, match="timed out"):
            await _google(httpx.MockTransport(handler)).refresh_token("refresh-1")

    @pytest.mark.asyncio
    async def test_token_request_requires_secret(self):
        with pytest.raises(ProviderConfigurationError):
            await _outlook(client_secret=None).exchange_code("auth-code")


# ==================== Account email ====================

class TestAccountEmail:

    @pytest.mark.asyncio
    async def test_google_email(self):
        transport = RecordingTransport(lambda request: httpx.Response(200, json={"email": "me@gmail.example"}))

        assert await _google(transport).fetch_account_email("access-1") == "me@gmail.example"
        assert transport.requests[0].headers["Authorization"] == "Bearer access-1"

    @pytest.mark.asyncio
    async def test_outlook_email_falls_back_to_principal_name(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={
            "mail": None,
            "userPrincipalName": "me@outlook.example",
        }))

        assert await _outlook(transport).fetch_account_email("access-1") == "me@outlook.example"

    @pytest.mark.asyncio
    async def test_lookup_failure_reported_not_raised(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(403, json={}))
        adapter = _google(transport)

        result = await adapter.fetch_account_email_result("access-1")

        assert not result.ok
        assert result.email is None
        assert "403" in result.error
        assert await adapter.fetch_account_email("access-1") is None


# ==================== Event upsert ====================

class TestUpsertRemoteEvent:

    @pytest.mark.asyncio
    async def test_google_create(self, event):
        transport = RecordingTransport(lambda request: httpx.Response(200, json={"id": "g-evt-1"}))

        remote_id = await _google(transport).upsert_remote_event("access-1", "primary", event)

        assert remote_id == "g-evt-1"
        request = transport.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://www.googleapis.com/calendar/v3/calendars/primary/events"
        assert json.loads(request.content) == {
            "summary": "Coffee Meetup",
            "description": "Bring a book",
            "location": "Violet Cafe",
            "start": {"dateTime": "2026-03-02T09:00:00Z"},
            "end": {"dateTime": "2026-03-02T10:00:00Z"},
        }

    @pytest.mark.asyncio
    async def test_google_update_in_place(self, event):
        transport = RecordingTransport(lambda request: httpx.Response(200, json={"id": "g-evt-1"}))

        await _google(transport).upsert_remote_event("access-1", "team@group.calendar", event, existing_remote_id="g-evt-1")

        request = transport.requests[0]
        assert request.method == "PATCH"
        assert request.url.path == "/calendar/v3/calendars/team@group.calendar/events/g-evt-1"

    @pytest.mark.asyncio
    async def test_outlook_create_and_update_urls(self, event):
        transport = RecordingTransport(lambda request: httpx.Response(201, json={"id": "o-evt-1"}))
        adapter = _outlook(transport)

        await adapter.upsert_remote_event("access-1", "primary", event)
        await adapter.upsert_remote_event("access-1", "primary", event, existing_remote_id="o-evt-1")

        create, update = transport.requests
        assert (create.method, str(create.url)) == ("POST", "https://graph.microsoft.com/v1.0/me/calendar/events")
        assert (update.method, str(update.url)) == ("PATCH", "https://graph.microsoft.com/v1.0/me/events/o-evt-1")

        body = json.loads(create.content)
        assert body["subject"] == "Coffee Meetup"
        assert body["body"] == {"contentType": "Text", "content": "Bring a book"}
        assert body["location"] == {"displayName": "Violet Cafe"}
        assert body["start"] == {"dateTime": "2026-03-02T09:00:00Z", "timeZone": "UTC"}

    @pytest.mark.asyncio
    async def test_upsert_failure(self, event):
        transport = httpx.MockTransport(lambda request: httpx.Response(403, json={
            "error": {"code": 403, "message": "Rate Limit Exceeded"},
        }))

        with pytest.raises(RemoteSyncError, match="Google event sync failed: Rate Limit Exceeded") as exc_info:
            await _google(transport).upsert_remote_event("access-1", "primary", event)

        assert exc_info.value.title == "Coffee Meetup"
        assert exc_info.value.provider == "google"

    @pytest.mark.asyncio
    async def test_upsert_network_error(self, event):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RemoteSyncError, match="Outlook event sync failed: connection refused"):
            await _outlook(httpx.MockTransport(handler)).upsert_remote_event("access-1", "primary", event)


# ==================== Event listing ====================

class TestListRemoteEvents:

    @pytest.mark.asyncio
    async def test_google_list_pages_and_normalizes(self):
        pages = {
            None: {
                "items": [
                    {
                        "id": "g-1",
                        "summary": "Dentist",
                        "location": "Main St",
                        "start": {"dateTime": "2026-03-03T10:00:00+01:00"},
                        "end": {"dateTime": "2026-03-03T11:00:00+01:00"},
                    },
                    {"id": "g-broken", "summary": "No end", "start": {"dateTime": "2026-03-03T10:00:00Z"}},
                ],
                "nextPageToken": "page-2",
            },
            "page-2": {
                "items": [
                    {"id": "g-2", "start": {"date": "2026-03-10"}, "end": {"date": "2026-03-11"}},
                ],
            },
        }
        transport = RecordingTransport(
            lambda request: httpx.Response(200, json=pages[request.url.params.get("pageToken")])
        )

        rows = await _google(transport).list_remote_events("access-1", "primary", WINDOW_START, WINDOW_END)

        assert [row.provider_event_id for row in rows] == ["g-1", "g-2"]
        assert rows[0].title == "Dentist"
        assert rows[0].location == "Main St"
        assert rows[0].starts_at == datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)
        assert rows[1].title == "Untitled Event"
        assert rows[1].starts_at == datetime(2026, 3, 10, tzinfo=timezone.utc)

        params = transport.requests[0].url.params
        assert params["singleEvents"] == "true"
        assert params["orderBy"] == "startTime"
        assert params["maxResults"] == "250"
        assert params["timeMin"] == "2026-01-01T00:00:00Z"
        assert params["timeMax"] == "2027-03-01T00:00:00Z"
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_outlook_list_follows_next_link(self):
        next_link = "https://graph.microsoft.com/v1.0/me/calendarview?$skip=250"

        def handler(request):
            if request.url.params.get("$skip"):
                return httpx.Response(200, json={"value": [{
                    "id": "o-2",
                    "subject": "Standup",
                    "start": {"dateTime": "2026-03-05T08:30:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2026-03-05T08:45:00.0000000", "timeZone": "UTC"},
                }]})
            return httpx.Response(200, json={
                "value": [{
                    "id": "o-1",
                    "subject": "Team lunch",
                    "body": {"contentType": "text", "content": "Tacos"},
                    "location": {"displayName": ""},
                    "start": {"dateTime": "2026-03-04T12:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2026-03-04T13:00:00.0000000", "timeZone": "UTC"},
                }],
                "@odata.nextLink": next_link,
            })

        transport = RecordingTransport(handler)

        rows = await _outlook(transport).list_remote_events("access-1", "primary", WINDOW_START, WINDOW_END)

        assert [row.provider_event_id for row in rows] == ["o-1", "o-2"]
        assert rows[0].description == "Tacos"
        assert rows[0].location is None
        assert rows[1].starts_at == datetime(2026, 3, 5, 8, 30, tzinfo=timezone.utc)

        first = transport.requests[0]
        assert first.url.path == "/v1.0/me/calendarview"
        assert first.headers["Prefer"] == 'outlook.timezone="UTC"'
        assert first.url.params["$top"] == "250"
        assert first.url.params["startDateTime"] == "2026-01-01T00:00:00Z"
        assert transport.requests[1].url.params["$skip"] == "250"

    @pytest.mark.asyncio
    async def test_malformed_items_dropped(self):
        """Items whose nested objects have the wrong shape are skipped, not fatal."""
        items = [
            {"id": "g-bad-start", "start": "2026-01-01", "end": "2026-01-02"},
            {"id": "g-bad-value", "start": {"dateTime": 20260101}, "end": {"dateTime": "2026-01-02T00:00:00Z"}},
            "not-an-object",
            {
                "id": "g-ok",
                "summary": "Dentist",
                "start": {"dateTime": "2026-03-03T10:00:00Z"},
                "end": {"dateTime": "2026-03-03T11:00:00Z"},
            },
        ]
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"items": items}))

        rows = await _google(transport).list_remote_events("access-1", "primary", WINDOW_START, WINDOW_END)

        assert [row.provider_event_id for row in rows] == ["g-ok"]

    @pytest.mark.asyncio
    async def test_outlook_malformed_body_and_location(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"value": [{
            "id": "o-1",
            "subject": "Team lunch",
            "body": "Tacos",
            "location": ["Main St"],
            "start": {"dateTime": "2026-03-04T12:00:00"},
            "end": "2026-03-04T13:00:00",
        }, {
            "id": "o-2",
            "subject": "Standup",
            "body": "plain",
            "location": "Room 1",
            "start": {"dateTime": "2026-03-05T08:30:00"},
            "end": {"dateTime": "2026-03-05T08:45:00"},
        }]}))

        rows = await _outlook(transport).list_remote_events("access-1", "primary", WINDOW_START, WINDOW_END)

        assert [row.provider_event_id for row in rows] == ["o-2"]
        assert rows[0].description is None
        assert rows[0].location is None

    @pytest.mark.asyncio
    async def test_list_failure(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, json={
            "error": {"code": "InvalidAuthenticationToken", "message": "Access token has expired."},
        }))

        with pytest.raises(RemoteReadError, match="Outlook calendar read failed: Access token has expired."):
            await _outlook(transport).list_remote_events("access-1", "primary", WINDOW_START, WINDOW_END)

    @pytest.mark.asyncio
    async def test_list_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(RemoteReadError):
            await _google(httpx.MockTransport(handler)).list_remote_events(
                "access-1", "primary", WINDOW_START, WINDOW_END
            )
