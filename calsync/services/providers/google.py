"""
Google Calendar API adapter.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from calsync.models.calendar_sync import CalendarProvider, RemoteEventInput, RemoteEventRow
from calsync.services.exceptions import EmailLookupError
from calsync.services.providers.base import (
    LIST_PAGE_SIZE,
    UNTITLED_EVENT,
    CalendarProviderAdapter,
    as_dict,
    parse_provider_datetime,
    to_utc_iso,
)

MAX_LIST_PAGES = 20


class GoogleCalendarAdapter(CalendarProviderAdapter):
    """Google Calendar v3 over OAuth 2.0."""

    provider = CalendarProvider.GOOGLE
    display_name = "Google"

    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
    API_BASE = "https://www.googleapis.com/calendar/v3"

    SCOPES = [
        "openid",
        "email",
        "https://www.googleapis.com/auth/calendar",
    ]

    def _authorize_params(self) -> Dict[str, str]:
        return {
            "access_type": "offline",  # Request refresh token
            "prompt": "consent",  # Force consent so a refresh token is reissued
            "include_granted_scopes": "true",
        }

    async def _request_account_email(self, access_token: str) -> Optional[str]:
        async with self._client() as client:
            response = await client.get(self.USERINFO_URL, headers=self._bearer(access_token))
        if not response.is_success:
            raise EmailLookupError(f"userinfo returned HTTP {response.status_code}")
        return self._json_body(response).get("email") or None

    # ==================== Events ====================

    def _events_url(self, calendar_id: str) -> str:
        return f"{self.API_BASE}/calendars/{quote(calendar_id or 'primary', safe='')}/events"

    def _create_url(self, calendar_id: str) -> str:
        return self._events_url(calendar_id)

    def _update_url(self, calendar_id: str, remote_id: str) -> str:
        return f"{self._events_url(calendar_id)}/{quote(remote_id, safe='')}"

    def _event_body(self, event: RemoteEventInput) -> Dict[str, Any]:
        return {
            "summary": event.title,
            "description": event.description or "",
            "location": event.location or "",
            "start": {"dateTime": to_utc_iso(event.starts_at)},
            "end": {"dateTime": to_utc_iso(event.ends_at)},
        }

    async def _list_items(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime
    ) -> List[Dict[str, Any]]:
        params = {
            "singleEvents": "true",  # Provider expands recurring series
            "orderBy": "startTime",
            "timeMin": to_utc_iso(window_start),
            "timeMax": to_utc_iso(window_end),
            "maxResults": str(LIST_PAGE_SIZE),
        }

        items: List[Dict[str, Any]] = []
        for _ in range(MAX_LIST_PAGES):
            response = await client.get(
                self._events_url(calendar_id),
                headers=self._bearer(access_token),
                params=params
            )
            if not response.is_success:
                raise self._read_error(response)

            data = self._json_body(response)
            items.extend(data.get("items") or [])

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        return items

    def _parse_item(self, item: Dict[str, Any]) -> Optional[RemoteEventRow]:
        start = as_dict(item.get("start"))
        end = as_dict(item.get("end"))
        # All-day events only carry a date
        start_value = start.get("dateTime") or start.get("date")
        end_value = end.get("dateTime") or end.get("date")

        if not item.get("id") or not start_value or not end_value:
            return None

        return RemoteEventRow(
            provider_event_id=str(item["id"]),
            title=str(item.get("summary") or UNTITLED_EVENT),
            description=item.get("description") or None,
            location=item.get("location") or None,
            starts_at=parse_provider_datetime(start_value),
            ends_at=parse_provider_datetime(end_value),
        )
