"""
Microsoft Outlook calendar adapter (Microsoft Graph v1.0).
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


class OutlookCalendarAdapter(CalendarProviderAdapter):
    """Outlook / Microsoft 365 calendars through Microsoft Graph."""

    provider = CalendarProvider.OUTLOOK
    display_name = "Outlook"

    AUTHORIZE_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    GRAPH_BASE = "https://graph.microsoft.com/v1.0"

    SCOPES = [
        "offline_access",
        "openid",
        "profile",
        "email",
        "Calendars.ReadWrite",
    ]

    def _authorize_params(self) -> Dict[str, str]:
        return {"response_mode": "query"}

    def _token_params(self) -> Dict[str, str]:
        # Microsoft identity platform wants the scope repeated on token calls
        return {"scope": self.scope}

    async def _request_account_email(self, access_token: str) -> Optional[str]:
        async with self._client() as client:
            response = await client.get(f"{self.GRAPH_BASE}/me", headers=self._bearer(access_token))
        if not response.is_success:
            raise EmailLookupError(f"/me returned HTTP {response.status_code}")
        data = self._json_body(response)
        return data.get("mail") or data.get("userPrincipalName") or None

    # ==================== Events ====================

    @staticmethod
    def _is_default_calendar(calendar_id: str) -> bool:
        return not calendar_id or calendar_id == "primary"

    def _create_url(self, calendar_id: str) -> str:
        if self._is_default_calendar(calendar_id):
            return f"{self.GRAPH_BASE}/me/calendar/events"
        return f"{self.GRAPH_BASE}/me/calendars/{quote(calendar_id, safe='')}/events"

    def _update_url(self, calendar_id: str, remote_id: str) -> str:
        # Graph addresses events by id regardless of the owning calendar
        return f"{self.GRAPH_BASE}/me/events/{quote(remote_id, safe='')}"

    def _event_body(self, event: RemoteEventInput) -> Dict[str, Any]:
        return {
            "subject": event.title,
            "body": {
                "contentType": "Text",
                "content": event.description or "",
            },
            "location": {"displayName": event.location or ""},
            "start": {
                "dateTime": to_utc_iso(event.starts_at),
                "timeZone": "UTC",
            },
            "end": {
                "dateTime": to_utc_iso(event.ends_at),
                "timeZone": "UTC",
            },
        }

    def _calendar_view_url(self, calendar_id: str) -> str:
        if self._is_default_calendar(calendar_id):
            return f"{self.GRAPH_BASE}/me/calendarview"
        return f"{self.GRAPH_BASE}/me/calendars/{quote(calendar_id, safe='')}/calendarView"

    async def _list_items(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime
    ) -> List[Dict[str, Any]]:
        headers = {
            **self._bearer(access_token),
            "Prefer": 'outlook.timezone="UTC"',
        }
        url: Optional[str] = self._calendar_view_url(calendar_id)
        params: Optional[Dict[str, str]] = {
            "startDateTime": to_utc_iso(window_start),
            "endDateTime": to_utc_iso(window_end),
            "$top": str(LIST_PAGE_SIZE),
            "$orderby": "start/dateTime",
        }

        items: List[Dict[str, Any]] = []
        for _ in range(MAX_LIST_PAGES):
            if not url:
                break
            response = await client.get(url, headers=headers, params=params)
            if not response.is_success:
                raise self._read_error(response)

            data = self._json_body(response)
            items.extend(data.get("value") or [])

            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None

        return items

    def _parse_item(self, item: Dict[str, Any]) -> Optional[RemoteEventRow]:
        start = as_dict(item.get("start"))
        end = as_dict(item.get("end"))
        start_value = start.get("dateTime")
        end_value = end.get("dateTime")

        if not item.get("id") or not start_value or not end_value:
            return None

        body = as_dict(item.get("body"))
        location = as_dict(item.get("location"))

        return RemoteEventRow(
            provider_event_id=str(item["id"]),
            title=str(item.get("subject") or UNTITLED_EVENT),
            description=body.get("content") or None,
            location=location.get("displayName") or None,
            starts_at=parse_provider_datetime(start_value),
            ends_at=parse_provider_datetime(end_value),
        )
