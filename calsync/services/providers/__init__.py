"""Calendar provider adapters and the lookup that selects one."""

from typing import Dict, Iterable, Optional

import httpx

from calsync.models.calendar_sync import CalendarProvider
from calsync.services.exceptions import UnsupportedProviderError
from calsync.services.providers.base import CalendarProviderAdapter
from calsync.services.providers.google import GoogleCalendarAdapter
from calsync.services.providers.outlook import OutlookCalendarAdapter


def parse_provider(value: object) -> CalendarProvider:
    """Coerce user or payload input to a supported provider."""
    try:
        return CalendarProvider(value)
    except (ValueError, TypeError) as e:
        raise UnsupportedProviderError(value) from e


class ProviderRegistry:
    """Maps each supported provider to its adapter."""

    def __init__(self, adapters: Iterable[CalendarProviderAdapter]):
        self._adapters: Dict[CalendarProvider, CalendarProviderAdapter] = {
            adapter.provider: adapter for adapter in adapters
        }

    def get(self, provider: object) -> CalendarProviderAdapter:
        adapter = self._adapters.get(parse_provider(provider))
        if adapter is None:
            raise UnsupportedProviderError(provider)
        return adapter

    def __contains__(self, provider: object) -> bool:
        return provider in self._adapters

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ProviderRegistry":
        """Build both adapters from application settings."""
        common = {
            "redirect_uri": settings.oauth_callback_url,
            "timeout": settings.provider_timeout_seconds,
            "transport": transport,
        }
        return cls([
            GoogleCalendarAdapter(
                client_id=settings.google_calendar_client_id,
                client_secret=settings.google_calendar_client_secret,
                **common
            ),
            OutlookCalendarAdapter(
                client_id=settings.outlook_calendar_client_id,
                client_secret=settings.outlook_calendar_client_secret,
                **common
            ),
        ])


__all__ = [
    "CalendarProviderAdapter",
    "GoogleCalendarAdapter",
    "OutlookCalendarAdapter",
    "ProviderRegistry",
    "parse_provider",
]
