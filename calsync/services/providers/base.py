"""
Provider adapter contract shared by Google and Outlook.

Each adapter normalizes its provider's request and response shapes so the
sync engine only ever sees TokenSet, RemoteEventInput and RemoteEventRow.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import dateutil.parser
import httpx
import structlog

from calsync.models.calendar_sync import (
    CalendarProvider,
    EmailLookup,
    RemoteEventInput,
    RemoteEventRow,
    TokenSet,
)
from calsync.services.exceptions import (
    EmailLookupError,
    ProviderConfigurationError,
    RemoteReadError,
    RemoteSyncError,
    TokenExchangeError,
    TokenRefreshError,
)

logger = structlog.get_logger()

UNTITLED_EVENT = "Untitled Event"
LIST_PAGE_SIZE = 250


def to_utc_iso(value: datetime) -> str:
    """ISO-8601 in UTC with a trailing Z, the form both providers accept."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_provider_datetime(value: str) -> datetime:
    """Parse a provider timestamp; naive values are taken as UTC."""
    if not isinstance(value, str):
        raise ValueError(f"expected an ISO-8601 string, got {type(value).__name__}")
    parsed = dateutil.parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def as_dict(value: Any) -> Dict[str, Any]:
    """Nested provider objects, with anything malformed read as empty."""
    return value if isinstance(value, dict) else {}


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def api_error_message(data: Dict[str, Any]) -> str:
    """Best available error text from a provider API error body."""
    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return json.dumps(data)


class CalendarProviderAdapter(ABC):
    """Uniform OAuth + event API for one calendar provider."""

    provider: CalendarProvider
    display_name: str
    AUTHORIZE_URL: str
    TOKEN_URL: str
    SCOPES: List[str]

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            client_id: OAuth client ID registered with the provider
            client_secret: OAuth client secret
            redirect_uri: Callback URL registered with the provider
            timeout: Per-call HTTP timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    # ==================== Helpers ====================

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            env_prefix = f"{self.provider.value.upper()}_CALENDAR"
            raise ProviderConfigurationError(
                f"Missing required environment variables: {env_prefix}_CLIENT_ID / {env_prefix}_CLIENT_SECRET"
            )

    @property
    def scope(self) -> str:
        return " ".join(self.SCOPES)

    def _authorize_params(self) -> Dict[str, str]:
        """Provider-specific authorize query parameters."""
        return {}

    def _token_params(self) -> Dict[str, str]:
        """Provider-specific extra form fields for the token endpoint."""
        return {}

    # ==================== OAuth ====================

    def build_authorize_url(self, state: str) -> str:
        """Consent screen URL carrying the opaque signed state."""
        if not self.client_id:
            raise ProviderConfigurationError(
                f"Missing required environment variable: {self.provider.value.upper()}_CALENDAR_CLIENT_ID"
            )

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            **self._authorize_params(),
            "scope": self.scope,
            "state": state,
        }
        return f"{self.AUTHORIZE_URL}?{urlencode(params)}"

    async def _token_request(self, form: Dict[str, str], error_cls) -> TokenSet:
        self._require_credentials()
        body = {
            **form,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **self._token_params(),
        }

        try:
            async with self._client() as client:
                response = await client.post(
                    self.TOKEN_URL,
                    data=body,
                    headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as e:
            raise error_cls(self.provider.value, str(e) or e.__class__.__name__) from e

        data = _safe_json(response)
        if not response.is_success:
            description = data.get("error_description") or data.get("error") or "unknown"
            raise error_cls(self.provider.value, str(description))

        if not data.get("access_token"):
            raise error_cls(self.provider.value, "response did not include an access_token")

        return TokenSet.model_validate(data)

    async def exchange_code(self, code: str) -> TokenSet:
        """
        Exchange an authorization code for tokens.

        Raises:
            TokenExchangeError: On any non-success response
        """
        tokens = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
            TokenExchangeError
        )
        logger.info("oauth_tokens_exchanged",
                   provider=self.provider.value,
                   expires_in=tokens.expires_in,
                   has_refresh_token=bool(tokens.refresh_token))
        return tokens

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """
        Refresh an access token.

        Callers keep the previous refresh token when the provider
        does not reissue one.

        Raises:
            TokenRefreshError: On any non-success response
        """
        tokens = await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            TokenRefreshError
        )
        logger.info("oauth_token_refreshed", provider=self.provider.value)
        return tokens

    # ==================== Account identity ====================

    @abstractmethod
    async def _request_account_email(self, access_token: str) -> Optional[str]:
        """Fetch the account email; raises EmailLookupError on failure."""

    async def fetch_account_email_result(self, access_token: str) -> EmailLookup:
        """Account email lookup that reports failure instead of raising."""
        try:
            email = await self._request_account_email(access_token)
        except EmailLookupError as e:
            logger.warning("account_email_lookup_failed", provider=self.provider.value, error=str(e))
            return EmailLookup(error=str(e))
        except httpx.HTTPError as e:
            logger.warning("account_email_lookup_failed", provider=self.provider.value, error=str(e))
            return EmailLookup(error=str(e) or e.__class__.__name__)
        return EmailLookup(email=email)

    async def fetch_account_email(self, access_token: str) -> Optional[str]:
        """Best-effort identity label: None rather than an exception."""
        result = await self.fetch_account_email_result(access_token)
        return result.email

    # ==================== Events ====================

    @abstractmethod
    def _event_body(self, event: RemoteEventInput) -> Dict[str, Any]:
        """Provider request body for a create or update."""

    @abstractmethod
    def _create_url(self, calendar_id: str) -> str:
        ...

    @abstractmethod
    def _update_url(self, calendar_id: str, remote_id: str) -> str:
        ...

    @abstractmethod
    async def _list_items(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime
    ) -> List[Dict[str, Any]]:
        """Raw event items in the window; raises RemoteReadError."""

    @abstractmethod
    def _parse_item(self, item: Dict[str, Any]) -> Optional[RemoteEventRow]:
        """Normalize one raw item, or None when it lacks id/start/end."""

    async def upsert_remote_event(
        self,
        access_token: str,
        calendar_id: str,
        event: RemoteEventInput,
        existing_remote_id: Optional[str] = None
    ) -> str:
        """
        Create the event remotely, or update it in place when
        existing_remote_id is given.

        Returns:
            Remote event ID

        Raises:
            RemoteSyncError: On a non-success response
        """
        if existing_remote_id:
            method, url = "PATCH", self._update_url(calendar_id, existing_remote_id)
        else:
            method, url = "POST", self._create_url(calendar_id)

        try:
            async with self._client() as client:
                response = await client.request(
                    method,
                    url,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                    },
                    json=self._event_body(event)
                )
        except httpx.HTTPError as e:
            raise RemoteSyncError(
                self.provider.value,
                event.title,
                f"{self.display_name} event sync failed: {str(e) or e.__class__.__name__}"
            ) from e

        data = _safe_json(response)
        if not response.is_success or not data.get("id"):
            raise RemoteSyncError(
                self.provider.value,
                event.title,
                f"{self.display_name} event sync failed: {api_error_message(data)}"
            )

        remote_id = str(data["id"])
        logger.info("remote_event_upserted",
                   provider=self.provider.value,
                   remote_event_id=remote_id,
                   created=existing_remote_id is None)
        return remote_id

    async def list_remote_events(
        self,
        access_token: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime
    ) -> List[RemoteEventRow]:
        """
        List single-instance events in the window.

        Partially formed items are dropped rather than treated as errors.

        Raises:
            RemoteReadError: On a non-success response
        """
        try:
            async with self._client() as client:
                items = await self._list_items(client, access_token, calendar_id, window_start, window_end)
        except httpx.HTTPError as e:
            raise RemoteReadError(
                self.provider.value,
                f"{self.display_name} calendar read failed: {str(e) or e.__class__.__name__}"
            ) from e

        rows = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                row = self._parse_item(item)
            except (ValueError, TypeError, OverflowError):
                row = None
            if row is not None:
                rows.append(row)

        logger.info("remote_events_listed",
                   provider=self.provider.value,
                   received=len(items),
                   kept=len(rows))
        return rows

    def _read_error(self, response: httpx.Response) -> RemoteReadError:
        return RemoteReadError(
            self.provider.value,
            f"{self.display_name} calendar read failed: {api_error_message(_safe_json(response))}"
        )

    @staticmethod
    def _bearer(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        return _safe_json(response)
