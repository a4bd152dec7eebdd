"""
OAuth connect flow for external calendars.

start() hands the browser to the provider's consent screen with a signed
state; handle_callback() verifies that state, exchanges the code and stores
the connection. The callback never fails outward: every outcome becomes a
redirect back into the app.

Callback states:
    CallbackReceived -> StateInvalid | ProviderError | CodeMissing
                      | TokenExchangeFailed | CallbackFailed | Success
"""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from calsync.models.calendar_sync import CalendarConnection, CalendarProvider, OAuthStatePayload
from calsync.services.exceptions import (
    InvalidStateError,
    ProviderConfigurationError,
    ProviderOAuthError,
    TokenExchangeError,
    UnsupportedProviderError,
)
from calsync.services.metrics import OAUTH_CALLBACKS
from calsync.services.oauth_state import STATE_TTL, STATE_VERSION, OAuthStateCodec, is_fresh, now_ms
from calsync.services.providers import ProviderRegistry, parse_provider
from calsync.services.sync_database import SyncDatabase

logger = structlog.get_logger()

DEFAULT_RETURN_PATH = "/calendar"
REASON_MAX_LENGTH = 200

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


class CallbackOutcome(str, Enum):
    SUCCESS = "success"
    STATE_INVALID = "state_invalid"
    PROVIDER_ERROR = "provider_error"
    CODE_MISSING = "code_missing"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    CALLBACK_FAILED = "callback_failed"


class CallbackResult(BaseModel):
    """Terminal state of one OAuth callback, ready to redirect."""
    outcome: CallbackOutcome
    provider: CalendarProvider
    return_path: str
    reason: Optional[str] = None
    redirect_url: str

    @property
    def status(self) -> str:
        return "success" if self.outcome == CallbackOutcome.SUCCESS else "error"


def sanitize_return_path(value: object) -> str:
    """Allow only same-site absolute paths; anything else becomes /calendar."""
    if not isinstance(value, str):
        return DEFAULT_RETURN_PATH
    trimmed = value.strip()
    if not trimmed.startswith("/") or trimmed.startswith("//"):
        return DEFAULT_RETURN_PATH
    return trimmed


def sanitize_reason(value: str) -> str:
    """Make provider error text safe to carry in a redirect query."""
    cleaned = _CONTROL_CHARS.sub(" ", value)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:REASON_MAX_LENGTH] or "oauth_error"


def build_app_redirect(app_site_url: str, return_path: str, params: Mapping[str, str]) -> str:
    """
    Absolute URL inside the app with params merged into the query.

    Args:
        app_site_url: Frontend base URL
        return_path: Path (possibly with its own query) inside the app
        params: Query parameters to set

    Returns:
        Redirect URL
    """
    base = app_site_url.rstrip("/")
    parts = urlsplit(f"{base}{sanitize_return_path(return_path)}")
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _state_redirect_target(payload: Optional[OAuthStatePayload]) -> Tuple[CalendarProvider, str]:
    """Provider and return path to report for a rejected state."""
    if payload is None:
        return CalendarProvider.GOOGLE, DEFAULT_RETURN_PATH
    try:
        provider = parse_provider(payload.provider)
    except UnsupportedProviderError:
        provider = CalendarProvider.GOOGLE
    return provider, sanitize_return_path(payload.return_path)

class OAuthFlowController:
    """Runs the OAuth connect flow for Google and Outlook calendars."""

    def __init__(
        self,
        codec: OAuthStateCodec,
        providers: ProviderRegistry,
        store: SyncDatabase,
        app_site_url: str,
        clock: Optional[Callable[[], datetime]] = None,
        state_ttl: timedelta = STATE_TTL
    ):
        self.codec = codec
        self.providers = providers
        self.store = store
        self.app_site_url = app_site_url
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.state_ttl = state_ttl

    def start(self, user_id: str, provider: object, return_path: object = None) -> str:
        """
        Build the provider consent URL for a user.

        Args:
            user_id: Authenticated user ID
            provider: "google" or "outlook"
            return_path: Where in the app to land afterwards

        Returns:
            Provider authorize URL

        Raises:
            UnsupportedProviderError: If provider is not supported
            ProviderConfigurationError: If client id or state secret is missing
        """
        selected = parse_provider(provider)
        adapter = self.providers.get(selected)

        state = self.codec.create(OAuthStatePayload(
            provider=selected.value,
            user_id=user_id,
            return_path=sanitize_return_path(return_path),
            issued_at_ms=now_ms(self.clock()),
            version=STATE_VERSION,
        ))

        logger.info("calendar_oauth_started", user_id=user_id, provider=selected.value)
        return adapter.build_authorize_url(state)

    def _verify_state(self, raw_state: Optional[str]) -> OAuthStatePayload:
        if not raw_state:
            raise InvalidStateError("Missing OAuth state.")

        payload = self.codec.parse(raw_state)
        if payload.version != STATE_VERSION:
            raise InvalidStateError("Unsupported OAuth state version.", payload)
        if not is_fresh(payload, now=self.clock(), ttl=self.state_ttl):
            raise InvalidStateError("OAuth state expired.", payload)
        try:
            parse_provider(payload.provider)
        except UnsupportedProviderError as e:
            raise InvalidStateError("OAuth state names an unknown provider.", payload) from e
        return payload

    def _result(
        self,
        outcome: CallbackOutcome,
        provider: CalendarProvider,
        return_path: str,
        reason: Optional[str] = None
    ) -> CallbackResult:
        params = {
            "calendar_connect": "success" if outcome == CallbackOutcome.SUCCESS else "error",
            "provider": provider.value,
        }
        if reason:
            params["reason"] = reason

        OAUTH_CALLBACKS.labels(provider=provider.value, outcome=outcome.value).inc()
        return CallbackResult(
            outcome=outcome,
            provider=provider,
            return_path=return_path,
            reason=reason,
            redirect_url=build_app_redirect(self.app_site_url, return_path, params),
        )

    async def handle_callback(self, query: Mapping[str, str]) -> CallbackResult:
        """
        Complete the OAuth flow from the provider's redirect.

        Args:
            query: Callback query parameters (code, state, error, error_description)

        Returns:
            CallbackResult describing where to redirect
        """
        try:
            state = self._verify_state(query.get("state"))
        except InvalidStateError as e:
            provider, return_path = _state_redirect_target(e.payload)
            logger.warning("calendar_oauth_state_rejected", provider=provider.value, error=str(e))
            return self._result(
                CallbackOutcome.STATE_INVALID,
                provider,
                return_path,
                "invalid_or_expired_state"
            )

        provider = parse_provider(state.provider)
        return_path = sanitize_return_path(state.return_path)

        if query.get("error"):
            error = ProviderOAuthError(provider.value, query["error"], query.get("error_description"))
            logger.warning("calendar_oauth_provider_error",
                         user_id=state.user_id,
                         provider=provider.value,
                         error=error.error)
            return self._result(CallbackOutcome.PROVIDER_ERROR, provider, return_path, sanitize_reason(str(error)))

        code = query.get("code")
        if not code:
            return self._result(CallbackOutcome.CODE_MISSING, provider, return_path, "missing_oauth_code")

        adapter = self.providers.get(provider)
        try:
            tokens = await adapter.exchange_code(code)
        except TokenExchangeError as e:
            logger.warning("calendar_oauth_exchange_failed",
                         user_id=state.user_id,
                         provider=provider.value,
                         error=e.description)
            return self._result(CallbackOutcome.TOKEN_EXCHANGE_FAILED, provider, return_path, "token_exchange_failed")
        except ProviderConfigurationError as e:
            logger.error("calendar_oauth_misconfigured", provider=provider.value, error=str(e))
            return self._result(CallbackOutcome.CALLBACK_FAILED, provider, return_path, "callback_failed")

        try:
            email = await adapter.fetch_account_email(tokens.access_token)
            existing = await self.store.get_connection(state.user_id, provider)

            now = self.clock()
            expires_at = None
            if tokens.expires_in and tokens.expires_in > 0:
                expires_at = now + timedelta(seconds=tokens.expires_in)

            await self.store.upsert_connection(CalendarConnection(
                user_id=state.user_id,
                provider=provider,
                provider_account_email=email,
                provider_calendar_id="primary",
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or (existing.refresh_token if existing else None),
                token_type=tokens.token_type,
                scope=tokens.scope,
                expires_at=expires_at,
            ))
        except SQLAlchemyError as e:
            logger.error("calendar_oauth_callback_failed",
                        user_id=state.user_id,
                        provider=provider.value,
                        error=str(e))
            return self._result(CallbackOutcome.CALLBACK_FAILED, provider, return_path, "callback_failed")

        logger.info("calendar_connected",
                   user_id=state.user_id,
                   provider=provider.value,
                   has_email=bool(email))
        return self._result(CallbackOutcome.SUCCESS, provider, return_path)
