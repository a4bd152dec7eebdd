"""Exceptions raised by the calendar sync subsystem."""

from typing import Any, Optional


class CalendarSyncError(Exception):
    """Base class for calendar sync failures."""


class ProviderConfigurationError(CalendarSyncError):
    """A required client id, secret, or signing key is not configured."""


class UnsupportedProviderError(CalendarSyncError, ValueError):
    """Provider name is not one of the supported calendar providers."""

    def __init__(self, provider: object):
        self.provider = provider
        super().__init__("provider must be 'google' or 'outlook'")


class InvalidStateError(CalendarSyncError):
    """
    OAuth state token failed verification.

    ``payload`` is set when the signature verified, so callers can still
    redirect to the provider and return path it names.
    """

    def __init__(self, message: str, payload: Optional[Any] = None):
        self.payload = payload
        super().__init__(message)


class ProviderOAuthError(CalendarSyncError):
    """Provider reported an error on the OAuth callback."""

    def __init__(self, provider: str, error: str, description: Optional[str] = None):
        self.provider = provider
        self.error = error
        self.description = description
        super().__init__(description or error)


class ProviderTokenError(CalendarSyncError):
    """Non-success response from a provider token endpoint."""

    action = "request"

    def __init__(self, provider: str, description: str):
        self.provider = provider
        self.description = description
        super().__init__(f"OAuth token {self.action} failed for {provider}: {description}")


class TokenExchangeError(ProviderTokenError):
    """Authorization code could not be exchanged for tokens."""

    action = "exchange"


class TokenRefreshError(ProviderTokenError):
    """Access token could not be refreshed."""

    action = "refresh"


class RemoteSyncError(CalendarSyncError):
    """Creating or updating one remote event failed."""

    def __init__(self, provider: str, title: str, message: str):
        self.provider = provider
        self.title = title
        super().__init__(message)


class RemoteReadError(CalendarSyncError):
    """Listing remote events failed."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(message)


class EmailLookupError(CalendarSyncError):
    """Account email could not be fetched."""


class NotFoundError(CalendarSyncError):
    """Requested record does not exist for this user."""
