"""
API endpoints for external calendar connections and two-way sync.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
import structlog

from calsync.config import settings
from calsync.dependencies import get_oauth_flow, get_sync_database, get_sync_service
from calsync.middleware.auth import get_current_user_id
from calsync.models.calendar_sync import (
    CalendarProvider,
    CalendarStatus,
    ProviderStatus,
    SyncSummary,
)
from calsync.services.calendar_sync_service import CalendarSyncService
from calsync.services.exceptions import (
    NotFoundError,
    ProviderConfigurationError,
    UnsupportedProviderError,
)
from calsync.services.oauth_flow import DEFAULT_RETURN_PATH, OAuthFlowController, build_app_redirect
from calsync.services.sync_database import SyncDatabase

logger = structlog.get_logger()

router = APIRouter(prefix="/api/calendar", tags=["Calendar Sync"])


# ==================== Request/Response Models ====================

class OAuthStartRequest(BaseModel):
    """Body of an OAuth start request."""
    model_config = ConfigDict(populate_by_name=True)

    provider: Optional[str] = None
    return_path: Optional[str] = Field(default=None, alias="returnPath")


class OAuthStartResponse(BaseModel):
    url: str


class SyncRequest(BaseModel):
    """Body of a sync request; eventId scopes the run to one local event."""
    model_config = ConfigDict(populate_by_name=True)

    event_id: Optional[str] = Field(default=None, alias="eventId")


# ==================== OAuth Flow ====================

@router.post("/oauth/start", response_model=OAuthStartResponse)
async def start_oauth(
    body: OAuthStartRequest,
    user_id: str = Depends(get_current_user_id),
    flow: OAuthFlowController = Depends(get_oauth_flow)
):
    """
    Start the OAuth flow for Google or Outlook.

    Returns:
        Provider consent URL for the browser to open
    """
    try:
        url = flow.start(user_id, body.provider, body.return_path)
    except UnsupportedProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderConfigurationError as e:
        logger.error("calendar_oauth_start_misconfigured", provider=body.provider, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    return OAuthStartResponse(url=url)


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    flow: OAuthFlowController = Depends(get_oauth_flow)
):
    """
    OAuth redirect target registered with both providers.

    Always answers with a 302 back into the app, carrying
    calendar_connect=success|error.
    """
    query = dict(request.query_params)
    try:
        result = await flow.handle_callback(query)
        location = result.redirect_url
    except Exception as e:
        logger.error("calendar_oauth_callback_failed", error=str(e), exc_info=True)
        location = build_app_redirect(
            settings.app_site_url,
            DEFAULT_RETURN_PATH,
            {
                "calendar_connect": "error",
                "provider": CalendarProvider.GOOGLE.value,
                "reason": "callback_failed",
            }
        )

    return RedirectResponse(url=location, status_code=302)


# ==================== Status ====================

@router.api_route("/status", methods=["GET", "POST"], response_model=CalendarStatus)
async def calendar_status(
    user_id: str = Depends(get_current_user_id),
    store: SyncDatabase = Depends(get_sync_database)
):
    """Connection status for every supported provider."""
    connections = {connection.provider: connection for connection in await store.get_user_connections(user_id)}

    providers = {}
    for provider in CalendarProvider:
        connection = connections.get(provider)
        if connection is None:
            providers[provider] = ProviderStatus()
            continue
        providers[provider] = ProviderStatus(
            connected=True,
            provider_account_email=connection.provider_account_email,
            provider_calendar_id=connection.provider_calendar_id,
            expires_at=connection.expires_at,
            updated_at=connection.updated_at,
        )

    return CalendarStatus(
        providers=providers,
        connected_count=len(connections),
        has_any_connection=bool(connections),
    )


# ==================== Sync ====================

@router.post("/sync", response_model=SyncSummary, response_model_exclude_none=True)
async def sync_calendars(
    body: Optional[SyncRequest] = None,
    user_id: str = Depends(get_current_user_id),
    sync_service: CalendarSyncService = Depends(get_sync_service)
):
    """
    Push local events to connected calendars and import remote ones.

    With eventId only that event is pushed and nothing is imported.
    """
    event_id = (body.event_id or "").strip() if body else ""
    try:
        return await sync_service.sync_user(user_id, event_id=event_id or None)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
