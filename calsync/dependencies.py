"""
Service instances for route handlers.

Each getter builds its service on first use from the global settings and
reuses it afterwards. Tests swap them with app.dependency_overrides.
"""

from typing import Optional

import structlog
from fastapi import Depends

from calsync.config import settings
from calsync.services.calendar_sync_service import CalendarSyncService
from calsync.services.oauth_flow import OAuthFlowController
from calsync.services.oauth_state import OAuthStateCodec
from calsync.services.providers import ProviderRegistry
from calsync.services.sync_database import SyncDatabase

logger = structlog.get_logger()

# Global instances (created lazily)
sync_db: Optional[SyncDatabase] = None
provider_registry: Optional[ProviderRegistry] = None


def get_sync_database() -> SyncDatabase:
    global sync_db
    if sync_db is None:
        sync_db = SyncDatabase(
            settings.database_url,
            encryption_key=settings.token_encryption_key,
            key_path=settings.token_encryption_key_path
        )
    return sync_db


def get_provider_registry() -> ProviderRegistry:
    global provider_registry
    if provider_registry is None:
        provider_registry = ProviderRegistry.from_settings(settings)
        logger.info("provider_registry_initialized",
                   callback_url=settings.oauth_callback_url,
                   google_configured=bool(settings.google_calendar_client_id),
                   outlook_configured=bool(settings.outlook_calendar_client_id))
    return provider_registry


def get_state_codec() -> OAuthStateCodec:
    return OAuthStateCodec(settings.state_secret)


def get_oauth_flow(
    codec: OAuthStateCodec = Depends(get_state_codec),
    providers: ProviderRegistry = Depends(get_provider_registry),
    store: SyncDatabase = Depends(get_sync_database)
) -> OAuthFlowController:
    return OAuthFlowController(codec, providers, store, settings.app_site_url)


def get_sync_service(
    store: SyncDatabase = Depends(get_sync_database),
    providers: ProviderRegistry = Depends(get_provider_registry)
) -> CalendarSyncService:
    return CalendarSyncService(store, providers)


def shutdown_services():
    """Release the database engine on application shutdown."""
    global sync_db, provider_registry
    if sync_db is not None:
        sync_db.close()
    sync_db = None
    provider_registry = None
