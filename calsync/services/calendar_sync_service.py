"""
Main calendar synchronization service.

Pushes local events out to every connected provider and pulls remote events
back in. Failures are scoped to one provider or one event and reported in the
run summary; only a missing target event aborts a run.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from calsync.models.calendar_sync import (
    CalendarConnection,
    CalendarProvider,
    LocalEvent,
    LocalEventCreate,
    RemoteEventInput,
    RemoteEventRow,
    SyncState,
    SyncSummary,
)
from calsync.services.exceptions import CalendarSyncError, NotFoundError, ProviderTokenError, TokenRefreshError
from calsync.services.metrics import SYNC_ERRORS, SYNC_EVENTS, SYNC_RUNS
from calsync.services.providers import CalendarProviderAdapter, ProviderRegistry
from calsync.services.sync_database import SyncDatabase, truncate_sync_error

logger = structlog.get_logger()

SYNC_PAST_DAYS = 60
SYNC_FUTURE_DAYS = 365
TOKEN_REFRESH_MARGIN = timedelta(seconds=60)
NO_CONNECTIONS_MESSAGE = "No connected calendars."


def _describe(error: Exception, fallback: str) -> str:
    return str(error) or fallback


class CalendarSyncService:
    """Service for synchronizing local events with external calendars."""

    def __init__(
        self,
        store: SyncDatabase,
        providers: ProviderRegistry,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize sync service.

        Args:
            store: Connection and event store
            providers: Adapter lookup for Google and Outlook
            clock: Returns the current UTC time (tests pin it)
        """
        self.store = store
        self.providers = providers
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ==================== Token Management ====================

    def _needs_refresh(self, connection: CalendarConnection) -> bool:
        if connection.expires_at is None:
            return False
        return connection.expires_at < self.clock() + TOKEN_REFRESH_MARGIN

    async def _ensure_access_token(
        self,
        connection: CalendarConnection,
        adapter: CalendarProviderAdapter
    ) -> CalendarConnection:
        """
        Return a connection whose access token is usable now.

        Refreshed tokens are persisted before they are used.

        Raises:
            TokenRefreshError: If the token is near expiry and cannot be refreshed
        """
        if not self._needs_refresh(connection):
            return connection

        if not connection.refresh_token:
            raise TokenRefreshError(
                connection.provider.value,
                "token expired and no refresh token is available"
            )

        logger.info("refreshing_access_token",
                   connection_id=connection.id,
                   provider=connection.provider.value)

        tokens = await adapter.refresh_token(connection.refresh_token)
        expires_at = connection.expires_at
        if tokens.expires_in and tokens.expires_in > 0:
            expires_at = self.clock() + timedelta(seconds=tokens.expires_in)

        refreshed = connection.model_copy(update={
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token or connection.refresh_token,  # Keep prior when not reissued
            "token_type": tokens.token_type,
            "scope": tokens.scope,
            "expires_at": expires_at,
        })

        await self.store.update_connection_tokens(
            connection.id,
            refreshed.access_token,
            refreshed.refresh_token,
            refreshed.expires_at,
            refreshed.token_type,
            refreshed.scope
        )
        return refreshed

    # ==================== Push: Local → Provider ====================

    async def _push_events(
        self,
        user_id: str,
        connection: CalendarConnection,
        adapter: CalendarProviderAdapter,
        events: List[LocalEvent],
        linked_ids: Set[str],
        failures: Dict[str, List[str]],
        errors: List[str]
    ) -> int:
        """
        Push each event to one provider.

        Remote ids are recorded on the in-memory events and failures are
        collected per event; the store is written once per event after
        every connection has been processed.
        """
        provider = connection.provider
        calendar_id = connection.provider_calendar_id or "primary"
        pushed = 0

        for event in events:
            try:
                remote_id = await adapter.upsert_remote_event(
                    connection.access_token,
                    calendar_id,
                    RemoteEventInput(
                        title=event.title,
                        description=event.description,
                        location=event.location,
                        starts_at=event.starts_at,
                        ends_at=event.ends_at,
                    ),
                    existing_remote_id=event.provider_event_ids.get(provider)
                )
            except CalendarSyncError as e:
                message = f'{provider.value} push failed for "{event.title}": {_describe(e, "Unknown error")}'
                errors.append(message)
                failures[event.id].append(message)
                SYNC_ERRORS.labels(provider=provider.value, phase="push").inc()
                logger.warning("event_push_failed",
                             user_id=user_id,
                             event_id=event.id,
                             provider=provider.value,
                             error=str(e))
                continue

            event.provider_event_ids = {**event.provider_event_ids, provider: remote_id}
            linked_ids.add(remote_id)
            pushed += 1

        return pushed

    async def _record_event_outcomes(
        self,
        user_id: str,
        events: List[LocalEvent],
        failures: Dict[str, List[str]],
        errors: List[str]
    ):
        """Synced only when every connected provider accepted the event."""
        for event in events:
            event_failures = failures[event.id]
            try:
                if event_failures:
                    await self.store.mark_event_error(
                        user_id,
                        event.id,
                        truncate_sync_error(event_failures[0]),
                        provider_event_ids=event.provider_event_ids
                    )
                else:
                    await self.store.mark_event_synced(user_id, event.id, event.provider_event_ids)
            except SQLAlchemyError as e:
                errors.append(f'Could not save sync state for "{event.title}": {_describe(e, "database error")}')
                logger.error("event_sync_state_save_failed",
                            user_id=user_id,
                            event_id=event.id,
                            remote_event_ids={p.value: r for p, r in event.provider_event_ids.items()},
                            error=str(e))

    # ==================== Pull: Provider → Local ====================

    async def _pull_events(
        self,
        user_id: str,
        connection: CalendarConnection,
        adapter: CalendarProviderAdapter,
        linked_ids: Set[str]
    ) -> Dict[str, int]:
        """
        Import remote events in the sync window.

        Returns:
            Dict with counts: imported, skipped
        """
        provider = connection.provider
        now = self.clock()

        remote_rows = await adapter.list_remote_events(
            connection.access_token,
            connection.provider_calendar_id or "primary",
            now - timedelta(days=SYNC_PAST_DAYS),
            now + timedelta(days=SYNC_FUTURE_DAYS)
        )

        stats = {"imported": 0, "skipped": 0}
        rows_by_id: Dict[str, RemoteEventRow] = {}
        for row in remote_rows:
            if row.provider_event_id in linked_ids:
                # Mirror of one of our own local events
                stats["skipped"] += 1
                continue
            rows_by_id[row.provider_event_id] = row

        if not rows_by_id:
            return stats

        already_imported = await self.store.get_imported_source_ids(user_id, provider)
        await self.store.upsert_imported_events(user_id, provider, list(rows_by_id.values()))

        for remote_id in rows_by_id:
            if remote_id in already_imported:
                stats["skipped"] += 1
            else:
                stats["imported"] += 1

        return stats

    # ==================== Sync ====================

    async def sync_user(self, user_id: str, event_id: Optional[str] = None) -> SyncSummary:
        """
        Run one sync for a user.

        Args:
            user_id: User ID
            event_id: Push only this local event and skip the pull

        Returns:
            SyncSummary with pushed/imported/skipped counts and errors

        Raises:
            NotFoundError: If event_id was given and does not exist for the user
        """
        scope = "event" if event_id else "full"
        SYNC_RUNS.labels(scope=scope).inc()

        connections = await self.store.get_user_connections(user_id)
        if not connections:
            logger.info("sync_skipped_no_connections", user_id=user_id)
            return SyncSummary(synced_at=self.clock(), message=NO_CONNECTIONS_MESSAGE)

        events = await self.store.get_local_events(user_id, event_id)
        if event_id and not events:
            raise NotFoundError("Requested event was not found.")

        linked_ids: Dict[CalendarProvider, Set[str]] = {provider: set() for provider in CalendarProvider}
        for event in events:
            for provider, remote_id in event.provider_event_ids.items():
                linked_ids[provider].add(remote_id)

        logger.info("syncing_user",
                   user_id=user_id,
                   scope=scope,
                   connections_count=len(connections),
                   events_count=len(events))

        pushed = imported = skipped = 0
        errors: List[str] = []
        failures: Dict[str, List[str]] = {event.id: [] for event in events}

        for connection in connections:
            provider = connection.provider
            adapter = self.providers.get(provider)

            try:
                connection = await self._ensure_access_token(connection, adapter)
            except (CalendarSyncError, SQLAlchemyError) as e:
                detail = e.description if isinstance(e, ProviderTokenError) else _describe(e, "Token refresh failed.")
                message = f"{provider.value}: {detail}"
                errors.append(message)
                for event in events:
                    failures[event.id].append(message)
                SYNC_ERRORS.labels(provider=provider.value, phase="token").inc()
                logger.warning("token_refresh_failed",
                             user_id=user_id,
                             connection_id=connection.id,
                             provider=provider.value,
                             error=str(e))
                continue

            provider_pushed = await self._push_events(
                user_id, connection, adapter, events, linked_ids[provider], failures, errors
            )
            pushed += provider_pushed
            SYNC_EVENTS.labels(provider=provider.value, result="pushed").inc(provider_pushed)

            if event_id:
                continue

            try:
                stats = await self._pull_events(user_id, connection, adapter, linked_ids[provider])
            except (CalendarSyncError, SQLAlchemyError) as e:
                errors.append(f"{provider.value} pull failed: {_describe(e, 'Could not read remote events.')}")
                SYNC_ERRORS.labels(provider=provider.value, phase="pull").inc()
                logger.warning("event_pull_failed",
                             user_id=user_id,
                             provider=provider.value,
                             error=str(e))
                continue

            imported += stats["imported"]
            skipped += stats["skipped"]
            SYNC_EVENTS.labels(provider=provider.value, result="imported").inc(stats["imported"])
            SYNC_EVENTS.labels(provider=provider.value, result="skipped").inc(stats["skipped"])

        await self._record_event_outcomes(user_id, events, failures, errors)

        summary = SyncSummary(
            pushed=pushed,
            imported=imported,
            skipped=skipped,
            errors=errors,
            synced_at=self.clock(),
        )
        logger.info("user_sync_completed",
                   user_id=user_id,
                   pushed=pushed,
                   imported=imported,
                   skipped=skipped,
                   errors_count=len(errors))
        return summary

    # ==================== Local event authoring ====================

    async def create_event(self, user_id: str, data: LocalEventCreate) -> Tuple[LocalEvent, Optional[SyncSummary]]:
        """
        Save a local event and push it to connected calendars right away.

        Without connections the event is stored as already synced and no
        sync runs.

        Returns:
            (event as stored after the push, summary of the scoped sync or None)
        """
        connections = await self.store.get_user_connections(user_id)
        state = SyncState.PENDING if connections else SyncState.SYNCED
        event = await self.store.create_local_event(user_id, data, sync_state=state)

        if not connections:
            return event, None

        summary = await self.sync_user(user_id, event_id=event.id)
        return await self.store.get_event(user_id, event.id) or event, summary
