"""
Database service for calendar connections and local events.

All writes that touch a uniqueness rule are INSERT ... ON CONFLICT DO UPDATE
upserts, so repeating them is safe.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Union
import os
import uuid

import structlog
from cryptography.fernet import Fernet
from sqlalchemy import create_engine, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from calsync.models.calendar_sync import (
    SYNC_ERROR_MAX_LENGTH,
    CalendarConnection,
    CalendarProvider,
    EventSource,
    LocalEvent,
    LocalEventCreate,
    RemoteEventRow,
    SyncState,
)
from calsync.models.database import Base, CalendarConnectionRecord, CalendarEventRecord

logger = structlog.get_logger()

USER_EVENT_LIST_LIMIT = 500


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Store datetimes as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def clean_provider_event_ids(value: Any) -> Dict[str, str]:
    """Keep only known providers mapped to non-empty string ids."""
    if not isinstance(value, Mapping):
        return {}
    known = {provider.value for provider in CalendarProvider}
    return {
        str(provider): remote_id
        for provider, remote_id in value.items()
        if str(provider) in known and isinstance(remote_id, str) and remote_id
    }


def _provider_ids_for_db(provider_event_ids: Mapping[Any, str]) -> Dict[str, str]:
    return clean_provider_event_ids({str(getattr(k, "value", k)): v for k, v in provider_event_ids.items()})


def truncate_sync_error(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return message[:SYNC_ERROR_MAX_LENGTH]


class SyncDatabase:
    """Connection store and local event store."""

    def __init__(
        self,
        database_url: str,
        encryption_key: Optional[Union[str, bytes]] = None,
        key_path: str = "./data/sync_encryption.key",
        create_schema: bool = True
    ):
        """
        Args:
            database_url: SQLAlchemy URL (sqlite or postgresql)
            encryption_key: Fernet key for OAuth tokens; generated into key_path if absent
            key_path: Where a generated key is kept
            create_schema: Create missing tables (development databases)
        """
        self.database_url = database_url
        self.cipher = Fernet(encryption_key or self._get_or_create_encryption_key(Path(key_path)))

        self.engine = self._create_engine(database_url)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

        if create_schema:
            Base.metadata.create_all(bind=self.engine)
        logger.info("sync_database_initialized", dialect=self.engine.dialect.name)

    @staticmethod
    def _create_engine(database_url: str):
        url = make_url(database_url)
        if url.get_backend_name() != "sqlite":
            return create_engine(database_url, pool_pre_ping=True)

        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            return create_engine(database_url, connect_args={"check_same_thread": False})

        # One shared connection, otherwise every session sees its own empty database
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool
        )

    @staticmethod
    def _get_or_create_encryption_key(key_path: Path) -> bytes:
        """Get or create encryption key for OAuth tokens."""
        if key_path.exists():
            return key_path.read_bytes().strip()

        key = Fernet.generate_key()
        key_path.parent.mkdir(parents=True, exist_ok=True)
        key_path.write_bytes(key)
        os.chmod(key_path, 0o600)  # Restrict permissions
        logger.info("encryption_key_generated", path=str(key_path))
        return key

    def _encrypt(self, data: str) -> str:
        return self.cipher.encrypt(data.encode()).decode()

    def _decrypt(self, encrypted_data: str) -> str:
        return self.cipher.decrypt(encrypted_data.encode()).decode()

    def _insert(self, model):
        if self.engine.dialect.name == "postgresql":
            return postgresql_insert(model)
        return sqlite_insert(model)

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("sync_database_error", operation=operation, error=str(e))
            raise
        finally:
            session.close()

    def close(self):
        self.engine.dispose()

    # ==================== Conversions ====================

    def _to_connection(self, record: CalendarConnectionRecord) -> CalendarConnection:
        return CalendarConnection(
            id=record.id,
            user_id=record.user_id,
            provider=CalendarProvider(record.provider),
            provider_account_email=record.provider_account_email,
            provider_calendar_id=record.provider_calendar_id or "primary",
            access_token=self._decrypt(record.access_token),
            refresh_token=self._decrypt(record.refresh_token) if record.refresh_token else None,
            token_type=record.token_type,
            scope=record.scope,
            expires_at=_from_db(record.expires_at),
            created_at=_from_db(record.created_at),
            updated_at=_from_db(record.updated_at),
        )

    @staticmethod
    def _to_event(record: CalendarEventRecord) -> LocalEvent:
        return LocalEvent(
            id=record.id,
            user_id=record.user_id,
            title=record.title,
            description=record.description,
            location=record.location,
            starts_at=_from_db(record.starts_at),
            ends_at=_from_db(record.ends_at),
            source=EventSource(record.source),
            source_event_id=record.source_event_id,
            provider_event_ids=clean_provider_event_ids(record.provider_event_ids),
            sync_state=SyncState(record.sync_state),
            sync_error=record.sync_error,
            created_at=_from_db(record.created_at),
            updated_at=_from_db(record.updated_at),
        )

    # ==================== Calendar Connections ====================

    async def get_user_connections(self, user_id: str) -> List[CalendarConnection]:
        """All connections for a user, google before outlook."""
        with self._session("get_user_connections") as session:
            records = session.scalars(
                select(CalendarConnectionRecord)
                .where(CalendarConnectionRecord.user_id == user_id)
                .order_by(CalendarConnectionRecord.provider)
            ).all()
            return [self._to_connection(record) for record in records]

    async def get_connection(self, user_id: str, provider: CalendarProvider) -> Optional[CalendarConnection]:
        with self._session("get_connection") as session:
            record = session.scalar(
                select(CalendarConnectionRecord)
                .where(CalendarConnectionRecord.user_id == user_id)
                .where(CalendarConnectionRecord.provider == CalendarProvider(provider).value)
            )
            return self._to_connection(record) if record else None

    async def upsert_connection(self, connection: CalendarConnection) -> CalendarConnection:
        """Insert or replace the connection for (user_id, provider)."""
        now = _utcnow()
        values = {
            "user_id": connection.user_id,
            "provider": connection.provider.value,
            "provider_account_email": connection.provider_account_email,
            "provider_calendar_id": connection.provider_calendar_id or "primary",
            "access_token": self._encrypt(connection.access_token),
            "refresh_token": self._encrypt(connection.refresh_token) if connection.refresh_token else None,
            "token_type": connection.token_type,
            "scope": connection.scope,
            "expires_at": _to_db(connection.expires_at),
            "updated_at": now,
        }
        stmt = self._insert(CalendarConnectionRecord).values(created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "provider"],
            set_={key: value for key, value in values.items() if key not in ("user_id", "provider")}
        )

        with self._session("upsert_connection") as session:
            session.execute(stmt)

        logger.info("calendar_connection_upserted",
                   user_id=connection.user_id,
                   provider=connection.provider.value)
        return await self.get_connection(connection.user_id, connection.provider)

    async def update_connection_tokens(
        self,
        connection_id: int,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        token_type: Optional[str] = None,
        scope: Optional[str] = None
    ):
        """Update OAuth tokens for a connection after a refresh."""
        with self._session("update_connection_tokens") as session:
            session.execute(
                update(CalendarConnectionRecord)
                .where(CalendarConnectionRecord.id == connection_id)
                .values(
                    access_token=self._encrypt(access_token),
                    refresh_token=self._encrypt(refresh_token) if refresh_token else None,
                    expires_at=_to_db(expires_at),
                    token_type=token_type,
                    scope=scope,
                    updated_at=_utcnow(),
                )
            )

        logger.info("connection_tokens_updated", connection_id=connection_id)

    # ==================== Local Events ====================

    async def create_local_event(
        self,
        user_id: str,
        data: LocalEventCreate,
        sync_state: SyncState = SyncState.PENDING
    ) -> LocalEvent:
        record = CalendarEventRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=data.title,
            description=data.description,
            location=data.location,
            starts_at=_to_db(data.starts_at),
            ends_at=_to_db(data.ends_at),
            source=EventSource.LOCAL.value,
            provider_event_ids={},
            sync_state=SyncState(sync_state).value,
        )
        with self._session("create_local_event") as session:
            session.add(record)
            session.flush()
            event = self._to_event(record)

        logger.info("local_event_created", user_id=user_id, event_id=event.id)
        return event

    async def get_event(self, user_id: str, event_id: str) -> Optional[LocalEvent]:
        with self._session("get_event") as session:
            record = session.scalar(
                select(CalendarEventRecord)
                .where(CalendarEventRecord.user_id == user_id)
                .where(CalendarEventRecord.id == event_id)
            )
            return self._to_event(record) if record else None

    async def list_user_events(self, user_id: str, limit: int = USER_EVENT_LIST_LIMIT) -> List[LocalEvent]:
        """Every event the user can see, local and imported, by start time."""
        with self._session("list_user_events") as session:
            records = session.scalars(
                select(CalendarEventRecord)
                .where(CalendarEventRecord.user_id == user_id)
                .order_by(CalendarEventRecord.starts_at, CalendarEventRecord.id)
                .limit(limit)
            ).all()
            return [self._to_event(record) for record in records]

    async def get_local_events(self, user_id: str, event_id: Optional[str] = None) -> List[LocalEvent]:
        """User-authored events (push candidates), optionally just one."""
        stmt = (
            select(CalendarEventRecord)
            .where(CalendarEventRecord.user_id == user_id)
            .where(CalendarEventRecord.source == EventSource.LOCAL.value)
        )
        if event_id:
            stmt = stmt.where(CalendarEventRecord.id == event_id)
        stmt = stmt.order_by(CalendarEventRecord.starts_at, CalendarEventRecord.id)

        with self._session("get_local_events") as session:
            return [self._to_event(record) for record in session.scalars(stmt).all()]

    async def mark_event_synced(self, user_id: str, event_id: str, provider_event_ids: Mapping[str, str]):
        with self._session("mark_event_synced") as session:
            session.execute(
                update(CalendarEventRecord)
                .where(CalendarEventRecord.user_id == user_id)
                .where(CalendarEventRecord.id == event_id)
                .values(
                    provider_event_ids=_provider_ids_for_db(provider_event_ids),
                    sync_state=SyncState.SYNCED.value,
                    sync_error=None,
                    updated_at=_utcnow(),
                )
            )

    async def mark_event_error(
        self,
        user_id: str,
        event_id: str,
        message: str,
        provider_event_ids: Optional[Mapping[str, str]] = None
    ):
        """Record a failed push; remote ids that did succeed are kept when given."""
        values = {
            "sync_state": SyncState.ERROR.value,
            "sync_error": truncate_sync_error(message),
            "updated_at": _utcnow(),
        }
        if provider_event_ids is not None:
            values["provider_event_ids"] = _provider_ids_for_db(provider_event_ids)

        with self._session("mark_event_error") as session:
            session.execute(
                update(CalendarEventRecord)
                .where(CalendarEventRecord.user_id == user_id)
                .where(CalendarEventRecord.id == event_id)
                .values(**values)
            )

    async def get_imported_source_ids(self, user_id: str, provider: CalendarProvider) -> Set[str]:
        """Remote ids already imported from this provider."""
        with self._session("get_imported_source_ids") as session:
            rows = session.scalars(
                select(CalendarEventRecord.source_event_id)
                .where(CalendarEventRecord.user_id == user_id)
                .where(CalendarEventRecord.source == CalendarProvider(provider).value)
                .where(CalendarEventRecord.source_event_id.is_not(None))
            ).all()
            return set(rows)

    async def upsert_imported_events(
        self,
        user_id: str,
        provider: CalendarProvider,
        rows: List[RemoteEventRow]
    ) -> int:
        """
        Insert or refresh imported events keyed by (user_id, source, source_event_id).

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        now = _utcnow()
        source = CalendarProvider(provider).value
        values = [
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "title": row.title,
                "description": row.description,
                "location": row.location,
                "starts_at": _to_db(row.starts_at),
                "ends_at": _to_db(row.ends_at),
                "source": source,
                "source_event_id": row.provider_event_id,
                "provider_event_ids": {},
                "sync_state": SyncState.SYNCED.value,
                "sync_error": None,
                "created_at": now,
                "updated_at": now,
            }
            for row in rows
        ]
        stmt = self._insert(CalendarEventRecord).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "source", "source_event_id"],
            set_={
                "title": stmt.excluded.title,
                "description": stmt.excluded.description,
                "location": stmt.excluded.location,
                "starts_at": stmt.excluded.starts_at,
                "ends_at": stmt.excluded.ends_at,
                "sync_state": SyncState.SYNCED.value,
                "sync_error": None,
                "updated_at": now,
            }
        )

        with self._session("upsert_imported_events") as session:
            session.execute(stmt)

        logger.info("imported_events_upserted", user_id=user_id, provider=source, count=len(values))
        return len(values)
