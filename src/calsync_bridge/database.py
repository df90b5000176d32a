"""Database models and the connection/event store."""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from typing import Callable, Dict, Iterator, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Text, Integer, Index, UniqueConstraint, and_, or_,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .exceptions import ConnectionNotFoundError
from .models import (
    ChangeKind, Connection, ConnectionStatus, Credentials, Event, EventSource, LocalChange,
    WebhookRegistration, utc_now,
)

logger = logging.getLogger(__name__)

Base = declarative_base()

ChangeListener = Callable[[LocalChange], None]


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(value).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(value)
            return value


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as naive UTC (SQLite drops offsets)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value
        return value.astimezone(pytz.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=pytz.UTC)
        return value.astimezone(pytz.UTC)


class ConnectionDB(Base):
    """One user's calendar connection, credentials and sync cursor."""

    __tablename__ = 'calendar_connections'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=ConnectionStatus.CONNECTED.value)
    connected_email = Column(String(255), nullable=True)

    # Credentials (the store is trusted; encryption at rest belongs to the deployment)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(UTCDateTime, nullable=True)
    token_scope = Column(Text, nullable=True)
    failed_refresh_count = Column(Integer, nullable=False, default=0)

    # Delta cursor
    sync_token = Column(String(1000), nullable=True)
    last_sync_at = Column(UTCDateTime, nullable=True)

    # Push-notification channel
    webhook_channel_id = Column(String(255), nullable=True)
    webhook_resource_id = Column(String(255), nullable=True)
    webhook_expiration = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_connection_webhook', 'webhook_channel_id', 'webhook_resource_id'),
        Index('idx_connection_status', 'status'),
    )


class RefreshFailureDB(Base):
    """Append-only log of failed token refreshes."""

    __tablename__ = 'token_refresh_failures'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    error = Column(Text, nullable=False)
    occurred_at = Column(UTCDateTime, nullable=False, default=utc_now)


class EventDB(Base):
    """Local event row."""

    __tablename__ = 'events'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    external_id = Column(String(255), nullable=True)
    source = Column(String(20), nullable=False, default=EventSource.LOCAL.value)

    title = Column(String(255), nullable=False, default='')
    description = Column(Text, nullable=True)
    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)
    utc_offset_minutes = Column(Integer, nullable=False, default=0)
    timezone = Column(String(64), nullable=True)

    is_recurring = Column(Boolean, nullable=False, default=False)
    rrule = Column(String(500), nullable=True)
    exception_dates = Column(Text, nullable=True)  # comma-separated ISO dates
    next_occurrence_at = Column(UTCDateTime, nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'external_id', name='uq_event_user_external'),
        Index('idx_event_user_window', 'user_id', 'start_at', 'end_at'),
    )


class DatabaseManager:
    """Engine and session factory."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()


class ConnectionStore(ABC):
    """Persistence collaborator for connections, credentials and events.

    Event writes accept a transient ``sync_origin`` flag. It is never stored;
    it is handed to registered change listeners alongside the written row so
    that writes performed by the sync engine can be told apart from
    application writes.
    """

    def __init__(self):
        self._listeners: List[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        self._listeners.remove(listener)

    def _notify(self, kind: ChangeKind, event: Event, sync_origin: bool) -> None:
        change = LocalChange(kind=kind, event=event, sync_origin=sync_origin)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Change listener failed for event {event.id}: {e}")

    # Connections

    @abstractmethod
    def get_connection(self, user_id: str) -> Optional[Connection]:
        """Connection for a user, connected or not."""

    @abstractmethod
    def save_connection(self, connection: Connection) -> Connection:
        """Insert or update the user's single connection."""

    @abstractmethod
    def list_connected(self) -> List[Connection]:
        """All connections currently connected."""

    @abstractmethod
    def find_by_webhook(self, channel_id: str, resource_id: str) -> Optional[Connection]:
        """Connected connection owning the given channel/resource pair."""

    @abstractmethod
    def set_sync_token(self, user_id: str, sync_token: Optional[str]) -> None:
        """Replace (or clear) the stored delta cursor."""

    @abstractmethod
    def mark_synced(self, user_id: str, sync_token: Optional[str], synced_at: datetime) -> None:
        """Persist the cursor from a completed sync together with its time."""

    @abstractmethod
    def set_webhook(self, user_id: str, registration: Optional[WebhookRegistration]) -> None:
        """Store (or clear) the push-notification registration."""

    @abstractmethod
    def clear_expired_webhooks(self, now: Optional[datetime] = None) -> int:
        """Clear registrations that already expired; returns how many."""

    @abstractmethod
    def disconnect(self, user_id: str) -> None:
        """Soft teardown: clear credentials, cursor and webhook, mark disconnected."""

    # Credentials

    @abstractmethod
    def get_credentials(self, user_id: str) -> Optional[Credentials]:
        """Stored credentials, None when absent."""

    @abstractmethod
    def save_credentials(self, user_id: str, credentials: Credentials) -> None:
        """Persist credentials and reset the refresh-failure counter."""

    @abstractmethod
    def record_refresh_failure(self, user_id: str, error: str) -> None:
        """Append a refresh-failure record and bump the counter."""

    @abstractmethod
    def list_refresh_failures(self, user_id: str) -> List[Dict[str, object]]:
        """Refresh-failure records for a user, oldest first."""

    # Events

    @abstractmethod
    def get_event(self, user_id: str, external_id: str) -> Optional[Event]:
        """Event keyed by ``(user_id, external_id)``."""

    @abstractmethod
    def get_event_by_id(self, event_id: str) -> Optional[Event]:
        """Event by local row id."""

    @abstractmethod
    def create_event(self, event: Event, sync_origin: bool = False) -> Event:
        """Insert a row and return it with its id assigned."""

    @abstractmethod
    def update_event(self, event: Event, sync_origin: bool = False) -> Event:
        """Update a row identified by ``event.id``."""

    @abstractmethod
    def delete_event(self, event_id: str, sync_origin: bool = False) -> bool:
        """Delete a row by local id; False when it did not exist."""

    @abstractmethod
    def delete_by_external_id(self, user_id: str, external_id: str, sync_origin: bool = False) -> bool:
        """Delete a row by remote id; False when it did not exist."""

    @abstractmethod
    def list_events(self, user_id: str, start: datetime, end: datetime) -> List[Event]:
        """One-off rows overlapping the window plus recurring rows anchored before its end."""

    @abstractmethod
    def delete_remote_events(self, user_id: str) -> int:
        """Remove rows that were imported from the remote calendar."""


def _parse_id(event_id) -> Optional[UUID]:
    try:
        return UUID(str(event_id))
    except ValueError:
        return None


def _to_event(row: EventDB) -> Event:
    offset = pytz.FixedOffset(row.utc_offset_minutes or 0)
    exception_dates = [date.fromisoformat(d) for d in (row.exception_dates or '').split(',') if d]
    return Event(
        id=str(row.id),
        user_id=row.user_id,
        external_id=row.external_id,
        source=EventSource(row.source),
        title=row.title,
        description=row.description or '',
        start=row.start_at.astimezone(offset),
        end=row.end_at.astimezone(offset),
        utc_offset_minutes=row.utc_offset_minutes or 0,
        timezone=row.timezone,
        is_recurring=row.is_recurring,
        rrule=row.rrule,
        exception_dates=exception_dates,
        next_occurrence_at=row.next_occurrence_at,
        active=row.active,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply_event(row: EventDB, event: Event) -> None:
    offset = event.start.utcoffset()
    row.user_id = event.user_id
    row.external_id = event.external_id
    row.source = event.source.value
    row.title = event.title
    row.description = event.description
    row.start_at = event.start
    row.end_at = event.end
    row.utc_offset_minutes = int(offset.total_seconds() // 60) if offset is not None else 0
    row.timezone = event.timezone
    row.is_recurring = event.is_recurring
    row.rrule = event.rrule
    row.exception_dates = ','.join(d.isoformat() for d in sorted(event.exception_dates)) or None
    row.next_occurrence_at = event.next_occurrence_at
    row.active = event.active
    row.updated_at = utc_now()


def _to_connection(row: ConnectionDB) -> Connection:
    webhook = None
    if row.webhook_channel_id and row.webhook_resource_id:
        webhook = WebhookRegistration(
            channel_id=row.webhook_channel_id,
            resource_id=row.webhook_resource_id,
            expiration=row.webhook_expiration,
        )
    return Connection(
        user_id=row.user_id,
        status=ConnectionStatus(row.status),
        sync_token=row.sync_token,
        webhook=webhook,
        last_sync_at=row.last_sync_at,
        connected_email=row.connected_email,
        failed_refresh_count=row.failed_refresh_count or 0,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class DatabaseConnectionStore(ConnectionStore):
    """SQLAlchemy implementation of :class:`ConnectionStore`."""

    def __init__(self, db_manager: DatabaseManager):
        super().__init__()
        self.db = db_manager

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.db.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _connection_row(self, session: Session, user_id: str) -> ConnectionDB:
        row = session.query(ConnectionDB).filter(ConnectionDB.user_id == user_id).first()
        if row is None:
            raise ConnectionNotFoundError(f"No calendar connection for user {user_id}")
        return row

    # Connections

    def get_connection(self, user_id: str) -> Optional[Connection]:
        with self._session() as session:
            row = session.query(ConnectionDB).filter(ConnectionDB.user_id == user_id).first()
            return _to_connection(row) if row else None

    def save_connection(self, connection: Connection) -> Connection:
        with self._session() as session:
            row = session.query(ConnectionDB).filter(ConnectionDB.user_id == connection.user_id).first()
            if row is None:
                row = ConnectionDB(user_id=connection.user_id, created_at=connection.created_at)
                session.add(row)
            row.status = connection.status.value
            row.sync_token = connection.sync_token
            row.last_sync_at = connection.last_sync_at
            row.connected_email = connection.connected_email
            row.failed_refresh_count = connection.failed_refresh_count
            row.webhook_channel_id = connection.webhook.channel_id if connection.webhook else None
            row.webhook_resource_id = connection.webhook.resource_id if connection.webhook else None
            row.webhook_expiration = connection.webhook.expiration if connection.webhook else None
            row.updated_at = utc_now()
            session.flush()
            return _to_connection(row)

    def list_connected(self) -> List[Connection]:
        with self._session() as session:
            rows = session.query(ConnectionDB).filter(
                ConnectionDB.status == ConnectionStatus.CONNECTED.value
            ).order_by(ConnectionDB.user_id).all()
            return [_to_connection(row) for row in rows]

    def find_by_webhook(self, channel_id: str, resource_id: str) -> Optional[Connection]:
        with self._session() as session:
            row = session.query(ConnectionDB).filter(
                ConnectionDB.webhook_channel_id == channel_id,
                ConnectionDB.webhook_resource_id == resource_id,
                ConnectionDB.status == ConnectionStatus.CONNECTED.value,
            ).first()
            return _to_connection(row) if row else None

    def set_sync_token(self, user_id: str, sync_token: Optional[str]) -> None:
        with self._session() as session:
            row = self._connection_row(session, user_id)
            row.sync_token = sync_token
            row.updated_at = utc_now()

    def mark_synced(self, user_id: str, sync_token: Optional[str], synced_at: datetime) -> None:
        with self._session() as session:
            row = self._connection_row(session, user_id)
            row.sync_token = sync_token
            row.last_sync_at = synced_at
            row.updated_at = utc_now()

    def set_webhook(self, user_id: str, registration: Optional[WebhookRegistration]) -> None:
        with self._session() as session:
            row = self._connection_row(session, user_id)
            row.webhook_channel_id = registration.channel_id if registration else None
            row.webhook_resource_id = registration.resource_id if registration else None
            row.webhook_expiration = registration.expiration if registration else None
            row.updated_at = utc_now()

    def clear_expired_webhooks(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        with self._session() as session:
            rows = session.query(ConnectionDB).filter(
                ConnectionDB.webhook_channel_id.isnot(None),
                ConnectionDB.webhook_expiration < now,
            ).all()
            for row in rows:
                row.webhook_channel_id = None
                row.webhook_resource_id = None
                row.webhook_expiration = None
                row.updated_at = now
            return len(rows)

    def disconnect(self, user_id: str) -> None:
        with self._session() as session:
            row = self._connection_row(session, user_id)
            row.status = ConnectionStatus.DISCONNECTED.value
            row.access_token = None
            row.refresh_token = None
            row.token_expires_at = None
            row.token_scope = None
            row.sync_token = None
            row.webhook_channel_id = None
            row.webhook_resource_id = None
            row.webhook_expiration = None
            row.updated_at = utc_now()

    # Credentials

    def get_credentials(self, user_id: str) -> Optional[Credentials]:
        with self._session() as session:
            row = session.query(ConnectionDB).filter(ConnectionDB.user_id == user_id).first()
            if row is None or not row.access_token:
                return None
            return Credentials(
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=row.token_expires_at,
                scope=row.token_scope,
            )

    def save_credentials(self, user_id: str, credentials: Credentials) -> None:
        with self._session() as session:
            row = self._connection_row(session, user_id)
            row.access_token = credentials.access_token
            if credentials.refresh_token:
                row.refresh_token = credentials.refresh_token
            row.token_expires_at = credentials.expires_at
            row.token_scope = credentials.scope or row.token_scope
            row.failed_refresh_count = 0
            row.updated_at = utc_now()

    def record_refresh_failure(self, user_id: str, error: str) -> None:
        with self._session() as session:
            session.add(RefreshFailureDB(user_id=user_id, error=error))
            row = session.query(ConnectionDB).filter(ConnectionDB.user_id == user_id).first()
            if row is not None:
                row.failed_refresh_count = (row.failed_refresh_count or 0) + 1

    def list_refresh_failures(self, user_id: str) -> List[Dict[str, object]]:
        with self._session() as session:
            rows = session.query(RefreshFailureDB).filter(
                RefreshFailureDB.user_id == user_id
            ).order_by(RefreshFailureDB.occurred_at).all()
            return [{'error': row.error, 'occurred_at': row.occurred_at} for row in rows]

    # Events

    def get_event(self, user_id: str, external_id: str) -> Optional[Event]:
        with self._session() as session:
            row = session.query(EventDB).filter(
                EventDB.user_id == user_id,
                EventDB.external_id == external_id,
            ).first()
            return _to_event(row) if row else None

    def get_event_by_id(self, event_id: str) -> Optional[Event]:
        key = _parse_id(event_id)
        if key is None:
            return None
        with self._session() as session:
            row = session.get(EventDB, key)
            return _to_event(row) if row else None

    def create_event(self, event: Event, sync_origin: bool = False) -> Event:
        with self._session() as session:
            row = EventDB(id=UUID(event.id) if event.id else uuid4(), created_at=utc_now())
            _apply_event(row, event)
            session.add(row)
            session.flush()
            created = _to_event(row)
        self._notify(ChangeKind.CREATED, created, sync_origin)
        return created

    def update_event(self, event: Event, sync_origin: bool = False) -> Event:
        if not event.id:
            raise ValueError("Cannot update an event without an id")
        with self._session() as session:
            row = session.get(EventDB, UUID(event.id))
            if row is None:
                raise KeyError(f"Event {event.id} not found")
            _apply_event(row, event)
            session.flush()
            updated = _to_event(row)
        self._notify(ChangeKind.UPDATED, updated, sync_origin)
        return updated

    def delete_event(self, event_id: str, sync_origin: bool = False) -> bool:
        key = _parse_id(event_id)
        if key is None:
            return False
        with self._session() as session:
            row = session.get(EventDB, key)
            if row is None:
                return False
            deleted = _to_event(row)
            session.delete(row)
        self._notify(ChangeKind.DELETED, deleted, sync_origin)
        return True

    def delete_by_external_id(self, user_id: str, external_id: str, sync_origin: bool = False) -> bool:
        with self._session() as session:
            row = session.query(EventDB).filter(
                EventDB.user_id == user_id,
                EventDB.external_id == external_id,
            ).first()
            if row is None:
                return False
            deleted = _to_event(row)
            session.delete(row)
        self._notify(ChangeKind.DELETED, deleted, sync_origin)
        return True

    def list_events(self, user_id: str, start: datetime, end: datetime) -> List[Event]:
        with self._session() as session:
            rows = session.query(EventDB).filter(
                EventDB.user_id == user_id,
                EventDB.active.is_(True),
                or_(
                    and_(EventDB.is_recurring.is_(False), EventDB.start_at < end, EventDB.end_at > start),
                    and_(EventDB.is_recurring.is_(True), EventDB.start_at < end),
                ),
            ).order_by(EventDB.start_at).all()
            return [_to_event(row) for row in rows]

    def delete_remote_events(self, user_id: str) -> int:
        with self._session() as session:
            count = session.query(EventDB).filter(
                EventDB.user_id == user_id,
                EventDB.source == EventSource.REMOTE.value,
            ).delete(synchronize_session=False)
            return count
