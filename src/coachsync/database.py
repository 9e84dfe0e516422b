"""Database models and operations for calendar sync and reminders."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import create_engine, func, Column, String, DateTime, Boolean, Text, Integer, ForeignKey, Index, JSON
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import (
    ACTIVE_SESSION_STATUSES, CalendarEvent, MappingStatus, SessionDetails, SyncStatus
)

Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


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
    """Stores naive UTC, returns aware UTC on every dialect."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is not None:
            value = value.astimezone(pytz.UTC)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=pytz.UTC)
        return value.astimezone(pytz.UTC)


class CoachDB(Base):
    """Coach profile (owned by the booking layer)."""

    __tablename__ = 'coaches'

    id = Column(GUID(), primary_key=True, default=uuid4)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)


class ClientDB(Base):
    """Client profile (owned by the booking layer)."""

    __tablename__ = 'clients'

    id = Column(GUID(), primary_key=True, default=uuid4)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)


class SessionDB(Base):
    """Coaching session (owned by the booking layer, read-mostly here)."""

    __tablename__ = 'sessions'

    id = Column(GUID(), primary_key=True, default=uuid4)
    coach_id = Column(GUID(), ForeignKey('coaches.id'), nullable=False, index=True)
    client_id = Column(GUID(), ForeignKey('clients.id'), nullable=False, index=True)
    starts_at = Column(UTCDateTime(), nullable=False, index=True)
    ends_at = Column(UTCDateTime(), nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default='scheduled')
    notes = Column(Text, nullable=True)
    meeting_url = Column(String(1000), nullable=True)
    meeting_id = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    coach = relationship("CoachDB", lazy='joined')
    client = relationship("ClientDB", lazy='joined')

    __table_args__ = (
        Index('idx_session_coach_start', 'coach_id', 'starts_at'),
        Index('idx_session_status_start', 'status', 'starts_at'),
    )


class CalendarConnectionDB(Base):
    """A coach's OAuth link to an external calendar."""

    __tablename__ = 'coach_calendar_connections'

    id = Column(GUID(), primary_key=True, default=uuid4)
    coach_id = Column(GUID(), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # 'google', 'outlook'
    provider_user_id = Column(String(255), nullable=True)

    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(UTCDateTime(), nullable=True)

    calendar_id = Column(String(500), nullable=True)
    calendar_name = Column(String(255), nullable=True)
    calendar_timezone = Column(String(100), nullable=True)

    is_active = Column(Boolean, nullable=False, default=False)
    is_sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_direction = Column(String(20), nullable=False, default='to_calendar')
    auto_create_events = Column(Boolean, nullable=False, default=True)
    auto_update_events = Column(Boolean, nullable=False, default=True)
    include_client_details = Column(Boolean, nullable=False, default=False)
    event_title_template = Column(String(255), nullable=True)
    event_description_template = Column(Text, nullable=True)

    last_sync_at = Column(UTCDateTime(), nullable=True)
    last_sync_status = Column(String(20), nullable=True)  # 'success', 'error'
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_connection_coach_provider', 'coach_id', 'provider'),
        Index('idx_connection_active', 'is_active', 'is_sync_enabled'),
    )


class SyncJobDB(Base):
    """Queued calendar sync work."""

    __tablename__ = 'calendar_sync_queue'

    id = Column(GUID(), primary_key=True, default=uuid4)
    connection_id = Column(GUID(), ForeignKey('coach_calendar_connections.id'), nullable=False, index=True)
    session_id = Column(GUID(), nullable=True, index=True)
    operation = Column(String(20), nullable=False)  # 'create', 'update', 'delete', 'full_sync'
    priority = Column(Integer, nullable=False, default=5)
    status = Column(String(20), nullable=False, default='pending')
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    scheduled_for = Column(UTCDateTime(), nullable=False, default=utc_now)
    error_message = Column(Text, nullable=True)
    started_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_sync_queue_claim', 'status', 'priority', 'scheduled_for'),
        Index('idx_sync_queue_dedupe', 'connection_id', 'session_id', 'operation', 'status'),
    )


class EventMappingDB(Base):
    """Session to external event mapping with a snapshot of what was pushed."""

    __tablename__ = 'calendar_event_mappings'

    id = Column(GUID(), primary_key=True, default=uuid4)
    session_id = Column(GUID(), nullable=False, index=True)
    connection_id = Column(GUID(), ForeignKey('coach_calendar_connections.id'), nullable=False, index=True)
    external_event_id = Column(String(1024), nullable=False)
    external_calendar_id = Column(String(500), nullable=True)

    synced_title = Column(String(500), nullable=True)
    synced_description = Column(Text, nullable=True)
    synced_start_time = Column(UTCDateTime(), nullable=True)
    synced_end_time = Column(UTCDateTime(), nullable=True)
    synced_location = Column(String(1000), nullable=True)

    sync_status = Column(String(20), nullable=False, default='synced')  # 'synced', 'deleted'
    last_sync_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    # No unique constraint on (session_id, connection_id): legacy rows may be
    # duplicated and are collapsed by the reconciliation sweep.
    __table_args__ = (
        Index('idx_event_mapping_session_connection', 'session_id', 'connection_id'),
        Index('idx_event_mapping_status', 'sync_status'),
    )


class ScheduledReminderDB(Base):
    """Planned or delivered reminder."""

    __tablename__ = 'scheduled_reminders'

    id = Column(GUID(), primary_key=True, default=uuid4)
    session_id = Column(GUID(), nullable=False, index=True)
    reminder_type = Column(String(20), nullable=False)  # 'email', 'message'
    recipient_id = Column(GUID(), nullable=False)
    recipient_email = Column(String(255), nullable=True)
    sender_id = Column(GUID(), nullable=True)
    scheduled_for = Column(UTCDateTime(), nullable=False)
    hours_before = Column(Integer, nullable=False, default=0)
    data = Column(JSON, nullable=True)

    sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(UTCDateTime(), nullable=True)
    cancelled = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(UTCDateTime(), nullable=True)
    failed = Column(Boolean, nullable=False, default=False)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_reminder_due', 'sent', 'cancelled', 'failed', 'scheduled_for'),
        Index('idx_reminder_session_type', 'session_id', 'reminder_type'),
        Index('idx_reminder_created', 'created_at'),
    )


class MessageDB(Base):
    """Coach/client message (messaging data path)."""

    __tablename__ = 'messages'

    id = Column(GUID(), primary_key=True, default=uuid4)
    sender_id = Column(GUID(), nullable=False, index=True)
    recipient_id = Column(GUID(), nullable=False, index=True)
    session_id = Column(GUID(), nullable=True)
    body = Column(Text, nullable=False)
    is_system_message = Column(Boolean, nullable=False, default=False)
    system_message_type = Column(String(50), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_message_participants', 'sender_id', 'recipient_id'),
    )


class DatabaseManager:
    """Database manager for connections, sessions and event mappings."""

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

    # Connections

    def get_connection(self, session: Session, connection_id: UUID) -> Optional[CalendarConnectionDB]:
        return session.get(CalendarConnectionDB, connection_id)

    def get_connections_for_coach(
        self,
        session: Session,
        coach_id: UUID,
        active_only: bool = False
    ) -> List[CalendarConnectionDB]:
        """Get a coach's calendar connections.

        Args:
            session: Database session
            coach_id: Coach ID
            active_only: Only return active, sync-enabled connections

        Returns:
            Connections ordered by creation time
        """
        query = session.query(CalendarConnectionDB).filter(CalendarConnectionDB.coach_id == coach_id)
        if active_only:
            query = query.filter(
                CalendarConnectionDB.is_active.is_(True),
                CalendarConnectionDB.is_sync_enabled.is_(True)
            )
        return query.order_by(CalendarConnectionDB.created_at.asc()).all()

    def set_connection_status(
        self,
        session: Session,
        connection_id: UUID,
        status: SyncStatus,
        error: Optional[str] = None
    ) -> None:
        """Record the outcome of the last sync attempt on a connection."""
        connection = self.get_connection(session, connection_id)
        if connection is None:
            return
        now = utc_now()
        connection.last_sync_at = now
        connection.last_sync_status = status.value
        connection.last_sync_error = error
        connection.updated_at = now
        session.commit()

    def deactivate_connection(self, session: Session, connection_id: UUID, error: str) -> None:
        """Deactivate a connection whose credentials are no longer usable."""
        connection = self.get_connection(session, connection_id)
        if connection is None:
            return
        connection.is_active = False
        connection.last_sync_status = SyncStatus.ERROR.value
        connection.last_sync_error = error
        connection.updated_at = utc_now()
        session.commit()

    def store_tokens(
        self,
        session: Session,
        connection_id: UUID,
        access_token: str,
        expires_at: Optional[datetime],
        refresh_token: Optional[str] = None
    ) -> None:
        """Persist refreshed credentials."""
        connection = self.get_connection(session, connection_id)
        if connection is None:
            return
        connection.access_token = access_token
        connection.token_expires_at = expires_at
        if refresh_token:
            connection.refresh_token = refresh_token
        connection.updated_at = utc_now()
        session.commit()

    # Sessions

    def get_session_details(self, session: Session, session_id: UUID) -> Optional[SessionDetails]:
        row = session.get(SessionDB, session_id)
        if row is None:
            return None
        return SessionDetails.model_validate(row)

    def get_upcoming_sessions(self, session: Session, coach_id: UUID, now: datetime) -> List[SessionDetails]:
        """Future scheduled/confirmed sessions of a coach, soonest first."""
        rows = (
            session.query(SessionDB)
            .filter(
                SessionDB.coach_id == coach_id,
                SessionDB.starts_at >= now,
                SessionDB.status.in_(ACTIVE_SESSION_STATUSES)
            )
            .order_by(SessionDB.starts_at.asc())
            .all()
        )
        return [SessionDetails.model_validate(row) for row in rows]

    def get_sessions_starting_between(
        self,
        session: Session,
        window_start: datetime,
        window_end: datetime
    ) -> List[SessionDetails]:
        """Scheduled/confirmed sessions starting inside [window_start, window_end]."""
        rows = (
            session.query(SessionDB)
            .filter(
                SessionDB.starts_at >= window_start,
                SessionDB.starts_at <= window_end,
                SessionDB.status.in_(ACTIVE_SESSION_STATUSES)
            )
            .order_by(SessionDB.starts_at.asc())
            .all()
        )
        return [SessionDetails.model_validate(row) for row in rows]

    def session_exists(self, session: Session, session_id: UUID) -> bool:
        return session.query(SessionDB.id).filter(SessionDB.id == session_id).first() is not None

    # Event mappings

    def get_event_mapping(
        self,
        session: Session,
        session_id: UUID,
        connection_id: UUID,
        include_deleted: bool = False
    ) -> Optional[EventMappingDB]:
        """Get the oldest mapping for a (session, connection) pair.

        Args:
            session: Database session
            session_id: Session ID
            connection_id: Connection ID
            include_deleted: Also return mappings whose event was removed

        Returns:
            Event mapping or None if not found
        """
        query = session.query(EventMappingDB).filter(
            EventMappingDB.session_id == session_id,
            EventMappingDB.connection_id == connection_id
        )
        if not include_deleted:
            query = query.filter(EventMappingDB.sync_status == MappingStatus.SYNCED.value)
        return query.order_by(EventMappingDB.created_at.asc()).first()

    def get_event_mappings_for_session(self, session: Session, session_id: UUID) -> List[EventMappingDB]:
        return (
            session.query(EventMappingDB)
            .filter(EventMappingDB.session_id == session_id)
            .order_by(EventMappingDB.created_at.asc())
            .all()
        )

    def create_event_mapping(
        self,
        session: Session,
        session_id: UUID,
        connection_id: UUID,
        external_event_id: str,
        external_calendar_id: Optional[str],
        event: CalendarEvent
    ) -> EventMappingDB:
        """Create an event mapping, or update the existing row for the pair.

        Args:
            session: Database session
            session_id: Session ID
            connection_id: Connection ID
            external_event_id: Event ID assigned by the provider
            external_calendar_id: Calendar the event lives in
            event: Event that was pushed, stored as the sync snapshot

        Returns:
            Created or updated event mapping
        """
        mapping = self.get_event_mapping(session, session_id, connection_id, include_deleted=True)
        if mapping is None:
            mapping = EventMappingDB(session_id=session_id, connection_id=connection_id)
            session.add(mapping)

        mapping.external_event_id = external_event_id
        mapping.external_calendar_id = external_calendar_id
        mapping.sync_status = MappingStatus.SYNCED.value
        self._apply_snapshot(mapping, event)

        session.commit()
        return mapping

    def update_event_mapping(self, session: Session, mapping: EventMappingDB, event: CalendarEvent) -> EventMappingDB:
        """Refresh the stored snapshot after an update."""
        self._apply_snapshot(mapping, event)
        session.commit()
        return mapping

    def mark_mapping_deleted(self, session: Session, mapping: EventMappingDB) -> None:
        mapping.sync_status = MappingStatus.DELETED.value
        mapping.last_sync_at = utc_now()
        session.commit()

    def get_duplicated_session_ids(self, session: Session, coach_id: Optional[UUID] = None) -> List[UUID]:
        """Sessions having more than one mapping for the same connection."""
        query = session.query(EventMappingDB.session_id)
        if coach_id is not None:
            query = query.join(
                CalendarConnectionDB, CalendarConnectionDB.id == EventMappingDB.connection_id
            ).filter(CalendarConnectionDB.coach_id == coach_id)
        query = (
            query.group_by(EventMappingDB.session_id, EventMappingDB.connection_id)
            .having(func.count(EventMappingDB.id) > 1)
        )

        seen = []
        for (session_id,) in query.all():
            if session_id not in seen:
                seen.append(session_id)
        return seen

    def _apply_snapshot(self, mapping: EventMappingDB, event: CalendarEvent) -> None:
        mapping.synced_title = event.title
        mapping.synced_description = event.description
        mapping.synced_start_time = event.start
        mapping.synced_end_time = event.end
        mapping.synced_location = event.location
        mapping.last_sync_at = utc_now()

    # Jobs

    def get_recent_jobs(
        self,
        session: Session,
        connection_id: Optional[UUID] = None,
        limit: int = 10
    ) -> List[SyncJobDB]:
        """Most recently created jobs, optionally for a single connection."""
        query = session.query(SyncJobDB)
        if connection_id is not None:
            query = query.filter(SyncJobDB.connection_id == connection_id)
        return query.order_by(SyncJobDB.created_at.desc()).limit(limit).all()
