"""Typed records for calendar sync and reminders."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, validator
import pytz

from .timezones import to_wall_clock


def ensure_utc(value):
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=pytz.UTC)
        return value.astimezone(pytz.UTC)
    return value


class CalendarProvider(str, Enum):
    """External calendar provider."""

    GOOGLE = "google"
    OUTLOOK = "outlook"


class SyncOperation(str, Enum):
    """Sync job operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    FULL_SYNC = "full_sync"


class SyncJobStatus(str, Enum):
    """Sync job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MappingStatus(str, Enum):
    """Event mapping states."""

    SYNCED = "synced"
    DELETED = "deleted"


class SyncStatus(str, Enum):
    """Outcome of the last sync on a connection."""

    SUCCESS = "success"
    ERROR = "error"


class ReminderType(str, Enum):
    """Reminder delivery channels."""

    EMAIL = "email"
    MESSAGE = "message"


class SessionStatus(str, Enum):
    """Session states owned by the booking layer."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Sessions that should appear on calendars and receive reminders
ACTIVE_SESSION_STATUSES = (SessionStatus.SCHEDULED.value, SessionStatus.CONFIRMED.value)


class StoredRecord(BaseModel):
    """Base for records loaded from ORM rows."""

    model_config = ConfigDict(from_attributes=True)


class CalendarConnection(StoredRecord):
    """A coach's OAuth link to one external calendar."""

    id: UUID
    coach_id: UUID
    provider: CalendarProvider
    provider_user_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    calendar_id: Optional[str] = None
    calendar_name: Optional[str] = None
    calendar_timezone: Optional[str] = None
    is_active: bool = False
    is_sync_enabled: bool = True
    sync_direction: str = "to_calendar"
    auto_create_events: bool = True
    auto_update_events: bool = True
    include_client_details: bool = False
    event_title_template: Optional[str] = None
    event_description_template: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatus] = None
    last_sync_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @validator('token_expires_at', 'last_sync_at', 'created_at', 'updated_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v)

    @property
    def usable(self) -> bool:
        """Whether jobs may run against this connection."""
        return self.is_active and self.is_sync_enabled


class SyncJob(StoredRecord):
    """A unit of work in the calendar sync queue."""

    id: UUID
    connection_id: UUID
    session_id: Optional[UUID] = None
    operation: SyncOperation
    priority: int = 5
    status: SyncJobStatus = SyncJobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    scheduled_for: datetime
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @validator('scheduled_for', 'started_at', 'completed_at', 'created_at', 'updated_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v)


class EventMapping(StoredRecord):
    """Link between a session and an external calendar event."""

    id: UUID
    session_id: UUID
    connection_id: UUID
    external_event_id: str
    external_calendar_id: Optional[str] = None
    synced_title: Optional[str] = None
    synced_description: Optional[str] = None
    synced_start_time: Optional[datetime] = None
    synced_end_time: Optional[datetime] = None
    synced_location: Optional[str] = None
    sync_status: MappingStatus = MappingStatus.SYNCED
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @validator('synced_start_time', 'synced_end_time', 'last_sync_at', 'created_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v)


class ReminderPayload(BaseModel):
    """Snapshot of everything needed to deliver a reminder.

    Captured when the reminder is scheduled; later renames or contact changes
    do not affect reminders already queued.
    """

    session_id: UUID
    client_id: UUID
    coach_id: UUID
    client_name: str
    client_email: Optional[str] = None
    coach_name: str
    coach_email: Optional[str] = None
    starts_at: datetime
    duration_minutes: int = 60
    meeting_id: Optional[str] = None
    meeting_url: Optional[str] = None

    @validator('starts_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v)


class ScheduledReminder(StoredRecord):
    """A planned or delivered reminder."""

    id: UUID
    session_id: UUID
    reminder_type: ReminderType
    recipient_id: UUID
    recipient_email: Optional[str] = None
    sender_id: Optional[UUID] = None
    scheduled_for: datetime
    hours_before: int
    sent: bool = False
    sent_at: Optional[datetime] = None
    cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    failed: bool = False
    failure_reason: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @validator('scheduled_for', 'sent_at', 'cancelled_at', 'created_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v)

    @validator('data', pre=True)
    def default_data(cls, v):
        return v or {}

    @property
    def payload(self) -> ReminderPayload:
        return ReminderPayload.model_validate(self.data)


class Person(StoredRecord):
    """Contact details of a client or coach."""

    id: UUID
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class SessionDetails(StoredRecord):
    """A coaching session joined with its client and coach."""

    id: UUID
    coach_id: UUID
    client_id: UUID
    starts_at: datetime
    ends_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    status: SessionStatus = SessionStatus.SCHEDULED
    notes: Optional[str] = None
    meeting_url: Optional[str] = None
    meeting_id: Optional[str] = None
    client: Optional[Person] = None
    coach: Optional[Person] = None

    @validator('starts_at', 'ends_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v)

    @property
    def is_active(self) -> bool:
        return self.status.value in ACTIVE_SESSION_STATUSES

    @property
    def end_time(self) -> datetime:
        """Session end: start plus duration, else the stored end, else one hour."""
        if self.duration_minutes:
            return self.starts_at + timedelta(minutes=self.duration_minutes)
        if self.ends_at and self.ends_at > self.starts_at:
            return self.ends_at
        return self.starts_at + timedelta(minutes=60)

    @property
    def length_minutes(self) -> int:
        return int((self.end_time - self.starts_at).total_seconds() // 60)

    @property
    def client_name(self) -> str:
        return (self.client.full_name if self.client else '') or 'Client'

    @property
    def coach_name(self) -> str:
        return (self.coach.full_name if self.coach else '') or 'Coach'

    def reminder_payload(self) -> ReminderPayload:
        return ReminderPayload(
            session_id=self.id,
            client_id=self.client_id,
            coach_id=self.coach_id,
            client_name=self.client_name,
            client_email=self.client.email if self.client else None,
            coach_name=self.coach_name,
            coach_email=self.coach.email if self.coach else None,
            starts_at=self.starts_at,
            duration_minutes=self.length_minutes,
            meeting_id=self.meeting_id,
            meeting_url=self.meeting_url,
        )


class EventTemplate(BaseModel):
    """Title and description used when rendering a session as an event."""

    title: str
    description: str


class CalendarEvent(BaseModel):
    """Provider-neutral calendar event.

    ``start``/``end`` are absolute UTC instants; ``time_zone`` is the IANA
    zone of the target calendar, used to render wall-clock times.
    """

    id: Optional[str] = Field(None, description="External event ID, when known")
    title: str = Field(..., description="Event title/summary")
    description: str = Field("", description="Event description")
    start: datetime = Field(..., description="Event start time")
    end: datetime = Field(..., description="Event end time")
    time_zone: str = Field("UTC", description="IANA timezone of the target calendar")
    location: Optional[str] = Field(None, description="Event location")
    attendees: List[str] = Field(default_factory=list, description="Attendee email addresses")

    @validator('start', 'end', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return ensure_utc(v)

    @validator('end')
    def end_after_start(cls, v, values):
        """Ensure end time is after start time."""
        if 'start' in values and v <= values['start']:
            raise ValueError(f"End time ({v}) must be after start time ({values['start']})")
        return v

    @property
    def local_start(self) -> str:
        return to_wall_clock(self.start, self.time_zone)

    @property
    def local_end(self) -> str:
        return to_wall_clock(self.end, self.time_zone)


class CalendarInfo(BaseModel):
    """Calendar information model."""

    id: str = Field(..., description="Calendar ID")
    name: str = Field(..., description="Calendar name")
    timezone: str = Field("UTC")


class TokenSet(BaseModel):
    """Tokens returned from an OAuth code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    user_email: Optional[str] = None

    @validator('expires_at', pre=True)
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v)


class ReminderSweepResult(BaseModel):
    """Counters from one reminder sweep."""

    processed: int = 0
    sent: int = 0
    failed: int = 0


class AppointmentDetails(BaseModel):
    """Human-readable appointment summary used in reminder emails."""

    date: str
    time: str
    duration: str = "60 minutes"
    type: str = "Video Session"


class ConnectionSettingsUpdate(BaseModel):
    """Coach-editable connection settings; unset fields are left unchanged."""

    is_sync_enabled: Optional[bool] = None
    sync_direction: Optional[str] = None
    auto_create_events: Optional[bool] = None
    auto_update_events: Optional[bool] = None
    include_client_details: Optional[bool] = None
    event_title_template: Optional[str] = None
    event_description_template: Optional[str] = None

    @validator('sync_direction', 'event_title_template', 'event_description_template')
    def blank_means_unchanged(cls, v):
        return (v or '').strip() or None
