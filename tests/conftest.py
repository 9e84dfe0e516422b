"""Shared fixtures: isolated settings, a SQLite database and in-memory providers."""

from datetime import datetime, timedelta
from typing import Dict, List
from uuid import uuid4

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from coachsync.config import Settings
from coachsync.database import (
    CalendarConnectionDB, ClientDB, CoachDB, DatabaseManager, EventMappingDB, SessionDB
)
from coachsync.models import CalendarEvent, CalendarInfo, CalendarProvider, TokenSet
from coachsync.notifications import EmailSender, MessageSender, NotificationError
from coachsync.providers import BaseCalendarAdapter, EventNotFoundError, OAuthExchangeError
from coachsync.providers.base import build_oauth_state
from coachsync.reminders import ReminderScheduler
from coachsync.sync_engine import SyncEngine


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='x' * 20,
        google_client_secret='y' * 20,
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        frontend_url='https://app.example.com',
        smtp_host='smtp.example.com',
    )
    values.update(overrides)
    return TestSettings(**values)


class FakeAdapter(BaseCalendarAdapter):
    """Provider adapter keeping events in memory.

    Credential handling is inherited from the real base class, so token
    refresh and deactivation behave exactly as in production.
    """

    def __init__(self, settings, db_manager, provider=CalendarProvider.GOOGLE):
        super().__init__(settings, db_manager, provider)
        self.events: Dict[str, CalendarEvent] = {}
        self.calls: List[tuple] = []
        self.fail_with = None
        self.refresh_error = None
        self.calendar_error = None
        self._next_id = 0

    @property
    def is_available(self) -> bool:
        return True

    def get_auth_url(self, owner_id) -> str:
        return f"https://auth.example.com/{self.provider.value}?state={build_oauth_state(owner_id, self.provider)}"

    async def exchange_code_for_tokens(self, code: str) -> TokenSet:
        if code == 'bad-code':
            raise OAuthExchangeError("invalid_grant")
        return TokenSet(
            access_token=f'access-{code}',
            refresh_token='refresh-token',
            expires_at=datetime.now(pytz.UTC) + timedelta(hours=1),
            user_email='coach@example.com',
        )

    async def _refresh_tokens(self, refresh_token: str) -> TokenSet:
        self.calls.append(('refresh', refresh_token))
        if self.refresh_error:
            raise self.refresh_error
        return TokenSet(access_token='refreshed-token', expires_at=datetime.now(pytz.UTC) + timedelta(hours=1))

    async def _fetch_primary_calendar(self, access_token: str) -> CalendarInfo:
        if self.calendar_error:
            raise self.calendar_error
        return CalendarInfo(id='primary-cal', name='Coach Calendar', timezone='America/New_York')

    def _check(self):
        if self.fail_with:
            raise self.fail_with

    async def _insert_event(self, access_token, calendar_id, event):
        self._check()
        self._next_id += 1
        event_id = f'evt-{self._next_id}'
        self.events[event_id] = event
        self.calls.append(('create', event_id, access_token))
        return event_id

    async def _patch_event(self, access_token, calendar_id, event_id, event):
        self._check()
        if event_id not in self.events:
            raise EventNotFoundError(event_id)
        self.events[event_id] = event
        self.calls.append(('update', event_id, access_token))

    async def _remove_event(self, access_token, calendar_id, event_id):
        self._check()
        self.events.pop(event_id, None)
        self.calls.append(('delete', event_id, access_token))

    async def _list_events(self, access_token, calendar_id, start, end):
        self._check()
        return [e for e in self.events.values() if start <= e.start <= end]


class RecordingEmailSender(EmailSender):
    """Email sender that records messages instead of talking to SMTP."""

    def __init__(self, settings):
        super().__init__(settings)
        self.sent = []
        self.fail = False

    async def send_email(self, to, subject, text, html):
        if self.fail:
            raise NotificationError(f"SMTP send to {to} failed: connection refused")
        self.sent.append({'to': to, 'subject': subject, 'text': text, 'html': html})


class Factory:
    """Inserts booking-layer rows and connections."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def _add(self, row):
        with self.db_manager.get_session() as session:
            session.add(row)
            session.commit()
            return row.id

    def coach(self, first_name='Maya', last_name='Lopez', email='maya@example.com'):
        return self._add(CoachDB(id=uuid4(), first_name=first_name, last_name=last_name, email=email))

    def client(self, first_name='Sam', last_name='Carter', email='sam@example.com'):
        return self._add(ClientDB(id=uuid4(), first_name=first_name, last_name=last_name, email=email))

    def session(self, coach_id, client_id, starts_at, duration_minutes=60, status='scheduled', **fields):
        return self._add(SessionDB(
            id=uuid4(),
            coach_id=coach_id,
            client_id=client_id,
            starts_at=starts_at,
            duration_minutes=duration_minutes,
            status=status,
            **fields
        ))

    def connection(self, coach_id, provider=CalendarProvider.GOOGLE, **fields):
        values = dict(
            access_token='access-token',
            refresh_token='refresh-token',
            token_expires_at=datetime.now(pytz.UTC) + timedelta(days=1),
            calendar_id='primary-cal',
            calendar_name='Coach Calendar',
            calendar_timezone='America/New_York',
            is_active=True,
            is_sync_enabled=True,
        )
        values.update(fields)
        return self._add(CalendarConnectionDB(id=uuid4(), coach_id=coach_id, provider=provider.value, **values))

    def mapping(self, session_id, connection_id, external_event_id, created_at, sync_status='synced'):
        return self._add(EventMappingDB(
            id=uuid4(),
            session_id=session_id,
            connection_id=connection_id,
            external_event_id=external_event_id,
            external_calendar_id='primary-cal',
            sync_status=sync_status,
            created_at=created_at,
        ))

    def update_session(self, session_id, **fields):
        with self.db_manager.get_session() as session:
            row = session.get(SessionDB, session_id)
            for name, value in fields.items():
                setattr(row, name, value)
            session.commit()

    def update_connection(self, connection_id, **fields):
        with self.db_manager.get_session() as session:
            row = session.get(CalendarConnectionDB, connection_id)
            for name, value in fields.items():
                setattr(row, name, value)
            session.commit()

    def get_connection(self, connection_id):
        from coachsync.models import CalendarConnection
        with self.db_manager.get_session() as session:
            return CalendarConnection.model_validate(session.get(CalendarConnectionDB, connection_id))


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def factory(db_manager):
    return Factory(db_manager)


@pytest.fixture
def now():
    return datetime.now(pytz.UTC).replace(microsecond=0)


@pytest.fixture
def google(settings, db_manager):
    return FakeAdapter(settings, db_manager, CalendarProvider.GOOGLE)


@pytest.fixture
def outlook(settings, db_manager):
    return FakeAdapter(settings, db_manager, CalendarProvider.OUTLOOK)


@pytest.fixture
def adapters(google, outlook):
    return {CalendarProvider.GOOGLE: google, CalendarProvider.OUTLOOK: outlook}


@pytest.fixture
def email_sender(settings):
    return RecordingEmailSender(settings)


@pytest.fixture
def reminders(settings, db_manager, email_sender):
    return ReminderScheduler(settings, db_manager, email_sender, MessageSender(db_manager))


@pytest.fixture
def engine(settings, db_manager, adapters, reminders):
    return SyncEngine(settings, db_manager, adapters, reminders)


@pytest.fixture
def people(factory):
    """A coach with one client."""
    return factory.coach(), factory.client()
