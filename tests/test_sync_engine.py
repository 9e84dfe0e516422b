"""Tests for the sync executor against in-memory providers."""

from datetime import datetime, timedelta

import pytest
import pytz

from coachsync.database import EventMappingDB, ScheduledReminderDB, SyncJobDB
from coachsync.models import CalendarProvider, SyncJobStatus, SyncOperation
from coachsync.providers import REFRESH_FAILED_MESSAGE, CalendarServiceError


@pytest.fixture
def booked(factory, people, now):
    coach_id, client_id = people
    connection_id = factory.connection(coach_id)
    session_id = factory.session(coach_id, client_id, now + timedelta(days=2), notes='Bring journal')
    return coach_id, connection_id, session_id


def _mappings(db_manager, session_id):
    with db_manager.get_session() as session:
        return (
            session.query(EventMappingDB)
            .filter(EventMappingDB.session_id == session_id)
            .order_by(EventMappingDB.created_at.asc())
            .all()
        )


def _job(db_manager, job_id):
    with db_manager.get_session() as session:
        return session.get(SyncJobDB, job_id)


@pytest.mark.asyncio
async def test_create_pushes_event_and_records_mapping(engine, booked, google, db_manager, factory, now):
    _, connection_id, session_id = booked
    job_id = engine.queue.queue_sync(connection_id, SyncOperation.CREATE, session_id)

    assert await engine.process_next_sync_job() is True

    [event] = google.events.values()
    assert event.title == 'ACT Coaching Session'
    assert 'Session Notes: Bring journal' in event.description
    assert event.time_zone == 'America/New_York'
    assert event.start == now + timedelta(days=2)
    assert event.end == now + timedelta(days=2, hours=1)
    assert event.location == 'Virtual Session'
    assert event.attendees == []

    [mapping] = _mappings(db_manager, session_id)
    assert mapping.sync_status == 'synced'
    assert mapping.external_event_id in google.events
    assert mapping.synced_title == event.title

    assert _job(db_manager, job_id).status == SyncJobStatus.COMPLETED.value
    connection = factory.get_connection(connection_id)
    assert connection.last_sync_status.value == 'success'
    assert connection.last_sync_error is None


@pytest.mark.asyncio
async def test_create_schedules_reminders(engine, booked, db_manager):
    _, connection_id, session_id = booked
    engine.queue.queue_sync(connection_id, SyncOperation.CREATE, session_id)
    await engine.process_next_sync_job()

    with db_manager.get_session() as session:
        rows = session.query(ScheduledReminderDB).filter(ScheduledReminderDB.session_id == session_id).all()
        assert {(r.reminder_type, r.hours_before) for r in rows} == {
            ('email', 24), ('email', 2), ('message', 24), ('message', 1)
        }


@pytest.mark.asyncio
async def test_create_is_idempotent(engine, booked, google, factory, db_manager):
    _, connection_id, session_id = booked
    connection = factory.get_connection(connection_id)

    await engine.sync_create(session_id, connection)
    await engine.sync_create(session_id, connection)

    assert len(google.events) == 1
    assert len(_mappings(db_manager, session_id)) == 1
    assert engine.queue.queue_sync(connection_id, SyncOperation.CREATE, session_id) is None


@pytest.mark.asyncio
async def test_update_without_mapping_creates(engine, booked, google, db_manager):
    _, connection_id, session_id = booked
    engine.queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)

    assert await engine.process_next_sync_job() is True
    assert len(google.events) == 1
    assert len(_mappings(db_manager, session_id)) == 1


@pytest.mark.asyncio
async def test_update_pushes_new_times(engine, booked, google, factory, db_manager, now):
    _, connection_id, session_id = booked
    connection = factory.get_connection(connection_id)
    await engine.sync_create(session_id, connection)

    new_start = now + timedelta(days=3)
    factory.update_session(session_id, starts_at=new_start, duration_minutes=90)
    await engine.sync_update(session_id, connection)

    [event] = google.events.values()
    assert event.start == new_start
    assert event.end == new_start + timedelta(minutes=90)
    [mapping] = _mappings(db_manager, session_id)
    assert mapping.synced_start_time == new_start
    assert ('update', mapping.external_event_id, 'access-token') in google.calls


@pytest.mark.asyncio
async def test_update_skipped_when_auto_update_disabled(engine, booked, google, factory, now):
    _, connection_id, session_id = booked
    await engine.sync_create(session_id, factory.get_connection(connection_id))
    factory.update_connection(connection_id, auto_update_events=False)
    factory.update_session(session_id, starts_at=now + timedelta(days=5))

    await engine.sync_update(session_id, factory.get_connection(connection_id))

    [event] = google.events.values()
    assert event.start == now + timedelta(days=2)


@pytest.mark.asyncio
async def test_cancellation_left_alone_when_auto_update_disabled(engine, booked, google, factory, db_manager):
    _, connection_id, session_id = booked
    await engine.sync_create(session_id, factory.get_connection(connection_id))
    factory.update_connection(connection_id, auto_update_events=False)
    factory.update_session(session_id, status='cancelled')

    await engine.sync_update(session_id, factory.get_connection(connection_id))

    assert len(google.events) == 1
    assert not [call for call in google.calls if call[0] == 'delete']
    [mapping] = _mappings(db_manager, session_id)
    assert mapping.sync_status == 'synced'


@pytest.mark.asyncio
async def test_update_of_cancelled_session_deletes_event(engine, booked, google, factory, db_manager):
    _, connection_id, session_id = booked
    connection = factory.get_connection(connection_id)
    await engine.sync_create(session_id, connection)

    factory.update_session(session_id, status='cancelled')
    await engine.sync_update(session_id, connection)

    assert google.events == {}
    [mapping] = _mappings(db_manager, session_id)
    assert mapping.sync_status == 'deleted'


@pytest.mark.asyncio
async def test_update_recreates_event_removed_upstream(engine, booked, google, factory, db_manager):
    _, connection_id, session_id = booked
    connection = factory.get_connection(connection_id)
    await engine.sync_create(session_id, connection)
    google.events.clear()

    await engine.sync_update(session_id, connection)

    assert len(google.events) == 1
    [mapping] = _mappings(db_manager, session_id)
    assert mapping.sync_status == 'synced'
    assert mapping.external_event_id in google.events


@pytest.mark.asyncio
async def test_delete_removes_event(engine, booked, google, factory, db_manager):
    _, connection_id, session_id = booked
    await engine.sync_create(session_id, factory.get_connection(connection_id))

    engine.queue.queue_sync(connection_id, SyncOperation.DELETE, session_id)
    assert await engine.process_next_sync_job() is True

    assert google.events == {}
    [mapping] = _mappings(db_manager, session_id)
    assert mapping.sync_status == 'deleted'

    # Re-creating after a delete reuses the mapping row
    await engine.sync_create(session_id, factory.get_connection(connection_id))
    [mapping] = _mappings(db_manager, session_id)
    assert mapping.sync_status == 'synced'


@pytest.mark.asyncio
async def test_delete_without_mapping_is_noop(engine, booked, google, factory):
    _, connection_id, session_id = booked
    await engine.sync_delete(session_id, factory.get_connection(connection_id))
    assert google.calls == []


@pytest.mark.asyncio
async def test_cancelled_session_is_not_created(engine, booked, google, factory):
    _, connection_id, session_id = booked
    factory.update_session(session_id, status='cancelled')
    await engine.sync_create(session_id, factory.get_connection(connection_id))
    assert google.events == {}


@pytest.mark.asyncio
async def test_client_details_only_when_enabled(engine, booked, google, factory):
    _, connection_id, session_id = booked
    factory.update_connection(connection_id, include_client_details=True, event_title_template='Coaching')

    await engine.sync_create(session_id, factory.get_connection(connection_id))

    [event] = google.events.values()
    assert event.title == 'Coaching - Sam Carter'
    assert event.attendees == ['sam@example.com']


@pytest.mark.asyncio
async def test_missing_session_fails_immediately(engine, factory, people, db_manager):
    from uuid import uuid4

    coach_id, _ = people
    connection_id = factory.connection(coach_id)
    job_id = engine.queue.queue_sync(connection_id, SyncOperation.UPDATE, uuid4())

    assert await engine.process_next_sync_job() is False

    job = _job(db_manager, job_id)
    assert job.status == 'failed'
    assert job.attempts == 1
    assert 'not found' in job.error_message


@pytest.mark.asyncio
async def test_inactive_connection_fails_immediately(engine, booked, factory, db_manager, google):
    _, connection_id, session_id = booked
    job_id = engine.queue.queue_sync(connection_id, SyncOperation.CREATE, session_id)
    factory.update_connection(connection_id, is_active=False)

    await engine.process_next_sync_job()

    assert _job(db_manager, job_id).status == 'failed'
    assert google.calls == []


@pytest.mark.asyncio
async def test_transient_provider_error_is_retried(engine, booked, google, db_manager):
    _, connection_id, session_id = booked
    job_id = engine.queue.queue_sync(connection_id, SyncOperation.CREATE, session_id)
    google.fail_with = CalendarServiceError('503 backend unavailable')

    assert await engine.process_next_sync_job() is False

    job = _job(db_manager, job_id)
    assert job.status == 'pending'
    assert job.attempts == 1
    assert job.error_message == '503 backend unavailable'
    assert job.scheduled_for > datetime.now(pytz.UTC)


@pytest.mark.asyncio
async def test_expired_token_is_refreshed(engine, booked, google, factory):
    _, connection_id, session_id = booked
    factory.update_connection(connection_id, token_expires_at=datetime.now(pytz.UTC) - timedelta(minutes=5))

    await engine.sync_create(session_id, factory.get_connection(connection_id))

    assert ('refresh', 'refresh-token') in google.calls
    assert google.calls[-1][2] == 'refreshed-token'
    assert factory.get_connection(connection_id).access_token == 'refreshed-token'


@pytest.mark.asyncio
async def test_refresh_failure_deactivates_connection(engine, booked, google, factory, db_manager):
    _, connection_id, session_id = booked
    factory.update_connection(connection_id, token_expires_at=datetime.now(pytz.UTC) - timedelta(minutes=5))
    google.refresh_error = CalendarServiceError('invalid_grant')
    job_id = engine.queue.queue_sync(connection_id, SyncOperation.CREATE, session_id)

    await engine.process_next_sync_job()

    connection = factory.get_connection(connection_id)
    assert connection.is_active is False
    assert REFRESH_FAILED_MESSAGE in connection.last_sync_error
    assert _job(db_manager, job_id).status == 'failed'
    assert google.events == {}


@pytest.mark.asyncio
async def test_expired_token_without_refresh_token_deactivates(engine, booked, factory):
    _, connection_id, session_id = booked
    factory.update_connection(
        connection_id,
        refresh_token=None,
        token_expires_at=datetime.now(pytz.UTC) - timedelta(minutes=5)
    )

    engine.queue.queue_sync(connection_id, SyncOperation.CREATE, session_id)
    await engine.process_next_sync_job()

    assert factory.get_connection(connection_id).is_active is False


@pytest.mark.asyncio
async def test_full_sync_covers_upcoming_sessions_only(engine, factory, people, google, now, db_manager):
    coach_id, client_id = people
    connection_id = factory.connection(coach_id)
    upcoming = [
        factory.session(coach_id, client_id, now + timedelta(days=1)),
        factory.session(coach_id, client_id, now + timedelta(days=4), status='confirmed'),
    ]
    factory.session(coach_id, client_id, now - timedelta(days=1))
    factory.session(coach_id, client_id, now + timedelta(days=2), status='cancelled')

    engine.queue.queue_sync(connection_id, SyncOperation.FULL_SYNC)
    assert await engine.process_next_sync_job() is True
    assert len(google.events) == 2

    # A second pass updates instead of duplicating
    assert await engine.full_sync(factory.get_connection(connection_id)) == 2
    assert len(google.events) == 2
    for session_id in upcoming:
        assert len(_mappings(db_manager, session_id)) == 1


@pytest.mark.asyncio
async def test_jobs_dispatch_to_connection_provider(engine, factory, people, google, outlook, now):
    coach_id, client_id = people
    factory.connection(coach_id, CalendarProvider.GOOGLE)
    factory.connection(coach_id, CalendarProvider.OUTLOOK)
    session_id = factory.session(coach_id, client_id, now + timedelta(days=1))

    engine.queue.queue_session_sync(coach_id, session_id, SyncOperation.CREATE)
    assert await engine.process_jobs() == 2

    assert len(google.events) == 1
    assert len(outlook.events) == 1
