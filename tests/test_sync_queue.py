"""Tests for the sync job queue."""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
import pytz

from coachsync.database import SyncJobDB
from coachsync.models import SyncJobStatus, SyncOperation
from coachsync.sync_queue import URGENT_PRIORITY, SyncQueue

from conftest import make_settings


@pytest.fixture
def queue(settings, db_manager):
    return SyncQueue(settings, db_manager)


@pytest.fixture
def booked(factory, people, now):
    coach_id, client_id = people
    connection_id = factory.connection(coach_id)
    session_id = factory.session(coach_id, client_id, now + timedelta(days=2))
    return coach_id, connection_id, session_id


def _rows(db_manager):
    with db_manager.get_session() as session:
        return session.query(SyncJobDB).all()


def test_equivalent_active_job_is_reused(queue, booked, db_manager):
    _, connection_id, session_id = booked
    first = queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    second = queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)

    assert first is not None
    assert first == second
    assert len(_rows(db_manager)) == 1


def test_different_operations_are_separate_jobs(queue, booked, db_manager):
    _, connection_id, session_id = booked
    queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    queue.queue_sync(connection_id, SyncOperation.DELETE, session_id)
    assert len(_rows(db_manager)) == 2


def test_create_skipped_when_event_already_mapped(queue, booked, factory, now):
    _, connection_id, session_id = booked
    factory.mapping(session_id, connection_id, 'evt-1', now)

    assert queue.queue_sync(connection_id, SyncOperation.CREATE, session_id) is None


def test_create_allowed_after_mapping_deleted(queue, booked, factory, now):
    _, connection_id, session_id = booked
    factory.mapping(session_id, connection_id, 'evt-1', now, sync_status='deleted')

    assert queue.queue_sync(connection_id, SyncOperation.CREATE, session_id) is not None


def test_session_operation_requires_session(queue, booked):
    _, connection_id, _ = booked
    with pytest.raises(ValueError):
        queue.queue_sync(connection_id, SyncOperation.DELETE)


def test_queue_session_sync_targets_active_connections(queue, factory, people, now, db_manager):
    coach_id, client_id = people
    google_id = factory.connection(coach_id)
    factory.connection(coach_id, is_active=False)
    factory.connection(coach_id, is_sync_enabled=False)
    session_id = factory.session(coach_id, client_id, now + timedelta(days=1))

    job_ids = queue.queue_session_sync(coach_id, session_id, SyncOperation.CREATE)

    assert len(job_ids) == 1
    rows = _rows(db_manager)
    assert [row.connection_id for row in rows] == [google_id]


def test_claim_order_by_priority(queue, booked):
    _, connection_id, session_id = booked
    normal = queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    urgent = queue.queue_sync(connection_id, SyncOperation.FULL_SYNC, priority=URGENT_PRIORITY)

    first = queue.claim_next_job()
    second = queue.claim_next_job()

    assert first.id == urgent
    assert first.status == SyncJobStatus.PROCESSING
    assert first.started_at is not None
    assert second.id == normal
    assert queue.claim_next_job() is None


def test_claim_skips_jobs_not_yet_due(queue, booked):
    _, connection_id, session_id = booked
    queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    assert queue.claim_next_job(now=datetime.now(pytz.UTC) - timedelta(minutes=5)) is None


def test_failures_back_off_then_fail_terminally(queue, booked):
    _, connection_id, session_id = booked
    queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    t0 = datetime.now(pytz.UTC)

    job = queue.claim_next_job()
    assert queue.fail_job(job, 'boom', now=t0) == SyncJobStatus.PENDING
    # Attempt 1 waits 2 minutes
    assert queue.claim_next_job(now=t0 + timedelta(minutes=1)) is None
    job = queue.claim_next_job(now=t0 + timedelta(minutes=2, seconds=1))
    assert job is not None
    assert job.attempts == 1

    t1 = t0 + timedelta(minutes=3)
    assert queue.fail_job(job, 'boom', now=t1) == SyncJobStatus.PENDING
    # Attempt 2 waits 4 minutes
    assert queue.claim_next_job(now=t1 + timedelta(minutes=3)) is None
    job = queue.claim_next_job(now=t1 + timedelta(minutes=4, seconds=1))
    assert job.attempts == 2

    assert queue.fail_job(job, 'still broken', now=t1 + timedelta(minutes=5)) == SyncJobStatus.FAILED
    assert queue.claim_next_job(now=t1 + timedelta(days=1)) is None

    [row] = queue.get_recent_jobs(connection_id)
    assert row.attempts == 3
    assert row.error_message == 'still broken'
    assert row.completed_at is not None


def test_non_retryable_failure_is_terminal(queue, booked):
    _, connection_id, session_id = booked
    queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    job = queue.claim_next_job()

    assert queue.fail_job(job, 'Session not found', retryable=False) == SyncJobStatus.FAILED
    [row] = queue.get_recent_jobs(connection_id)
    assert row.attempts == 1


def test_failed_job_does_not_block_requeue(queue, booked):
    _, connection_id, session_id = booked
    first = queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    queue.fail_job(queue.claim_next_job(), 'gone', retryable=False)

    second = queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    assert second is not None
    assert second != first


def test_cleanup_failed_jobs_for_deleted_sessions(queue, booked, db_manager):
    _, connection_id, session_id = booked
    orphan = queue.queue_sync(connection_id, SyncOperation.UPDATE, uuid4())
    live = queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    fresh_orphan = queue.queue_sync(connection_id, SyncOperation.DELETE, uuid4())

    with db_manager.get_session() as session:
        for job_id in (orphan, live):
            session.get(SyncJobDB, job_id).attempts = 2
        session.commit()

    assert queue.cleanup_failed_jobs() == 1
    # Already cleaned rows are not counted again
    assert queue.cleanup_failed_jobs() == 0

    with db_manager.get_session() as session:
        orphan_row = session.get(SyncJobDB, orphan)
        assert orphan_row.status == 'failed'
        assert 'no longer exists' in orphan_row.error_message
        assert session.get(SyncJobDB, live).status == 'pending'
        assert session.get(SyncJobDB, fresh_orphan).status == 'pending'


def test_count_by_status(queue, booked):
    _, connection_id, session_id = booked
    queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    queue.queue_sync(connection_id, SyncOperation.FULL_SYNC)
    queue.complete_job(queue.claim_next_job())

    counts = queue.count_by_status()
    assert counts == {'pending': 1, 'processing': 0, 'completed': 1, 'failed': 0}


def test_full_sync_reused_while_active(queue, booked, db_manager):
    _, connection_id, _ = booked
    first = queue.queue_sync(connection_id, SyncOperation.FULL_SYNC, priority=URGENT_PRIORITY)
    second = queue.queue_sync(connection_id, SyncOperation.FULL_SYNC, priority=URGENT_PRIORITY)

    assert first is not None
    assert first == second
    assert len(_rows(db_manager)) == 1

    queue.complete_job(queue.claim_next_job())
    third = queue.queue_sync(connection_id, SyncOperation.FULL_SYNC)
    assert third not in (None, first)


def test_full_sync_is_per_connection(queue, booked, factory, db_manager):
    coach_id, connection_id, _ = booked
    other_id = factory.connection(coach_id)

    assert queue.queue_sync(connection_id, SyncOperation.FULL_SYNC) != queue.queue_sync(
        other_id, SyncOperation.FULL_SYNC
    )
    assert len(_rows(db_manager)) == 2


def test_stale_processing_job_is_released(queue, booked, db_manager):
    _, connection_id, session_id = booked
    job_id = queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    t0 = datetime.now(pytz.UTC)
    assert queue.claim_next_job(now=t0).id == job_id

    # Still owned by a live worker: dedupe points at it, nothing released
    assert queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id) == job_id
    assert queue.release_stale_jobs(now=t0 + timedelta(minutes=10)) == 0
    assert queue.claim_next_job(now=t0 + timedelta(minutes=10)) is None

    t1 = t0 + timedelta(minutes=31)
    assert queue.release_stale_jobs(now=t1) == 1
    assert queue.release_stale_jobs(now=t1) == 0

    job = queue.claim_next_job(now=t1)
    assert job.id == job_id
    assert job.attempts == 0
    assert len(_rows(db_manager)) == 1


def test_stale_threshold_follows_settings(tmp_path, booked, db_manager):
    _, connection_id, session_id = booked
    queue = SyncQueue(make_settings(tmp_path, sync_stale_job_minutes=5), db_manager)
    queue.queue_sync(connection_id, SyncOperation.UPDATE, session_id)
    t0 = datetime.now(pytz.UTC)
    queue.claim_next_job(now=t0)

    assert queue.release_stale_jobs(now=t0 + timedelta(minutes=6)) == 1
