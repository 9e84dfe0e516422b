"""Persistent calendar sync job queue with priority, dedupe and backoff."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

import pytz
from sqlalchemy import func

from .config import Settings
from .database import DatabaseManager, SyncJobDB, SessionDB, utc_now
from .models import SyncJob, SyncJobStatus, SyncOperation

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
URGENT_PRIORITY = 1

ACTIVE_JOB_STATUSES = (SyncJobStatus.PENDING.value, SyncJobStatus.PROCESSING.value)
SESSION_OPERATIONS = (SyncOperation.CREATE, SyncOperation.UPDATE, SyncOperation.DELETE)

# Candidates inspected per claim attempt when other workers race for the head
CLAIM_BATCH_SIZE = 5


def backoff(attempt: int) -> timedelta:
    """Delay before retrying a job that has failed ``attempt`` times."""
    return timedelta(minutes=2 ** attempt)


class SyncQueue:
    """Calendar sync queue backed by the ``calendar_sync_queue`` table."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        self.settings = settings
        self.db_manager = db_manager
        self.logger = logger.getChild('sync_queue')

    def queue_sync(
        self,
        connection_id: UUID,
        operation: SyncOperation,
        session_id: Optional[UUID] = None,
        priority: int = DEFAULT_PRIORITY
    ) -> Optional[UUID]:
        """Enqueue a sync job unless an equivalent one is already active.

        Args:
            connection_id: Calendar connection to sync against
            operation: Operation to perform
            session_id: Session the job concerns (required except for full_sync)
            priority: Lower numbers run first

        Returns:
            ID of the new or already-queued job, or None if nothing was queued

        Raises:
            ValueError: If a session operation is missing its session ID
        """
        operation = SyncOperation(operation)
        if operation in SESSION_OPERATIONS and session_id is None:
            raise ValueError(f"{operation.value} jobs require a session_id")

        try:
            with self.db_manager.get_session() as session:
                # session_id None compiles to IS NULL, so full_sync dedupes per connection
                existing = (
                    session.query(SyncJobDB)
                    .filter(
                        SyncJobDB.connection_id == connection_id,
                        SyncJobDB.session_id == session_id,
                        SyncJobDB.operation == operation.value,
                        SyncJobDB.status.in_(ACTIVE_JOB_STATUSES)
                    )
                    .first()
                )
                if existing is not None:
                    self.logger.debug(
                        f"{operation.value} job already queued for connection {connection_id} "
                        f"(session {session_id}), reusing {existing.id}"
                    )
                    return existing.id

                if operation == SyncOperation.CREATE:
                    mapping = self.db_manager.get_event_mapping(session, session_id, connection_id)
                    if mapping is not None:
                        self.logger.info(
                            f"Event mapping already exists for session {session_id} "
                            f"on connection {connection_id}, skipping create"
                        )
                        return None

                now = utc_now()
                job = SyncJobDB(
                    connection_id=connection_id,
                    session_id=session_id,
                    operation=operation.value,
                    priority=priority,
                    status=SyncJobStatus.PENDING.value,
                    attempts=0,
                    max_attempts=self.settings.sync_max_attempts,
                    scheduled_for=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(job)
                session.commit()
                self.logger.info(f"Queued {operation.value} sync job {job.id} (priority {priority})")
                return job.id
        except Exception as e:
            self.logger.error(f"Error queueing sync job: {e}")
            return None

    def queue_session_sync(self, coach_id: UUID, session_id: UUID, operation: SyncOperation) -> List[UUID]:
        """Enqueue a session operation on every active connection of the coach."""
        with self.db_manager.get_session() as session:
            connection_ids = [
                c.id for c in self.db_manager.get_connections_for_coach(session, coach_id, active_only=True)
            ]

        job_ids = []
        for connection_id in connection_ids:
            job_id = self.queue_sync(connection_id, operation, session_id)
            if job_id is not None:
                job_ids.append(job_id)
        return job_ids

    def claim_next_job(self, now: Optional[datetime] = None) -> Optional[SyncJob]:
        """Atomically claim the most urgent due job.

        The claim is a conditional update on ``status = 'pending'``; a job
        taken by another worker between select and update is skipped.
        """
        now = now or datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            candidates = (
                session.query(SyncJobDB.id)
                .filter(
                    SyncJobDB.status == SyncJobStatus.PENDING.value,
                    SyncJobDB.scheduled_for <= now
                )
                .order_by(
                    SyncJobDB.priority.asc(),
                    SyncJobDB.scheduled_for.asc(),
                    SyncJobDB.created_at.asc()
                )
                .limit(CLAIM_BATCH_SIZE)
                .all()
            )

            for (job_id,) in candidates:
                claimed = (
                    session.query(SyncJobDB)
                    .filter(SyncJobDB.id == job_id, SyncJobDB.status == SyncJobStatus.PENDING.value)
                    .update(
                        {
                            SyncJobDB.status: SyncJobStatus.PROCESSING.value,
                            SyncJobDB.started_at: now,
                            SyncJobDB.updated_at: now,
                        },
                        synchronize_session=False
                    )
                )
                session.commit()
                if claimed == 1:
                    return SyncJob.model_validate(session.get(SyncJobDB, job_id))
                self.logger.debug(f"Sync job {job_id} claimed by another worker")
        return None

    def complete_job(self, job: SyncJob, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            row = session.get(SyncJobDB, job.id)
            if row is None:
                return
            row.status = SyncJobStatus.COMPLETED.value
            row.completed_at = now
            row.updated_at = now
            row.error_message = None
            session.commit()

    def fail_job(
        self,
        job: SyncJob,
        error: str,
        retryable: bool = True,
        now: Optional[datetime] = None
    ) -> SyncJobStatus:
        """Record a failed attempt and reschedule or give up.

        Args:
            job: Claimed job
            error: Error message to retain on the job
            retryable: False fails the job immediately
            now: Current time

        Returns:
            The job's resulting status
        """
        now = now or datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            row = session.get(SyncJobDB, job.id)
            if row is None:
                return SyncJobStatus.FAILED

            row.attempts = (row.attempts or 0) + 1
            row.error_message = error
            row.updated_at = now

            if not retryable or row.attempts >= row.max_attempts:
                row.status = SyncJobStatus.FAILED.value
                row.completed_at = now
                self.logger.error(f"Sync job {row.id} failed permanently after {row.attempts} attempt(s): {error}")
            else:
                row.status = SyncJobStatus.PENDING.value
                row.scheduled_for = now + backoff(row.attempts)
                self.logger.warning(
                    f"Sync job {row.id} failed (attempt {row.attempts}/{row.max_attempts}), "
                    f"retrying at {row.scheduled_for.isoformat()}: {error}"
                )
            session.commit()
            return SyncJobStatus(row.status)

    def cleanup_failed_jobs(self) -> int:
        """Force-fail repeatedly failing jobs whose session no longer exists.

        Returns:
            Number of jobs marked failed
        """
        cleaned = 0
        with self.db_manager.get_session() as session:
            rows = (
                session.query(SyncJobDB)
                .filter(
                    SyncJobDB.session_id.isnot(None),
                    SyncJobDB.attempts >= 2,
                    SyncJobDB.status != SyncJobStatus.COMPLETED.value
                )
                .all()
            )
            now = utc_now()
            for row in rows:
                if session.get(SessionDB, row.session_id) is not None:
                    continue
                if row.status == SyncJobStatus.FAILED.value and row.error_message and 'no longer exists' in row.error_message:
                    continue
                row.status = SyncJobStatus.FAILED.value
                row.error_message = (
                    f"Session {row.session_id} no longer exists - "
                    f"marked as failed after {row.attempts} attempts"
                )
                row.completed_at = now
                row.updated_at = now
                cleaned += 1
            session.commit()

        if cleaned:
            self.logger.info(f"Cleaned up {cleaned} orphaned sync jobs")
        return cleaned

    def release_stale_jobs(self, now: Optional[datetime] = None) -> int:
        """Return jobs stuck in processing by a worker that died back to pending.

        The attempt counter is left alone; the interrupted run never reported
        an outcome.

        Returns:
            Number of jobs released
        """
        now = now or datetime.now(pytz.UTC)
        cutoff = now - timedelta(minutes=self.settings.sync_stale_job_minutes)
        with self.db_manager.get_session() as session:
            released = (
                session.query(SyncJobDB)
                .filter(
                    SyncJobDB.status == SyncJobStatus.PROCESSING.value,
                    SyncJobDB.started_at < cutoff
                )
                .update(
                    {
                        SyncJobDB.status: SyncJobStatus.PENDING.value,
                        SyncJobDB.scheduled_for: now,
                        SyncJobDB.started_at: None,
                        SyncJobDB.updated_at: now,
                    },
                    synchronize_session=False
                )
            )
            session.commit()

        if released:
            self.logger.warning(f"Released {released} sync job(s) abandoned in processing")
        return released

    def get_recent_jobs(self, connection_id: Optional[UUID] = None, limit: int = 10) -> List[SyncJob]:
        with self.db_manager.get_session() as session:
            rows = self.db_manager.get_recent_jobs(session, connection_id, limit)
            return [SyncJob.model_validate(row) for row in rows]

    def count_by_status(self) -> dict:
        with self.db_manager.get_session() as session:
            counts = {status.value: 0 for status in SyncJobStatus}
            rows = session.query(SyncJobDB.status, func.count(SyncJobDB.id)).group_by(SyncJobDB.status).all()
            for status, count in rows:
                counts[status] = count
            return counts
