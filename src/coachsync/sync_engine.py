"""Sync executor: runs queued calendar jobs against provider adapters."""

import logging
from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

import pytz

from .config import Settings
from .database import DatabaseManager, EventMappingDB
from .models import (
    CalendarConnection, CalendarProvider, EventMapping, EventTemplate, SessionDetails,
    SessionStatus, SyncJob, SyncOperation, SyncStatus
)
from .notifications import EmailSender, MessageSender
from .providers import BaseCalendarAdapter, EventNotFoundError, convert_session_to_event, create_adapters
from .reminders import ReminderScheduler
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """A sync job failed and may be retried."""
    pass


class NonRetryableSyncError(SyncError):
    """A sync job can never succeed; fail it immediately."""
    pass


class ConnectionUnusableError(NonRetryableSyncError):
    """The calendar connection is missing, inactive or lost its credentials."""
    pass


class SyncEngine:
    """Claims sync jobs and applies them to the coach's external calendars."""

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        adapters: Optional[Dict[CalendarProvider, BaseCalendarAdapter]] = None,
        reminder_scheduler: Optional[ReminderScheduler] = None
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Database manager (created from settings when omitted)
            adapters: Provider adapters keyed by provider
            reminder_scheduler: Scheduler notified after events are created
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.adapters = adapters or create_adapters(settings, self.db_manager)
        self.queue = SyncQueue(settings, self.db_manager)
        self.reminders = reminder_scheduler or ReminderScheduler(
            settings,
            self.db_manager,
            EmailSender(settings),
            MessageSender(self.db_manager),
        )
        self.logger = logger.getChild('sync_engine')

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        self.db_manager.init_db()
        self.logger.info("Sync engine initialized successfully")

    async def cleanup(self) -> None:
        """Clean up resources."""
        for adapter in self.adapters.values():
            await adapter.close()
        self.logger.info("Sync engine cleaned up")

    def adapter_for(self, connection: CalendarConnection) -> BaseCalendarAdapter:
        """Single dispatch point from a connection to its provider adapter."""
        return self.adapters[CalendarProvider(connection.provider)]

    async def process_next_sync_job(self, now: Optional[datetime] = None) -> bool:
        """Claim and run one job.

        Returns:
            True if a job completed, False if the queue was empty or the job failed
        """
        job = self.queue.claim_next_job(now)
        if job is None:
            return False
        return await self.run_job(job, now)

    async def process_jobs(self, max_jobs: int = 50, now: Optional[datetime] = None) -> int:
        """Run due jobs until the queue is drained or ``max_jobs`` were claimed.

        Returns:
            Number of jobs claimed
        """
        claimed = 0
        while claimed < max_jobs:
            job = self.queue.claim_next_job(now)
            if job is None:
                break
            claimed += 1
            await self.run_job(job, now)
        return claimed

    async def run_job(self, job: SyncJob, now: Optional[datetime] = None) -> bool:
        """Execute a claimed job and persist its outcome. Never raises."""
        self.logger.info(f"Processing {job.operation.value} job {job.id} (attempt {job.attempts + 1})")
        try:
            connection = self._load_connection(job.connection_id)
            await self._execute(job, connection, now)
        except NonRetryableSyncError as e:
            self.queue.fail_job(job, str(e), retryable=False, now=now)
            self._record_status(job.connection_id, SyncStatus.ERROR, str(e))
            return False
        except Exception as e:
            self.logger.error(f"Sync job {job.id} failed: {e}")
            self.queue.fail_job(job, str(e), now=now)
            self._record_status(job.connection_id, SyncStatus.ERROR, str(e))
            return False

        self.queue.complete_job(job, now=now)
        self._record_status(job.connection_id, SyncStatus.SUCCESS)
        return True

    def _record_status(self, connection_id: UUID, status: SyncStatus, error: Optional[str] = None) -> None:
        try:
            with self.db_manager.get_session() as session:
                self.db_manager.set_connection_status(session, connection_id, status, error)
        except Exception as e:
            self.logger.error(f"Could not record sync status for connection {connection_id}: {e}")

    def _load_connection(self, connection_id: UUID) -> CalendarConnection:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, connection_id)
            if row is None:
                raise ConnectionUnusableError(f"Calendar connection {connection_id} not found")
            connection = CalendarConnection.model_validate(row)
        if not connection.is_active:
            raise ConnectionUnusableError(f"Calendar connection {connection_id} is inactive")
        if not connection.is_sync_enabled:
            raise ConnectionUnusableError(f"Sync is disabled for calendar connection {connection_id}")
        return connection

    def _unusable(self, connection: CalendarConnection) -> SyncError:
        """Classify an adapter's None/False result."""
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, connection.id)
            if row is None or not row.is_active:
                reason = row.last_sync_error if row is not None else None
                return ConnectionUnusableError(
                    f"Calendar connection {connection.id} is no longer usable"
                    + (f": {reason}" if reason else "")
                )
        return SyncError(f"{connection.provider.value} calendar rejected the request")

    async def _execute(self, job: SyncJob, connection: CalendarConnection, now: Optional[datetime]) -> None:
        if job.operation == SyncOperation.FULL_SYNC:
            await self.full_sync(connection, now)
        elif job.operation == SyncOperation.CREATE:
            await self.sync_create(job.session_id, connection, now)
        elif job.operation == SyncOperation.UPDATE:
            await self.sync_update(job.session_id, connection, now)
        elif job.operation == SyncOperation.DELETE:
            await self.sync_delete(job.session_id, connection)
        else:
            raise NonRetryableSyncError(f"Unknown sync operation: {job.operation}")

    def _get_mapping(self, session_id: UUID, connection_id: UUID) -> Optional[EventMapping]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_event_mapping(session, session_id, connection_id)
            return EventMapping.model_validate(row) if row is not None else None

    def _get_session_details(self, session_id: UUID) -> SessionDetails:
        with self.db_manager.get_session() as session:
            details = self.db_manager.get_session_details(session, session_id)
        if details is None:
            raise NonRetryableSyncError(f"Session {session_id} not found")
        return details

    def _render(self, details: SessionDetails, connection: CalendarConnection):
        template = EventTemplate(
            title=connection.event_title_template or self.settings.default_event_title,
            description=connection.event_description_template or self.settings.default_event_description,
        )
        return convert_session_to_event(
            details, template, connection.include_client_details, connection.calendar_timezone
        )

    async def sync_create(self, session_id: UUID, connection: CalendarConnection, now: Optional[datetime] = None) -> None:
        """Create the external event for a session unless one is already mapped."""
        if self._get_mapping(session_id, connection.id) is not None:
            self.logger.info(f"Event already exists for session {session_id}, skipping create")
            return

        details = self._get_session_details(session_id)
        if details.status == SessionStatus.CANCELLED:
            self.logger.info(f"Session {session_id} is cancelled, not creating event")
            return
        if not connection.auto_create_events:
            self.logger.info(f"Auto-create disabled for connection {connection.id}")
            return

        event = self._render(details, connection)
        calendar_id = connection.calendar_id or 'primary'
        event_id = await self.adapter_for(connection).create_event(connection.id, calendar_id, event)
        if event_id is None:
            raise self._unusable(connection)

        with self.db_manager.get_session() as session:
            self.db_manager.create_event_mapping(session, session_id, connection.id, event_id, calendar_id, event)

        try:
            await self.reminders.schedule_session_reminders(session_id, now)
        except Exception as e:
            self.logger.error(f"Error scheduling reminders for session {session_id}: {e}")

    async def sync_update(self, session_id: UUID, connection: CalendarConnection, now: Optional[datetime] = None) -> None:
        """Push session changes; a cancelled session removes its event."""
        mapping = self._get_mapping(session_id, connection.id)
        if mapping is None:
            await self.sync_create(session_id, connection, now)
            return

        if not connection.auto_update_events:
            self.logger.info(f"Auto-update disabled for connection {connection.id}")
            return
        details = self._get_session_details(session_id)
        if details.status == SessionStatus.CANCELLED:
            await self._delete_mapped_event(mapping, connection)
            return

        event = self._render(details, connection)
        calendar_id = mapping.external_calendar_id or connection.calendar_id or 'primary'
        try:
            updated = await self.adapter_for(connection).update_event(
                connection.id, calendar_id, mapping.external_event_id, event
            )
        except EventNotFoundError:
            self.logger.warning(
                f"Event {mapping.external_event_id} vanished from the calendar, recreating it"
            )
            self._mark_deleted(mapping)
            await self.sync_create(session_id, connection, now)
            return
        if not updated:
            raise self._unusable(connection)

        with self.db_manager.get_session() as session:
            row = session.get(EventMappingDB, mapping.id)
            self.db_manager.update_event_mapping(session, row, event)

    async def sync_delete(self, session_id: UUID, connection: CalendarConnection) -> None:
        mapping = self._get_mapping(session_id, connection.id)
        if mapping is None:
            self.logger.info(f"No event mapped for session {session_id}, nothing to delete")
            return
        await self._delete_mapped_event(mapping, connection)

    async def _delete_mapped_event(self, mapping: EventMapping, connection: CalendarConnection) -> None:
        calendar_id = mapping.external_calendar_id or connection.calendar_id or 'primary'
        deleted = await self.adapter_for(connection).delete_event(
            connection.id, calendar_id, mapping.external_event_id
        )
        if not deleted:
            raise self._unusable(connection)
        self._mark_deleted(mapping)

    def _mark_deleted(self, mapping: EventMapping) -> None:
        with self.db_manager.get_session() as session:
            row = session.get(EventMappingDB, mapping.id)
            if row is not None:
                self.db_manager.mark_mapping_deleted(session, row)

    async def full_sync(self, connection: CalendarConnection, now: Optional[datetime] = None) -> int:
        """Create or update events for every upcoming session of the coach.

        Returns:
            Number of sessions synced successfully
        """
        now = now or datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            upcoming = self.db_manager.get_upcoming_sessions(session, connection.coach_id, now)

        synced = 0
        for details in upcoming:
            try:
                if self._get_mapping(details.id, connection.id) is None:
                    await self.sync_create(details.id, connection, now)
                else:
                    await self.sync_update(details.id, connection, now)
                synced += 1
            except ConnectionUnusableError:
                raise
            except Exception as e:
                self.logger.error(f"Error syncing session {details.id} during full sync: {e}")

        self.logger.info(f"Full sync completed for connection {connection.id}: {synced}/{len(upcoming)} sessions")
        return synced
