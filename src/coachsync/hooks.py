"""Entry points called by the booking layer when a session changes."""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from .models import SyncOperation
from .reminders import ReminderScheduler
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class SessionHooks:
    """Queues calendar work and maintains reminders for session mutations.

    Every hook is fire-and-forget from the caller's point of view: errors are
    logged and never propagate into the booking request.
    """

    def __init__(self, queue: SyncQueue, reminders: ReminderScheduler):
        self.queue = queue
        self.reminders = reminders
        self.logger = logger.getChild('hooks')

    async def on_session_created(self, coach_id: UUID, session_id: UUID, now: Optional[datetime] = None) -> None:
        self._queue(coach_id, session_id, SyncOperation.CREATE)
        await self._schedule(session_id, now)

    async def on_session_updated(self, coach_id: UUID, session_id: UUID) -> None:
        self._queue(coach_id, session_id, SyncOperation.UPDATE)

    async def on_session_cancelled(self, coach_id: UUID, session_id: UUID) -> None:
        self._cancel(session_id)
        self._queue(coach_id, session_id, SyncOperation.DELETE)

    async def on_session_rescheduled(self, coach_id: UUID, session_id: UUID, now: Optional[datetime] = None) -> None:
        """Old reminders refer to the old start time; drop them and plan again."""
        self._cancel(session_id)
        self._queue(coach_id, session_id, SyncOperation.UPDATE)
        await self._schedule(session_id, now)

    def _queue(self, coach_id: UUID, session_id: UUID, operation: SyncOperation) -> None:
        try:
            job_ids = self.queue.queue_session_sync(coach_id, session_id, operation)
            self.logger.debug(f"Queued {len(job_ids)} {operation.value} job(s) for session {session_id}")
        except Exception as e:
            self.logger.error(f"Error queueing {operation.value} for session {session_id}: {e}")

    def _cancel(self, session_id: UUID) -> None:
        try:
            self.reminders.cancel_session_reminders(session_id)
        except Exception as e:
            self.logger.error(f"Error cancelling reminders for session {session_id}: {e}")

    async def _schedule(self, session_id: UUID, now: Optional[datetime]) -> None:
        try:
            await self.reminders.schedule_session_reminders(session_id, now)
        except Exception as e:
            self.logger.error(f"Error scheduling reminders for session {session_id}: {e}")
