"""Sweeps that repair drift: duplicate external events and orphaned jobs."""

import logging
from collections import OrderedDict
from typing import Dict, List, Optional
from uuid import UUID

from .database import DatabaseManager, EventMappingDB
from .models import CalendarConnection, CalendarProvider, EventMapping, MappingStatus
from .providers import BaseCalendarAdapter
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class Reconciler:
    """Collapses duplicate event mappings and fails jobs for deleted sessions."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        adapters: Dict[CalendarProvider, BaseCalendarAdapter],
        queue: SyncQueue
    ):
        self.db_manager = db_manager
        self.adapters = adapters
        self.queue = queue
        self.logger = logger.getChild('reconciliation')

    async def cleanup_duplicate_events(self, session_id: UUID) -> int:
        """Keep the oldest mapping per connection for a session, delete the rest.

        The external event is deleted before its mapping row; if the provider
        call fails the mapping stays so the next sweep retries it.

        Returns:
            Number of duplicates removed
        """
        with self.db_manager.get_session() as session:
            rows = self.db_manager.get_event_mappings_for_session(session, session_id)
            mappings = [EventMapping.model_validate(row) for row in rows]
            connections = {}
            for mapping in mappings:
                if mapping.connection_id not in connections:
                    row = self.db_manager.get_connection(session, mapping.connection_id)
                    connections[mapping.connection_id] = (
                        CalendarConnection.model_validate(row) if row is not None else None
                    )

        groups: "OrderedDict[UUID, List[EventMapping]]" = OrderedDict()
        for mapping in mappings:
            groups.setdefault(mapping.connection_id, []).append(mapping)

        removed = 0
        for connection_id, group in groups.items():
            if len(group) < 2:
                continue
            keep, duplicates = group[0], group[1:]
            self.logger.info(
                f"Session {session_id} has {len(group)} events on connection {connection_id}, "
                f"keeping {keep.external_event_id}"
            )
            connection = connections.get(connection_id)
            for duplicate in duplicates:
                if await self._delete_duplicate(duplicate, connection):
                    removed += 1
        return removed

    async def _delete_duplicate(self, duplicate: EventMapping, connection: Optional[CalendarConnection]) -> bool:
        if duplicate.sync_status == MappingStatus.SYNCED and connection is not None:
            adapter = self.adapters[CalendarProvider(connection.provider)]
            calendar_id = duplicate.external_calendar_id or connection.calendar_id or 'primary'
            try:
                deleted = await adapter.delete_event(connection.id, calendar_id, duplicate.external_event_id)
            except Exception as e:
                self.logger.error(f"Failed to delete duplicate event {duplicate.external_event_id}: {e}")
                return False
            if not deleted:
                self.logger.warning(
                    f"Connection {connection.id} unusable, keeping duplicate mapping {duplicate.id}"
                )
                return False

        with self.db_manager.get_session() as session:
            row = session.get(EventMappingDB, duplicate.id)
            if row is not None:
                session.delete(row)
                session.commit()
        self.logger.info(f"Deleted duplicate event {duplicate.external_event_id}")
        return True

    async def cleanup_all_duplicate_events(self, coach_id: Optional[UUID] = None) -> int:
        """Run the duplicate cleanup for every affected session.

        Args:
            coach_id: Restrict the sweep to one coach's connections

        Returns:
            Total number of duplicates removed
        """
        with self.db_manager.get_session() as session:
            session_ids = self.db_manager.get_duplicated_session_ids(session, coach_id)

        total = 0
        for session_id in session_ids:
            try:
                total += await self.cleanup_duplicate_events(session_id)
            except Exception as e:
                self.logger.error(f"Error cleaning duplicates for session {session_id}: {e}")

        self.logger.info(f"Duplicate cleanup removed {total} event(s) across {len(session_ids)} session(s)")
        return total

    def cleanup_failed_sync_jobs(self) -> int:
        return self.queue.cleanup_failed_jobs()
