"""Calendar connection lifecycle: OAuth linking, settings and status."""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from .config import Settings
from .database import CalendarConnectionDB, DatabaseManager, utc_now
from .models import (
    CalendarConnection, CalendarProvider, ConnectionSettingsUpdate, SyncOperation, SyncStatus
)
from .providers import BaseCalendarAdapter, CalendarServiceError, ProviderNotConfiguredError, parse_oauth_state
from .sync_queue import URGENT_PRIORITY, SyncQueue

logger = logging.getLogger(__name__)


class ConnectionNotFoundError(Exception):
    """No calendar connection with the given ID."""
    pass


class CalendarManager:
    """Links coaches to external calendars and manages those links."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        adapters: Dict[CalendarProvider, BaseCalendarAdapter],
        queue: SyncQueue
    ):
        """Initialize calendar manager.

        Args:
            settings: Application settings
            db_manager: Database manager
            adapters: Provider adapters keyed by provider
            queue: Sync queue used for initial and manual syncs
        """
        self.settings = settings
        self.db_manager = db_manager
        self.adapters = adapters
        self.queue = queue
        self.logger = logger.getChild('calendar_manager')

    @property
    def redirect_base(self) -> str:
        return f"{self.settings.frontend_url}/coaches/calendar"

    def _error_redirect(self, reason: str) -> str:
        return f"{self.redirect_base}?error={reason}"

    def get_auth_url(self, provider: CalendarProvider, coach_id: UUID) -> str:
        """Consent URL for linking a coach's calendar.

        Raises:
            ProviderNotConfiguredError: If the provider has no OAuth client
        """
        adapter = self.adapters[CalendarProvider(provider)]
        if not adapter.is_available:
            raise ProviderNotConfiguredError(
                f"{provider.value.title()} Calendar integration is not configured. "
                "Please contact your administrator."
            )
        return adapter.get_auth_url(coach_id)

    async def complete_oauth_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None
    ) -> str:
        """Finish the OAuth flow and return the frontend URL to redirect to.

        The connection is stored inactive until its primary calendar has been
        read; a connection whose calendar cannot be read is removed again.
        """
        if error:
            self.logger.error(f"OAuth error: {error}")
            return self._error_redirect('oauth_error')
        if not code or not state:
            return self._error_redirect('missing_parameters')

        try:
            coach_id, provider = parse_oauth_state(state)
        except ValueError as e:
            self.logger.error(f"Error parsing OAuth state: {e}")
            return self._error_redirect('invalid_state')

        adapter = self.adapters.get(provider)
        if adapter is None:
            return self._error_redirect('invalid_provider')

        try:
            tokens = await adapter.exchange_code_for_tokens(code)
        except CalendarServiceError as e:
            self.logger.error(f"Error exchanging {provider.value} authorization code: {e}")
            return self._error_redirect('callback_failed')

        try:
            with self.db_manager.get_session() as session:
                row = CalendarConnectionDB(
                    coach_id=coach_id,
                    provider=provider.value,
                    provider_user_id=tokens.user_email or 'unknown',
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    token_expires_at=tokens.expires_at,
                    is_active=False,
                    created_at=utc_now(),
                    updated_at=utc_now(),
                )
                session.add(row)
                session.commit()
                connection_id = row.id
        except Exception as e:
            self.logger.error(f"Error saving temporary connection: {e}")
            return self._error_redirect('save_failed')

        calendar = await adapter.get_primary_calendar(connection_id, credentials=tokens)
        if calendar is None:
            with self.db_manager.get_session() as session:
                row = self.db_manager.get_connection(session, connection_id)
                if row is not None:
                    session.delete(row)
                    session.commit()
            return self._error_redirect('calendar_access_failed')

        try:
            with self.db_manager.get_session() as session:
                row = self.db_manager.get_connection(session, connection_id)
                row.calendar_id = calendar.id
                row.calendar_name = calendar.name
                row.calendar_timezone = calendar.timezone
                row.is_active = True
                row.last_sync_status = SyncStatus.SUCCESS.value
                row.updated_at = utc_now()
                session.commit()
        except Exception as e:
            self.logger.error(f"Error activating connection {connection_id}: {e}")
            return self._error_redirect('update_failed')

        self.queue.queue_sync(connection_id, SyncOperation.FULL_SYNC, priority=URGENT_PRIORITY)
        self.logger.info(f"Successfully connected {provider.value} calendar for coach {coach_id}")
        return f"{self.redirect_base}?success=connected&provider={provider.value}"

    def _get(self, connection_id: UUID) -> CalendarConnection:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, connection_id)
            if row is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            return CalendarConnection.model_validate(row)

    def list_connections(self, coach_id: UUID) -> List[CalendarConnection]:
        with self.db_manager.get_session() as session:
            rows = self.db_manager.get_connections_for_coach(session, coach_id)
            return [CalendarConnection.model_validate(row) for row in rows]

    def update_settings(self, connection_id: UUID, update: ConnectionSettingsUpdate) -> CalendarConnection:
        """Apply the provided settings to a connection.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
        """
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, connection_id)
            if row is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            for name, value in update.model_dump(exclude_none=True).items():
                setattr(row, name, value)
            row.updated_at = utc_now()
            session.commit()
            self.logger.info(f"Updated settings for connection {connection_id}")
            return CalendarConnection.model_validate(row)

    async def test_connection(self, connection_id: UUID) -> Dict[str, Any]:
        """Check that the connection can still read its calendar."""
        connection = self._get(connection_id)
        result = await self.adapters[connection.provider].test_connection(connection_id)
        if result.get('success'):
            with self.db_manager.get_session() as session:
                self.db_manager.set_connection_status(session, connection_id, SyncStatus.SUCCESS)
        return result

    def disconnect(self, connection_id: UUID) -> None:
        """Deactivate a connection and drop its tokens; mappings and history stay."""
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, connection_id)
            if row is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            row.is_active = False
            row.is_sync_enabled = False
            row.access_token = None
            row.refresh_token = None
            row.updated_at = utc_now()
            session.commit()
        self.logger.info(f"Disconnected calendar connection {connection_id}")

    def trigger_sync(
        self,
        connection_id: UUID,
        operation: SyncOperation = SyncOperation.FULL_SYNC,
        session_id: Optional[UUID] = None
    ) -> Optional[UUID]:
        """Queue a manual sync at urgent priority.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
            ValueError: If a session operation is missing its session ID
        """
        self._get(connection_id)
        return self.queue.queue_sync(connection_id, operation, session_id, priority=URGENT_PRIORITY)

    def is_session_synced(self, connection_id: UUID, session_id: Optional[UUID]) -> bool:
        """Whether the session already has a live event on this connection."""
        if session_id is None:
            return False
        with self.db_manager.get_session() as session:
            return self.db_manager.get_event_mapping(session, session_id, connection_id) is not None

    def get_sync_status(self, connection_id: UUID) -> Dict[str, Any]:
        connection = self._get(connection_id)
        jobs = self.queue.get_recent_jobs(connection_id, limit=10)
        return {
            'syncStatus': {
                'lastSync': connection.last_sync_at.isoformat() if connection.last_sync_at else None,
                'lastStatus': connection.last_sync_status.value if connection.last_sync_status else None,
                'lastError': connection.last_sync_error,
            },
            'recentJobs': [
                job.model_dump(
                    mode='json',
                    include={'id', 'operation', 'status', 'created_at', 'started_at', 'completed_at', 'error_message'}
                )
                for job in jobs
            ],
        }
