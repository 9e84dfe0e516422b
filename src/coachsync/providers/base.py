"""Base calendar adapter interface shared by Google and Outlook."""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
import logging

import pytz

from ..config import Settings
from ..database import DatabaseManager
from ..models import (
    CalendarConnection, CalendarEvent, CalendarInfo, CalendarProvider,
    EventTemplate, SessionDetails, TokenSet
)
from ..timezones import normalize_timezone

logger = logging.getLogger(__name__)

REFRESH_FAILED_MESSAGE = 'Token refresh failed. Please reconnect your calendar.'

# Refresh slightly before the provider's expiry
TOKEN_EXPIRY_MARGIN = timedelta(minutes=1)


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class OAuthExchangeError(AuthenticationError):
    """The provider rejected an authorization code."""
    pass


class ProviderNotConfiguredError(CalendarServiceError):
    """OAuth client credentials for the provider are missing."""
    pass


class RateLimitError(CalendarServiceError):
    """Rate limiting errors."""
    pass


class EventNotFoundError(CalendarServiceError):
    """Event not found errors."""
    pass


def build_oauth_state(owner_id: UUID, provider: CalendarProvider) -> str:
    return json.dumps({'coachId': str(owner_id), 'provider': provider.value})


def parse_oauth_state(state: str) -> Tuple[UUID, CalendarProvider]:
    """Decode the opaque state round-tripped through the consent screen.

    Raises:
        ValueError: If the state is malformed
    """
    try:
        data = json.loads(state)
        return UUID(data['coachId']), CalendarProvider(data['provider'])
    except (TypeError, KeyError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid OAuth state: {e}")


def convert_session_to_event(
    session: SessionDetails,
    template: EventTemplate,
    include_client_details: bool,
    time_zone: Optional[str]
) -> CalendarEvent:
    """Render a session as a provider-neutral calendar event.

    Args:
        session: Session joined with client and coach details
        template: Title/description template of the connection
        include_client_details: Whether the client's name and email may be shared
        time_zone: Timezone of the target calendar

    Returns:
        Calendar event in the target calendar's timezone
    """
    title = template.title
    client_name = session.client.full_name if session.client else ''
    if include_client_details and client_name:
        title = f"{title} - {client_name}"

    description = template.description
    if session.notes:
        description += f"\n\nSession Notes: {session.notes}"

    attendees = []
    if include_client_details and session.client and session.client.email:
        attendees.append(session.client.email)

    return CalendarEvent(
        title=title,
        description=description,
        start=session.starts_at,
        end=session.end_time,
        time_zone=normalize_timezone(time_zone),
        location=session.meeting_url or 'Virtual Session',
        attendees=attendees,
    )


class BaseCalendarAdapter(ABC):
    """Abstract base class for provider calendar adapters.

    Subclasses implement the raw provider calls against an access token; this
    class owns credential loading, refresh and deactivation so that every
    provider reacts to broken credentials the same way.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager, provider: CalendarProvider):
        """Initialize calendar adapter.

        Args:
            settings: Application settings
            db_manager: Database manager used to load and store credentials
            provider: Provider handled by this adapter
        """
        self.settings = settings
        self.db_manager = db_manager
        self.provider = provider
        self.logger = logger.getChild(provider.value)

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Whether OAuth client credentials are configured."""
        pass

    @abstractmethod
    def get_auth_url(self, owner_id: UUID) -> str:
        """Build the OAuth consent URL.

        Args:
            owner_id: Coach the connection will belong to

        Returns:
            URL to redirect the coach to

        Raises:
            ProviderNotConfiguredError: If client credentials are missing
        """
        pass

    @abstractmethod
    async def exchange_code_for_tokens(self, code: str) -> TokenSet:
        """Exchange an authorization code for tokens.

        Raises:
            OAuthExchangeError: If the provider rejects the code
        """
        pass

    @abstractmethod
    async def _refresh_tokens(self, refresh_token: str) -> TokenSet:
        """Obtain a new access token from a refresh token."""
        pass

    @abstractmethod
    async def _fetch_primary_calendar(self, access_token: str) -> CalendarInfo:
        pass

    @abstractmethod
    async def _insert_event(self, access_token: str, calendar_id: str, event: CalendarEvent) -> str:
        """Create an event and return its provider ID."""
        pass

    @abstractmethod
    async def _patch_event(self, access_token: str, calendar_id: str, event_id: str, event: CalendarEvent) -> None:
        pass

    @abstractmethod
    async def _remove_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        """Delete an event; a missing event is not an error."""
        pass

    @abstractmethod
    async def _list_events(
        self,
        access_token: str,
        calendar_id: str,
        start: datetime,
        end: datetime
    ) -> List[CalendarEvent]:
        pass

    async def close(self) -> None:
        """Clean up resources."""
        pass

    def _load_connection(self, connection_id: UUID) -> Optional[CalendarConnection]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, connection_id)
            if row is None or row.provider != self.provider.value:
                return None
            return CalendarConnection.model_validate(row)

    def _deactivate(self, connection_id: UUID, reason: str = REFRESH_FAILED_MESSAGE) -> None:
        with self.db_manager.get_session() as session:
            self.db_manager.deactivate_connection(session, connection_id, reason)
        self.logger.warning(f"Deactivated calendar connection {connection_id}: {reason}")

    async def get_valid_access_token(self, connection_id: UUID) -> Optional[str]:
        """Return a usable access token, refreshing it when expired.

        A refresh failure deactivates the connection; callers get ``None``
        and must treat the connection as unusable.
        """
        connection = self._load_connection(connection_id)
        if connection is None or not connection.is_active:
            self.logger.error(f"Calendar connection {connection_id} not found or inactive")
            return None

        now = datetime.now(pytz.UTC)
        if connection.access_token and (
            connection.token_expires_at is None
            or connection.token_expires_at - TOKEN_EXPIRY_MARGIN > now
        ):
            return connection.access_token

        if not connection.refresh_token:
            self._deactivate(connection_id)
            return None

        try:
            tokens = await self._refresh_tokens(connection.refresh_token)
        except Exception as e:
            self.logger.error(f"Failed to refresh access token for {connection_id}: {e}")
            self._deactivate(connection_id)
            return None

        with self.db_manager.get_session() as session:
            self.db_manager.store_tokens(
                session, connection_id, tokens.access_token, tokens.expires_at, tokens.refresh_token
            )
        self.logger.info(f"Access token refreshed for connection {connection_id}")
        return tokens.access_token

    async def get_primary_calendar(
        self,
        connection_id: Optional[UUID],
        credentials: Optional[TokenSet] = None
    ) -> Optional[CalendarInfo]:
        """Get the account's primary calendar.

        Args:
            connection_id: Stored connection, used when no credentials are given
            credentials: Fresh tokens from the OAuth callback

        Returns:
            Calendar information, or None if the calendar cannot be read
        """
        if credentials is not None:
            access_token = credentials.access_token
        else:
            access_token = await self.get_valid_access_token(connection_id)
            if access_token is None:
                return None

        try:
            return await self._fetch_primary_calendar(access_token)
        except Exception as e:
            self.logger.error(f"Error getting primary calendar: {e}")
            return None

    async def create_event(self, connection_id: UUID, calendar_id: str, event: CalendarEvent) -> Optional[str]:
        """Create an event.

        Returns:
            External event ID, or None if the connection is unusable

        Raises:
            CalendarServiceError: If the provider call fails
        """
        access_token = await self.get_valid_access_token(connection_id)
        if access_token is None:
            return None
        event_id = await self._insert_event(access_token, calendar_id, event)
        self.logger.info(f"Created {self.provider.value} event {event_id}")
        return event_id

    async def update_event(
        self,
        connection_id: UUID,
        calendar_id: str,
        event_id: str,
        event: CalendarEvent
    ) -> bool:
        """Update an event.

        Returns:
            False if the connection is unusable

        Raises:
            EventNotFoundError: If the event no longer exists
            CalendarServiceError: If the provider call fails
        """
        access_token = await self.get_valid_access_token(connection_id)
        if access_token is None:
            return False
        await self._patch_event(access_token, calendar_id, event_id, event)
        self.logger.info(f"Updated {self.provider.value} event {event_id}")
        return True

    async def delete_event(self, connection_id: UUID, calendar_id: str, event_id: str) -> bool:
        """Delete an event; an event that is already gone counts as deleted.

        Returns:
            False if the connection is unusable

        Raises:
            CalendarServiceError: If the provider call fails
        """
        access_token = await self.get_valid_access_token(connection_id)
        if access_token is None:
            return False
        await self._remove_event(access_token, calendar_id, event_id)
        self.logger.info(f"Deleted {self.provider.value} event {event_id}")
        return True

    async def get_events(
        self,
        connection_id: UUID,
        calendar_id: str,
        start: datetime,
        end: datetime
    ) -> List[CalendarEvent]:
        """List events in a window, for diagnostics. Empty on failure."""
        access_token = await self.get_valid_access_token(connection_id)
        if access_token is None:
            return []
        try:
            return await self._list_events(access_token, calendar_id, start, end)
        except Exception as e:
            self.logger.error(f"Error getting {self.provider.value} events: {e}")
            return []

    async def test_connection(self, connection_id: UUID) -> Dict[str, Any]:
        """Test connection to the calendar service.

        Returns:
            Dictionary with connection test results
        """
        try:
            calendar = await self.get_primary_calendar(connection_id)
            if calendar is None:
                return {'success': False, 'error': 'Unable to access calendar'}
            return {'success': True, 'calendar_name': calendar.name}
        except Exception as e:
            return {
                'success': False,
                'error': str(e),
                'error_type': type(e).__name__
            }
