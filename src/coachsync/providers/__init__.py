"""Calendar provider adapters."""

from typing import Dict

from .base import (
    BaseCalendarAdapter, CalendarServiceError, AuthenticationError, OAuthExchangeError,
    ProviderNotConfiguredError, RateLimitError, EventNotFoundError, REFRESH_FAILED_MESSAGE,
    convert_session_to_event, parse_oauth_state
)
from .google import GoogleCalendarAdapter
from .outlook import OutlookCalendarAdapter
from ..config import Settings
from ..database import DatabaseManager
from ..models import CalendarProvider


def create_adapters(settings: Settings, db_manager: DatabaseManager) -> Dict[CalendarProvider, BaseCalendarAdapter]:
    """Build one adapter per supported provider."""
    return {
        CalendarProvider.GOOGLE: GoogleCalendarAdapter(settings, db_manager),
        CalendarProvider.OUTLOOK: OutlookCalendarAdapter(settings, db_manager),
    }


__all__ = [
    'BaseCalendarAdapter',
    'CalendarServiceError',
    'AuthenticationError',
    'OAuthExchangeError',
    'ProviderNotConfiguredError',
    'RateLimitError',
    'EventNotFoundError',
    'REFRESH_FAILED_MESSAGE',
    'GoogleCalendarAdapter',
    'OutlookCalendarAdapter',
    'convert_session_to_event',
    'create_adapters',
    'parse_oauth_state',
]
