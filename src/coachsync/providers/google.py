"""Google Calendar adapter."""

import asyncio
import os
from datetime import datetime
from typing import Any, Dict, List
from uuid import UUID

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import pytz
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseCalendarAdapter, AuthenticationError, CalendarServiceError, EventNotFoundError,
    OAuthExchangeError, ProviderNotConfiguredError, RateLimitError, build_oauth_state
)
from ..config import Settings
from ..database import DatabaseManager
from ..models import CalendarEvent, CalendarInfo, CalendarProvider, TokenSet
from ..timezones import from_wall_clock

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


def _translate_http_error(e: HttpError, action: str) -> CalendarServiceError:
    status = e.resp.status
    if status in (404, 410):
        return EventNotFoundError(f"Google event not found while trying to {action}")
    if status == 429:
        return RateLimitError(f"Google rate limit hit while trying to {action}: {e}")
    if status == 401:
        return AuthenticationError(f"Google rejected credentials while trying to {action}: {e}")
    return CalendarServiceError(f"Failed to {action} Google event: {e}")


class GoogleCalendarAdapter(BaseCalendarAdapter):
    """Google Calendar v3 adapter using per-connection OAuth tokens."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        super().__init__(settings, db_manager, CalendarProvider.GOOGLE)

    @property
    def is_available(self) -> bool:
        return self.settings.google_configured

    def _client_config(self) -> Dict[str, Any]:
        return {
            "web": {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [self.settings.google_redirect_uri],
            }
        }

    def _flow(self) -> Flow:
        if not self.is_available:
            raise ProviderNotConfiguredError(
                "Google Calendar integration not configured. "
                "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
            )
        if self.settings.google_relax_token_scope:
            # oauthlib only reads this from the environment
            os.environ.setdefault('OAUTHLIB_RELAX_TOKEN_SCOPE', '1')
        return Flow.from_client_config(
            self._client_config(),
            scopes=self.settings.google_scopes,
            redirect_uri=self.settings.google_redirect_uri,
            # consent URL and code exchange run in separate requests
            autogenerate_code_verifier=False,
        )

    def _service(self, access_token: str):
        credentials = Credentials(token=access_token)
        return build('calendar', 'v3', credentials=credentials, cache_discovery=False)

    def get_auth_url(self, owner_id: UUID) -> str:
        url, _ = self._flow().authorization_url(
            access_type='offline',
            prompt='consent',
            include_granted_scopes='true',
            state=build_oauth_state(owner_id, self.provider),
        )
        return url

    async def exchange_code_for_tokens(self, code: str) -> TokenSet:
        flow = self._flow()
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, lambda: flow.fetch_token(code=code))
        except Exception as e:
            self.logger.error(f"Error exchanging code for tokens: {e}")
            raise OAuthExchangeError(f"Failed to exchange authorization code: {e}")

        credentials = flow.credentials
        user_email = None
        try:
            oauth2 = build('oauth2', 'v2', credentials=credentials, cache_discovery=False)
            user_info = await loop.run_in_executor(None, lambda: oauth2.userinfo().get().execute())
            user_email = user_info.get('email')
        except Exception as e:
            self.logger.warning(f"Could not read Google account email: {e}")

        expires_at = credentials.expiry.replace(tzinfo=pytz.UTC) if credentials.expiry else None
        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=expires_at,
            user_email=user_email,
        )

    async def _refresh_tokens(self, refresh_token: str) -> TokenSet:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
        )
        await asyncio.get_event_loop().run_in_executor(None, lambda: credentials.refresh(Request()))
        # google-auth reports expiry as naive UTC
        expires_at = credentials.expiry.replace(tzinfo=pytz.UTC) if credentials.expiry else None
        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=expires_at,
        )

    async def _fetch_primary_calendar(self, access_token: str) -> CalendarInfo:
        service = self._service(access_token)
        calendar = await asyncio.get_event_loop().run_in_executor(
            None,
            lambda: service.calendars().get(calendarId='primary').execute()
        )
        return CalendarInfo(
            id=calendar.get('id', 'primary'),
            name=calendar.get('summary', 'Primary Calendar'),
            timezone=calendar.get('timeZone', 'UTC'),
        )

    def _to_google_body(self, event: CalendarEvent) -> Dict[str, Any]:
        body = {
            'summary': event.title,
            'description': event.description,
            'location': event.location,
            'start': {'dateTime': event.local_start, 'timeZone': event.time_zone},
            'end': {'dateTime': event.local_end, 'timeZone': event.time_zone},
        }
        if event.attendees:
            body['attendees'] = [{'email': email} for email in event.attendees]
        return body

    def _from_google_event(self, data: Dict[str, Any]) -> CalendarEvent:
        start = data.get('start', {})
        end = data.get('end', {})
        time_zone = start.get('timeZone') or 'UTC'
        return CalendarEvent(
            id=data.get('id'),
            title=data.get('summary', ''),
            description=data.get('description', ''),
            start=from_wall_clock(start.get('dateTime') or start['date'], time_zone),
            end=from_wall_clock(end.get('dateTime') or end['date'], time_zone),
            time_zone=time_zone,
            location=data.get('location'),
            attendees=[a.get('email', '') for a in data.get('attendees', [])],
        )

    async def _insert_event(self, access_token: str, calendar_id: str, event: CalendarEvent) -> str:
        service = self._service(access_token)
        body = self._to_google_body(event)
        try:
            created = await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: service.events().insert(calendarId=calendar_id, body=body).execute()
            )
        except HttpError as e:
            raise _translate_http_error(e, 'create')
        return created['id']

    async def _patch_event(self, access_token: str, calendar_id: str, event_id: str, event: CalendarEvent) -> None:
        service = self._service(access_token)
        body = self._to_google_body(event)
        try:
            await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: service.events().patch(calendarId=calendar_id, eventId=event_id, body=body).execute()
            )
        except HttpError as e:
            raise _translate_http_error(e, 'update')

    async def _remove_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        service = self._service(access_token)
        try:
            await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: service.events().delete(calendarId=calendar_id, eventId=event_id).execute()
            )
        except HttpError as e:
            # Already deleted upstream
            if e.resp.status in (404, 410):
                self.logger.info(f"Google event {event_id} already deleted")
                return
            raise _translate_http_error(e, 'delete')

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RateLimitError)
    )
    async def _list_events(
        self,
        access_token: str,
        calendar_id: str,
        start: datetime,
        end: datetime
    ) -> List[CalendarEvent]:
        service = self._service(access_token)
        events = []
        page_token = None
        while True:
            params = {
                'calendarId': calendar_id,
                'timeMin': start.isoformat(),
                'timeMax': end.isoformat(),
                'singleEvents': True,
                'orderBy': 'startTime',
                'maxResults': 250,
            }
            if page_token:
                params['pageToken'] = page_token
            try:
                result = await asyncio.get_event_loop().run_in_executor(
                    None,
                    lambda: service.events().list(**params).execute()
                )
            except HttpError as e:
                raise _translate_http_error(e, 'list')

            for item in result.get('items', []):
                if item.get('status') == 'cancelled':
                    continue
                events.append(self._from_google_event(item))

            page_token = result.get('nextPageToken')
            if not page_token:
                return events
