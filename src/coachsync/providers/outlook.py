"""Microsoft Outlook calendar adapter (Microsoft Graph over httpx)."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
import pytz
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseCalendarAdapter, AuthenticationError, CalendarServiceError, EventNotFoundError,
    OAuthExchangeError, ProviderNotConfiguredError, RateLimitError, build_oauth_state
)
from ..config import Settings
from ..database import DatabaseManager
from ..models import CalendarEvent, CalendarInfo, CalendarProvider, TokenSet
from ..timezones import from_wall_clock, normalize_timezone

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"


class OutlookCalendarAdapter(BaseCalendarAdapter):
    """Outlook calendar adapter using the Microsoft identity platform v2 endpoints."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """Initialize Outlook adapter.

        Args:
            settings: Application settings
            db_manager: Database manager
            transport: Optional httpx transport (used to stub Graph in tests)
        """
        super().__init__(settings, db_manager, CalendarProvider.OUTLOOK)
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def is_available(self) -> bool:
        return self.settings.outlook_configured

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.settings.microsoft_tenant}/oauth2/v2.0"

    @property
    def client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.request_timeout_seconds,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Clean up resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _require_configured(self) -> None:
        if not self.is_available:
            raise ProviderNotConfiguredError(
                "Microsoft Outlook integration not configured. "
                "Set MICROSOFT_CLIENT_ID and MICROSOFT_CLIENT_SECRET."
            )

    def get_auth_url(self, owner_id: UUID) -> str:
        self._require_configured()
        params = {
            'client_id': self.settings.microsoft_client_id,
            'response_type': 'code',
            'redirect_uri': self.settings.microsoft_redirect_uri,
            'response_mode': 'query',
            'scope': ' '.join(self.settings.microsoft_scopes),
            'state': build_oauth_state(owner_id, self.provider),
            'prompt': 'consent',
        }
        return str(httpx.URL(f"{self.authority}/authorize", params=params))

    async def _token_request(self, data: Dict[str, str]) -> TokenSet:
        self._require_configured()
        form = {
            'client_id': self.settings.microsoft_client_id,
            'client_secret': self.settings.microsoft_client_secret,
            'scope': ' '.join(self.settings.microsoft_scopes),
            **data,
        }
        response = await self.client.post(f"{self.authority}/token", data=form)
        response.raise_for_status()
        payload = response.json()
        if not payload.get('access_token'):
            raise AuthenticationError("No access token received")
        expires_at = None
        if payload.get('expires_in'):
            expires_at = datetime.now(pytz.UTC) + timedelta(seconds=int(payload['expires_in']))
        return TokenSet(
            access_token=payload['access_token'],
            refresh_token=payload.get('refresh_token'),
            expires_at=expires_at,
        )

    async def exchange_code_for_tokens(self, code: str) -> TokenSet:
        try:
            tokens = await self._token_request({
                'grant_type': 'authorization_code',
                'code': code,
                'redirect_uri': self.settings.microsoft_redirect_uri,
            })
        except (httpx.HTTPError, AuthenticationError) as e:
            self.logger.error(f"Error exchanging code for tokens: {e}")
            raise OAuthExchangeError(f"Failed to exchange authorization code: {e}")

        try:
            me = await self._graph('GET', '/me', tokens.access_token)
            tokens.user_email = me.get('mail') or me.get('userPrincipalName')
        except CalendarServiceError as e:
            self.logger.warning(f"Could not read Microsoft account email: {e}")
        return tokens

    async def _refresh_tokens(self, refresh_token: str) -> TokenSet:
        return await self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })

    async def _graph(
        self,
        method: str,
        path: str,
        access_token: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        request_headers = {
            'Authorization': f"Bearer {access_token}",
            'Content-Type': 'application/json',
        }
        if headers:
            request_headers.update(headers)
        url = path if path.startswith('http') else f"{GRAPH_BASE_URL}{path}"
        try:
            response = await self.client.request(method, url, json=json, params=params, headers=request_headers)
        except httpx.HTTPError as e:
            raise CalendarServiceError(f"Microsoft Graph request failed: {e}")

        if response.status_code == 404:
            raise EventNotFoundError(f"Microsoft Graph resource not found: {path}")
        if response.status_code == 429:
            raise RateLimitError(f"Microsoft Graph rate limit hit: {path}")
        if response.status_code == 401:
            raise AuthenticationError(f"Microsoft Graph rejected credentials: {path}")
        if response.status_code >= 400:
            raise CalendarServiceError(
                f"Microsoft Graph error {response.status_code} on {method} {path}: {response.text}"
            )
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def _fetch_primary_calendar(self, access_token: str) -> CalendarInfo:
        calendar = await self._graph('GET', '/me/calendar', access_token)
        time_zone = 'UTC'
        try:
            settings = await self._graph('GET', '/me/mailboxSettings/timeZone', access_token)
            time_zone = normalize_timezone(settings.get('value'))
        except CalendarServiceError as e:
            self.logger.warning(f"Could not read mailbox timezone: {e}")
        return CalendarInfo(
            id=calendar.get('id') or 'primary',
            name=calendar.get('name') or 'Calendar',
            timezone=time_zone,
        )

    def _to_graph_body(self, event: CalendarEvent) -> Dict[str, Any]:
        body = {
            'subject': event.title,
            'body': {'contentType': 'text', 'content': event.description},
            'start': {'dateTime': event.local_start, 'timeZone': event.time_zone},
            'end': {'dateTime': event.local_end, 'timeZone': event.time_zone},
        }
        if event.location:
            body['location'] = {'displayName': event.location}
        if event.attendees:
            body['attendees'] = [
                {'emailAddress': {'address': email}, 'type': 'required'}
                for email in event.attendees
            ]
        return body

    def _from_graph_event(self, data: Dict[str, Any]) -> CalendarEvent:
        start = data.get('start', {})
        end = data.get('end', {})
        time_zone = normalize_timezone(start.get('timeZone'))
        return CalendarEvent(
            id=data.get('id'),
            title=data.get('subject', ''),
            description=(data.get('body') or {}).get('content', ''),
            start=from_wall_clock(start['dateTime'], time_zone),
            end=from_wall_clock(end['dateTime'], time_zone),
            time_zone=time_zone,
            location=(data.get('location') or {}).get('displayName'),
            attendees=[
                a.get('emailAddress', {}).get('address', '')
                for a in data.get('attendees', [])
            ],
        )

    def _events_path(self, calendar_id: str) -> str:
        if not calendar_id or calendar_id == 'primary':
            return '/me/events'
        return f"/me/calendars/{calendar_id}/events"

    async def _insert_event(self, access_token: str, calendar_id: str, event: CalendarEvent) -> str:
        created = await self._graph('POST', self._events_path(calendar_id), access_token, json=self._to_graph_body(event))
        return created['id']

    async def _patch_event(self, access_token: str, calendar_id: str, event_id: str, event: CalendarEvent) -> None:
        await self._graph('PATCH', f"/me/events/{event_id}", access_token, json=self._to_graph_body(event))

    async def _remove_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        try:
            await self._graph('DELETE', f"/me/events/{event_id}", access_token)
        except EventNotFoundError:
            self.logger.info(f"Outlook event {event_id} already deleted")

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
        if not calendar_id or calendar_id == 'primary':
            path = '/me/calendarView'
        else:
            path = f"/me/calendars/{calendar_id}/calendarView"
        params = {
            'startDateTime': start.astimezone(pytz.UTC).isoformat(),
            'endDateTime': end.astimezone(pytz.UTC).isoformat(),
            '$orderby': 'start/dateTime',
            '$top': 100,
        }
        headers = {'Prefer': 'outlook.timezone="UTC"'}

        events = []
        while path:
            page = await self._graph('GET', path, access_token, params=params, headers=headers)
            events.extend(self._from_graph_event(item) for item in page.get('value', []))
            # nextLink already carries the query string
            path = page.get('@odata.nextLink')
            params = None
        return events
