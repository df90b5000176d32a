"""Google Calendar service implementation with async support."""

from datetime import datetime, time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from dateutil.parser import isoparse
from google.oauth2.credentials import Credentials as GoogleCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httpx
import pytz
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import BaseCalendarService
from ..config import Settings
from ..exceptions import AuthError, CursorInvalidatedError, RateLimitError, RemoteApiError
from ..models import Event, EventsPage, EventsQuery, RemoteEvent, TokenGrant, WebhookRegistration

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
USERINFO_EMAIL_SCOPE = "https://www.googleapis.com/auth/userinfo.email"

RATE_LIMIT_REASONS = ('rateLimitExceeded', 'userRateLimitExceeded', 'quotaExceeded')


class GoogleCalendarService(BaseCalendarService):
    """Google Calendar service with async support."""

    name = "google"

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """Initialize Google Calendar service.

        Args:
            settings: Application settings
            http_client: Optional client for the OAuth endpoints (tests inject a mock transport)
        """
        super().__init__(settings)
        self.calendar_id = settings.google_calendar_id
        self._http_client = http_client

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.request_timeout_seconds)
        return self._http_client

    def _calendar(self, access_token: str):
        """Calendar API client bound to one user's access token."""
        credentials = GoogleCredentials(token=access_token)
        return build('calendar', 'v3', credentials=credentials, cache_discovery=False)

    # Authorization

    def build_authorize_url(self, state: str) -> str:
        scopes = list(self.settings.google_scopes)
        if USERINFO_EMAIL_SCOPE not in scopes:
            scopes.append(USERINFO_EMAIL_SCOPE)
        params = {
            'client_id': self.settings.google_client_id,
            'redirect_uri': self.settings.oauth_redirect_uri,
            'response_type': 'code',
            'scope': ' '.join(scopes),
            'access_type': 'offline',
            'prompt': 'consent',
            'include_granted_scopes': 'true',
            'state': state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, str], action: str) -> TokenGrant:
        payload = {
            'client_id': self.settings.google_client_id,
            'client_secret': self.settings.google_client_secret,
            **data,
        }
        try:
            response = await self.http.post(GOOGLE_TOKEN_URL, data=payload)
        except httpx.HTTPError as e:
            raise AuthError(f"Google token {action} failed: {e}")

        if response.status_code >= 400:
            try:
                error = response.json().get('error', response.text)
            except ValueError:
                error = response.text
            raise AuthError(f"Google token {action} rejected ({response.status_code}): {error}")

        try:
            body = response.json()
        except ValueError:
            raise AuthError(f"Google token {action} returned a non-JSON body")
        if not isinstance(body, dict) or not body.get('access_token'):
            raise AuthError(f"Google token {action} response has no access_token")

        return TokenGrant(
            access_token=body['access_token'],
            expires_in=body.get('expires_in', 3600),
            refresh_token=body.get('refresh_token'),
            scope=body.get('scope'),
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        grant = await self._token_request(
            {
                'code': code,
                'grant_type': 'authorization_code',
                'redirect_uri': self.settings.oauth_redirect_uri,
            },
            'exchange',
        )
        grant.email = await self._fetch_email(grant.access_token)
        return grant

    async def _fetch_email(self, access_token: str) -> Optional[str]:
        try:
            response = await self.http.get(
                GOOGLE_USERINFO_URL,
                headers={'Authorization': f'Bearer {access_token}'},
            )
            response.raise_for_status()
            return response.json().get('email')
        except httpx.HTTPError as e:
            self.logger.warning(f"Could not fetch Google account email: {e}")
            return None

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        return await self._token_request(
            {'refresh_token': refresh_token, 'grant_type': 'refresh_token'},
            'refresh',
        )

    async def revoke_token(self, token: str) -> None:
        try:
            response = await self.http.post(GOOGLE_REVOKE_URL, params={'token': token})
        except httpx.HTTPError as e:
            raise RemoteApiError(f"Google token revocation failed: {e}")
        if response.status_code >= 400:
            raise RemoteApiError(
                f"Google token revocation rejected: {response.text}",
                response.status_code,
            )

    # Error mapping

    def _translate_error(self, e: HttpError, context: str, cursor_query: bool = False) -> Exception:
        status = e.resp.status
        content = e.content.decode('utf-8', 'replace') if isinstance(e.content, bytes) else str(e.content)

        if status == 410 and cursor_query:
            self.logger.warning("Google sync token expired/invalid (410)")
            return CursorInvalidatedError()
        if status == 429 or status >= 500:
            self.logger.warning(f"Google API {status} during {context}, retrying...")
            return RateLimitError(f"{context}: rate limited or unavailable ({status})", status)
        if status == 403 and any(reason in content for reason in RATE_LIMIT_REASONS):
            self.logger.warning(f"Google API quota exceeded during {context}, retrying...")
            return RateLimitError(f"{context}: quota exceeded", status)
        if status == 401:
            return AuthError(f"{context}: access token rejected")
        return RemoteApiError(f"{context}: {e}", status)

    # Events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    async def list_events_page(self, access_token: str, query: EventsQuery) -> EventsPage:
        params: Dict[str, Any] = {
            'calendarId': self.calendar_id,
            'maxResults': query.max_results,
        }
        if query.sync_token:
            # Sync tokens return every change regardless of time
            params['syncToken'] = query.sync_token
        else:
            if query.time_min:
                params['timeMin'] = query.time_min.isoformat()
            if query.time_max:
                params['timeMax'] = query.time_max.isoformat()
            if query.single_events:
                params['singleEvents'] = True
                params['orderBy'] = 'startTime'
        if query.show_deleted:
            params['showDeleted'] = True
        if query.page_token:
            params['pageToken'] = query.page_token

        try:
            result = await self._run_blocking(
                lambda: self._calendar(access_token).events().list(**params).execute()
            )
        except HttpError as e:
            raise self._translate_error(e, "events.list", cursor_query=bool(query.sync_token))

        items = []
        for event_data in result.get('items', []):
            try:
                items.append(self._format_google_event(event_data))
            except (KeyError, ValueError) as e:
                self.logger.warning(f"Failed to format Google event {event_data.get('id')}: {e}")

        return EventsPage(
            items=items,
            next_page_token=result.get('nextPageToken'),
            next_sync_token=result.get('nextSyncToken'),
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    async def list_instances(
        self,
        access_token: str,
        event_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> List[RemoteEvent]:
        instances: List[RemoteEvent] = []
        page_token = None
        while True:
            params = {
                'calendarId': self.calendar_id,
                'eventId': event_id,
                'timeMin': time_min.isoformat(),
                'timeMax': time_max.isoformat(),
                'maxResults': self.settings.sync_config.instances_max_results,
            }
            if page_token:
                params['pageToken'] = page_token
            try:
                result = await self._run_blocking(
                    lambda: self._calendar(access_token).events().instances(**params).execute()
                )
            except HttpError as e:
                raise self._translate_error(e, f"events.instances({event_id})")

            instances.extend(self._format_google_event(item) for item in result.get('items', []))
            page_token = result.get('nextPageToken')
            if not page_token:
                return instances

    async def insert_event(self, access_token: str, event: Event) -> RemoteEvent:
        body = self._convert_to_google_format(event)
        try:
            created = await self._run_blocking(
                lambda: self._calendar(access_token).events().insert(
                    calendarId=self.calendar_id,
                    body=body,
                ).execute()
            )
        except HttpError as e:
            raise self._translate_error(e, "events.insert")
        return self._format_google_event(created)

    async def update_event(self, access_token: str, external_id: str, event: Event) -> RemoteEvent:
        body = self._convert_to_google_format(event)
        try:
            updated = await self._run_blocking(
                lambda: self._calendar(access_token).events().update(
                    calendarId=self.calendar_id,
                    eventId=external_id,
                    body=body,
                ).execute()
            )
        except HttpError as e:
            raise self._translate_error(e, f"events.update({external_id})")
        return self._format_google_event(updated)

    async def delete_event(self, access_token: str, external_id: str) -> None:
        try:
            await self._run_blocking(
                lambda: self._calendar(access_token).events().delete(
                    calendarId=self.calendar_id,
                    eventId=external_id,
                ).execute()
            )
        except HttpError as e:
            if e.resp.status in (404, 410):
                self.logger.debug(f"Google event {external_id} already gone")
                return
            raise self._translate_error(e, f"events.delete({external_id})")

    # Push notifications

    async def watch_events(
        self,
        access_token: str,
        channel_id: str,
        address: str,
        expiration: datetime,
        token: Optional[str] = None,
    ) -> WebhookRegistration:
        body = {
            'id': channel_id,
            'type': 'web_hook',
            'address': address,
            'expiration': int(expiration.timestamp() * 1000),
        }
        if token:
            body['token'] = token
        try:
            result = await self._run_blocking(
                lambda: self._calendar(access_token).events().watch(
                    calendarId=self.calendar_id,
                    body=body,
                ).execute()
            )
        except HttpError as e:
            raise self._translate_error(e, "events.watch")

        granted = result.get('expiration')
        return WebhookRegistration(
            channel_id=result.get('id', channel_id),
            resource_id=result['resourceId'],
            expiration=(
                datetime.fromtimestamp(int(granted) / 1000, tz=pytz.UTC) if granted else expiration
            ),
        )

    async def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        try:
            await self._run_blocking(
                lambda: self._calendar(access_token).channels().stop(
                    body={'id': channel_id, 'resourceId': resource_id},
                ).execute()
            )
        except HttpError as e:
            if e.resp.status == 404:
                self.logger.debug(f"Channel {channel_id} already stopped")
                return
            raise self._translate_error(e, "channels.stop")

    async def close(self) -> None:
        """Clean up resources."""
        if self._http_client:
            await self._http_client.aclose()

    # Format conversion

    def _format_google_event(self, event_data: Dict[str, Any]) -> RemoteEvent:
        """Convert a Google Calendar item to the provider-agnostic form."""
        start = event_data.get('start', {})
        end = event_data.get('end', {})

        # All-day items carry a 'date' instead of a 'dateTime'
        all_day = 'date' in start and 'dateTime' not in start
        start_dt = isoparse(start['dateTime']) if 'dateTime' in start else None
        end_dt = isoparse(end['dateTime']) if 'dateTime' in end else None

        return RemoteEvent(
            id=event_data['id'],
            status=event_data.get('status', 'confirmed'),
            summary=event_data.get('summary', ''),
            description=event_data.get('description', ''),
            start=start_dt,
            end=end_dt,
            all_day=all_day,
            timezone=start.get('timeZone'),
            recurrence=event_data.get('recurrence') or [],
            recurring_event_id=event_data.get('recurringEventId'),
            creator_email=(event_data.get('creator') or {}).get('email'),
            updated=isoparse(event_data['updated']) if event_data.get('updated') else None,
        )

    def _convert_to_google_format(self, event: Event) -> Dict[str, Any]:
        """Convert a local event to a Google Calendar request body."""

        def sanitize_text(text: str, max_length: int) -> str:
            if not text:
                return ''
            sanitized = str(text).replace('\x00', '').strip()
            if len(sanitized) > max_length:
                sanitized = sanitized[:max_length - 3] + '...'
            return sanitized

        google_event: Dict[str, Any] = {
            'summary': sanitize_text(event.title, 1024),
            'description': sanitize_text(event.description, 8192),
            'start': {'dateTime': event.start.isoformat()},
            'end': {'dateTime': event.end.isoformat()},
        }
        if event.timezone:
            google_event['start']['timeZone'] = event.timezone
            google_event['end']['timeZone'] = event.timezone

        if event.is_recurring and event.rrule:
            recurrence = [f"RRULE:{event.rrule}"]
            if event.exception_dates:
                # Excluded dates become instants at the event's local start time
                start_time = event.start.timetz()
                instants = [
                    datetime.combine(day, time(start_time.hour, start_time.minute, start_time.second),
                                     tzinfo=start_time.tzinfo).astimezone(pytz.UTC).strftime('%Y%m%dT%H%M%SZ')
                    for day in event.exception_dates
                ]
                recurrence.append(f"EXDATE:{','.join(instants)}")
            google_event['recurrence'] = recurrence

        return google_event
