import pytest
import pytz
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic_settings import SettingsConfigDict

from calsync_bridge.config import Settings
from calsync_bridge.exceptions import AuthError, CursorInvalidatedError
from calsync_bridge.models import (
    Connection, Credentials, EventsPage, EventsQuery, RemoteEvent, TokenGrant, WebhookRegistration,
)
from calsync_bridge.runtime import SyncRuntime
from calsync_bridge.services.base import BaseCalendarService


# Monday
NOW = datetime(2024, 3, 4, 12, 0, tzinfo=pytz.UTC)


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='x'*20,
        google_client_secret='y'*20,
        public_base_url='https://calendar.example.com',
        database_url=f'sqlite:///{tmp_path}/test.db',
        data_dir=str(tmp_path),
    )
    values.update(overrides)
    return TestSettings(**values)


class FrozenClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def remote_event(event_id, start, minutes=60, **fields):
    return RemoteEvent(
        id=event_id,
        summary=fields.pop('summary', f"Event {event_id}"),
        start=start,
        end=start + timedelta(minutes=minutes),
        **fields
    )


class FakeCalendarService(BaseCalendarService):
    """In-memory remote calendar.

    Pages are registered per cursor (``'full'`` for windowed listings) and
    addressed by their index through the page token. An exception placed in a
    page list is raised when that page is requested.
    """

    name = "fake"

    def __init__(self, settings):
        super().__init__(settings)
        self.pages: Dict[str, List] = {'full': [EventsPage(next_sync_token='sync-1')]}
        self.instances: Dict[str, List[RemoteEvent]] = {}
        self.invalid_tokens = set()
        self.queries: List[EventsQuery] = []
        self.calls: List[tuple] = []
        self.refresh_count = 0
        self.refresh_error: Optional[str] = None
        self.rotated_refresh_token: Optional[str] = None
        self.stop_error: Optional[Exception] = None
        self.watch_error: Optional[Exception] = None
        self.remote: Dict[str, object] = {}

    def set_pages(self, key, *item_lists, sync_token=None):
        pages = []
        for index, items in enumerate(item_lists):
            last = index == len(item_lists) - 1
            pages.append(EventsPage(
                items=items,
                next_page_token=None if last else str(index + 1),
                next_sync_token=sync_token if last else None,
            ))
        self.pages[key] = pages

    def build_authorize_url(self, state):
        return f"https://accounts.example.com/auth?state={state}"

    async def exchange_code(self, code):
        self.calls.append(('exchange_code', code))
        if code == 'bad-code':
            raise AuthError("invalid_grant")
        return TokenGrant(
            access_token='access-from-code',
            refresh_token='refresh-from-code',
            expires_in=3600,
            email='person@example.com',
        )

    async def refresh_access_token(self, refresh_token):
        self.refresh_count += 1
        self.calls.append(('refresh', refresh_token))
        if self.refresh_error:
            raise AuthError(self.refresh_error)
        return TokenGrant(
            access_token=f'access-{self.refresh_count}',
            refresh_token=self.rotated_refresh_token,
            expires_in=3600,
        )

    async def revoke_token(self, token):
        self.calls.append(('revoke', token))

    async def list_events_page(self, access_token, query):
        self.queries.append(query)
        key = query.sync_token or 'full'
        if key in self.invalid_tokens:
            raise CursorInvalidatedError()
        page = self.pages[key][int(query.page_token or 0)]
        if isinstance(page, Exception):
            raise page
        return page

    async def list_instances(self, access_token, event_id, time_min, time_max):
        self.calls.append(('instances', event_id))
        return list(self.instances.get(event_id, []))

    async def insert_event(self, access_token, event):
        remote_id = f"remote-{len(self.remote) + 1}"
        self.remote[remote_id] = event
        self.calls.append(('insert', event.id))
        return RemoteEvent(id=remote_id, summary=event.title, start=event.start, end=event.end)

    async def update_event(self, access_token, external_id, event):
        self.remote[external_id] = event
        self.calls.append(('update', external_id))
        return RemoteEvent(id=external_id, summary=event.title, start=event.start, end=event.end)

    async def delete_event(self, access_token, external_id):
        self.remote.pop(external_id, None)
        self.calls.append(('delete', external_id))

    async def watch_events(self, access_token, channel_id, address, expiration, token=None):
        self.calls.append(('watch', channel_id, address, token))
        if self.watch_error:
            raise self.watch_error
        return WebhookRegistration(channel_id=channel_id, resource_id=f"res-{channel_id}", expiration=expiration)

    async def stop_channel(self, access_token, channel_id, resource_id):
        self.calls.append(('stop', channel_id, resource_id))
        if self.stop_error:
            raise self.stop_error

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


def connect_user(store, clock, user_id='user-1', expires_in=timedelta(hours=1), refresh_token='refresh-1', **fields):
    """Store a connected account with credentials valid for ``expires_in``."""
    connection = store.save_connection(Connection(user_id=user_id, **fields))
    store.save_credentials(user_id, Credentials(
        access_token='access-0',
        refresh_token=refresh_token,
        expires_at=clock() + expires_in,
    ))
    return connection


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def service(settings):
    return FakeCalendarService(settings)


@pytest.fixture
def runtime(settings, service, clock):
    return SyncRuntime(settings, service=service, clock=clock, auto_push=False)


@pytest.fixture
def store(runtime):
    return runtime.store
