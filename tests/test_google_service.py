import json
from datetime import date, datetime, timedelta
from urllib.parse import parse_qs, urlsplit

import httplib2
import httpx
import pytest
import pytz
from googleapiclient.errors import HttpError

from calsync_bridge.exceptions import (
    AuthError, CursorInvalidatedError, RateLimitError, RemoteApiError,
)
from calsync_bridge.models import Event
from calsync_bridge.services.google import GoogleCalendarService


def _service(settings, handler=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return GoogleCalendarService(settings, http_client=client)


def _http_error(status, body=b'{}'):
    return HttpError(httplib2.Response({'status': status}), body)


def test_authorize_url(settings):
    url = _service(settings).build_authorize_url('state-123')
    query = parse_qs(urlsplit(url).query)

    assert query['state'] == ['state-123']
    assert query['access_type'] == ['offline']
    assert query['prompt'] == ['consent']
    assert 'https://www.googleapis.com/auth/userinfo.email' in query['scope'][0].split(' ')


@pytest.mark.asyncio
async def test_exchange_code_fetches_email(settings):
    def handler(request):
        if request.url.path == '/token':
            form = parse_qs(request.content.decode())
            assert form['grant_type'] == ['authorization_code']
            assert form['code'] == ['the-code']
            return httpx.Response(200, json={
                'access_token': 'at', 'refresh_token': 'rt', 'expires_in': 1800, 'scope': 'calendar',
            })
        assert request.headers['authorization'] == 'Bearer at'
        return httpx.Response(200, json={'email': 'me@example.com'})

    grant = await _service(settings, handler).exchange_code('the-code')

    assert (grant.access_token, grant.refresh_token, grant.expires_in) == ('at', 'rt', 1800)
    assert grant.email == 'me@example.com'


@pytest.mark.asyncio
async def test_refresh_rejected(settings):
    def handler(request):
        return httpx.Response(400, json={'error': 'invalid_grant'})

    with pytest.raises(AuthError, match='invalid_grant'):
        await _service(settings, handler).refresh_access_token('stale')


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(200, json={'expires_in': 3600}),
    httpx.Response(200, json={'access_token': ''}),
    httpx.Response(200, text='<html>proxy error</html>'),
])
async def test_token_response_without_access_token(settings, response):
    with pytest.raises(AuthError):
        await _service(settings, lambda request: response).refresh_access_token('rt')


@pytest.mark.asyncio
async def test_revoke_failure(settings):
    def handler(request):
        return httpx.Response(400, text='token unknown')

    with pytest.raises(RemoteApiError):
        await _service(settings, handler).revoke_token('tok')


@pytest.mark.parametrize("status, body, cursor_query, expected", [
    (410, b'{}', True, CursorInvalidatedError),
    (410, b'{}', False, RemoteApiError),
    (429, b'{}', False, RateLimitError),
    (503, b'{}', False, RateLimitError),
    (403, json.dumps({'error': {'errors': [{'reason': 'rateLimitExceeded'}]}}).encode(), False, RateLimitError),
    (403, b'{"error": {"message": "forbidden"}}', False, RemoteApiError),
    (401, b'{}', False, AuthError),
    (404, b'{}', False, RemoteApiError),
])
def test_translate_error(settings, status, body, cursor_query, expected):
    error = _service(settings)._translate_error(_http_error(status, body), 'events.list', cursor_query)

    assert type(error) is expected


def test_format_google_event(settings):
    remote = _service(settings)._format_google_event({
        'id': 'abc',
        'status': 'confirmed',
        'summary': 'Sprint review',
        'start': {'dateTime': '2024-03-04T19:00:00+01:00', 'timeZone': 'Europe/Madrid'},
        'end': {'dateTime': '2024-03-04T20:00:00+01:00'},
        'recurrence': ['RRULE:FREQ=WEEKLY;BYDAY=MO'],
        'creator': {'email': 'boss@example.com'},
    })

    assert remote.start == datetime(2024, 3, 4, 18, tzinfo=pytz.UTC)
    assert remote.timezone == 'Europe/Madrid'
    assert remote.is_recurring_master
    assert remote.creator_email == 'boss@example.com'
    assert not remote.all_day


def test_format_all_day_and_cancelled(settings):
    service = _service(settings)

    all_day = service._format_google_event({'id': 'a', 'start': {'date': '2024-03-04'}, 'end': {'date': '2024-03-05'}})
    cancelled = service._format_google_event({'id': 'b', 'status': 'cancelled'})

    assert all_day.all_day and all_day.start is None
    assert cancelled.is_cancelled


def test_convert_recurring_event(settings):
    start = datetime(2024, 3, 4, 19, tzinfo=pytz.FixedOffset(60))
    event = Event(
        user_id='u1',
        title='  Choir\x00 ',
        start=start,
        end=start + timedelta(hours=2),
        timezone='Europe/Madrid',
        is_recurring=True,
        rrule='FREQ=WEEKLY;BYDAY=MO;BYHOUR=19;BYMINUTE=0;BYSECOND=0',
        exception_dates=[date(2024, 3, 11)],
    )

    body = _service(settings)._convert_to_google_format(event)

    assert body['summary'] == 'Choir'
    assert body['start'] == {'dateTime': '2024-03-04T19:00:00+01:00', 'timeZone': 'Europe/Madrid'}
    assert body['recurrence'] == [
        'RRULE:FREQ=WEEKLY;BYDAY=MO;BYHOUR=19;BYMINUTE=0;BYSECOND=0',
        'EXDATE:20240311T180000Z',
    ]
