import pytest
from datetime import timedelta

from fastapi.testclient import TestClient

from calsync_bridge.models import Connection, WebhookRegistration
from calsync_bridge.runtime import SyncRuntime
from calsync_bridge.server import create_app

from conftest import NOW, FakeCalendarService, connect_user, make_settings


@pytest.fixture
def client(runtime):
    app = create_app(runtime.settings, runtime=runtime, run_sweeper=False)
    with TestClient(app) as test_client:
        yield test_client


def _client_for(tmp_path, clock, **overrides):
    settings = make_settings(tmp_path, **overrides)
    runtime = SyncRuntime(settings, service=FakeCalendarService(settings), clock=clock, auto_push=False)
    return TestClient(create_app(settings, runtime=runtime, run_sweeper=False)), runtime


def test_health(client):
    response = client.get('/health')

    assert response.status_code == 200
    assert response.json()['ok'] is True
    assert response.json()['interval_seconds'] == 15 * 60


class TestWebhookEndpoint:

    def test_missing_headers(self, client):
        response = client.post('/webhooks/google')
        assert response.status_code == 400

    def test_handshake(self, client):
        response = client.post('/webhooks/google', headers={
            'X-Goog-Channel-ID': 'chan-1',
            'X-Goog-Resource-ID': 'res-1',
            'X-Goog-Resource-State': 'sync',
        })

        assert response.status_code == 200
        assert response.json() == {'success': True, 'outcome': 'acknowledged'}

    def test_unknown_channel_is_still_success(self, client):
        response = client.post('/webhooks/google', headers={
            'X-Goog-Channel-ID': 'unknown',
            'X-Goog-Resource-ID': 'res-1',
            'X-Goog-Resource-State': 'exists',
        })

        assert response.status_code == 200
        assert response.json()['outcome'] == 'not_found'

    def test_recent_sync_is_deduplicated(self, client, store, clock):
        webhook = WebhookRegistration(channel_id='chan-1', resource_id='res-1', expiration=NOW + timedelta(days=1))
        connect_user(store, clock, webhook=webhook, last_sync_at=NOW)

        response = client.post('/webhooks/google', headers={
            'X-Goog-Channel-ID': 'chan-1',
            'X-Goog-Resource-ID': 'res-1',
            'X-Goog-Resource-State': 'exists',
        })

        assert response.json()['outcome'] == 'deduplicated'

    def test_channel_token_is_enforced(self, tmp_path, clock):
        test_client, _ = _client_for(tmp_path, clock, webhook_channel_token='expected')
        headers = {'X-Goog-Channel-ID': 'chan-1', 'X-Goog-Resource-ID': 'res-1', 'X-Goog-Resource-State': 'sync'}

        with test_client:
            rejected = test_client.post('/webhooks/google', headers={**headers, 'X-Goog-Channel-Token': 'wrong'})
            accepted = test_client.post('/webhooks/google', headers={**headers, 'X-Goog-Channel-Token': 'expected'})

        assert rejected.status_code == 401
        assert accepted.status_code == 200


class TestOAuthEndpoints:

    def test_start_redirects_to_consent(self, client, runtime):
        response = client.get('/oauth/google/start', params={'user_id': 'user-1'}, follow_redirects=False)

        assert response.status_code == 302
        location = response.headers['location']
        assert location.startswith('https://accounts.example.com/auth')
        assert runtime.oauth.parse_state(location.split('state=', 1)[1]).user_id == 'user-1'

    def test_callback_provider_error(self, client):
        response = client.get('/oauth/google/callback', params={'error': 'access_denied'}, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers['location'] == 'http://localhost:3000/auth/google-calendar?error=access_denied'

    def test_callback_without_code(self, client):
        response = client.get('/oauth/google/callback', follow_redirects=False)

        assert response.headers['location'].endswith('?error=missing_code')

    def test_callback_rejected_code(self, client, runtime):
        state = runtime.oauth.create_state('user-1')

        response = client.get('/oauth/google/callback', params={'code': 'bad-code', 'state': state},
                              follow_redirects=False)

        assert response.headers['location'].endswith('?error=connection_failed')

    def test_callback_success(self, client, runtime, store):
        state = runtime.oauth.create_state('user-1')

        response = client.get('/oauth/google/callback', params={'code': 'good-code', 'state': state},
                              follow_redirects=False)

        assert response.headers['location'] == 'http://localhost:3000/auth/google-calendar?success=true'
        assert store.get_connection('user-1').is_connected


class TestUserActions:

    def test_manual_sync_unknown_user(self, client):
        assert client.post('/users/nobody/sync').status_code == 404

    def test_manual_sync(self, client, store, clock):
        connect_user(store, clock)

        response = client.post('/users/user-1/sync')

        assert response.status_code == 200
        body = response.json()
        assert body['success'] is True
        assert body['mode'] == 'full'

    def test_manual_sync_throttled(self, client, store, clock):
        connect_user(store, clock, last_sync_at=NOW - timedelta(minutes=1))

        response = client.post('/users/user-1/sync')

        assert response.status_code == 429
        assert response.json()['retry_after'] == 4
        assert response.headers['retry-after'] == '240'

    def test_manual_sync_without_credentials(self, client, store):
        store.save_connection(Connection(user_id='user-1'))

        assert client.post('/users/user-1/sync').status_code == 401

    def test_disconnect(self, client, store, clock):
        connect_user(store, clock)

        response = client.post('/users/user-1/disconnect', params={'remove_events': 'true'})

        assert response.status_code == 200
        assert response.json() == {'success': True, 'user_id': 'user-1', 'events_removed': 0}
        assert not store.get_connection('user-1').is_connected


class TestCronSweep:

    def test_open_when_no_secret(self, client):
        response = client.post('/cron/sweep')

        assert response.status_code == 200
        assert response.json()['total'] == 0

    def test_secret_is_required(self, tmp_path, clock):
        test_client, runtime = _client_for(tmp_path, clock, cron_secret='cron-key')
        connect_user(runtime.store, clock)

        with test_client:
            denied = test_client.post('/cron/sweep')
            allowed = test_client.post('/cron/sweep', headers={'Authorization': 'Bearer cron-key'})

        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert allowed.json()['synced'] == 1
        assert runtime.last_sweep is not None


class TestEvents:

    def _body(self, **fields):
        body = {
            'title': 'Planning',
            'start': '2024-03-05T10:00:00+01:00',
            'end': '2024-03-05T11:00:00+01:00',
        }
        body.update(fields)
        return body

    def test_create_list_update_delete(self, client, runtime):
        created = client.post('/users/user-1/events', json=self._body())
        assert created.status_code == 201
        event_id = created.json()['id']

        window = {'start': '2024-03-04T00:00:00+00:00', 'end': '2024-03-08T00:00:00+00:00'}
        listed = client.get('/users/user-1/events', params=window).json()['events']
        assert [e['title'] for e in listed] == ['Planning']

        updated = client.put(f'/users/user-1/events/{event_id}', json=self._body(title='Planning v2'))
        assert updated.status_code == 200
        assert updated.json()['title'] == 'Planning v2'

        assert client.delete(f'/users/user-1/events/{event_id}').status_code == 200
        assert client.get('/users/user-1/events', params=window).json()['events'] == []

        # Application writes are queued for the remote calendar
        assert runtime.change_trigger.pending == 2

    def test_recurring_event_is_expanded(self, client):
        client.post('/users/user-1/events', json=self._body(
            title='Gym', is_recurring=True, rrule='FREQ=DAILY;BYHOUR=10;BYMINUTE=0;BYSECOND=0',
        ))

        listed = client.get('/users/user-1/events', params={
            'start': '2024-03-05T00:00:00+00:00',
            'end': '2024-03-08T00:00:00+00:00',
        }).json()['events']

        assert len(listed) == 3
        assert all(e['is_virtual'] for e in listed)

    def test_invalid_rule(self, client):
        response = client.post('/users/user-1/events', json=self._body(is_recurring=True, rrule='FREQ=HOURLY'))
        assert response.status_code == 400

    def test_end_before_start(self, client):
        response = client.post('/users/user-1/events', json=self._body(end='2024-03-05T09:00:00+01:00'))
        assert response.status_code == 422

    def test_naive_window_rejected(self, client):
        response = client.get('/users/user-1/events', params={
            'start': '2024-03-04T00:00:00',
            'end': '2024-03-08T00:00:00',
        })
        assert response.status_code == 400

    def test_other_users_event_is_not_found(self, client):
        event_id = client.post('/users/user-1/events', json=self._body()).json()['id']

        assert client.put(f'/users/user-2/events/{event_id}', json=self._body()).status_code == 404
        assert client.delete(f'/users/user-2/events/{event_id}').status_code == 404
        assert client.delete('/users/user-1/events/not-a-uuid').status_code == 404
