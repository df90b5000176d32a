import pytest
from datetime import timedelta

from calsync_bridge.exceptions import ConnectionNotFoundError, ManualSyncThrottled, RemoteApiError
from calsync_bridge.models import ConnectionStatus, Event, WebhookRegistration

from conftest import NOW, connect_user, remote_event


@pytest.mark.asyncio
async def test_manual_sync_unknown_user(runtime):
    with pytest.raises(ConnectionNotFoundError):
        await runtime.connections.manual_sync('nobody')


@pytest.mark.asyncio
async def test_manual_sync_cooldown(runtime, store, clock):
    connect_user(store, clock, last_sync_at=NOW - timedelta(minutes=2))

    with pytest.raises(ManualSyncThrottled) as excinfo:
        await runtime.connections.manual_sync('user-1')

    assert excinfo.value.retry_after_minutes == 3


@pytest.mark.asyncio
async def test_manual_sync_after_cooldown(runtime, store, service, clock):
    connect_user(store, clock, last_sync_at=NOW - timedelta(minutes=6))

    report = await runtime.connections.manual_sync('user-1')

    assert report.user_id == 'user-1'
    assert store.get_connection('user-1').last_sync_at == NOW


@pytest.mark.asyncio
async def test_disconnect_keeps_imported_events_by_default(runtime, store, service, clock):
    webhook = WebhookRegistration(channel_id='chan-1', resource_id='res-1', expiration=NOW + timedelta(days=2))
    connect_user(store, clock, webhook=webhook, sync_token='cursor')
    runtime.engine.merge_remote_event('user-1', remote_event('g-1', NOW))

    result = await runtime.connections.disconnect('user-1')

    assert result == {'user_id': 'user-1', 'events_removed': 0}
    assert service.called('stop') == [('stop', 'chan-1', 'res-1')]
    assert service.called('revoke') == [('revoke', 'refresh-1')]

    connection = store.get_connection('user-1')
    assert connection.status == ConnectionStatus.DISCONNECTED
    assert connection.sync_token is None
    assert connection.webhook is None
    assert store.get_credentials('user-1') is None
    assert store.get_event('user-1', 'g-1') is not None


@pytest.mark.asyncio
async def test_disconnect_can_remove_imported_events(runtime, store, service, clock):
    connect_user(store, clock)
    runtime.engine.merge_remote_event('user-1', remote_event('g-1', NOW))
    runtime.engine.merge_remote_event('user-1', remote_event('g-2', NOW))
    local = store.create_event(Event(user_id='user-1', title='Mine', start=NOW, end=NOW + timedelta(hours=1)))

    result = await runtime.connections.disconnect('user-1', remove_events=True)

    assert result['events_removed'] == 2
    assert store.get_event('user-1', 'g-1') is None
    assert store.get_event_by_id(local.id) is not None
    # Bulk removal is not mirrored remotely
    await runtime.change_trigger.flush()
    assert service.called('delete') == []


@pytest.mark.asyncio
async def test_disconnect_survives_revocation_failure(runtime, store, service, clock):
    async def failing_revoke(token):
        raise RemoteApiError("revoke failed", 400)

    service.revoke_token = failing_revoke
    connect_user(store, clock)

    await runtime.connections.disconnect('user-1')

    assert not store.get_connection('user-1').is_connected


def test_list_window_expands_recurring_rows(runtime, store):
    store.create_event(Event(
        user_id='user-1',
        title='Lunch',
        start=NOW + timedelta(days=1, hours=1),
        end=NOW + timedelta(days=1, hours=2),
        external_id='one-off',
    ))
    store.create_event(Event(
        user_id='user-1',
        title='Standup',
        start=NOW - timedelta(days=7, hours=3),
        end=NOW - timedelta(days=7, hours=2, minutes=45),
        is_recurring=True,
        rrule='FREQ=DAILY;BYHOUR=9;BYMINUTE=0;BYSECOND=0',
        external_id='daily',
    ))
    store.create_event(Event(
        user_id='user-1',
        title='Outside',
        start=NOW + timedelta(days=10),
        end=NOW + timedelta(days=10, hours=1),
        external_id='outside',
    ))

    occurrences = runtime.connections.list_window('user-1', NOW, NOW + timedelta(days=3))

    assert [o.title for o in occurrences] == ['Standup', 'Lunch', 'Standup', 'Standup']
    assert [o.start for o in occurrences] == sorted(o.start for o in occurrences)
    lunch = occurrences[1]
    assert not lunch.is_virtual
    assert lunch.external_id == 'one-off'
    assert all(o.is_virtual for o in occurrences if o.title == 'Standup')
