import pytest
from datetime import timedelta

from calsync_bridge.exceptions import RemoteApiError
from calsync_bridge.models import Connection, WebhookRegistration

from conftest import NOW, connect_user


def _channel(expires_in):
    return WebhookRegistration(channel_id='chan', resource_id='res', expiration=NOW + expires_in)


@pytest.mark.asyncio
async def test_sweep_without_connections(runtime):
    report = await runtime.scheduler.sweep()

    assert report.total == 0
    assert report.completed_at == NOW


@pytest.mark.asyncio
async def test_sweep_skips_recent_and_renews_channels(runtime, store, service, clock):
    connect_user(store, clock, user_id='recent', last_sync_at=NOW - timedelta(minutes=5))
    connect_user(store, clock, user_id='no-channel', last_sync_at=NOW - timedelta(hours=1))
    connect_user(store, clock, user_id='healthy', webhook=_channel(timedelta(days=5)))

    report = await runtime.scheduler.sweep()

    assert (report.total, report.synced, report.skipped, report.errors) == (3, 2, 1, 0)
    watched = [call[1] for call in service.called('watch')]
    assert len(watched) == 1 and watched[0].startswith('calendar-no-channel-')
    assert store.get_connection('no-channel').sync_token == 'sync-1'
    assert store.get_connection('healthy').sync_token == 'sync-1'
    assert store.get_connection('recent').sync_token is None


@pytest.mark.asyncio
async def test_sweep_renews_expiring_channel(runtime, store, service, clock):
    connect_user(store, clock, webhook=_channel(timedelta(hours=3)))

    await runtime.scheduler.sweep()

    assert service.called('stop') == [('stop', 'chan', 'res')]
    assert store.get_connection('user-1').webhook.expiration == NOW + timedelta(days=7)


@pytest.mark.asyncio
async def test_sweep_clears_expired_registrations_first(runtime, store, service, clock):
    connect_user(store, clock, webhook=_channel(timedelta(hours=-1)))

    await runtime.scheduler.sweep()

    # The dead channel is forgotten rather than stopped, then replaced
    assert service.called('stop') == []
    assert len(service.called('watch')) == 1


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_sweep(runtime, store, service, clock):
    store.save_connection(Connection(user_id='broken'))
    connect_user(store, clock, user_id='fine')

    report = await runtime.scheduler.sweep()

    assert report.synced == 1
    assert report.errors == 1
    assert 'broken' in report.failures
    assert store.get_connection('fine').sync_token == 'sync-1'


@pytest.mark.asyncio
async def test_channel_renewal_failure_still_syncs(runtime, store, service, clock):
    service.watch_error = RemoteApiError("push not allowed", 400)
    connect_user(store, clock)

    report = await runtime.scheduler.sweep()

    assert report.synced == 1
    assert report.errors == 0
    assert store.get_connection('user-1').webhook is None


@pytest.mark.asyncio
async def test_batches_pause_between_them(runtime, store, clock):
    pauses = []

    async def fake_sleep(seconds):
        pauses.append(seconds)

    runtime.scheduler.sleep = fake_sleep
    runtime.scheduler.batch_size = 2
    for i in range(5):
        connect_user(store, clock, user_id=f'user-{i}', webhook=_channel(timedelta(days=5)))

    report = await runtime.scheduler.sweep()

    assert report.synced == 5
    assert pauses == [2.0, 2.0]
