import pytest
from datetime import timedelta

from calsync_bridge.loop_guard import should_push
from calsync_bridge.models import ChangeKind, Event, LocalChange
from calsync_bridge.runtime import SyncRuntime

from conftest import NOW, connect_user, remote_event


def _event(**fields):
    return Event(user_id='user-1', title='Dentist', start=NOW, end=NOW + timedelta(hours=1), **fields)


@pytest.mark.parametrize("kind, external_id, sync_origin, expected", [
    (ChangeKind.CREATED, None, False, True),
    (ChangeKind.UPDATED, None, False, True),
    (ChangeKind.UPDATED, 'g-1', False, True),
    (ChangeKind.DELETED, 'g-1', False, True),
    (ChangeKind.DELETED, None, False, False),
    (ChangeKind.CREATED, 'g-1', False, False),
    (ChangeKind.CREATED, None, True, False),
    (ChangeKind.UPDATED, 'g-1', True, False),
    (ChangeKind.DELETED, 'g-1', True, False),
])
def test_should_push(kind, external_id, sync_origin, expected):
    change = LocalChange(kind=kind, event=_event(external_id=external_id), sync_origin=sync_origin)
    assert should_push(change) is expected


@pytest.mark.asyncio
async def test_local_create_is_pushed_once(runtime, store, service, clock):
    connect_user(store, clock)
    event = store.create_event(_event())

    assert runtime.change_trigger.pending == 1
    assert await runtime.change_trigger.flush() == 1

    assert service.called('insert') == [('insert', event.id)]
    assert store.get_event_by_id(event.id).external_id == 'remote-1'
    # Storing the remote id is sync-originated and queues nothing
    assert runtime.change_trigger.pending == 0


@pytest.mark.asyncio
async def test_local_update_and_delete_are_mirrored(runtime, store, service, clock):
    connect_user(store, clock)
    event = store.create_event(_event())
    await runtime.change_trigger.flush()
    pushed = store.get_event_by_id(event.id)

    store.update_event(pushed.model_copy(update={'title': 'Dentist (moved)'}))
    store.delete_event(event.id)
    await runtime.change_trigger.flush()

    assert service.called('update') == [('update', 'remote-1')]
    assert service.called('delete') == [('delete', 'remote-1')]
    assert service.remote == {}


@pytest.mark.asyncio
async def test_imported_event_is_never_pushed_back(runtime, store, service, clock):
    connect_user(store, clock)

    runtime.engine.merge_remote_event('user-1', remote_event('g-1', NOW))
    runtime.engine.merge_remote_event('user-1', remote_event('g-1', NOW, summary='Changed remotely'))
    runtime.engine.merge_remote_event('user-1', remote_event('g-1', NOW, status='cancelled'))

    assert runtime.change_trigger.pending == 0
    await runtime.change_trigger.flush()
    assert service.calls == []


@pytest.mark.asyncio
async def test_deleted_before_push_is_skipped(runtime, store, service, clock):
    connect_user(store, clock)
    event = store.create_event(_event())
    store.delete_event(event.id)

    await runtime.change_trigger.flush()

    assert service.called('insert') == []
    assert service.called('delete') == []


@pytest.mark.asyncio
async def test_nothing_pushed_without_connection(runtime, store, service):
    store.create_event(_event())

    await runtime.change_trigger.flush()

    assert service.calls == []


@pytest.mark.asyncio
async def test_push_failure_is_logged_not_raised(runtime, store, service, clock):
    connect_user(store, clock, expires_in=timedelta(seconds=-1))
    service.refresh_error = 'invalid_grant'
    store.create_event(_event())

    assert await runtime.change_trigger.flush() == 0
    assert len(store.list_refresh_failures('user-1')) == 1


@pytest.mark.asyncio
async def test_automatic_push_in_background(settings, service, clock):
    runtime = SyncRuntime(settings, service=service, clock=clock, auto_push=True)
    connect_user(runtime.store, clock)

    event = runtime.store.create_event(_event())
    await runtime.background.drain(timeout=5)

    assert runtime.store.get_event_by_id(event.id).external_id == 'remote-1'