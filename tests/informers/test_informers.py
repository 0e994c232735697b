import asyncio

import pytest

from crontrigger._cogs.aiokits.aiotoggles import Toggle
from crontrigger._cogs.clients.watching import Bookmark
from crontrigger._cogs.structs.references import Kind
from crontrigger._core.reactor.informers import Informer, Notification, NotificationType

from ..conftest import make_function


@pytest.fixture()
def notifications():
    return []


@pytest.fixture()
def informer(settings, functions_resource, notifications):
    return Informer(
        kind=Kind.FUNCTION,
        resource=functions_resource,
        namespace=None,
        settings=settings,
        handlers=[notifications.append],
    )


def body(name, rv, namespace='ns1', **labels):
    return {'metadata': {'name': name, 'namespace': namespace, 'resourceVersion': rv, 'labels': labels}}


def kinds(notifications):
    return [(n.type, n.key) for n in notifications]


async def test_listing_is_applied_at_once_and_syncs(informer, notifications):
    await informer.process_event({'type': None, 'object': body('f1', '1')})
    await informer.process_event({'type': None, 'object': body('f2', '1')})
    assert not informer.has_synced()
    assert informer.get('ns1/f1') is None
    assert notifications == []

    await informer.process_event(Bookmark.LISTED)
    assert informer.has_synced()
    assert informer.get('ns1/f1') is not None
    assert kinds(notifications) == [(NotificationType.ADDED, 'ns1/f1'), (NotificationType.ADDED, 'ns1/f2')]
    assert all(n.kind is Kind.FUNCTION for n in notifications)


async def test_empty_listing_syncs_too(informer):
    await informer.process_event(Bookmark.LISTED)
    assert informer.has_synced()
    await asyncio.wait_for(informer.wait_synced(), timeout=1)
    assert len(informer) == 0


async def test_watch_events_are_tagged(informer, notifications):
    await informer.process_event(Bookmark.LISTED)
    await informer.process_event({'type': 'ADDED', 'object': body('f1', '1')})
    await informer.process_event({'type': 'MODIFIED', 'object': body('f1', '2')})
    await informer.process_event({'type': 'DELETED', 'object': body('f1', '3')})
    assert kinds(notifications) == [
        (NotificationType.ADDED, 'ns1/f1'),
        (NotificationType.UPDATED, 'ns1/f1'),
        (NotificationType.DELETED, 'ns1/f1'),
    ]
    updated = notifications[1]
    assert updated.old['metadata']['resourceVersion'] == '1'
    assert updated.new['metadata']['resourceVersion'] == '2'
    deleted = notifications[2]
    assert deleted.new is None
    assert deleted.body['metadata']['resourceVersion'] == '2'  # the last known state
    assert informer.get('ns1/f1') is None


async def test_deletion_of_an_unknown_object_keeps_its_last_state(informer, notifications):
    await informer.process_event(Bookmark.LISTED)
    await informer.process_event({'type': 'DELETED', 'object': body('f9', '9')})
    assert notifications[0].type is NotificationType.DELETED
    assert notifications[0].body['metadata']['name'] == 'f9'


async def test_relisting_notifies_about_the_missed_changes(informer, notifications):
    await informer.process_event({'type': None, 'object': body('f1', '1')})
    await informer.process_event({'type': None, 'object': body('f2', '1')})
    await informer.process_event({'type': None, 'object': body('f3', '1')})
    await informer.process_event(Bookmark.LISTED)
    notifications.clear()

    # The watch-stream was down: f1 was deleted, f2 changed, f3 is intact, f4 is new.
    await informer.process_event({'type': None, 'object': body('f2', '2')})
    await informer.process_event({'type': None, 'object': body('f3', '1')})
    await informer.process_event({'type': None, 'object': body('f4', '1')})
    await informer.process_event(Bookmark.LISTED)
    assert sorted(kinds(notifications), key=lambda t: t[1]) == [
        (NotificationType.DELETED, 'ns1/f1'),
        (NotificationType.UPDATED, 'ns1/f2'),
        (NotificationType.ADDED, 'ns1/f4'),
    ]
    assert sorted(b['metadata']['name'] for b in informer.list()) == ['f2', 'f3', 'f4']


async def test_lookups_by_namespace_and_labels(informer):
    await informer.process_event({'type': None, 'object': body('f1', '1', a='1')})
    await informer.process_event({'type': None, 'object': body('f2', '1', a='2')})
    await informer.process_event({'type': None, 'object': body('f3', '1', namespace='ns2', a='1')})
    await informer.process_event(Bookmark.LISTED)
    assert sorted(b['metadata']['name'] for b in informer.list(namespace='ns1')) == ['f1', 'f2']
    assert sorted(b['metadata']['name'] for b in informer.list(labels={'a': '1'})) == ['f1', 'f3']
    assert [b['metadata']['name'] for b in informer.list(namespace='ns2', labels={'a': '1'})] == ['f3']


async def test_resync_redelivers_everything_unchanged(informer, notifications):
    await informer.process_event({'type': None, 'object': body('f1', '1')})
    await informer.process_event(Bookmark.LISTED)
    notifications.clear()
    await informer.resync()
    assert kinds(notifications) == [(NotificationType.RESYNCED, 'ns1/f1')]
    assert notifications[0].old is notifications[0].new


async def test_failing_handlers_do_not_break_the_others(informer, notifications, caplog):
    def failing(notification):
        raise ValueError("boom")

    async def async_handler(notification):
        notifications.append(notification)

    informer.add_handler(failing)
    informer.add_handler(async_handler)
    await informer.process_event(Bookmark.LISTED)
    await informer.process_event({'type': 'ADDED', 'object': body('f1', '1')})
    assert len(notifications) == 2
    assert "boom" in caplog.text


async def test_external_sync_toggle_is_used(settings, functions_resource):
    toggle = Toggle(False, name='functions')
    informer = Informer(kind=Kind.FUNCTION, resource=functions_resource, namespace=None,
                        settings=settings, synced=toggle)
    await informer.process_event(Bookmark.LISTED)
    assert toggle.is_on()


def test_notification_without_objects_is_an_error():
    notification = Notification(Kind.FUNCTION, NotificationType.DELETED, 'ns1/f1', None, None)
    with pytest.raises(RuntimeError):
        notification.body


async def test_informer_follows_the_cluster(cluster, connection, informer, notifications):
    cluster.put('functions', make_function('f1'))
    task = asyncio.create_task(informer.run())
    try:
        await asyncio.wait_for(informer.wait_synced(), timeout=2)
        assert informer.get('ns1/f1') is not None

        cluster.put('functions', make_function('f2'))
        cluster.request_deletion('functions', 'ns1', 'f1')
        for _ in range(100):
            if informer.get('ns1/f1') is None and informer.get('ns1/f2') is not None:
                break
            await asyncio.sleep(0.01)
        assert informer.get('ns1/f1') is None
        assert informer.get('ns1/f2') is not None
        assert kinds(notifications) == [
            (NotificationType.ADDED, 'ns1/f1'),
            (NotificationType.ADDED, 'ns1/f2'),
            (NotificationType.DELETED, 'ns1/f1'),
        ]
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


async def test_informer_relists_on_gone_watches(cluster, connection, informer, notifications):
    cluster.put('functions', make_function('f1'))
    task = asyncio.create_task(informer.run())
    try:
        await asyncio.wait_for(informer.wait_synced(), timeout=2)
        listings_before = sum(1 for method, path in cluster.requests
                              if path == '/apis/kubeless.io/v1beta1/functions')
        cluster.expire_watches()
        for _ in range(100):
            listings = sum(1 for method, path in cluster.requests
                           if path == '/apis/kubeless.io/v1beta1/functions')
            if listings > listings_before:
                break
            await asyncio.sleep(0.01)
        assert listings > listings_before
        assert kinds(notifications) == [(NotificationType.ADDED, 'ns1/f1')]  # nothing changed
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


async def test_periodic_resyncs(cluster, connection, settings, informer, notifications):
    settings.watching.resync_period = 0.05
    cluster.put('functions', make_function('f1'))
    task = asyncio.create_task(informer.run())
    try:
        await asyncio.wait_for(informer.wait_synced(), timeout=2)
        await asyncio.sleep(0.2)
        assert (NotificationType.RESYNCED, 'ns1/f1') in kinds(notifications)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
