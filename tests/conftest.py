import asyncio
import copy
import datetime
import json
import logging
import uuid
from unittest.mock import Mock

import aiohttp.web
import pytest
from aiohttp.test_utils import TestServer

from crontrigger._cogs.clients import auth
from crontrigger._cogs.configs.configuration import ControllerSettings
from crontrigger._cogs.structs.credentials import ConnectionInfo
from crontrigger._cogs.structs.references import Resource


@pytest.fixture()
def settings():
    """ The settings with short delays, so that the tests do not wait for long. """
    settings = ControllerSettings()
    settings.networking.error_backoffs = (0.01, 0.01)
    settings.watching.reconnect_backoff = 0.01
    settings.watching.resync_period = None
    settings.queueing.base_delay = 0.001
    settings.queueing.max_delay = 0.01
    settings.queueing.exit_timeout = 1.0
    settings.process.ultimate_exiting_timeout = None
    return settings


@pytest.fixture()
def functions_resource(settings):
    return settings.resources.functions


@pytest.fixture()
def triggers_resource(settings):
    return settings.resources.triggers


@pytest.fixture()
def cronjobs_resource():
    return Resource('batch', 'v1', 'cronjobs', kind='CronJob', namespaced=True)


@pytest.fixture()
def logger():
    return logging.getLogger('crontrigger.tests')


def make_function(name='f1', namespace='ns1', *, labels=None, finalizers=None, **spec):
    return {
        'apiVersion': 'kubeless.io/v1beta1',
        'kind': 'Function',
        'metadata': dict(name=name, namespace=namespace,
                         labels=dict(labels or {}), finalizers=list(finalizers or [])),
        'spec': dict(spec),
    }


def make_trigger(name='t1', namespace='ns1', *, function='f1', schedule='*/5 * * * *',
                 payload=None, finalizers=None):
    spec = {'function-name': function, 'schedule': schedule}
    if payload is not None:
        spec['payload'] = payload
    return {
        'apiVersion': 'kubeless.io/v1beta1',
        'kind': 'CronJobTrigger',
        'metadata': dict(name=name, namespace=namespace, finalizers=list(finalizers or [])),
        'spec': spec,
    }


def merge_patch(target, patch):
    """ JSON merge-patch as in RFC 7386: ``None`` deletes, dicts merge, the rest replace. """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def match_labels(body, selector):
    labels = body.get('metadata', {}).get('labels') or {}
    for term in filter(None, (selector or '').split(',')):
        key, _, value = term.partition('=')
        if labels.get(key) != value:
            return False
    return True


class FakeCluster:
    """
    An in-memory Kubernetes API with just enough semantics for the controller.

    It serves the discovery documents, the CRUD requests with the optimistic
    concurrency checks, the finalizers & the deletion timestamps, the garbage
    collection of the owned objects, the label selectors, and the watch-streams.
    """

    def __init__(self) -> None:
        super().__init__()
        self.server: TestServer | None = None
        self.requests: list[tuple[str, str]] = []
        self.objects: dict[str, dict[tuple[str | None, str], dict]] = {}
        self.events: list[tuple[int, str, str, dict]] = []
        self.groups: dict[str, dict[str, list[dict]]] = {
            '': {'v1': [dict(name='pods', kind='Pod', namespaced=True)]},
            'batch': {
                'v1': [dict(name='jobs', kind='Job', namespaced=True),
                       dict(name='cronjobs', kind='CronJob', namespaced=True)],
                'v1beta1': [dict(name='cronjobs', kind='CronJob', namespaced=True)],
            },
            'kubeless.io': {
                'v1beta1': [dict(name='functions', kind='Function', namespaced=True),
                            dict(name='cronjobtriggers', kind='CronJobTrigger', namespaced=True)],
            },
        }
        self.preferred: dict[str, str] = {'batch': 'v1', 'kubeless.io': 'v1beta1'}
        self._failures: dict[tuple[str, str | None], list[int]] = {}
        self._rv = 100
        self._changed = asyncio.Event()
        self._closing = False

    #
    # The test-side controls.
    #

    def url(self, path: str = '') -> str:
        assert self.server is not None
        return str(self.server.make_url(path))

    def writes(self, plural: str | None = None) -> list[tuple[str, str]]:
        return [(method, path) for method, path in self.requests
                if method != 'GET' and (plural is None or f'/{plural}' in path)]

    def fail(self, method: str, plural: str | None, *statuses: int) -> None:
        """ Respond to the next requests with these statuses instead of handling them. """
        self._failures.setdefault((method.upper(), plural), []).extend(statuses)

    def unserve(self, group: str, version: str | None = None) -> None:
        if version is None:
            self.groups.pop(group, None)
        else:
            self.groups.get(group, {}).pop(version, None)

    def get(self, plural: str, namespace: str | None, name: str) -> dict | None:
        body = self.objects.get(plural, {}).get((namespace, name))
        return copy.deepcopy(body) if body is not None else None

    def put(self, plural: str, body: dict) -> dict:
        """ Create or overwrite an object directly, as if done by someone else. """
        body = copy.deepcopy(body)
        meta = body.setdefault('metadata', {})
        key = (meta.get('namespace'), meta['name'])
        existing = self.objects.get(plural, {}).get(key)
        meta.setdefault('uid', existing['metadata']['uid'] if existing else str(uuid.uuid4()))
        meta['resourceVersion'] = self._bump()
        self.objects.setdefault(plural, {})[key] = body
        self._emit(plural, 'MODIFIED' if existing else 'ADDED', body)
        return copy.deepcopy(body)

    def request_deletion(self, plural: str, namespace: str | None, name: str) -> dict | None:
        """ Delete an object as the API does: mark if finalized, remove if not. """
        body = self.objects.get(plural, {}).get((namespace, name))
        if body is None:
            return None
        if body['metadata'].get('finalizers'):
            if not body['metadata'].get('deletionTimestamp'):
                now = datetime.datetime.now(datetime.timezone.utc)
                body['metadata']['deletionTimestamp'] = now.strftime('%Y-%m-%dT%H:%M:%SZ')
                body['metadata']['resourceVersion'] = self._bump()
                self._emit(plural, 'MODIFIED', body)
        else:
            self._remove(plural, body)
        return copy.deepcopy(body)

    def expire_watches(self) -> None:
        """ Break all the current watch-streams with "410 Gone", as on an etcd compaction. """
        self._bump()
        self.events.append((self._rv, '*', 'ERROR', {'kind': 'Status', 'code': 410}))
        self._notify()

    def close(self) -> None:
        self._closing = True
        self._notify()

    #
    # The internals.
    #

    def _bump(self) -> str:
        self._rv += 1
        return str(self._rv)

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def _emit(self, plural: str, event_type: str, body: dict) -> None:
        self.events.append((int(body['metadata']['resourceVersion']), plural, event_type,
                            copy.deepcopy(body)))
        self._notify()

    def _remove(self, plural: str, body: dict) -> None:
        meta = body['metadata']
        self.objects.get(plural, {}).pop((meta.get('namespace'), meta['name']), None)
        meta['resourceVersion'] = self._bump()
        self._emit(plural, 'DELETED', body)

        # The garbage collection of the dependents, as by the owner references.
        for other_plural, objs in self.objects.items():
            for other in list(objs.values()):
                owners = other['metadata'].get('ownerReferences') or []
                if any(owner.get('uid') == meta.get('uid') for owner in owners):
                    self.request_deletion(other_plural, other['metadata'].get('namespace'),
                                          other['metadata']['name'])

    def _served(self, group: str, version: str, plural: str) -> bool:
        return any(resource['name'] == plural for resource in self.groups.get(group, {}).get(version, []))

    def _kind_of(self, group: str, version: str, plural: str) -> str:
        resources = self.groups.get(group, {}).get(version, [])
        return next((resource['kind'] for resource in resources if resource['name'] == plural), '')

    @staticmethod
    def _status(code: int, reason: str, message: str = '') -> aiohttp.web.Response:
        return aiohttp.web.json_response({
            'apiVersion': 'v1', 'kind': 'Status', 'status': 'Failure',
            'code': code, 'reason': reason, 'message': message or reason,
        }, status=code)

    def make_app(self) -> aiohttp.web.Application:
        app = aiohttp.web.Application(middlewares=[self._middleware])
        app.add_routes([
            aiohttp.web.get('/api', self._get_core),
            aiohttp.web.get('/api/{version}', self._get_core_version),
            aiohttp.web.get('/apis', self._get_groups),
            aiohttp.web.get('/apis/{group}/{version}', self._get_version),
            aiohttp.web.get('/apis/{group}/{version}/{plural}', self._list),
            aiohttp.web.get('/apis/{group}/{version}/namespaces/{namespace}/{plural}', self._list),
            aiohttp.web.post('/apis/{group}/{version}/namespaces/{namespace}/{plural}', self._create),
            aiohttp.web.get('/apis/{group}/{version}/namespaces/{namespace}/{plural}/{name}', self._read),
            aiohttp.web.put('/apis/{group}/{version}/namespaces/{namespace}/{plural}/{name}', self._replace),
            aiohttp.web.patch('/apis/{group}/{version}/namespaces/{namespace}/{plural}/{name}', self._patch),
            aiohttp.web.delete('/apis/{group}/{version}/namespaces/{namespace}/{plural}/{name}', self._delete),
        ])
        return app

    @aiohttp.web.middleware
    async def _middleware(self, request, handler):
        self.requests.append((request.method, request.path_qs))
        info = request.match_info
        for key in [(request.method, info.get('plural')), (request.method, None)]:
            if self._failures.get(key):
                return self._status(self._failures[key].pop(0), 'Injected')
        if 'plural' in info and not self._served(info['group'], info['version'], info['plural']):
            return self._status(404, 'NotFound', f"{info['plural']} is not served.")
        return await handler(request)

    async def _get_core(self, request):
        return aiohttp.web.json_response({'versions': sorted(self.groups.get('', {}))})

    async def _get_core_version(self, request):
        resources = self.groups.get('', {}).get(request.match_info['version'])
        if resources is None:
            return self._status(404, 'NotFound')
        return aiohttp.web.json_response({'resources': resources})

    async def _get_groups(self, request):
        return aiohttp.web.json_response({'groups': [
            {
                'name': group,
                'versions': [{'version': version} for version in versions],
                'preferredVersion': {'version': self.preferred.get(group, next(iter(versions), ''))},
            }
            for group, versions in self.groups.items() if group
        ]})

    async def _get_version(self, request):
        resources = self.groups.get(request.match_info['group'], {}).get(request.match_info['version'])
        if resources is None:
            return self._status(404, 'NotFound')
        return aiohttp.web.json_response({'resources': resources})

    async def _list(self, request):
        plural = request.match_info['plural']
        namespace = request.match_info.get('namespace')
        if request.query.get('watch') == 'true':
            return await self._watch(request, plural, namespace)
        selector = request.query.get('labelSelector')
        items = [copy.deepcopy(body) for (ns, _), body in sorted(self.objects.get(plural, {}).items())
                 if (namespace is None or ns == namespace) and match_labels(body, selector)]
        return aiohttp.web.json_response({
            'apiVersion': f"{request.match_info['group']}/{request.match_info['version']}",
            'kind': self._kind_of(request.match_info['group'], request.match_info['version'], plural) + 'List',
            'metadata': {'resourceVersion': str(self._rv)},
            'items': items,
        })

    async def _watch(self, request, plural, namespace):
        since = int(request.query.get('resourceVersion') or 0)
        timeout = float(request.query['timeoutSeconds']) if 'timeoutSeconds' in request.query else None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        response = aiohttp.web.StreamResponse(headers={'Content-Type': 'application/json'})
        await response.prepare(request)
        position = 0
        try:
            while not self._closing:
                changed = self._changed
                for rv, ev_plural, ev_type, body in self.events[position:]:
                    if rv <= since:
                        continue
                    if ev_plural == '*':
                        await response.write(json.dumps({'type': ev_type, 'object': body}).encode() + b'\n')
                        return response
                    if ev_plural == plural and (namespace is None or body['metadata'].get('namespace') == namespace):
                        await response.write(json.dumps({'type': ev_type, 'object': body}).encode() + b'\n')
                position = len(self.events)
                remaining = deadline - loop.time() if deadline is not None else None
                if remaining is not None and remaining <= 0:
                    break
                if request.transport is None or request.transport.is_closing():
                    break  # the client has gone away
                try:
                    await asyncio.wait_for(changed.wait(), timeout=min(remaining or 0.1, 0.1))
                except asyncio.TimeoutError:
                    pass
        except ConnectionResetError:
            pass
        return response

    async def _create(self, request):
        plural = request.match_info['plural']
        body = await request.json()
        meta = body.setdefault('metadata', {})
        meta['namespace'] = request.match_info['namespace']
        if (meta['namespace'], meta.get('name')) in self.objects.get(plural, {}):
            return self._status(409, 'AlreadyExists')
        meta['uid'] = str(uuid.uuid4())
        meta['resourceVersion'] = self._bump()
        self.objects.setdefault(plural, {})[(meta['namespace'], meta['name'])] = body
        self._emit(plural, 'ADDED', body)
        return aiohttp.web.json_response(body, status=201)

    async def _read(self, request):
        body = self.get(request.match_info['plural'], request.match_info['namespace'], request.match_info['name'])
        if body is None:
            return self._status(404, 'NotFound')
        return aiohttp.web.json_response(body)

    async def _replace(self, request):
        plural = request.match_info['plural']
        key = (request.match_info['namespace'], request.match_info['name'])
        existing = self.objects.get(plural, {}).get(key)
        if existing is None:
            return self._status(404, 'NotFound')
        body = await request.json()
        if body.get('metadata', {}).get('resourceVersion') != existing['metadata']['resourceVersion']:
            return self._status(409, 'Conflict')
        body['metadata']['uid'] = existing['metadata']['uid']
        body['metadata']['resourceVersion'] = self._bump()
        self.objects[plural][key] = body
        self._emit(plural, 'MODIFIED', body)
        return aiohttp.web.json_response(body)

    async def _patch(self, request):
        plural = request.match_info['plural']
        key = (request.match_info['namespace'], request.match_info['name'])
        existing = self.objects.get(plural, {}).get(key)
        if existing is None:
            return self._status(404, 'NotFound')
        if request.content_type != 'application/merge-patch+json':
            return self._status(415, 'UnsupportedMediaType')
        patch = await request.json()
        required = patch.get('metadata', {}).pop('resourceVersion', None)
        if required is not None and required != existing['metadata']['resourceVersion']:
            return self._status(409, 'Conflict')
        body = merge_patch(existing, patch)
        old_finalizers = set(existing['metadata'].get('finalizers') or [])
        new_finalizers = set(body['metadata'].get('finalizers') or [])
        if existing['metadata'].get('deletionTimestamp') and new_finalizers - old_finalizers:
            return self._status(422, 'Invalid', "No new finalizers can be added if the object is being deleted.")
        body['metadata']['resourceVersion'] = self._bump()
        if body['metadata'].get('deletionTimestamp') and not new_finalizers:
            self.objects[plural][key] = body
            self._remove(plural, body)
        else:
            self.objects[plural][key] = body
            self._emit(plural, 'MODIFIED', body)
        return aiohttp.web.json_response(body)

    async def _delete(self, request):
        body = self.request_deletion(request.match_info['plural'],
                                     request.match_info['namespace'], request.match_info['name'])
        if body is None:
            return self._status(404, 'NotFound')
        return aiohttp.web.json_response(body)


@pytest.fixture()
async def cluster():
    cluster = FakeCluster()
    server = TestServer(cluster.make_app())
    await server.start_server()
    cluster.server = server
    try:
        yield cluster
    finally:
        cluster.close()
        await server.close()


@pytest.fixture()
async def connection(cluster, mocker):
    """
    The API connection to the fake cluster, as if set by the controller's startup.

    The context variable is replaced as a whole, so that the connection is seen
    by all the coroutines and tasks regardless of how their contexts are copied.
    """
    info = ConnectionInfo(server=cluster.url('/').rstrip('/'), default_namespace='ns1')
    connection = auth.Connection(info)
    mocker.patch.object(auth, 'connection_var', Mock(get=Mock(return_value=connection)))
    try:
        yield connection
    finally:
        await connection.close()
