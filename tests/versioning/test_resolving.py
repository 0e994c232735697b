import pytest

from crontrigger._cogs.structs.references import Resource
from crontrigger._core.reactor.errors import ResourceNotServedError, TemporaryError
from crontrigger._core.reactor.versioning import Resolver, select_resource, version_priority


def test_versions_are_ordered_by_stability():
    versions = ['foo', 'v1beta1', 'v2alpha1', 'v1', 'v1beta2', 'v2']
    assert sorted(versions, key=version_priority) == ['v2', 'v1', 'v1beta2', 'v1beta1', 'v2alpha1', 'foo']


def test_selection_prefers_the_preferred_versions():
    resources = [
        Resource('batch', 'v1', 'cronjobs', preferred=False),
        Resource('batch', 'v1beta1', 'cronjobs', preferred=True),
    ]
    assert select_resource(resources, 'cronjobs').version == 'v1beta1'


def test_selection_prefers_the_builtin_groups():
    resources = [
        Resource('example.com', 'v1', 'cronjobs'),
        Resource('batch', 'v1beta1', 'cronjobs'),
    ]
    assert select_resource(resources, 'cronjobs').group == 'batch'


def test_selection_prefers_the_stable_versions():
    resources = [
        Resource('batch', 'v2alpha1', 'cronjobs'),
        Resource('batch', 'v1', 'cronjobs'),
        Resource('batch', 'v1beta1', 'cronjobs'),
    ]
    assert select_resource(resources, 'cronjobs').version == 'v1'


def test_selection_of_nothing():
    assert select_resource([Resource('batch', 'v1', 'jobs')], 'cronjobs') is None


async def test_resolving_from_the_discovery(cluster, connection, settings):
    resolver = Resolver(settings=settings)
    resource = await resolver.resolve('cronjobs')
    assert resource == Resource('batch', 'v1', 'cronjobs')
    assert resource.api_version == 'batch/v1'
    assert resource.kind == 'CronJob'
    assert resource.namespaced


async def test_resolving_a_core_resource(cluster, connection, settings):
    resolver = Resolver(settings=settings)
    resource = await resolver.resolve('pods')
    assert resource.api_version == 'v1'


async def test_resolving_an_older_cluster(cluster, connection, settings):
    cluster.unserve('batch', 'v1')
    cluster.preferred['batch'] = 'v1beta1'
    resolver = Resolver(settings=settings)
    resource = await resolver.resolve('cronjobs')
    assert resource.api_version == 'batch/v1beta1'


async def test_resolving_only_the_given_groups(cluster, connection, settings):
    resolver = Resolver(settings=settings)
    resource = await resolver.resolve('functions', groups=['kubeless.io'])
    assert resource.api_version == 'kubeless.io/v1beta1'
    assert not any(path.startswith('/api/') or path == '/api' for _, path in cluster.requests)


async def test_unserved_resources_fail_as_temporary(cluster, connection, settings):
    cluster.unserve('batch')
    resolver = Resolver(settings=settings)
    with pytest.raises(ResourceNotServedError) as err:
        await resolver.resolve('cronjobs')
    assert isinstance(err.value, TemporaryError)
    assert isinstance(err.value, LookupError)


async def test_resolutions_are_cached_for_a_while(cluster, connection, settings):
    now = 1000.0
    resolver = Resolver(settings=settings, clock=lambda: now)
    await resolver.resolve('cronjobs')
    discoveries = cluster.requests.count(('GET', '/apis'))

    now += settings.discovery.cache_ttl - 1
    await resolver.resolve('cronjobs')
    assert cluster.requests.count(('GET', '/apis')) == discoveries

    now += 2
    await resolver.resolve('cronjobs')
    assert cluster.requests.count(('GET', '/apis')) == discoveries + 1


async def test_cluster_upgrades_are_noticed_after_the_cache_expires(cluster, connection, settings):
    now = 1000.0
    resolver = Resolver(settings=settings, clock=lambda: now)
    cluster.unserve('batch', 'v1')
    cluster.preferred['batch'] = 'v1beta1'
    assert (await resolver.resolve('cronjobs')).version == 'v1beta1'

    cluster.groups['batch']['v1'] = [dict(name='cronjobs', kind='CronJob', namespaced=True)]
    cluster.preferred['batch'] = 'v1'
    assert (await resolver.resolve('cronjobs')).version == 'v1beta1'

    now += settings.discovery.cache_ttl
    assert (await resolver.resolve('cronjobs')).version == 'v1'


async def test_failures_are_not_cached(cluster, connection, settings):
    resolver = Resolver(settings=settings)
    served = cluster.groups.pop('batch')
    with pytest.raises(ResourceNotServedError):
        await resolver.resolve('cronjobs')
    cluster.groups['batch'] = served
    assert (await resolver.resolve('cronjobs')).version == 'v1'


async def test_invalidation(cluster, connection, settings):
    resolver = Resolver(settings=settings)
    await resolver.resolve('cronjobs')
    await resolver.resolve('functions')
    discoveries = cluster.requests.count(('GET', '/apis'))
    resolver.invalidate('cronjobs')
    await resolver.resolve('functions')
    await resolver.resolve('cronjobs')
    assert cluster.requests.count(('GET', '/apis')) == discoveries + 1
    resolver.invalidate()
    await resolver.resolve('functions')
    assert cluster.requests.count(('GET', '/apis')) == discoveries + 2


async def test_zero_ttl_disables_the_cache(cluster, connection, settings):
    settings.discovery.cache_ttl = 0
    resolver = Resolver(settings=settings)
    discoveries = cluster.requests.count(('GET', '/apis'))
    await resolver.resolve('cronjobs')
    await resolver.resolve('cronjobs')
    assert cluster.requests.count(('GET', '/apis')) == discoveries + 2


async def test_resolutions_are_cached_per_groups(cluster, connection, settings):
    cluster.groups['example.com'] = {'v1': [dict(name='cronjobs', kind='CronJob', namespaced=True)]}
    resolver = Resolver(settings=settings)
    assert (await resolver.resolve('cronjobs', groups=['example.com'])).group == 'example.com'
    assert (await resolver.resolve('cronjobs')).group == 'batch'
    assert (await resolver.resolve('cronjobs', groups=['example.com'])).group == 'example.com'
    assert (await resolver.resolve('cronjobs', groups=['batch'])).group == 'batch'

    discoveries = cluster.requests.count(('GET', '/apis'))
    resolver.invalidate('cronjobs')
    await resolver.resolve('cronjobs', groups=['example.com'])
    await resolver.resolve('cronjobs')
    assert cluster.requests.count(('GET', '/apis')) == discoveries + 2
