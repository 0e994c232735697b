"""
The discovery of the resources served by the cluster.

The discovery documents are read fresh on every call: the caching of them
(if any) is the caller's concern, since the served versions can change
while the controller is running (e.g. on the cluster upgrades).
"""
import asyncio
from collections.abc import Collection

from crontrigger._cogs.clients import api, errors
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import references


async def scan_resources(
        *,
        settings: configuration.ControllerSettings,
        logger: typedefs.Logger,
        groups: Collection[str] | None = None,
) -> Collection[references.Resource]:
    coros = {
        _read_old_api(groups=groups, settings=settings, logger=logger),
        _read_new_apis(groups=groups, settings=settings, logger=logger),
    }
    resources: set[references.Resource] = set()
    for coro in asyncio.as_completed(coros):
        resources.update(await coro)
    return resources


async def _read_old_api(
        *,
        settings: configuration.ControllerSettings,
        logger: typedefs.Logger,
        groups: Collection[str] | None,
) -> Collection[references.Resource]:
    resources: set[references.Resource] = set()
    if groups is None or '' in groups:
        rsp = await api.get('/api', settings=settings, logger=logger)
        coros = {
            _read_version(
                url=f'/api/{version_name}',
                group='',
                version=version_name,
                preferred=True,
                settings=settings,
                logger=logger,
            )
            for version_name in rsp['versions']
        }
        for coro in asyncio.as_completed(coros):
            resources.update(await coro)
    return resources


async def _read_new_apis(
        *,
        settings: configuration.ControllerSettings,
        logger: typedefs.Logger,
        groups: Collection[str] | None,
) -> Collection[references.Resource]:
    resources: set[references.Resource] = set()
    if groups is None or set(groups) - {''}:
        rsp = await api.get('/apis', settings=settings, logger=logger)
        items = [d for d in rsp['groups'] if groups is None or d['name'] in groups]
        coros = {
            _read_version(
                url=f'/apis/{group_dat["name"]}/{version["version"]}',
                group=group_dat['name'],
                version=version['version'],
                preferred=version['version'] == group_dat.get('preferredVersion', {}).get('version'),
                settings=settings,
                logger=logger,
            )
            for group_dat in items
            for version in group_dat['versions']
        }
        for coro in asyncio.as_completed(coros):
            resources.update(await coro)
    return resources


async def _read_version(
        *,
        url: str,
        group: str,
        version: str,
        preferred: bool,
        settings: configuration.ControllerSettings,
        logger: typedefs.Logger,
) -> Collection[references.Resource]:
    try:
        rsp = await api.get(url, settings=settings, logger=logger)
    except errors.APINotFoundError:
        # The group/version can vanish between the listing of groups and the reading of it.
        return set()
    else:
        return {
            references.Resource(
                group=group,
                version=version,
                plural=resource['name'],
                kind=resource['kind'],
                namespaced=resource['namespaced'],
                preferred=preferred,
                verbs=frozenset(resource.get('verbs') or []),
            )
            for resource in rsp.get('resources', [])
            if '/' not in resource['name']
        }
