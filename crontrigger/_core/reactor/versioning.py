"""
The runtime resolution of the API group/version for a resource's plural name.

The same logical resource can be served under different group/versions
on different clusters (e.g. cron-jobs moved from ``batch/v2alpha1``
through ``batch/v1beta1`` to ``batch/v1``), so the version is never hard-coded:
it is looked up in the cluster's discovery documents.

The resolutions are cached for a short time only, since the cluster can be
upgraded while the controller is running.
"""
import asyncio
import logging
import re
import time
from collections.abc import Callable, Collection, Iterable

from crontrigger._cogs.clients import scanning
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import references
from crontrigger._core.reactor import errors

logger = logging.getLogger(__name__)

K8S_VERSION_PATTERN = re.compile(r'^v(\d+)(?:(alpha|beta)(\d+))?$')


def version_priority(version: str) -> tuple[int, int, int]:
    """
    A sorting key for K8s API versions, from the most to the least stable.

    The GA versions go first, then betas, then alphas, each by their numbers
    descending; the non-conventional versions go last. For example:
    ``v2``, ``v1``, ``v1beta2``, ``v1beta1``, ``v2alpha1``, ``foo``.
    """
    match = K8S_VERSION_PATTERN.match(version)
    if match is None:
        return (3, 0, 0)
    major, stage, minor = match.groups()
    stage_rank = 0 if stage is None else 1 if stage == 'beta' else 2
    return (stage_rank, -int(major), -int(minor or 0))


def select_resource(
        resources: Iterable[references.Resource],
        plural: str,
) -> references.Resource | None:
    """
    Select the best-served resource with the plural name, if there is any.

    The preferred versions of their groups are chosen first. Then, the built-in
    groups (which have no dots, unlike the custom resources' groups) are chosen
    over the custom groups. Then, the most stable versions are chosen.
    """
    candidates = [resource for resource in resources if resource.plural == plural]
    candidates.sort(key=lambda r: (not r.preferred, '.' in r.group, version_priority(r.version), r.group))
    return candidates[0] if candidates else None


class Resolver:
    """
    Resolve the resource plurals to the currently served resources.

    The resolutions are cached for ``settings.discovery.cache_ttl`` seconds;
    the failures are never cached.
    """

    def __init__(
            self,
            *,
            settings: configuration.ControllerSettings,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._settings = settings
        self._clock = clock
        self._cache: dict[tuple[str, frozenset[str] | None], tuple[float, references.Resource]] = {}
        self._lock = asyncio.Lock()

    def invalidate(self, plural: str | None = None) -> None:
        if plural is None:
            self._cache.clear()
        else:
            for key in [key for key in self._cache if key[0] == plural]:
                del self._cache[key]

    async def resolve(
            self,
            plural: str,
            *,
            groups: Collection[str] | None = None,
            logger: typedefs.Logger = logger,
    ) -> references.Resource:
        """
        Resolve the plural to a resource, or fail with :class:`ResourceNotServedError`.
        """
        async with self._lock:
            now = self._clock()
            key = (plural, None if groups is None else frozenset(groups))
            cached = self._cache.get(key)
            if cached is not None and now - cached[0] < self._settings.discovery.cache_ttl:
                return cached[1]

            resources = await scanning.scan_resources(
                groups=groups,
                settings=self._settings,
                logger=logger,
            )
            resource = select_resource(resources, plural)
            if resource is None:
                self._cache.pop(key, None)
                raise errors.ResourceNotServedError(f"No API group serves the resource {plural!r}.")

            if cached is None or cached[1] != resource:
                logger.debug(f"Resolved {plural!r} to {resource.api_version!r}.")
            self._cache[key] = (now, resource)
            return resource
