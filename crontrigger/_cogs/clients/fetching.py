from collections.abc import Collection, Mapping

from crontrigger._cogs.clients import api, errors
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import bodies, references


async def read_obj(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """
    Read a single object live from the API, or ``None`` if it does not exist.
    """
    try:
        body: bodies.RawBody = await api.get(
            url=resource.get_url(namespace=namespace, name=name),
            settings=settings,
            logger=logger,
        )
    except errors.APINotFoundError:
        return None
    return body


async def list_objs(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        labels: Mapping[str, str] | None = None,
        logger: typedefs.Logger,
) -> tuple[Collection[bodies.RawBody], str | None]:
    """
    List the objects of specific resource type, optionally filtered by labels.

    The cluster-scoped call is used if the resource itself is cluster-scoped,
    or if the controller serves all namespaces. Otherwise, the namespace-scoped
    call is used.

    The listed items lack their ``kind`` & ``apiVersion``: they are restored
    from the list's own fields, so that the items look as if read one by one.
    """
    params = {'labelSelector': make_label_selector(labels)} if labels else None
    rsp = await api.get(
        url=resource.get_url(namespace=namespace, params=params),
        logger=logger,
        settings=settings,
    )

    items: list[bodies.RawBody] = []
    resource_version = rsp.get('metadata', {}).get('resourceVersion', None)
    for item in rsp.get('items', []):
        if 'kind' in rsp:
            item.setdefault('kind', rsp['kind'][:-4] if rsp['kind'][-4:] == 'List' else rsp['kind'])
        if 'apiVersion' in rsp:
            item.setdefault('apiVersion', rsp['apiVersion'])
        items.append(item)

    return items, resource_version


def make_label_selector(labels: Mapping[str, str]) -> str:
    return ','.join(f'{key}={val}' for key, val in sorted(labels.items()))
