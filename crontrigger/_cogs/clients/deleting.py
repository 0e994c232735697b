from crontrigger._cogs.clients import api, errors
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import references


async def delete_obj(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        logger: typedefs.Logger,
) -> bool:
    """
    Delete an object; return ``True`` if it was deleted, ``False`` if absent.

    The absence of the object is not an error: the deletion is idempotent.
    The dependants are deleted in the background by the cluster's garbage
    collector, not awaited here.
    """
    try:
        await api.delete(
            url=resource.get_url(namespace=namespace, name=name),
            payload={'kind': 'DeleteOptions', 'apiVersion': 'v1', 'propagationPolicy': 'Background'},
            settings=settings,
            logger=logger,
        )
    except errors.APINotFoundError:
        return False
    return True
