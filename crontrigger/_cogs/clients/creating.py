from typing import cast

from crontrigger._cogs.clients import api
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import bodies, references


async def create_obj(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        body: bodies.RawBody,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Create an object; the namespace & name are taken from the body's metadata.

    If the object already exists, :class:`errors.APIConflictError` is raised.
    """
    namespace = cast(references.Namespace, body.get('metadata', {}).get('namespace'))
    created_body: bodies.RawBody = await api.post(
        url=resource.get_url(namespace=namespace),
        payload=body,
        logger=logger,
        settings=settings,
    )
    return created_body
