from crontrigger._cogs.clients import api, errors
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import bodies, patches, references


async def patch_obj(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        patch: patches.Patch,
        logger: typedefs.Logger,
) -> bodies.RawBody | None:
    """
    Patch an object with a JSON merge-patch.

    If the patch carries ``metadata.resourceVersion``, the patch is conditional:
    the API rejects it with HTTP 409 (:class:`errors.APIConflictError`)
    if the object has been modified since that version was observed.

    Returns the patched body, or ``None`` if the object is absent
    (as detected by trying to patch it and failing with HTTP 404).
    """
    try:
        patched_body: bodies.RawBody = await api.patch(
            url=resource.get_url(namespace=namespace, name=name),
            payload=dict(patch),
            settings=settings,
            logger=logger,
        )
    except errors.APINotFoundError:
        return None
    return patched_body


async def replace_obj(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        body: bodies.RawBody,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Replace an object entirely (PUT).

    The body must contain the observed ``metadata.resourceVersion``: the API
    rejects the replacement with HTTP 409 if the object was modified since then.
    Unlike patching, the absence of the object is escalated as an error.
    """
    name = bodies.get_name(body)
    if not name:
        raise ValueError(f"Cannot replace an object without a name: {body!r}")
    replaced_body: bodies.RawBody = await api.put(
        url=resource.get_url(namespace=bodies.get_namespace(body), name=name),
        payload=body,
        settings=settings,
        logger=logger,
    )
    return replaced_body
