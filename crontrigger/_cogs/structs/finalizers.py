"""
All the functions to manipulate the object finalization and deletion.

Finalizers are used to block the actual deletion until the finalizers
are removed, meaning that the controller has done all its duties
to "release" the object (e.g. cleanups of the dependent objects).

Every dependent controller uses its own single marker: the markers are added
and removed idempotently, so the same marker is never present twice.
"""
from crontrigger._cogs.structs import bodies, patches


def is_deletion_ongoing(
        body: bodies.RawBody,
) -> bool:
    return body.get('metadata', {}).get('deletionTimestamp', None) is not None


def is_deletion_blocked(
        body: bodies.RawBody,
        finalizer: str,
) -> bool:
    finalizers = body.get('metadata', {}).get('finalizers') or []
    return finalizer in finalizers


def block_deletion(
        *,
        body: bodies.RawBody,
        patch: patches.Patch,
        finalizer: str,
) -> None:
    if not is_deletion_blocked(body=body, finalizer=finalizer):
        finalizers = body.get('metadata', {}).get('finalizers') or []
        patch.setdefault('metadata', {}).setdefault('finalizers', list(finalizers))
        patch['metadata']['finalizers'].append(finalizer)


def allow_deletion(
        *,
        body: bodies.RawBody,
        patch: patches.Patch,
        finalizer: str,
) -> None:
    if is_deletion_blocked(body=body, finalizer=finalizer):
        finalizers = body.get('metadata', {}).get('finalizers') or []
        patch.setdefault('metadata', {}).setdefault('finalizers', list(finalizers))
        while finalizer in patch['metadata']['finalizers']:
            patch['metadata']['finalizers'].remove(finalizer)
