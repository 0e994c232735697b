"""
All the structures needed for Kubernetes patching.

Currently, it is implemented via a JSON merge-patch (RFC 7386),
i.e. a simple dictionary with field overrides, and ``None`` for field deletions.

A patch can be made conditional: with the observed ``resourceVersion``
in its metadata, the API server applies it only if the object was not
modified since it was observed, and fails with HTTP 409 Conflict otherwise.
This is the optimistic-concurrency check used for all finalizer changes.
"""
from typing import Any

from crontrigger._cogs.structs import bodies


class Patch(dict[str, Any]):

    def require_version(self, body: bodies.RawBody) -> None:
        """ Make the patch conditional on the body's observed resource version. """
        resource_version = bodies.get_resource_version(body)
        if resource_version is not None:
            self.setdefault('metadata', {})['resourceVersion'] = resource_version
