"""
All the structures coming from/to the Kubernetes API.

The objects are kept as plain JSON-decoded dicts, as received from the API.
For stricter type-checking, they are detailed to the per-field level
(via `TypedDict`), but only for the fields used by the controller.
All non-used payload falls into `Any`, and is not type-checked.

The accessor functions below are the only places where the raw structure
of the bodies is interpreted, so that the reconciliation routines
operate with meaningful values rather than with nested dict lookups.
"""
import datetime
from collections.abc import Mapping
from typing import Any, cast

import iso8601
from typing_extensions import Literal, TypedDict

from crontrigger._cogs.structs import references

Labels = Mapping[str, str]

# ``None`` is used for the listing, when the pseudo-watch-stream is simulated.
RawInputType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED', 'ERROR']
RawEventType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED']


class RawMeta(TypedDict, total=False):
    uid: str
    name: str
    namespace: str
    labels: Labels
    annotations: Mapping[str, str]
    finalizers: list[str]
    ownerReferences: list['OwnerReference']
    resourceVersion: str
    deletionTimestamp: str
    creationTimestamp: str


class RawBody(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: RawMeta
    spec: Mapping[str, Any]
    status: Mapping[str, Any]


# A special payload for type==ERROR (this is not a connection or client error).
class RawError(TypedDict, total=False):
    apiVersion: str     # usually: Literal['v1']
    kind: str           # usually: Literal['Status']
    metadata: Mapping[Any, Any]
    code: int
    reason: str
    status: str
    message: str


# As received from the stream before processing the errors and special cases.
class RawInput(TypedDict, total=True):
    type: RawInputType
    object: RawBody | RawError


# As passed to the informers after processing the errors and special cases.
class RawEvent(TypedDict, total=True):
    type: RawEventType
    object: RawBody


class OwnerReference(TypedDict, total=False):
    controller: bool
    blockOwnerDeletion: bool
    apiVersion: str
    kind: str
    name: str
    uid: str


def get_name(body: RawBody) -> str | None:
    return body.get('metadata', {}).get('name')


def get_namespace(body: RawBody) -> references.Namespace:
    return cast(references.Namespace, body.get('metadata', {}).get('namespace'))


def get_key(body: RawBody) -> references.ObjectKey:
    name = get_name(body)
    if not name:
        raise ValueError(f"The object has no name: {body!r}")
    return references.make_key(get_namespace(body), name)


def get_labels(body: RawBody) -> Labels:
    return body.get('metadata', {}).get('labels') or {}


def get_resource_version(body: RawBody) -> str | None:
    return body.get('metadata', {}).get('resourceVersion')


def get_deletion_timestamp(body: RawBody) -> datetime.datetime | None:
    """
    Get the moment when the deletion was requested, or ``None`` if it was not.
    """
    value = body.get('metadata', {}).get('deletionTimestamp')
    return iso8601.parse_date(value) if value else None


def build_owner_reference(
        body: RawBody,
) -> OwnerReference:
    """
    Construct an owner reference object for the parent-children relationships.

    The structure needed to link the children objects to the current object as a parent.
    See https://kubernetes.io/docs/concepts/workloads/controllers/garbage-collection/

    Unlike other references, all fields are required: an owner reference
    without a UID is rejected by the API and cannot be garbage-collected.
    """
    ref = dict(
        controller=True,
        blockOwnerDeletion=True,
        apiVersion=body.get('apiVersion'),
        kind=body.get('kind'),
        name=body.get('metadata', {}).get('name'),
        uid=body.get('metadata', {}).get('uid'),
    )
    missing = [key for key, val in ref.items() if val is None or val == '']
    if missing:
        raise ValueError(f"Cannot build an owner reference without {', '.join(missing)}.")
    return cast(OwnerReference, ref)
