import dataclasses
import enum
import urllib.parse
from collections.abc import Iterator, Mapping
from typing import NewType

# A specific really existing addressable namespace (at least, the one assumed to be so).
NamespaceName = NewType('NamespaceName', str)

# A namespace reference usable in the API calls. `None` means cluster-wide API calls.
Namespace = NamespaceName | None

# A cache/queue key of an object: "namespace/name", or just "name" for cluster-scoped objects.
ObjectKey = NewType('ObjectKey', str)


class Kind(enum.Enum):
    """
    The kinds of objects the controller deals with.

    Used as an explicit tag on notifications and lookups, so that the consumers
    never have to guess the object's kind from the payload's fields.
    """
    FUNCTION = 'function'
    TRIGGER = 'trigger'
    WORKLOAD = 'workload'


def make_key(namespace: str | None, name: str) -> ObjectKey:
    return ObjectKey(f'{namespace}/{name}' if namespace else name)


def split_key(key: str) -> tuple[Namespace, str]:
    """
    Split the object key into the namespace and the name.

    Malformed keys (with more than one slash, or with empty parts)
    are reported with :class:`ValueError`.
    """
    parts = key.split('/')
    if len(parts) == 1 and parts[0]:
        return None, parts[0]
    elif len(parts) == 2 and parts[0] and parts[1]:
        return NamespaceName(parts[0]), parts[1]
    else:
        raise ValueError(f"Unexpected key format: {key!r}")


@dataclasses.dataclass(frozen=True, eq=False, repr=False)
class Resource:
    """
    A reference to a very specific custom or built-in resource kind.

    It is used to form the K8s API URLs. Generally, K8s API only needs
    an API group, an API version, and a plural name of the resource.
    All other names are remembered for logging and for discovery matching.
    """

    group: str
    """
    The resource's API group; e.g. ``"kubeless.io"``, ``"batch"``.
    For Core v1 API resources, an empty string: ``""``.
    """

    version: str
    """
    The resource's API version; e.g. ``"v1"``, ``"v1beta1"``, etc.
    """

    plural: str
    """
    The resource's plural name; e.g. ``"cronjobs"``, ``"functions"``.
    It is used as an API endpoint, together with API group & version.
    """

    kind: str | None = None
    """
    The resource's kind (as in YAML files); e.g. ``"CronJob"``, ``"Function"``.
    """

    namespaced: bool | None = None
    """
    Whether the resource is namespaced (``True``) or cluster-scoped (``False``).
    """

    preferred: bool = True
    """
    Whether the resource belong to a "preferred" API version of its group.
    """

    verbs: frozenset[str] = frozenset()
    """
    All available verbs for the resource, as supported by K8s API;
    e.g., ``{"list", "watch", "create", "update", "delete", "patch"}``.
    """

    def __hash__(self) -> int:
        return hash((self.group, self.version, self.plural))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Resource):
            self_tuple = (self.group, self.version, self.plural)
            other_tuple = (other.group, other.version, other.plural)
            return self_tuple == other_tuple
        else:
            return NotImplemented

    def __repr__(self) -> str:
        return f'{self.plural}.{self.version}.{self.group}'.strip('.')

    def __iter__(self) -> Iterator[str]:
        return iter((self.group, self.version, self.plural))

    @property
    def api_version(self) -> str:
        """ The group/version as used in ``apiVersion`` fields: ``"batch/v1"``. """
        return f'{self.group}/{self.version}' if self.group else self.version

    def get_url(
            self,
            *,
            server: str | None = None,
            namespace: Namespace = None,
            name: str | None = None,
            subresource: str | None = None,
            params: Mapping[str, str] | None = None,
    ) -> str:
        """
        Build a URL to be used with K8s API.

        If the namespace is not set, a cluster-wide URL is returned.
        For cluster-scoped resources, the namespace is ignored.

        If the name is not set, the URL for the resource list is returned.
        Otherwise (if set), the URL for the individual resource is returned.

        Params go to the query parameters (``?param1=value1&param2=value2...``).
        """
        if subresource is not None and name is None:
            raise ValueError("Subresources can be used only with specific resources by their name.")
        if not self.namespaced and namespace is not None:
            raise ValueError("Specific namespaces are not supported for cluster-scoped resources.")
        if self.namespaced and namespace is None and name is not None:
            raise ValueError("Specific namespaces are required for specific namespaced resources.")

        parts: list[str | None] = [
            '/api' if self.group == '' and self.version == 'v1' else '/apis',
            self.group,
            self.version,
            'namespaces' if self.namespaced and namespace is not None else None,
            namespace if self.namespaced and namespace is not None else None,
            self.plural,
            name,
            subresource,
        ]

        query = urllib.parse.urlencode(params, encoding='utf-8') if params else ''
        path = '/'.join([part for part in parts if part])
        url = path + ('?' if query else '') + query
        return url if server is None else server.rstrip('/') + '/' + url.lstrip('/')
