"""
All configuration flags, options, settings to fine-tune the controller.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

In this project, they are called *"settings"* (plural).
Combined, they form a *"configuration"* (singular).

Some of the settings are flags, some are scalars, some are optional,
some are not (but all of them have reasonable defaults). The settings
are constructed once and passed explicitly to all the routines that
need them, so that the tests can use small retry ceilings & short delays.
"""
import dataclasses
from collections.abc import Iterable

from crontrigger._cogs.structs import references


@dataclasses.dataclass
class ProcessSettings:
    """
    Settings for the controller's OS process: e.g. when started via CLI.
    """

    ultimate_exiting_timeout: float | None = 10 * 60
    """
    How long to wait for the graceful exit before SIGKILL'ing the controller.

    This is the last resort to make the controller exit instead of getting stuck
    at exiting due to bugs, threads left, in-flight API calls not finishing, etc.

    The countdown goes from when a graceful signal arrives (SIGTERM/SIGINT),
    regardless of what is happening in the graceful exiting routine.

    Measured in seconds. Set to `None` to disable (on your own risk).
    """


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: float | None = 5 * 60  # == aiohttp.client.DEFAULT_TIMEOUT
    """
    A timeout for the API requests (except watching; see `WatchingSettings`).
    """

    connect_timeout: float | None = None
    """
    A timeout for the connection establishing of the API requests.
    """

    error_backoffs: Iterable[float] = (1, 1, 2, 3, 5, 8)
    """
    Backoff intervals in case of retryable API errors (5xx, connection errors).

    Once the backoffs are exhausted, the error is escalated to the caller:
    e.g. to the reconciler, which re-queues the key with its own rate-limiting.
    Set to ``()`` to disable the request-level retries completely.
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: float | None = None
    """
    The maximum duration of one streaming request. Patched in some tests.
    If ``None``, then obey the server-side timeouts (they seem to be random).
    """

    client_timeout: float | None = None
    """
    An HTTP/HTTPS session timeout to use in watch requests.
    """

    connect_timeout: float | None = None
    """
    An HTTP/HTTPS connection timeout to use in watch requests.
    """

    reconnect_backoff: float = 0.1
    """
    How long should a pause be between watch requests (to prevent API flooding).
    """

    resync_period: float | None = 5 * 60
    """
    How often all the cached objects are re-delivered as updates.

    The periodic resync is a safety net for the reactions that are not retried
    on their own (e.g. the removal of the function's finalizer): if they failed,
    they are re-attempted on the next resync even if the object did not change.

    Set to ``None`` or ``0`` to disable the resyncs.
    """


@dataclasses.dataclass
class QueueingSettings:
    """
    Settings for the work dispatcher: the workers, the retries, the rate-limits.
    """

    workers: int = 1
    """
    How many keys can be reconciled concurrently. A single key is never
    reconciled concurrently with itself, regardless of this number.
    """

    max_retries: int = 5
    """
    How many times a failing key is re-queued before it is given up.

    Once given up, the key is forgotten and the error is reported.
    It will be reconciled again on the next notification of its object.
    """

    base_delay: float = 0.005
    """
    The per-key retry delay after the first failure; it doubles on every failure.
    """

    max_delay: float = 1000
    """
    The cap for the per-key exponentially growing retry delay.
    """

    qps: float = 10
    """
    The overall rate of retries for all keys (a token bucket's refill rate).
    """

    burst: int = 100
    """
    The overall burst of retries for all keys (a token bucket's capacity).
    """

    exit_timeout: float = 10.0
    """
    How long the workers are given to finish the in-flight keys on exit
    before they are cancelled. The queued but not started keys are dropped.
    """


@dataclasses.dataclass
class DiscoverySettings:

    cache_ttl: float = 60.0
    """
    For how long the resolved API versions are reused without rediscovery.

    The cluster can be upgraded while the controller is running, and the served
    API versions can change, so the discovery results are not cached forever.
    Set to ``0`` to rediscover on every resolution.
    """


@dataclasses.dataclass
class ResourcesSettings:
    """
    The names of the watched and derived resources, and the controller's markers.
    """

    group: str = 'kubeless.io'
    version: str = 'v1beta1'
    function_plural: str = 'functions'
    function_kind: str = 'Function'
    trigger_plural: str = 'cronjobtriggers'
    trigger_kind: str = 'CronJobTrigger'
    workload_plural: str = 'cronjobs'
    workload_kind: str = 'CronJob'

    finalizer: str = 'kubeless.io/cronjobtrigger'
    """
    A string marker to be put on a list of finalizers of both the triggers
    and the functions to block them from being deleted without the controller's
    permission (i.e. until the derived cron-jobs are handled).
    """

    workload_prefix: str = 'trigger-'
    """
    The prefix of the derived cron-jobs' names; the suffix is the trigger's name.
    """

    creator_label: str = 'kubeless'
    """
    The value of the ``created-by`` label on the derived cron-jobs.
    """

    runner_image: str = 'kubeless/unzip'
    """
    The image of the cron-job's container that calls the function's service.
    """

    function_port: int = 8080
    """
    The function's service port if the function does not declare its own.
    """

    event_namespace: str = 'cronjobtrigger.kubeless.io'
    """
    The value of the ``event-namespace`` header in the function calls.
    """

    @property
    def functions(self) -> references.Resource:
        return references.Resource(self.group, self.version, self.function_plural,
                                   kind=self.function_kind, namespaced=True)

    @property
    def triggers(self) -> references.Resource:
        return references.Resource(self.group, self.version, self.trigger_plural,
                                   kind=self.trigger_kind, namespaced=True)


@dataclasses.dataclass
class ControllerSettings:
    process: ProcessSettings = dataclasses.field(default_factory=ProcessSettings)
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
    queueing: QueueingSettings = dataclasses.field(default_factory=QueueingSettings)
    discovery: DiscoverySettings = dataclasses.field(default_factory=DiscoverySettings)
    resources: ResourcesSettings = dataclasses.field(default_factory=ResourcesSettings)
