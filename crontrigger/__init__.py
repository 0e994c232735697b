"""
The main crontrigger module for all the exported functions & classes.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the controller's top-level interface,
# as it is seen by the embedding code and the tests. So, we export the individual names.

from crontrigger._cogs.configs.configuration import (
    ControllerSettings,
)
from crontrigger._cogs.helpers.typedefs import (
    Logger,
)
from crontrigger._cogs.helpers.versions import (
    version as __version__,
)
from crontrigger._cogs.structs.bodies import (
    RawBody,
    RawEvent,
    build_owner_reference,
)
from crontrigger._cogs.structs.credentials import (
    LoginError,
    ConnectionInfo,
)
from crontrigger._cogs.structs.references import (
    Kind,
    Resource,
)
from crontrigger._core.actions.loggers import (
    LogFormat,
    ObjectLogger,
    configure,
)
from crontrigger._core.reactor.dispatching import (
    EOS,
    WorkQueue,
    ItemExponentialLimiter,
    BucketLimiter,
    MaxOfLimiter,
)
from crontrigger._core.reactor.errors import (
    PermanentError,
    TemporaryError,
    DependencyNotFoundError,
    ResourceNotServedError,
    MisconfigurationError,
)
from crontrigger._core.reactor.informers import (
    Informer,
    Notification,
    NotificationType,
)
from crontrigger._core.reactor.reconciling import (
    Reconciler,
    TriggerState,
)
from crontrigger._core.reactor.running import (
    run,
    controller,
    spawn_tasks,
    run_tasks,
)
from crontrigger._core.reactor.synchronizing import (
    Synchronizer,
)
from crontrigger._core.reactor.versioning import (
    Resolver,
)

__all__ = [
    'ControllerSettings',
    'Logger',
    'RawBody', 'RawEvent',
    'build_owner_reference',
    'LoginError', 'ConnectionInfo',
    'Kind', 'Resource',
    'LogFormat', 'ObjectLogger', 'configure',
    'EOS', 'WorkQueue',
    'ItemExponentialLimiter', 'BucketLimiter', 'MaxOfLimiter',
    'PermanentError', 'TemporaryError',
    'DependencyNotFoundError', 'ResourceNotServedError', 'MisconfigurationError',
    'Informer', 'Notification', 'NotificationType',
    'Reconciler', 'TriggerState',
    'run', 'controller', 'spawn_tasks', 'run_tasks',
    'Synchronizer',
    'Resolver',
]
