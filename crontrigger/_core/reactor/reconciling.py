"""
The reconciliation of the triggers: the core state machine and its workers.

The reconciler is invoked with a trigger's key only. It re-reads the trigger
from the informer's cache, computes the trigger's state from the observed
fields (the deletion timestamp & the finalizer), and makes the one transition
that corresponds to that state. Every transition is idempotent: it either adds
or removes a marker, or ensures a deterministically named cron-job. Therefore,
re-applying the reconciliation from scratch always converges, regardless of
how many times and in what order the notifications arrived.

The workers pull the keys from the work dispatcher and apply the retry policy:
the temporary errors are re-queued with rate-limiting up to the retry ceiling,
the permanent errors and the exhausted retries are reported and forgotten.
"""
import asyncio
import dataclasses
import enum
import logging
from collections.abc import Mapping
from typing import Any

from crontrigger._cogs.aiokits import aiotasks
from crontrigger._cogs.clients import patching
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import bodies, finalizers, patches, references
from crontrigger._core.actions import cronjobs, loggers
from crontrigger._core.engines import reporting
from crontrigger._core.reactor import dispatching, errors, informers, versioning

logger = logging.getLogger(__name__)


class TriggerState(enum.Enum):
    UNKNOWN = enum.auto()
    ACTIVE_NO_FINALIZER = enum.auto()
    ACTIVE_FINALIZED = enum.auto()
    DELETING_FINALIZED = enum.auto()
    DELETING_NO_FINALIZER = enum.auto()


def get_trigger_state(body: bodies.RawBody | None, *, finalizer: str) -> TriggerState:
    if body is None:
        return TriggerState.UNKNOWN
    deleting = finalizers.is_deletion_ongoing(body)
    blocked = finalizers.is_deletion_blocked(body, finalizer)
    match deleting, blocked:
        case False, False:
            return TriggerState.ACTIVE_NO_FINALIZER
        case False, True:
            return TriggerState.ACTIVE_FINALIZED
        case True, True:
            return TriggerState.DELETING_FINALIZED
        case _:
            return TriggerState.DELETING_NO_FINALIZER


@dataclasses.dataclass(frozen=True)
class TriggerSpec:
    function_name: str
    schedule: str
    payload: Any = None


def parse_trigger(body: bodies.RawBody) -> TriggerSpec:
    spec = body.get('spec') or {}
    if not isinstance(spec, Mapping):
        raise errors.MisconfigurationError(f"The trigger's spec is not a mapping: {spec!r}")
    function_name = spec.get('function-name')
    schedule = spec.get('schedule')
    if not function_name or not isinstance(function_name, str):
        raise errors.MisconfigurationError("The trigger has no function name in spec.function-name.")
    if not schedule or not isinstance(schedule, str):
        raise errors.MisconfigurationError("The trigger has no schedule in spec.schedule.")
    return TriggerSpec(function_name=function_name, schedule=schedule, payload=spec.get('payload'))


class Reconciler:
    """
    Converge the cluster state to a single trigger's declared intent.
    """

    def __init__(
            self,
            *,
            triggers: informers.ObjectLookup,
            functions: informers.ObjectLookup,
            resolver: versioning.Resolver,
            settings: configuration.ControllerSettings,
    ) -> None:
        super().__init__()
        self._triggers = triggers
        self._functions = functions
        self._resolver = resolver
        self._settings = settings

    async def __call__(self, key: str) -> TriggerState:
        try:
            namespace, name = references.split_key(key)
        except ValueError as e:
            raise errors.MisconfigurationError(str(e)) from e

        body = self._triggers.get(key)
        state = get_trigger_state(body, finalizer=self._settings.resources.finalizer)
        logger = loggers.ObjectLogger(body=body, namespace=namespace, name=name,
                                      kind=self._settings.resources.trigger_kind)

        match state:
            case TriggerState.UNKNOWN:
                logger.debug("The trigger is not found; it is assumed to be deleted.")
            case TriggerState.ACTIVE_NO_FINALIZER if body is not None:
                await self._add_finalizer(body, logger=logger)
            case TriggerState.ACTIVE_FINALIZED if body is not None:
                await self._ensure(body, logger=logger)
            case TriggerState.DELETING_FINALIZED if body is not None:
                await self._remove_finalizer(body, logger=logger)
            case TriggerState.DELETING_NO_FINALIZER:
                logger.debug("The trigger is being deleted; nothing to do.")
        return state

    async def _add_finalizer(self, body: bodies.RawBody, *, logger: typedefs.Logger) -> None:
        patch = patches.Patch()
        finalizers.block_deletion(body=body, patch=patch, finalizer=self._settings.resources.finalizer)
        patch.require_version(body)
        await self._patch(self._settings.resources.triggers, body, patch, logger=logger)
        logger.debug("The trigger's finalizer is added.")

    async def _remove_finalizer(self, body: bodies.RawBody, *, logger: typedefs.Logger) -> None:
        # The cron-job is owned by the trigger and is deleted by the garbage collector.
        patch = patches.Patch()
        finalizers.allow_deletion(body=body, patch=patch, finalizer=self._settings.resources.finalizer)
        patch.require_version(body)
        await self._patch(self._settings.resources.triggers, body, patch, logger=logger)
        logger.info("The trigger's finalizer is removed; the deletion can proceed.")

    async def _ensure(self, body: bodies.RawBody, *, logger: typedefs.Logger) -> None:
        spec = parse_trigger(body)
        namespace = bodies.get_namespace(body)

        function_key = references.make_key(namespace, spec.function_name)
        function = self._functions.get(function_key)
        if function is None:
            raise errors.DependencyNotFoundError(f"The function {function_key!r} is not found.")
        if finalizers.is_deletion_ongoing(function):
            raise errors.DependencyNotFoundError(f"The function {function_key!r} is being deleted.")

        resource = await self._resolver.resolve(self._settings.resources.workload_plural, logger=logger)
        try:
            desired = cronjobs.build_cronjob(
                trigger=body,
                function=function,
                schedule=spec.schedule,
                resource=resource,
                settings=self._settings,
            )
        except ValueError as e:
            raise errors.MisconfigurationError(str(e)) from e

        await cronjobs.ensure_cronjob(
            desired=desired,
            resource=resource,
            settings=self._settings,
            logger=logger,
        )

        if not finalizers.is_deletion_blocked(function, self._settings.resources.finalizer):
            patch = patches.Patch()
            finalizers.block_deletion(body=function, patch=patch,
                                      finalizer=self._settings.resources.finalizer)
            patch.require_version(function)
            await self._patch(self._settings.resources.functions, function, patch, logger=logger)
            logger.debug(f"The function {function_key!r} is marked as a dependency.")

    async def _patch(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
            patch: patches.Patch,
            *,
            logger: typedefs.Logger,
    ) -> None:
        name = bodies.get_name(body)
        if not name:
            raise errors.MisconfigurationError("The object has no name.")
        patched = await patching.patch_obj(
            resource=resource,
            namespace=bodies.get_namespace(body),
            name=name,
            patch=patch,
            settings=self._settings,
            logger=logger,
        )
        if patched is None:
            logger.debug(f"The {resource.plural} object {name!r} is already gone; not patched.")


async def process_item(
        key: str,
        *,
        queue: dispatching.WorkQueue[str],
        reconciler: Reconciler,
        reporter: reporting.ErrorReporter,
        settings: configuration.ControllerSettings,
) -> None:
    """
    Reconcile one key and decide its fate: forget it, retry it, or give it up.

    The queue's ``done()`` is not called here: it is the caller's duty.
    """
    try:
        await reconciler(key)
    except asyncio.CancelledError:
        raise
    except errors.PermanentError as e:
        queue.forget(key)
        reporter.report(key, e, gave_up=True, logger=logger)
    except Exception as e:
        requeues = queue.num_requeues(key)
        if requeues < settings.queueing.max_retries:
            logger.warning(f"Reconciliation of {key} has failed (retry #{requeues + 1} "
                           f"of {settings.queueing.max_retries} is scheduled): {e!r}")
            queue.add_rate_limited(key)
        else:
            queue.forget(key)
            reporter.report(key, e, gave_up=True, logger=logger)
    else:
        queue.forget(key)


async def process_next_item(
        *,
        queue: dispatching.WorkQueue[str],
        reconciler: Reconciler,
        reporter: reporting.ErrorReporter,
        settings: configuration.ControllerSettings,
) -> bool:
    """ Process one key from the queue; return ``False`` once the queue is shut down. """
    key = await queue.get()
    if key is dispatching.EOS.token:
        return False
    try:
        await process_item(key, queue=queue, reconciler=reconciler, reporter=reporter, settings=settings)
    finally:
        queue.done(key)
    return True


async def worker(
        *,
        queue: dispatching.WorkQueue[str],
        reconciler: Reconciler,
        reporter: reporting.ErrorReporter,
        settings: configuration.ControllerSettings,
) -> None:
    while await process_next_item(queue=queue, reconciler=reconciler,
                                  reporter=reporter, settings=settings):
        pass


async def run_workers(
        *,
        queue: dispatching.WorkQueue[str],
        reconciler: Reconciler,
        reporter: reporting.ErrorReporter,
        settings: configuration.ControllerSettings,
) -> None:
    """
    Run the pool of workers until cancelled; then stop them gracefully.

    On cancellation, the queue is shut down, so the idle workers exit at once,
    and the busy workers exit after their current key is reconciled.
    The workers that do not finish in time are cancelled.
    """
    tasks = [
        asyncio.create_task(
            worker(queue=queue, reconciler=reconciler, reporter=reporter, settings=settings),
            name=f"worker #{idx}",
        )
        for idx in range(max(1, settings.queueing.workers))
    ]
    logger.debug(f"Started {len(tasks)} worker(s).")
    try:
        await asyncio.wait(tasks)
    finally:
        queue.shut_down()
        _, pending = await aiotasks.wait(tasks, timeout=settings.queueing.exit_timeout)
        if pending:
            logger.warning(f"{len(pending)} worker(s) did not finish in time; cancelling them.")
        await aiotasks.stop(pending, title="worker", quiet=True, logger=logger)
