"""
The reactions to the functions' lifecycle: the mirror side of the triggers.

When a function is being deleted and still carries the controller's marker,
all the cron-jobs that call that function are deleted, and then the marker
is removed, so that the function's deletion can proceed. This happens even if
the function's triggers were already removed out of band.

The reaction is not queued: it is invoked directly from the notifications.
A failed reaction is reported and is re-attempted on the next notification
of the same function (including the periodic resyncs of the informer).

The notifications of the functions' creation and changes are also used
to re-queue the triggers that refer to those functions, so that their
cron-jobs converge to the function's new labels, port, or timeout.
"""
import asyncio
import logging
from collections.abc import Mapping

from crontrigger._cogs.clients import deleting, fetching, patching
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.helpers import typedefs
from crontrigger._cogs.structs import bodies, finalizers, patches, references
from crontrigger._core.actions import cronjobs, loggers
from crontrigger._core.engines import reporting
from crontrigger._core.reactor import dispatching, informers, versioning

logger = logging.getLogger(__name__)


class Synchronizer:

    def __init__(
            self,
            *,
            resolver: versioning.Resolver,
            reporter: reporting.ErrorReporter,
            settings: configuration.ControllerSettings,
    ) -> None:
        super().__init__()
        self._resolver = resolver
        self._reporter = reporter
        self._settings = settings

    async def __call__(self, notification: informers.Notification) -> None:
        if notification.type is informers.NotificationType.DELETED or notification.new is None:
            return

        body = notification.new
        finalizer = self._settings.resources.finalizer
        if not finalizers.is_deletion_ongoing(body) or not finalizers.is_deletion_blocked(body, finalizer):
            return

        logger = loggers.ObjectLogger(body=body)
        try:
            await self.release(body, logger=logger)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._reporter.report(notification.key, e, gave_up=False, logger=logger)

    async def release(self, body: bodies.RawBody, *, logger: typedefs.Logger) -> None:
        """
        Delete the function's cron-jobs, then remove the function's marker.
        """
        name = bodies.get_name(body)
        namespace = bodies.get_namespace(body)
        if not name:
            raise ValueError(f"The function has no name: {body!r}")

        resource = await self._resolver.resolve(self._settings.resources.workload_plural, logger=logger)
        objs, _ = await fetching.list_objs(
            resource=resource,
            namespace=namespace,
            labels=cronjobs.get_workload_labels(name, settings=self._settings),
            settings=self._settings,
            logger=logger,
        )
        names = [obj_name for obj in objs if (obj_name := bodies.get_name(obj))]

        # The cron-jobs of the older controllers were named after the function, not the trigger.
        legacy_name = cronjobs.get_workload_name(name, settings=self._settings)
        if legacy_name not in names:
            legacy = await fetching.read_obj(
                resource=resource,
                namespace=namespace,
                name=legacy_name,
                settings=self._settings,
                logger=logger,
            )
            if legacy is not None and bodies.get_labels(legacy).get(cronjobs.FUNCTION_LABEL, name) == name:
                names.append(legacy_name)

        for workload_name in names:
            deleted = await deleting.delete_obj(
                resource=resource,
                namespace=namespace,
                name=workload_name,
                settings=self._settings,
                logger=logger,
            )
            if deleted:
                logger.info(f"Cron-job {workload_name!r} is deleted.")
            else:
                logger.debug(f"Cron-job {workload_name!r} is already gone.")

        patch = patches.Patch()
        finalizers.allow_deletion(body=body, patch=patch, finalizer=self._settings.resources.finalizer)
        patch.require_version(body)
        await patching.patch_obj(
            resource=self._settings.resources.functions,
            namespace=namespace,
            name=name,
            patch=patch,
            settings=self._settings,
            logger=logger,
        )
        logger.info("The function's marker is removed; the deletion can proceed.")


def enqueue_dependents(
        notification: informers.Notification,
        *,
        triggers: informers.ObjectLookup,
        queue: dispatching.WorkQueue[str],
) -> None:
    """
    Re-queue the triggers that refer to the added or changed function.
    """
    if notification.type not in (informers.NotificationType.ADDED, informers.NotificationType.UPDATED):
        return
    body = notification.body
    name = bodies.get_name(body)
    namespace = bodies.get_namespace(body)
    for trigger in triggers.list(namespace=namespace):
        spec = trigger.get('spec')
        if isinstance(spec, Mapping) and spec.get('function-name') == name:
            queue.add(references.make_key(namespace, bodies.get_name(trigger) or ''))
