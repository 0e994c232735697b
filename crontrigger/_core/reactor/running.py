import asyncio
import functools
import logging
import signal
import threading
from collections.abc import Collection, MutableSequence, Sequence
from typing import Any

from crontrigger._cogs.aiokits import aiotasks, aiotoggles
from crontrigger._cogs.clients import auth
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.structs import references
from crontrigger._core.engines import probing, reporting
from crontrigger._core.intents import piggybacking
from crontrigger._core.reactor import dispatching, informers, reconciling, \
                                      synchronizing, versioning

logger = logging.getLogger(__name__)


def run(
        *,
        settings: configuration.ControllerSettings | None = None,
        namespace: references.Namespace = None,
        clusterwide: bool = False,
        liveness_endpoint: str | None = None,
        context_name: str | None = None,
        connection: auth.Connection | None = None,
        stop_flag: asyncio.Event | None = None,
        ready_flag: asyncio.Event | None = None,
) -> None:
    """
    Run the whole controller synchronously.

    This function should be used to run the controller in normal sync mode.
    """
    try:
        asyncio.run(controller(
            settings=settings,
            namespace=namespace,
            clusterwide=clusterwide,
            liveness_endpoint=liveness_endpoint,
            context_name=context_name,
            connection=connection,
            stop_flag=stop_flag,
            ready_flag=ready_flag,
        ))
    except asyncio.CancelledError:
        pass


async def controller(
        *,
        settings: configuration.ControllerSettings | None = None,
        namespace: references.Namespace = None,
        clusterwide: bool = False,
        liveness_endpoint: str | None = None,
        context_name: str | None = None,
        connection: auth.Connection | None = None,
        stop_flag: asyncio.Event | None = None,
        ready_flag: asyncio.Event | None = None,
) -> None:
    """
    Run the whole controller asynchronously.

    This function should be used to run the controller in an asyncio event-loop
    if the controller is orchestrated explicitly and manually.

    It is efficiently `spawn_tasks` + `run_tasks` with some safety.
    """
    existing_tasks = await aiotasks.all_tasks()
    controller_tasks = await spawn_tasks(
        settings=settings,
        namespace=namespace,
        clusterwide=clusterwide,
        liveness_endpoint=liveness_endpoint,
        context_name=context_name,
        connection=connection,
        stop_flag=stop_flag,
        ready_flag=ready_flag,
    )
    await run_tasks(controller_tasks, ignored=existing_tasks)


async def spawn_tasks(
        *,
        settings: configuration.ControllerSettings | None = None,
        namespace: references.Namespace = None,
        clusterwide: bool = False,
        liveness_endpoint: str | None = None,
        context_name: str | None = None,
        connection: auth.Connection | None = None,
        stop_flag: asyncio.Event | None = None,
        ready_flag: asyncio.Event | None = None,
) -> Collection[aiotasks.Task]:
    """
    Spawn all the tasks needed to run the controller.

    The tasks are properly inter-connected with the synchronisation primitives.
    """
    loop = asyncio.get_running_loop()

    if clusterwide and namespace:
        raise TypeError("The controller can be either cluster-wide or namespaced, not both.")
    if not clusterwide and not namespace:
        logger.debug("No namespace is given; serving the whole cluster.")

    # All tasks of the controller are synced via these primitives and structures:
    settings = settings if settings is not None else configuration.ControllerSettings()
    connection = connection if connection is not None else auth.Connection()
    signal_flag: asyncio.Future[Any] = asyncio.Future()
    started_flag: asyncio.Event = asyncio.Event()
    synced = aiotoggles.ToggleSet(all)
    reporter = reporting.ErrorReporter()
    resolver = versioning.Resolver(settings=settings)
    queue: dispatching.WorkQueue[str] = dispatching.WorkQueue(
        limiter=dispatching.make_default_limiter(settings),
        name=settings.resources.trigger_plural,
    )
    tasks: MutableSequence[aiotasks.Task] = []

    # Global credentials for this controller, for all the API requests in all the tasks.
    if connection.info is None:
        connection.info = piggybacking.login(context_name=context_name, logger=logger)
    auth.connection_var.set(connection)

    triggers = informers.Informer(
        kind=references.Kind.TRIGGER,
        resource=settings.resources.triggers,
        namespace=namespace,
        settings=settings,
        synced=await synced.make_toggle(name=settings.resources.trigger_plural),
        handlers=[lambda notification: queue.add(notification.key)],
    )
    functions = informers.Informer(
        kind=references.Kind.FUNCTION,
        resource=settings.resources.functions,
        namespace=namespace,
        settings=settings,
        synced=await synced.make_toggle(name=settings.resources.function_plural),
        handlers=[
            synchronizing.Synchronizer(resolver=resolver, reporter=reporter, settings=settings),
            functools.partial(synchronizing.enqueue_dependents, triggers=triggers, queue=queue),
        ],
    )
    reconciler = reconciling.Reconciler(
        triggers=triggers,
        functions=functions,
        resolver=resolver,
        settings=settings,
    )

    # Few common background forever-running infrastructural tasks (irregular root tasks).
    tasks.append(asyncio.create_task(
        name="stop-flag checker",
        coro=_stop_flag_checker(
            signal_flag=signal_flag,
            stop_flag=stop_flag)))
    tasks.append(asyncio.create_task(
        name="ultimate termination",
        coro=_ultimate_termination(
            settings=settings,
            stop_flag=stop_flag)))
    tasks.append(asyncio.create_task(
        name="startup/cleanup activities",
        coro=_startup_cleanup_activities(
            root_tasks=tasks,  # used as a "live" view, populated later.
            synced=synced,
            ready_flag=ready_flag,
            started_flag=started_flag,
            connection=connection)))

    # Liveness probing -- so that Kubernetes would know that the controller is alive.
    if liveness_endpoint:
        tasks.append(aiotasks.create_guarded_task(
            name="health reporter", logger=logger,
            coro=probing.health_reporter(
                endpoint=liveness_endpoint,
                synced=synced,
                queue=queue,
                reporter=reporter)))

    # The informers fill the caches and feed the queue from the very beginning.
    tasks.append(aiotasks.create_guarded_task(
        name=f"{settings.resources.trigger_plural} informer", logger=logger,
        coro=triggers.run()))
    tasks.append(aiotasks.create_guarded_task(
        name=f"{settings.resources.function_plural} informer", logger=logger,
        coro=functions.run()))

    # The workers start only when the caches are fully populated, never on partial listings.
    tasks.append(aiotasks.create_guarded_task(
        name="dispatcher", flag=started_flag, logger=logger,
        coro=reconciling.run_workers(
            queue=queue,
            reconciler=reconciler,
            reporter=reporter,
            settings=settings)))

    # Ensure that all guarded tasks got control for a moment to enter the guard.
    await asyncio.sleep(0)

    # On Ctrl+C or pod termination, cancel all tasks gracefully.
    if threading.current_thread() is threading.main_thread():
        # Handle NotImplementedError when ran on Windows since asyncio only supports Unix signals
        try:
            loop.add_signal_handler(signal.SIGINT, signal_flag.set_result, signal.SIGINT)
            loop.add_signal_handler(signal.SIGTERM, signal_flag.set_result, signal.SIGTERM)
        except NotImplementedError:
            logger.warning("OS signals are ignored: can't add signal handler in Windows.")

    else:
        logger.warning("OS signals are ignored: running not in the main thread.")

    return tasks


async def run_tasks(
        root_tasks: Collection[aiotasks.Task],
        *,
        ignored: Collection[aiotasks.Task] = frozenset(),
) -> None:
    """
    Orchestrate the tasks and terminate them gracefully when needed.

    The root tasks are expected to run forever. Their number is limited. Once
    any of them exits, the whole controller and all other root tasks should exit.

    The hung tasks are those that were spawned during the controller runtime,
    and were not cancelled/exited on the root tasks termination. They are given
    some extra time to finish, after which they are forcely terminated too.

    .. note::
        Every task created after the controller's startup is assumed to be
        a task or a sub-task of the controller. Only the tasks that existed
        before the controller's startup are ignored (for example, those
        that spawned the controller itself).
    """

    # Run the infinite tasks until one of them fails/exits (they never exit normally).
    # If the controller is cancelled, propagate the cancellation to all the sub-tasks.
    try:
        root_done, root_pending = await aiotasks.wait(root_tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await aiotasks.stop(root_tasks, title="Root", logger=logger, cancelled=True, interval=10)
        hung_tasks = await aiotasks.all_tasks(ignored=ignored)
        await aiotasks.stop(hung_tasks, title="Hung", logger=logger, cancelled=True, interval=1)
        raise

    # If the controller is intact, but one of the root tasks has exited (successfully or not),
    # cancel all the remaining root tasks, and gracefully exit other spawned sub-tasks.
    root_cancelled, _ = await aiotasks.stop(root_pending, title="Root", logger=logger)

    # After the root tasks are all gone, cancel any spawned sub-tasks (e.g. the resyncs).
    hung_tasks = await aiotasks.all_tasks(ignored=ignored)
    try:
        hung_done, hung_pending = await aiotasks.wait(hung_tasks, timeout=5)
    except asyncio.CancelledError:
        await aiotasks.stop(hung_tasks, title="Hung", logger=logger, cancelled=True, interval=1)
        raise

    # If the controller is intact, but the timeout is reached, forcely cancel the sub-tasks.
    hung_cancelled, _ = await aiotasks.stop(hung_pending, title="Hung", logger=logger, interval=1)

    # If succeeded or if cancellation is silenced, re-raise from failed tasks (if any).
    await aiotasks.reraise(root_done | root_cancelled | hung_done | hung_cancelled)


async def _stop_flag_checker(
        signal_flag: asyncio.Future[Any],
        stop_flag: asyncio.Event | None,
) -> None:
    """
    A top-level task for external stopping by setting a stop-flag. Once set,
    this task will exit, and thus all other top-level tasks will be cancelled.
    """

    # Selects the flags to be awaited (if set).
    flags: list[asyncio.Future[Any]] = [signal_flag]
    if stop_flag is not None:
        flags.append(asyncio.create_task(stop_flag.wait(), name="stop-flag waiter"))

    # Wait until one of the stoppers is set/raised.
    try:
        done, pending = await asyncio.wait(flags, return_when=asyncio.FIRST_COMPLETED)
        future = done.pop()
        result = await future
    except asyncio.CancelledError:
        logger.debug("Stop-flag checker is cancelled: the controller is stopping for other reasons.")
    else:
        if isinstance(result, signal.Signals):
            logger.info("Signal %s is received. Controller is stopping.", result.name)
        else:
            logger.info("Stop-flag is raised. Controller is stopping.")
    finally:
        for flag in flags:
            if flag is not signal_flag:
                flag.cancel()


async def _ultimate_termination(
        *,
        settings: configuration.ControllerSettings,
        stop_flag: asyncio.Event | None,
) -> None:
    """
    Ensure that SIGKILL is sent regardless of the controller's stopping routines.

    Try to be gentle and kill only the thread with the controller, not the whole
    process or a process group. If this is the main thread (as in most cases),
    this would imply the process termination too.

    Intentional stopping via a stop-flag is ignored.
    """
    # Sleep forever, or until cancelled, which happens when the controller begins its shutdown.
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        if stop_flag is None or not stop_flag.is_set():
            if settings.process.ultimate_exiting_timeout is not None:
                loop = asyncio.get_running_loop()
                loop.call_later(settings.process.ultimate_exiting_timeout,
                                signal.pthread_kill, threading.get_ident(), signal.SIGKILL)
        raise


async def _startup_cleanup_activities(
        root_tasks: Sequence[aiotasks.Task],  # mutated externally!
        synced: aiotoggles.ToggleSet,
        ready_flag: asyncio.Event | None,
        started_flag: asyncio.Event,
        connection: auth.Connection,
) -> None:
    """
    Startup and cleanup activities.

    This task spends most of its time in forever sleep, only running
    in the beginning and in the end.

    The workers do not actually start until the started-flag is set,
    which happens after all the informers have got their initial listings.

    In the end, the API connection is closed, but only after all other root
    tasks are done, so that the in-flight reconciliations could finish.
    """

    # Notify the caller that we are ready to be executed. This unfreezes the workers.
    try:
        await synced.wait_for(True)
        logger.info("All informers are synced; the reconciliation begins.")
        started_flag.set()
        if ready_flag is not None:
            ready_flag.set()

        # Sleep forever, or until cancelled, which happens when the controller begins its shutdown.
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass

    # Wait for all other root tasks to exit before cleaning up.
    # Beware: on explicit controller cancellation, there is no graceful period at all.
    try:
        current_task = asyncio.current_task()
        awaited_tasks = {task for task in root_tasks if task is not current_task}
        await aiotasks.wait(awaited_tasks)
    except asyncio.CancelledError:
        logger.warning("Cleanup activity is not executed at all due to cancellation.")
        raise

    try:
        await connection.close()
    except asyncio.CancelledError:
        logger.warning("Cleanup activity is only partially executed due to cancellation.")
        raise
