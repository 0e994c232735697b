"""
Helpers for orchestrating the controller's root asyncio tasks.

Only tasks are supported here, not arbitrary awaitables: the tasks are not
only awaited, but also cancelled and inspected for their outcomes.
"""
import asyncio
from collections.abc import Collection, Coroutine
from typing import TYPE_CHECKING, Any

from crontrigger._cogs.helpers import typedefs

# Tasks are generic only in the type-sheds; at runtime, they are not subscriptable.
if TYPE_CHECKING:
    Task = asyncio.Task[Any]
else:
    Task = asyncio.Task


async def cancel_coro(
        coro: Coroutine[Any, Any, Any],
        *,
        name: str | None = None,
) -> None:
    """
    Dispose of a never-started coroutine without a RuntimeWarning.

    The coroutine is closed directly when possible. Otherwise, it is wrapped
    into a short-living task, which is cancelled and awaited immediately.
    """
    try:
        coro.close()
    except AttributeError:
        corotask = asyncio.create_task(coro, name=name)
        corotask.cancel()
        try:
            await corotask
        except asyncio.CancelledError:
            pass


async def guard(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        flag: asyncio.Event | None = None,
        finishable: bool = False,
        cancellable: bool = False,
        logger: typedefs.Logger | None = None,
) -> None:
    """
    Run a presumably never-ending task and log its unexpected outcomes.

    A root task (an informer, a worker, the liveness endpoint) is expected
    to run until cancelled. If it exits on its own, this is logged as a warning
    unless it is marked as finishable. Its errors are logged as soon as they
    happen, not when (and if) somebody awaits the task eventually.

    If a flag is given, the coroutine starts only after the flag is set:
    e.g. the workers start only when all the informers have synced.
    """
    capname = name.capitalize()

    if flag is not None:
        try:
            await flag.wait()
        except asyncio.CancelledError:
            await cancel_coro(coro, name=name)
            raise

    try:
        await coro
    except asyncio.CancelledError:
        if logger is not None and not cancellable:
            logger.debug(f"{capname} is cancelled.")
        raise
    except Exception as e:
        if logger is not None:
            logger.exception(f"{capname} has failed: {e}")
        raise
    else:
        if logger is not None and not finishable:
            logger.warning(f"{capname} has finished unexpectedly.")


def create_guarded_task(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        flag: asyncio.Event | None = None,
        finishable: bool = False,
        cancellable: bool = False,
        logger: typedefs.Logger | None = None,
) -> Task:
    """ A shortcut for a named task with a :func:`guard` around the coroutine. """
    return asyncio.create_task(
        name=name,
        coro=guard(
            coro,
            name=name,
            flag=flag,
            finishable=finishable,
            cancellable=cancellable,
            logger=logger))


async def wait(
        tasks: Collection[Task],
        *,
        timeout: float | None = None,
        return_when: Any = asyncio.ALL_COMPLETED,
) -> tuple[set[Task], set[Task]]:
    """
    Same as :func:`asyncio.wait`, but tolerant to an empty collection of tasks.
    """
    if not tasks:
        return set(), set()
    done, pending = await asyncio.wait(tasks, timeout=timeout, return_when=return_when)
    return done, pending


async def stop(
        tasks: Collection[Task],
        *,
        title: str,
        quiet: bool = False,
        cancelled: bool = False,
        interval: float | None = None,
        logger: typedefs.Logger | None = None,
) -> tuple[set[Task], set[Task]]:
    """
    Cancel the tasks and wait until they are all actually finished.

    With an interval, the remaining tasks are reported on every interval
    while they are still stuck. In the quiet mode, only the stuck tasks
    are reported, and the normal fast exits are not.

    The stopping has no timeout of its own: it ends either with all the tasks
    finished, or with the stopping routine itself being cancelled
    (in which case the remaining tasks are left as they are).
    """
    captitle = title.capitalize()

    if not tasks:
        if logger is not None and not quiet:
            logger.debug(f"{captitle} tasks stopping is skipped: no tasks given.")
        return set(), set()

    for task in tasks:
        task.cancel()

    iterations = 0
    done_ever: set[Task] = set()
    pending: set[Task] = set(tasks)
    while pending:
        iterations += 1
        try:
            done_now, pending = await wait(pending, timeout=interval)
        except asyncio.CancelledError:
            pending = {task for task in tasks if not task.done()}
            if logger is not None and (not quiet or pending or iterations > 1):
                are = 'are' if not pending else 'are not'
                why = 'double-cancelling at stopping' if cancelled else 'cancelling at stopping'
                logger.debug(f"{captitle} tasks {are} stopped: {why}; tasks left: {pending!r}")
            raise
        else:
            if logger is not None and (not quiet or pending or iterations > 1):
                are = 'are' if not pending else 'are not'
                why = 'cancelling normally' if cancelled else 'finishing normally'
                logger.debug(f"{captitle} tasks {are} stopped: {why}; tasks left: {pending!r}")
            done_ever |= done_now

    return done_ever, pending


async def reraise(
        tasks: Collection[Task],
) -> None:
    """
    Re-raise the first regular error of the finished tasks; ignore cancellations.
    """
    for task in tasks:
        try:
            task.result()
        except asyncio.CancelledError:
            pass


async def all_tasks(
        *,
        ignored: Collection[Task] = frozenset(),
) -> Collection[Task]:
    """
    All tasks of the current loop except the current one and the ignored ones.

    The ignored tasks are usually those that existed before the controller
    has started, so that only the controller's own leftovers are returned.
    """
    current_task = asyncio.current_task()
    return {task for task in asyncio.all_tasks()
            if task is not current_task and task not in ignored}
