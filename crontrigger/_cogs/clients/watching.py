"""
Watching and streaming the watch-events.

The watch-stream starts with the initial listing of all the objects
(delivered as pseudo-events with ``type=None``), followed by a bookmark that
the listing is over, followed by the actual watch-events since the listing's
resource version. The stream is restarted from the listing on the API
disconnects that cannot be continued, e.g. on "410 Gone".
"""
import asyncio
import enum
import logging
from collections.abc import AsyncIterator
from typing import Any, cast

import aiohttp

from crontrigger._cogs.clients import api, errors, fetching
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.structs import bodies, references

logger = logging.getLogger(__name__)

HTTP_GONE_CODE = 410
HTTP_TOO_MANY_REQUESTS_CODE = 429
DEFAULT_RETRY_DELAY_SECONDS = 1


class WatchingError(Exception):
    """
    Raised when an unexpected error happens in the watch-stream API.
    """


class Bookmark(enum.Enum):
    """ Special marks sent in the stream among raw events. """
    LISTED = enum.auto()  # the listing is over, now streaming.


async def infinite_watch(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        stopper: asyncio.Future[Any] | None = None,
        _iterations: int | None = None,  # used in tests/mocks/fixtures
) -> AsyncIterator[Bookmark | bodies.RawEvent]:
    """
    Stream the watch-events infinitely.

    This routine never ends gracefully unless stopped via the stopper future.
    If a watcher's stream fails, a new one is recreated (starting with a fresh
    listing), and the stream continues. It only exits with unrecoverable errors.
    """
    stopper = stopper if stopper is not None else asyncio.get_running_loop().create_future()
    where = f'in {namespace!r}' if namespace is not None else 'cluster-wide'
    logger.debug(f"Starting the watch-stream for {resource} {where}.")
    try:
        while not stopper.done() and (_iterations is None or _iterations > 0):
            _iterations = None if _iterations is None else _iterations - 1
            stream = continuous_watch(
                settings=settings,
                resource=resource,
                namespace=namespace,
                stopper=stopper,
            )
            try:
                async for raw_event in stream:
                    yield raw_event
            except errors.APIClientError as ex:
                if ex.status != HTTP_TOO_MANY_REQUESTS_CODE:
                    raise

                retry_after = ex.details.get("retryAfterSeconds") if ex.details else None
                retry_wait = retry_after or DEFAULT_RETRY_DELAY_SECONDS
                logger.warning(
                    f"Receiving `too many requests` error from server, will retry after "
                    f"{retry_wait} seconds. Error details: {ex}"
                )
                await asyncio.sleep(retry_wait)
            await asyncio.sleep(settings.watching.reconnect_backoff)
    finally:
        logger.debug(f"Stopping the watch-stream for {resource} {where}.")


async def continuous_watch(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        stopper: asyncio.Future[Any],
) -> AsyncIterator[Bookmark | bodies.RawEvent]:

    # First, list the resources regularly, and get the list's resource version.
    try:
        objs, resource_version = await fetching.list_objs(
            logger=logger,
            settings=settings,
            resource=resource,
            namespace=namespace,
        )
        for obj in objs:
            yield {'type': None, 'object': obj}

    except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError):
        return

    # Notify the consumer that the initial listing is over, even if there was nothing yielded.
    yield Bookmark.LISTED

    # Repeat through disconnects of the watch as long as the resource version is valid (no errors).
    # The individual watching API calls are disconnected by timeout even if the stream is fine.
    while not stopper.done():
        stream = watch_objs(
            settings=settings,
            resource=resource,
            namespace=namespace,
            since=resource_version,
            stopper=stopper,
        )
        try:
            async for raw_input in stream:
                raw_type = raw_input['type']
                raw_object = raw_input['object']

                # "410 Gone" is for the "resource version too old" error: restart from the listing.
                if raw_type == 'ERROR' and cast(bodies.RawError, raw_object).get('code') == HTTP_GONE_CODE:
                    where = f'in {namespace!r}' if namespace is not None else 'cluster-wide'
                    logger.debug(f"Restarting the watch-stream for {resource} {where}.")
                    return

                if raw_type == 'ERROR':
                    raise WatchingError(f"Error in the watch-stream: {raw_object}")

                if raw_type not in ['ADDED', 'MODIFIED', 'DELETED']:
                    logger.warning(f"Ignoring an unsupported event type: {raw_input!r}")
                    continue

                # Keep the latest seen resource version for continuation of the stream on disconnects.
                body = cast(bodies.RawBody, raw_object)
                resource_version = body.get('metadata', {}).get('resourceVersion', resource_version)

                yield cast(bodies.RawEvent, raw_input)

        except errors.APIClientError as ex:
            if ex.status != HTTP_GONE_CODE:
                raise
            return


async def watch_objs(
        *,
        settings: configuration.ControllerSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        since: str | None = None,
        stopper: asyncio.Future[Any],
) -> AsyncIterator[bodies.RawInput]:
    """
    Watch objects of a specific resource type since the specific version.

    The stream ends when it is closed server-side (e.g. by timeout),
    or client-side via the stopper's callbacks.
    """
    params: dict[str, str] = {}
    params['watch'] = 'true'
    if since is not None:
        params['resourceVersion'] = since
    if settings.watching.server_timeout is not None:
        params['timeoutSeconds'] = str(settings.watching.server_timeout)

    connect_timeout = (
        settings.watching.connect_timeout if settings.watching.connect_timeout is not None else
        settings.networking.connect_timeout if settings.networking.connect_timeout is not None else
        settings.networking.request_timeout
    )

    try:
        async for raw_input in api.stream(
            url=resource.get_url(namespace=namespace, params=params),
            logger=logger,
            settings=settings,
            stopper=stopper,
            timeout=aiohttp.ClientTimeout(
                total=settings.watching.client_timeout,
                sock_connect=connect_timeout,
            ),
        ):
            yield raw_input

    except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError):
        pass
