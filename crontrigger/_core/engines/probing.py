import asyncio
import logging
import urllib.parse

import aiohttp.web

from crontrigger._cogs.aiokits import aiotoggles
from crontrigger._core.engines import reporting
from crontrigger._core.reactor import dispatching

logger = logging.getLogger(__name__)

LOCALHOST: str = 'localhost'
HTTP_PORT: int = 80


async def health_reporter(
        endpoint: str,
        *,
        synced: aiotoggles.ToggleSet,
        queue: dispatching.WorkQueue[str],
        reporter: reporting.ErrorReporter,
        ready_flag: asyncio.Event | None = None,  # used for testing
) -> None:
    """
    Simple HTTP server to report the controller's health to K8s probes.

    Runs forever until cancelled (which happens if any other root task
    is cancelled or failed). Once it stops responding for any reason,
    Kubernetes will assume the pod is not alive anymore, and will restart it.

    The reconciliation failures do not make the controller unhealthy: they are
    only exposed for visibility, since restarting cannot fix them.
    """

    async def get_health(
            request: aiohttp.web.Request,
    ) -> aiohttp.web.Response:
        return aiohttp.web.json_response({
            'synced': synced.is_on(),
            'queue': len(queue),
            'processing': queue.processing,
            'errors': [failure.as_dict() for failure in reporter.failures],
        })

    parts = urllib.parse.urlsplit(endpoint)
    if parts.scheme == 'http':
        host = parts.hostname or LOCALHOST
        port = parts.port if parts.port is not None else HTTP_PORT
        path = parts.path or '/'
    else:
        raise ValueError(f"Unsupported scheme: {endpoint}")

    app = aiohttp.web.Application()
    app.add_routes([aiohttp.web.get(path, get_health)])

    runner = aiohttp.web.AppRunner(app, handle_signals=False, shutdown_timeout=1.0)
    await runner.setup()

    site = aiohttp.web.TCPSite(runner, host, port)
    await site.start()

    # Log with the actual URL: normalised, with hostname/port set.
    url = urllib.parse.urlunsplit([parts.scheme, f'{host}:{port}', path, '', ''])
    logger.debug(f"Serving health status at {url}")
    if ready_flag is not None:
        ready_flag.set()

    try:
        # Sleep forever. No activity is needed.
        await asyncio.Event().wait()
    finally:
        # On any reason of exit, stop reporting the health.
        await asyncio.shield(runner.cleanup())
