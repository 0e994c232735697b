import base64
import contextlib
import functools
import os
import ssl
import tempfile
from collections.abc import Callable
from contextvars import ContextVar
from typing import Any, TypeVar, cast

import aiohttp

from crontrigger._cogs.clients import errors
from crontrigger._cogs.helpers import versions
from crontrigger._cogs.structs import credentials

# A typevar to show that we return a function with the same signature as given.
_F = TypeVar('_F', bound=Callable[..., Any])


class Connection:
    """
    A per-controller holder of the credentials and of the API session.

    The credentials are set at the controller's startup (after the login),
    but the session is opened lazily on the first request, since an aiohttp
    session must be created inside the running event loop.
    """

    def __init__(self, info: credentials.ConnectionInfo | None = None) -> None:
        super().__init__()
        self._info = info
        self._context: APIContext | None = None
        self._closed = False

    @property
    def info(self) -> credentials.ConnectionInfo | None:
        return self._info

    @info.setter
    def info(self, info: credentials.ConnectionInfo) -> None:
        if self._context is not None:
            raise RuntimeError("Credentials cannot be replaced once the session is open.")
        self._info = info

    def get_context(self) -> 'APIContext':
        if self._closed:
            raise errors.APISessionClosed("The API connection is already closed.")
        if self._info is None:
            raise credentials.LoginError("No credentials are provided for the API connection.")
        if self._context is None:
            self._context = APIContext(self._info)
        return self._context

    async def close(self) -> None:
        self._closed = True
        if self._context is not None:
            await self._context.close()
            self._context = None


# Per-controller storage of the connection. Set by `spawn_tasks`, so that every task has the same.
connection_var: ContextVar[Connection] = ContextVar('connection_var')


def authenticated(fn: _F) -> _F:
    """
    A decorator to inject a pre-authenticated session to a requesting routine.

    If a context is passed explicitly, it is used as is. Otherwise, the context
    is taken from the controller's connection (see :data:`connection_var`).
    """
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        context: APIContext | None = kwargs.pop('context', None)
        if context is None:
            try:
                connection = connection_var.get()
            except LookupError:
                raise RuntimeError("No API connection is configured in this context.") from None
            context = connection.get_context()
        if context.session.closed:
            raise errors.APISessionClosed("The API session is closed.")
        return await fn(*args, **kwargs, context=context)

    return cast(_F, wrapper)


class APIContext:
    """
    A container for an aiohttp session and the environment info for URLs.

    The whole controller runs in the same event loop, so there is no need
    to split the sessions for multiple loops.
    """

    # The main contained object used by the API methods.
    session: aiohttp.ClientSession

    # Contextual information for URL building.
    server: str
    default_namespace: str | None

    def __init__(
            self,
            info: credentials.ConnectionInfo,
    ) -> None:
        super().__init__()
        self.session = make_aiohttp_session(info)
        self.session.headers['User-Agent'] = f'crontrigger/{versions.version or "unknown"}'
        self.server = info.server
        self.default_namespace = info.default_namespace

    async def close(self) -> None:
        await self.session.close()


def make_aiohttp_session(info: credentials.ConnectionInfo) -> aiohttp.ClientSession:

    # Some SSL data are not accepted directly, so we have to use temp files.
    # No temporary files are created if there is no need: it can be a readonly filesystem.
    with contextlib.ExitStack() as stack:

        cert_path: str | os.PathLike[str] | None
        if info.certificate_path:
            cert_path = info.certificate_path
        elif info.certificate_data:
            cert_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
            cert_file.write(decode_to_pem(info.certificate_data).encode('ascii'))
            cert_path = cert_file.name
        else:
            cert_path = None

        pkey_path: str | os.PathLike[str] | None
        if info.private_key_path:
            pkey_path = info.private_key_path
        elif info.private_key_data:
            pkey_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
            pkey_file.write(decode_to_pem(info.private_key_data).encode('ascii'))
            pkey_path = pkey_file.name
        else:
            pkey_path = None

        # The SSL part (both client certificate auth and CA verification).
        context = ssl.create_default_context(
            purpose=ssl.Purpose.SERVER_AUTH,
            cafile=info.ca_path,
            cadata=decode_to_pem(info.ca_data) if info.ca_data is not None else None,
        )
        if cert_path and pkey_path:
            context.load_cert_chain(certfile=cert_path, keyfile=pkey_path)

    if info.insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    # The token auth part.
    headers: dict[str, str] = {}
    if info.scheme and info.token:
        headers['Authorization'] = f'{info.scheme} {info.token}'
    elif info.scheme:
        headers['Authorization'] = f'{info.scheme}'
    elif info.token:
        headers['Authorization'] = f'Bearer {info.token}'

    # The basic auth part.
    auth: aiohttp.BasicAuth | None
    if info.username and info.password:
        auth = aiohttp.BasicAuth(info.username, info.password)
    else:
        auth = None

    return aiohttp.ClientSession(
        connector=aiohttp.TCPConnector(limit=0, ssl=context),
        headers=headers,
        auth=auth,
    )


def decode_to_pem(data: str | bytes) -> str:
    match data:
        case str() if data.startswith('-----BEGIN '):
            return data
        case bytes() if data.startswith(b'-----BEGIN '):
            return data.decode('ascii')
        case _:
            return base64.b64decode(data).decode('ascii')
