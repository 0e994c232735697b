"""
The informers: the local caches of the watched objects with notifications.

An informer lists & watches the objects of one resource kind, keeps their
latest state in memory (keyed by ``namespace/name``), and notifies its handlers
about the changes: a tagged notification with the resource kind, the change
type, and both the old & new states of the object.

The cache is the source of the objects for the reconciliation: the reconciler
never reads the triggers or the functions from the API directly, it looks them
up here. The cache reflects the latest delivered watch-event of every object.

On every re-listing (e.g. after "410 Gone"), the cache is replaced entirely:
the objects that disappeared while the watch-stream was down are notified
as deleted, the changed ones as updated.
"""
import asyncio
import dataclasses
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, Protocol

from crontrigger._cogs.aiokits import aiotasks, aiotoggles
from crontrigger._cogs.clients import watching
from crontrigger._cogs.configs import configuration
from crontrigger._cogs.structs import bodies, references

logger = logging.getLogger(__name__)


class NotificationType(enum.Enum):
    ADDED = 'ADDED'
    UPDATED = 'UPDATED'
    DELETED = 'DELETED'
    RESYNCED = 'RESYNCED'  # re-delivered periodically without an actual change


@dataclasses.dataclass(frozen=True)
class Notification:
    kind: references.Kind
    type: NotificationType
    key: references.ObjectKey
    old: bodies.RawBody | None
    new: bodies.RawBody | None

    @property
    def body(self) -> bodies.RawBody:
        """ The latest known state: the new one, or the last seen one if deleted. """
        body = self.new if self.new is not None else self.old
        if body is None:
            raise RuntimeError(f"A notification without an object: {self!r}")
        return body


Handler = Callable[[Notification], Awaitable[None] | None]


class ObjectLookup(Protocol):
    """ The read-only view of the cached objects, as used by the reconciler. """

    def get(self, key: str) -> bodies.RawBody | None: ...

    def list(
            self,
            namespace: references.Namespace = None,
            labels: Mapping[str, str] | None = None,
    ) -> list[bodies.RawBody]: ...


class Informer:

    def __init__(
            self,
            *,
            kind: references.Kind,
            resource: references.Resource,
            namespace: references.Namespace,
            settings: configuration.ControllerSettings,
            handlers: Iterable[Handler] = (),
            synced: aiotoggles.Toggle | None = None,
    ) -> None:
        super().__init__()
        self.kind = kind
        self.resource = resource
        self.namespace = namespace
        self._settings = settings
        self._handlers: list[Handler] = list(handlers)
        self._synced = synced if synced is not None else aiotoggles.Toggle(name=f'{resource}')
        self._store: dict[references.ObjectKey, bodies.RawBody] = {}
        self._listing: dict[references.ObjectKey, bodies.RawBody] | None = None

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} {self.resource}: {len(self._store)} objects>'

    def __len__(self) -> int:
        return len(self._store)

    def add_handler(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced.is_on()

    async def wait_synced(self) -> None:
        await self._synced.wait_for(True)

    def get(self, key: str) -> bodies.RawBody | None:
        return self._store.get(references.ObjectKey(key))

    def list(
            self,
            namespace: references.Namespace = None,
            labels: Mapping[str, str] | None = None,
    ) -> list[bodies.RawBody]:
        return [
            body for body in self._store.values()
            if (namespace is None or bodies.get_namespace(body) == namespace)
            and (not labels or all(bodies.get_labels(body).get(k) == v for k, v in labels.items()))
        ]

    async def run(
            self,
            *,
            stopper: asyncio.Future[Any] | None = None,
    ) -> None:
        """
        Watch the objects until cancelled, with the periodic resyncs if configured.
        """
        resync_task: aiotasks.Task | None = None
        if self._settings.watching.resync_period:
            resync_task = asyncio.create_task(self._resync_forever(), name=f"resync of {self.resource}")
        try:
            async for raw_event in watching.infinite_watch(
                settings=self._settings,
                resource=self.resource,
                namespace=self.namespace,
                stopper=stopper,
            ):
                await self.process_event(raw_event)
        finally:
            if resync_task is not None:
                await aiotasks.stop([resync_task], title="resync", quiet=True, logger=logger)

    async def process_event(self, raw_event: watching.Bookmark | bodies.RawEvent) -> None:
        """
        Apply a single item of the watch-stream to the cache and notify about it.

        The listed objects (``type=None``) are accumulated until the listing
        is over, and then the whole cache is replaced with them at once.
        """
        if isinstance(raw_event, watching.Bookmark):
            if raw_event is watching.Bookmark.LISTED:
                await self._replace(self._listing or {})
                self._listing = None
                if not self._synced.is_on():
                    logger.debug(f"Initial listing of {self.resource} is over: {len(self._store)} objects.")
                    await self._synced.turn_to(True)
            return

        body = raw_event['object']
        key = bodies.get_key(body)
        match raw_event['type']:
            case None:
                if self._listing is None:
                    self._listing = {}
                self._listing[key] = body
            case 'ADDED' | 'MODIFIED':
                old = self._store.get(key)
                self._store[key] = body
                kind = NotificationType.ADDED if old is None else NotificationType.UPDATED
                await self._notify(Notification(self.kind, kind, key, old, body))
            case 'DELETED':
                old = self._store.pop(key, None)
                await self._notify(Notification(self.kind, NotificationType.DELETED, key,
                                                old if old is not None else body, None))

    async def resync(self) -> None:
        """ Re-deliver all the cached objects to the handlers without changes. """
        for key, body in list(self._store.items()):
            await self._notify(Notification(self.kind, NotificationType.RESYNCED, key, body, body))

    async def _replace(self, listing: Mapping[references.ObjectKey, bodies.RawBody]) -> None:
        previous = self._store
        self._store = dict(listing)
        for key, body in listing.items():
            old = previous.get(key)
            if old is None:
                await self._notify(Notification(self.kind, NotificationType.ADDED, key, None, body))
            elif bodies.get_resource_version(old) != bodies.get_resource_version(body):
                await self._notify(Notification(self.kind, NotificationType.UPDATED, key, old, body))
        for key, old in previous.items():
            if key not in listing:
                await self._notify(Notification(self.kind, NotificationType.DELETED, key, old, None))

    async def _resync_forever(self) -> None:
        period = self._settings.watching.resync_period
        while period:
            await asyncio.sleep(period)
            if self.has_synced():
                logger.debug(f"Resyncing {len(self._store)} objects of {self.resource}.")
                await self.resync()

    async def _notify(self, notification: Notification) -> None:
        for handler in self._handlers:
            try:
                result = handler(notification)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Notification handler {handler!r} has failed for "
                                 f"{notification.type.value} {notification.key}: {e}")
