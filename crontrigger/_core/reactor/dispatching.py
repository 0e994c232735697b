"""
The work dispatcher: a deduplicating, rate-limited queue of object keys.

The notifications of the objects are turned into keys only (not payloads):
the consumers re-read the latest state of the objects from the cache anyway.
So, many notifications of the same object that arrive before it is processed
collapse into one single pending key.

A key being processed is never handed out to another consumer at the same time.
If the key is added again while being processed, it is remembered as "dirty"
and is queued again only when its current processing is done. As a result,
N re-additions during one processing lead to at most one extra processing.

All the operations except :meth:`WorkQueue.get` are synchronous, so they can be
used from the notification callbacks and from the timer callbacks. Since all of
them run in the same event loop, they are atomic between the awaits.
"""
import asyncio
import collections
import enum
import logging
import time
from collections.abc import Callable, Hashable
from typing import Any, Generic, Protocol, TypeVar

from crontrigger._cogs.configs import configuration

logger = logging.getLogger(__name__)

K = TypeVar('K', bound=Hashable)


# An end-of-stream marker returned to the consumers once the queue is shut down.
class EOS(enum.Enum):
    token = enum.auto()


class RateLimiter(Protocol[K]):
    def when(self, key: K) -> float: ...
    def forget(self, key: K) -> None: ...
    def num_requeues(self, key: K) -> int: ...


class ItemExponentialLimiter(Generic[K]):
    """
    A per-key delay doubling on every failure: ``base * 2 ** failures``, capped.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000) -> None:
        super().__init__()
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: dict[K, int] = {}

    def when(self, key: K) -> float:
        exp = self._failures.get(key, 0)
        self._failures[key] = exp + 1
        if exp > 64:  # beyond any reasonable cap; also prevents float overflows.
            return self._max_delay
        return min(self._base_delay * 2 ** exp, self._max_delay)

    def forget(self, key: K) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        return self._failures.get(key, 0)


class BucketLimiter(Generic[K]):
    """
    An overall token bucket for all keys: ``qps`` refill rate, ``burst`` capacity.

    Every request reserves a token, even if it is not available yet:
    the returned delay is the time until that reserved token is refilled.
    """

    def __init__(
            self,
            qps: float = 10,
            burst: int = 100,
            *,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._qps = qps
        self._burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, key: K) -> float:
        now = self._clock()
        self._tokens = min(float(self._burst), self._tokens + (now - self._last) * self._qps)
        self._last = now
        self._tokens -= 1
        return 0.0 if self._tokens >= 0 else -self._tokens / self._qps

    def forget(self, key: K) -> None:
        pass

    def num_requeues(self, key: K) -> int:
        return 0


class MaxOfLimiter(Generic[K]):
    """ The longest delay of all the limiters (all of them are advanced). """

    def __init__(self, *limiters: RateLimiter[K]) -> None:
        super().__init__()
        self._limiters = limiters

    def when(self, key: K) -> float:
        delays = [limiter.when(key) for limiter in self._limiters]
        return max(delays, default=0.0)

    def forget(self, key: K) -> None:
        for limiter in self._limiters:
            limiter.forget(key)

    def num_requeues(self, key: K) -> int:
        return max((limiter.num_requeues(key) for limiter in self._limiters), default=0)


def make_default_limiter(settings: configuration.ControllerSettings) -> RateLimiter[Any]:
    return MaxOfLimiter(
        ItemExponentialLimiter(settings.queueing.base_delay, settings.queueing.max_delay),
        BucketLimiter(settings.queueing.qps, settings.queueing.burst),
    )


class WorkQueue(Generic[K]):
    """
    A queue of keys with deduplication, single-flight processing, and delays.

    The usage protocol for consumers::

        key = await queue.get()
        if key is EOS.token:
            return
        try:
            ...  # process the key
        finally:
            queue.done(key)

    Once shut down, the queue accepts no new keys, drops the delayed ones,
    and returns :data:`EOS.token` to all current & future consumers.
    The keys being processed can still be marked as done.
    """

    def __init__(
            self,
            *,
            limiter: RateLimiter[K] | None = None,
            name: str | None = None,
    ) -> None:
        super().__init__()
        self._name = name
        self._limiter: RateLimiter[K] = limiter if limiter is not None else MaxOfLimiter()
        self._queue: collections.deque[K] = collections.deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._waiters: collections.deque[asyncio.Future[None]] = collections.deque()
        self._timers: dict[K, tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} {self._name or ""}: {len(self._queue)} queued>'

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> int:
        return len(self._processing)

    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: K) -> None:
        """ Queue the key unless it is already queued or the queue is shut down. """
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return  # re-queued by done() when the current processing is over.
        self._queue.append(key)
        self._wakeup_next()

    async def get(self) -> K | EOS:
        """ Wait for the next key; return :data:`EOS.token` once shut down. """
        while not self._queue and not self._shutting_down:
            waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                # If woken up but cancelled before taking the key, pass the key to another consumer.
                if waiter.done() and not waiter.cancelled() and self._queue:
                    self._wakeup_next()
                raise
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

        if self._shutting_down:
            return EOS.token

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: K) -> None:
        """ Mark the key's processing as over; re-queue it if it was added meanwhile. """
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._wakeup_next()

    def add_after(self, key: K, delay: float) -> None:
        """
        Queue the key after a delay. Only the earliest of the delayed re-adds is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        ready_at = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing[0] <= ready_at:
                return
            existing[1].cancel()
        handle = loop.call_at(ready_at, self._fire, key)
        self._timers[key] = (ready_at, handle)

    def add_rate_limited(self, key: K) -> None:
        """ Queue the key after the delay as decided by the rate limiter. """
        self.add_after(key, self._limiter.when(key))

    def forget(self, key: K) -> None:
        """ Reset the key's retry counter (but not its pending delayed re-adds). """
        self._limiter.forget(key)

    def num_requeues(self, key: K) -> int:
        return self._limiter.num_requeues(key)

    def shut_down(self) -> None:
        """ Stop accepting keys and release all consumers waiting for them. """
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _fire(self, key: K) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def _wakeup_next(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                break
