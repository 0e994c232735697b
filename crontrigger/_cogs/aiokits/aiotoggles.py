import asyncio
from collections.abc import Callable, Collection, Iterable, Iterator


class Toggle:
    """
    A synchronisation primitive that can be awaited both until set or cleared.

    For one-directional toggles, `asyncio.Event` is sufficient.
    But the events cannot be awaited until cleared, and cannot be grouped.

    The toggles are used to track whether the informers have completed
    their initial listing: the whole controller waits for all of them,
    and an informer can go back to the "unsynced" state when its stream breaks.
    """

    def __init__(
            self,
            state: bool = False,
            /,
            *,
            name: str | None = None,
            condition: asyncio.Condition | None = None,
    ) -> None:
        super().__init__()
        self._condition = condition if condition is not None else asyncio.Condition()
        self._state: bool = bool(state)
        self._name = name

    def __repr__(self) -> str:
        clsname = self.__class__.__name__
        toggled = 'on' if self._state else 'off'
        if self._name is None:
            return f'<{clsname}: {toggled}>'
        else:
            return f'<{clsname}: {self._name}: {toggled}>'

    def __bool__(self) -> bool:
        raise NotImplementedError  # is_on()/is_off() must be used explicitly.

    def is_on(self) -> bool:
        return self._state

    def is_off(self) -> bool:
        return not self._state

    async def turn_to(self, state: bool, /) -> None:
        """ Turn the toggle on/off, and wake up the tasks waiting for that. """
        async with self._condition:
            self._state = bool(state)
            self._condition.notify_all()

    async def wait_for(self, state: bool, /) -> None:
        """ Wait until the toggle is turned on/off as expected (if not yet). """
        async with self._condition:
            await self._condition.wait_for(lambda: self._state == bool(state))

    @property
    def name(self) -> str | None:
        return self._name


class ToggleSet(Collection[Toggle]):
    """
    A read-only checker for multiple toggles, e.g. "all informers are synced".

    The positional argument is a function, usually :func:`any` or :func:`all`,
    which takes an iterable of all individual toggles' states (on/off),
    and calculates the overall state of the toggle set.

    The set can only contain the toggles produced by the set itself,
    since they all share the same condition for notifications.
    """

    def __init__(self, fn: Callable[[Iterable[bool]], bool]) -> None:
        super().__init__()
        self._condition = asyncio.Condition()
        self._toggles: set[Toggle] = set()
        self._fn = fn

    def __repr__(self) -> str:
        return repr(self._toggles)

    def __len__(self) -> int:
        return len(self._toggles)

    def __iter__(self) -> Iterator[Toggle]:
        return iter(self._toggles)

    def __contains__(self, toggle: object) -> bool:
        return toggle in self._toggles

    def __bool__(self) -> bool:
        raise NotImplementedError  # is_on()/is_off() must be used explicitly.

    def is_on(self) -> bool:
        return self._fn(toggle.is_on() for toggle in self._toggles)

    def is_off(self) -> bool:
        return not self.is_on()

    async def wait_for(self, state: bool, /) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: self.is_on() == bool(state))

    async def make_toggle(
            self,
            state: bool = False,
            /,
            *,
            name: str | None = None,
    ) -> Toggle:
        toggle = Toggle(state, name=name, condition=self._condition)
        async with self._condition:
            self._toggles.add(toggle)
            self._condition.notify_all()
        return toggle

    async def drop_toggle(self, toggle: Toggle) -> None:
        async with self._condition:
            self._toggles.discard(toggle)
            self._condition.notify_all()
