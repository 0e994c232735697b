"""
The process-wide reporting of the reconciliation failures.

The failures never crash the controller: they are logged with tracebacks
and remembered in a short in-memory history for the liveness endpoint,
so that the persistent misconfigurations are visible from outside.
"""
import collections
import dataclasses
import datetime
import logging

from crontrigger._cogs.helpers import typedefs

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Failure:
    key: str
    error: str
    timestamp: datetime.datetime
    gave_up: bool

    def as_dict(self) -> dict[str, object]:
        return dict(
            key=self.key,
            error=self.error,
            timestamp=self.timestamp.isoformat(),
            gave_up=self.gave_up,
        )


class ErrorReporter:

    def __init__(self, *, limit: int = 100) -> None:
        super().__init__()
        self._history: collections.deque[Failure] = collections.deque(maxlen=limit)
        self._total = 0

    def __len__(self) -> int:
        return len(self._history)

    @property
    def total(self) -> int:
        """ The number of all failures ever reported, including the forgotten ones. """
        return self._total

    @property
    def failures(self) -> list[Failure]:
        return list(self._history)

    def report(
            self,
            key: str,
            exc: BaseException,
            *,
            gave_up: bool,
            logger: typedefs.Logger = logger,
    ) -> Failure:
        failure = Failure(
            key=key,
            error=f'{exc.__class__.__name__}: {exc}',
            timestamp=datetime.datetime.now(datetime.timezone.utc),
            gave_up=gave_up,
        )
        self._history.append(failure)
        self._total += 1
        if gave_up:
            logger.error(f"Giving up on {key}: {exc}", exc_info=exc)
        else:
            logger.error(f"Failed to process {key}: {exc}", exc_info=exc)
        return failure
