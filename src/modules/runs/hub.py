import asyncio
import logging

from src.config.settings import settings
from src.modules.runs.schemas import ProgressEvent, ProgressType

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = {ProgressType.COMPLETED, ProgressType.FAILED, ProgressType.CANCELLED}


class Observer:
    """One attached consumer of progress events.

    Iterating yields the replay snapshot first, then live events. When the
    hub drops a lagging observer the iteration ends once the buffered events
    are drained; the consumer re-attaches to get a fresh replay.
    """

    def __init__(self, buffer_size: int) -> None:
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=buffer_size)
        self.dropped = False

    def offer(self, event: ProgressEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def __aiter__(self) -> "Observer":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self.dropped and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class ProgressHub:
    """Fans run progress out to any number of observers without blocking the run."""

    def __init__(self, buffer_size: int | None = None) -> None:
        self._buffer_size = buffer_size or settings.progress_buffer_size
        self._observers: set[Observer] = set()
        self._latest: ProgressEvent | None = None

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    @property
    def latest(self) -> ProgressEvent:
        return self._latest or ProgressEvent.idle()

    def attach(self) -> Observer:
        observer = Observer(self._buffer_size)
        observer.offer(self.latest)
        self._observers.add(observer)
        logger.debug("Observer attached (%d total)", len(self._observers))
        return observer

    def detach(self, observer: Observer) -> None:
        self._observers.discard(observer)
        logger.debug("Observer detached (%d total)", len(self._observers))

    def publish(self, event: ProgressEvent) -> None:
        # Terminal events are delivered live, but late joiners see idle
        self._latest = None if event.progress_type in TERMINAL_EVENTS else event
        for observer in list(self._observers):
            if not observer.offer(event):
                observer.dropped = True
                self._observers.discard(observer)
                logger.warning("Dropped lagging progress observer; it must reconnect")


progress_hub = ProgressHub()
