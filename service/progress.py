"""
Progress reporting for long fetches.

The core never touches a UI thread: it calls ``report()`` on whatever sink
it was given, from whichever worker thread finished the unit of work.
Sinks that feed a UI either marshal the update themselves (callback sink)
or let the UI drain a bounded queue (queue sink).
"""

import logging
import queue
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("trendview")


@dataclass(frozen=True)
class ProgressUpdate:
    """One progress event. ``percent`` is clamped to [0, 100]; None means indeterminate."""

    message: str
    percent: Optional[float] = None

    def __post_init__(self):
        if self.percent is not None:
            object.__setattr__(self, "percent", max(0.0, min(100.0, float(self.percent))))


class ProgressSink:
    """Receives progress updates. Subclasses override ``report``."""

    def report(self, update: ProgressUpdate) -> None:
        raise NotImplementedError


class NullProgressSink(ProgressSink):
    """Discards every update."""

    def report(self, update: ProgressUpdate) -> None:
        pass


class CallbackProgressSink(ProgressSink):
    """Forwards updates to ``callback(message, percent)``.

    Exceptions raised by the callback are logged and swallowed so a broken
    progress display cannot fail a fetch.
    """

    def __init__(self, callback: Callable[[str, Optional[float]], None]):
        self._callback = callback

    def report(self, update: ProgressUpdate) -> None:
        try:
            self._callback(update.message, update.percent)
        except Exception as e:
            logger.warning(f"[Progress] Callback failed: {e}")


class QueueProgressSink(ProgressSink):
    """Bounded channel of updates for a consumer to drain.

    When the queue is full the oldest update is dropped, so reporting never
    blocks a fetch thread.
    """

    def __init__(self, maxsize: int = 100):
        self.queue: queue.Queue[ProgressUpdate] = queue.Queue(maxsize=maxsize)

    def report(self, update: ProgressUpdate) -> None:
        while True:
            try:
                self.queue.put_nowait(update)
                return
            except queue.Full:
                try:
                    self.queue.get_nowait()
                except queue.Empty:
                    pass

    def drain(self) -> list[ProgressUpdate]:
        """Return and remove every queued update, oldest first."""
        updates = []
        while True:
            try:
                updates.append(self.queue.get_nowait())
            except queue.Empty:
                return updates
