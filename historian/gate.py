"""
Counting permit pool bounding concurrent historian connections.

Every fetch unit acquires a permit before opening a connection and
releases it when the connection is closed. Acquisition blocks only the
calling thread and gives up with CancelledOperation as soon as the
caller's cancel event is set.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import CancelledOperation

logger = logging.getLogger("trendview")

# How often a blocked acquire re-checks the cancel event (seconds)
_CANCEL_POLL_INTERVAL = 0.05


class Permit:
    """Token proving one slot of a ConnectionGate is held."""

    __slots__ = ("gate", "released")

    def __init__(self, gate: "ConnectionGate"):
        self.gate = gate
        self.released = False


class ConnectionGate:
    """Bounded permit pool.

    Args:
        capacity: Maximum number of permits outstanding at once (>= 1).
    """

    def __init__(self, capacity: int = 10):
        if capacity < 1:
            raise ValueError(f"Gate capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._cond = threading.Condition(threading.Lock())
        self._in_use = 0
        self._peak = 0

    @property
    def in_use(self) -> int:
        """Permits currently held."""
        with self._cond:
            return self._in_use

    @property
    def peak_in_use(self) -> int:
        """Highest number of permits held simultaneously since creation."""
        with self._cond:
            return self._peak

    def acquire(self, cancel_event: Optional[threading.Event] = None) -> Permit:
        """Block until a permit is free.

        Raises:
            CancelledOperation: If ``cancel_event`` is set before a permit is
                granted. No permit is held in that case.
        """
        with self._cond:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise CancelledOperation("Cancelled while waiting for a connection permit")
                if self._in_use < self.capacity:
                    self._in_use += 1
                    self._peak = max(self._peak, self._in_use)
                    return Permit(self)
                # Without a cancel event nothing but release() can wake us
                self._cond.wait(
                    timeout=_CANCEL_POLL_INTERVAL if cancel_event is not None else None
                )

    def release(self, permit: Permit) -> None:
        """Return a permit to the pool.

        Raises:
            RuntimeError: If the permit belongs to another gate or was
                already released.
        """
        if permit.gate is not self:
            raise RuntimeError("Permit does not belong to this gate")
        with self._cond:
            if permit.released:
                raise RuntimeError("Permit already released")
            permit.released = True
            self._in_use -= 1
            self._cond.notify()

    @contextmanager
    def permit(self, cancel_event: Optional[threading.Event] = None) -> Iterator[Permit]:
        """Hold a permit for the duration of the ``with`` block."""
        held = self.acquire(cancel_event)
        try:
            yield held
        finally:
            self.release(held)
