import logging
import threading
import time
from collections.abc import Callable

from .constants import APP_NAME, SYNC_IDLE_SECS
from .coordinator import SyncState

logger = logging.getLogger(APP_NAME)


class EventDebouncer:
    """Collapses a burst of changes into one sync request.

    The first qualifying change arms a deadline one idle window ahead. Later
    changes only move the last-event time; when the deadline comes up and the
    tree has not been quiet for a full window, it is re-armed for the remainder.
    `on_idle` is called exactly once per burst, no sooner than one idle window
    after the last change.

    Attributes:
        state (SyncState): Shared flags; `is_pending` is set while a deadline is armed.
        idle_window (float): Seconds of quiet required before firing.
    """

    def __init__(
        self,
        state: SyncState,
        on_idle: Callable[[], None],
        idle_window: float = SYNC_IDLE_SECS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.idle_window = idle_window
        self._on_idle = on_idle
        self._clock = clock
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._generation = 0

    def notify(self) -> None:
        """Records a qualifying change, arming the deadline if none is pending."""
        with self._lock:
            if self.state.record_event(self._clock()):
                logger.debug(f"Sync scheduled in {self.idle_window}s")
                self._arm(self.idle_window)

    def cancel(self) -> None:
        """Disarms any pending deadline without firing it."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            self.state.clear_pending()

    def _arm(self, delay: float) -> None:
        self._generation += 1
        self._timer = threading.Timer(delay, self._expire, args=(self._generation,))
        self._timer.daemon = True
        self._timer.start()

    def _expire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return  # Cancelled or superseded.

            quiet = self._clock() - self.state.last_event_time
            if quiet < self.idle_window:
                self._arm(self.idle_window - quiet)
                return

            self._timer = None
            self.state.clear_pending()

        logger.info(f"No changes for {self.idle_window}s; requesting sync")
        self._on_idle()
