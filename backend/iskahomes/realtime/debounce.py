from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class RefreshDebouncer:
    """Collapse bursts of ``trigger()`` into one call ``delay`` seconds after the last."""

    def __init__(self, delay: float, fn: Callable[[], None]):
        self.delay = max(0.0, float(delay))
        self.fn = fn
        self.calls = 0
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.delay, self._fire)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._timer is None or self._timer is not threading.current_thread():
                return
            self._timer = None
        self._run()

    def _run(self) -> None:
        self.calls += 1
        try:
            self.fn()
        except Exception:
            logger.exception("debounced_refresh_failed")

    def flush(self) -> bool:
        """Run a pending call now. Returns False if nothing was pending."""
        with self._lock:
            timer = self._timer
            self._timer = None
        if timer is None:
            return False
        timer.cancel()
        self._run()
        return True

    def cancel(self) -> None:
        with self._lock:
            timer = self._timer
            self._timer = None
        if timer is not None:
            timer.cancel()
