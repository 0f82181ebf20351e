"""Token-bucket gate shared by every request a Downloader sends.

The bucket starts full. A daemon ticker thread tops it back up to capacity once
per refill interval; callers never hand tokens back.
"""

import logging
import threading
import time
from typing import Optional

from .errors import FetchCancelled

logger = logging.getLogger("chapter_mirror")

_WAIT_SLICE = 0.05


class TokenBucket:
    def __init__(self, capacity: int, refill_interval: float = 1.0, start_ticker: bool = True):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.tokens = capacity
        self.refill_interval = refill_interval
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._auto_start = start_ticker
        self._ticker: Optional[threading.Thread] = None

    def _ensure_ticker(self):
        if not self._auto_start or self._ticker is not None:
            return
        with self._cond:
            if self._ticker is None and not self._stop.is_set():
                self._ticker = threading.Thread(
                    target=self._run_ticker, name="token-bucket-ticker", daemon=True,
                )
                self._ticker.start()

    def _run_ticker(self):
        while not self._stop.wait(self.refill_interval):
            self.refill()

    def refill(self):
        with self._cond:
            self.tokens = self.capacity
            self._cond.notify_all()

    def acquire(self, timeout: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None) -> bool:
        """Block until a token is available. Returns False only on timeout."""
        self._ensure_ticker()
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            waited = False
            while self.tokens <= 0:
                if cancel_event is not None and cancel_event.is_set():
                    raise FetchCancelled("cancelled while waiting for a rate-limit token")
                wait_for = _WAIT_SLICE
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    wait_for = min(wait_for, remaining)
                if not waited:
                    logger.debug("Rate limit reached, waiting for refill")
                    waited = True
                self._cond.wait(wait_for)
            self.tokens -= 1
            return True

    def close(self):
        self._stop.set()
        ticker = self._ticker
        if ticker is not None and ticker is not threading.current_thread():
            ticker.join(timeout=self.refill_interval + 1)
