"""
Cancellable countdown ("resend code in N seconds").
"""

import threading
from typing import Callable, Optional

from medreminder.logger import get_logger


logger = get_logger(__name__)


class Countdown:
    """Ticks once per interval until zero, then calls on_finish.

    After cancel() returns, neither callback fires again.
    """

    def __init__(self, seconds: int, on_tick: Optional[Callable[[int], None]] = None,
                 on_finish: Optional[Callable[[], None]] = None, interval: float = 1.0):
        self.remaining = int(seconds)
        self.on_tick = on_tick
        self.on_finish = on_finish
        self.interval = interval
        self._cancelled = threading.Event()
        self._callback_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name="countdown")
        self._thread.start()

    def cancel(self):
        with self._callback_lock:
            self._cancelled.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval + 1)

    def _fire(self, callback, *args) -> bool:
        with self._callback_lock:
            if self._cancelled.is_set():
                return False
            if callback is not None:
                try:
                    callback(*args)
                except Exception as e:
                    logger.error(f"Countdown callback failed: {e}")
            return True

    def _run(self):
        while self.remaining > 0:
            if self._cancelled.wait(self.interval):
                return
            self.remaining -= 1
            if not self._fire(self.on_tick, self.remaining):
                return
        self._fire(self.on_finish)
