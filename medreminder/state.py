"""
Observable state containers.

Explicit state objects with a subscribe/notify mechanism, independent of
any UI toolkit. Writers call update(); every subscriber receives an
immutable snapshot of the container after the change.
"""

import threading
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from medreminder.logger import get_logger


logger = get_logger(__name__)


class Observable:
    """Thread-safe holder for a frozen snapshot dataclass."""

    def __init__(self, initial):
        self._lock = threading.Lock()
        self._snapshot = initial
        self._subscribers: List[Callable] = []

    @property
    def snapshot(self):
        with self._lock:
            return self._snapshot

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        """Register callback(snapshot). Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def update(self, **changes):
        with self._lock:
            self._snapshot = replace(self._snapshot, **changes)
            snapshot = self._snapshot
            subscribers = list(self._subscribers)
        for cb in subscribers:
            try:
                cb(snapshot)
            except Exception as e:
                logger.error(f"State subscriber {cb!r} failed: {e}")

    def __getattr__(self, name):
        # Read-through to the snapshot: state.doses, state.error, ...
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self.snapshot, name)


@dataclass(frozen=True)
class ScheduleSnapshot:
    doses: tuple = ()
    loading: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class CaregiverSnapshot:
    links: tuple = ()
    selected_recipient: Optional[str] = None
    doses: tuple = ()
    loading: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class ConnectivitySnapshot:
    online: bool = True
    database_configured: bool = False
    configuration_error: Optional[str] = None
    realtime_error: Optional[str] = None


class ScheduleState(Observable):
    """Today's doses for the signed-in user."""

    def __init__(self):
        super().__init__(ScheduleSnapshot())


class CaregiverState(Observable):
    """Care links and the selected recipient's doses for a caregiver."""

    def __init__(self):
        super().__init__(CaregiverSnapshot())


class ConnectivityState(Observable):
    """Offline indicator and startup-gate status."""

    def __init__(self):
        super().__init__(ConnectivitySnapshot())
