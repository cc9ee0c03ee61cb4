"""
Shared helpers for the medreminder test scripts.

Every test script is runnable directly (python3 scripts/test_x.py) and is
also collected by pytest. Tests pin the process timezone to UTC so "today"
means the same thing on every machine.
"""

import os
import sys
import threading
import time
import traceback
from datetime import date, datetime, timedelta
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ["TZ"] = "UTC"
time.tzset()

from dateutil import tz

from medreminder.logger import configure_logging
from medreminder.models import Medication, ScheduleType


UTC = tz.tzutc()
DAY = date(2026, 10, 18)
USER = "user-1"


class MockConfig:
    """Minimal config mock that supports dot-notation get()."""

    def __init__(self, overrides=None):
        self._values = {
            "sync.max_retries": 3,
            "sync.base_delay_seconds": 0,
            "occurrences.horizon_days": 1,
            "notifications.enabled": True,
            "notifications.lead_minutes": 0,
            "notifications.snooze_minutes": 15,
            "notifications.present_with_notify_send": False,
            "realtime.coalesce_window_seconds": 0.2,
            "care_links.invite_ttl_hours": 72,
            "logging.level": "WARNING",
        }
        self._values.update(overrides or {})

    def get(self, key, default=None):
        return self._values.get(key, default)

    def set(self, key, value):
        self._values[key] = value


configure_logging(MockConfig())


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

    def set(self, hhmm: str, day: date = DAY):
        self.now = at(hhmm, day)


def at(hhmm: str, day: date = DAY) -> datetime:
    hour, minute = (int(p) for p in hhmm.split(":"))
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=UTC)


def vitamin_d(times=("08:00", "20:00"), med_id="med-vitd", user_id=USER, **kwargs) -> Medication:
    return Medication(id=med_id, user_id=user_id, name="Vitamin D", dosage="1000 IU",
                      schedule_type=kwargs.pop("schedule_type", ScheduleType.DAILY),
                      notification_times=list(times), timezone="UTC", **kwargs)


def no_sleep(seconds):
    pass


def wait_for(predicate, timeout=3.0, interval=0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class Counter:
    """Thread-safe call recorder for callbacks."""

    def __init__(self):
        self._lock = threading.Lock()
        self.calls = []

    def __call__(self, *args):
        with self._lock:
            self.calls.append(args)

    def count(self, *args) -> int:
        with self._lock:
            return sum(1 for c in self.calls if c == args) if args else len(self.calls)


def run_tests(namespace: dict, title: str):
    """Run every test_* function in namespace and print a summary."""
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)

    results = []
    for name, fn in sorted(namespace.items()):
        if not name.startswith("test_") or not callable(fn):
            continue
        try:
            fn()
            results.append((name, True))
            print(f"  [+] {name}: PASS")
        except Exception:
            results.append((name, False))
            print(f"  [-] {name}: FAIL")
            traceback.print_exc()

    failed = [n for n, ok in results if not ok]
    print(f"\n  {len(results) - len(failed)}/{len(results)} passed")
    if failed:
        sys.exit(1)
