"""
Notification Scheduler

Keeps the platform's pending notifications for a medication equal to its
future occurrences inside the horizon. synchronize() is the single entry
point: cancel the medication's reminders, then schedule afresh. Pending
snoozes are kept until they fire or the medication is removed.

Ids are deterministic (medication id + epoch minute), so synchronizing
twice in a row leaves the same pending set. A per-medication lock stops
two synchronize calls for the same medication from interleaving their
cancel and schedule steps; different medications run in parallel.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List

from dateutil import tz

from medreminder.errors import SchedulingError
from medreminder.logger import get_logger
from medreminder.models import (
    Medication,
    NotificationPayload,
    Occurrence,
    PendingNotification,
    notification_id,
    notification_prefix,
    snooze_prefix,
)
from medreminder.notification_center import MEDICATION_CATEGORY, NotificationCenter
from medreminder.occurrences import DEFAULT_HORIZON_DAYS, generate_occurrences
from medreminder.recurrence import get_timezone


@dataclass(frozen=True)
class SyncReport:
    scheduled: int = 0
    failed: int = 0
    cancelled: int = 0


def reminder_payload(occurrence: Occurrence) -> dict:
    """Payload for a medication reminder, including its display text."""
    payload = NotificationPayload.for_occurrence(occurrence).to_dict()
    body = f"Time to take {occurrence.medication_name}"
    if occurrence.dosage:
        body += f" ({occurrence.dosage})"
    payload.update({
        "title": "Medication Reminder",
        "body": body,
        "category": MEDICATION_CATEGORY,
    })
    return payload


class NotificationScheduler:
    """Owns every medication_* notification in the notification center.

    snooze_* notifications are scheduled through schedule_one() and left
    alone by synchronize(); remove() and remove_all() clear them too.
    """

    def __init__(self, center: NotificationCenter, config=None,
                 clock: Callable[[], datetime] = None):
        self.center = center
        self.config = config
        self.logger = get_logger(__name__, config)
        self._clock = clock or (lambda: datetime.now(tz.tzutc()))

        get = config.get if config is not None else (lambda key, default=None: default)
        self.enabled = get("notifications.enabled", True)
        self.lead_minutes = get("notifications.lead_minutes", 0)
        self.horizon_days = get("occurrences.horizon_days", DEFAULT_HORIZON_DAYS)

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, medication_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(medication_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[medication_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def _cancel_for(self, medication_id: str, include_snoozes: bool = False) -> int:
        prefixes = [notification_prefix(medication_id)]
        if include_snoozes:
            prefixes.append(snooze_prefix(medication_id))
        ids = [p.id for p in self.center.list_pending() if p.id.startswith(tuple(prefixes))]
        if ids:
            self.center.cancel(ids)
        return len(ids)

    def remove(self, medication_id: str) -> int:
        """Cancel every pending notification for one medication, snoozes included."""
        medication_id = str(medication_id)
        with self._lock_for(medication_id):
            try:
                cancelled = self._cancel_for(medication_id, include_snoozes=True)
            except SchedulingError as e:
                self.logger.error(f"Failed to cancel notifications for {medication_id}: {e}")
                return 0
        self.logger.info(f"Removed {cancelled} notification(s) for medication {medication_id}")
        return cancelled

    def remove_all(self) -> bool:
        """Drop every pending notification (sign-out). False if the center refused."""
        with self._locks_guard:
            locks = list(self._locks.values())
        for lock in locks:
            lock.acquire()
        try:
            self.center.cancel_all()
        except SchedulingError as e:
            self.logger.error(f"Failed to clear pending notifications: {e}")
            return False
        finally:
            for lock in locks:
                lock.release()
        self.logger.info("Removed all pending notifications")
        return True

    # ------------------------------------------------------------------
    # Synchronize
    # ------------------------------------------------------------------

    def synchronize(self, medication: Medication) -> SyncReport:
        """Make the medication's pending notifications match its schedule."""
        with self._lock_for(medication.id):
            try:
                cancelled = self._cancel_for(medication.id,
                                             include_snoozes=not medication.is_active)
            except SchedulingError as e:
                # Ids are deterministic, so rescheduling still replaces them
                self.logger.error(f"Cancel failed for medication {medication.id}: {e}")
                cancelled = 0

            if not medication.is_active:
                self.logger.info(f"Medication {medication.id} inactive; "
                                 f"cancelled {cancelled} notification(s)")
                return SyncReport(cancelled=cancelled)

            if not self.enabled:
                self.logger.warning("Notifications not enabled; nothing scheduled "
                                    f"for {medication.name}")
                return SyncReport(cancelled=cancelled)

            now = self._clock()
            today = now.astimezone(get_timezone(medication.timezone)).date()
            lead = timedelta(minutes=self.lead_minutes)

            scheduled = failed = 0
            for occ in generate_occurrences(medication, today, self.horizon_days):
                if occ.scheduled_at <= now:
                    continue
                nid = notification_id(occ.medication_id, occ.scheduled_at)
                # Inside the lead window the reminder goes out right away
                trigger = max(occ.scheduled_at - lead, now)
                try:
                    self.center.schedule(nid, trigger, reminder_payload(occ))
                    scheduled += 1
                except SchedulingError as e:
                    failed += 1
                    self.logger.error(f"Failed to schedule {nid}: {e}")

        self.logger.info(f"Synchronized {medication.name}: {scheduled} scheduled, "
                         f"{failed} failed, {cancelled} cancelled")
        return SyncReport(scheduled=scheduled, failed=failed, cancelled=cancelled)

    def synchronize_all(self, medications: Iterable[Medication]) -> Dict[str, SyncReport]:
        """Synchronize several medications, one thread per medication."""
        reports: Dict[str, SyncReport] = {}
        reports_lock = threading.Lock()

        def _run(med: Medication):
            try:
                report = self.synchronize(med)
            except Exception as e:
                self.logger.error(f"Synchronize failed for medication {med.id}: {e}")
                report = SyncReport(failed=1)
            with reports_lock:
                reports[med.id] = report

        threads: List[threading.Thread] = []
        for med in medications:
            t = threading.Thread(target=_run, args=(med,), daemon=True,
                                 name=f"sync-{med.id[:8]}")
            t.start()
            threads.append(t)
        for t in threads:
            t.join()
        return reports

    def schedule_one(self, notification: PendingNotification) -> bool:
        """Schedule a single ad-hoc notification (snooze, confirmation)."""
        try:
            self.center.schedule(notification.id, notification.trigger_at, notification.payload)
        except SchedulingError as e:
            self.logger.error(f"Failed to schedule {notification.id}: {e}")
            return False
        self.logger.debug(f"Scheduled {notification.id} for {notification.trigger_at.isoformat()}")
        return True
