#!/usr/bin/env python3
"""
Test script for the notification scheduler.

Uses MemoryNotificationCenter; nothing touches the desktop.

Usage:
    python3 scripts/test_scheduler.py
"""

import threading
from datetime import timedelta

from harness import DAY, FixedClock, MockConfig, at, run_tests, vitamin_d

from medreminder.errors import SchedulingError
from medreminder.models import (
    NotificationPayload,
    PendingNotification,
    notification_id,
    snooze_notification_id,
)
from medreminder.notification_center import MEDICATION_CATEGORY, MemoryNotificationCenter
from medreminder.notification_scheduler import NotificationScheduler


def _scheduler(now="00:00", **overrides):
    values = {"occurrences.horizon_days": 2}
    values.update(overrides)
    center = MemoryNotificationCenter()
    clock = FixedClock(at(now))
    return NotificationScheduler(center, MockConfig(values), clock=clock), center, clock


def _ids(center):
    return sorted(p.id for p in center.list_pending())


def test_schedules_only_future_occurrences():
    scheduler, center, _ = _scheduler(now="09:00")
    report = scheduler.synchronize(vitamin_d())
    assert report.scheduled == 3 and report.failed == 0
    triggers = [p.trigger_at for p in center.list_pending()]
    assert triggers == [at("20:00"), at("08:00", DAY + timedelta(days=1)),
                        at("20:00", DAY + timedelta(days=1))]


def test_synchronize_twice_is_idempotent():
    scheduler, center, _ = _scheduler()
    med = vitamin_d()
    scheduler.synchronize(med)
    first = _ids(center)
    report = scheduler.synchronize(med)
    assert _ids(center) == first
    assert len(first) == 4
    assert report.cancelled == 4 and report.scheduled == 4


def test_concurrent_synchronize_same_medication():
    scheduler, center, _ = _scheduler()
    med = vitamin_d()
    barrier = threading.Barrier(2)

    def run():
        barrier.wait()
        scheduler.synchronize(med)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(center.list_pending()) == 2 * 2


def test_notification_ids_and_payload():
    scheduler, center, _ = _scheduler(now="09:00", **{"occurrences.horizon_days": 1})
    scheduler.synchronize(vitamin_d())
    [pending] = center.list_pending()
    assert pending.id == notification_id("med-vitd", at("20:00"))
    assert pending.id == f"medication_med-vitd_{int(at('20:00').timestamp()) // 60}"
    payload = NotificationPayload.from_dict(pending.payload)
    assert payload.medication_name == "Vitamin D"
    assert payload.dosage == "1000 IU"
    assert payload.scheduled_time == at("20:00")
    assert pending.payload["category"] == MEDICATION_CATEGORY


def test_lead_time_moves_trigger_not_identity():
    scheduler, center, _ = _scheduler(now="09:00", **{"occurrences.horizon_days": 1,
                                                      "notifications.lead_minutes": 10})
    scheduler.synchronize(vitamin_d())
    [pending] = center.list_pending()
    assert pending.trigger_at == at("19:50")
    assert pending.id == notification_id("med-vitd", at("20:00"))


def test_lead_time_inside_window_triggers_now():
    scheduler, center, _ = _scheduler(now="19:55", **{"occurrences.horizon_days": 1,
                                                      "notifications.lead_minutes": 10})
    scheduler.synchronize(vitamin_d())
    [pending] = center.list_pending()
    assert pending.trigger_at == at("19:55")
    assert pending.id == notification_id("med-vitd", at("20:00"))


def test_edit_replaces_old_times():
    scheduler, center, _ = _scheduler()
    med = vitamin_d()
    scheduler.synchronize(med)
    scheduler.synchronize(med.with_changes(notification_times=["09:30"]))
    assert [p.trigger_at for p in center.list_pending()] == [
        at("09:30"), at("09:30", DAY + timedelta(days=1))]


def test_inactive_medication_is_only_cancelled():
    scheduler, center, _ = _scheduler()
    med = vitamin_d()
    scheduler.synchronize(med)
    report = scheduler.synchronize(med.with_changes(is_active=False))
    assert report.scheduled == 0 and report.cancelled == 4
    assert center.list_pending() == []


def test_single_refusal_does_not_abort_batch():
    scheduler, center, _ = _scheduler()
    center.reject_ids.add(notification_id("med-vitd", at("20:00")))
    report = scheduler.synchronize(vitamin_d())
    assert report.scheduled == 3 and report.failed == 1
    assert len(center.list_pending()) == 3


def test_disabled_notifications_schedule_nothing():
    scheduler, center, _ = _scheduler(**{"notifications.enabled": False})
    report = scheduler.synchronize(vitamin_d())
    assert report.scheduled == 0
    assert center.list_pending() == []


def test_remove_leaves_other_medications():
    scheduler, center, _ = _scheduler()
    scheduler.synchronize(vitamin_d())
    scheduler.synchronize(vitamin_d(med_id="med-iron", times=["12:00"]))
    assert scheduler.remove("med-vitd") == 4
    assert all(p.id.startswith("medication_med-iron_") for p in center.list_pending())
    assert len(center.list_pending()) == 2


def test_remove_all():
    scheduler, center, _ = _scheduler()
    scheduler.synchronize(vitamin_d())
    scheduler.schedule_one(PendingNotification("confirmation_x", at("09:00"), {"title": "t"}))
    assert scheduler.remove_all()
    assert center.list_pending() == []


def _snooze(center, med_id="med-vitd", hhmm="08:20"):
    nid = snooze_notification_id(med_id, at(hhmm))
    center.schedule(nid, at(hhmm), {"title": "t"})
    return nid


def test_synchronize_keeps_snoozes():
    scheduler, center, _ = _scheduler()
    nid = _snooze(center)
    report = scheduler.synchronize(vitamin_d())
    assert report.cancelled == 0
    assert nid in _ids(center)


def test_remove_and_deactivate_clear_snoozes():
    scheduler, center, _ = _scheduler()
    med = vitamin_d()
    scheduler.synchronize(med)
    _snooze(center)
    assert scheduler.remove("med-vitd") == 5
    assert center.list_pending() == []

    _snooze(center)
    scheduler.synchronize(med.with_changes(is_active=False))
    assert center.list_pending() == []


class RefusingCenter(MemoryNotificationCenter):
    def cancel_all(self):
        raise SchedulingError("store locked")


def test_remove_all_reports_refusal():
    center = RefusingCenter()
    scheduler = NotificationScheduler(center, MockConfig(), clock=FixedClock(at("00:00")))
    scheduler.synchronize(vitamin_d())
    assert scheduler.remove_all() is False
    assert len(center.list_pending()) == 2


def test_synchronize_all():
    scheduler, center, _ = _scheduler()
    meds = [vitamin_d(), vitamin_d(med_id="med-b", times=["10:00"]),
            vitamin_d(med_id="med-c", times=["11:00", "23:00"])]
    reports = scheduler.synchronize_all(meds)
    assert {k: r.scheduled for k, r in reports.items()} == {"med-vitd": 4, "med-b": 2, "med-c": 4}
    assert len(center.list_pending()) == 10


def test_horizon_rolls_with_clock():
    scheduler, center, clock = _scheduler()
    med = vitamin_d()
    scheduler.synchronize(med)
    clock.advance(days=1)
    scheduler.synchronize(med)
    days = sorted({p.trigger_at.date() for p in center.list_pending()})
    assert days == [DAY + timedelta(days=1), DAY + timedelta(days=2)]


def main():
    run_tests(globals(), "TEST: Notification Scheduler")


if __name__ == "__main__":
    main()
