#!/usr/bin/env python3
"""
Test script for the adherence reconciler.

Usage:
    python3 scripts/test_adherence.py
"""

from dataclasses import replace
from datetime import timedelta

from harness import DAY, USER, at, run_tests, vitamin_d

from medreminder.adherence import (
    build_day_schedule,
    log_window,
    reconcile,
    summarize,
    todays_occurrences,
)
from medreminder.models import AdherenceLog, AdherenceStatus, Medication, OccurrenceStatus
from medreminder.occurrences import occurrences_for_day


def _log(status, hhmm, med_id="med-vitd"):
    return AdherenceLog.create(medication_id=med_id, user_id=USER, status=status,
                               scheduled_time=at(hhmm), logged_at=at(hhmm))


def _statuses(doses):
    return [(d.occurrence.time_label, d.status) for d in doses]


def test_vitamin_d_morning_missed_evening_pending():
    occs = occurrences_for_day(vitamin_d(), DAY)
    doses = reconcile(occs, [], at("09:00"))
    assert _statuses(doses) == [("08:00", OccurrenceStatus.MISSED),
                                ("20:00", OccurrenceStatus.PENDING)]


def test_taken_log_wins_regardless_of_time():
    occs = occurrences_for_day(vitamin_d(), DAY)
    logs = [_log(AdherenceStatus.TAKEN, "08:00")]
    for now in ("07:00", "09:00", "23:59"):
        doses = reconcile(occs, logs, at(now))
        assert doses[0].status == OccurrenceStatus.TAKEN
        assert doses[0].log is logs[0]


def test_reconcile_is_pure():
    occs = occurrences_for_day(vitamin_d(), DAY)
    logs = [_log(AdherenceStatus.TAKEN, "20:00")]
    first = reconcile(occs, logs, at("12:00"))
    second = reconcile(occs, logs, at("12:00"))
    assert _statuses(first) == _statuses(second)


def test_moving_now_past_instant_flips_pending_to_missed():
    occs = occurrences_for_day(vitamin_d(), DAY)
    logs = [_log(AdherenceStatus.TAKEN, "08:00")]
    before = reconcile(occs, logs, at("19:59"))
    after = reconcile(occs, logs, at("20:01"))
    assert before[1].status == OccurrenceStatus.PENDING
    assert after[1].status == OccurrenceStatus.MISSED
    assert before[0].status == after[0].status == OccurrenceStatus.TAKEN


def test_occurrence_at_exactly_now_is_pending():
    occs = occurrences_for_day(vitamin_d(), DAY)
    assert reconcile(occs, [], at("08:00"))[0].status == OccurrenceStatus.PENDING


def test_skipped_and_missed_logs_map_to_missed():
    occs = occurrences_for_day(vitamin_d(), DAY)
    logs = [_log(AdherenceStatus.SKIPPED, "08:00"), _log(AdherenceStatus.MISSED, "20:00")]
    doses = reconcile(occs, logs, at("00:00"))
    assert [d.status for d in doses] == [OccurrenceStatus.MISSED, OccurrenceStatus.MISSED]


def test_unknown_status_falls_back_to_time():
    occs = occurrences_for_day(vitamin_d(), DAY)
    bogus = replace(_log(AdherenceStatus.TAKEN, "20:00"), status="postponed")
    doses = reconcile(occs, [bogus], at("09:00"))
    assert doses[1].status == OccurrenceStatus.PENDING
    assert doses[1].log is None


def test_log_matches_within_the_same_minute():
    occs = occurrences_for_day(vitamin_d(), DAY)
    log = AdherenceLog.create("med-vitd", USER, AdherenceStatus.TAKEN,
                              scheduled_time=at("08:00").replace(second=42),
                              logged_at=at("08:03"))
    assert reconcile(occs, [log], at("09:00"))[0].status == OccurrenceStatus.TAKEN


def test_logs_of_other_medications_ignored():
    occs = occurrences_for_day(vitamin_d(), DAY)
    other = _log(AdherenceStatus.TAKEN, "08:00", med_id="med-other")
    assert reconcile(occs, [other], at("09:00"))[0].status == OccurrenceStatus.MISSED


def test_build_day_schedule_merges_medications():
    iron = Medication(id="med-iron", user_id=USER, name="Iron", dosage="65 mg",
                      notification_times=["12:00"], timezone="UTC")
    logs = [_log(AdherenceStatus.TAKEN, "12:00", med_id="med-iron")]
    doses = build_day_schedule([vitamin_d(), iron], logs, DAY, at("13:00"))
    assert [(d.occurrence.medication_name, d.status) for d in doses] == [
        ("Vitamin D", OccurrenceStatus.MISSED),
        ("Iron", OccurrenceStatus.TAKEN),
        ("Vitamin D", OccurrenceStatus.PENDING),
    ]


def test_todays_occurrences_use_each_medication_zone():
    tokyo = vitamin_d(med_id="med-tokyo", times=["08:00"]).with_changes(timezone="Asia/Tokyo")
    # 20:00 UTC is already tomorrow morning in Tokyo
    occs = todays_occurrences([vitamin_d(), tokyo], at("20:00"))
    assert [(o.medication_id, o.day) for o in occs] == [
        ("med-vitd", DAY), ("med-vitd", DAY), ("med-tokyo", DAY + timedelta(days=1))]
    assert log_window(occs) == (at("08:00"), at("23:01"))
    assert log_window([]) is None


def test_summarize():
    doses = build_day_schedule([vitamin_d(times=["08:00", "12:00", "20:00"])],
                               [_log(AdherenceStatus.TAKEN, "08:00")], DAY, at("13:00"))
    summary = summarize(doses)
    assert (summary.taken, summary.missed, summary.pending, summary.total) == (1, 1, 1, 3)


def main():
    run_tests(globals(), "TEST: Adherence Reconciler")


if __name__ == "__main__":
    main()
