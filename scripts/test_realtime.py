#!/usr/bin/env python3
"""
Test script for the realtime reconciliation listener.

InMemoryStore pushes change events synchronously from the writer's thread,
the listener reloads on its own worker thread.

Usage:
    python3 scripts/test_realtime.py
"""

import time

from harness import USER, Counter, MockConfig, at, run_tests, wait_for

from medreminder.models import AdherenceLog, AdherenceStatus
from medreminder.realtime import RealtimeListener
from medreminder.remote_store import ADHERENCE_LOGS, CARE_LINKS, InMemoryStore
from medreminder.state import ConnectivityState


def _listener(window=0.2, on_reload=None, **start):
    store = InMemoryStore()
    reloads = on_reload or Counter()
    connectivity = ConnectivityState()
    listener = RealtimeListener(store, reloads, MockConfig({"realtime.coalesce_window_seconds": window}),
                                connectivity=connectivity)
    listener.start(**start)
    return listener, store, reloads, connectivity


def _log(user_id=USER, hhmm="08:00", med_id="med-vitd"):
    return AdherenceLog.create(med_id, user_id, AdherenceStatus.TAKEN, at(hhmm), at(hhmm))


def test_matching_insert_triggers_reload():
    listener, store, reloads, _ = _listener(user_id=USER)
    try:
        store.insert_adherence_log(_log())
        assert wait_for(lambda: reloads.count(ADHERENCE_LOGS) == 1)
    finally:
        listener.stop()


def test_other_subject_is_discarded():
    listener, store, reloads, _ = _listener(window=0.05, user_id=USER)
    try:
        store.insert_adherence_log(_log(user_id="someone-else"))
        time.sleep(0.3)
        assert reloads.count() == 0
    finally:
        listener.stop()


def test_delete_matches_on_pre_image():
    listener, store, reloads, _ = _listener(window=0.05, user_id=USER)
    try:
        log = store.insert_adherence_log(_log())
        assert wait_for(lambda: reloads.count(ADHERENCE_LOGS) == 1)
        store.delete_adherence_log(log.id)
        assert wait_for(lambda: reloads.count(ADHERENCE_LOGS) == 2)
    finally:
        listener.stop()


def test_burst_is_coalesced():
    listener, store, reloads, _ = _listener(window=0.5, user_id=USER)
    try:
        for i in range(5):
            store.insert_adherence_log(_log(hhmm=f"0{i}:00"))
        assert wait_for(lambda: reloads.count() >= 1)
        time.sleep(0.7)
        assert reloads.count(ADHERENCE_LOGS) == 1
    finally:
        listener.stop()


def test_care_link_events_filtered_by_caregiver():
    listener, store, reloads, _ = _listener(window=0.05, user_id=USER, caregiver_id="carer-1")
    try:
        store.insert_care_link("carer-2", "AAAA1111")
        store.insert_care_link("carer-1", "BBBB2222")
        assert wait_for(lambda: reloads.count(CARE_LINKS) == 1)
        time.sleep(0.2)
        assert reloads.count(CARE_LINKS) == 1
    finally:
        listener.stop()


def test_reload_error_does_not_stop_worker():
    calls = []

    def flaky_reload(table):
        calls.append(table)
        if len(calls) == 1:
            raise RuntimeError("reload exploded")

    listener, store, _, _ = _listener(window=0.05, on_reload=flaky_reload, user_id=USER)
    try:
        store.insert_adherence_log(_log(hhmm="08:00"))
        assert wait_for(lambda: len(calls) == 1)
        store.insert_adherence_log(_log(hhmm="09:00"))
        assert wait_for(lambda: len(calls) == 2)
    finally:
        listener.stop()


def test_set_subject_switches_filter():
    listener, store, reloads, _ = _listener(window=0.05, user_id=USER)
    try:
        listener.set_subject("recipient-9")
        assert wait_for(lambda: reloads.count(ADHERENCE_LOGS) == 1)
        store.insert_adherence_log(_log(user_id=USER))
        store.insert_adherence_log(_log(user_id="recipient-9", hhmm="10:00"))
        assert wait_for(lambda: reloads.count(ADHERENCE_LOGS) == 2)
        time.sleep(0.2)
        assert reloads.count(ADHERENCE_LOGS) == 2
    finally:
        listener.stop()


def test_subscription_failure_surfaces_and_restarts():
    store = InMemoryStore()
    store.realtime_available = False
    connectivity = ConnectivityState()
    listener = RealtimeListener(store, Counter(), MockConfig(), connectivity=connectivity)
    try:
        listener.start(user_id=USER, caregiver_id=USER)
        assert listener.failed_tables == {ADHERENCE_LOGS, CARE_LINKS}
        assert connectivity.realtime_error
        assert store.subscriber_count(ADHERENCE_LOGS) == 0

        store.realtime_available = True
        assert listener.restart_failed()
        assert connectivity.realtime_error is None
        assert store.subscriber_count(ADHERENCE_LOGS) == 1
    finally:
        listener.stop()


def test_stop_unsubscribes():
    listener, store, _, _ = _listener(user_id=USER)
    assert store.subscriber_count(ADHERENCE_LOGS) == 1
    assert store.subscriber_count(CARE_LINKS) == 1
    listener.stop()
    assert store.subscriber_count(ADHERENCE_LOGS) == 0
    assert store.subscriber_count(CARE_LINKS) == 0


def main():
    run_tests(globals(), "TEST: Realtime Reconciliation Listener")


if __name__ == "__main__":
    main()
