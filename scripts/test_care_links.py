#!/usr/bin/env python3
"""
Test script for caregiver invitations and the caregiver schedule view.

Usage:
    python3 scripts/test_care_links.py
"""

import re
from datetime import timedelta

from harness import DAY, FixedClock, MockConfig, at, no_sleep, run_tests, vitamin_d

from medreminder.care_links import CareLinkManager, generate_invite_code
from medreminder.errors import InvitationExpiredError, InvitationNotFoundError
from medreminder.models import AdherenceLog, AdherenceStatus, CareLinkStatus, OccurrenceStatus
from medreminder.remote_store import InMemoryStore
from medreminder.sync import ResilientSync, StaticProbe


CAREGIVER = "carer-1"
RECIPIENT = "grandma"


def _manager(now="09:00", store=None):
    config = MockConfig()
    store = store or InMemoryStore()
    clock = FixedClock(at(now))
    sync = ResilientSync(StaticProbe(), config, sleep=no_sleep)
    return CareLinkManager(store, sync, CAREGIVER, config, clock=clock), store, clock


def _expect(error_type, fn, *args):
    try:
        fn(*args)
    except error_type:
        return
    raise AssertionError(f"expected {error_type.__name__}")


def test_invite_code_format():
    codes = {generate_invite_code() for _ in range(50)}
    assert all(re.fullmatch(r"[A-Z0-9]{8}", c) for c in codes)
    assert len(codes) > 1


def test_create_invitation():
    manager, store, _ = _manager()
    link = manager.create_invitation()
    assert link.status == CareLinkStatus.PENDING
    assert link.caregiver_id == CAREGIVER
    assert link.expires_at == at("09:00") + timedelta(hours=72)
    assert store.find_care_link_by_code(link.invite_code).id == link.id


def test_redeem_accepts_and_lists_recipient():
    manager, _, _ = _manager()
    link = manager.create_invitation()
    accepted = manager.redeem(link.invite_code.lower(), RECIPIENT)
    assert accepted.status == CareLinkStatus.ACCEPTED
    assert accepted.user_id == RECIPIENT

    links = manager.load_recipients()
    assert [l.user_id for l in links] == [RECIPIENT]
    assert manager.state.links == tuple(links)
    assert manager.state.error is None


def test_pending_links_not_listed_as_recipients():
    manager, _, _ = _manager()
    manager.create_invitation()
    assert manager.load_recipients() == []


def test_expired_invitation_rejected():
    manager, _, clock = _manager()
    link = manager.create_invitation()
    clock.advance(hours=72)
    _expect(InvitationExpiredError, manager.redeem, link.invite_code, RECIPIENT)


def test_unknown_or_used_code_rejected():
    manager, _, _ = _manager()
    _expect(InvitationNotFoundError, manager.redeem, "ZZZZ9999", RECIPIENT)
    link = manager.create_invitation()
    manager.redeem(link.invite_code, RECIPIENT)
    _expect(InvitationNotFoundError, manager.redeem, link.invite_code, "someone-else")


def test_recipient_schedule_is_reconciled():
    store = InMemoryStore()
    store.insert_medication(vitamin_d(user_id=RECIPIENT))
    store.insert_adherence_log(AdherenceLog.create(
        "med-vitd", RECIPIENT, AdherenceStatus.TAKEN, at("08:00"), at("08:02")))
    manager, _, _ = _manager(now="21:00", store=store)

    doses = manager.load_recipient_schedule(RECIPIENT)
    assert [d.status for d in doses] == [OccurrenceStatus.TAKEN, OccurrenceStatus.MISSED]
    assert manager.state.selected_recipient == RECIPIENT
    assert manager.state.doses == tuple(doses)
    assert doses[0].occurrence.day == DAY


def test_recipient_schedule_uses_medication_timezone():
    store = InMemoryStore()
    med = vitamin_d(user_id=RECIPIENT, times=["23:30"]).with_changes(timezone="America/New_York")
    store.insert_medication(med)
    store.insert_adherence_log(AdherenceLog.create(
        "med-vitd", RECIPIENT, AdherenceStatus.TAKEN, at("03:30"), at("02:55")))
    manager, _, _ = _manager(now="03:00", store=store)

    [dose] = manager.load_recipient_schedule(RECIPIENT)
    assert dose.occurrence.day == DAY - timedelta(days=1)
    assert dose.status == OccurrenceStatus.TAKEN


def test_load_failure_sets_error_state():
    manager, store, _ = _manager()
    store.reachable = False
    assert manager.load_recipients() == []
    assert manager.state.error
    assert manager.state.loading is False


def main():
    run_tests(globals(), "TEST: Care Links")


if __name__ == "__main__":
    main()
