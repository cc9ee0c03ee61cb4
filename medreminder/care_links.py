"""
Care links: caregiver invitations and the caregiver's view of a recipient.

A caregiver creates a pending link with a short invite code; the cared-for
user redeems it, which accepts the link. Accepted links give the caregiver
read access to the recipient's day schedule.
"""

import secrets
import string
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from dateutil import tz

from medreminder.adherence import log_window, reconcile, todays_occurrences
from medreminder.errors import (
    ConflictError,
    InvitationExpiredError,
    InvitationNotFoundError,
    MedReminderError,
)
from medreminder.logger import get_logger
from medreminder.models import CareLink, CareLinkStatus, ScheduledDose
from medreminder.remote_store import RemoteStore
from medreminder.state import CaregiverState
from medreminder.sync import ResilientSync


INVITE_CODE_LENGTH = 8
INVITE_ALPHABET = string.ascii_uppercase + string.digits
_MAX_CODE_ATTEMPTS = 5


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(length))


class CareLinkManager:

    def __init__(self, store: RemoteStore, sync: ResilientSync, caregiver_id: str,
                 config=None, state: Optional[CaregiverState] = None,
                 clock: Callable[[], datetime] = None):
        self.store = store
        self.sync = sync
        self.caregiver_id = str(caregiver_id)
        self.logger = get_logger(__name__, config)
        self.state = state or CaregiverState()
        self._clock = clock or (lambda: datetime.now(tz.tzutc()))

        get = config.get if config is not None else (lambda key, default=None: default)
        self.invite_ttl = timedelta(hours=get("care_links.invite_ttl_hours", 72))

    def _remote(self, description: str, operation):
        return self.sync.perform_with_retry(operation, description=description)

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(self) -> CareLink:
        """Insert a pending link with a fresh invite code."""
        expires_at = self._clock() + self.invite_ttl
        last_error = None
        for _ in range(_MAX_CODE_ATTEMPTS):
            code = generate_invite_code()
            try:
                link = self._remote("insert_care_link", lambda: self.store.insert_care_link(
                    self.caregiver_id, code, CareLinkStatus.PENDING.value, expires_at))
            except ConflictError as e:
                # Code collision; draw another
                last_error = e
                continue
            self.logger.info(f"Created invitation {link.invite_code} "
                             f"(expires {expires_at.isoformat()})")
            return link
        raise last_error

    def redeem(self, invite_code: str, user_id: str) -> CareLink:
        """Accept a pending invitation on behalf of the cared-for user."""
        code = (invite_code or "").strip().upper()
        link = self._remote("find_care_link_by_code",
                            lambda: self.store.find_care_link_by_code(code))
        if link is None or link.status != CareLinkStatus.PENDING:
            raise InvitationNotFoundError(f"No pending invitation for code {code!r}")

        now = self._clock()
        if link.is_expired(now):
            raise InvitationExpiredError(
                f"Invitation {code} expired at {link.expires_at.isoformat()}")

        accepted = replace(link, status=CareLinkStatus.ACCEPTED, user_id=str(user_id),
                           updated_at=now)
        saved = self._remote("update_care_link", lambda: self.store.update_care_link(accepted))
        self.logger.info(f"Invitation {code} accepted by user {user_id}")
        return saved

    # ------------------------------------------------------------------
    # Caregiver view
    # ------------------------------------------------------------------

    def load_recipients(self) -> List[CareLink]:
        """Accepted links for this caregiver, published to CaregiverState."""
        self.state.update(loading=True)
        try:
            links = self._remote("list_care_links", lambda: self.store.list_care_links(
                self.caregiver_id, CareLinkStatus.ACCEPTED.value))
        except MedReminderError as e:
            self.logger.error(f"Could not load care recipients: {e}")
            self.state.update(loading=False, error=str(e))
            return list(self.state.links)

        self.state.update(links=tuple(links), loading=False, error=None)
        return links

    def load_recipient_schedule(self, user_id: Optional[str] = None) -> List[ScheduledDose]:
        """Today's reconciled doses for a recipient (default: the selected one)."""
        user_id = str(user_id) if user_id else self.state.selected_recipient
        if not user_id:
            return []

        self.state.update(selected_recipient=user_id, loading=True)
        now = self._clock()
        try:
            meds = self._remote("list_medications",
                                lambda: self.store.list_medications(user_id, True))
            occurrences = todays_occurrences(meds, now)
            window = log_window(occurrences)
            logs = []
            if window:
                logs = self._remote("list_adherence_logs",
                                    lambda: self.store.list_adherence_logs(user_id, *window))
        except MedReminderError as e:
            self.logger.error(f"Could not load schedule for {user_id}: {e}")
            self.state.update(loading=False, error=str(e))
            return list(self.state.doses)

        doses = reconcile(occurrences, logs, now)
        self.state.update(doses=tuple(doses), loading=False, error=None)
        return doses

