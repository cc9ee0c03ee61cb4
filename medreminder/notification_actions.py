"""
Notification Action Handler

Handles the user's response to a delivered medication reminder:

    TAKEN_ACTION         write a "taken" adherence log, then confirm
    REMIND_LATER_ACTION  schedule one more reminder N minutes from now

A failed write is reported with its own notification and never retried
here; the user re-triggers it. Snoozing does not resolve the original dose.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from dateutil import tz

from medreminder.errors import ConflictError, MalformedDataError
from medreminder.logger import get_logger
from medreminder.models import (
    AdherenceLog,
    AdherenceStatus,
    NotificationPayload,
    Occurrence,
    PendingNotification,
    snooze_notification_id,
)
from medreminder.notification_center import (
    DEFAULT_ACTION,
    DISMISS_ACTION,
    REMIND_LATER_ACTION,
    TAKEN_ACTION,
    NotificationCenter,
)
from medreminder.notification_scheduler import NotificationScheduler, reminder_payload
from medreminder.remote_store import RemoteStore
from medreminder.sync import ResilientSync


DEFAULT_SNOOZE_MINUTES = 15
TAKEN_NOTE = "Logged from notification action"


class ActionOutcome(str, Enum):
    LOGGED = "logged"
    ALREADY_LOGGED = "already_logged"
    LOG_FAILED = "log_failed"
    SNOOZED = "snoozed"
    SNOOZE_FAILED = "snooze_failed"
    IGNORED = "ignored"
    MALFORMED = "malformed"


class NotificationActionHandler:

    def __init__(self, store: RemoteStore, scheduler: NotificationScheduler,
                 center: NotificationCenter, sync: ResilientSync, user_id: str,
                 config=None, clock: Callable[[], datetime] = None):
        self.store = store
        self.scheduler = scheduler
        self.center = center
        self.sync = sync
        self.user_id = str(user_id)
        self.logger = get_logger(__name__, config)
        self._clock = clock or (lambda: datetime.now(tz.tzutc()))

        get = config.get if config is not None else (lambda key, default=None: default)
        self.snooze_minutes = get("notifications.snooze_minutes", DEFAULT_SNOOZE_MINUTES)

    def attach(self):
        """Register as the notification center's delivery callback."""
        self.center.set_delivery_callback(self.handle)

    def handle(self, action_identifier: str, payload: dict) -> ActionOutcome:
        if action_identifier not in (TAKEN_ACTION, REMIND_LATER_ACTION):
            if action_identifier in (DEFAULT_ACTION, DISMISS_ACTION):
                self.logger.info(f"Notification {action_identifier.lower()} without an action")
            else:
                self.logger.warning(f"Unknown notification action: {action_identifier!r}")
            return ActionOutcome.IGNORED

        try:
            reminder = NotificationPayload.from_dict(payload)
        except MalformedDataError as e:
            self.logger.error(f"Ignoring {action_identifier}: {e}")
            return ActionOutcome.MALFORMED

        if action_identifier == TAKEN_ACTION:
            return self._handle_taken(reminder)
        return self._handle_remind_later(reminder)

    # ------------------------------------------------------------------
    # Taken
    # ------------------------------------------------------------------

    def _handle_taken(self, reminder: NotificationPayload) -> ActionOutcome:
        self.logger.info(f"Taken: {reminder.medication_name} ({reminder.dosage}) "
                         f"scheduled {reminder.scheduled_time.isoformat()}")
        log = AdherenceLog.create(
            medication_id=reminder.medication_id,
            user_id=self.user_id,
            status=AdherenceStatus.TAKEN,
            scheduled_time=reminder.scheduled_time,
            logged_at=self._clock(),
            notes=TAKEN_NOTE,
        )
        try:
            self.sync.perform_with_retry(
                lambda: self.store.insert_adherence_log(log),
                description="insert_adherence_log",
            )
        except ConflictError:
            self.logger.info(f"{reminder.medication_name} already logged for this dose")
            self._notify("Medication Logged",
                         f"{reminder.medication_name} was already recorded as taken",
                         prefix="confirmation")
            return ActionOutcome.ALREADY_LOGGED
        except Exception as e:
            self.logger.error(f"Failed to log {reminder.medication_name} as taken: {e}")
            self._notify("Action Failed",
                         f"Could not record {reminder.medication_name}. "
                         f"Open the app and try again.",
                         prefix="error")
            return ActionOutcome.LOG_FAILED

        self._notify("Medication Logged",
                     f"Recorded that you took {reminder.medication_name}",
                     prefix="confirmation")
        return ActionOutcome.LOGGED

    # ------------------------------------------------------------------
    # Remind later
    # ------------------------------------------------------------------

    def _handle_remind_later(self, reminder: NotificationPayload) -> ActionOutcome:
        remind_at = self._clock() + timedelta(minutes=self.snooze_minutes)
        occurrence = Occurrence(
            medication_id=reminder.medication_id,
            medication_name=reminder.medication_name,
            dosage=reminder.dosage,
            day=remind_at.date(),
            time_label=remind_at.strftime("%H:%M"),
            scheduled_at=remind_at,
        )
        snooze = PendingNotification(
            id=snooze_notification_id(reminder.medication_id, remind_at),
            trigger_at=remind_at,
            payload=reminder_payload(occurrence),
        )
        if not self.scheduler.schedule_one(snooze):
            self._notify("Action Failed",
                         f"Could not set a reminder for {reminder.medication_name}",
                         prefix="error")
            return ActionOutcome.SNOOZE_FAILED

        self.logger.info(f"Snoozed {reminder.medication_name} for {self.snooze_minutes} min "
                         f"(until {remind_at.isoformat()})")
        return ActionOutcome.SNOOZED

    # ------------------------------------------------------------------

    def _notify(self, title: str, body: str, prefix: str):
        note = PendingNotification(
            id=f"{prefix}_{uuid.uuid4()}",
            trigger_at=self._clock(),
            payload={"title": title, "body": body},
        )
        self.scheduler.schedule_one(note)
