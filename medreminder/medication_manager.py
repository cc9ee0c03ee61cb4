"""
Medication Manager

User-initiated medication edits and the "today" view.

Every write goes through the sync layer, then the scheduler is asked to
bring the medication's notifications in line with the saved row. Reads
reconcile occurrences against logs on the fly and publish the result to
ScheduleState.
"""

from datetime import datetime
from typing import Callable, List, Optional

from dateutil import tz

from medreminder.adherence import log_window, reconcile, todays_occurrences
from medreminder.errors import ConflictError, MedReminderError
from medreminder.logger import get_logger
from medreminder.models import (
    AdherenceLog,
    AdherenceStatus,
    Medication,
    ScheduleType,
    ScheduledDose,
)
from medreminder.notification_scheduler import NotificationScheduler
from medreminder.remote_store import RemoteStore
from medreminder.state import ScheduleState
from medreminder.sync import ResilientSync


class MedicationManager:

    def __init__(self, store: RemoteStore, scheduler: NotificationScheduler,
                 sync: ResilientSync, user_id: str, config=None,
                 state: Optional[ScheduleState] = None,
                 clock: Callable[[], datetime] = None):
        self.store = store
        self.scheduler = scheduler
        self.sync = sync
        self.user_id = str(user_id)
        self.config = config
        self.logger = get_logger(__name__, config)
        self.state = state or ScheduleState()
        self._clock = clock or (lambda: datetime.now(tz.tzutc()))
        self.medications: List[Medication] = []

    def _remote(self, description: str, operation):
        return self.sync.perform_with_retry(operation, description=description)

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def add_medication(self, name: str, dosage: str = "",
                       schedule_type=ScheduleType.DAILY, times=None,
                       timezone: str = None) -> Medication:
        med = Medication.create(self.user_id, name, dosage, schedule_type, times, timezone)
        saved = self._remote("insert_medication", lambda: self.store.insert_medication(med))
        self.logger.info(f"Added medication {saved.name} ({saved.id}) "
                         f"at {', '.join(saved.notification_times) or 'no set times'}")
        self.scheduler.synchronize(saved)
        return saved

    def update_medication(self, medication: Medication, **changes) -> Medication:
        updated = medication.with_changes(**changes) if changes else medication
        saved = self._remote("update_medication", lambda: self.store.update_medication(updated))
        if saved.is_active:
            self.scheduler.synchronize(saved)
        else:
            self.scheduler.remove(saved.id)
        return saved

    def add_time(self, medication: Medication, label: str) -> Medication:
        """Add a reminder time. An existing label is left as is."""
        times = list(medication.notification_times)
        draft = medication.with_changes(notification_times=times)
        if not draft.add_time_label(label):
            self.logger.debug(f"{medication.name} already has {label}")
            return medication
        return self.update_medication(medication, notification_times=draft.notification_times)

    def remove_time(self, medication: Medication, label: str) -> Medication:
        draft = medication.with_changes(notification_times=list(medication.notification_times))
        if not draft.remove_time_label(label):
            return medication
        return self.update_medication(medication, notification_times=draft.notification_times)

    def deactivate(self, medication: Medication) -> Medication:
        return self.update_medication(medication, is_active=False)

    # ------------------------------------------------------------------
    # Today
    # ------------------------------------------------------------------

    def load_medications(self) -> List[Medication]:
        self.medications = self._remote(
            "list_medications", lambda: self.store.list_medications(self.user_id, True))
        return self.medications

    def load_today(self) -> List[ScheduledDose]:
        """Fetch, reconcile and publish today's doses.

        "Today" is per medication: the calendar day in the medication's own
        zone. Logs are fetched over the span of the resulting instants.
        """
        self.state.update(loading=True)
        now = self._clock()
        try:
            meds = self.load_medications()
            occurrences = todays_occurrences(meds, now)
            window = log_window(occurrences)
            logs = []
            if window:
                logs = self._remote(
                    "list_adherence_logs",
                    lambda: self.store.list_adherence_logs(self.user_id, *window))
        except MedReminderError as e:
            self.logger.error(f"Could not load today's schedule: {e}")
            self.state.update(loading=False, error=str(e))
            return list(self.state.doses)

        doses = reconcile(occurrences, logs, now)
        self.state.update(doses=tuple(doses), loading=False, error=None)
        return doses

    def mark_taken(self, dose: ScheduledDose) -> Optional[AdherenceLog]:
        """In-app "Taken" for one dose. Returns the stored log, if any."""
        log = AdherenceLog.create(
            medication_id=dose.medication_id,
            user_id=self.user_id,
            status=AdherenceStatus.TAKEN,
            scheduled_time=dose.scheduled_at,
            logged_at=self._clock(),
        )
        try:
            saved = self._remote("insert_adherence_log",
                                 lambda: self.store.insert_adherence_log(log))
        except ConflictError:
            self.logger.info(f"Dose at {dose.scheduled_at.isoformat()} already logged")
            saved = None
        self.load_today()
        return saved
