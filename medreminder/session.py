"""
Session

Wires the components for one signed-in user and owns the app lifecycle:

    start()          startup gate, then sync notifications, load today,
                     start realtime
    on_foreground()  re-sync and revive failed realtime subscriptions
    sign_out()       stop realtime, drop every pending notification

The startup gate blocks everything else until the remote store answers;
retry_connection() re-runs it on demand.

Uses a singleton pattern so CLI tools can reach the running session.
"""

import threading
import time
from datetime import datetime
from typing import Callable, Optional

from medreminder.care_links import CareLinkManager
from medreminder.errors import MedReminderError
from medreminder.logger import configure_logging, get_logger
from medreminder.medication_manager import MedicationManager
from medreminder.notification_actions import NotificationActionHandler
from medreminder.notification_center import NotificationCenter, SQLiteNotificationCenter
from medreminder.notification_scheduler import NotificationScheduler
from medreminder.realtime import RealtimeListener
from medreminder.remote_store import ADHERENCE_LOGS, CARE_LINKS, RemoteStore, RestStore
from medreminder.state import CaregiverState, ConnectivityState, ScheduleState
from medreminder.sync import ConnectivityProbe, ResilientSync


# Singleton instance
_instance: Optional["Session"] = None


def get_session(config=None, user_id: str = None, access_token: str = None,
                store: RemoteStore = None, center: NotificationCenter = None,
                probe=None) -> Optional["Session"]:
    """Get or create the singleton Session.

    Call with config and user_id on first invocation; with no args
    afterwards to retrieve the existing instance. Without an explicit store
    the configured Supabase endpoint is validated and used.
    """
    global _instance
    if _instance is None and config is not None:
        configure_logging(config)
        if store is None:
            config.validate()
            store = RestStore(config, access_token=access_token)
        if center is None:
            center = SQLiteNotificationCenter(config)
        _instance = Session(config, store, center, probe=probe, user_id=user_id)
    return _instance


def reset_session():
    global _instance
    _instance = None


class Session:

    def __init__(self, config, store: RemoteStore, center: NotificationCenter,
                 probe=None, user_id: str = None,
                 clock: Callable[[], datetime] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.logger = get_logger(__name__, config)
        self.user_id = str(user_id) if user_id else None
        self.store = store
        self.center = center

        self.connectivity = ConnectivityState()
        self.schedule_state = ScheduleState()
        self.caregiver_state = CaregiverState()

        self.probe = probe or ConnectivityProbe(config, state=self.connectivity)
        if getattr(self.probe, "state", None) is None:
            self.probe.state = self.connectivity
        self.sync = ResilientSync(self.probe, config, sleep=sleep)

        self.scheduler = NotificationScheduler(center, config, clock=clock)
        self.medications = MedicationManager(store, self.scheduler, self.sync, self.user_id,
                                             config, state=self.schedule_state, clock=clock)
        self.care_links = CareLinkManager(store, self.sync, self.user_id, config,
                                          state=self.caregiver_state, clock=clock)
        self.actions = NotificationActionHandler(store, self.scheduler, center, self.sync,
                                                 self.user_id, config, clock=clock)
        self.realtime = RealtimeListener(store, self._on_reload, config,
                                         connectivity=self.connectivity)

        self._lock = threading.Lock()
        self.ready = False
        self.started = False

    # ------------------------------------------------------------------
    # Startup gate
    # ------------------------------------------------------------------

    def check_connection(self) -> bool:
        """Probe the network and the remote store once. Publishes the result."""
        try:
            self.sync.perform_with_retry(self.store.ping, max_retries=1,
                                         description="startup check")
        except MedReminderError as e:
            self.logger.error(f"Database connection failed: {e}")
            self.connectivity.update(database_configured=False, configuration_error=str(e))
            return False
        self.connectivity.update(database_configured=True, configuration_error=None)
        self.logger.info("Database connection OK")
        return True

    def start(self) -> bool:
        """Run the startup gate and, if it passes, bring everything up."""
        with self._lock:
            if self.started:
                return True
            self.ready = self.check_connection()
            if not self.ready:
                self.logger.warning("Startup blocked until the database is reachable")
                return False

            self.actions.attach()
            if hasattr(self.center, "start"):
                self.center.start()

            self._synchronize_all()
            self.medications.load_today()
            self.care_links.load_recipients()
            self.realtime.start(user_id=self.user_id, caregiver_id=self.user_id)
            self.started = True
        self.logger.info(f"Session started for user {self.user_id}")
        return True

    def retry_connection(self) -> bool:
        return self.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def on_foreground(self):
        if not self.started:
            self.retry_connection()
            return
        self._synchronize_all()
        self.medications.load_today()
        if self.realtime.failed_tables:
            if self.realtime.restart_failed():
                self.logger.info("Realtime subscriptions restored")

    def sign_out(self):
        with self._lock:
            self.realtime.stop()
            self.scheduler.remove_all()
            if hasattr(self.center, "stop"):
                self.center.stop()
            self.started = False
            self.ready = False
        self.logger.info(f"Signed out user {self.user_id}")

    # ------------------------------------------------------------------
    # Caregiver
    # ------------------------------------------------------------------

    def select_recipient(self, user_id: Optional[str]):
        """Follow a care recipient's adherence logs (None: back to own)."""
        self.caregiver_state.update(selected_recipient=str(user_id) if user_id else None)
        self.realtime.set_subject(user_id or self.user_id)

    # ------------------------------------------------------------------

    def _synchronize_all(self):
        try:
            meds = self.medications.load_medications()
        except MedReminderError as e:
            self.logger.error(f"Could not load medications for scheduling: {e}")
            self.schedule_state.update(error=str(e))
            return
        self.scheduler.synchronize_all(meds)

    def _on_reload(self, table: str):
        if table == CARE_LINKS:
            self.care_links.load_recipients()
        elif table == ADHERENCE_LOGS:
            subject = self.realtime.subject(ADHERENCE_LOGS)
            if subject == self.user_id:
                self.medications.load_today()
            else:
                self.care_links.load_recipient_schedule(subject)
