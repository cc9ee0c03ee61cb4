"""
Realtime Reconciliation Listener

Subscribes to adherence_logs and care_links and turns every relevant change
into "reload this table", never into an incremental patch: events may arrive
out of order or be merged by the transport.

    transport thread ── filter by subject ──> queue.Queue ──> worker thread
                                                              (coalesce, on_reload)

Subscription failures are published to ConnectivityState and left for the
session's foreground handler to retry.
"""

import queue
import threading
import time
from typing import Callable, Dict, Optional

from medreminder.events import ChangeEvent, Event, EventType
from medreminder.logger import get_logger
from medreminder.remote_store import ADHERENCE_LOGS, CARE_LINKS, RemoteStore, Subscription


# Column whose value must equal the active subject for an event to count
SUBJECT_COLUMNS = {
    ADHERENCE_LOGS: "user_id",
    CARE_LINKS: "caregiver_id",
}


class RealtimeListener:
    """Keeps one subscription per table and reloads on matching changes.

    on_reload(table) is called on the worker thread, at most once per table
    per burst of events.
    """

    def __init__(self, store: RemoteStore, on_reload: Callable[[str], None],
                 config=None, connectivity=None):
        self.store = store
        self.on_reload = on_reload
        self.logger = get_logger(__name__, config)
        self.connectivity = connectivity

        get = config.get if config is not None else (lambda key, default=None: default)
        self.coalesce_window = get("realtime.coalesce_window_seconds", 0.25)

        self._subjects: Dict[str, Optional[str]] = {t: None for t in SUBJECT_COLUMNS}
        self._subjects_lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._failed = set()

        self._queue: "queue.Queue[Event]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, user_id: Optional[str] = None, caregiver_id: Optional[str] = None):
        """Subscribe to both tables and start the reload worker."""
        with self._subjects_lock:
            self._subjects[ADHERENCE_LOGS] = str(user_id) if user_id else None
            self._subjects[CARE_LINKS] = str(caregiver_id) if caregiver_id else None

        if not self._running:
            self._running = True
            self._worker = threading.Thread(target=self._worker_loop, daemon=True,
                                            name="realtime-reload")
            self._worker.start()

        for table in SUBJECT_COLUMNS:
            self._subscribe(table)
        self.logger.info(f"Realtime listener started (user={user_id}, caregiver={caregiver_id})")

    def stop(self):
        for sub in list(self._subscriptions.values()):
            sub.unsubscribe()
        self._subscriptions.clear()

        if self._running:
            self._running = False
            self._queue.put(Event(EventType.SHUTDOWN, source="realtime"))
            if self._worker:
                self._worker.join(timeout=5)
            self._worker = None
        self.logger.info("Realtime listener stopped")

    @property
    def failed_tables(self):
        return set(self._failed)

    def restart_failed(self) -> bool:
        """Retry subscriptions that failed earlier. True if all are now up."""
        for table in list(self._failed):
            self._subscribe(table)
        return not self._failed

    def _subscribe(self, table: str):
        if table in self._subscriptions and self._subscriptions[table].active:
            return
        try:
            self._subscriptions[table] = self.store.subscribe(
                table, lambda change, _table=table: self._on_change(_table, change))
        except Exception as e:
            self._failed.add(table)
            self.logger.error(f"Realtime subscription to {table} failed: {e}")
            if self.connectivity is not None:
                self.connectivity.update(realtime_error=f"{table}: {e}")
            return

        self._failed.discard(table)
        if self.connectivity is not None and not self._failed:
            self.connectivity.update(realtime_error=None)

    # ------------------------------------------------------------------
    # Subjects
    # ------------------------------------------------------------------

    def set_subject(self, user_id: Optional[str]):
        """Switch the care recipient whose adherence logs are followed."""
        with self._subjects_lock:
            self._subjects[ADHERENCE_LOGS] = str(user_id) if user_id else None
        self.request_reload(ADHERENCE_LOGS)

    def subject(self, table: str) -> Optional[str]:
        with self._subjects_lock:
            return self._subjects.get(table)

    def request_reload(self, table: str):
        self._queue.put(Event(EventType.RELOAD_REQUESTED, data=table, source="realtime"))

    # ------------------------------------------------------------------
    # Event path
    # ------------------------------------------------------------------

    def _matches(self, table: str, change: ChangeEvent) -> bool:
        column = SUBJECT_COLUMNS.get(table)
        if column is None:
            return False
        subject = self.subject(table)
        return subject is not None and change.key(column) == subject

    def _on_change(self, table: str, change: ChangeEvent):
        # Runs on the transport's thread
        if not self._matches(table, change):
            self.logger.debug(f"Discarding {change.kind.value} on {table} for another subject")
            return
        self._queue.put(Event(EventType.REMOTE_CHANGE, data=change, source=table))

    def _worker_loop(self):
        while True:
            event = self._queue.get()
            if event.type == EventType.SHUTDOWN:
                return

            tables = set()
            self._collect(event, tables)

            # Coalesce a burst into one reload per table
            deadline = time.monotonic() + self.coalesce_window
            stop = False
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    nxt = self._queue.get(timeout=remaining)
                except queue.Empty:
                    break
                if nxt.type == EventType.SHUTDOWN:
                    stop = True
                    break
                self._collect(nxt, tables)

            for table in sorted(tables):
                try:
                    self.on_reload(table)
                except Exception as e:
                    self.logger.error(f"Reload of {table} failed: {e}")

            if stop:
                return

    @staticmethod
    def _collect(event: Event, tables: set):
        if event.type == EventType.REMOTE_CHANGE:
            tables.add(event.data.table)
        elif event.type == EventType.RELOAD_REQUESTED:
            tables.add(event.data)
