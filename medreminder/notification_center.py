"""
Local Notification Platform

The deferred-notification store the scheduler talks to. Two implementations
share one contract:

    SQLiteNotificationCenter  - pending notifications in SQLite, a polling
                                thread fires due ones through notify-send
                                with "Taken" / "Remind me later" actions
    MemoryNotificationCenter  - dict-backed, used by tests

schedule() is idempotent by id: scheduling the same id again replaces the
earlier request instead of adding a second one.
"""

import json
import sqlite3
import subprocess
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from dateutil import tz

from medreminder.errors import SchedulingError
from medreminder.logger import get_logger
from medreminder.models import PendingNotification


# Action identifiers carried by delivered medication reminders
TAKEN_ACTION = "TAKEN_ACTION"
REMIND_LATER_ACTION = "REMIND_LATER_ACTION"
# Platform-level identifiers: plain tap and swipe-away
DEFAULT_ACTION = "DEFAULT_ACTION"
DISMISS_ACTION = "DISMISS_ACTION"

MEDICATION_CATEGORY = "MEDICATION_REMINDER"

ACTION_TITLES = {
    TAKEN_ACTION: "Taken ✓",
    REMIND_LATER_ACTION: "Remind me later",
}

_TIME_FMT = "%Y-%m-%d %H:%M:%S"

DeliveryCallback = Callable[[str, dict], None]


def _to_utc_str(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz.tzlocal())
    return dt.astimezone(tz.tzutc()).strftime(_TIME_FMT)


def _from_utc_str(text: str) -> datetime:
    return datetime.strptime(text, _TIME_FMT).replace(tzinfo=tz.tzutc())


class NotificationCenter:
    """Contract for the platform notification store."""

    def __init__(self):
        self._delivery_callback: Optional[DeliveryCallback] = None
        self._delivered: Dict[str, dict] = {}
        self._delivered_lock = threading.Lock()

    def schedule(self, notification_id: str, trigger_at: datetime, payload: dict):
        raise NotImplementedError

    def cancel(self, ids: Iterable[str]):
        raise NotImplementedError

    def cancel_all(self):
        raise NotImplementedError

    def list_pending(self) -> List[PendingNotification]:
        raise NotImplementedError

    # -- delivery ------------------------------------------------------

    def set_delivery_callback(self, callback: DeliveryCallback):
        """callback(action_identifier, payload) runs when the user acts."""
        self._delivery_callback = callback

    def _record_delivered(self, notification_id: str, payload: dict):
        with self._delivered_lock:
            self._delivered[notification_id] = payload

    def delivered_ids(self) -> List[str]:
        with self._delivered_lock:
            return list(self._delivered)

    def deliver_action(self, notification_id: str, action_identifier: str) -> bool:
        """Route a user action on a delivered notification to the callback."""
        with self._delivered_lock:
            payload = self._delivered.pop(notification_id, None)
        if payload is None:
            return False
        if self._delivery_callback is None:
            return False
        self._delivery_callback(action_identifier, payload)
        return True


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class MemoryNotificationCenter(NotificationCenter):
    """Dict-backed center. reject_ids makes schedule() refuse specific ids."""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingNotification] = {}
        self.reject_ids = set()
        self.schedule_calls = 0
        self.cancel_calls = 0

    def schedule(self, notification_id: str, trigger_at: datetime, payload: dict):
        with self._lock:
            self.schedule_calls += 1
            if notification_id in self.reject_ids:
                raise SchedulingError(f"Platform refused notification {notification_id}")
            self._pending[notification_id] = PendingNotification(
                id=notification_id, trigger_at=trigger_at, payload=dict(payload))

    def cancel(self, ids: Iterable[str]):
        with self._lock:
            self.cancel_calls += 1
            for nid in ids:
                self._pending.pop(nid, None)

    def cancel_all(self):
        with self._lock:
            self.cancel_calls += 1
            self._pending.clear()

    def list_pending(self) -> List[PendingNotification]:
        with self._lock:
            return sorted(self._pending.values(), key=lambda p: (p.trigger_at, p.id))

    def get(self, notification_id: str) -> Optional[PendingNotification]:
        with self._lock:
            return self._pending.get(notification_id)

    def fire_due(self, now: datetime) -> List[PendingNotification]:
        """Deliver every notification whose trigger has passed."""
        with self._lock:
            due = [p for p in self._pending.values() if p.trigger_at <= now]
            for p in due:
                del self._pending[p.id]
        for p in due:
            self._record_delivered(p.id, p.payload)
        return sorted(due, key=lambda p: p.trigger_at)


# ---------------------------------------------------------------------------
# Desktop presentation
# ---------------------------------------------------------------------------

class DesktopPresenter:
    """Shows notifications with notify-send.

    Medication reminders get the two action buttons; notify-send --wait
    blocks until the user picks one and prints its key, so each reminder is
    watched on its own daemon thread.
    """

    def __init__(self, config=None):
        self.logger = get_logger(__name__, config)
        self.timeout = config.get("notifications.present_timeout_seconds", 5) if config else 5

    def present(self, notification_id: str, payload: dict,
                on_action: Callable[[str, str], None]):
        title = payload.get("title") or "Medication reminder"
        body = payload.get("body", "")
        if payload.get("category") == MEDICATION_CATEGORY:
            threading.Thread(
                target=self._present_with_actions,
                args=(notification_id, title, body, on_action),
                daemon=True,
                name=f"notify-{notification_id[-12:]}",
            ).start()
        else:
            self.send(title, body)

    def send(self, title: str, body: str = "", urgency: str = "normal") -> bool:
        try:
            cmd = ["notify-send", f"--urgency={urgency}", title]
            if body:
                cmd.append(body)
            result = subprocess.run(cmd, capture_output=True, timeout=self.timeout)
            return result.returncode == 0
        except FileNotFoundError:
            self.logger.warning(f"notify-send not installed; notification: {title} {body}")
            return False
        except Exception as e:
            self.logger.warning(f"send_notification failed: {e}")
            return False

    def _present_with_actions(self, notification_id, title, body, on_action):
        cmd = ["notify-send", "--urgency=critical", "--wait"]
        for key, label in ACTION_TITLES.items():
            cmd.append(f"--action={key}={label}")
        cmd.extend([title, body])
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError:
            self.logger.warning(f"notify-send not installed; reminder: {title} {body}")
            return
        except Exception as e:
            self.logger.error(f"Failed to present reminder {notification_id}: {e}")
            return

        chosen = (result.stdout or "").strip()
        on_action(notification_id, chosen or DISMISS_ACTION)


# ---------------------------------------------------------------------------
# SQLite-backed
# ---------------------------------------------------------------------------

class SQLiteNotificationCenter(NotificationCenter):
    """Pending notifications persisted in SQLite with a background poller."""

    def __init__(self, config, presenter=None, clock: Callable[[], datetime] = None):
        super().__init__()
        self.config = config
        self.logger = get_logger(__name__, config)

        db_path = config.get("notifications.db_path", "~/.medreminder/notifications.db")
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_lock = threading.Lock()
        self._init_db()

        self.poll_interval = config.get("notifications.poll_interval_seconds", 5)
        if presenter is None and config.get("notifications.present_with_notify_send", True):
            presenter = DesktopPresenter(config)
        self.presenter = presenter
        self._clock = clock or (lambda: datetime.now(tz.tzutc()))

        self._running = False
        self._poll_thread = None

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    def _init_db(self):
        """Create the pending_notifications table if it doesn't exist."""
        with self._db_lock:
            conn = sqlite3.connect(str(self.db_path))
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS pending_notifications (
                        id          TEXT PRIMARY KEY,
                        trigger_at  TEXT NOT NULL,
                        payload     TEXT NOT NULL DEFAULT '{}',
                        created_at  TEXT NOT NULL DEFAULT (datetime('now'))
                    )
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_pending_trigger
                    ON pending_notifications(trigger_at)
                """)
                conn.commit()
            finally:
                conn.close()
        self.logger.info(f"Notification store ready at {self.db_path}")

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _row_to_pending(row) -> PendingNotification:
        return PendingNotification(
            id=row["id"],
            trigger_at=_from_utc_str(row["trigger_at"]),
            payload=json.loads(row["payload"] or "{}"),
        )

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def schedule(self, notification_id: str, trigger_at: datetime, payload: dict):
        try:
            body = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise SchedulingError(f"Payload for {notification_id} is not serializable: {e}") from e

        with self._db_lock:
            conn = self._conn()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO pending_notifications (id, trigger_at, payload) "
                    "VALUES (?, ?, ?)",
                    (notification_id, _to_utc_str(trigger_at), body)
                )
                conn.commit()
            except sqlite3.Error as e:
                raise SchedulingError(f"Could not schedule {notification_id}: {e}") from e
            finally:
                conn.close()

    def cancel(self, ids: Iterable[str]):
        ids = list(ids)
        if not ids:
            return
        with self._db_lock:
            conn = self._conn()
            try:
                conn.executemany("DELETE FROM pending_notifications WHERE id = ?",
                                 [(nid,) for nid in ids])
                conn.commit()
            except sqlite3.Error as e:
                raise SchedulingError(f"Could not cancel {len(ids)} notification(s): {e}") from e
            finally:
                conn.close()

    def cancel_all(self):
        with self._db_lock:
            conn = self._conn()
            try:
                conn.execute("DELETE FROM pending_notifications")
                conn.commit()
            except sqlite3.Error as e:
                raise SchedulingError(f"Could not clear pending notifications: {e}") from e
            finally:
                conn.close()

    def list_pending(self) -> List[PendingNotification]:
        with self._db_lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    "SELECT * FROM pending_notifications ORDER BY trigger_at ASC, id ASC"
                ).fetchall()
                return [self._row_to_pending(r) for r in rows]
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def fire_due(self, now: Optional[datetime] = None) -> List[PendingNotification]:
        """Remove due notifications from the pending set and present them."""
        now_str = _to_utc_str(now or self._clock())
        with self._db_lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    "SELECT * FROM pending_notifications WHERE trigger_at <= ? "
                    "ORDER BY trigger_at ASC",
                    (now_str,)
                ).fetchall()
                due = [self._row_to_pending(r) for r in rows]
                conn.executemany("DELETE FROM pending_notifications WHERE id = ?",
                                 [(p.id,) for p in due])
                conn.commit()
            finally:
                conn.close()

        for p in due:
            self.logger.info(f"Delivering notification {p.id}")
            self._record_delivered(p.id, p.payload)
            if self.presenter:
                self.presenter.present(p.id, p.payload, self.deliver_action)
        return due

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    def start(self):
        if self._running:
            return
        self._running = True
        self._poll_thread = threading.Thread(target=self._poll_loop, daemon=True,
                                             name="notification-poll")
        self._poll_thread.start()
        self.logger.info("Notification polling started")

    def stop(self):
        self._running = False
        if self._poll_thread:
            self._poll_thread.join(timeout=10)
            self._poll_thread = None
        self.logger.info("Notification polling stopped")

    def _poll_loop(self):
        while self._running:
            try:
                self.fire_due()
            except Exception as e:
                self.logger.error(f"Notification poll error: {e}")

            # Sleep in small increments for responsive shutdown
            waited = 0.0
            while self._running and waited < self.poll_interval:
                time.sleep(0.5)
                waited += 0.5
