"""
Remote Store

Narrow data-access contract for medications, adherence logs and care links,
plus two implementations:

    RestStore      - PostgREST-style HTTP API (Supabase) over requests
    InMemoryStore  - thread-safe in-process store with change fan-out,
                     used by tests and the offline demo

Uniqueness of (medication, scheduled minute) for adherence logs is enforced
by the store; a duplicate insert raises ConflictError.
"""

import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

import requests
from dateutil import tz

from medreminder.errors import (
    ConflictError,
    ConnectivityError,
    MalformedDataError,
    RemoteOperationError,
    SubscriptionError,
)
from medreminder.events import ChangeEvent, ChangeKind
from medreminder.logger import get_logger
from medreminder.models import (
    AdherenceLog,
    CareLink,
    CareLinkStatus,
    Medication,
    format_timestamp,
)
from medreminder.recurrence import epoch_minutes


MEDICATIONS = "medications"
ADHERENCE_LOGS = "adherence_logs"
CARE_LINKS = "care_links"

ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle for one realtime subscription."""

    def __init__(self, table: str, unsubscribe: Callable[[], None]):
        self.table = table
        self._unsubscribe = unsubscribe
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        if self._active:
            self._active = False
            self._unsubscribe()


class RemoteStore:
    """Data-access contract consumed by the rest of the package."""

    def list_medications(self, user_id: str, active_only: bool = True) -> List[Medication]:
        raise NotImplementedError

    def insert_medication(self, medication: Medication) -> Medication:
        raise NotImplementedError

    def update_medication(self, medication: Medication) -> Medication:
        raise NotImplementedError

    def list_adherence_logs(self, user_id: str, start: datetime, end: datetime) -> List[AdherenceLog]:
        """Logs whose scheduled_time falls in [start, end)."""
        raise NotImplementedError

    def insert_adherence_log(self, log: AdherenceLog) -> AdherenceLog:
        raise NotImplementedError

    def list_care_links(self, caregiver_id: str, status: Optional[str] = None) -> List[CareLink]:
        raise NotImplementedError

    def insert_care_link(self, caregiver_id: str, invite_code: str,
                         status: str = CareLinkStatus.PENDING.value,
                         expires_at: Optional[datetime] = None) -> CareLink:
        raise NotImplementedError

    def find_care_link_by_code(self, invite_code: str) -> Optional[CareLink]:
        raise NotImplementedError

    def update_care_link(self, link: CareLink) -> CareLink:
        raise NotImplementedError

    def subscribe(self, table: str, on_event: ChangeCallback) -> Subscription:
        raise NotImplementedError

    def ping(self) -> bool:
        """Cheap round trip used by the startup gate."""
        raise NotImplementedError


def _parse_rows(rows, factory, logger, what: str) -> list:
    """Build model objects, skipping (and logging) malformed rows."""
    result = []
    for row in rows or []:
        try:
            result.append(factory(row))
        except MalformedDataError as e:
            logger.warning(f"Skipping malformed {what} row {row.get('id', '?')}: {e}")
    return result


# ---------------------------------------------------------------------------
# REST implementation
# ---------------------------------------------------------------------------

class RestStore(RemoteStore):
    """PostgREST client (Supabase REST endpoint).

    Realtime delivery needs a websocket transport; pass one exposing
    subscribe(table, callback) -> Subscription as realtime_transport.
    """

    def __init__(self, config, session: Optional[requests.Session] = None,
                 access_token: Optional[str] = None, realtime_transport=None):
        self.config = config
        self.logger = get_logger(__name__, config)
        self.base_url = str(config.get("remote.url", "")).rstrip("/")
        self.api_key = config.get("remote.key", "")
        self.timeout = config.get("remote.timeout_seconds", 30)
        self.ping_table = config.get("remote.ping_table", "profiles")
        self.session = session or requests.Session()
        self.access_token = access_token
        self.realtime_transport = realtime_transport

    # -- plumbing ------------------------------------------------------

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(self, method: str, table: str, params=None, payload=None,
                 prefer: Optional[str] = None):
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            resp = self.session.request(
                method, url,
                params=params,
                json=payload,
                headers=self._headers(prefer),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ConnectivityError(f"{method} {table}: {e}") from e
        except requests.RequestException as e:
            raise RemoteOperationError(f"{method} {table} failed", cause=e) from e

        if resp.status_code == 409 or self._error_code(resp) == "23505":
            raise ConflictError(f"{method} {table} conflicts with an existing row",
                                status_code=resp.status_code)
        if not resp.ok:
            raise RemoteOperationError(
                f"{method} {table} rejected: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return []
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteOperationError(f"{method} {table} returned invalid JSON", cause=e) from e

    @staticmethod
    def _error_code(resp) -> Optional[str]:
        if resp.ok:
            return None
        try:
            body = resp.json()
        except ValueError:
            return None
        return body.get("code") if isinstance(body, dict) else None

    @staticmethod
    def _single(rows, what: str) -> dict:
        if isinstance(rows, list) and rows:
            return rows[0]
        if isinstance(rows, dict):
            return rows
        raise RemoteOperationError(f"{what} returned no representation")

    # -- medications ---------------------------------------------------

    def list_medications(self, user_id: str, active_only: bool = True) -> List[Medication]:
        params = [("user_id", f"eq.{user_id}"), ("order", "created_at.asc")]
        if active_only:
            params.append(("is_active", "eq.true"))
        rows = self._request("GET", MEDICATIONS, params=params)
        return _parse_rows(rows, Medication.from_row, self.logger, "medication")

    def insert_medication(self, medication: Medication) -> Medication:
        rows = self._request("POST", MEDICATIONS, payload=medication.to_row(),
                             prefer="return=representation")
        return Medication.from_row(self._single(rows, "insert medication"))

    def update_medication(self, medication: Medication) -> Medication:
        row = medication.to_row()
        row.pop("id")
        row.pop("created_at")
        rows = self._request("PATCH", MEDICATIONS, params=[("id", f"eq.{medication.id}")],
                             payload=row, prefer="return=representation")
        return Medication.from_row(self._single(rows, "update medication"))

    # -- adherence logs ------------------------------------------------

    def list_adherence_logs(self, user_id: str, start: datetime, end: datetime) -> List[AdherenceLog]:
        params = [
            ("user_id", f"eq.{user_id}"),
            ("scheduled_time", f"gte.{format_timestamp(start)}"),
            ("scheduled_time", f"lt.{format_timestamp(end)}"),
            ("order", "scheduled_time.asc"),
        ]
        rows = self._request("GET", ADHERENCE_LOGS, params=params)
        return _parse_rows(rows, AdherenceLog.from_row, self.logger, "adherence log")

    def insert_adherence_log(self, log: AdherenceLog) -> AdherenceLog:
        rows = self._request("POST", ADHERENCE_LOGS, payload=log.to_row(),
                             prefer="return=representation")
        return AdherenceLog.from_row(self._single(rows, "insert adherence log"))

    # -- care links ----------------------------------------------------

    def list_care_links(self, caregiver_id: str, status: Optional[str] = None) -> List[CareLink]:
        params = [("caregiver_id", f"eq.{caregiver_id}")]
        if status:
            params.append(("status", f"eq.{status}"))
        rows = self._request("GET", CARE_LINKS, params=params)
        return _parse_rows(rows, CareLink.from_row, self.logger, "care link")

    def insert_care_link(self, caregiver_id: str, invite_code: str,
                         status: str = CareLinkStatus.PENDING.value,
                         expires_at: Optional[datetime] = None) -> CareLink:
        payload = {"caregiver_id": caregiver_id, "invite_code": invite_code, "status": status}
        if expires_at is not None:
            payload["expires_at"] = format_timestamp(expires_at)
        rows = self._request("POST", CARE_LINKS, payload=payload, prefer="return=representation")
        return CareLink.from_row(self._single(rows, "insert care link"))

    def find_care_link_by_code(self, invite_code: str) -> Optional[CareLink]:
        rows = self._request("GET", CARE_LINKS, params=[
            ("invite_code", f"eq.{invite_code}"), ("limit", "1"),
        ])
        links = _parse_rows(rows, CareLink.from_row, self.logger, "care link")
        return links[0] if links else None

    def update_care_link(self, link: CareLink) -> CareLink:
        payload = {
            "status": link.status.value,
            "user_id": link.user_id,
            "updated_at": format_timestamp(link.updated_at),
        }
        rows = self._request("PATCH", CARE_LINKS, params=[("id", f"eq.{link.id}")],
                             payload=payload, prefer="return=representation")
        return CareLink.from_row(self._single(rows, "update care link"))

    # -- realtime / health ---------------------------------------------

    def subscribe(self, table: str, on_event: ChangeCallback) -> Subscription:
        if self.realtime_transport is None:
            raise SubscriptionError(f"No realtime transport configured for {table}")
        try:
            return self.realtime_transport.subscribe(table, on_event)
        except SubscriptionError:
            raise
        except Exception as e:
            raise SubscriptionError(f"Realtime subscription to {table} failed: {e}") from e

    def ping(self) -> bool:
        self._request("GET", self.ping_table, params=[("select", "id"), ("limit", "1")])
        return True


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryStore(RemoteStore):
    """Thread-safe store kept in process memory.

    Every successful write is pushed to the table's subscribers as a
    ChangeEvent, outside the store lock, mimicking the realtime feed.
    """

    def __init__(self, config=None):
        self.logger = get_logger(__name__, config)
        self._lock = threading.RLock()
        self._medications: Dict[str, Medication] = {}
        self._logs: Dict[str, AdherenceLog] = {}
        self._links: Dict[str, CareLink] = {}
        self._subscribers: Dict[str, List[ChangeCallback]] = {}
        self.reachable = True
        self.realtime_available = True

    def _emit(self, table: str, kind: ChangeKind, record=None, old_record=None):
        with self._lock:
            callbacks = list(self._subscribers.get(table, []))
        event = ChangeEvent(table=table, kind=kind, record=record, old_record=old_record)
        for cb in callbacks:
            try:
                cb(event)
            except Exception as e:
                self.logger.error(f"Subscriber for {table} raised: {e}")

    def _check_reachable(self):
        if not self.reachable:
            raise ConnectivityError("In-memory store marked unreachable")

    # -- medications ---------------------------------------------------

    def list_medications(self, user_id: str, active_only: bool = True) -> List[Medication]:
        self._check_reachable()
        with self._lock:
            meds = [m for m in self._medications.values() if m.user_id == str(user_id)]
        if active_only:
            meds = [m for m in meds if m.is_active]
        return [m.with_changes(notification_times=list(m.notification_times)) for m in meds]

    def insert_medication(self, medication: Medication) -> Medication:
        self._check_reachable()
        with self._lock:
            if medication.id in self._medications:
                raise ConflictError(f"Medication {medication.id} already exists")
            stored = medication.with_changes(notification_times=list(medication.notification_times))
            self._medications[stored.id] = stored
        self._emit(MEDICATIONS, ChangeKind.INSERT, record=stored.to_row())
        return stored

    def update_medication(self, medication: Medication) -> Medication:
        self._check_reachable()
        with self._lock:
            old = self._medications.get(medication.id)
            if old is None:
                raise RemoteOperationError(f"Medication {medication.id} not found", status_code=404)
            stored = medication.with_changes(notification_times=list(medication.notification_times),
                                             updated_at=datetime.now(tz.tzutc()))
            self._medications[stored.id] = stored
        self._emit(MEDICATIONS, ChangeKind.UPDATE, record=stored.to_row(), old_record=old.to_row())
        return stored

    # -- adherence logs ------------------------------------------------

    def list_adherence_logs(self, user_id: str, start: datetime, end: datetime) -> List[AdherenceLog]:
        self._check_reachable()
        with self._lock:
            logs = [l for l in self._logs.values()
                    if l.user_id == str(user_id) and start <= l.scheduled_time < end]
        return sorted(logs, key=lambda l: l.scheduled_time)

    def insert_adherence_log(self, log: AdherenceLog) -> AdherenceLog:
        self._check_reachable()
        minute = epoch_minutes(log.scheduled_time)
        with self._lock:
            for existing in self._logs.values():
                if (existing.medication_id == log.medication_id
                        and epoch_minutes(existing.scheduled_time) == minute):
                    raise ConflictError(
                        f"Adherence log already exists for medication {log.medication_id} "
                        f"at {log.scheduled_time.isoformat()}",
                        status_code=409,
                    )
            self._logs[log.id] = log
        self._emit(ADHERENCE_LOGS, ChangeKind.INSERT, record=log.to_row())
        return log

    def delete_adherence_log(self, log_id: str) -> bool:
        """Remove a log (admin correction); pushes a delete event."""
        self._check_reachable()
        with self._lock:
            old = self._logs.pop(log_id, None)
        if old is None:
            return False
        self._emit(ADHERENCE_LOGS, ChangeKind.DELETE, old_record=old.to_row())
        return True

    # -- care links ----------------------------------------------------

    def list_care_links(self, caregiver_id: str, status: Optional[str] = None) -> List[CareLink]:
        self._check_reachable()
        with self._lock:
            links = [l for l in self._links.values() if l.caregiver_id == str(caregiver_id)]
        if status:
            links = [l for l in links if l.status.value == str(status)]
        return sorted(links, key=lambda l: l.created_at or datetime.min.replace(tzinfo=tz.tzutc()))

    def insert_care_link(self, caregiver_id: str, invite_code: str,
                         status: str = CareLinkStatus.PENDING.value,
                         expires_at: Optional[datetime] = None) -> CareLink:
        self._check_reachable()
        now = datetime.now(tz.tzutc())
        link = CareLink(id=str(uuid.uuid4()), caregiver_id=str(caregiver_id),
                        invite_code=invite_code, status=status,
                        created_at=now, updated_at=now, expires_at=expires_at)
        with self._lock:
            if any(l.invite_code == invite_code for l in self._links.values()):
                raise ConflictError(f"Invite code {invite_code} already in use", status_code=409)
            self._links[link.id] = link
        self._emit(CARE_LINKS, ChangeKind.INSERT, record=link.to_row())
        return link

    def find_care_link_by_code(self, invite_code: str) -> Optional[CareLink]:
        self._check_reachable()
        with self._lock:
            for link in self._links.values():
                if link.invite_code == invite_code:
                    return link
        return None

    def update_care_link(self, link: CareLink) -> CareLink:
        self._check_reachable()
        with self._lock:
            old = self._links.get(link.id)
            if old is None:
                raise RemoteOperationError(f"Care link {link.id} not found", status_code=404)
            self._links[link.id] = link
        self._emit(CARE_LINKS, ChangeKind.UPDATE, record=link.to_row(), old_record=old.to_row())
        return link

    # -- realtime / health ---------------------------------------------

    def subscribe(self, table: str, on_event: ChangeCallback) -> Subscription:
        if not self.realtime_available:
            raise SubscriptionError(f"Realtime channel for {table} unavailable")
        with self._lock:
            self._subscribers.setdefault(table, []).append(on_event)

        def _remove():
            with self._lock:
                callbacks = self._subscribers.get(table, [])
                if on_event in callbacks:
                    callbacks.remove(on_event)

        return Subscription(table, _remove)

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscribers.get(table, []))

    def ping(self) -> bool:
        self._check_reachable()
        return True
