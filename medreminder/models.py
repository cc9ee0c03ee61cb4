"""
Data model for medications, adherence logs, care links and the derived
occurrence / notification types.

Rows coming from the remote store use snake_case column names
(user_id, notification_times, is_active, ...); from_row()/to_row() are the
only places that know about them.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from dateutil import parser as dateutil_parser
from dateutil import tz

from medreminder.errors import MalformedDataError
from medreminder.recurrence import epoch_minutes, normalize_time_label


class ScheduleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    AS_NEEDED = "as_needed"
    CUSTOM = "custom"


class AdherenceStatus(str, Enum):
    """Status recorded in an adherence log row."""

    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"

    @classmethod
    def parse(cls, value) -> "AdherenceStatus":
        try:
            return cls(value)
        except ValueError:
            raise MalformedDataError(f"Unrecognized adherence status: {value!r}") from None


class OccurrenceStatus(str, Enum):
    """Derived status of one occurrence. Always exactly one of these."""

    PENDING = "pending"
    TAKEN = "taken"
    MISSED = "missed"


class CareLinkStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REVOKED = "revoked"


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 column value. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = dateutil_parser.isoparse(str(value))
        except (ValueError, OverflowError) as e:
            raise MalformedDataError(f"Unparseable timestamp {value!r}: {e}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz.tzutc())
    return dt


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _now_utc() -> datetime:
    return datetime.now(tz.tzutc())


def _dedupe_labels(labels) -> List[str]:
    """Normalize labels and drop duplicates, keeping first-seen order.

    Unparseable labels are kept verbatim (the generator skips them) so a
    single bad entry never hides its siblings.
    """
    seen = set()
    result = []
    for label in labels or []:
        try:
            key = normalize_time_label(label)
        except MalformedDataError:
            key = label
        if key in seen:
            continue
        seen.add(key)
        result.append(key)
    return result


# ---------------------------------------------------------------------------
# Medication
# ---------------------------------------------------------------------------

@dataclass
class Medication:
    id: str
    user_id: str
    name: str
    dosage: str = ""
    schedule_type: ScheduleType = ScheduleType.DAILY
    notification_times: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    timezone: Optional[str] = None   # IANA name of the owner's calendar; None = local

    def __post_init__(self):
        self.id = str(self.id)
        self.user_id = str(self.user_id)
        if not isinstance(self.schedule_type, ScheduleType):
            try:
                self.schedule_type = ScheduleType(self.schedule_type)
            except ValueError:
                raise MalformedDataError(
                    f"Unknown schedule type {self.schedule_type!r} for medication {self.id}"
                ) from None
        self.notification_times = _dedupe_labels(self.notification_times)

    def add_time_label(self, label: str) -> bool:
        """Add a HH:MM label. Returns False if it was already present."""
        label = normalize_time_label(label)
        if label in self.notification_times:
            return False
        self.notification_times.append(label)
        return True

    def remove_time_label(self, label: str) -> bool:
        try:
            label = normalize_time_label(label)
        except MalformedDataError:
            pass
        if label not in self.notification_times:
            return False
        self.notification_times.remove(label)
        return True

    def with_changes(self, **changes) -> "Medication":
        return replace(self, **changes)

    @classmethod
    def create(cls, user_id: str, name: str, dosage: str = "",
               schedule_type=ScheduleType.DAILY, times=None,
               timezone: str = None) -> "Medication":
        now = _now_utc()
        return cls(id=str(uuid.uuid4()), user_id=user_id, name=name,
                   dosage=dosage, schedule_type=schedule_type,
                   notification_times=list(times or []), is_active=True,
                   created_at=now, updated_at=now, timezone=timezone)

    @classmethod
    def from_row(cls, row: dict) -> "Medication":
        try:
            return cls(
                id=row["id"],
                user_id=row["user_id"],
                name=row["name"],
                dosage=row.get("dosage") or "",
                schedule_type=row.get("schedule_type") or ScheduleType.DAILY,
                notification_times=list(row.get("notification_times") or []),
                is_active=bool(row.get("is_active", True)),
                created_at=parse_timestamp(row.get("created_at")),
                updated_at=parse_timestamp(row.get("updated_at")),
                timezone=row.get("timezone"),
            )
        except KeyError as e:
            raise MalformedDataError(f"Medication row missing column {e}") from e

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "dosage": self.dosage,
            "schedule_type": self.schedule_type.value,
            "notification_times": list(self.notification_times),
            "is_active": self.is_active,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "timezone": self.timezone,
        }


# ---------------------------------------------------------------------------
# Occurrence (derived, never stored)
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Occurrence:
    """One concrete (medication, day, time label) dose resolved to an instant.

    Two occurrences are equal when they belong to the same medication and
    fall in the same minute.
    """

    medication_id: str
    medication_name: str
    dosage: str
    day: date
    time_label: str
    scheduled_at: datetime

    def _key(self):
        return (self.medication_id, epoch_minutes(self.scheduled_at))

    def __eq__(self, other):
        if not isinstance(other, Occurrence):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())


@dataclass(frozen=True)
class ScheduledDose:
    """An occurrence tagged with its reconciled status."""

    occurrence: Occurrence
    status: OccurrenceStatus
    log: Optional["AdherenceLog"] = None

    @property
    def medication_id(self) -> str:
        return self.occurrence.medication_id

    @property
    def scheduled_at(self) -> datetime:
        return self.occurrence.scheduled_at


# ---------------------------------------------------------------------------
# Adherence log
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AdherenceLog:
    """Immutable record of how one occurrence was resolved.

    status is kept as the raw column value; AdherenceStatus.parse() is
    applied by the reconciler so an unknown value surfaces as a data error
    there instead of failing the whole fetch.
    """

    id: str
    medication_id: str
    user_id: str
    status: str
    scheduled_time: datetime
    logged_at: datetime
    notes: Optional[str] = None

    @classmethod
    def create(cls, medication_id: str, user_id: str, status: AdherenceStatus,
               scheduled_time: datetime, logged_at: datetime,
               notes: str = None) -> "AdherenceLog":
        return cls(id=str(uuid.uuid4()), medication_id=str(medication_id),
                   user_id=str(user_id), status=AdherenceStatus(status).value,
                   scheduled_time=scheduled_time, logged_at=logged_at, notes=notes)

    @classmethod
    def from_row(cls, row: dict) -> "AdherenceLog":
        try:
            return cls(
                id=str(row["id"]),
                medication_id=str(row["medication_id"]),
                user_id=str(row["user_id"]),
                status=row["status"],
                scheduled_time=parse_timestamp(row["scheduled_time"]),
                logged_at=parse_timestamp(row.get("logged_at")) or parse_timestamp(row["scheduled_time"]),
                notes=row.get("notes"),
            )
        except KeyError as e:
            raise MalformedDataError(f"Adherence log row missing column {e}") from e

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "medication_id": self.medication_id,
            "user_id": self.user_id,
            "status": self.status,
            "scheduled_time": format_timestamp(self.scheduled_time),
            "logged_at": format_timestamp(self.logged_at),
            "notes": self.notes,
        }


# ---------------------------------------------------------------------------
# Care link
# ---------------------------------------------------------------------------

@dataclass
class CareLink:
    id: str
    caregiver_id: str
    invite_code: str
    status: CareLinkStatus = CareLinkStatus.PENDING
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.status, CareLinkStatus):
            try:
                self.status = CareLinkStatus(self.status)
            except ValueError:
                raise MalformedDataError(f"Unknown care link status {self.status!r}") from None

    def is_expired(self, now: datetime) -> bool:
        return (self.status == CareLinkStatus.PENDING
                and self.expires_at is not None
                and now >= self.expires_at)

    @classmethod
    def from_row(cls, row: dict) -> "CareLink":
        try:
            return cls(
                id=str(row["id"]),
                caregiver_id=str(row["caregiver_id"]),
                invite_code=row["invite_code"],
                status=row.get("status") or CareLinkStatus.PENDING,
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                created_at=parse_timestamp(row.get("created_at")),
                updated_at=parse_timestamp(row.get("updated_at")),
                expires_at=parse_timestamp(row.get("expires_at")),
            )
        except KeyError as e:
            raise MalformedDataError(f"Care link row missing column {e}") from e

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "caregiver_id": self.caregiver_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "invite_code": self.invite_code,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "expires_at": format_timestamp(self.expires_at),
        }


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def notification_id(medication_id: str, scheduled_at: datetime) -> str:
    """Deterministic id for the reminder of one occurrence."""
    return f"medication_{medication_id}_{epoch_minutes(scheduled_at)}"


def notification_prefix(medication_id: str) -> str:
    return f"medication_{medication_id}_"


def snooze_notification_id(medication_id: str, remind_at: datetime) -> str:
    """Id for a "remind me later" notification. Survives synchronize()."""
    return f"snooze_{medication_id}_{epoch_minutes(remind_at)}"


def snooze_prefix(medication_id: str) -> str:
    return f"snooze_{medication_id}_"


@dataclass(frozen=True)
class NotificationPayload:
    """Everything the action handler needs without a database read."""

    medication_id: str
    medication_name: str
    dosage: str
    scheduled_time: datetime

    def to_dict(self) -> dict:
        return {
            "medicationId": self.medication_id,
            "medicationName": self.medication_name,
            "dosage": self.dosage,
            "scheduledTime": self.scheduled_time.timestamp(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationPayload":
        if not isinstance(data, dict):
            raise MalformedDataError("Notification payload is not a mapping")
        missing = [k for k in ("medicationId", "medicationName", "dosage", "scheduledTime")
                   if data.get(k) is None]
        if missing:
            raise MalformedDataError(f"Notification payload missing {', '.join(missing)}")
        try:
            scheduled = datetime.fromtimestamp(float(data["scheduledTime"]), tz=tz.tzutc())
        except (TypeError, ValueError, OverflowError) as e:
            raise MalformedDataError(f"Bad scheduledTime in payload: {data['scheduledTime']!r}") from e
        return cls(medication_id=str(data["medicationId"]),
                   medication_name=str(data["medicationName"]),
                   dosage=str(data["dosage"]),
                   scheduled_time=scheduled)

    @classmethod
    def for_occurrence(cls, occurrence: Occurrence) -> "NotificationPayload":
        return cls(medication_id=occurrence.medication_id,
                   medication_name=occurrence.medication_name,
                   dosage=occurrence.dosage,
                   scheduled_time=occurrence.scheduled_at)


@dataclass(frozen=True)
class PendingNotification:
    """A deferred notification as held by the platform store."""

    id: str
    trigger_at: datetime
    payload: dict = field(default_factory=dict)
