"""
Adherence Reconciler

Merges a day's occurrences with the adherence logs recorded for that day
and derives one status per occurrence:

    1. a matching log decides (taken -> taken, missed/skipped -> missed)
    2. otherwise an occurrence strictly in the past is missed
    3. otherwise it is pending

The result is a projection recomputed on every read. Nothing here writes a
log; "missed" by lateness is observational only.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from medreminder.errors import MalformedDataError
from medreminder.logger import get_logger
from medreminder.models import (
    AdherenceLog,
    AdherenceStatus,
    Medication,
    Occurrence,
    OccurrenceStatus,
    ScheduledDose,
)
from medreminder.occurrences import occurrences_for_day
from medreminder.recurrence import epoch_minutes, get_timezone


logger = get_logger(__name__)

_LOG_STATUS_MAP = {
    AdherenceStatus.TAKEN: OccurrenceStatus.TAKEN,
    AdherenceStatus.MISSED: OccurrenceStatus.MISSED,
    AdherenceStatus.SKIPPED: OccurrenceStatus.MISSED,
}


@dataclass(frozen=True)
class AdherenceSummary:
    taken: int = 0
    missed: int = 0
    pending: int = 0

    @property
    def total(self) -> int:
        return self.taken + self.missed + self.pending


def _index_logs(logs: Iterable[AdherenceLog]) -> Dict[Tuple[str, int], Tuple[AdherenceLog, AdherenceStatus]]:
    """Key valid logs by (medication id, epoch minute).

    Logs with an unrecognized status are reported and left out, so the
    occurrence they point at falls back to time inference.
    """
    index = {}
    for log in logs:
        try:
            status = AdherenceStatus.parse(log.status)
        except MalformedDataError as e:
            logger.error(f"Ignoring adherence log {log.id}: {e}")
            continue
        key = (log.medication_id, epoch_minutes(log.scheduled_time))
        if key in index:
            logger.warning(
                f"Duplicate adherence log for medication {log.medication_id} "
                f"at {log.scheduled_time.isoformat()} (keeping {index[key][0].id})"
            )
            continue
        index[key] = (log, status)
    return index


def derive_status(occurrence: Occurrence, log_status: Optional[AdherenceStatus],
                  now: datetime) -> OccurrenceStatus:
    if log_status is not None:
        return _LOG_STATUS_MAP[log_status]
    if occurrence.scheduled_at < now:
        return OccurrenceStatus.MISSED
    return OccurrenceStatus.PENDING


def reconcile(occurrences: Iterable[Occurrence], logs: Iterable[AdherenceLog],
              now: datetime) -> List[ScheduledDose]:
    """One status-tagged dose per input occurrence, in input order."""
    index = _index_logs(logs)
    result = []
    for occ in occurrences:
        match = index.get((occ.medication_id, epoch_minutes(occ.scheduled_at)))
        log, log_status = match if match else (None, None)
        result.append(ScheduledDose(
            occurrence=occ,
            status=derive_status(occ, log_status, now),
            log=log,
        ))
    return result


def build_day_schedule(medications: Iterable[Medication], logs: Iterable[AdherenceLog],
                       day: date, now: datetime) -> List[ScheduledDose]:
    """Expand every medication for one day and reconcile, sorted by instant."""
    occurrences = []
    for med in medications:
        occurrences.extend(occurrences_for_day(med, day))
    occurrences.sort(key=lambda o: (o.scheduled_at, o.time_label, o.medication_name))
    return reconcile(occurrences, list(logs), now)


def todays_occurrences(medications: Iterable[Medication], now: datetime) -> List[Occurrence]:
    """Each medication's occurrences for the calendar day now falls on in its own zone."""
    occurrences = []
    for med in medications:
        day = now.astimezone(get_timezone(med.timezone)).date()
        occurrences.extend(occurrences_for_day(med, day))
    occurrences.sort(key=lambda o: (o.scheduled_at, o.time_label, o.medication_name))
    return occurrences


def log_window(occurrences: Iterable[Occurrence]) -> Optional[Tuple[datetime, datetime]]:
    """Half-open [first, last + 1 minute) over the occurrence instants, or None."""
    instants = [o.scheduled_at for o in occurrences]
    if not instants:
        return None
    return min(instants), max(instants) + timedelta(minutes=1)


def summarize(doses: Iterable[ScheduledDose]) -> AdherenceSummary:
    counts = {s: 0 for s in OccurrenceStatus}
    for dose in doses:
        counts[dose.status] += 1
    return AdherenceSummary(
        taken=counts[OccurrenceStatus.TAKEN],
        missed=counts[OccurrenceStatus.MISSED],
        pending=counts[OccurrenceStatus.PENDING],
    )
