"""
Occurrence Generator

Expands a medication's daily time labels into concrete dose occurrences
over a rolling look-ahead horizon. Occurrences are derived on demand and
never stored.
"""

from datetime import date
from typing import Iterator, List, Optional

from medreminder.errors import MalformedDataError
from medreminder.logger import get_logger
from medreminder.models import Medication, Occurrence, ScheduleType
from medreminder.recurrence import get_timezone, iter_days, parse_time_label, resolve_instant


DEFAULT_HORIZON_DAYS = 30

logger = get_logger(__name__)


def valid_time_labels(medication: Medication) -> List[str]:
    """Labels that parse, in lexical order. Bad labels are logged and dropped."""
    labels = []
    for label in medication.notification_times:
        try:
            parse_time_label(label)
        except MalformedDataError as e:
            logger.warning(f"Skipping time label for medication {medication.id}: {e}")
            continue
        labels.append(label)
    return sorted(labels)


class OccurrenceSequence:
    """Lazy, finite, restartable view over a medication's occurrences.

    Each iteration starts again from day 0, so the same sequence object can
    be walked by the scheduler and by a test without being exhausted.
    """

    def __init__(self, medication: Medication, today: date,
                 horizon_days: int = DEFAULT_HORIZON_DAYS):
        self.medication = medication
        self.today = today
        self.horizon_days = horizon_days

    def __iter__(self) -> Iterator[Occurrence]:
        med = self.medication
        if not med.is_active or med.schedule_type == ScheduleType.AS_NEEDED:
            return

        labels = valid_time_labels(med)
        if not labels:
            return

        zone = get_timezone(med.timezone)
        for day in iter_days(self.today, self.horizon_days):
            day_items = []
            for label in labels:
                instant = resolve_instant(day, label, zone)
                day_items.append(Occurrence(
                    medication_id=med.id,
                    medication_name=med.name,
                    dosage=med.dosage,
                    day=day,
                    time_label=label,
                    scheduled_at=instant,
                ))
            # A DST gap can push an early label past a later one.
            day_items.sort(key=lambda o: (o.scheduled_at, o.time_label))
            yield from day_items

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __repr__(self):
        return (f"OccurrenceSequence(medication={self.medication.id!r}, "
                f"today={self.today.isoformat()}, horizon_days={self.horizon_days})")


def generate_occurrences(medication: Medication, today: date,
                         horizon_days: Optional[int] = None) -> OccurrenceSequence:
    """All occurrences for day offsets 0..horizon_days-1, ascending by instant."""
    if horizon_days is None:
        horizon_days = DEFAULT_HORIZON_DAYS
    return OccurrenceSequence(medication, today, horizon_days)


def occurrences_for_day(medication: Medication, day: date) -> List[Occurrence]:
    """The occurrences of a single calendar day."""
    return list(OccurrenceSequence(medication, day, 1))
