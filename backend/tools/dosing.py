from typing import Dict, Any, List, Optional, Union
from datetime import datetime, date, timedelta, timezone
from dataclasses import dataclass
from dateutil import parser as dateparser

DEFAULT_GRACE_PERIOD_MINUTES = 60
DEFAULT_REMINDER_WINDOW_MINUTES = 15
DEFAULT_MISSED_DOSE_CUTOFF_MINUTES = 180
DEFAULT_SNOOZE_MINUTES = 10

# Dose statuses
PENDING = "PENDING"
PENDING_LATE = "PENDING_LATE"  # projection only, never persisted
ON_TIME = "ON_TIME"
LATE = "LATE"
MISSED = "MISSED"

ACTIONS = ("taken", "snoozed", "skipped", "missed")


@dataclass(frozen=True)
class GracePolicy:
    interval_hours: Optional[int]
    grace_period_minutes: int
    reminder_window_minutes: int
    missed_dose_cutoff_minutes: int

    def as_columns(self) -> Dict[str, int]:
        return {
            "grace_period_minutes": self.grace_period_minutes,
            "reminder_window_minutes": self.reminder_window_minutes,
            "missed_dose_cutoff_minutes": self.missed_dose_cutoff_minutes,
        }


FREQUENCY_CONFIG: Dict[str, GracePolicy] = {
    "Once daily": GracePolicy(24, 120, 30, 360),
    "Twice daily": GracePolicy(12, 60, 20, 240),
    "Three times daily": GracePolicy(8, 30, 15, 120),
    "Four times daily": GracePolicy(6, 15, 10, 60),
    "With meals": GracePolicy(None, 15, 10, 60),
    "Before meals": GracePolicy(None, 15, 10, 60),
}

FREQUENCY_ALIASES = {
    "Before meals (fasting)": "Before meals",
}


@dataclass(frozen=True)
class DoseClassification:
    dose_status: str
    taken_at: Optional[datetime] = None
    snooze_until: Optional[datetime] = None


def canonical_frequency(frequency_type: str) -> Optional[str]:
    """Map a frequency label (or known alias) to its table key, None if unknown"""
    frequency_type = FREQUENCY_ALIASES.get(frequency_type, frequency_type)
    return frequency_type if frequency_type in FREQUENCY_CONFIG else None


def policy_for_frequency(frequency_type: str) -> GracePolicy:
    key = canonical_frequency(frequency_type)
    if key is None:
        raise KeyError(f"Invalid frequency_type: {frequency_type}")
    return FREQUENCY_CONFIG[key]


def policy_for_medication(medication: Dict[str, Any]) -> GracePolicy:
    """
    Grace settings stored on a medication row, falling back to defaults
    for unset (null or zero) columns.
    """
    return GracePolicy(
        interval_hours=None,
        grace_period_minutes=medication.get("grace_period_minutes") or DEFAULT_GRACE_PERIOD_MINUTES,
        reminder_window_minutes=medication.get("reminder_window_minutes") or DEFAULT_REMINDER_WINDOW_MINUTES,
        missed_dose_cutoff_minutes=medication.get("missed_dose_cutoff_minutes") or DEFAULT_MISSED_DOSE_CUTOFF_MINUTES,
    )


def to_utc(value: Union[str, datetime]) -> datetime:
    """Parse an ISO timestamp (or datetime) into an aware UTC datetime. Naive values are UTC."""
    if isinstance(value, str):
        value = dateparser.isoparse(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_timestamp(value: Union[str, datetime]) -> str:
    """Canonical storage form for scheduled times: UTC ISO-8601, second precision"""
    return to_utc(value).replace(microsecond=0).isoformat()


def classify_dose(scheduled_time: Union[str, datetime],
                  action: str,
                  action_time: Optional[datetime] = None,
                  grace_period_minutes: Optional[int] = None,
                  missed_dose_cutoff_minutes: Optional[int] = None,
                  snooze_minutes: Optional[int] = None) -> DoseClassification:
    """
    Classify a dose action against the medication's grace window.

    taken within the grace period is ON_TIME (boundary inclusive), within the
    cutoff LATE, and beyond it MISSED. Snoozing keeps the dose PENDING and
    defers it; skipped and missed doses are always MISSED.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown dose action: {action}")

    grace = grace_period_minutes or DEFAULT_GRACE_PERIOD_MINUTES
    cutoff = missed_dose_cutoff_minutes or DEFAULT_MISSED_DOSE_CUTOFF_MINUTES
    scheduled = to_utc(scheduled_time)
    acted = to_utc(action_time) if action_time is not None else datetime.now(timezone.utc)

    if action == "taken":
        elapsed = (acted - scheduled).total_seconds() / 60
        if elapsed <= grace:
            status = ON_TIME
        elif elapsed <= cutoff:
            status = LATE
        else:
            # Taken, but far too late to count
            status = MISSED
        return DoseClassification(status, taken_at=acted)

    if action == "snoozed":
        minutes = DEFAULT_SNOOZE_MINUTES if snooze_minutes is None else snooze_minutes
        if minutes <= 0:
            raise ValueError("Snooze minutes must be positive")
        return DoseClassification(PENDING, snooze_until=acted + timedelta(minutes=minutes))

    return DoseClassification(MISSED)


def project_pending_status(scheduled_time: Union[str, datetime],
                           now: datetime,
                           missed_dose_cutoff_minutes: Optional[int] = None) -> str:
    """Status of a dose nobody has acted on yet, as seen at `now`"""
    cutoff = missed_dose_cutoff_minutes or DEFAULT_MISSED_DOSE_CUTOFF_MINUTES
    scheduled = to_utc(scheduled_time)
    now = to_utc(now)

    if now > scheduled + timedelta(minutes=cutoff):
        return MISSED
    if now > scheduled:
        return PENDING_LATE
    return PENDING


def current_dose_status(scheduled_time: Union[str, datetime],
                        log: Optional[Dict[str, Any]],
                        policy: GracePolicy,
                        now: datetime) -> str:
    """
    Status of one scheduled occurrence as of `now`. Logged actions are
    re-classified from their inputs; unlogged and snoozed doses are projected.
    """
    if not log or log.get("status") == "snoozed":
        return project_pending_status(scheduled_time, now, policy.missed_dose_cutoff_minutes)

    action = log.get("status")
    if action == "taken" and not log.get("taken_at"):
        return log.get("dose_status") or PENDING

    return classify_dose(
        scheduled_time,
        action,
        action_time=to_utc(log["taken_at"]) if action == "taken" else now,
        grace_period_minutes=policy.grace_period_minutes,
        missed_dose_cutoff_minutes=policy.missed_dose_cutoff_minutes,
    ).dose_status


def should_send_reminder(scheduled_time: Union[str, datetime],
                         now: datetime,
                         reminder_window_minutes: Optional[int] = None,
                         snooze_until: Optional[Union[str, datetime]] = None) -> bool:
    scheduled = to_utc(scheduled_time)
    now = to_utc(now)

    if snooze_until is not None:
        return now >= to_utc(snooze_until)

    window = reminder_window_minutes or DEFAULT_REMINDER_WINDOW_MINUTES
    return scheduled - timedelta(minutes=window) <= now < scheduled


def parse_time_of_day(value: str) -> Optional[tuple]:
    """'HH:MM' or 'HH:MM:SS' -> (hours, minutes); None when unparseable"""
    if not isinstance(value, str):
        return None
    parts = value.split(":")
    if len(parts) < 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return None
    return hours, minutes


def js_weekday(day: date) -> int:
    """Weekday numbering used by schedules: 0=Sunday .. 6=Saturday"""
    return (day.weekday() + 1) % 7


def _as_date(value) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return dateparser.isoparse(value).date()


def medication_active_on(medication: Dict[str, Any], day: date) -> bool:
    if medication.get("active") is False:
        return False
    start = _as_date(medication.get("start_date"))
    end = _as_date(medication.get("end_date"))
    if start and day < start:
        return False
    if end and day > end:
        return False
    return True


def schedule_applies_on(schedule: Dict[str, Any], day: date) -> bool:
    if schedule.get("active") is False:
        return False
    days_of_week = schedule.get("days_of_week")
    if days_of_week and js_weekday(day) not in days_of_week:
        return False
    return True


def occurrences_for_day(medication: Dict[str, Any], day: date, tz) -> List[Dict[str, Any]]:
    """
    Expand a medication's schedules into the doses due on `day`.
    Times of day are interpreted in `tz`; scheduled times are returned in UTC.
    """
    if not medication_active_on(medication, day):
        return []

    occurrences = []
    for schedule in medication.get("medication_schedules") or []:
        if not schedule_applies_on(schedule, day):
            continue
        parsed = parse_time_of_day(schedule.get("time_of_day"))
        if not parsed:
            continue
        hours, minutes = parsed
        local = datetime(day.year, day.month, day.day, hours, minutes, tzinfo=tz)
        occurrences.append({
            "medication": medication,
            "schedule": schedule,
            "scheduled_time": normalize_timestamp(local),
        })

    occurrences.sort(key=lambda o: o["scheduled_time"])
    return occurrences


def log_key(medication_id: str, schedule_id: str, scheduled_time: Union[str, datetime]) -> str:
    return f"{medication_id}-{schedule_id}-{normalize_timestamp(scheduled_time)}"
