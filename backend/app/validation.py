import re
import html
from datetime import date
from typing import Any, List, Optional
from .logging_config import ValidationError
from ..tools.dosing import canonical_frequency, parse_time_of_day, FREQUENCY_CONFIG

# Input size limits
MAX_TEXT_LENGTH = 2000
MAX_NAME_LENGTH = 200
MAX_NOTES_LENGTH = 1000
MAX_INTAKE_TIMES = 12
MAX_PILL_COUNT = 10000
MAX_SNOOZE_MINUTES = 24 * 60

TIME_OF_DAY_PATTERN = re.compile(r'^\d{1,2}:\d{2}(:\d{2})?$')

def sanitize_text(text: str, max_length: int = MAX_TEXT_LENGTH, field: str = None) -> str:
    """Sanitize text input by removing HTML and limiting length"""
    if not isinstance(text, str):
        raise ValidationError("Input must be a string", field)

    # Remove HTML tags and decode HTML entities
    clean_text = html.escape(text.strip())

    # Remove control characters except newlines and tabs
    clean_text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', clean_text)

    if len(clean_text) > max_length:
        raise ValidationError(f"Text exceeds maximum length of {max_length} characters", field)

    return clean_text

def require_text(value: Optional[str], field: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Sanitize a required text field, rejecting blanks"""
    if value is None:
        raise ValidationError(f"Missing required field: {field}", field)
    clean = sanitize_text(value, max_length, field)
    if not clean:
        raise ValidationError(f"Missing required field: {field}", field)
    return clean

def validate_frequency_type(frequency_type: str) -> str:
    """Return the canonical frequency label"""
    if not frequency_type:
        raise ValidationError("Missing required field: frequency_type", "frequency_type")

    canonical = canonical_frequency(frequency_type.strip())
    if canonical is None:
        raise ValidationError(
            f"Invalid frequency_type: {frequency_type}. Must be one of: {', '.join(FREQUENCY_CONFIG)}",
            "frequency_type"
        )
    return canonical

def validate_time_of_day(value: str, field: str = "time_of_day") -> str:
    """Normalise 'H:MM' / 'HH:MM[:SS]' to 'HH:MM'"""
    if not isinstance(value, str) or not TIME_OF_DAY_PATTERN.match(value.strip()):
        raise ValidationError(f"Invalid time of day: {value!r} (expected HH:MM)", field)

    parsed = parse_time_of_day(value.strip())
    if parsed is None:
        raise ValidationError(f"Invalid time of day: {value!r} (expected HH:MM)", field)

    hours, minutes = parsed
    return f"{hours:02d}:{minutes:02d}"

def validate_intake_times(intake_times: List[str]) -> List[str]:
    if not intake_times:
        raise ValidationError("Missing required field: intake_times", "intake_times")

    if len(intake_times) > MAX_INTAKE_TIMES:
        raise ValidationError(f"Too many intake times (maximum {MAX_INTAKE_TIMES})", "intake_times")

    times = [validate_time_of_day(t, "intake_times") for t in intake_times]
    if len(set(times)) != len(times):
        raise ValidationError("Duplicate intake times", "intake_times")

    return times

def validate_days_of_week(days: Optional[List[int]]) -> Optional[List[int]]:
    """0=Sunday .. 6=Saturday; empty means every day"""
    if not days:
        return None

    for d in days:
        if not isinstance(d, int) or isinstance(d, bool) or d < 0 or d > 6:
            raise ValidationError("days_of_week values must be integers 0 (Sunday) to 6 (Saturday)", "days_of_week")

    return sorted(set(days))

def validate_pill_count(count: Any, field: str) -> Optional[int]:
    if count is None:
        return None

    if not isinstance(count, int) or isinstance(count, bool):
        raise ValidationError(f"{field} must be a whole number", field)

    if count < 0:
        raise ValidationError(f"{field} cannot be negative", field)

    if count > MAX_PILL_COUNT:
        raise ValidationError(f"{field} too high (maximum {MAX_PILL_COUNT})", field)

    return count

def validate_refill_amount(amount: Any) -> int:
    amount = validate_pill_count(amount, "amount")
    if not amount:
        raise ValidationError("Refill amount must be positive", "amount")
    return amount

def validate_snooze_minutes(minutes: Optional[int], default: int) -> int:
    if minutes is None:
        return default

    if not isinstance(minutes, int) or isinstance(minutes, bool):
        raise ValidationError("snooze_minutes must be a whole number", "snooze_minutes")

    if minutes <= 0:
        raise ValidationError("snooze_minutes must be positive", "snooze_minutes")

    if minutes > MAX_SNOOZE_MINUTES:
        raise ValidationError(f"snooze_minutes too long (maximum {MAX_SNOOZE_MINUTES})", "snooze_minutes")

    return minutes

def validate_date_range(start: Optional[date], end: Optional[date]) -> None:
    if start and end and end < start:
        raise ValidationError("end_date cannot be before start_date", "end_date")

def sanitize_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    return sanitize_text(notes, MAX_NOTES_LENGTH, "notes") or None

EMAIL_PATTERN = re.compile(r'^[^@\s<>"]+@[^@\s<>"]+\.[^@\s<>"]+$')
MIN_APPOINTMENT_MINUTES = 5
MAX_APPOINTMENT_MINUTES = 24 * 60
MAX_REMINDER_LEAD_MINUTES = 7 * 24 * 60

def optional_text(value: Optional[str], field: str, max_length: int = MAX_NAME_LENGTH) -> Optional[str]:
    """Sanitize an optional text field; blanks are stored as null"""
    if value is None:
        return None
    return sanitize_text(value, max_length, field) or None

def validate_email(email: Optional[str]) -> Optional[str]:
    email = (email or "").strip()
    if not email:
        return None

    if len(email) > 255 or not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email address", "email")

    return email.lower()

def validate_duration_minutes(minutes: Any) -> int:
    if not isinstance(minutes, int) or isinstance(minutes, bool):
        raise ValidationError("duration_minutes must be a whole number", "duration_minutes")

    if minutes < MIN_APPOINTMENT_MINUTES or minutes > MAX_APPOINTMENT_MINUTES:
        raise ValidationError(
            f"duration_minutes must be between {MIN_APPOINTMENT_MINUTES} and {MAX_APPOINTMENT_MINUTES}",
            "duration_minutes"
        )

    return minutes

def validate_reminder_lead(minutes: Any) -> int:
    if not isinstance(minutes, int) or isinstance(minutes, bool):
        raise ValidationError("reminder_minutes_before must be a whole number", "reminder_minutes_before")

    if minutes < 0 or minutes > MAX_REMINDER_LEAD_MINUTES:
        raise ValidationError(
            f"reminder_minutes_before must be between 0 and {MAX_REMINDER_LEAD_MINUTES}",
            "reminder_minutes_before"
        )

    return minutes
