from typing import Dict, Any, List, Iterable, Optional
from datetime import date, timedelta
from dataclasses import dataclass

from .dosing import occurrences_for_day, log_key


@dataclass
class DaySummary:
    day: date
    total_doses: int = 0
    taken_doses: int = 0
    skipped_doses: int = 0
    snoozed_doses: int = 0

    @property
    def qualifies(self) -> bool:
        """A day counts toward a streak only when every scheduled dose was taken"""
        return self.total_doses > 0 and self.taken_doses == self.total_doses


def _index(summaries: Iterable[DaySummary]) -> Dict[date, DaySummary]:
    return {s.day: s for s in summaries}


def current_streak(summaries: Iterable[DaySummary], today: date) -> int:
    """
    Consecutive qualifying days ending at or before today.

    Today is still in progress, so an unfinished today does not end the
    streak; the walk then starts from yesterday. Any earlier day that does
    not qualify stops it, including a day with nothing scheduled or a day
    missing from the input.
    """
    by_day = _index(summaries)
    if not by_day:
        return 0

    earliest = min(by_day)
    streak = 0
    day = today
    if not (by_day.get(today) and by_day[today].qualifies):
        day = today - timedelta(days=1)

    while day >= earliest:
        summary = by_day.get(day)
        if summary is None or not summary.qualifies:
            break
        streak += 1
        day -= timedelta(days=1)

    return streak


def longest_streak(summaries: Iterable[DaySummary]) -> int:
    by_day = _index(summaries)
    longest = 0
    run = 0
    previous = None
    for day in sorted(by_day):
        if not by_day[day].qualifies:
            run = 0
            previous = None
            continue
        if previous is not None and day - previous == timedelta(days=1):
            run += 1
        else:
            run = 1
        previous = day
        longest = max(longest, run)
    return longest


def adherence_percentage(summaries: Iterable[DaySummary],
                         start: Optional[date] = None,
                         end: Optional[date] = None) -> int:
    """Share of scheduled doses taken within [start, end], as a whole percentage"""
    total = 0
    taken = 0
    for s in summaries:
        if start and s.day < start:
            continue
        if end and s.day > end:
            continue
        total += s.total_doses
        taken += s.taken_doses

    if total == 0:
        return 0
    return round(100 * taken / total)


def build_day_summaries(medications: List[Dict[str, Any]],
                        logs: List[Dict[str, Any]],
                        start: date,
                        end: date,
                        tz) -> List[DaySummary]:
    """
    One summary per day in [start, end]: doses due from the schedules and
    how each was logged. A log is matched to its occurrence by
    (medication, schedule, scheduled time).
    """
    logs_by_key = {
        log_key(l["medication_id"], l["schedule_id"], l["scheduled_time"]): l
        for l in logs
    }

    summaries = []
    day = start
    while day <= end:
        summary = DaySummary(day=day)
        for medication in medications:
            for occurrence in occurrences_for_day(medication, day, tz):
                summary.total_doses += 1
                log = logs_by_key.get(
                    log_key(medication["id"], occurrence["schedule"]["id"], occurrence["scheduled_time"])
                )
                if not log:
                    continue
                status = log.get("status")
                if status == "taken":
                    summary.taken_doses += 1
                elif status == "skipped":
                    summary.skipped_doses += 1
                elif status == "snoozed":
                    summary.snoozed_doses += 1
        summaries.append(summary)
        day += timedelta(days=1)

    return summaries


def total_taken(logs: List[Dict[str, Any]]) -> int:
    return sum(1 for l in logs if l.get("status") == "taken")


def streak_message(streak: int) -> str:
    if streak == 0:
        return "Start your medication streak today!"
    if streak == 1:
        return "Congratulations! You've started your streak! Keep going and build on this great start!"
    if streak < 7:
        return f"Great job! You're {streak} days in. Keep the momentum going!"
    if streak < 30:
        return f"Amazing {streak}-day streak! You're building a strong habit!"
    return f"Incredible {streak}-day streak! You're a medication champion!"
