from datetime import date, timedelta, timezone

from backend.tools.adherence import (
    DaySummary, current_streak, longest_streak, adherence_percentage,
    build_day_summaries, total_taken, streak_message
)

TODAY = date(2026, 10, 18)

def day(offset, total=2, taken=2, **kwargs):
    return DaySummary(day=TODAY - timedelta(days=offset), total_doses=total, taken_doses=taken, **kwargs)

def test_perfect_week_counts_every_day():
    summaries = [day(i) for i in range(7)]
    assert current_streak(summaries, TODAY) == 7

def test_unfinished_today_does_not_break_streak():
    summaries = [day(0, taken=1)] + [day(i) for i in range(1, 4)]
    assert current_streak(summaries, TODAY) == 3

def test_missed_dose_yesterday_ends_streak():
    summaries = [day(0), day(1, taken=1), day(2), day(3)]
    assert current_streak(summaries, TODAY) == 1

def test_day_without_doses_breaks_streak():
    summaries = [day(0), day(1), day(2, total=0, taken=0), day(3), day(4)]
    assert current_streak(summaries, TODAY) == 2

def test_missing_day_breaks_streak():
    summaries = [day(0), day(1), day(3), day(4)]
    assert current_streak(summaries, TODAY) == 2

def test_no_history():
    assert current_streak([], TODAY) == 0
    assert longest_streak([]) == 0

def test_streak_is_bounded_by_history():
    assert current_streak([day(i) for i in range(1, 366)], TODAY) == 365

def test_longest_streak_finds_best_run():
    summaries = [day(i) for i in range(3)] + [day(3, taken=0)] + [day(i) for i in range(4, 9)]
    assert longest_streak(summaries) == 5
    assert current_streak(summaries, TODAY) == 3

def test_longest_streak_needs_consecutive_days():
    summaries = [day(0), day(2), day(4)]
    assert longest_streak(summaries) == 1

def test_adherence_percentage():
    summaries = [day(0, total=3, taken=2), day(1, total=3, taken=3), day(5, total=1, taken=0)]
    assert adherence_percentage(summaries) == 71
    assert adherence_percentage(summaries, TODAY - timedelta(days=1), TODAY) == 83
    assert adherence_percentage(summaries, TODAY, TODAY) == 67

def test_adherence_percentage_with_nothing_scheduled():
    assert adherence_percentage([day(0, total=0, taken=0)]) == 0
    assert adherence_percentage([]) == 0

def test_streak_messages():
    assert streak_message(0) == "Start your medication streak today!"
    assert streak_message(1).startswith("Congratulations!")
    assert "3 days in" in streak_message(3)
    assert "12-day streak" in streak_message(12)
    assert "champion" in streak_message(45)

class TestBuildDaySummaries:
    medication = {
        "id": "med-1",
        "active": True,
        "start_date": "2026-10-16",
        "medication_schedules": [
            {"id": "am", "time_of_day": "08:00"},
            {"id": "pm", "time_of_day": "20:00"},
        ],
    }

    def log(self, schedule_id, scheduled_time, status):
        return {
            "medication_id": "med-1",
            "schedule_id": schedule_id,
            "scheduled_time": scheduled_time,
            "status": status,
        }

    def test_counts_doses_per_day(self):
        logs = [
            self.log("am", "2026-10-16T08:00:00+00:00", "taken"),
            self.log("pm", "2026-10-16T20:00:00Z", "taken"),
            self.log("am", "2026-10-17T08:00:00+00:00", "skipped"),
            self.log("pm", "2026-10-17T20:00:00+00:00", "snoozed"),
        ]
        summaries = build_day_summaries([self.medication], logs, date(2026, 10, 15), TODAY, timezone.utc)

        assert [s.day for s in summaries] == [date(2026, 10, 15) + timedelta(days=i) for i in range(4)]
        assert summaries[0].total_doses == 0
        assert (summaries[1].total_doses, summaries[1].taken_doses) == (2, 2)
        assert summaries[1].qualifies
        assert (summaries[2].skipped_doses, summaries[2].snoozed_doses, summaries[2].taken_doses) == (1, 1, 0)
        assert not summaries[3].qualifies

    def test_logs_for_other_times_are_ignored(self):
        logs = [self.log("am", "2026-10-16T09:00:00+00:00", "taken")]
        summaries = build_day_summaries([self.medication], logs, date(2026, 10, 16), date(2026, 10, 16), timezone.utc)
        assert summaries[0].taken_doses == 0

def test_total_taken():
    logs = [{"status": "taken"}, {"status": "skipped"}, {"status": "taken"}, {"status": "snoozed"}]
    assert total_taken(logs) == 2
