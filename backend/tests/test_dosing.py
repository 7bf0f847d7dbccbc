import pytest
from datetime import datetime, date, timedelta, timezone
from dateutil import tz

from backend.tools import dosing
from backend.tools.dosing import (
    classify_dose, project_pending_status, current_dose_status, should_send_reminder,
    occurrences_for_day, policy_for_frequency, policy_for_medication,
    ON_TIME, LATE, MISSED, PENDING, PENDING_LATE
)

SCHEDULED = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)

def at(minutes):
    return SCHEDULED + timedelta(minutes=minutes)

class TestClassifyDose:
    def test_taken_at_grace_boundary_is_on_time(self):
        result = classify_dose(SCHEDULED, "taken", at(60), 60, 180)
        assert result.dose_status == ON_TIME
        assert result.taken_at == at(60)

    def test_taken_just_after_grace_is_late(self):
        assert classify_dose(SCHEDULED, "taken", at(61), 60, 180).dose_status == LATE

    def test_taken_at_cutoff_is_late(self):
        assert classify_dose(SCHEDULED, "taken", at(180), 60, 180).dose_status == LATE

    def test_taken_past_cutoff_is_missed(self):
        result = classify_dose(SCHEDULED, "taken", at(181), 60, 180)
        assert result.dose_status == MISSED
        assert result.taken_at == at(181)

    def test_taken_early_is_on_time(self):
        assert classify_dose(SCHEDULED, "taken", at(-30), 60, 180).dose_status == ON_TIME

    @pytest.mark.parametrize("action", ["skipped", "missed"])
    def test_skipped_and_missed_are_always_missed(self, action):
        for minutes in (-120, 0, 30, 500):
            result = classify_dose(SCHEDULED, action, at(minutes), 60, 180)
            assert result.dose_status == MISSED
            assert result.taken_at is None

    def test_snooze_defers_by_default_ten_minutes(self):
        result = classify_dose(SCHEDULED, "snoozed", at(5), 60, 180)
        assert result.dose_status == PENDING
        assert result.snooze_until == at(15)
        assert result.taken_at is None

    def test_snooze_custom_minutes(self):
        result = classify_dose(SCHEDULED, "snoozed", at(0), snooze_minutes=30)
        assert result.snooze_until == at(30)

    def test_snooze_rejects_non_positive_minutes(self):
        with pytest.raises(ValueError):
            classify_dose(SCHEDULED, "snoozed", at(0), snooze_minutes=0)

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            classify_dose(SCHEDULED, "forgotten", at(0))

    def test_defaults_when_grace_not_configured(self):
        assert classify_dose(SCHEDULED, "taken", at(60)).dose_status == ON_TIME
        assert classify_dose(SCHEDULED, "taken", at(179)).dose_status == LATE
        assert classify_dose(SCHEDULED, "taken", at(181)).dose_status == MISSED

    def test_accepts_iso_strings_with_offsets(self):
        result = classify_dose("2026-10-18T10:00:00+02:00", "taken", at(30), 60, 180)
        assert result.dose_status == ON_TIME

    def test_same_inputs_give_same_result(self):
        first = classify_dose(SCHEDULED, "taken", at(90), 60, 180)
        second = classify_dose(SCHEDULED, "taken", at(90), 60, 180)
        assert first == second

class TestFrequencyScenarios:
    def test_once_daily_taken_ninety_minutes_late_is_on_time(self):
        policy = policy_for_frequency("Once daily")
        result = classify_dose(SCHEDULED, "taken", datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc),
                               policy.grace_period_minutes, policy.missed_dose_cutoff_minutes)
        assert result.dose_status == ON_TIME

    def test_once_daily_taken_after_cutoff_is_missed(self):
        policy = policy_for_frequency("Once daily")
        result = classify_dose(SCHEDULED, "taken", datetime(2026, 10, 18, 14, 30, tzinfo=timezone.utc),
                               policy.grace_period_minutes, policy.missed_dose_cutoff_minutes)
        assert result.dose_status == MISSED

    def test_four_times_daily_is_strict(self):
        policy = policy_for_frequency("Four times daily")
        result = classify_dose(SCHEDULED, "taken", at(20),
                               policy.grace_period_minutes, policy.missed_dose_cutoff_minutes)
        assert result.dose_status == LATE

    @pytest.mark.parametrize("frequency,expected", [
        ("Once daily", (120, 30, 360)),
        ("Twice daily", (60, 20, 240)),
        ("Three times daily", (30, 15, 120)),
        ("Four times daily", (15, 10, 60)),
        ("With meals", (15, 10, 60)),
        ("Before meals", (15, 10, 60)),
        ("Before meals (fasting)", (15, 10, 60)),
    ])
    def test_frequency_table(self, frequency, expected):
        policy = policy_for_frequency(frequency)
        assert (policy.grace_period_minutes,
                policy.reminder_window_minutes,
                policy.missed_dose_cutoff_minutes) == expected

    def test_unknown_frequency(self):
        with pytest.raises(KeyError):
            policy_for_frequency("Every other day")

    def test_medication_row_without_settings_uses_defaults(self):
        policy = policy_for_medication({"grace_period_minutes": None, "missed_dose_cutoff_minutes": 0})
        assert policy.grace_period_minutes == dosing.DEFAULT_GRACE_PERIOD_MINUTES
        assert policy.missed_dose_cutoff_minutes == dosing.DEFAULT_MISSED_DOSE_CUTOFF_MINUTES
        assert policy.reminder_window_minutes == dosing.DEFAULT_REMINDER_WINDOW_MINUTES

class TestProjection:
    def test_before_scheduled_time_is_pending(self):
        assert project_pending_status(SCHEDULED, at(-10), 180) == PENDING

    def test_after_scheduled_time_is_pending_late(self):
        assert project_pending_status(SCHEDULED, at(30), 180) == PENDING_LATE
        assert project_pending_status(SCHEDULED, at(180), 180) == PENDING_LATE

    def test_after_cutoff_is_missed(self):
        assert project_pending_status(SCHEDULED, at(181), 180) == MISSED

    def test_current_status_without_log_is_projected(self):
        policy = policy_for_frequency("Twice daily")
        assert current_dose_status(SCHEDULED, None, policy, at(300)) == MISSED

    def test_current_status_of_snoozed_log_is_projected(self):
        policy = policy_for_frequency("Twice daily")
        log = {"status": "snoozed", "snooze_until": at(10).isoformat()}
        assert current_dose_status(SCHEDULED, log, policy, at(5)) == PENDING_LATE

    def test_current_status_of_taken_log_uses_taken_at(self):
        policy = policy_for_frequency("Twice daily")
        log = {"status": "taken", "taken_at": at(90).isoformat(), "dose_status": ON_TIME}
        assert current_dose_status(SCHEDULED, log, policy, at(600)) == LATE

    def test_current_status_of_skipped_log(self):
        policy = policy_for_frequency("Twice daily")
        assert current_dose_status(SCHEDULED, {"status": "skipped"}, policy, at(0)) == MISSED

class TestReminderWindow:
    def test_inside_window(self):
        assert should_send_reminder(SCHEDULED, at(-15), 20)
        assert should_send_reminder(SCHEDULED, at(-20), 20)

    def test_outside_window(self):
        assert not should_send_reminder(SCHEDULED, at(-21), 20)
        assert not should_send_reminder(SCHEDULED, at(0), 20)

    def test_snoozed_reminder_fires_once_snooze_elapses(self):
        snooze_until = at(10)
        assert not should_send_reminder(SCHEDULED, at(5), 20, snooze_until=snooze_until)
        assert should_send_reminder(SCHEDULED, at(10), 20, snooze_until=snooze_until)

class TestOccurrences:
    def medication(self, **overrides):
        row = {
            "id": "med-1",
            "active": True,
            "start_date": "2026-10-01",
            "end_date": None,
            "medication_schedules": [
                {"id": "s-evening", "time_of_day": "20:00", "active": True},
                {"id": "s-morning", "time_of_day": "08:00:00", "active": True},
            ],
        }
        row.update(overrides)
        return row

    def test_expands_schedules_in_time_order(self):
        occurrences = occurrences_for_day(self.medication(), date(2026, 10, 18), timezone.utc)
        assert [o["schedule"]["id"] for o in occurrences] == ["s-morning", "s-evening"]
        assert occurrences[0]["scheduled_time"] == "2026-10-18T08:00:00+00:00"

    def test_local_times_are_converted_to_utc(self):
        occurrences = occurrences_for_day(self.medication(), date(2026, 10, 20), tz.gettz("Europe/Berlin"))
        assert occurrences[0]["scheduled_time"] == "2026-10-20T06:00:00+00:00"

    def test_respects_start_and_end_dates(self):
        medication = self.medication(end_date="2026-10-10")
        assert occurrences_for_day(medication, date(2026, 9, 30), timezone.utc) == []
        assert len(occurrences_for_day(medication, date(2026, 10, 10), timezone.utc)) == 2
        assert occurrences_for_day(medication, date(2026, 10, 11), timezone.utc) == []

    def test_inactive_medication_has_no_doses(self):
        medication = self.medication(active=False)
        assert occurrences_for_day(medication, date(2026, 10, 18), timezone.utc) == []

    def test_days_of_week_counts_from_sunday(self):
        medication = self.medication(medication_schedules=[
            {"id": "s-1", "time_of_day": "08:00", "days_of_week": [0, 3]},
        ])
        # 18 Oct 2026 is a Sunday
        assert len(occurrences_for_day(medication, date(2026, 10, 18), timezone.utc)) == 1
        assert occurrences_for_day(medication, date(2026, 10, 19), timezone.utc) == []
        assert len(occurrences_for_day(medication, date(2026, 10, 21), timezone.utc)) == 1

    def test_inactive_or_malformed_schedules_are_skipped(self):
        medication = self.medication(medication_schedules=[
            {"id": "s-1", "time_of_day": "08:00", "active": False},
            {"id": "s-2", "time_of_day": "25:00"},
            {"id": "s-3", "time_of_day": "noon"},
        ])
        assert occurrences_for_day(medication, date(2026, 10, 18), timezone.utc) == []

def test_log_key_ignores_timestamp_formatting():
    assert dosing.log_key("m", "s", "2026-10-18T08:00:00Z") == dosing.log_key("m", "s", SCHEDULED)
    assert dosing.log_key("m", "s", "2026-10-18T10:00:00.000+02:00") == dosing.log_key("m", "s", SCHEDULED)
