"""
Seed demo medications and a week of dose history for an existing auth user.

    SEED_USER_ID=<uuid> python -m backend.db.seed
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from supabase import create_client

from backend.app.database import SupabaseRepository
from backend.tools import dosing

DEMO_MEDICATIONS = [
    {
        "name": "Metformin",
        "dosage": "500 mg",
        "form": "pill",
        "frequency_type": "Twice daily",
        "intake_times": ["08:00", "20:00"],
        "with_food": True,
        "pills_remaining": 40,
        "total_pills": 60,
        "refill_reminder_threshold": 10,
    },
    {
        "name": "Lisinopril",
        "dosage": "10 mg",
        "form": "pill",
        "frequency_type": "Once daily",
        "intake_times": ["09:00"],
        "with_food": False,
        "pills_remaining": 25,
        "total_pills": 30,
        "refill_reminder_threshold": 5,
    },
]

def seed_medication(repo: SupabaseRepository, user_id: str, template: dict, start: datetime) -> dict:
    policy = dosing.policy_for_frequency(template["frequency_type"])
    medication = repo.insert_medication({
        "user_id": user_id,
        "name": template["name"],
        "dosage": template["dosage"],
        "form": template["form"],
        "frequency_type": template["frequency_type"],
        **policy.as_columns(),
        "start_date": start.date().isoformat(),
        "pills_remaining": template["pills_remaining"],
        "total_pills": template["total_pills"],
        "refill_reminder_threshold": template["refill_reminder_threshold"],
        "active": True,
    })
    medication["medication_schedules"] = repo.insert_schedules([
        {
            "medication_id": medication["id"],
            "time_of_day": t,
            "with_food": template["with_food"],
            "active": True,
        }
        for t in template["intake_times"]
    ])
    return medication

def seed_history(repo: SupabaseRepository, medication: dict, days: int, today) -> int:
    """Mostly on-time doses, one late dose and one skip, so stats have texture"""
    policy = dosing.policy_for_medication(medication)
    created = 0
    for offset in range(days, 0, -1):
        day = today - timedelta(days=offset)
        for occurrence in dosing.occurrences_for_day(medication, day, timezone.utc):
            scheduled = dosing.to_utc(occurrence["scheduled_time"])
            if offset == 3:
                action, acted = "skipped", scheduled
            elif offset == 5:
                action, acted = "taken", scheduled + timedelta(minutes=policy.grace_period_minutes + 20)
            else:
                action, acted = "taken", scheduled + timedelta(minutes=5)

            result = dosing.classify_dose(
                scheduled, action, acted,
                policy.grace_period_minutes, policy.missed_dose_cutoff_minutes
            )
            repo.insert_dose_log({
                "medication_id": medication["id"],
                "schedule_id": occurrence["schedule"]["id"],
                "scheduled_time": occurrence["scheduled_time"],
                "status": action,
                "dose_status": result.dose_status,
                "taken_at": result.taken_at.isoformat() if result.taken_at else None,
            })
            created += 1
    return created

def seed_database(user_id: str, days: int = 7):
    """Seed the database with demo data."""
    client = create_client(
        os.environ.get("SUPABASE_URL", "https://example.supabase.co"),
        os.environ.get("SUPABASE_KEY", "your-key-here")
    )
    repo = SupabaseRepository(client)
    now = datetime.now(timezone.utc)

    for template in DEMO_MEDICATIONS:
        print(f"Creating {template['name']} ({template['frequency_type']})...")
        medication = seed_medication(repo, user_id, template, now - timedelta(days=days))
        logs = seed_history(repo, medication, days, now.date())
        print(f"  {len(medication['medication_schedules'])} schedules, {logs} dose logs")

    print("Done.")

if __name__ == "__main__":
    user_id = os.environ.get("SEED_USER_ID") or (sys.argv[1] if len(sys.argv) > 1 else None)
    if not user_id:
        sys.exit("Usage: SEED_USER_ID=<auth user uuid> python -m backend.db.seed")
    seed_database(user_id)
