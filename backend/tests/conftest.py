import copy
import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from backend.app import config
from backend.app import main
from backend.app.main import app
from backend.app.database import Repository, AuthUser, get_repository
from backend.app.rate_limiter import rate_limiter
from backend.app.preferences import preference_store

USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_USER_ID = "22222222-2222-2222-2222-222222222222"

# Fixed clock for endpoint tests: Sunday 18 Oct 2026, 07:45 UTC
NOW = datetime(2026, 10, 18, 7, 45, tzinfo=timezone.utc)


class InMemoryRepository(Repository):
    """Dict-backed stand-in for the Supabase tables"""

    def __init__(self, users=None):
        self.users = users or {}
        self.medications = {}
        self.schedules = {}
        self.dose_logs = {}
        self.notification_preferences = {}
        self.appointments = {}
        self.practitioners = {}
        self.inserted_logs = 0

    def _new_id(self):
        return str(uuid.uuid4())

    def _with_schedules(self, medication):
        row = copy.deepcopy(medication)
        row["medication_schedules"] = [
            copy.deepcopy(s) for s in self.schedules.values() if s["medication_id"] == medication["id"]
        ]
        return row

    def get_user(self, token):
        return self.users.get(token)

    def insert_medication(self, row):
        medication = {"id": self._new_id(), **row}
        self.medications[medication["id"]] = medication
        return copy.deepcopy(medication)

    def insert_schedules(self, rows):
        created = []
        for row in rows:
            schedule = {"id": self._new_id(), **row}
            self.schedules[schedule["id"]] = schedule
            created.append(copy.deepcopy(schedule))
        return created

    def get_medication(self, medication_id, user_id):
        medication = self.medications.get(medication_id)
        if not medication or medication["user_id"] != user_id:
            return None
        return self._with_schedules(medication)

    def list_medications(self, user_id, active_only=True):
        rows = [
            self._with_schedules(m) for m in self.medications.values()
            if m["user_id"] == user_id and (m.get("active") or not active_only)
        ]
        return sorted(rows, key=lambda m: m["name"])

    def update_medication(self, medication_id, changes):
        self.medications[medication_id].update(changes)
        return copy.deepcopy(self.medications[medication_id])

    def find_dose_log(self, medication_id, schedule_id, scheduled_time):
        for log in self.dose_logs.values():
            if (log["medication_id"], log["schedule_id"], log["scheduled_time"]) == (medication_id, schedule_id, scheduled_time):
                return copy.deepcopy(log)
        return None

    def insert_dose_log(self, row):
        log = {"id": self._new_id(), "notes": None, "taken_at": None, "snooze_until": None, **row}
        self.dose_logs[log["id"]] = log
        self.inserted_logs += 1
        return copy.deepcopy(log)

    def update_dose_log(self, log_id, changes):
        self.dose_logs[log_id].update(changes)
        return copy.deepcopy(self.dose_logs[log_id])

    def list_dose_logs(self, medication_ids, start, end):
        return sorted(
            (copy.deepcopy(l) for l in self.dose_logs.values()
             if l["medication_id"] in medication_ids and start <= l["scheduled_time"] < end),
            key=lambda l: l["scheduled_time"]
        )

    def get_notification_preferences(self, user_id):
        row = self.notification_preferences.get(user_id)
        return copy.deepcopy(row) if row else None

    def upsert_notification_preferences(self, user_id, changes):
        row = self.notification_preferences.setdefault(user_id, {"id": self._new_id(), "user_id": user_id})
        row.update(changes)
        return copy.deepcopy(row)

    def _with_medication_name(self, appointment):
        row = copy.deepcopy(appointment)
        medication = self.medications.get(row.get("medication_id"))
        row["medications"] = {"name": medication["name"]} if medication else None
        return row

    def list_appointments(self, user_id, status=None, appointment_type=None, date_from=None, date_to=None):
        rows = [
            self._with_medication_name(a) for a in self.appointments.values()
            if a["user_id"] == user_id
            and (status is None or a["status"] == status)
            and (appointment_type is None or a["appointment_type"] == appointment_type)
            and (date_from is None or a["appointment_date"] >= date_from)
            and (date_to is None or a["appointment_date"] <= date_to)
        ]
        return sorted(rows, key=lambda a: (a["appointment_date"], a["appointment_time"]))

    def get_appointment(self, appointment_id, user_id):
        appointment = self.appointments.get(appointment_id)
        if not appointment or appointment["user_id"] != user_id:
            return None
        return self._with_medication_name(appointment)

    def insert_appointment(self, row):
        appointment = {"id": self._new_id(), **row}
        self.appointments[appointment["id"]] = appointment
        return copy.deepcopy(appointment)

    def update_appointment(self, appointment_id, changes):
        self.appointments[appointment_id].update(changes)
        return copy.deepcopy(self.appointments[appointment_id])

    def delete_appointment(self, appointment_id):
        self.appointments.pop(appointment_id, None)

    def list_practitioners(self, user_id):
        rows = [copy.deepcopy(p) for p in self.practitioners.values() if p["user_id"] == user_id]
        return sorted(rows, key=lambda p: p["name"])

    def get_practitioner(self, practitioner_id, user_id):
        practitioner = self.practitioners.get(practitioner_id)
        if not practitioner or practitioner["user_id"] != user_id:
            return None
        return copy.deepcopy(practitioner)

    def insert_practitioner(self, row):
        practitioner = {"id": self._new_id(), **row}
        self.practitioners[practitioner["id"]] = practitioner
        return copy.deepcopy(practitioner)

    def update_practitioner(self, practitioner_id, changes):
        self.practitioners[practitioner_id].update(changes)
        return copy.deepcopy(self.practitioners[practitioner_id])

    def delete_practitioner(self, practitioner_id):
        self.practitioners.pop(practitioner_id, None)

    def ping(self):
        return True


@pytest.fixture
def repo():
    return InMemoryRepository(users={
        "valid-token": AuthUser(id=USER_ID, email="patient@example.com"),
        "other-token": AuthUser(id=OTHER_USER_ID, email="someone@example.com"),
    })


@pytest.fixture
def client(repo, monkeypatch):
    monkeypatch.setattr(config, "APP_TIMEZONE", "UTC")
    monkeypatch.setattr(main, "_utcnow", lambda: NOW)
    app.dependency_overrides[get_repository] = lambda: repo
    rate_limiter.reset()
    preference_store.load()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer valid-token"}


@pytest.fixture
def other_headers():
    return {"Authorization": "Bearer other-token"}


@pytest.fixture
def twice_daily(client, auth_headers):
    """A Twice daily medication created through the API"""
    response = client.post("/medications", headers=auth_headers, json={
        "name": "Metformin",
        "dosage": "500 mg",
        "frequency_type": "Twice daily",
        "intake_times": ["08:00", "20:00"],
        "with_food": True,
        "pills_remaining": 30,
    })
    assert response.status_code == 200, response.text
    return response.json()["medication"]


@pytest.fixture
def user_id():
    return USER_ID
