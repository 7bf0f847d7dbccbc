"""
Persistence and auth boundary.

`Repository` is what the endpoints talk to; `SupabaseRepository` is the hosted
adapter. The Supabase client itself is a lazily created singleton.
"""
import asyncio
import time
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from fastapi import HTTPException
from supabase import create_client, Client
from typing import Any, Dict, List, Optional
import logging

from . import config
from .logging_config import DatabaseError

logger = logging.getLogger(__name__)

# NOT NULL columns of notification_preferences that the API does not manage
NOTIFICATION_ROW_DEFAULTS = {
    "browser_enabled": True,
    "sound_enabled": True,
    "reminder_minutes_before": 15,
    "remind_for_missed": True,
}

def retry(f, tries=3, base=0.15):
    """Retry with exponential backoff + jitter"""
    for i in range(tries):
        try:
            return f()
        except Exception:
            if i == tries-1:
                raise
            time.sleep(base*(2**i)+random.random()*0.05)

@dataclass
class AuthUser:
    id: str
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

class Repository(ABC):
    """Storage and auth operations the API needs from the backend"""

    @abstractmethod
    def get_user(self, token: str) -> Optional[AuthUser]:
        """Resolve a bearer token to a user, None when invalid"""

    @abstractmethod
    def insert_medication(self, row: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def insert_schedules(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def get_medication(self, medication_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Medication owned by user_id, with its `medication_schedules`"""

    @abstractmethod
    def list_medications(self, user_id: str, active_only: bool = True) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def update_medication(self, medication_id: str, changes: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def find_dose_log(self, medication_id: str, schedule_id: str, scheduled_time: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def insert_dose_log(self, row: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def update_dose_log(self, log_id: str, changes: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def list_dose_logs(self, medication_ids: List[str], start: str, end: str) -> List[Dict[str, Any]]:
        """Logs for the given medications with start <= scheduled_time < end"""

    @abstractmethod
    def get_notification_preferences(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Latest notification_preferences row for the user, None before the first save"""

    @abstractmethod
    def upsert_notification_preferences(self, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def list_appointments(self, user_id: str, status: Optional[str] = None,
                          appointment_type: Optional[str] = None,
                          date_from: Optional[str] = None,
                          date_to: Optional[str] = None) -> List[Dict[str, Any]]:
        """Appointments ordered by date then time; date bounds are inclusive"""

    @abstractmethod
    def get_appointment(self, appointment_id: str, user_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def insert_appointment(self, row: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def update_appointment(self, appointment_id: str, changes: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def delete_appointment(self, appointment_id: str) -> None: ...

    @abstractmethod
    def list_practitioners(self, user_id: str) -> List[Dict[str, Any]]:
        """Practitioners ordered by name"""

    @abstractmethod
    def get_practitioner(self, practitioner_id: str, user_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def insert_practitioner(self, row: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def update_practitioner(self, practitioner_id: str, changes: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def delete_practitioner(self, practitioner_id: str) -> None: ...

    @abstractmethod
    def ping(self) -> bool: ...

class SupabaseRepository(Repository):
    """Repository backed by Supabase auth and PostgREST tables"""

    def __init__(self, client: Client):
        self.client = client

    def _first(self, result, operation: str) -> Dict[str, Any]:
        if not result.data:
            raise DatabaseError(operation, "no rows returned")
        return result.data[0]

    def get_user(self, token: str) -> Optional[AuthUser]:
        response = self.client.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            return None
        return AuthUser(id=user.id, email=user.email, metadata=user.user_metadata or {})

    def insert_medication(self, row):
        result = self.client.table("medications").insert(row).execute()
        return self._first(result, "insert medication")

    def insert_schedules(self, rows):
        result = self.client.table("medication_schedules").insert(rows).execute()
        if not result.data:
            raise DatabaseError("insert schedules", "no rows returned")
        return result.data

    def get_medication(self, medication_id, user_id):
        result = (
            self.client.table("medications")
            .select("*, medication_schedules(*)")
            .eq("id", medication_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def list_medications(self, user_id, active_only=True):
        query = (
            self.client.table("medications")
            .select("*, medication_schedules(*)")
            .eq("user_id", user_id)
        )
        if active_only:
            query = query.eq("active", True)
        return query.order("name").execute().data or []

    def update_medication(self, medication_id, changes):
        result = self.client.table("medications").update(changes).eq("id", medication_id).execute()
        return self._first(result, "update medication")

    def find_dose_log(self, medication_id, schedule_id, scheduled_time):
        result = (
            self.client.table("dose_logs")
            .select("*")
            .eq("medication_id", medication_id)
            .eq("schedule_id", schedule_id)
            .eq("scheduled_time", scheduled_time)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def insert_dose_log(self, row):
        result = self.client.table("dose_logs").insert(row).execute()
        return self._first(result, "insert dose log")

    def update_dose_log(self, log_id, changes):
        result = self.client.table("dose_logs").update(changes).eq("id", log_id).execute()
        return self._first(result, "update dose log")

    def list_dose_logs(self, medication_ids, start, end):
        if not medication_ids:
            return []
        result = (
            self.client.table("dose_logs")
            .select("*")
            .in_("medication_id", medication_ids)
            .gte("scheduled_time", start)
            .lt("scheduled_time", end)
            .order("scheduled_time")
            .execute()
        )
        return result.data or []

    def get_notification_preferences(self, user_id):
        # Older rows may be duplicated per user; the newest wins
        result = (
            self.client.table("notification_preferences")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def upsert_notification_preferences(self, user_id, changes):
        existing = self.get_notification_preferences(user_id)
        if existing:
            result = self.client.table("notification_preferences").update(changes).eq("id", existing["id"]).execute()
            return self._first(result, "update notification preferences")

        result = (
            self.client.table("notification_preferences")
            .insert({**NOTIFICATION_ROW_DEFAULTS, "user_id": user_id, **changes})
            .execute()
        )
        return self._first(result, "insert notification preferences")

    def list_appointments(self, user_id, status=None, appointment_type=None, date_from=None, date_to=None):
        query = (
            self.client.table("appointments")
            .select("*, medications(name)")
            .eq("user_id", user_id)
        )
        if status:
            query = query.eq("status", status)
        if appointment_type:
            query = query.eq("appointment_type", appointment_type)
        if date_from:
            query = query.gte("appointment_date", date_from)
        if date_to:
            query = query.lte("appointment_date", date_to)
        return query.order("appointment_date").order("appointment_time").execute().data or []

    def get_appointment(self, appointment_id, user_id):
        result = (
            self.client.table("appointments")
            .select("*, medications(name)")
            .eq("id", appointment_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def insert_appointment(self, row):
        result = self.client.table("appointments").insert(row).execute()
        return self._first(result, "insert appointment")

    def update_appointment(self, appointment_id, changes):
        result = self.client.table("appointments").update(changes).eq("id", appointment_id).execute()
        return self._first(result, "update appointment")

    def delete_appointment(self, appointment_id):
        self.client.table("appointments").delete().eq("id", appointment_id).execute()

    def list_practitioners(self, user_id):
        return (
            self.client.table("medical_practitioners")
            .select("*")
            .eq("user_id", user_id)
            .order("name")
            .execute()
            .data or []
        )

    def get_practitioner(self, practitioner_id, user_id):
        result = (
            self.client.table("medical_practitioners")
            .select("*")
            .eq("id", practitioner_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def insert_practitioner(self, row):
        result = self.client.table("medical_practitioners").insert(row).execute()
        return self._first(result, "insert practitioner")

    def update_practitioner(self, practitioner_id, changes):
        result = self.client.table("medical_practitioners").update(changes).eq("id", practitioner_id).execute()
        return self._first(result, "update practitioner")

    def delete_practitioner(self, practitioner_id):
        self.client.table("medical_practitioners").delete().eq("id", practitioner_id).execute()

    def ping(self) -> bool:
        """Lightweight probe against the medications table"""
        try:
            r = retry(lambda: self.client.table("medications").select("id").limit(1).execute())
            return r.data is not None
        except Exception as e:
            logger.error(f"Health probe failed: {e}")
            return False

class SB:
    """Supabase singleton client manager"""
    _client: Optional[Client] = None
    _lock = asyncio.Lock()

    @classmethod
    async def client(cls) -> Client:
        """Get or create singleton Supabase client"""
        if cls._client is None:
            async with cls._lock:
                if cls._client is None:
                    if not config.SUPABASE_URL or not config.SUPABASE_KEY:
                        raise DatabaseError("connect", "SUPABASE_URL and SUPABASE_KEY must be set")
                    cls._client = create_client(config.SUPABASE_URL, config.SUPABASE_KEY)
                    logger.info("Supabase client initialized")
        return cls._client

    @classmethod
    async def repository(cls) -> Repository:
        return SupabaseRepository(await cls.client())

    @classmethod
    async def ping(cls) -> bool:
        try:
            repo = await cls.repository()
        except Exception as e:
            logger.error(f"Health probe failed: {e}")
            return False
        return repo.ping()

    @classmethod
    async def dispose(cls):
        """Clean up client if needed"""
        cls._client = None
        logger.info("Supabase client disposed")

async def get_repository() -> Repository:
    """FastAPI dependency yielding the active repository"""
    try:
        return await SB.repository()
    except DatabaseError as e:
        logger.error(f"Repository unavailable: {e.message}")
        raise HTTPException(status_code=503, detail={"error": e.error_code, "message": "Database unavailable"})
