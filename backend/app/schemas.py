from typing import List, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime, date

DoseAction = Literal["taken", "snoozed", "skipped", "missed"]
DoseStatus = Literal["PENDING", "PENDING_LATE", "ON_TIME", "LATE", "MISSED"]
ThemeMode = Literal["light", "dark", "system"]
NotificationPermission = Literal["default", "granted", "denied"]
NotificationType = Literal["dose_due", "refill_reminder", "streak_milestone", "motivation"]
AppointmentType = Literal["checkup", "follow_up", "lab_test", "imaging", "procedure",
                          "consultation", "vaccination", "therapy", "other"]
AppointmentStatus = Literal["scheduled", "completed", "cancelled", "rescheduled", "no_show"]

class CreateMedicationReq(BaseModel):
    name: str
    dosage: str
    form: Optional[str] = None
    frequency_type: str
    intake_times: List[str]  # "HH:MM", one schedule each
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    with_food: bool = False
    special_instructions: Optional[str] = None
    days_of_week: Optional[List[int]] = None  # 0=Sunday
    pills_remaining: Optional[int] = None
    total_pills: Optional[int] = None
    refill_reminder_threshold: Optional[int] = None

class UpdateMedicationReq(BaseModel):
    name: Optional[str] = None
    dosage: Optional[str] = None
    form: Optional[str] = None
    frequency_type: Optional[str] = None
    end_date: Optional[date] = None
    instructions: Optional[str] = None
    pills_remaining: Optional[int] = None
    total_pills: Optional[int] = None
    refill_reminder_threshold: Optional[int] = None

class RefillReq(BaseModel):
    amount: int

class Schedule(BaseModel):
    id: str
    medication_id: str
    time_of_day: str
    days_of_week: Optional[List[int]] = None
    with_food: Optional[bool] = False
    special_instructions: Optional[str] = None
    active: Optional[bool] = True

class Medication(BaseModel):
    id: str
    user_id: str
    name: str
    dosage: str
    form: Optional[str] = None
    frequency_type: Optional[str] = None
    grace_period_minutes: Optional[int] = None
    reminder_window_minutes: Optional[int] = None
    missed_dose_cutoff_minutes: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    pills_remaining: Optional[int] = None
    total_pills: Optional[int] = None
    refill_reminder_threshold: Optional[int] = None
    instructions: Optional[str] = None
    active: Optional[bool] = True
    needs_refill: bool = False
    schedules: List[Schedule] = []

class GracePeriodInfo(BaseModel):
    grace_period_minutes: int
    reminder_window_minutes: int
    missed_dose_cutoff_minutes: int
    description: str

class CreateMedicationResp(BaseModel):
    success: bool = True
    medication: Medication
    message: str
    grace_period_info: GracePeriodInfo

class MedicationListResp(BaseModel):
    medications: List[Medication]

class UpdateReminderReq(BaseModel):
    medication_id: str = Field(..., min_length=1)
    schedule_id: str = Field(..., min_length=1)
    scheduled_time: datetime
    status: DoseAction
    notes: Optional[str] = None
    snooze_minutes: Optional[int] = None
    action_time: Optional[datetime] = None  # defaults to now

class DoseLog(BaseModel):
    id: str
    medication_id: str
    schedule_id: str
    scheduled_time: str
    status: DoseAction
    dose_status: DoseStatus
    taken_at: Optional[str] = None
    snooze_until: Optional[str] = None
    notes: Optional[str] = None

class UpdateReminderResp(BaseModel):
    success: bool = True
    dose_log: DoseLog
    message: str

class Reminder(BaseModel):
    id: str  # dose log id, or "pending-<key>" before the first action
    medication_id: str
    medication_name: str
    dosage: str
    form: Optional[str] = None
    schedule_id: str
    scheduled_time: str
    time_of_day: str
    with_food: Optional[bool] = False
    special_instructions: Optional[str] = None
    status: str = "pending"
    dose_status: DoseStatus
    taken_at: Optional[str] = None
    snooze_until: Optional[str] = None
    notes: Optional[str] = None
    grace_period_minutes: int
    reminder_window_minutes: int
    missed_dose_cutoff_minutes: int
    should_send_reminder: bool
    frequency_type: Optional[str] = None

class RemindersResp(BaseModel):
    date: date
    reminders: List[Reminder]

class DaySummaryResp(BaseModel):
    date: date
    total_doses: int
    taken_doses: int
    skipped_doses: int = 0
    snoozed_doses: int = 0
    complete: bool

class AdherenceResp(BaseModel):
    streak_days: int
    longest_streak: int
    today_progress: int = Field(..., ge=0, le=100)
    window_days: int
    window_adherence: int = Field(..., ge=0, le=100)
    total_taken: int
    message: str

class CalendarResp(BaseModel):
    year: int
    month: int
    medication_id: Optional[str] = None
    days: List[DaySummaryResp]
    streak_days: int

class PreferencesReq(BaseModel):
    theme: Optional[ThemeMode] = None
    notifications_enabled: Optional[bool] = None
    notification_permission: Optional[NotificationPermission] = None
    enabled_notification_types: Optional[List[NotificationType]] = None

class PreferencesResp(BaseModel):
    theme: ThemeMode
    notifications_enabled: bool
    notification_permission: NotificationPermission
    enabled_notification_types: List[NotificationType]

class IdResp(BaseModel):
    ok: bool = True
    id: str

class CreateAppointmentReq(BaseModel):
    title: str
    appointment_date: date
    appointment_time: str  # "HH:MM", local
    duration_minutes: int = 30
    appointment_type: AppointmentType = "checkup"
    status: AppointmentStatus = "scheduled"
    description: Optional[str] = None
    location: Optional[str] = None
    doctor_name: Optional[str] = None
    doctor_specialty: Optional[str] = None
    notes: Optional[str] = None
    reminder_minutes_before: int = 60
    medication_id: Optional[str] = None

class UpdateAppointmentReq(BaseModel):
    title: Optional[str] = None
    appointment_date: Optional[date] = None
    appointment_time: Optional[str] = None
    duration_minutes: Optional[int] = None
    appointment_type: Optional[AppointmentType] = None
    status: Optional[AppointmentStatus] = None
    description: Optional[str] = None
    location: Optional[str] = None
    doctor_name: Optional[str] = None
    doctor_specialty: Optional[str] = None
    notes: Optional[str] = None
    reminder_minutes_before: Optional[int] = None
    medication_id: Optional[str] = None  # "" unlinks the medication

class Appointment(BaseModel):
    id: str
    user_id: str
    title: str
    appointment_date: str
    appointment_time: str
    duration_minutes: int = 30
    appointment_type: AppointmentType
    status: AppointmentStatus
    description: Optional[str] = None
    location: Optional[str] = None
    doctor_name: Optional[str] = None
    doctor_specialty: Optional[str] = None
    notes: Optional[str] = None
    reminder_minutes_before: int = 60
    medication_id: Optional[str] = None
    medication_name: Optional[str] = None

class AppointmentListResp(BaseModel):
    appointments: List[Appointment]

class PractitionerReq(BaseModel):
    name: Optional[str] = None  # required on create
    specialty: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    clinic_name: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None

class Practitioner(BaseModel):
    id: str
    user_id: str
    name: str
    specialty: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    clinic_name: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None

class PractitionerListResp(BaseModel):
    practitioners: List[Practitioner]
