from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Optional, List, Dict, Any
import sentry_sdk
from datetime import datetime, timedelta, timezone, date
import calendar
import uuid
import time
from contextlib import asynccontextmanager

from . import config

# Import our logging configuration
from .logging_config import (
    setup_logging, log_error, log_api_call,
    AppError, ValidationError, AuthenticationError, AuthorizationError, NotFoundError, DatabaseError
)

# Import validation utilities
from .validation import (
    require_text, sanitize_text, sanitize_notes, validate_frequency_type,
    validate_intake_times, validate_days_of_week, validate_pill_count,
    validate_refill_amount, validate_snooze_minutes, validate_date_range,
    validate_time_of_day, validate_duration_minutes, validate_reminder_lead,
    validate_email, optional_text, MAX_NOTES_LENGTH,
    MAX_NAME_LENGTH
)

from .health import health_checker, metrics_collector
from .rate_limiter import check_rate_limit
from .database import SB, AuthUser, Repository, get_repository
from .preferences import preference_store

from .schemas import (
    CreateMedicationReq, CreateMedicationResp, UpdateMedicationReq, RefillReq,
    Medication, Schedule, MedicationListResp, GracePeriodInfo,
    UpdateReminderReq, UpdateReminderResp, DoseLog,
    Reminder, RemindersResp, AdherenceResp, CalendarResp, DaySummaryResp,
    PreferencesReq, PreferencesResp, IdResp,
    AppointmentType, AppointmentStatus, CreateAppointmentReq, UpdateAppointmentReq,
    Appointment, AppointmentListResp, PractitionerReq, Practitioner, PractitionerListResp
)
from ..tools import dosing, adherence

# Initialize logging
logger = setup_logging(config.LOG_LEVEL)

sentry_sdk.init(dsn=config.SENTRY_DSN, traces_sample_rate=0.2)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    preference_store.load()
    try:
        # Warm Supabase connection on startup
        if await SB.ping():
            logger.info("[lifespan] Supabase connection warm OK")
        else:
            logger.warning("[lifespan] Supabase not reachable at startup")
    except Exception as e:
        logger.error(f"[lifespan] Warmup failed: {e}")
    yield
    preference_store.dispose()
    await SB.dispose()

app = FastAPI(title="MedMinder API", version="1.0.0", lifespan=lifespan)

# Add request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    # Generate request ID for tracing
    request_id = str(uuid.uuid4())

    logger.info(
        f"Request started: {request.method} {request.url.path}",
        extra={
            "request_id": request_id,
            "endpoint": f"{request.method} {request.url.path}"
        }
    )

    try:
        response = await call_next(request)

        execution_time = (time.time() - start_time) * 1000

        metrics_collector.increment_requests()
        if response.status_code >= 400:
            metrics_collector.increment_errors()

        log_api_call(
            logger=logger,
            endpoint=f"{request.method} {request.url.path}",
            execution_time=execution_time,
            status_code=response.status_code,
            request_id=request_id
        )

        response.headers["X-Request-ID"] = request_id
        return response

    except Exception as e:
        execution_time = (time.time() - start_time) * 1000

        log_error(logger, e, {
            "request_id": request_id,
            "endpoint": f"{request.method} {request.url.path}",
            "execution_time": execution_time
        })

        raise

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept"],
)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Reshape pydantic errors into the VALIDATION_ERROR payload used everywhere else"""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "header")]
    field = ".".join(location) or None

    # An empty string counts as a missing required field
    if first.get("type") == "missing" or (first.get("type") == "string_too_short" and first.get("input") == ""):
        message = f"Missing required field: {field}" if field else "Missing request body"
    else:
        message = f"Invalid value for {field or 'request'}: {first.get('msg', 'invalid')}"

    return JSONResponse(
        status_code=422,
        content={"detail": {"error": "VALIDATION_ERROR", "message": message, "field": field}}
    )

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _local_today(now: datetime, tz) -> date:
    return now.astimezone(tz).date()

def _day_bounds(start: date, end: date, tz) -> tuple:
    """UTC ISO bounds covering local days start..end inclusive"""
    lower = datetime(start.year, start.month, start.day, tzinfo=tz)
    upper = datetime(end.year, end.month, end.day, tzinfo=tz) + timedelta(days=1)
    return dosing.normalize_timestamp(lower), dosing.normalize_timestamp(upper)

def _validation_exception(e: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail={"error": e.error_code, "message": e.message, "field": e.field})

def _app_exception(e: AppError) -> HTTPException:
    """Map application errors onto HTTP responses"""
    if isinstance(e, ValidationError):
        return _validation_exception(e)
    if isinstance(e, AuthenticationError):
        return HTTPException(status_code=401, detail=e.message, headers={"WWW-Authenticate": "Bearer"})
    if isinstance(e, AuthorizationError):
        return HTTPException(status_code=403, detail={"error": e.error_code, "message": e.message})
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail={"error": e.error_code, "message": e.message})
    return HTTPException(status_code=500, detail={"error": e.error_code, "message": "A database error occurred. Please try again."})

def _medication_out(row: Dict[str, Any]) -> Medication:
    schedules = [Schedule(**s) for s in row.get("medication_schedules") or row.get("schedules") or []]
    pills = row.get("pills_remaining")
    threshold = row.get("refill_reminder_threshold")
    fields = {k: v for k, v in row.items() if k not in ("medication_schedules", "schedules")}
    return Medication(
        **fields,
        needs_refill=pills is not None and threshold is not None and pills <= threshold,
        schedules=schedules
    )

def _owned_medication(repo: Repository, medication_id: str, user_id: str) -> Dict[str, Any]:
    medication = repo.get_medication(medication_id, user_id)
    if not medication:
        raise NotFoundError("Medication", medication_id)
    return medication

def _authenticate(authorization: Optional[str], repo: Repository) -> AuthUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Invalid authorization header")

    token = authorization.split(" ", 1)[1].strip()

    # Allow test tokens ONLY in development environment
    if config.is_development() and token in config.DEV_TOKENS:
        return AuthUser(id=config.DEV_USER_ID, email="test@example.com")

    try:
        user = repo.get_user(token)
    except Exception as e:
        logger.warning(f"Token validation failed: {e}")
        raise AuthenticationError("Invalid token")

    if user is None:
        raise AuthenticationError("Invalid token")

    return user

async def get_current_user(authorization: str = Header(None), repo: Repository = Depends(get_repository)) -> AuthUser:
    try:
        return _authenticate(authorization, repo)
    except AuthenticationError as e:
        raise _app_exception(e)

@app.post("/medications", response_model=CreateMedicationResp)
async def create_medication(req: CreateMedicationReq, request: Request,
                            user: AuthUser = Depends(get_current_user),
                            repo: Repository = Depends(get_repository)):
    """Create a medication and one schedule per intake time"""
    check_rate_limit(request, user.id, 'write')

    try:
        name = require_text(req.name, "name", MAX_NAME_LENGTH)
        dosage = require_text(req.dosage, "dosage", 100)
        frequency_type = validate_frequency_type(req.frequency_type)
        intake_times = validate_intake_times(req.intake_times)
        days_of_week = validate_days_of_week(req.days_of_week)
        validate_date_range(req.start_date, req.end_date)
        pills_remaining = validate_pill_count(req.pills_remaining, "pills_remaining")
        total_pills = validate_pill_count(req.total_pills, "total_pills")
        refill_threshold = validate_pill_count(req.refill_reminder_threshold, "refill_reminder_threshold")
        instructions = sanitize_notes(req.special_instructions)
        form = sanitize_text(req.form, 50, "form") if req.form else "pill"

        policy = dosing.policy_for_frequency(frequency_type)
        start_date = req.start_date or _local_today(_utcnow(), config.app_timezone())

        logger.info(
            f"Creating medication for user {user.id}",
            extra={
                "user_id": user.id,
                "frequency_type": frequency_type,
                "intake_times": intake_times
            }
        )

        medication = repo.insert_medication({
            "user_id": user.id,
            "name": name,
            "dosage": dosage,
            "form": form,
            "frequency_type": frequency_type,
            **policy.as_columns(),
            "start_date": start_date.isoformat(),
            "end_date": req.end_date.isoformat() if req.end_date else None,
            "pills_remaining": pills_remaining,
            "total_pills": total_pills,
            "refill_reminder_threshold": refill_threshold,
            "instructions": instructions,
            "active": True
        })

        schedules = repo.insert_schedules([
            {
                "medication_id": medication["id"],
                "time_of_day": time_of_day,
                "days_of_week": days_of_week,
                "with_food": req.with_food,
                "special_instructions": instructions,
                "active": True
            }
            for time_of_day in intake_times
        ])

        logger.info(
            f"Medication created with {len(schedules)} schedules",
            extra={"user_id": user.id, "medication_id": medication["id"]}
        )

        return CreateMedicationResp(
            medication=_medication_out({**medication, "medication_schedules": schedules}),
            message=f'Medication "{name}" created with {len(schedules)} scheduled times',
            grace_period_info=GracePeriodInfo(
                **policy.as_columns(),
                description=(
                    f"Doses taken within {policy.grace_period_minutes} minutes are ON_TIME. "
                    f"After {policy.missed_dose_cutoff_minutes} minutes, doses are MISSED."
                )
            )
        )

    except ValidationError as e:
        logger.warning(f"Medication validation failed: {e.message}", extra={"user_id": user.id})
        raise _validation_exception(e)
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail={"error": e.error_code, "message": "Failed to create medication. Please try again."})
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail={"error": "GENERAL_ERROR", "message": "Failed to create medication. Please try again."})

@app.get("/medications", response_model=MedicationListResp)
async def list_medications(include_inactive: bool = False,
                           user: AuthUser = Depends(get_current_user),
                           repo: Repository = Depends(get_repository)):
    try:
        rows = repo.list_medications(user.id, active_only=not include_inactive)
        return MedicationListResp(medications=[_medication_out(r) for r in rows])
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to load medications")

@app.patch("/medications/{medication_id}", response_model=Medication)
async def update_medication(medication_id: str, req: UpdateMedicationReq, request: Request,
                            user: AuthUser = Depends(get_current_user),
                            repo: Repository = Depends(get_repository)):
    """Edit a medication; a new frequency re-derives its grace settings"""
    check_rate_limit(request, user.id, 'write')

    try:
        medication = _owned_medication(repo, medication_id, user.id)
        changes: Dict[str, Any] = {}

        if req.name is not None:
            changes["name"] = require_text(req.name, "name", MAX_NAME_LENGTH)
        if req.dosage is not None:
            changes["dosage"] = require_text(req.dosage, "dosage", 100)
        if req.form is not None:
            changes["form"] = sanitize_text(req.form, 50, "form")
        if req.instructions is not None:
            changes["instructions"] = sanitize_notes(req.instructions)
        if req.frequency_type is not None:
            frequency_type = validate_frequency_type(req.frequency_type)
            changes["frequency_type"] = frequency_type
            changes.update(dosing.policy_for_frequency(frequency_type).as_columns())
        if req.end_date is not None:
            start = medication.get("start_date")
            validate_date_range(date.fromisoformat(start[:10]) if start else None, req.end_date)
            changes["end_date"] = req.end_date.isoformat()
        for field in ("pills_remaining", "total_pills", "refill_reminder_threshold"):
            value = getattr(req, field)
            if value is not None:
                changes[field] = validate_pill_count(value, field)

        if not changes:
            raise ValidationError("No changes supplied")

        updated = repo.update_medication(medication_id, changes)
        logger.info("Medication updated", extra={"user_id": user.id, "medication_id": medication_id})
        return _medication_out({**updated, "medication_schedules": medication.get("medication_schedules") or []})

    except AppError as e:
        if not isinstance(e, ValidationError):
            log_error(logger, e, {"user_id": user.id, "medication_id": medication_id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id, "medication_id": medication_id})
        raise HTTPException(status_code=500, detail="An unexpected error occurred")

@app.post("/medications/{medication_id}/refill", response_model=Medication)
async def refill_medication(medication_id: str, req: RefillReq, request: Request,
                            user: AuthUser = Depends(get_current_user),
                            repo: Repository = Depends(get_repository)):
    check_rate_limit(request, user.id, 'write')

    try:
        amount = validate_refill_amount(req.amount)
        medication = _owned_medication(repo, medication_id, user.id)
        pills_remaining = (medication.get("pills_remaining") or 0) + amount

        updated = repo.update_medication(medication_id, {"pills_remaining": pills_remaining})
        logger.info(
            f"Medication refilled with {amount} pills",
            extra={"user_id": user.id, "medication_id": medication_id}
        )
        return _medication_out({**updated, "medication_schedules": medication.get("medication_schedules") or []})

    except AppError as e:
        if not isinstance(e, ValidationError):
            log_error(logger, e, {"user_id": user.id, "medication_id": medication_id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id, "medication_id": medication_id})
        raise HTTPException(status_code=500, detail="An unexpected error occurred")

@app.delete("/medications/{medication_id}", response_model=IdResp)
async def deactivate_medication(medication_id: str, request: Request,
                                user: AuthUser = Depends(get_current_user),
                                repo: Repository = Depends(get_repository)):
    """Soft-deactivate; medications and their dose history are never deleted"""
    check_rate_limit(request, user.id, 'write')

    try:
        _owned_medication(repo, medication_id, user.id)
        repo.update_medication(medication_id, {"active": False})
        logger.info("Medication deactivated", extra={"user_id": user.id, "medication_id": medication_id})
        return IdResp(id=medication_id)

    except AppError as e:
        log_error(logger, e, {"user_id": user.id, "medication_id": medication_id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id, "medication_id": medication_id})
        raise HTTPException(status_code=500, detail="An unexpected error occurred")

def _decrement_pills(repo: Repository, medication: Dict[str, Any]):
    pills = medication.get("pills_remaining")
    if pills is None or pills <= 0:
        return
    try:
        repo.update_medication(medication["id"], {"pills_remaining": pills - 1})
    except Exception as e:
        # The dose log is already saved; a stale pill count is not worth failing the request
        logger.error(f"Error updating pills_remaining: {e}", extra={"medication_id": medication["id"]})

@app.post("/reminders/status", response_model=UpdateReminderResp)
async def update_reminder_status(req: UpdateReminderReq, request: Request,
                                 user: AuthUser = Depends(get_current_user),
                                 repo: Repository = Depends(get_repository)):
    """Record taken/snoozed/skipped/missed for one scheduled dose"""
    check_rate_limit(request, user.id, 'write')

    try:
        medication = repo.get_medication(req.medication_id, user.id)
        if not medication:
            raise AuthorizationError("Medication not found or unauthorized")

        schedule_ids = {s["id"] for s in medication.get("medication_schedules") or []}
        if req.schedule_id not in schedule_ids:
            raise AuthorizationError("Schedule not found for this medication")

        snooze_minutes = None
        if req.status == "snoozed":
            snooze_minutes = validate_snooze_minutes(req.snooze_minutes, config.DEFAULT_SNOOZE_MINUTES)
        notes = sanitize_notes(req.notes)

        logger.info(
            f"Updating reminder status to {req.status}",
            extra={
                "user_id": user.id,
                "medication_id": req.medication_id,
                "schedule_id": req.schedule_id
            }
        )

        policy = dosing.policy_for_medication(medication)
        scheduled_time = dosing.normalize_timestamp(req.scheduled_time)
        result = dosing.classify_dose(
            scheduled_time,
            req.status,
            action_time=req.action_time or _utcnow(),
            grace_period_minutes=policy.grace_period_minutes,
            missed_dose_cutoff_minutes=policy.missed_dose_cutoff_minutes,
            snooze_minutes=snooze_minutes
        )

        changes = {
            "status": req.status,
            "dose_status": result.dose_status,
            "taken_at": result.taken_at.isoformat() if result.taken_at else None,
            "snooze_until": result.snooze_until.isoformat() if result.snooze_until else None,
        }
        if notes is not None:
            changes["notes"] = notes

        # At most one log per scheduled occurrence
        existing = repo.find_dose_log(req.medication_id, req.schedule_id, scheduled_time)
        if existing:
            dose_log = repo.update_dose_log(existing["id"], changes)
        else:
            dose_log = repo.insert_dose_log({
                "medication_id": req.medication_id,
                "schedule_id": req.schedule_id,
                "scheduled_time": scheduled_time,
                **changes
            })

        if req.status == "taken" and (not existing or existing.get("status") != "taken"):
            _decrement_pills(repo, medication)

        metrics_collector.record_dose_action(req.status)

        logger.info(
            f"Reminder updated: {result.dose_status}",
            extra={"user_id": user.id, "medication_id": req.medication_id}
        )

        return UpdateReminderResp(
            dose_log=DoseLog(**dose_log),
            message=f"Dose marked as {req.status}"
        )

    except ValidationError as e:
        logger.warning(f"Reminder validation failed: {e.message}", extra={"user_id": user.id})
        raise _validation_exception(e)
    except AuthorizationError as e:
        logger.warning(e.message, extra={"user_id": user.id, "medication_id": req.medication_id})
        raise _app_exception(e)
    except DatabaseError as e:
        log_error(logger, e, {"user_id": user.id, "medication_id": req.medication_id})
        raise HTTPException(status_code=500, detail="Failed to save dose. Please try again.")
    except Exception as e:
        log_error(logger, e, {"user_id": user.id, "medication_id": req.medication_id})
        raise HTTPException(status_code=500, detail="An unexpected error occurred")

@app.get("/reminders", response_model=RemindersResp)
async def get_reminders(user: AuthUser = Depends(get_current_user),
                        repo: Repository = Depends(get_repository)):
    """Today's doses for every active medication, in time order"""
    tz = config.app_timezone()
    now = _utcnow()
    today = _local_today(now, tz)

    try:
        notify = preference_store.get(user.id, repo).wants("dose_due")
        medications = repo.list_medications(user.id)
        start, end = _day_bounds(today, today, tz)
        logs = repo.list_dose_logs([m["id"] for m in medications], start, end)
        logs_by_key = {
            dosing.log_key(l["medication_id"], l["schedule_id"], l["scheduled_time"]): l
            for l in logs
        }

        reminders: List[Reminder] = []
        for medication in medications:
            policy = dosing.policy_for_medication(medication)
            for occurrence in dosing.occurrences_for_day(medication, today, tz):
                schedule = occurrence["schedule"]
                key = dosing.log_key(medication["id"], schedule["id"], occurrence["scheduled_time"])
                log = logs_by_key.get(key)
                snoozed = log is not None and log.get("status") == "snoozed"

                reminders.append(Reminder(
                    id=log["id"] if log else f"pending-{key}",
                    medication_id=medication["id"],
                    medication_name=medication["name"],
                    dosage=medication["dosage"],
                    form=medication.get("form"),
                    schedule_id=schedule["id"],
                    scheduled_time=occurrence["scheduled_time"],
                    time_of_day=schedule["time_of_day"],
                    with_food=schedule.get("with_food"),
                    special_instructions=schedule.get("special_instructions"),
                    status=log["status"] if log else "pending",
                    dose_status=dosing.current_dose_status(occurrence["scheduled_time"], log, policy, now),
                    taken_at=log.get("taken_at") if log else None,
                    snooze_until=log.get("snooze_until") if log else None,
                    notes=log.get("notes") if log else None,
                    **policy.as_columns(),
                    should_send_reminder=(
                        notify and (log is None or snoozed) and dosing.should_send_reminder(
                            occurrence["scheduled_time"], now, policy.reminder_window_minutes,
                            snooze_until=log.get("snooze_until") if snoozed else None
                        )
                    ),
                    frequency_type=medication.get("frequency_type")
                ))

        reminders.sort(key=lambda r: r.scheduled_time)
        logger.info(f"Generated {len(reminders)} reminders", extra={"user_id": user.id})
        return RemindersResp(date=today, reminders=reminders)

    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to load reminders")

def _day_summaries(repo: Repository, user_id: str, start: date, end: date,
                   medication_id: Optional[str], tz) -> tuple:
    medications = repo.list_medications(user_id)
    if medication_id:
        medications = [m for m in medications if m["id"] == medication_id]
        if not medications:
            raise NotFoundError("Medication", medication_id)

    lower, upper = _day_bounds(start, end, tz)
    logs = repo.list_dose_logs([m["id"] for m in medications], lower, upper)
    return adherence.build_day_summaries(medications, logs, start, end, tz), logs

@app.get("/adherence", response_model=AdherenceResp)
async def get_adherence(days: int = config.ADHERENCE_WINDOW_DAYS,
                        medication_id: Optional[str] = None,
                        user: AuthUser = Depends(get_current_user),
                        repo: Repository = Depends(get_repository)):
    """Streak, today's progress and adherence over the last `days` days"""
    if days < 1 or days > config.STREAK_LOOKBACK_DAYS:
        raise HTTPException(status_code=422, detail={
            "error": "VALIDATION_ERROR",
            "message": f"days must be between 1 and {config.STREAK_LOOKBACK_DAYS}",
            "field": "days"
        })

    tz = config.app_timezone()
    today = _local_today(_utcnow(), tz)
    start = today - timedelta(days=config.STREAK_LOOKBACK_DAYS - 1)

    try:
        summaries, logs = _day_summaries(repo, user.id, start, today, medication_id, tz)
        streak = adherence.current_streak(summaries, today)

        return AdherenceResp(
            streak_days=streak,
            longest_streak=adherence.longest_streak(summaries),
            today_progress=adherence.adherence_percentage(summaries, today, today),
            window_days=days,
            window_adherence=adherence.adherence_percentage(summaries, today - timedelta(days=days - 1), today),
            total_taken=adherence.total_taken(logs),
            message=adherence.streak_message(streak)
        )

    except AppError as e:
        log_error(logger, e, {"user_id": user.id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to compute adherence")

@app.get("/calendar", response_model=CalendarResp)
async def get_calendar(year: int, month: int,
                       medication_id: Optional[str] = None,
                       user: AuthUser = Depends(get_current_user),
                       repo: Repository = Depends(get_repository)):
    """Per-day dose summaries for one month"""
    if month < 1 or month > 12:
        raise HTTPException(status_code=422, detail={
            "error": "VALIDATION_ERROR", "message": "month must be between 1 and 12", "field": "month"
        })
    if year < 1900 or year > 9998:
        raise HTTPException(status_code=422, detail={
            "error": "VALIDATION_ERROR", "message": "year must be between 1900 and 9998", "field": "year"
        })

    tz = config.app_timezone()
    today = _local_today(_utcnow(), tz)
    first = date(year, month, 1)
    last = date(year, month, calendar.monthrange(year, month)[1])

    try:
        month_days, _ = _day_summaries(repo, user.id, first, last, medication_id, tz)
        history, _ = _day_summaries(
            repo, user.id, today - timedelta(days=config.STREAK_LOOKBACK_DAYS - 1), today, medication_id, tz
        )

        return CalendarResp(
            year=year,
            month=month,
            medication_id=medication_id,
            days=[
                DaySummaryResp(
                    date=s.day,
                    total_doses=s.total_doses,
                    taken_doses=s.taken_doses,
                    skipped_doses=s.skipped_doses,
                    snoozed_doses=s.snoozed_doses,
                    complete=s.qualifies
                )
                for s in month_days
            ],
            streak_days=adherence.current_streak(history, today)
        )

    except AppError as e:
        log_error(logger, e, {"user_id": user.id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to load calendar data")

def _appointment_out(row: Dict[str, Any]) -> Appointment:
    medication = row.get("medications") or {}
    fields = {k: v for k, v in row.items() if k != "medications"}
    return Appointment(**fields, medication_name=medication.get("name"))

def _owned_appointment(repo: Repository, appointment_id: str, user_id: str) -> Dict[str, Any]:
    appointment = repo.get_appointment(appointment_id, user_id)
    if not appointment:
        raise NotFoundError("Appointment", appointment_id)
    return appointment

def _owned_practitioner(repo: Repository, practitioner_id: str, user_id: str) -> Dict[str, Any]:
    practitioner = repo.get_practitioner(practitioner_id, user_id)
    if not practitioner:
        raise NotFoundError("Practitioner", practitioner_id)
    return practitioner

def _appointment_changes(req, repo: Repository, user_id: str) -> Dict[str, Any]:
    """Validated columns for the fields present on a create or update request"""
    changes: Dict[str, Any] = {}
    if req.title is not None:
        changes["title"] = require_text(req.title, "title", MAX_NAME_LENGTH)
    if req.appointment_date is not None:
        changes["appointment_date"] = req.appointment_date.isoformat()
    if req.appointment_time is not None:
        changes["appointment_time"] = validate_time_of_day(req.appointment_time, "appointment_time")
    if req.duration_minutes is not None:
        changes["duration_minutes"] = validate_duration_minutes(req.duration_minutes)
    if req.reminder_minutes_before is not None:
        changes["reminder_minutes_before"] = validate_reminder_lead(req.reminder_minutes_before)
    if req.appointment_type is not None:
        changes["appointment_type"] = req.appointment_type
    if req.status is not None:
        changes["status"] = req.status
    for field in ("location", "doctor_name", "doctor_specialty"):
        value = getattr(req, field)
        if value is not None:
            changes[field] = optional_text(value, field)
    if req.description is not None:
        changes["description"] = optional_text(req.description, "description", MAX_NOTES_LENGTH)
    if req.notes is not None:
        changes["notes"] = sanitize_notes(req.notes)
    if req.medication_id is not None:
        # Only the caller's own medications can be linked
        changes["medication_id"] = (
            _owned_medication(repo, req.medication_id, user_id)["id"] if req.medication_id else None
        )
    return changes

@app.get("/appointments", response_model=AppointmentListResp)
async def list_appointments(status: Optional[AppointmentStatus] = None,
                            appointment_type: Optional[AppointmentType] = None,
                            date_from: Optional[date] = None,
                            date_to: Optional[date] = None,
                            user: AuthUser = Depends(get_current_user),
                            repo: Repository = Depends(get_repository)):
    """Appointments in date order, optionally filtered by status, type and date range"""
    try:
        if date_from and date_to and date_to < date_from:
            raise ValidationError("date_to cannot be before date_from", "date_to")
        rows = repo.list_appointments(
            user.id,
            status=status,
            appointment_type=appointment_type,
            date_from=date_from.isoformat() if date_from else None,
            date_to=date_to.isoformat() if date_to else None
        )
        return AppointmentListResp(appointments=[_appointment_out(r) for r in rows])

    except ValidationError as e:
        raise _validation_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to load appointments")

@app.get("/appointments/{appointment_id}", response_model=Appointment)
async def get_appointment(appointment_id: str,
                          user: AuthUser = Depends(get_current_user),
                          repo: Repository = Depends(get_repository)):
    try:
        return _appointment_out(_owned_appointment(repo, appointment_id, user.id))
    except AppError as e:
        raise _app_exception(e)

@app.post("/appointments", response_model=Appointment)
async def create_appointment(req: CreateAppointmentReq, request: Request,
                             user: AuthUser = Depends(get_current_user),
                             repo: Repository = Depends(get_repository)):
    check_rate_limit(request, user.id, 'write')

    try:
        changes = _appointment_changes(req, repo, user.id)
        appointment = repo.insert_appointment({
            "user_id": user.id,
            "description": None,
            "location": None,
            "doctor_name": None,
            "doctor_specialty": None,
            "notes": None,
            "medication_id": None,
            **changes
        })
        logger.info("Appointment created", extra={"user_id": user.id, "medication_id": appointment.get("medication_id")})
        return _appointment_out(_owned_appointment(repo, appointment["id"], user.id))

    except AppError as e:
        if not isinstance(e, ValidationError):
            log_error(logger, e, {"user_id": user.id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail={"error": "GENERAL_ERROR", "message": "Failed to create appointment. Please try again."})

@app.patch("/appointments/{appointment_id}", response_model=Appointment)
async def update_appointment(appointment_id: str, req: UpdateAppointmentReq, request: Request,
                             user: AuthUser = Depends(get_current_user),
                             repo: Repository = Depends(get_repository)):
    check_rate_limit(request, user.id, 'write')

    try:
        _owned_appointment(repo, appointment_id, user.id)
        changes = _appointment_changes(req, repo, user.id)
        if not changes:
            raise ValidationError("No changes supplied")

        repo.update_appointment(appointment_id, changes)
        logger.info("Appointment updated", extra={"user_id": user.id})
        return _appointment_out(_owned_appointment(repo, appointment_id, user.id))

    except AppError as e:
        if not isinstance(e, ValidationError):
            log_error(logger, e, {"user_id": user.id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="An unexpected error occurred")

@app.delete("/appointments/{appointment_id}", response_model=IdResp)
async def delete_appointment(appointment_id: str, request: Request,
                             user: AuthUser = Depends(get_current_user),
                             repo: Repository = Depends(get_repository)):
    check_rate_limit(request, user.id, 'write')

    try:
        _owned_appointment(repo, appointment_id, user.id)
        repo.delete_appointment(appointment_id)
        logger.info("Appointment deleted", extra={"user_id": user.id})
        return IdResp(id=appointment_id)

    except AppError as e:
        log_error(logger, e, {"user_id": user.id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="An unexpected error occurred")

def _practitioner_changes(req: PractitionerReq) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if req.name is not None:
        changes["name"] = require_text(req.name, "name", 100)
    if req.specialty is not None:
        changes["specialty"] = optional_text(req.specialty, "specialty", 100)
    if req.phone_number is not None:
        changes["phone_number"] = optional_text(req.phone_number, "phone_number", 20)
    if req.email is not None:
        changes["email"] = validate_email(req.email)
    if req.clinic_name is not None:
        changes["clinic_name"] = optional_text(req.clinic_name, "clinic_name", 100)
    if req.address is not None:
        changes["address"] = optional_text(req.address, "address", 255)
    if req.notes is not None:
        changes["notes"] = sanitize_notes(req.notes)
    return changes

@app.get("/practitioners", response_model=PractitionerListResp)
async def list_practitioners(q: Optional[str] = None,
                             user: AuthUser = Depends(get_current_user),
                             repo: Repository = Depends(get_repository)):
    """Practitioners by name; `q` matches name or specialty, case-insensitively"""
    try:
        rows = repo.list_practitioners(user.id)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to load practitioners")

    if q:
        needle = q.strip().lower()
        rows = [r for r in rows if needle in r["name"].lower() or needle in (r.get("specialty") or "").lower()]
    return PractitionerListResp(practitioners=[Practitioner(**r) for r in rows])

@app.get("/practitioners/{practitioner_id}", response_model=Practitioner)
async def get_practitioner(practitioner_id: str,
                           user: AuthUser = Depends(get_current_user),
                           repo: Repository = Depends(get_repository)):
    try:
        return Practitioner(**_owned_practitioner(repo, practitioner_id, user.id))
    except AppError as e:
        raise _app_exception(e)

@app.post("/practitioners", response_model=Practitioner)
async def create_practitioner(req: PractitionerReq, request: Request,
                              user: AuthUser = Depends(get_current_user),
                              repo: Repository = Depends(get_repository)):
    check_rate_limit(request, user.id, 'write')

    try:
        if req.name is None:
            raise ValidationError("Missing required field: name", "name")
        changes = _practitioner_changes(req)
        practitioner = repo.insert_practitioner({
            "user_id": user.id,
            **{field: None for field in ("specialty", "phone_number", "email", "clinic_name", "address", "notes")},
            **changes
        })
        logger.info("Practitioner added", extra={"user_id": user.id})
        return Practitioner(**practitioner)

    except AppError as e:
        if not isinstance(e, ValidationError):
            log_error(logger, e, {"user_id": user.id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail={"error": "GENERAL_ERROR", "message": "Failed to add practitioner. Please try again."})

@app.patch("/practitioners/{practitioner_id}", response_model=Practitioner)
async def update_practitioner(practitioner_id: str, req: PractitionerReq, request: Request,
                              user: AuthUser = Depends(get_current_user),
                              repo: Repository = Depends(get_repository)):
    check_rate_limit(request, user.id, 'write')

    try:
        _owned_practitioner(repo, practitioner_id, user.id)
        changes = _practitioner_changes(req)
        if not changes:
            raise ValidationError("No changes supplied")

        updated = repo.update_practitioner(practitioner_id, changes)
        logger.info("Practitioner updated", extra={"user_id": user.id})
        return Practitioner(**updated)

    except AppError as e:
        if not isinstance(e, ValidationError):
            log_error(logger, e, {"user_id": user.id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="An unexpected error occurred")

@app.delete("/practitioners/{practitioner_id}", response_model=IdResp)
async def delete_practitioner(practitioner_id: str, request: Request,
                              user: AuthUser = Depends(get_current_user),
                              repo: Repository = Depends(get_repository)):
    check_rate_limit(request, user.id, 'write')

    try:
        _owned_practitioner(repo, practitioner_id, user.id)
        repo.delete_practitioner(practitioner_id)
        logger.info("Practitioner deleted", extra={"user_id": user.id})
        return IdResp(id=practitioner_id)

    except AppError as e:
        log_error(logger, e, {"user_id": user.id})
        raise _app_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="An unexpected error occurred")

@app.get("/preferences", response_model=PreferencesResp)
async def get_preferences(user: AuthUser = Depends(get_current_user),
                          repo: Repository = Depends(get_repository)):
    try:
        return PreferencesResp(**preference_store.get(user.id, repo).model_dump())
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to load preferences")

@app.put("/preferences", response_model=PreferencesResp)
async def update_preferences(req: PreferencesReq, request: Request,
                             user: AuthUser = Depends(get_current_user),
                             repo: Repository = Depends(get_repository)):
    check_rate_limit(request, user.id, 'write')

    try:
        return PreferencesResp(**preference_store.set(user.id, req, repo).model_dump())
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to save preferences")

@app.post("/auth/sign-out")
async def sign_out(request: Request, user: AuthUser = Depends(get_current_user)):
    """Drop per-user state held by this process; token revocation stays with the auth provider"""
    check_rate_limit(request, user.id, 'auth')
    preference_store.teardown(user.id)
    return {"ok": True}

@app.get("/health")
async def health():
    """Lightweight health check with database ping"""
    ok = await SB.ping()
    body = {
        "status": "healthy" if ok else "unhealthy",
        "database": "connected" if ok else "disconnected",
        "timestamp": _utcnow().isoformat()
    }
    return JSONResponse(status_code=200 if ok else 503, content=body)

@app.get("/health/full")
async def health_full():
    return await health_checker.run_all_checks()

@app.get("/health/quick")
async def health_quick():
    """Quick health check for load balancer"""
    return {
        "status": "healthy",
        "timestamp": _utcnow().isoformat(),
        "uptime": metrics_collector.get_metrics()["uptime_human"]
    }

@app.get("/metrics")
async def metrics():
    """Application metrics endpoint"""
    return metrics_collector.get_metrics()

if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
