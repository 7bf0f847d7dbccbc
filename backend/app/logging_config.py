import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Dict, Any, Optional

# Attributes passed through `extra=` that end up as top-level JSON keys
CONTEXT_FIELDS = (
    "user_id", "request_id", "endpoint", "status_code",
    "medication_id", "schedule_id", "error_code", "error_details",
)

NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "hpack")

class StructuredFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if getattr(record, name, None) is not None})

        execution_time = getattr(record, "execution_time", None)
        if execution_time is not None:
            entry["execution_time_ms"] = round(execution_time, 2)

        if record.exc_info:
            exc_type, exc, tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": traceback.format_exception(exc_type, exc, tb),
            }

        return json.dumps(entry, default=str)

def setup_logging(log_level: Optional[str] = None) -> logging.Logger:
    """Send every logger through a single stdout JSON handler"""
    level_name = (log_level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root

class AppError(Exception):
    """Base for errors the API turns into structured responses"""
    def __init__(self, message: str, error_code: str = None, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "GENERAL_ERROR"
        self.details = details or {}

class ValidationError(AppError):
    def __init__(self, message: str, field: str = None, details: Dict[str, Any] = None):
        super().__init__(message, "VALIDATION_ERROR", details)
        self.field = field

class AuthenticationError(AppError):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, "AUTH_ERROR")

class AuthorizationError(AppError):
    """Caller does not own the medication or schedule"""
    def __init__(self, message: str = "Access denied"):
        super().__init__(message, "AUTHZ_ERROR")

class NotFoundError(AppError):
    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} not found", "NOT_FOUND", {"resource": resource, "id": resource_id})

class ExternalServiceError(AppError):
    def __init__(self, service: str, message: str, status_code: int = None):
        super().__init__(f"{service} error: {message}", "EXTERNAL_SERVICE_ERROR",
                         {"service": service, "status_code": status_code})

class DatabaseError(AppError):
    def __init__(self, operation: str, message: str):
        super().__init__(f"Database {operation} failed: {message}", "DATABASE_ERROR", {"operation": operation})

def log_error(logger: logging.Logger, error: Exception, context: Dict[str, Any] = None):
    """Log an exception with its traceback and request context"""
    extra = dict(context or {})
    if isinstance(error, AppError):
        extra.update(error_code=error.error_code, error_details=error.details)
        message = f"Application error: {error.message}"
    else:
        message = f"Unexpected error: {error}"
    logger.error(message, extra=extra, exc_info=error)

def log_api_call(logger: logging.Logger,
                 endpoint: str,
                 user_id: str = None,
                 execution_time: float = None,
                 status_code: int = None,
                 request_id: str = None):
    logger.info(
        f"API call completed: {endpoint}",
        extra={
            "endpoint": endpoint,
            "user_id": user_id,
            "execution_time": execution_time,
            "status_code": status_code,
            "request_id": request_id
        }
    )
