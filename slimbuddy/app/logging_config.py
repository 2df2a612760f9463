import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

# Attributes passed through ``extra=`` that end up in the JSON line
CONTEXT_FIELDS = (
    "request_id", "endpoint", "status_code", "user_id", "field",
    "key_id", "key_hash_prefix", "reason", "error_code",
)

NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "urllib3")


class StructuredFormatter(logging.Formatter):
    """One JSON object per line for the log drain"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})
        if hasattr(record, "execution_time"):
            entry["execution_time_ms"] = record.execution_time

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": traceback.format_exception(exc_type, exc, tb),
            }

        return json.dumps(entry, default=str)


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Route the root logger to stdout as JSON; level from LOG_LEVEL unless given"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or os.environ.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


# Application errors
class AppError(Exception):
    """Base application error"""
    def __init__(self, message: str, error_code: str = None, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code or "GENERAL_ERROR"
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AppError):
    """Rejected user input; ``field`` names the offending request field"""
    def __init__(self, message: str, field: str = None, details: Dict[str, Any] = None,
                 error_code: str = "VALIDATION_ERROR"):
        super().__init__(message, error_code, details)
        self.field = field

    def to_detail(self) -> Dict[str, Any]:
        """Body of the 422 response"""
        return {"error": self.error_code, "message": self.message, "field": self.field}


class InvalidDate(ValidationError):
    def __init__(self, field: str = "date", value: Any = None):
        super().__init__(
            f"Invalid {field}. Use YYYY-MM-DD or DD/MM/YYYY.",
            field,
            {"value": value},
            error_code="INVALID_DATE",
        )


class InvalidUnit(ValidationError):
    def __init__(self, unit: Any, allowed: Iterable[str], field: str = "unit"):
        super().__init__(
            f"Missing or invalid {field}. Use {', '.join(repr(u) for u in allowed)}.",
            field,
            {"unit": unit},
            error_code="INVALID_UNIT",
        )


class MissingField(ValidationError):
    def __init__(self, field: str, message: str = None):
        super().__init__(message or f"Missing or invalid {field}.", field, error_code="MISSING_FIELD")


class InvalidMagnitude(ValidationError):
    def __init__(self, field: str, value: Any = None):
        super().__init__(
            f"Invalid {field} after conversion (must be a positive number within range).",
            field,
            {"value": str(value) if value is not None else None},
            error_code="INVALID_MAGNITUDE",
        )


class AuthenticationError(AppError):
    """Credential could not be accepted"""
    def __init__(self, message: str = "Authentication required", error_code: str = "AUTH_ERROR"):
        super().__init__(message, error_code)


class InvalidFormat(AuthenticationError):
    """Credential does not have the connect key shape"""
    def __init__(self):
        super().__init__("Invalid Connect Key format", "INVALID_FORMAT")


class Unauthenticated(AuthenticationError):
    """Credential rejected. ``reason`` is for logs and metrics only, never for responses."""
    GENERIC_MESSAGE = "Invalid or expired Connect Key"

    def __init__(self, reason: str):
        super().__init__(self.GENERIC_MESSAGE, "UNAUTHENTICATED")
        self.reason = reason


class ExternalServiceError(AppError):
    """A dependency other than the database failed (Supabase auth, Sentry)"""
    def __init__(self, service: str, message: str, status_code: int = None):
        super().__init__(f"{service} error: {message}", "EXTERNAL_SERVICE_ERROR", {
            "service": service,
            "status_code": status_code
        })


class DatabaseError(AppError):
    """Database operation error"""
    def __init__(self, operation: str, message: str):
        super().__init__(f"Database {operation} failed: {message}", "DATABASE_ERROR", {
            "operation": operation
        })


class StoreUnavailable(DatabaseError):
    """The key store failed; not a defect of the caller's input"""


class KeyConflict(DatabaseError):
    """An insert lost a race against the single-active-key index"""


def log_error(logger: logging.Logger, error: Exception, context: Dict[str, Any] = None):
    """Log ``error`` with its traceback and request context"""
    extra = dict(context or {})
    if isinstance(error, AppError):
        extra.update(error_code=error.error_code, error_details=error.details)
        message = f"{type(error).__name__}: {error.message}"
    else:
        message = f"Unexpected error: {error}"
    logger.error(message, extra=extra, exc_info=error)


def log_api_call(logger: logging.Logger, endpoint: str, user_id: Optional[str] = None,
                 execution_time: float = None, status_code: int = None):
    """Completion line written by the request middleware"""
    logger.info(
        f"API call completed: {endpoint}",
        extra={
            "endpoint": endpoint,
            "user_id": user_id,
            "execution_time": execution_time,
            "status_code": status_code,
        }
    )
