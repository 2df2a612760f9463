import re
import html
import math
from typing import Any, Optional
from .logging_config import ValidationError, MissingField

# Input size limits
MAX_TEXT_LENGTH = 2000
MAX_NAME_LENGTH = 200
MAX_NOTES_LENGTH = 1000
MAX_EXERCISE_DURATION = 1440  # 24 hours in minutes
MAX_SYNS = 1000
MAX_CALORIES = 50000

VALID_INTENSITIES = ["low", "moderate", "high"]

def sanitize_text(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Sanitize text input by removing HTML and limiting length"""
    if not isinstance(text, str):
        raise ValidationError("Input must be a string")

    # Remove HTML tags and decode HTML entities
    clean_text = html.escape(text.strip())

    # Remove control characters except newlines and tabs
    clean_text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', clean_text)

    if len(clean_text) > max_length:
        raise ValidationError(f"Text exceeds maximum length of {max_length} characters")

    return clean_text

def optional_text(text: Optional[str], max_length: int = MAX_NOTES_LENGTH) -> Optional[str]:
    if text is None or not str(text).strip():
        return None
    return sanitize_text(text, max_length)

def required_text(text: Optional[str], field: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Required free-text field such as meal_description or activity"""
    if not isinstance(text, str) or not text.strip():
        raise MissingField(field)
    try:
        return sanitize_text(text, max_length)
    except ValidationError as e:
        e.field = field
        raise

def to_number(value: Any) -> Optional[float]:
    """Lenient numeric cast: blanks and junk become None rather than 0"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None

def to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("true", "1", "yes", "y"):
            return True
        if s in ("false", "0", "no", "n"):
            return False
    if isinstance(value, (int, float)):
        return value != 0
    return None

def validate_syns(syns: Any, field: str = "syns") -> float:
    """Validate a Syn value (required, non-negative)"""
    number = to_number(syns)
    if number is None:
        raise MissingField(field)

    if number < 0:
        raise ValidationError("Syns cannot be negative", field)

    if number > MAX_SYNS:
        raise ValidationError("Syn value too high", field)

    return number

def validate_calories(kcal: Any, field: str = "calories") -> Optional[int]:
    """Validate an optional calorie count"""
    number = to_number(kcal)
    if number is None:
        return None

    if number < 0:
        raise ValidationError("Calories cannot be negative", field)

    if number > MAX_CALORIES:  # Unreasonably high calorie count
        raise ValidationError("Calorie count too high", field)

    return int(round(number))

def validate_exercise_duration(duration_min: Any) -> Optional[float]:
    """Validate an optional exercise duration in minutes"""
    number = to_number(duration_min)
    if number is None:
        return None

    if number <= 0:
        raise ValidationError("Duration must be positive", "duration_minutes")

    if number > MAX_EXERCISE_DURATION:
        raise ValidationError(f"Duration too long (maximum {MAX_EXERCISE_DURATION} minutes)", "duration_minutes")

    return number

def validate_non_negative(value: Any, field: str) -> Optional[float]:
    number = to_number(value)
    if number is not None and number < 0:
        raise ValidationError(f"{field} cannot be negative", field)
    return number

def validate_intensity(intensity: Optional[str]) -> Optional[str]:
    """Validate exercise intensity"""
    if intensity is None or not str(intensity).strip():
        return None
    if not isinstance(intensity, str):
        raise ValidationError("Intensity must be a string", "intensity")

    intensity = intensity.lower().strip()

    if intensity not in VALID_INTENSITIES:
        raise ValidationError(f"Intensity must be one of: {', '.join(VALID_INTENSITIES)}", "intensity")

    return intensity
