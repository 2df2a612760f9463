"""
Canonical unit and date normalization.

Every body-weight value is stored in kilograms (2 dp) and every body
measurement in centimeters (1 dp); calendar dates are stored as YYYY-MM-DD.
Route handlers pass raw user input through here and never write raw units.
"""
import math
from datetime import date, datetime, timezone
from decimal import Decimal, DecimalException, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from dateutil import parser as date_parser

from .logging_config import InvalidDate, InvalidMagnitude, InvalidUnit, MissingField

LB_TO_KG = Decimal("0.45359237")
IN_TO_CM = Decimal("2.54")
POUNDS_PER_STONE = 14

KG_PLACES = Decimal("0.01")
CM_PLACES = Decimal("0.1")

WEIGHT_UNITS = ("kg", "lbs", "st_lbs")
LENGTH_UNITS = ("cm", "in")

MEASUREMENT_FIELDS = (
    "bust", "waist", "hips", "neck", "arm",
    "under_bust", "thighs", "knees", "ankles",
)


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a JSON/form number to Decimal; None when absent or not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, int):
        number = Decimal(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            return None
        number = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None
    return number if number.is_finite() else None


def _quantize(number: Decimal, places: Decimal) -> Decimal:
    # Raises InvalidOperation when the digits do not fit the context precision
    return number.quantize(places, rounding=ROUND_HALF_UP)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class UnitNormalizer:
    def normalize_date(self, value: Any) -> Optional[str]:
        """
        Normalize DD/MM/YYYY, DD-MM-YYYY or YYYY-MM-DD to YYYY-MM-DD.

        Day and month ranges are not checked ("32-13-2024" passes through as
        "2024-13-32"). Anything that does not split into three parts is handed
        to dateutil; None means the input could not be understood.
        """
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()

        text = str(value).strip().replace("/", "-")
        if not text:
            return None

        parts = text.split("-")
        if len(parts) == 3:
            if len(parts[0]) == 4:
                return text
            # Two-digit years go to dateutil so the output always leads with the year
            if len(parts[2]) == 4:
                day, month, year = parts
                return f"{year}-{month}-{day}"

        try:
            parsed = date_parser.parse(text, dayfirst=True)
        except (ValueError, OverflowError):
            return None
        return parsed.date().isoformat()

    def require_date(self, value: Any, field: str = "date", default_today: bool = False,
                     today: Optional[date] = None) -> str:
        """Boundary form of normalize_date: raises instead of returning None."""
        if _is_blank(value):
            if default_today:
                return (today or datetime.now(timezone.utc).date()).isoformat()
            raise MissingField(field, f"Missing required field: {field}")

        normalized = self.normalize_date(value)
        if normalized is None:
            raise InvalidDate(field, value)
        return normalized

    def optional_date(self, value: Any, field: str = "date") -> Optional[str]:
        if _is_blank(value):
            return None
        return self.require_date(value, field)

    def weight_to_kg(self, value: Any = None, unit: str = "kg", stones: Any = None,
                     pounds: Any = None, field: str = "weight") -> Decimal:
        """
        Convert a body weight to canonical kilograms, rounded half-up to 2 dp.

        ``st_lbs`` takes ``stones`` (required) and ``pounds`` (default 0) and
        ignores ``value``. The result must be strictly positive and small
        enough to hold at 2 dp; anything else raises InvalidMagnitude.
        """
        if unit not in WEIGHT_UNITS:
            raise InvalidUnit(unit, WEIGHT_UNITS)

        if unit == "st_lbs":
            st = _to_decimal(stones)
            if st is None:
                raise MissingField("stones", "Missing stones for st_lbs.")
            if _is_blank(pounds):
                lb = Decimal(0)
            else:
                lb = _to_decimal(pounds)
                if lb is None:
                    raise MissingField("pounds", "Invalid pounds for st_lbs.")
            try:
                kg = _quantize((st * POUNDS_PER_STONE + lb) * LB_TO_KG, KG_PLACES)
            except DecimalException:
                raise InvalidMagnitude(field, stones) from None
        else:
            magnitude = _to_decimal(value)
            if magnitude is None:
                raise MissingField(field, f"Missing or invalid {field} ({unit}).")
            try:
                kg = _quantize(magnitude if unit == "kg" else magnitude * LB_TO_KG, KG_PLACES)
            except DecimalException:
                raise InvalidMagnitude(field, value) from None

        if kg <= 0:
            raise InvalidMagnitude(field, kg)
        return kg

    def length_to_cm(self, value: Any, from_inches: bool = False, field: str = "length") -> Optional[Decimal]:
        # Optional measurement fields stay unset rather than becoming 0
        length = _to_decimal(value)
        if length is None:
            return None
        try:
            return _quantize(length * IN_TO_CM if from_inches else length, CM_PLACES)
        except DecimalException:
            raise InvalidMagnitude(field, value) from None

    def measurements_to_cm(self, fields: Dict[str, Any], from_inches: bool = False,
                           names: Iterable[str] = MEASUREMENT_FIELDS) -> Dict[str, Optional[Decimal]]:
        return {name: self.length_to_cm(fields.get(name), from_inches, field=name) for name in names}


unit_normalizer = UnitNormalizer()
