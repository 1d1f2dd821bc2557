"""
Signal Normalizer

Converts raw wearable sync rows and manual check-in answers into one
canonical DailySignalSet per user per calendar date. Every downstream scorer
reads only this shape, never vendor rows.

Wearable vendors disagree on key names (Oura says hrv_avg, Apple Health
exports hrv_rmssd, some give SDNN instead of RMSSD). Aliases are resolved
here, in priority order, so the scorers never need to know.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping, Optional, Sequence
import logging
import math

from core.exceptions import MalformedInputError

logger = logging.getLogger(__name__)


class SignalSource(str, Enum):
    WEARABLE = "wearable"
    MANUAL = "manual"


class HrvMethod(str, Enum):
    RMSSD = "rmssd"
    SDNN = "sdnn"


# Ordinal scales shared with the check-in flow
MIN_RATING = 1
MAX_RATING = 5

# Key aliases, first match wins
HRV_KEYS = ("hrv_rmssd", "hrv_avg", "hrv_ms", "hrv")
HRV_METHOD_KEYS = ("hrv_method",)
RHR_KEYS = ("resting_hr", "rhr_avg", "rhr", "resting_heart_rate")
SLEEP_HOURS_KEYS = ("sleep_hours", "sleep_duration_hours")
SLEEP_MINUTES_KEYS = ("sleep_minutes", "sleep_duration_minutes")
SLEEP_EFFICIENCY_KEYS = ("sleep_efficiency",)
DEEP_PCT_KEYS = ("deep_percentage", "deep_pct")
REM_PCT_KEYS = ("rem_percentage", "rem_pct")
RESPIRATORY_KEYS = ("respiratory_rate", "respiratory_rate_avg")
TEMPERATURE_KEYS = ("temperature_deviation", "temp_deviation")
SLEEP_QUALITY_KEYS = ("sleep_quality",)
ENERGY_KEYS = ("energy_level",)


@dataclass(frozen=True)
class DailySignalSet:
    """Canonical signals for one user on one date. Immutable once scored."""
    user_id: str
    signal_date: date
    source: SignalSource
    hrv_ms: Optional[float] = None                 # RMSSD or SDNN, see hrv_method
    hrv_method: Optional[HrvMethod] = None
    resting_hr: Optional[float] = None             # bpm
    sleep_hours: Optional[float] = None
    sleep_quality: Optional[int] = None            # ordinal 1-5
    sleep_efficiency: Optional[float] = None       # %, wearable only
    deep_pct: Optional[float] = None               # %, wearable only
    rem_pct: Optional[float] = None                # %, wearable only
    respiratory_rate: Optional[float] = None       # breaths/min
    temperature_deviation: Optional[float] = None  # degrees C from baseline
    energy_level: Optional[int] = None             # ordinal 1-5, check-in only

    @property
    def has_sleep_stages(self) -> bool:
        return (
            self.sleep_efficiency is not None
            or self.deep_pct is not None
            or self.rem_pct is not None
        )

    def available_metrics(self) -> list:
        names = (
            "hrv_ms", "resting_hr", "sleep_hours", "sleep_quality",
            "respiratory_rate", "temperature_deviation", "energy_level",
        )
        return [n for n in names if getattr(self, n) is not None]


# =============================================================================
# PARSING HELPERS
# =============================================================================

def _first(row: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    return None


def _to_float(value: Any, field: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedInputError(f"{field} must be numeric, got bool", field=field, stage="normalize")
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise MalformedInputError(f"{field} must be numeric, got {value!r}", field=field, stage="normalize")
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _to_rating(value: Any, field: str) -> Optional[int]:
    number = _to_float(value, field)
    if number is None:
        return None
    rating = int(round(number))
    if rating < MIN_RATING or rating > MAX_RATING:
        raise MalformedInputError(
            f"{field} must be between {MIN_RATING} and {MAX_RATING}, got {value!r}",
            field=field,
            stage="normalize",
        )
    return rating


def _positive_or_none(value: Optional[float], field: str, user_id: str) -> Optional[float]:
    # Zero or negative physiology readings are sensor dropouts, not data
    if value is not None and value <= 0:
        logger.warning(f"Dropping non-positive {field}={value} for user {user_id}")
        return None
    return value


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise MalformedInputError(f"date must be an ISO date, got {value!r}", field="date", stage="normalize")


def _sleep_quality_from_stages(
    efficiency: Optional[float],
    deep_pct: Optional[float],
    rem_pct: Optional[float],
) -> Optional[int]:
    # Local import keeps the scorer as the single owner of the composite
    from services.recovery_score import calculate_sleep_quality_score

    composite = calculate_sleep_quality_score(efficiency, deep_pct, rem_pct)
    if not composite.available:
        return None
    return max(MIN_RATING, min(MAX_RATING, math.ceil(composite.score / 20)))


# =============================================================================
# PUBLIC API
# =============================================================================

def normalize_wearable_row(user_id: str, row: Mapping[str, Any]) -> DailySignalSet:
    """
    Build a DailySignalSet from a wearable sync row.

    Args:
        user_id: Owner of the row
        row: Vendor row; must contain a 'date' key

    Returns:
        DailySignalSet tagged SignalSource.WEARABLE

    Raises:
        MalformedInputError: row is not a mapping, has no date, or carries
            non-numeric metric values
    """
    if not isinstance(row, Mapping):
        raise MalformedInputError("wearable row must be a mapping", stage="normalize")
    if "date" not in row:
        raise MalformedInputError("wearable row has no date", field="date", stage="normalize")

    hrv = _positive_or_none(_to_float(_first(row, HRV_KEYS), "hrv"), "hrv", user_id)
    method_raw = _first(row, HRV_METHOD_KEYS)
    hrv_method = None
    if hrv is not None:
        try:
            hrv_method = HrvMethod(str(method_raw).lower()) if method_raw else HrvMethod.RMSSD
        except ValueError:
            raise MalformedInputError(f"unknown hrv_method {method_raw!r}", field="hrv_method", stage="normalize")

    sleep_hours = _to_float(_first(row, SLEEP_HOURS_KEYS), "sleep_hours")
    if sleep_hours is None:
        minutes = _to_float(_first(row, SLEEP_MINUTES_KEYS), "sleep_minutes")
        sleep_hours = minutes / 60 if minutes is not None else None
    if sleep_hours is not None and sleep_hours < 0:
        raise MalformedInputError("sleep duration cannot be negative", field="sleep_hours", stage="normalize")

    efficiency = _to_float(_first(row, SLEEP_EFFICIENCY_KEYS), "sleep_efficiency")
    deep_pct = _to_float(_first(row, DEEP_PCT_KEYS), "deep_pct")
    rem_pct = _to_float(_first(row, REM_PCT_KEYS), "rem_pct")

    sleep_quality = _to_rating(_first(row, SLEEP_QUALITY_KEYS), "sleep_quality")
    if sleep_quality is None:
        sleep_quality = _sleep_quality_from_stages(efficiency, deep_pct, rem_pct)

    signals = DailySignalSet(
        user_id=user_id,
        signal_date=_to_date(row["date"]),
        source=SignalSource.WEARABLE,
        hrv_ms=hrv,
        hrv_method=hrv_method,
        resting_hr=_positive_or_none(_to_float(_first(row, RHR_KEYS), "resting_hr"), "resting_hr", user_id),
        sleep_hours=sleep_hours,
        sleep_quality=sleep_quality,
        sleep_efficiency=efficiency,
        deep_pct=deep_pct,
        rem_pct=rem_pct,
        respiratory_rate=_positive_or_none(
            _to_float(_first(row, RESPIRATORY_KEYS), "respiratory_rate"), "respiratory_rate", user_id
        ),
        temperature_deviation=_to_float(_first(row, TEMPERATURE_KEYS), "temperature_deviation"),
        energy_level=_to_rating(_first(row, ENERGY_KEYS), "energy_level"),
    )
    logger.debug(f"Normalized wearable row for user {user_id}: {signals.available_metrics()}")
    return signals


def normalize_check_in(
    user_id: str,
    signal_date: date,
    sleep_quality: Any,
    sleep_hours_bucket: str,
    energy_level: Any,
) -> DailySignalSet:
    """Build a DailySignalSet from the three manual check-in answers."""
    from services.checkin_score import SLEEP_HOURS_MAP

    if sleep_hours_bucket not in SLEEP_HOURS_MAP:
        raise MalformedInputError(
            f"sleep_hours must be one of: {', '.join(SLEEP_HOURS_MAP)}",
            field="sleep_hours",
            stage="normalize",
        )
    quality = _to_rating(sleep_quality, "sleep_quality")
    energy = _to_rating(energy_level, "energy_level")
    if quality is None or energy is None:
        raise MalformedInputError("check-in requires sleep_quality and energy_level", stage="normalize")

    return DailySignalSet(
        user_id=user_id,
        signal_date=signal_date,
        source=SignalSource.MANUAL,
        sleep_hours=SLEEP_HOURS_MAP[sleep_hours_bucket],
        sleep_quality=quality,
        energy_level=energy,
    )


def merge_signal_sets(primary: DailySignalSet, secondary: DailySignalSet) -> DailySignalSet:
    """
    Fill gaps in `primary` with values from `secondary` (same user and date).

    Used when a re-sync delivers a partial row: the newer row wins field by
    field, older values only fill holes.
    """
    if primary.user_id != secondary.user_id or primary.signal_date != secondary.signal_date:
        raise MalformedInputError("cannot merge signals for different users or dates", stage="normalize")
    updates = {}
    for name in primary.__dataclass_fields__:
        if getattr(primary, name) is None and getattr(secondary, name) is not None:
            updates[name] = getattr(secondary, name)
    return replace(primary, **updates) if updates else primary
