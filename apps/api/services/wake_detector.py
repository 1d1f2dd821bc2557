"""
Wake Detector

Fuses wake signals (wearable sleep end, movement, phone unlock, manual report)
into a single wake decision with a confidence and the Morning Anchor delivery
window (the first nudge of the day, 5-15 minutes after wake).

Confidence priors, most to least accurate:
    hrv_spike      0.95  wearable sleep-end / HRV-derived wake
    movement       0.85  wearable movement spike
    manual         0.70  user-reported
    phone_unlock   0.60  first unlock of the day (Lite Mode)

An unconfirmed phone unlock is only accepted inside a narrow morning window and
is discounted further outside typical workday wake hours. A user confirmation
("Let's go" on the wake overlay) boosts it, capped at 1.0.

detect() is a pure function: no clock reads, no I/O. Calling it twice with the
same input yields an equal output.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from core.exceptions import MalformedInputError

logger = logging.getLogger(__name__)


class WakeMethod(str, Enum):
    HRV_SPIKE = "hrv_spike"
    MOVEMENT = "movement"
    PHONE_UNLOCK = "phone_unlock"
    MANUAL = "manual"


class WakeSource(str, Enum):
    WEARABLE = "wearable"
    MOVEMENT = "movement"
    PHONE_UNLOCK = "phone_unlock"
    MANUAL = "manual"


class MorningAnchorSkipReason(str, Enum):
    USER_DISABLED = "user_disabled"
    ALREADY_TRIGGERED_TODAY = "already_triggered_today"
    DO_NOT_DISTURB = "do_not_disturb"
    TRAVEL_DETECTED = "travel_detected"
    WEEKEND_SLEEP_IN = "weekend_sleep_in"
    NO_PROTOCOLS_ACTIVE = "no_protocols_active"


METHOD_CONFIDENCE = {
    WakeMethod.HRV_SPIKE: 0.95,
    WakeMethod.MOVEMENT: 0.85,
    WakeMethod.MANUAL: 0.70,
    WakeMethod.PHONE_UNLOCK: 0.60,
}

# Valid wake hours (local, inclusive)
MIN_WAKE_HOUR = 4
MAX_WAKE_HOUR = 14

# Unconfirmed phone unlock: accepted 04:00-11:59 local
UNCONFIRMED_UNLOCK_START_HOUR = 4
UNCONFIRMED_UNLOCK_END_HOUR = 12
# Typical workday wake hours; unconfirmed unlocks outside them are discounted
WORKDAY_WAKE_START_HOUR = 5
WORKDAY_WAKE_END_HOUR = 10
OFF_PATTERN_UNLOCK_DISCOUNT = 0.10

PHONE_UNLOCK_CONFIRMATION_BOOST = 0.25
MAX_CONFIDENCE = 1.0

# Nap detection
MIN_NIGHT_SLEEP_HOURS = 3
NAP_DETECTION_HOUR = 12

# Morning Anchor window offsets from wake (minutes)
ANCHOR_MIN_DELAY_MINUTES = 5
ANCHOR_OPTIMAL_DELAY_MINUTES = 8
ANCHOR_MAX_DELAY_MINUTES = 15

WEEKEND_SLEEP_IN_HOUR = 10

MORNING_ANCHOR_PROTOCOL_IDS = (
    "proto_morning_light",
    "morning_light_exposure",
    "proto_hydration_electrolytes",
    "hydration_electrolytes",
    "proto_breath_work",
    "physiological_sigh",
)


@dataclass(frozen=True)
class WakeDetectionInput:
    user_id: str
    source: WakeSource
    timezone: str = "UTC"
    sleep_end_time: Optional[datetime] = None
    sleep_start_time: Optional[datetime] = None
    movement_time: Optional[datetime] = None
    phone_unlock_time: Optional[datetime] = None
    user_confirmed_at: Optional[datetime] = None
    reported_wake_time: Optional[datetime] = None
    is_workday: Optional[bool] = None  # None: derive from the local weekday


@dataclass(frozen=True)
class MorningAnchorWindow:
    start: datetime
    optimal: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class WakeDetectionOutput:
    user_id: str
    detected: bool
    reason: str
    wake_time: Optional[datetime] = None
    local_date: Optional[date] = None
    local_hour: Optional[int] = None
    method: Optional[WakeMethod] = None
    base_confidence: float = 0.0
    confidence: float = 0.0
    within_window: bool = False
    is_workday: Optional[bool] = None
    user_confirmed: bool = False
    window: Optional[MorningAnchorWindow] = None

    @property
    def should_trigger_morning_anchor(self) -> bool:
        return self.detected and self.within_window


@dataclass(frozen=True)
class MorningAnchorContext:
    """State the caller gathers before deciding to fire the Morning Anchor."""
    now: datetime
    enabled: bool = True
    already_triggered_today: bool = False
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None
    timezone: str = "UTC"
    travel_detected: bool = False
    active_protocol_ids: Sequence[str] = ()


# =============================================================================
# HELPERS
# =============================================================================

def resolve_timezone(name: Optional[str]):
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, falling back to UTC")
        return timezone.utc


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def to_local(moment: datetime, tz_name: Optional[str]) -> datetime:
    return _as_utc(moment).astimezone(resolve_timezone(tz_name))


def get_method_confidence(method: WakeMethod) -> float:
    return METHOD_CONFIDENCE[method]


def calculate_morning_anchor_window(wake_time: datetime) -> MorningAnchorWindow:
    return MorningAnchorWindow(
        start=wake_time + timedelta(minutes=ANCHOR_MIN_DELAY_MINUTES),
        optimal=wake_time + timedelta(minutes=ANCHOR_OPTIMAL_DELAY_MINUTES),
        end=wake_time + timedelta(minutes=ANCHOR_MAX_DELAY_MINUTES),
    )


def supersedes(
    existing_confidence: float,
    existing_triggered: bool,
    new_confidence: float,
) -> bool:
    """
    Whether a new detection may replace the stored wake event for the same day.

    A triggered event is final. Otherwise only a strictly higher confidence upgrades.
    """
    if existing_triggered:
        return False
    return new_confidence > existing_confidence


def _no_detection(user_id: str, reason: str, **fields) -> WakeDetectionOutput:
    logger.debug(f"No wake detected for user {user_id}: {reason}")
    return WakeDetectionOutput(user_id=user_id, detected=False, reason=reason, **fields)


def _detected(
    data: WakeDetectionInput,
    wake_time: datetime,
    local: datetime,
    method: WakeMethod,
    confidence: float,
    reason: str,
    is_workday: bool,
    user_confirmed: bool = False,
) -> WakeDetectionOutput:
    wake_utc = _as_utc(wake_time)
    return WakeDetectionOutput(
        user_id=data.user_id,
        detected=True,
        reason=reason,
        wake_time=wake_utc,
        local_date=local.date(),
        local_hour=local.hour,
        method=method,
        base_confidence=get_method_confidence(method),
        confidence=round(min(MAX_CONFIDENCE, confidence), 2),
        within_window=True,
        is_workday=is_workday,
        user_confirmed=user_confirmed,
        window=calculate_morning_anchor_window(wake_utc),
    )


# =============================================================================
# DETECTION
# =============================================================================

def _detect_wearable(data: WakeDetectionInput, method: WakeMethod, wake_time: Optional[datetime]) -> WakeDetectionOutput:
    label = "Wearable sleep end" if method == WakeMethod.HRV_SPIKE else "Movement spike"
    if wake_time is None:
        return _no_detection(data.user_id, f"No {label.lower()} time provided")

    local = to_local(wake_time, data.timezone)
    is_workday = data.is_workday if data.is_workday is not None else local.weekday() < 5
    if local.hour < MIN_WAKE_HOUR:
        return _no_detection(data.user_id, f"Wake time too early ({local.hour}h < {MIN_WAKE_HOUR}h)", local_hour=local.hour)
    if local.hour > MAX_WAKE_HOUR:
        return _no_detection(data.user_id, f"Wake time too late ({local.hour}h > {MAX_WAKE_HOUR}h)", local_hour=local.hour)

    if data.sleep_start_time is not None:
        sleep_hours = (_as_utc(wake_time) - _as_utc(data.sleep_start_time)).total_seconds() / 3600
        if sleep_hours < 0:
            raise MalformedInputError("sleep_start_time is after the wake time", field="sleep_start_time", stage="wake")
        if sleep_hours < MIN_NIGHT_SLEEP_HOURS and local.hour >= NAP_DETECTION_HOUR:
            return _no_detection(
                data.user_id,
                f"Detected nap ({sleep_hours:.1f}h after {NAP_DETECTION_HOUR}:00)",
                local_hour=local.hour,
            )

    return _detected(
        data, wake_time, local, method, get_method_confidence(method),
        f"{label} detected", is_workday,
    )


def _detect_phone_unlock(data: WakeDetectionInput) -> WakeDetectionOutput:
    if data.phone_unlock_time is None:
        return _no_detection(data.user_id, "No phone unlock time provided")

    local = to_local(data.phone_unlock_time, data.timezone)
    is_workday = data.is_workday if data.is_workday is not None else local.weekday() < 5
    base = get_method_confidence(WakeMethod.PHONE_UNLOCK)

    if data.user_confirmed_at is not None:
        if not MIN_WAKE_HOUR <= local.hour <= MAX_WAKE_HOUR:
            return _no_detection(
                data.user_id, f"Phone unlock outside wake hours ({local.hour}h)", local_hour=local.hour
            )
        return _detected(
            data, data.phone_unlock_time, local, WakeMethod.PHONE_UNLOCK,
            base + PHONE_UNLOCK_CONFIRMATION_BOOST,
            "Phone unlock confirmed by user", is_workday, user_confirmed=True,
        )

    if not UNCONFIRMED_UNLOCK_START_HOUR <= local.hour < UNCONFIRMED_UNLOCK_END_HOUR:
        return _no_detection(
            data.user_id,
            f"Unconfirmed phone unlock outside morning window ({local.hour}h)",
            local_hour=local.hour,
            is_workday=is_workday,
        )

    confidence = base
    in_workday_hours = WORKDAY_WAKE_START_HOUR <= local.hour < WORKDAY_WAKE_END_HOUR
    if not is_workday or not in_workday_hours:
        confidence -= OFF_PATTERN_UNLOCK_DISCOUNT

    return _detected(
        data, data.phone_unlock_time, local, WakeMethod.PHONE_UNLOCK, confidence,
        "Phone unlock detected (unconfirmed)", is_workday,
    )


def _detect_manual(data: WakeDetectionInput) -> WakeDetectionOutput:
    wake_time = data.reported_wake_time or data.phone_unlock_time
    if wake_time is None:
        return _no_detection(data.user_id, "No wake time provided")

    local = to_local(wake_time, data.timezone)
    is_workday = data.is_workday if data.is_workday is not None else local.weekday() < 5
    if not MIN_WAKE_HOUR <= local.hour <= MAX_WAKE_HOUR:
        return _no_detection(
            data.user_id, f"Manual wake time outside wake hours ({local.hour}h)", local_hour=local.hour
        )
    return _detected(
        data, wake_time, local, WakeMethod.MANUAL, get_method_confidence(WakeMethod.MANUAL),
        "User manually reported wake time", is_workday,
    )


def detect(data: WakeDetectionInput) -> WakeDetectionOutput:
    """
    Detect a wake event from one signal source.

    Args:
        data: WakeDetectionInput; datetimes may be naive (treated as UTC) or aware

    Returns:
        WakeDetectionOutput. A non-detection is a normal outcome with a reason.

    Raises:
        MalformedInputError: unknown source, or a sleep window that ends before it starts
    """
    try:
        source = WakeSource(data.source)
    except ValueError:
        raise MalformedInputError(f"unknown wake source {data.source!r}", field="source", stage="wake")

    if source == WakeSource.WEARABLE:
        return _detect_wearable(data, WakeMethod.HRV_SPIKE, data.sleep_end_time)
    if source == WakeSource.MOVEMENT:
        return _detect_wearable(data, WakeMethod.MOVEMENT, data.movement_time)
    if source == WakeSource.PHONE_UNLOCK:
        return _detect_phone_unlock(data)
    return _detect_manual(data)


def best_detection(outputs: Sequence[WakeDetectionOutput]) -> Optional[WakeDetectionOutput]:
    """Highest-confidence detection among several sources; earliest wake breaks ties."""
    detected = [o for o in outputs if o.detected]
    if not detected:
        return None
    return sorted(detected, key=lambda o: (-o.confidence, o.wake_time))[0]


# =============================================================================
# MORNING ANCHOR
# =============================================================================

def is_morning_anchor_protocol(protocol_id: str) -> bool:
    lowered = protocol_id.lower()
    return any(anchor in lowered for anchor in MORNING_ANCHOR_PROTOCOL_IDS)


def select_anchor_protocols(protocol_ids: Sequence[str], fallback_count: int = 2) -> List[str]:
    """Morning protocols first; any protocols at all if none of them are morning ones."""
    morning = [p for p in protocol_ids if is_morning_anchor_protocol(p)]
    return morning if morning else list(protocol_ids[:fallback_count])


def evaluate_morning_anchor_skip(
    wake: WakeDetectionOutput,
    context: MorningAnchorContext,
) -> Optional[MorningAnchorSkipReason]:
    """
    Decide whether the Morning Anchor should be skipped for this wake.

    Checks run in order and the first hit wins. Returns None to proceed.
    """
    # Local import: the suppression module owns the quiet-hours arithmetic
    from services.suppression_engine import get_user_local_hour, is_in_quiet_hours

    if not context.enabled:
        return MorningAnchorSkipReason.USER_DISABLED
    if context.already_triggered_today:
        return MorningAnchorSkipReason.ALREADY_TRIGGERED_TODAY

    if context.quiet_hours_start is not None and context.quiet_hours_end is not None:
        hour = get_user_local_hour(context.now, context.timezone)
        if is_in_quiet_hours(hour, context.quiet_hours_start, context.quiet_hours_end):
            return MorningAnchorSkipReason.DO_NOT_DISTURB

    if context.travel_detected:
        return MorningAnchorSkipReason.TRAVEL_DETECTED

    if wake.wake_time is not None:
        local = to_local(wake.wake_time, context.timezone)
        is_weekend = local.weekday() >= 5
        if is_weekend and local.hour >= WEEKEND_SLEEP_IN_HOUR:
            return MorningAnchorSkipReason.WEEKEND_SLEEP_IN

    if not context.active_protocol_ids:
        return MorningAnchorSkipReason.NO_PROTOCOLS_ACTIVE

    return None
