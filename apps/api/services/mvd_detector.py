"""
MVD (Minimum Viable Day) Detector

Decides when "easy mode" switches on and off. Pure: the caller loads the
current MVDState, passes it in with today's context, and persists the result.

Triggers (any one suffices):
    low_recovery      recovery < 35                           -> full
    illness_risk      high illness risk from recovery scoring  -> full
    travel_detected   home vs device timezone offset >= 2h     -> travel
    heavy_calendar    meeting hours today >= 6                 -> semi_active
    consistency_drop  completion < 50% on each of the last 3 days -> semi_active
    manual_activation user tapped "Tough Day"                  -> full

When several fire together the most restrictive type wins
(full > travel > semi_active); equal types fall back to TRIGGER_PRIORITY.

Hysteresis: once active, MVD stays on until its exit condition holds. For
recovery-driven MVD that is recovery > 50, so a score drifting between 35 and
50 never toggles the state. Illness-driven MVD also waits for the illness
flag to drop below medium.

Manual activate/deactivate overrides the automatic state until the next
evaluate() call, which always re-derives the state from the context.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from core.exceptions import MalformedInputError
from services.mvd_protocols import (
    MVD_TYPE_RESTRICTIVENESS,
    MVDType,
    get_mvd_type_description,
)
from services.recovery_score import IllnessRisk

logger = logging.getLogger(__name__)


class MVDTrigger(str, Enum):
    LOW_RECOVERY = "low_recovery"
    ILLNESS_RISK = "illness_risk"
    MANUAL_ACTIVATION = "manual_activation"
    TRAVEL_DETECTED = "travel_detected"
    HEAVY_CALENDAR = "heavy_calendar"
    CONSISTENCY_DROP = "consistency_drop"


LOW_RECOVERY_THRESHOLD = 35
RECOVERY_EXIT_THRESHOLD = 50
TRAVEL_TIMEZONE_THRESHOLD_HOURS = 2
TRAVEL_MAX_DAYS = 3
HEAVY_CALENDAR_HOURS = 6
CONSISTENCY_THRESHOLD = 50
CONSISTENCY_DAYS = 3
CONSISTENCY_EXIT_DAYS = 2

TRIGGER_TYPE = {
    MVDTrigger.LOW_RECOVERY: MVDType.FULL,
    MVDTrigger.ILLNESS_RISK: MVDType.FULL,
    MVDTrigger.MANUAL_ACTIVATION: MVDType.FULL,
    MVDTrigger.TRAVEL_DETECTED: MVDType.TRAVEL,
    MVDTrigger.HEAVY_CALENDAR: MVDType.SEMI_ACTIVE,
    MVDTrigger.CONSISTENCY_DROP: MVDType.SEMI_ACTIVE,
}

# Tie-break between triggers mapping to the same type, first wins
TRIGGER_PRIORITY = (
    MVDTrigger.LOW_RECOVERY,
    MVDTrigger.ILLNESS_RISK,
    MVDTrigger.MANUAL_ACTIVATION,
    MVDTrigger.TRAVEL_DETECTED,
    MVDTrigger.HEAVY_CALENDAR,
    MVDTrigger.CONSISTENCY_DROP,
)

EXIT_CONDITIONS = {
    MVDTrigger.LOW_RECOVERY: f"Recovery >{RECOVERY_EXIT_THRESHOLD}%",
    MVDTrigger.ILLNESS_RISK: f"Illness risk below medium and recovery >{RECOVERY_EXIT_THRESHOLD}%",
    MVDTrigger.MANUAL_ACTIVATION: f"Recovery >{RECOVERY_EXIT_THRESHOLD}%",
    MVDTrigger.TRAVEL_DETECTED: f"Return to home timezone or {TRAVEL_MAX_DAYS} days elapsed",
    MVDTrigger.HEAVY_CALENDAR: f"Meeting load below {HEAVY_CALENDAR_HOURS} hours",
    MVDTrigger.CONSISTENCY_DROP: (
        f"Complete >{CONSISTENCY_THRESHOLD}% of protocols for {CONSISTENCY_EXIT_DAYS} consecutive days"
    ),
}


@dataclass(frozen=True)
class MVDState:
    user_id: str
    is_active: bool = False
    mvd_type: Optional[MVDType] = None
    trigger: Optional[MVDTrigger] = None
    activated_at: Optional[datetime] = None
    exit_condition: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    manual_override: bool = False
    reason: str = ""


@dataclass(frozen=True)
class MVDDetectionContext:
    user_id: str
    now: datetime
    recovery_score: Optional[float] = None
    user_timezone: Optional[str] = None
    device_timezone: Optional[str] = None
    completion_history: Sequence[float] = ()   # daily completion %, most recent first
    meeting_hours_today: Optional[float] = None
    illness_risk: Optional[IllnessRisk] = None   # from RecoveryResult.edge_cases


@dataclass(frozen=True)
class TriggerHit:
    trigger: MVDTrigger
    mvd_type: MVDType
    reason: str


def inactive_state(user_id: str, now: Optional[datetime] = None, reason: str = "") -> MVDState:
    return MVDState(user_id=user_id, last_checked_at=now, reason=reason)


# =============================================================================
# TRIGGER CHECKS
# =============================================================================

def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _utc_offset_minutes(tz_name: str, at: datetime) -> Optional[float]:
    try:
        offset = at.astimezone(ZoneInfo(tz_name)).utcoffset()
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r} in travel check")
        return None
    return offset.total_seconds() / 60 if offset is not None else None


def calculate_timezone_offset(tz1: Optional[str], tz2: Optional[str], at: datetime) -> Optional[float]:
    """Absolute UTC-offset difference in hours between two IANA zones at `at`."""
    if not tz1 or not tz2:
        return None
    at = _as_utc(at)
    offset1 = _utc_offset_minutes(tz1, at)
    offset2 = _utc_offset_minutes(tz2, at)
    if offset1 is None or offset2 is None:
        return None
    return abs(offset1 - offset2) / 60


def check_low_recovery(context: MVDDetectionContext) -> Optional[TriggerHit]:
    score = context.recovery_score
    if score is not None and score < LOW_RECOVERY_THRESHOLD:
        return TriggerHit(
            MVDTrigger.LOW_RECOVERY, MVDType.FULL,
            f"Low recovery detected: {score:g}% (threshold: {LOW_RECOVERY_THRESHOLD}%)",
        )
    return None


def check_illness_risk(context: MVDDetectionContext) -> Optional[TriggerHit]:
    if context.illness_risk == IllnessRisk.HIGH:
        return TriggerHit(
            MVDTrigger.ILLNESS_RISK, MVDType.FULL,
            "High illness risk: several recovery markers suggest you may be getting sick",
        )
    return None


def check_travel(context: MVDDetectionContext) -> Optional[TriggerHit]:
    offset = calculate_timezone_offset(context.user_timezone, context.device_timezone, context.now)
    if offset is not None and offset >= TRAVEL_TIMEZONE_THRESHOLD_HOURS:
        return TriggerHit(
            MVDTrigger.TRAVEL_DETECTED, MVDType.TRAVEL,
            f"Timezone shift detected: {offset:g}h offset (threshold: {TRAVEL_TIMEZONE_THRESHOLD_HOURS}h)",
        )
    return None


def check_heavy_calendar(context: MVDDetectionContext) -> Optional[TriggerHit]:
    hours = context.meeting_hours_today
    if hours is not None and hours >= HEAVY_CALENDAR_HOURS:
        return TriggerHit(
            MVDTrigger.HEAVY_CALENDAR, MVDType.SEMI_ACTIVE,
            f"Heavy calendar: {hours:g}h of meetings (threshold: {HEAVY_CALENDAR_HOURS}h)",
        )
    return None


def check_consistency_drop(context: MVDDetectionContext) -> Optional[TriggerHit]:
    recent = list(context.completion_history[:CONSISTENCY_DAYS])
    if len(recent) < CONSISTENCY_DAYS:
        return None
    if all(rate < CONSISTENCY_THRESHOLD for rate in recent):
        average = sum(recent) / CONSISTENCY_DAYS
        return TriggerHit(
            MVDTrigger.CONSISTENCY_DROP, MVDType.SEMI_ACTIVE,
            f"Consistency drop: avg {round(average)}% over {CONSISTENCY_DAYS} days "
            f"(threshold: {CONSISTENCY_THRESHOLD}%)",
        )
    return None


TRIGGER_CHECKS = (
    check_low_recovery,
    check_illness_risk,
    check_travel,
    check_heavy_calendar,
    check_consistency_drop,
)


def collect_triggers(context: MVDDetectionContext) -> List[TriggerHit]:
    return [hit for hit in (check(context) for check in TRIGGER_CHECKS) if hit is not None]


def resolve_triggers(hits: Sequence[TriggerHit]) -> Optional[TriggerHit]:
    """Most restrictive type first, then TRIGGER_PRIORITY."""
    if not hits:
        return None
    return sorted(
        hits,
        key=lambda h: (-MVD_TYPE_RESTRICTIVENESS[h.mvd_type], TRIGGER_PRIORITY.index(h.trigger)),
    )[0]


def exit_condition_met(state: MVDState, context: MVDDetectionContext) -> bool:
    """Whether the active state's own exit condition holds today."""
    trigger = state.trigger
    if trigger in (MVDTrigger.LOW_RECOVERY, MVDTrigger.MANUAL_ACTIVATION, None):
        score = context.recovery_score
        return score is not None and score > RECOVERY_EXIT_THRESHOLD

    if trigger == MVDTrigger.ILLNESS_RISK:
        score = context.recovery_score
        illness_cleared = context.illness_risk in (None, IllnessRisk.NONE, IllnessRisk.LOW)
        return illness_cleared and score is not None and score > RECOVERY_EXIT_THRESHOLD

    if trigger == MVDTrigger.TRAVEL_DETECTED:
        if state.activated_at is not None:
            elapsed = _as_utc(context.now) - _as_utc(state.activated_at)
            if elapsed >= timedelta(days=TRAVEL_MAX_DAYS):
                return True
        offset = calculate_timezone_offset(context.user_timezone, context.device_timezone, context.now)
        return offset is not None and offset < TRAVEL_TIMEZONE_THRESHOLD_HOURS

    if trigger == MVDTrigger.HEAVY_CALENDAR:
        hours = context.meeting_hours_today
        return hours is not None and hours < HEAVY_CALENDAR_HOURS

    recent = list(context.completion_history[:CONSISTENCY_EXIT_DAYS])
    return len(recent) == CONSISTENCY_EXIT_DAYS and all(rate > CONSISTENCY_THRESHOLD for rate in recent)


# =============================================================================
# EVALUATION
# =============================================================================

def _activate(user_id: str, hit: TriggerHit, now: datetime, manual: bool = False) -> MVDState:
    return MVDState(
        user_id=user_id,
        is_active=True,
        mvd_type=hit.mvd_type,
        trigger=hit.trigger,
        activated_at=now,
        exit_condition=EXIT_CONDITIONS[hit.trigger],
        last_checked_at=now,
        manual_override=manual,
        reason=hit.reason,
    )


def evaluate(context: MVDDetectionContext, current: Optional[MVDState] = None) -> MVDState:
    """
    Re-derive a user's MVD state from today's context.

    Args:
        context: Recovery, illness risk, timezones, completion history and meeting load
        current: Persisted state, or None for a user never evaluated

    Returns:
        The new MVDState (unchanged fields carried over when nothing transitions)

    Raises:
        MalformedInputError: state and context belong to different users, or an
            unknown illness risk
    """
    if current is not None and current.user_id != context.user_id:
        raise MalformedInputError("MVD state and context belong to different users", stage="mvd")
    if context.recovery_score is not None and not 0 <= context.recovery_score <= 100:
        raise MalformedInputError("recovery_score must be between 0 and 100", field="recovery_score", stage="mvd")
    if context.illness_risk is not None:
        try:
            context = replace(context, illness_risk=IllnessRisk(context.illness_risk))
        except ValueError:
            raise MalformedInputError(
                f"Unknown illness risk: {context.illness_risk}", field="illness_risk", stage="mvd",
            )

    now = context.now
    current = current or inactive_state(context.user_id)
    best = resolve_triggers(collect_triggers(context))

    if not current.is_active:
        if best is None:
            return inactive_state(context.user_id, now, "No MVD triggers detected")
        logger.info(f"MVD activated for user {context.user_id}: {best.mvd_type.value} ({best.reason})")
        return _activate(context.user_id, best, now)

    if exit_condition_met(current, context):
        if best is None:
            logger.info(f"MVD deactivated for user {context.user_id}: {current.exit_condition}")
            return inactive_state(context.user_id, now, f"Exit condition met: {current.exit_condition}")
        logger.info(f"MVD switched for user {context.user_id}: {best.mvd_type.value} ({best.reason})")
        return _activate(context.user_id, best, now)

    current_rank = MVD_TYPE_RESTRICTIVENESS.get(current.mvd_type, 0)
    if best is not None and MVD_TYPE_RESTRICTIVENESS[best.mvd_type] > current_rank:
        logger.info(
            f"MVD escalated for user {context.user_id}: "
            f"{current.mvd_type.value} -> {best.mvd_type.value} ({best.reason})"
        )
        return _activate(context.user_id, best, now)

    return replace(current, last_checked_at=now, manual_override=False, reason="MVD remains active")


def activate_manually(user_id: str, now: datetime, mvd_type: MVDType = MVDType.FULL) -> MVDState:
    """User-initiated "Tough Day"; holds until the next evaluate()."""
    hit = TriggerHit(MVDTrigger.MANUAL_ACTIVATION, MVDType(mvd_type), 'User activated "Tough Day" mode')
    logger.info(f"MVD manually activated for user {user_id}: {hit.mvd_type.value}")
    return _activate(user_id, hit, now, manual=True)


def deactivate_manually(user_id: str, now: datetime) -> MVDState:
    logger.info(f"MVD manually deactivated for user {user_id}")
    return replace(
        inactive_state(user_id, now, "User deactivated MVD"),
        manual_override=True,
    )


def describe_transition(previous: Optional[MVDState], current: MVDState) -> str:
    """'activated' | 'deactivated' | 'switched' | 'unchanged'."""
    was_active = previous is not None and previous.is_active
    if current.is_active and not was_active:
        return "activated"
    if was_active and not current.is_active:
        return "deactivated"
    if was_active and (previous.mvd_type != current.mvd_type or previous.trigger != current.trigger):
        return "switched"
    return "unchanged"


def get_mvd_status_summary(state: Optional[MVDState]) -> str:
    if state is None or not state.is_active:
        return "MVD not active - full protocol access available"
    type_name = state.mvd_type.value if state.mvd_type else "unknown"
    description = get_mvd_type_description(state.mvd_type) if state.mvd_type else ""
    return f"MVD active ({type_name}): {description}. Exit condition: {state.exit_condition}"
