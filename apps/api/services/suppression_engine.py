"""
Suppression Engine

Final delivery gate for a nudge that already passed confidence scoring.
Nine rules are checked in fixed priority order; the first rule that blocks
(and cannot be overridden by the nudge's priority) ends evaluation, and its id
is the machine-readable block reason.

    1 daily_cap           >= 5 today (CRITICAL may go one over)
    2 quiet_hours         inside the user's quiet window (wraps midnight)
    3 cooldown            < 2h since the last delivered nudge (CRITICAL overrides)
    4 fatigue_detection   >= 3 consecutive dismissals
    5 meeting_awareness   >= 2 meeting hours, STANDARD only (CRITICAL/ADAPTIVE override)
    6 low_recovery        recovery < 30 or illness risk medium+: morning anchor or
                          MVD-eligible protocols only
    7 streak_respect      7+ day streak: deterministic 50% thinning
    8 low_confidence      confidence < 0.4
    9 mvd_active          protocol not on the active MVD allow-list

evaluate() is pure: "now" comes from the context, never the wall clock, so
a logged context replays to the same verdict.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import math
import re

from core.config import settings
from core.exceptions import MalformedInputError
from services.confidence_scorer import CONFIDENCE_SUPPRESSION_THRESHOLD
from services.mvd_protocols import MVDType, is_protocol_approved_for_mvd
from services.recovery_score import IllnessRisk

logger = logging.getLogger(__name__)


class NudgePriority(str, Enum):
    CRITICAL = "CRITICAL"
    ADAPTIVE = "ADAPTIVE"
    STANDARD = "STANDARD"


class RuleId(str, Enum):
    DAILY_CAP = "daily_cap"
    QUIET_HOURS = "quiet_hours"
    COOLDOWN = "cooldown"
    FATIGUE_DETECTION = "fatigue_detection"
    MEETING_AWARENESS = "meeting_awareness"
    LOW_RECOVERY = "low_recovery"
    STREAK_RESPECT = "streak_respect"
    LOW_CONFIDENCE = "low_confidence"
    MVD_ACTIVE = "mvd_active"


DAILY_CAP = 5
CRITICAL_CAP_TOLERANCE = 1
COOLDOWN = timedelta(hours=2)
FATIGUE_THRESHOLD = 3
MEETING_HOURS_THRESHOLD = 2
LOW_RECOVERY_THRESHOLD = 30
ILLNESS_RESTRICTION_LEVELS = (IllnessRisk.MEDIUM, IllnessRisk.HIGH)
STREAK_THRESHOLD = 7
LOW_CONFIDENCE_THRESHOLD = CONFIDENCE_SUPPRESSION_THRESHOLD

QUIET_HOUR_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(frozen=True)
class SuppressionContext:
    """Read-only snapshot assembled per decision. Never persisted."""
    now: datetime
    user_local_hour: int
    nudge_priority: NudgePriority = NudgePriority.STANDARD
    confidence_score: float = 1.0
    protocol_id: Optional[str] = None
    nudges_sent_today: int = 0
    last_nudge_at: Optional[datetime] = None
    consecutive_dismissals: int = 0
    quiet_hours_start: int = 22
    quiet_hours_end: int = 6
    timezone: Optional[str] = None
    recovery_score: Optional[float] = None
    recovery_zone: Optional[str] = None
    illness_risk: Optional[IllnessRisk] = None
    meeting_hours_today: float = 0.0
    current_streak: int = 0
    is_morning_anchor: bool = False
    mvd_active: bool = False
    mvd_type: Optional[MVDType] = None


@dataclass(frozen=True)
class RuleCheck:
    suppress: bool
    reason: Optional[str] = None


PASS = RuleCheck(suppress=False)


@dataclass(frozen=True)
class SuppressionRule:
    id: RuleId
    name: str
    check: Callable[[SuppressionContext], RuleCheck]
    override_by: Tuple[NudgePriority, ...] = ()
    # Extra condition an override must satisfy (e.g. the daily-cap tolerance)
    override_guard: Optional[Callable[[SuppressionContext], bool]] = None

    def can_override(self, context: SuppressionContext) -> bool:
        if context.nudge_priority not in self.override_by:
            return False
        return self.override_guard is None or self.override_guard(context)


@dataclass
class SuppressionResult:
    allowed: bool
    blocked_by: Optional[RuleId] = None
    reason: Optional[str] = None
    rules_checked: List[str] = field(default_factory=list)
    was_overridden: bool = False
    overridden_rule: Optional[RuleId] = None

    @property
    def decision(self) -> str:
        """'allowed' or the id of the blocking rule, for audit rows."""
        return "allowed" if self.allowed else self.blocked_by.value


# =============================================================================
# HELPERS
# =============================================================================

def is_in_quiet_hours(hour: int, start: int, end: int) -> bool:
    if start == end:
        return False
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def simple_hash(text: str) -> int:
    """32-bit string hash (h*31 + c); stable across processes, unlike hash()."""
    value = 0
    for char in text:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 2 ** 31:
        value -= 2 ** 32
    return abs(value)


def as_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def get_user_local_hour(moment: datetime, tz_name: Optional[str] = None) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if not tz_name:
        return moment.astimezone(timezone.utc).hour
    try:
        return moment.astimezone(ZoneInfo(tz_name)).hour
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone {tz_name!r}, falling back to UTC")
        return moment.astimezone(timezone.utc).hour


def parse_quiet_hour(value: Optional[str]) -> Optional[int]:
    """'22:00' -> 22. None for anything that is not a valid HH:MM hour."""
    if not value:
        return None
    match = QUIET_HOUR_PATTERN.match(value.strip())
    if not match:
        return None
    hour = int(match.group(1))
    return hour if 0 <= hour <= 23 else None


# =============================================================================
# RULES
# =============================================================================

def check_daily_cap(ctx: SuppressionContext) -> RuleCheck:
    if ctx.nudges_sent_today >= DAILY_CAP:
        return RuleCheck(True, f"Daily cap ({DAILY_CAP}) reached")
    return PASS


def _within_critical_tolerance(ctx: SuppressionContext) -> bool:
    return ctx.nudges_sent_today < DAILY_CAP + CRITICAL_CAP_TOLERANCE


def check_quiet_hours(ctx: SuppressionContext) -> RuleCheck:
    if is_in_quiet_hours(ctx.user_local_hour, ctx.quiet_hours_start, ctx.quiet_hours_end):
        return RuleCheck(True, f"Quiet hours ({ctx.quiet_hours_start}:00-{ctx.quiet_hours_end}:00)")
    return PASS


def check_cooldown(ctx: SuppressionContext) -> RuleCheck:
    if ctx.last_nudge_at is None:
        return PASS
    elapsed = as_utc(ctx.now) - as_utc(ctx.last_nudge_at)
    if elapsed < COOLDOWN:
        remaining = math.ceil((COOLDOWN - elapsed).total_seconds() / 60)
        return RuleCheck(True, f"2-hour cooldown not elapsed ({remaining} min remaining)")
    return PASS


def check_fatigue(ctx: SuppressionContext) -> RuleCheck:
    if ctx.consecutive_dismissals >= FATIGUE_THRESHOLD:
        return RuleCheck(True, f"{ctx.consecutive_dismissals}+ consecutive dismissals - pausing until tomorrow")
    return PASS


def check_meeting_awareness(ctx: SuppressionContext) -> RuleCheck:
    if ctx.meeting_hours_today >= MEETING_HOURS_THRESHOLD:
        return RuleCheck(True, f"{ctx.meeting_hours_today:g}+ meeting hours - suppressing {ctx.nudge_priority.value} nudge")
    return PASS


def check_low_recovery(ctx: SuppressionContext) -> RuleCheck:
    low_score = ctx.recovery_score is not None and ctx.recovery_score < LOW_RECOVERY_THRESHOLD
    unwell = ctx.illness_risk in ILLNESS_RESTRICTION_LEVELS
    if not (low_score or unwell):
        return PASS
    if ctx.is_morning_anchor:
        return PASS
    if ctx.protocol_id and is_protocol_approved_for_mvd(ctx.protocol_id, MVDType.FULL):
        return PASS
    if not low_score:
        return RuleCheck(True, f"Illness risk {IllnessRisk(ctx.illness_risk).value} - MVD-eligible protocols only")
    return RuleCheck(
        True,
        f"Recovery {ctx.recovery_score:g}% (<{LOW_RECOVERY_THRESHOLD}%) - MVD-eligible protocols only",
    )


def check_streak_respect(ctx: SuppressionContext) -> RuleCheck:
    if ctx.current_streak < STREAK_THRESHOLD:
        return PASS
    day = as_utc(ctx.now).date().isoformat()
    if simple_hash(f"{day}-{ctx.current_streak}") % 2 == 0:
        return RuleCheck(True, f"{ctx.current_streak}-day streak - reducing frequency (earned autonomy)")
    return PASS


def check_low_confidence(ctx: SuppressionContext) -> RuleCheck:
    if ctx.confidence_score < LOW_CONFIDENCE_THRESHOLD:
        return RuleCheck(
            True,
            f"Confidence {ctx.confidence_score * 100:.0f}% "
            f"(<{LOW_CONFIDENCE_THRESHOLD * 100:.0f}%) - below threshold",
        )
    return PASS


def check_mvd_active(ctx: SuppressionContext) -> RuleCheck:
    if not ctx.mvd_active:
        return PASS
    mvd_type = ctx.mvd_type or MVDType.FULL
    if ctx.protocol_id and is_protocol_approved_for_mvd(ctx.protocol_id, mvd_type):
        return PASS
    return RuleCheck(True, "MVD mode active - only essential nudges allowed")


SUPPRESSION_RULES: Tuple[SuppressionRule, ...] = (
    SuppressionRule(
        RuleId.DAILY_CAP, "Daily Cap", check_daily_cap,
        override_by=(NudgePriority.CRITICAL,), override_guard=_within_critical_tolerance,
    ),
    SuppressionRule(RuleId.QUIET_HOURS, "Quiet Hours", check_quiet_hours),
    SuppressionRule(RuleId.COOLDOWN, "Cooldown Period", check_cooldown, override_by=(NudgePriority.CRITICAL,)),
    SuppressionRule(RuleId.FATIGUE_DETECTION, "Fatigue Detection", check_fatigue),
    SuppressionRule(
        RuleId.MEETING_AWARENESS, "Meeting Awareness", check_meeting_awareness,
        override_by=(NudgePriority.CRITICAL, NudgePriority.ADAPTIVE),
    ),
    SuppressionRule(RuleId.LOW_RECOVERY, "Low Recovery Mode", check_low_recovery),
    SuppressionRule(RuleId.STREAK_RESPECT, "Streak Respect", check_streak_respect),
    SuppressionRule(RuleId.LOW_CONFIDENCE, "Low Confidence Filter", check_low_confidence),
    SuppressionRule(RuleId.MVD_ACTIVE, "MVD Active", check_mvd_active),
)


def get_rule_by_id(rule_id: str) -> Optional[SuppressionRule]:
    for rule in SUPPRESSION_RULES:
        if rule.id.value == rule_id:
            return rule
    return None


# =============================================================================
# ENGINE
# =============================================================================

def evaluate(context: SuppressionContext, rules: Tuple[SuppressionRule, ...] = SUPPRESSION_RULES) -> SuppressionResult:
    """
    Run the rules in order and stop at the first non-overridable block.

    Returns:
        SuppressionResult; rules_checked lists every rule evaluated, in order,
        ending with the blocking rule when blocked.
    """
    checked: List[str] = []
    overridden: Optional[RuleId] = None

    for rule in rules:
        checked.append(rule.id.value)
        outcome = rule.check(context)
        if not outcome.suppress:
            continue
        if rule.can_override(context):
            logger.debug(f"Rule {rule.id.value} overridden by {context.nudge_priority.value} nudge")
            overridden = rule.id
            continue
        return SuppressionResult(
            allowed=False,
            blocked_by=rule.id,
            reason=outcome.reason,
            rules_checked=checked,
            was_overridden=overridden is not None,
            overridden_rule=overridden,
        )

    return SuppressionResult(
        allowed=True,
        rules_checked=checked,
        was_overridden=overridden is not None,
        overridden_rule=overridden,
    )


def build_suppression_context(
    now: datetime,
    *,
    nudge_priority: NudgePriority = NudgePriority.STANDARD,
    confidence_score: float = 1.0,
    protocol_id: Optional[str] = None,
    timezone_name: Optional[str] = None,
    quiet_hours_start: Optional[int] = None,
    quiet_hours_end: Optional[int] = None,
    nudges_sent_today: int = 0,
    last_nudge_at: Optional[datetime] = None,
    consecutive_dismissals: int = 0,
    meeting_hours_today: float = 0.0,
    recovery_score: Optional[float] = None,
    recovery_zone: Optional[str] = None,
    current_streak: int = 0,
    is_morning_anchor: bool = False,
    mvd_active: bool = False,
    mvd_type: Optional[MVDType] = None,
    illness_risk: Optional[IllnessRisk] = None,
) -> SuppressionContext:
    """
    Assemble a SuppressionContext, filling defaults and deriving the local hour.

    Quiet hours fall back to DEFAULT_QUIET_HOURS_START/END from settings.

    Raises:
        MalformedInputError: negative counters, confidence outside 0-1, or an
            unknown illness risk
    """
    if nudges_sent_today < 0 or consecutive_dismissals < 0 or current_streak < 0:
        raise MalformedInputError("suppression counters cannot be negative", stage="suppression")
    if not 0.0 <= confidence_score <= 1.0:
        raise MalformedInputError("confidence_score must be between 0 and 1", field="confidence_score", stage="suppression")
    if meeting_hours_today < 0:
        raise MalformedInputError("meeting_hours_today cannot be negative", field="meeting_hours_today", stage="suppression")

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if last_nudge_at is not None and last_nudge_at.tzinfo is None:
        last_nudge_at = last_nudge_at.replace(tzinfo=timezone.utc)

    if illness_risk is not None:
        try:
            illness_risk = IllnessRisk(illness_risk)
        except ValueError:
            raise MalformedInputError(
                f"Unknown illness risk: {illness_risk}", field="illness_risk", stage="suppression",
            )

    start = quiet_hours_start if quiet_hours_start is not None else settings.DEFAULT_QUIET_HOURS_START
    end = quiet_hours_end if quiet_hours_end is not None else settings.DEFAULT_QUIET_HOURS_END
    for name, hour in (("quiet_hours_start", start), ("quiet_hours_end", end)):
        if not 0 <= hour <= 23:
            raise MalformedInputError(f"{name} must be an hour 0-23", field=name, stage="suppression")

    return SuppressionContext(
        now=now,
        user_local_hour=get_user_local_hour(now, timezone_name),
        nudge_priority=NudgePriority(nudge_priority),
        confidence_score=confidence_score,
        protocol_id=protocol_id,
        nudges_sent_today=nudges_sent_today,
        last_nudge_at=last_nudge_at,
        consecutive_dismissals=consecutive_dismissals,
        quiet_hours_start=start,
        quiet_hours_end=end,
        timezone=timezone_name,
        recovery_score=recovery_score,
        recovery_zone=recovery_zone,
        illness_risk=illness_risk,
        meeting_hours_today=meeting_hours_today,
        current_streak=current_streak,
        is_morning_anchor=is_morning_anchor,
        mvd_active=mvd_active,
        mvd_type=MVDType(mvd_type) if mvd_type else None,
    )
