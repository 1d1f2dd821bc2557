from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, date
from typing import Optional, List, Dict, Any, Literal

from services.suppression_engine import parse_quiet_hour


def _quiet_hour(value: Any) -> Optional[int]:
    """Accept "HH:MM" or a bare hour; anything else is a validation error."""
    if value is None or isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 23:
        return value
    hour = parse_quiet_hour(value) if isinstance(value, str) else None
    if hour is None:
        raise ValueError("must be HH:MM with hour 0-23")
    return hour


# =============================================================================
# RECOVERY / CHECK-IN
# =============================================================================

class RecoveryScoreRequest(BaseModel):
    """Today's wearable row plus the history the baseline is built from."""
    user_id: str
    today: Dict[str, Any]
    history: List[Dict[str, Any]] = Field(default_factory=list)
    menstrual_cycle_tracking: bool = False
    cycle_day: Optional[int] = None


class ComponentScoreResponse(BaseModel):
    name: str
    available: bool
    score: float
    raw: Optional[float] = None
    weight: float
    effective_weight: float
    vs_baseline: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class EdgeCasesResponse(BaseModel):
    illness_risk: str
    illness_signals: List[str] = []
    alcohol_detected: bool = False
    menstrual_phase_adjustment: bool = False


class RecommendationResponse(BaseModel):
    type: str
    headline: str
    body: str
    protocols: List[str] = []
    activate_mvd: bool = False

    model_config = ConfigDict(from_attributes=True)


class RecoveryScoreResponse(BaseModel):
    """
    status is 'scored', 'baseline_not_ready' or 'insufficient_signals'.
    Score fields are only present when scored.
    """
    status: Literal["scored", "baseline_not_ready", "insufficient_signals"]
    user_id: str
    score: Optional[int] = None
    zone: Optional[str] = None
    confidence: Optional[float] = None
    components: Dict[str, ComponentScoreResponse] = {}
    temperature_penalty: Optional[int] = None
    edge_cases: Optional[EdgeCasesResponse] = None
    reasoning: Optional[str] = None
    recommendations: List[RecommendationResponse] = []
    data_completeness: Optional[int] = None
    missing_inputs: List[str] = []
    is_lite_mode: bool = False
    sample_count: Optional[int] = None
    minimum_required: Optional[int] = None
    message: Optional[str] = None


class CheckInRequest(BaseModel):
    user_id: str
    sleep_quality: Optional[int] = None     # 1-5
    sleep_hours: Optional[str] = None       # "<5" | "5-6" | "6-7" | "7-8" | "8+"
    energy_level: Optional[int] = None      # 1-5
    skipped: bool = False


class CheckInComponentResponse(BaseModel):
    score: float
    weight: float
    label: str
    rating: Optional[int] = None
    hours: Optional[float] = None
    vs_target: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CheckInResponse(BaseModel):
    user_id: str
    score: int
    zone: str
    confidence: float
    components: Dict[str, CheckInComponentResponse]
    reasoning: str
    recommendations: List[RecommendationResponse] = []
    skipped: bool = False
    is_lite_mode: bool = True


# =============================================================================
# WAKE
# =============================================================================

class WakeDetectRequest(BaseModel):
    user_id: str
    source: str                              # wearable | movement | phone_unlock | manual
    timezone: str = "UTC"
    sleep_end_time: Optional[datetime] = None
    sleep_start_time: Optional[datetime] = None
    movement_time: Optional[datetime] = None
    phone_unlock_time: Optional[datetime] = None
    user_confirmed_at: Optional[datetime] = None
    reported_wake_time: Optional[datetime] = None
    is_workday: Optional[bool] = None

    # Morning Anchor preferences
    now: Optional[datetime] = None
    morning_anchor_enabled: bool = True
    quiet_hours_start: Optional[int] = None  # accepts "HH:MM"
    quiet_hours_end: Optional[int] = None
    travel_detected: bool = False
    active_protocol_ids: List[str] = []

    @field_validator("quiet_hours_start", "quiet_hours_end", mode="before")
    @classmethod
    def parse_quiet_hours(cls, value):
        return _quiet_hour(value)


class MorningAnchorWindowResponse(BaseModel):
    start: datetime
    optimal: datetime
    end: datetime


class WakeDetectResponse(BaseModel):
    user_id: str
    detected: bool
    reason: str
    wake_time: Optional[datetime] = None
    local_date: Optional[date] = None
    method: Optional[str] = None
    confidence: float = 0.0
    within_window: bool = False
    window: Optional[MorningAnchorWindowResponse] = None
    event_created: bool = False
    event_upgraded: bool = False
    morning_anchor: Optional[Literal["trigger", "skip"]] = None
    skip_reason: Optional[str] = None
    anchor_protocols: List[str] = []


# =============================================================================
# MVD
# =============================================================================

class MVDEvaluateRequest(BaseModel):
    user_id: str
    now: Optional[datetime] = None
    recovery_score: Optional[float] = None
    user_timezone: Optional[str] = None
    device_timezone: Optional[str] = None
    completion_history: List[float] = []     # daily completion %, most recent first
    meeting_hours_today: Optional[float] = None
    illness_risk: Optional[str] = None       # none | low | medium | high


class MVDOverrideRequest(BaseModel):
    user_id: str
    active: bool
    mvd_type: Optional[str] = None           # full | semi_active | travel


class MVDStateResponse(BaseModel):
    user_id: str
    is_active: bool
    mvd_type: Optional[str] = None
    trigger: Optional[str] = None
    activated_at: Optional[datetime] = None
    exit_condition: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    manual_override: bool = False
    reason: str = ""
    transition: Optional[str] = None
    summary: str
    approved_protocols: List[str] = []


# =============================================================================
# SUPPRESSION
# =============================================================================

class SuppressionEvaluateRequest(BaseModel):
    now: Optional[datetime] = None
    nudge_priority: Literal["CRITICAL", "ADAPTIVE", "STANDARD"] = "STANDARD"
    confidence_score: float = 1.0
    protocol_id: Optional[str] = None
    timezone: Optional[str] = None
    quiet_hours_start: Optional[int] = None  # accepts "HH:MM"
    quiet_hours_end: Optional[int] = None
    nudges_sent_today: int = 0
    last_nudge_at: Optional[datetime] = None
    consecutive_dismissals: int = 0
    meeting_hours_today: float = 0.0
    recovery_score: Optional[float] = None
    recovery_zone: Optional[str] = None
    current_streak: int = 0
    is_morning_anchor: bool = False
    mvd_active: bool = False
    mvd_type: Optional[str] = None
    illness_risk: Optional[str] = None       # none | low | medium | high

    @field_validator("quiet_hours_start", "quiet_hours_end", mode="before")
    @classmethod
    def parse_quiet_hours(cls, value):
        return _quiet_hour(value)


class SuppressionResponse(BaseModel):
    allowed: bool
    decision: str                            # "allowed" or the blocking rule id
    blocked_by: Optional[str] = None
    reason: Optional[str] = None
    rules_checked: List[str] = []
    was_overridden: bool = False
    overridden_rule: Optional[str] = None


# =============================================================================
# SAFETY
# =============================================================================

class SafetyScanRequest(BaseModel):
    text: str
    source: Literal["user_input", "ai_response", "nudge"] = "user_input"


class CrisisResourceResponse(BaseModel):
    name: str
    description: str
    contact: str
    type: str


class SafetyScanResponse(BaseModel):
    source: str
    safe: bool
    severity: Optional[str] = None
    severity_description: str
    matched_keywords: List[str] = []
    resources: List[CrisisResourceResponse] = []
    requires_intervention: bool = False
    response_text: Optional[str] = None      # crisis response or safe fallback
    rules_version: str
