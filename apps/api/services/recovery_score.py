"""
Recovery Score Calculator

Converts today's wearable signals plus the user's baseline into a 0-100
recovery score, a zone, a confidence value and advisory edge-case flags.

Architecture:
    DailySignalSet + UserBaseline
             ↓
    Component scores (each metric z-scored vs baseline, z clamped, mapped 0-100)
             ↓
    Weighted sum (weights redistributed over available components)
             ↓
    Temperature penalty (subtracted after weighting)
             ↓
    Score (clamped 0-100) → Zone (fixed breakpoints)

Edge cases (illness, alcohol, menstrual phase) are computed independently
and NEVER move the score. MVD and suppression read them as extra signals.

Weights:
    - HRV (0.40): autonomic recovery, the master signal
    - Resting HR (0.25): inverse, elevated RHR is bad
    - Sleep quality (0.20): efficiency + deep + REM composite
    - Sleep duration (0.10): vs the user's own target
    - Respiratory rate (0.05): inverse, population norms when no baseline
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union
import logging
import math

from core.exceptions import MalformedInputError
from services.baseline_engine import (
    BaselineConfidence,
    BaselineNotReady,
    METRIC_HRV_LN,
    METRIC_RESPIRATORY_RATE,
    METRIC_RESTING_HR,
    UserBaseline,
    check_baseline_ready,
)
from services.signal_normalizer import DailySignalSet, SignalSource

logger = logging.getLogger(__name__)


class RecoveryZone(str, Enum):
    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"


class IllnessRisk(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# CONSTANTS
# =============================================================================

COMPONENT_WEIGHTS: Dict[str, float] = {
    "hrv": 0.40,
    "rhr": 0.25,
    "sleep_quality": 0.20,
    "sleep_duration": 0.10,
    "respiratory_rate": 0.05,
}

# Zone breakpoints. MVD and suppression read zones, so these are the only
# place the bands are defined.
ZONE_GREEN_MIN = 67
ZONE_YELLOW_MIN = 34

# z-score → 0-100 mapping. Baseline day scores 70; each SD above adds 15
# (100 at +2 SD); each SD below costs 30 (0 at about -2.3 SD).
Z_SCORE_CLAMP = 3.0
BASELINE_COMPONENT_SCORE = 70.0
POINTS_PER_SD_ABOVE = 15.0
POINTS_PER_SD_BELOW = 30.0

# HRV fallbacks
HRV_METHOD_MISMATCH_SCORE = 65.0
FLAT_BASELINE_SCORE = 70.0

# Sleep quality composite
SLEEP_EFFICIENCY_WEIGHT = 0.4
SLEEP_EFFICIENCY_TARGET = 90.0
DEEP_SLEEP_WEIGHT = 0.3
DEEP_SLEEP_MIN_PCT = 15.0
DEEP_SLEEP_OPTIMAL_PCT = 20.0
REM_SLEEP_WEIGHT = 0.3
REM_SLEEP_MIN_PCT = 20.0
REM_SLEEP_OPTIMAL_PCT = 22.5
RATING_TO_SCORE = 20  # ordinal 1-5 → 20-100; only 1 ("Poor") counts as low quality

# Respiratory rate population norms (breaths/min)
RR_NORMAL_LOW = 12.0
RR_NORMAL_HIGH = 16.0
RR_BELOW_NORMAL_SCORE = 85.0
RR_POINTS_PER_BREATH_ABOVE = 10.0
RR_MIN_SCORE = 40.0

# Temperature penalty tiers (deviation °C → points)
TEMP_PENALTY_TIERS = (
    (0.3, 0),
    (0.5, -5),
    (0.75, -10),
)
TEMP_PENALTY_MAX = -15
LUTEAL_TEMP_ALLOWANCE = 0.3
LUTEAL_PHASE_START_DAY = 15
LUTEAL_PHASE_END_DAY = 28

# Edge case thresholds
ALCOHOL_RHR_ELEVATION_BPM = 5.0
ALCOHOL_HRV_REDUCTION_PCT = 25.0
ALCOHOL_REM_MAX_PCT = 14.0
ILLNESS_TEMP_DEVIATION = 0.5
ILLNESS_RR_ELEVATION = 2.0
ILLNESS_RHR_ELEVATION_BPM = 5.0
ILLNESS_HRV_REDUCTION_PCT = 30.0

# Confidence
WEARABLE_CONFIDENCE_CAP = 0.90
CONFIDENCE_FACTOR_WEIGHTS = {
    "data_recency": 0.30,
    "sample_size": 0.25,
    "correlation_strength": 0.20,
    "user_engagement": 0.15,
    "context_match": 0.10,
}
SAMPLE_SIZE_FACTOR = {
    BaselineConfidence.HIGH: 1.0,
    BaselineConfidence.MEDIUM: 0.7,
    BaselineConfidence.LOW: 0.4,
}


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ComponentScore:
    """One metric's contribution to the score."""
    name: str
    available: bool
    score: float = 0.0                     # 0-100
    raw: Optional[float] = None
    weight: float = 0.0                    # canonical weight
    effective_weight: float = 0.0          # after redistribution
    vs_baseline: Optional[str] = None

    @property
    def contribution(self) -> float:
        return round(self.score * self.effective_weight, 2)


@dataclass
class TemperaturePenalty:
    deviation: Optional[float]
    penalty: int
    adjusted_for_cycle: bool = False


@dataclass
class EdgeCases:
    illness_risk: IllnessRisk = IllnessRisk.NONE
    illness_signals: List[str] = field(default_factory=list)
    alcohol_detected: bool = False
    menstrual_phase_adjustment: bool = False

    @property
    def any(self) -> bool:
        return self.alcohol_detected or self.illness_risk != IllnessRisk.NONE or self.menstrual_phase_adjustment


@dataclass
class Recommendation:
    type: str
    headline: str
    body: str
    protocols: List[str] = field(default_factory=list)
    activate_mvd: bool = False


@dataclass
class RecoveryResult:
    """Scored day. Zone is always determine_zone(score)."""
    user_id: str
    score: int
    zone: RecoveryZone
    confidence: float
    components: Dict[str, ComponentScore]
    temperature_penalty: TemperaturePenalty
    edge_cases: EdgeCases
    reasoning: str
    recommendations: List[Recommendation]
    data_completeness: int
    missing_inputs: List[str]
    is_lite_mode: bool = False


@dataclass(frozen=True)
class InsufficientSignals:
    """No scorable signal for today. Distinct from a legitimately low score."""
    user_id: str
    missing_inputs: List[str]

    @property
    def message(self) -> str:
        return f"No scorable signals today (missing: {', '.join(self.missing_inputs)})"


RecoveryOutcome = Union[RecoveryResult, BaselineNotReady, InsufficientSignals]


# =============================================================================
# ZONE / MAPPING
# =============================================================================

def determine_zone(score: float) -> RecoveryZone:
    """Map a final score to its zone. Monotonic, contiguous, non-overlapping."""
    if score >= ZONE_GREEN_MIN:
        return RecoveryZone.GREEN
    if score >= ZONE_YELLOW_MIN:
        return RecoveryZone.YELLOW
    return RecoveryZone.RED


def z_score_to_score(z: float) -> float:
    """Map a z-score onto 0-100 after clamping it to ±Z_SCORE_CLAMP."""
    z = max(-Z_SCORE_CLAMP, min(Z_SCORE_CLAMP, z))
    if z >= 0:
        score = BASELINE_COMPONENT_SCORE + z * POINTS_PER_SD_ABOVE
    else:
        score = BASELINE_COMPONENT_SCORE + z * POINTS_PER_SD_BELOW
    return max(0.0, min(100.0, score))


def _pct_vs(value: float, reference: float) -> str:
    if reference == 0:
        return "n/a"
    pct = (value - reference) / reference * 100
    return f"{pct:+.0f}%"


# =============================================================================
# COMPONENT SCORERS
# =============================================================================

def calculate_hrv_score(signals: DailySignalSet, baseline: UserBaseline) -> ComponentScore:
    component = ComponentScore(name="hrv", available=False, weight=COMPONENT_WEIGHTS["hrv"])
    metric = baseline.metric(METRIC_HRV_LN)
    if signals.hrv_ms is None or metric is None:
        return component

    component.available = True
    component.raw = signals.hrv_ms
    if signals.hrv_method != baseline.hrv_method:
        # RMSSD and SDNN are not comparable; score neutral-ish rather than wrong
        component.score = HRV_METHOD_MISMATCH_SCORE
        component.vs_baseline = "method mismatch"
        return component
    if metric.std_dev <= 0:
        component.score = FLAT_BASELINE_SCORE
        component.vs_baseline = "flat baseline"
        return component

    z = (math.log(signals.hrv_ms) - metric.mean) / metric.std_dev
    component.score = round(z_score_to_score(z), 1)
    component.vs_baseline = _pct_vs(signals.hrv_ms, math.exp(metric.mean))
    return component


def calculate_rhr_score(signals: DailySignalSet, baseline: UserBaseline) -> ComponentScore:
    component = ComponentScore(name="rhr", available=False, weight=COMPONENT_WEIGHTS["rhr"])
    metric = baseline.metric(METRIC_RESTING_HR)
    if signals.resting_hr is None or metric is None:
        return component

    component.available = True
    component.raw = signals.resting_hr
    component.vs_baseline = f"{signals.resting_hr - metric.mean:+.0f} bpm"
    if metric.std_dev <= 0:
        component.score = FLAT_BASELINE_SCORE
        return component
    # Inverse: higher resting HR is worse
    z = (signals.resting_hr - metric.mean) / metric.std_dev
    component.score = round(z_score_to_score(-z), 1)
    return component


@dataclass
class SleepQualityComposite:
    available: bool
    score: float = 0.0
    efficiency: Optional[float] = None
    deep_pct: Optional[float] = None
    rem_pct: Optional[float] = None


def _stage_score(pct: float, minimum: float, optimal: float) -> float:
    if pct >= optimal:
        return 100.0
    if pct >= minimum:
        return 70.0 + (pct - minimum) / (optimal - minimum) * 30.0
    return max(0.0, pct / minimum * 70.0)


def calculate_sleep_quality_score(
    efficiency: Optional[float],
    deep_pct: Optional[float],
    rem_pct: Optional[float],
) -> SleepQualityComposite:
    """Composite of efficiency, deep % and REM %, weights renormalized over what exists."""
    parts = []
    if efficiency is not None:
        parts.append((min(100.0, max(0.0, efficiency / SLEEP_EFFICIENCY_TARGET * 100)), SLEEP_EFFICIENCY_WEIGHT))
    if deep_pct is not None:
        parts.append((_stage_score(deep_pct, DEEP_SLEEP_MIN_PCT, DEEP_SLEEP_OPTIMAL_PCT), DEEP_SLEEP_WEIGHT))
    if rem_pct is not None:
        parts.append((_stage_score(rem_pct, REM_SLEEP_MIN_PCT, REM_SLEEP_OPTIMAL_PCT), REM_SLEEP_WEIGHT))
    if not parts:
        return SleepQualityComposite(available=False)

    total_weight = sum(w for _, w in parts)
    score = sum(s * w for s, w in parts) / total_weight
    return SleepQualityComposite(
        available=True,
        score=round(score, 1),
        efficiency=efficiency,
        deep_pct=deep_pct,
        rem_pct=rem_pct,
    )


def _sleep_quality_component(signals: DailySignalSet) -> ComponentScore:
    component = ComponentScore(name="sleep_quality", available=False, weight=COMPONENT_WEIGHTS["sleep_quality"])
    if signals.has_sleep_stages:
        composite = calculate_sleep_quality_score(signals.sleep_efficiency, signals.deep_pct, signals.rem_pct)
        component.available = composite.available
        component.score = composite.score
        component.raw = signals.sleep_efficiency
        component.vs_baseline = "stage composite"
    elif signals.sleep_quality is not None:
        component.available = True
        component.score = float(signals.sleep_quality * RATING_TO_SCORE)
        component.raw = float(signals.sleep_quality)
        component.vs_baseline = "self-rated"
    return component


def calculate_sleep_duration_score(hours: Optional[float], target_minutes: float) -> ComponentScore:
    component = ComponentScore(name="sleep_duration", available=False, weight=COMPONENT_WEIGHTS["sleep_duration"])
    if hours is None or target_minutes <= 0:
        return component

    ratio = hours * 60 / target_minutes
    if ratio >= 1.0:
        score = 100.0
    elif ratio >= 0.8:
        score = 70.0 + (ratio - 0.8) / 0.2 * 30.0
    elif ratio >= 0.6:
        score = 40.0 + (ratio - 0.6) / 0.2 * 30.0
    else:
        score = ratio / 0.6 * 40.0

    component.available = True
    component.raw = hours
    component.score = round(score, 1)
    component.vs_baseline = f"{ratio * 100:.0f}% of target"
    return component


def calculate_respiratory_rate_score(signals: DailySignalSet, baseline: UserBaseline) -> ComponentScore:
    component = ComponentScore(
        name="respiratory_rate", available=False, weight=COMPONENT_WEIGHTS["respiratory_rate"]
    )
    rr = signals.respiratory_rate
    if rr is None:
        return component

    component.available = True
    component.raw = rr
    metric = baseline.metric(METRIC_RESPIRATORY_RATE)
    if metric is not None and metric.std_dev > 0:
        z = (rr - metric.mean) / metric.std_dev
        component.score = round(z_score_to_score(-z), 1)
        component.vs_baseline = f"{rr - metric.mean:+.1f} br/min"
        return component

    # No personal baseline: fall back to population norms
    if RR_NORMAL_LOW <= rr <= RR_NORMAL_HIGH:
        component.score = 100.0
    elif rr < RR_NORMAL_LOW:
        component.score = RR_BELOW_NORMAL_SCORE
    else:
        component.score = max(RR_MIN_SCORE, 100.0 - (rr - RR_NORMAL_HIGH) * RR_POINTS_PER_BREATH_ABOVE)
    component.vs_baseline = "population norm"
    return component


def in_luteal_phase(baseline: UserBaseline) -> bool:
    return (
        baseline.menstrual_cycle_tracking
        and baseline.cycle_day is not None
        and LUTEAL_PHASE_START_DAY <= baseline.cycle_day <= LUTEAL_PHASE_END_DAY
    )


def calculate_temperature_penalty(deviation: Optional[float], baseline: UserBaseline) -> TemperaturePenalty:
    if deviation is None:
        return TemperaturePenalty(deviation=None, penalty=0)

    adjusted = in_luteal_phase(baseline)
    effective = abs(deviation)
    if adjusted:
        effective = max(0.0, effective - LUTEAL_TEMP_ALLOWANCE)

    penalty = TEMP_PENALTY_MAX
    for ceiling, points in TEMP_PENALTY_TIERS:
        if effective <= ceiling:
            penalty = points
            break
    return TemperaturePenalty(deviation=deviation, penalty=penalty, adjusted_for_cycle=adjusted)


def redistribute_weights(available: List[str]) -> Dict[str, float]:
    """Scale canonical weights so the available components still sum to 1.0."""
    total = sum(COMPONENT_WEIGHTS[name] for name in available)
    if total <= 0:
        return {name: 0.0 for name in COMPONENT_WEIGHTS}
    return {
        name: (COMPONENT_WEIGHTS[name] / total if name in available else 0.0)
        for name in COMPONENT_WEIGHTS
    }


# =============================================================================
# EDGE CASES
# =============================================================================

def _hrv_reduction_pct(signals: DailySignalSet, baseline: UserBaseline) -> Optional[float]:
    metric = baseline.metric(METRIC_HRV_LN)
    if signals.hrv_ms is None or metric is None or signals.hrv_method != baseline.hrv_method:
        return None
    reference = math.exp(metric.mean)
    return (reference - signals.hrv_ms) / reference * 100


def detect_edge_cases(signals: DailySignalSet, baseline: UserBaseline) -> EdgeCases:
    """Advisory flags. Computed independently of the score and never change it."""
    edge_cases = EdgeCases()
    hrv_drop = _hrv_reduction_pct(signals, baseline)
    rhr_metric = baseline.metric(METRIC_RESTING_HR)
    rhr_rise = (
        signals.resting_hr - rhr_metric.mean
        if signals.resting_hr is not None and rhr_metric is not None
        else None
    )

    # Alcohol: elevated RHR + suppressed HRV + suppressed REM, all at once
    if (
        rhr_rise is not None and rhr_rise >= ALCOHOL_RHR_ELEVATION_BPM
        and hrv_drop is not None and hrv_drop >= ALCOHOL_HRV_REDUCTION_PCT
        and signals.rem_pct is not None and signals.rem_pct < ALCOHOL_REM_MAX_PCT
    ):
        edge_cases.alcohol_detected = True

    # Illness: count simultaneous signals
    if signals.temperature_deviation is not None and signals.temperature_deviation >= ILLNESS_TEMP_DEVIATION:
        edge_cases.illness_signals.append("temperature")
    rr_metric = baseline.metric(METRIC_RESPIRATORY_RATE)
    if (
        signals.respiratory_rate is not None and rr_metric is not None
        and signals.respiratory_rate - rr_metric.mean >= ILLNESS_RR_ELEVATION
    ):
        edge_cases.illness_signals.append("respiratory_rate")
    if rhr_rise is not None and rhr_rise >= ILLNESS_RHR_ELEVATION_BPM:
        edge_cases.illness_signals.append("resting_hr")
    if hrv_drop is not None and hrv_drop >= ILLNESS_HRV_REDUCTION_PCT:
        edge_cases.illness_signals.append("hrv")

    count = len(edge_cases.illness_signals)
    if count >= 3:
        edge_cases.illness_risk = IllnessRisk.HIGH
    elif count == 2:
        edge_cases.illness_risk = IllnessRisk.MEDIUM
    elif count == 1:
        edge_cases.illness_risk = IllnessRisk.LOW

    edge_cases.menstrual_phase_adjustment = in_luteal_phase(baseline)
    return edge_cases


# =============================================================================
# RECOMMENDATIONS / REASONING
# =============================================================================

def generate_recommendations(zone: RecoveryZone, edge_cases: EdgeCases) -> List[Recommendation]:
    recommendations: List[Recommendation] = []

    if zone == RecoveryZone.GREEN:
        recommendations.append(Recommendation(
            type="training",
            headline="Ready for high intensity",
            body="Your recovery metrics indicate you're well-rested. This is a good day for challenging workouts or skill practice.",
            protocols=["fitness_template", "hiit"],
        ))
    elif zone == RecoveryZone.YELLOW:
        recommendations.append(Recommendation(
            type="training",
            headline="Moderate activity recommended",
            body="Your recovery is moderate. Consider lighter activity today or focus on technique work rather than intensity.",
            protocols=["walking", "stretching"],
        ))
    else:
        recommendations.append(Recommendation(
            type="rest",
            headline="Prioritize recovery today",
            body="Your metrics suggest you need rest. Focus on sleep, nutrition, and low-stress activities.",
            protocols=["nsdr", "evening_routine"],
            activate_mvd=True,
        ))

    if edge_cases.alcohol_detected:
        recommendations.append(Recommendation(
            type="recovery",
            headline="Elevated stress markers detected",
            body="Your biometrics show patterns consistent with recent alcohol consumption. Consider extra hydration and rest today.",
            protocols=["hydration", "nsdr"],
        ))

    if edge_cases.illness_risk != IllnessRisk.NONE:
        high = edge_cases.illness_risk == IllnessRisk.HIGH
        recommendations.append(Recommendation(
            type="health",
            headline="Early illness warning" if high else "Monitor your health",
            body=(
                "Multiple biometric indicators suggest you may be fighting off an illness. Rest is strongly recommended."
                if high else
                "Some markers are slightly elevated. Pay attention to how you feel today."
            ),
            protocols=["rest_mode"],
            activate_mvd=high,
        ))

    return recommendations


_REASONING_LABELS = {
    "hrv": "HRV",
    "rhr": "RHR",
    "sleep_quality": "Sleep Quality",
    "sleep_duration": "Sleep Duration",
    "respiratory_rate": "Respiratory Rate",
}


def _generate_reasoning(
    score: int,
    zone: RecoveryZone,
    components: Dict[str, ComponentScore],
    edge_cases: EdgeCases,
) -> str:
    parts = [f"Recovery Score: {score}/100 ({zone.value.upper()} zone)."]

    scored = [c for c in components.values() if c.available and c.score > 0]
    if scored:
        scored.sort(key=lambda c: c.score * c.weight, reverse=True)
        top = [_REASONING_LABELS[c.name] for c in scored[:2]]
        parts.append(f"Top contributors: {', '.join(top)}.")

    if edge_cases.alcohol_detected:
        parts.append("Alcohol consumption pattern detected.")
    if edge_cases.illness_risk != IllnessRisk.NONE:
        parts.append(f"Illness risk: {edge_cases.illness_risk.value}.")
    if edge_cases.menstrual_phase_adjustment:
        parts.append("Luteal phase temperature adjustment applied.")

    return " ".join(parts)


def calculate_confidence(baseline: UserBaseline) -> float:
    factors = {
        "data_recency": 1.0,
        "sample_size": SAMPLE_SIZE_FACTOR[baseline.confidence_level],
        "correlation_strength": 0.7,
        "user_engagement": 0.8,
        "context_match": 0.8,
    }
    confidence = sum(factors[name] * weight for name, weight in CONFIDENCE_FACTOR_WEIGHTS.items())
    return round(min(WEARABLE_CONFIDENCE_CAP, confidence), 2)


# =============================================================================
# MAIN CALCULATOR
# =============================================================================

def compute_recovery(signals: DailySignalSet, baseline: Optional[UserBaseline]) -> RecoveryOutcome:
    """
    Score one day of wearable signals against the user's baseline.

    Args:
        signals: Today's canonical signals
        baseline: The user's baseline, or None if none exists yet

    Returns:
        RecoveryResult when scorable, BaselineNotReady when history is too
        short, InsufficientSignals when nothing today can be scored.

    Raises:
        MalformedInputError: signals and baseline belong to different users,
            or a manual check-in row was routed to the wearable scorer.
    """
    if baseline is not None and baseline.user_id != signals.user_id:
        raise MalformedInputError("signals and baseline belong to different users", stage="recovery")
    if signals.source != SignalSource.WEARABLE:
        raise MalformedInputError("manual check-in signals must use the check-in scorer", stage="recovery")

    not_ready = check_baseline_ready(signals.user_id, baseline)
    if not_ready is not None:
        logger.info(
            f"Baseline not ready for user {signals.user_id}: "
            f"{not_ready.sample_count}/{not_ready.minimum_required}"
        )
        return not_ready

    components = {
        "hrv": calculate_hrv_score(signals, baseline),
        "rhr": calculate_rhr_score(signals, baseline),
        "sleep_quality": _sleep_quality_component(signals),
        "sleep_duration": calculate_sleep_duration_score(signals.sleep_hours, baseline.sleep_target_minutes),
        "respiratory_rate": calculate_respiratory_rate_score(signals, baseline),
    }
    available = [name for name, c in components.items() if c.available]
    missing = [name for name, c in components.items() if not c.available]
    if not available:
        return InsufficientSignals(user_id=signals.user_id, missing_inputs=missing)

    weights = redistribute_weights(available)
    for name, component in components.items():
        component.effective_weight = round(weights[name], 4)

    penalty = calculate_temperature_penalty(signals.temperature_deviation, baseline)
    raw_score = sum(c.score * weights[name] for name, c in components.items()) + penalty.penalty
    score = int(max(0, min(100, round(raw_score))))
    zone = determine_zone(score)

    edge_cases = detect_edge_cases(signals, baseline)
    result = RecoveryResult(
        user_id=signals.user_id,
        score=score,
        zone=zone,
        confidence=calculate_confidence(baseline),
        components=components,
        temperature_penalty=penalty,
        edge_cases=edge_cases,
        reasoning=_generate_reasoning(score, zone, components, edge_cases),
        recommendations=generate_recommendations(zone, edge_cases),
        data_completeness=round(len(available) / len(COMPONENT_WEIGHTS) * 100),
        missing_inputs=missing,
    )
    logger.info(
        f"Recovery for user {signals.user_id} on {signals.signal_date}: "
        f"score={score} zone={zone.value} confidence={result.confidence}"
    )
    return result
