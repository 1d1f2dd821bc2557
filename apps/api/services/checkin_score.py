"""
Check-in Score Calculator (no-wearable path)

Simplified readiness score from three self-reported answers:

    Score = SleepQuality × 0.40 + SleepDuration × 0.35 + Energy × 0.25

Differences from the wearable RecoveryScore:
    - Three components instead of five biometrics plus temperature
    - Confidence is fixed at 0.60: self-report never earns wearable certainty,
      no matter how many check-ins the user has completed
    - No edge-case detection
    - Same zone breakpoints (determine_zone) so MVD and suppression read both alike
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
import logging

from core.exceptions import MalformedInputError
from services.recovery_score import Recommendation, RecoveryZone, determine_zone

logger = logging.getLogger(__name__)


CHECK_IN_WEIGHTS = {
    "sleep_quality": 0.40,
    "sleep_duration": 0.35,
    "energy_level": 0.25,
}

MAX_CHECK_IN_CONFIDENCE = 0.60
SKIPPED_CHECK_IN_CONFIDENCE = 0.30

# Categorical hour buckets → representative midpoints
SLEEP_HOURS_MAP: Dict[str, float] = {
    "<5": 4.5,
    "5-6": 5.5,
    "6-7": 6.5,
    "7-8": 7.5,
    "8+": 8.5,
}
TARGET_SLEEP_HOURS = 7.5
ON_TARGET_TOLERANCE_HOURS = 0.25
POINTS_PER_HOUR_UNDER = 15
POINTS_PER_HOUR_OVER = 5
MIN_UNDERSLEPT_SCORE = 20
MIN_OVERSLEPT_SCORE = 70

SLEEP_QUALITY_LABELS = {1: "Poor", 2: "Fair", 3: "Okay", 4: "Good", 5: "Great"}
ENERGY_LEVEL_LABELS = {1: "Exhausted", 2: "Low", 3: "Moderate", 4: "Good", 5: "Energized"}


@dataclass(frozen=True)
class CheckInInput:
    sleep_quality: int        # 1-5
    sleep_hours: str          # key of SLEEP_HOURS_MAP
    energy_level: int         # 1-5


DEFAULT_CHECK_IN = CheckInInput(sleep_quality=3, sleep_hours="7-8", energy_level=3)


@dataclass
class CheckInComponent:
    score: float
    weight: float
    label: str
    rating: Optional[int] = None
    hours: Optional[float] = None
    vs_target: Optional[str] = None


@dataclass
class CheckInResult:
    user_id: str
    score: int
    zone: RecoveryZone
    confidence: float
    components: Dict[str, CheckInComponent]
    reasoning: str
    recommendations: List[Recommendation] = field(default_factory=list)
    skipped: bool = False
    is_lite_mode: bool = True


def bucket_for_hours(hours: float) -> str:
    """Map a numeric sleep duration onto its check-in bucket."""
    if hours < 5:
        return "<5"
    if hours < 6:
        return "5-6"
    if hours < 7:
        return "6-7"
    if hours < 8:
        return "7-8"
    return "8+"


def validate_check_in(payload: Any) -> CheckInInput:
    """
    Validate raw check-in answers.

    Raises:
        MalformedInputError: payload is not a mapping or an answer is out of domain
    """
    if not isinstance(payload, Mapping):
        raise MalformedInputError("check-in must be an object", stage="checkin")

    quality = payload.get("sleep_quality")
    energy = payload.get("energy_level")
    hours = payload.get("sleep_hours")

    if isinstance(quality, bool) or not isinstance(quality, int) or not 1 <= quality <= 5:
        raise MalformedInputError("sleep_quality must be a number between 1 and 5", field="sleep_quality", stage="checkin")
    if isinstance(energy, bool) or not isinstance(energy, int) or not 1 <= energy <= 5:
        raise MalformedInputError("energy_level must be a number between 1 and 5", field="energy_level", stage="checkin")
    if hours not in SLEEP_HOURS_MAP:
        raise MalformedInputError(
            f"sleep_hours must be one of: {', '.join(SLEEP_HOURS_MAP)}", field="sleep_hours", stage="checkin"
        )
    return CheckInInput(sleep_quality=quality, sleep_hours=hours, energy_level=energy)


def rating_to_score(rating: int) -> int:
    return rating * 20


def calculate_sleep_duration_score(hours: float, target: float = TARGET_SLEEP_HOURS):
    """Returns (score, vs_target). Undersleep costs 15/h, oversleep 5/h."""
    diff = hours - target
    if abs(diff) < ON_TARGET_TOLERANCE_HOURS:
        return 100, "On target"
    if diff < 0:
        score = max(MIN_UNDERSLEPT_SCORE, 100 + diff * POINTS_PER_HOUR_UNDER)
        return round(score), f"-{abs(diff):.1f}h from target"
    score = max(MIN_OVERSLEPT_SCORE, 100 - diff * POINTS_PER_HOUR_OVER)
    return round(score), f"+{diff:.1f}h over target"


def build_components(check_in: CheckInInput) -> Dict[str, CheckInComponent]:
    hours = SLEEP_HOURS_MAP[check_in.sleep_hours]
    duration_score, vs_target = calculate_sleep_duration_score(hours)
    return {
        "sleep_quality": CheckInComponent(
            score=rating_to_score(check_in.sleep_quality),
            weight=CHECK_IN_WEIGHTS["sleep_quality"],
            label=SLEEP_QUALITY_LABELS[check_in.sleep_quality],
            rating=check_in.sleep_quality,
        ),
        "sleep_duration": CheckInComponent(
            score=duration_score,
            weight=CHECK_IN_WEIGHTS["sleep_duration"],
            label=check_in.sleep_hours,
            hours=hours,
            vs_target=vs_target,
        ),
        "energy_level": CheckInComponent(
            score=rating_to_score(check_in.energy_level),
            weight=CHECK_IN_WEIGHTS["energy_level"],
            label=ENERGY_LEVEL_LABELS[check_in.energy_level],
            rating=check_in.energy_level,
        ),
    }


def generate_recommendations(zone: RecoveryZone, components: Dict[str, CheckInComponent]) -> List[Recommendation]:
    recommendations: List[Recommendation] = []

    if zone == RecoveryZone.GREEN:
        recommendations.append(Recommendation(
            type="training",
            headline="Green light for activity",
            body="Your check-in suggests good readiness. This is a great day for challenging workouts or demanding tasks.",
            protocols=["high_intensity_training", "cold_exposure"],
        ))
    elif zone == RecoveryZone.YELLOW:
        recommendations.append(Recommendation(
            type="recovery",
            headline="Moderate readiness",
            body="Your check-in suggests moderate readiness. Consider lighter activity and prioritize recovery protocols.",
            protocols=["light_movement", "breathwork", "hydration"],
        ))
        if components["sleep_quality"].score < 60:
            recommendations.append(Recommendation(
                type="rest",
                headline="Sleep quality was low",
                body="Consider a 20-minute nap today if possible, and prioritize sleep hygiene tonight.",
                protocols=["nap_protocol", "sleep_hygiene"],
            ))
        if components["energy_level"].score < 60:
            recommendations.append(Recommendation(
                type="health",
                headline="Energy needs support",
                body="Start with natural light exposure and consider a walk outside to boost alertness.",
                protocols=["morning_sunlight", "light_walk"],
            ))
    else:
        recommendations.append(Recommendation(
            type="rest",
            headline="Prioritize recovery today",
            body="Your check-in suggests you need rest. Skip intense workouts and focus on recovery.",
            protocols=["rest_day", "gentle_stretching", "hydration"],
            activate_mvd=True,
        ))
        if components["sleep_duration"].score < 60:
            recommendations.append(Recommendation(
                type="rest",
                headline="Sleep deficit detected",
                body="You may be under-slept. Try to go to bed 30-60 minutes earlier tonight.",
                protocols=["early_bedtime", "wind_down_routine"],
            ))

    return recommendations


def _generate_reasoning(zone: RecoveryZone, components: Dict[str, CheckInComponent], skipped: bool) -> str:
    if skipped:
        return (
            "Check-in was skipped. Using default values for a baseline score. "
            "Complete tomorrow's check-in for personalized guidance."
        )

    quality = components["sleep_quality"]
    duration = components["sleep_duration"]
    energy = components["energy_level"]

    if zone == RecoveryZone.GREEN:
        parts = ["Good readiness based on your morning check-in."]
    elif zone == RecoveryZone.YELLOW:
        parts = ["Moderate readiness today."]
    else:
        parts = ["Low readiness detected, prioritize recovery."]

    if quality.score >= 80:
        parts.append(f"Sleep quality was {quality.label.lower()}.")
    elif quality.score <= 40:
        parts.append(f"Sleep quality was {quality.label.lower()}, which impacts recovery.")

    if duration.score < 70:
        parts.append(f"Sleep duration: {duration.vs_target}.")

    if energy.score >= 80:
        parts.append(f"Starting the day with {energy.label.lower()} energy.")
    elif energy.score <= 40:
        parts.append(f"Energy is {energy.label.lower()}, pace yourself today.")

    return " ".join(parts)


def score_check_in(user_id: str, check_in: Optional[CheckInInput] = None, skipped: bool = False) -> CheckInResult:
    """
    Score a manual morning check-in.

    Args:
        user_id: Owner of the check-in
        check_in: Validated answers (ignored when skipped)
        skipped: User skipped the check-in; defaults are scored at 0.30 confidence

    Returns:
        CheckInResult whose confidence never exceeds MAX_CHECK_IN_CONFIDENCE
    """
    effective = DEFAULT_CHECK_IN if skipped or check_in is None else check_in
    skipped = skipped or check_in is None
    components = build_components(effective)

    raw = sum(c.score * c.weight for c in components.values())
    score = int(round(raw))
    zone = determine_zone(score)
    confidence = SKIPPED_CHECK_IN_CONFIDENCE if skipped else MAX_CHECK_IN_CONFIDENCE

    logger.info(f"Check-in score for user {user_id}: score={score} zone={zone.value} skipped={skipped}")
    return CheckInResult(
        user_id=user_id,
        score=score,
        zone=zone,
        confidence=min(confidence, MAX_CHECK_IN_CONFIDENCE),
        components=components,
        reasoning=_generate_reasoning(zone, components, skipped),
        recommendations=generate_recommendations(zone, components),
        skipped=skipped,
    )


def check_in_from_signals(sleep_quality: int, sleep_hours: float, energy_level: int) -> CheckInInput:
    """Rebuild check-in answers from a stored manual DailySignalSet."""
    return CheckInInput(
        sleep_quality=sleep_quality,
        sleep_hours=bucket_for_hours(sleep_hours),
        energy_level=energy_level,
    )
