"""
Confidence Scorer

Scores how well one candidate protocol nudge fits the user right now.
Five independent factors (each 0-1) are weighted into an overall score:

    protocol_fit       0.25  goal ↔ module / keyword alignment
    memory_support     0.25  net sentiment of the user's stored memories
    timing_fit         0.20  category and name cues vs time of day, recovery-aware
    conflict_risk      0.15  inverse of constraint and same-batch conflicts
    evidence_strength  0.15  evidence level of the protocol

A score under CONFIDENCE_SUPPRESSION_THRESHOLD is only *marked* low-confidence
here; the suppression engine decides whether that actually blocks delivery.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence
import logging

from core.exceptions import MalformedInputError

logger = logging.getLogger(__name__)


class EvidenceLevel(str, Enum):
    VERY_HIGH = "Very High"
    HIGH = "High"
    MODERATE = "Moderate"
    EMERGING = "Emerging"


class PrimaryGoal(str, Enum):
    BETTER_SLEEP = "better_sleep"
    MORE_ENERGY = "more_energy"
    SHARPER_FOCUS = "sharper_focus"
    FASTER_RECOVERY = "faster_recovery"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class MemoryType(str, Enum):
    NUDGE_FEEDBACK = "nudge_feedback"
    PROTOCOL_EFFECTIVENESS = "protocol_effectiveness"
    PREFERRED_TIME = "preferred_time"
    STATED_PREFERENCE = "stated_preference"
    PATTERN_DETECTED = "pattern_detected"
    PREFERENCE_CONSTRAINT = "preference_constraint"


CONFIDENCE_WEIGHTS = {
    "protocol_fit": 0.25,
    "memory_support": 0.25,
    "timing_fit": 0.20,
    "conflict_risk": 0.15,
    "evidence_strength": 0.15,
}

EVIDENCE_SCORES = {
    EvidenceLevel.VERY_HIGH: 1.0,
    EvidenceLevel.HIGH: 0.8,
    EvidenceLevel.MODERATE: 0.6,
    EvidenceLevel.EMERGING: 0.4,
}
DEFAULT_EVIDENCE_LEVEL = EvidenceLevel.HIGH

CONFIDENCE_SUPPRESSION_THRESHOLD = 0.4

GOAL_MODULE_MAPPING = {
    PrimaryGoal.BETTER_SLEEP: ("sleep_optimization", "recovery", "stress_management"),
    PrimaryGoal.MORE_ENERGY: ("energy_optimization", "morning_routine", "performance"),
    PrimaryGoal.SHARPER_FOCUS: ("cognitive_performance", "focus_optimization", "performance"),
    PrimaryGoal.FASTER_RECOVERY: ("recovery", "stress_management", "sleep_optimization"),
}

GOAL_KEYWORDS = {
    PrimaryGoal.BETTER_SLEEP: ("sleep", "evening", "recovery", "melatonin", "light", "nsdr"),
    PrimaryGoal.MORE_ENERGY: ("morning", "energy", "caffeine", "light", "exercise", "hydration"),
    PrimaryGoal.SHARPER_FOCUS: ("focus", "cognitive", "attention", "caffeine", "nsdr"),
    PrimaryGoal.FASTER_RECOVERY: ("recovery", "nsdr", "breathing", "cold", "hrv", "sleep"),
}

CATEGORY_TIME_MAPPING = {
    "Foundation": (TimeOfDay.MORNING, TimeOfDay.EVENING),
    "Performance": (TimeOfDay.MORNING, TimeOfDay.AFTERNOON),
    "Recovery": (TimeOfDay.AFTERNOON, TimeOfDay.EVENING, TimeOfDay.NIGHT),
    "Optimization": (TimeOfDay.MORNING, TimeOfDay.AFTERNOON, TimeOfDay.EVENING),
    "Meta": (TimeOfDay.MORNING, TimeOfDay.EVENING),
}
DEFAULT_CATEGORY = "Optimization"

# Protocol fit tiers
MODULE_MATCH_FIT = 1.0
KEYWORD_MATCH_FIT = 0.7
BASE_FIT = 0.3

# Memory support
NEUTRAL_MEMORY_SUPPORT = 0.5
MEMORY_SUPPORT_SPREAD = 0.4
MIN_MEMORY_SUPPORT = 0.1
MAX_MEMORY_SUPPORT = 0.9
PROTOCOL_RELATED_MULTIPLIER = 2.0

# Timing
BASE_TIMING = 0.5
LOW_RECOVERY_TIMING_SCORE = 40
HIGH_RECOVERY_TIMING_SCORE = 70

MIN_CONFLICT_SCORE = 0.1

# (constraint phrase, protocol name term, penalty)
CONSTRAINT_CONFLICTS = (
    ("no gym", "gym", 0.4),
    ("no caffeine", "caffeine", 0.4),
    ("no supplement", "supplement", 0.3),
)
COLD_CONSTRAINT_PENALTY = 0.4
SAME_CATEGORY_PENALTY = 0.1
CAFFEINE_SLEEP_PENALTY = 0.3
COLD_FITNESS_PENALTY = 0.15


@dataclass(frozen=True)
class ProtocolSummary:
    """Ranked protocol as returned by the candidate source."""
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    benefits: Optional[str] = None
    evidence_level: Optional[str] = None
    citations: Sequence[str] = ()
    score: float = 0.0


@dataclass(frozen=True)
class Memory:
    type: MemoryType
    content: str
    confidence: float = 0.5
    relevance_score: float = 1.0
    source_protocol_id: Optional[str] = None


@dataclass(frozen=True)
class UserContext:
    user_id: str
    primary_goal: PrimaryGoal
    module_id: str
    current_hour: int                       # user-local hour 0-23
    recovery_score: Optional[float] = None
    memories: Sequence[Memory] = ()
    other_protocols: Sequence[ProtocolSummary] = ()


@dataclass
class ConfidenceFactors:
    protocol_fit: float
    memory_support: float
    timing_fit: float
    conflict_risk: float
    evidence_strength: float

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in CONFIDENCE_WEIGHTS}


@dataclass
class ConfidenceScore:
    overall: float
    factors: ConfidenceFactors
    is_low_confidence: bool
    reasoning: str
    time_of_day: TimeOfDay = TimeOfDay.MORNING


def get_time_of_day(hour: int) -> TimeOfDay:
    if 5 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON
    if 17 <= hour < 21:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


def _lower(value: Optional[str]) -> str:
    return (value or "").lower()


# =============================================================================
# FACTORS
# =============================================================================

def calculate_protocol_fit(protocol: ProtocolSummary, user: UserContext) -> float:
    if user.module_id in GOAL_MODULE_MAPPING.get(user.primary_goal, ()):
        return MODULE_MATCH_FIT

    haystacks = (_lower(protocol.name), _lower(protocol.benefits), _lower(protocol.description))
    keywords = GOAL_KEYWORDS.get(user.primary_goal, ())
    if any(kw in text for kw in keywords for text in haystacks):
        return KEYWORD_MATCH_FIT
    return BASE_FIT


def _is_protocol_related(memory: Memory, protocol: ProtocolSummary) -> bool:
    content = memory.content.lower()
    name = _lower(protocol.name)
    return (
        memory.source_protocol_id == protocol.id
        or protocol.id.lower() in content
        or (bool(name) and name in content)
    )


def calculate_memory_support(protocol: ProtocolSummary, memories: Sequence[Memory]) -> float:
    """Net sentiment of memories mapped into [0.1, 0.9]; 0.5 with no memories."""
    if not memories:
        return NEUTRAL_MEMORY_SUPPORT

    positive = 0.0
    negative = 0.0
    total_weight = 0.0

    for memory in memories:
        weight = memory.confidence * memory.relevance_score
        total_weight += weight
        content = memory.content.lower()
        related = _is_protocol_related(memory, protocol)
        multiplier = PROTOCOL_RELATED_MULTIPLIER if related else 1.0

        if memory.type == MemoryType.PROTOCOL_EFFECTIVENESS:
            if "high effectiveness" in content or "works well" in content:
                positive += weight * multiplier * 1.5
            elif "low effectiveness" in content or "not effective" in content:
                negative += weight * multiplier * 1.5
            else:
                positive += weight * multiplier * 0.5
        elif memory.type == MemoryType.NUDGE_FEEDBACK:
            if "completed" in content:
                positive += weight * multiplier
            elif "dismissed" in content:
                negative += weight * multiplier * 1.2
            elif "snoozed" in content:
                negative += weight * multiplier * 0.3
        elif memory.type == MemoryType.STATED_PREFERENCE:
            if "like" in content or "prefer" in content or "love" in content:
                positive += weight * multiplier * 1.5
            elif "hate" in content or "dislike" in content or "avoid" in content:
                negative += weight * multiplier * 2.0
        elif memory.type == MemoryType.PREFERENCE_CONSTRAINT:
            if related:
                negative += weight * 3.0
        elif memory.type == MemoryType.PREFERRED_TIME:
            positive += weight * 0.3
        elif memory.type == MemoryType.PATTERN_DETECTED:
            positive += weight * 0.2

    if total_weight == 0:
        return NEUTRAL_MEMORY_SUPPORT

    net = (positive - negative) / (total_weight + 1)
    normalized = NEUTRAL_MEMORY_SUPPORT + net * MEMORY_SUPPORT_SPREAD
    return max(MIN_MEMORY_SUPPORT, min(MAX_MEMORY_SUPPORT, normalized))


def calculate_timing_fit(protocol: ProtocolSummary, time_of_day: TimeOfDay, recovery_score: Optional[float]) -> float:
    score = BASE_TIMING
    category = protocol.category or DEFAULT_CATEGORY
    optimal = CATEGORY_TIME_MAPPING.get(category, CATEGORY_TIME_MAPPING[DEFAULT_CATEGORY])
    score += 0.25 if time_of_day in optimal else -0.15

    name = _lower(protocol.name)
    if time_of_day == TimeOfDay.MORNING:
        if "morning" in name or "light" in name or "caffeine" in name:
            score += 0.2
        if "evening" in name or "sleep" in name:
            score -= 0.2
    if time_of_day in (TimeOfDay.EVENING, TimeOfDay.NIGHT):
        if "evening" in name or "sleep" in name or "nsdr" in name:
            score += 0.2
        if "morning" in name or "caffeine" in name:
            score -= 0.3

    if recovery_score is not None:
        is_recovery_protocol = (
            category == "Recovery" or "nsdr" in name or "breathing" in name or "recovery" in name
        )
        if recovery_score < LOW_RECOVERY_TIMING_SCORE:
            if is_recovery_protocol:
                score += 0.15
            if category == "Performance" and "fitness" in name:
                score -= 0.2
        elif recovery_score > HIGH_RECOVERY_TIMING_SCORE and category == "Performance":
            score += 0.1

    return max(0.0, min(1.0, score))


def calculate_conflict_risk(
    protocol: ProtocolSummary,
    memories: Sequence[Memory],
    other_protocols: Sequence[ProtocolSummary],
) -> float:
    """Higher is safer: 1.0 minus accumulated conflict penalties, floored at 0.1."""
    penalty = 0.0
    name = _lower(protocol.name)

    for constraint in (m for m in memories if m.type == MemoryType.PREFERENCE_CONSTRAINT):
        content = constraint.content.lower()
        for phrase, term, amount in CONSTRAINT_CONFLICTS:
            if phrase in content and term in name:
                penalty += amount
        if "cold" in content and "can't" in content and "cold" in name:
            penalty += COLD_CONSTRAINT_PENALTY

    for other in other_protocols:
        if other.id == protocol.id:
            continue
        if (protocol.category or "") == (other.category or ""):
            penalty += SAME_CATEGORY_PENALTY
        other_name = _lower(other.name)
        if ("caffeine" in name and "sleep" in other_name) or ("sleep" in name and "caffeine" in other_name):
            penalty += CAFFEINE_SLEEP_PENALTY
        if ("cold" in name and "fitness" in other_name) or ("fitness" in name and "cold" in other_name):
            penalty += COLD_FITNESS_PENALTY

    return max(MIN_CONFLICT_SCORE, 1.0 - penalty)


def calculate_evidence_strength(protocol: ProtocolSummary) -> float:
    try:
        level = EvidenceLevel(protocol.evidence_level)
    except ValueError:
        level = DEFAULT_EVIDENCE_LEVEL
    return EVIDENCE_SCORES[level]


# =============================================================================
# OVERALL
# =============================================================================

def generate_reasoning(factors: ConfidenceFactors, overall: float, protocol: ProtocolSummary, memory_count: int) -> str:
    percent = f"{overall * 100:.0f}%"
    if overall >= 0.7:
        parts = [f"High confidence ({percent})."]
    elif overall >= 0.5:
        parts = [f"Moderate confidence ({percent})."]
    elif overall >= CONFIDENCE_SUPPRESSION_THRESHOLD:
        parts = [f"Low confidence ({percent})."]
    else:
        parts = [f"Below threshold ({percent})."]

    notes: List[str] = []
    if factors.protocol_fit >= 0.8:
        notes.append("strong goal alignment")
    elif factors.protocol_fit < 0.4:
        notes.append("weak goal alignment")
    if factors.memory_support >= 0.7:
        notes.append("positive past feedback")
    elif factors.memory_support < 0.4:
        notes.append("negative past feedback")
    if factors.timing_fit >= 0.7:
        notes.append("optimal timing")
    elif factors.timing_fit < 0.4:
        notes.append("suboptimal timing")
    if factors.conflict_risk < 0.5:
        notes.append("potential conflicts")
    if factors.evidence_strength >= 0.9:
        notes.append("very high evidence")

    if notes:
        parts.append(f"Factors: {', '.join(notes)}.")
    if protocol.name:
        parts.append(f"Protocol: {protocol.name}.")
    if memory_count:
        parts.append(f"Based on {memory_count} relevant memories.")
    return " ".join(parts)


def score(candidate: ProtocolSummary, user: UserContext) -> ConfidenceScore:
    """
    Score one candidate protocol for a user.

    Args:
        candidate: Protocol from the candidate source
        user: Goal, module, local hour, recovery, memories and the rest of the batch

    Returns:
        ConfidenceScore with overall rounded to 2 decimals

    Raises:
        MalformedInputError: hour outside 0-23 or candidate without an id
    """
    if not candidate.id:
        raise MalformedInputError("candidate protocol has no id", field="protocol.id", stage="confidence")
    if not 0 <= user.current_hour <= 23:
        raise MalformedInputError("current_hour must be 0-23", field="current_hour", stage="confidence")

    time_of_day = get_time_of_day(user.current_hour)
    factors = ConfidenceFactors(
        protocol_fit=calculate_protocol_fit(candidate, user),
        memory_support=calculate_memory_support(candidate, user.memories),
        timing_fit=calculate_timing_fit(candidate, time_of_day, user.recovery_score),
        conflict_risk=calculate_conflict_risk(candidate, user.memories, user.other_protocols),
        evidence_strength=calculate_evidence_strength(candidate),
    )
    overall = round(sum(getattr(factors, name) * w for name, w in CONFIDENCE_WEIGHTS.items()), 2)

    result = ConfidenceScore(
        overall=overall,
        factors=factors,
        is_low_confidence=overall < CONFIDENCE_SUPPRESSION_THRESHOLD,
        reasoning=generate_reasoning(factors, overall, candidate, len(user.memories)),
        time_of_day=time_of_day,
    )
    logger.debug(f"Confidence for user {user.user_id} protocol {candidate.id}: {overall}")
    return result
