"""
Safety Scanner

Last-mile text gate. Two entry points, both plain string matching so the
result never depends on the generative model:

- scan_user_input: crisis detection on what the user typed. Benign-use
  exclusions apply ("cutting carbs" is not self-harm). High and medium
  severity mean the normal reply is replaced by the crisis response.
- scan_ai_output: generated nudges and chat replies. Checks the
  AI-specific blocked phrases plus every crisis keyword with NO exclusions;
  any hit is high severity and the text is replaced by a fixed fallback.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple
import logging
import re

from core.exceptions import MalformedInputError
from services.safety_rules import (
    AI_OUTPUT_BLOCKED_PHRASES,
    CRISIS_KEYWORDS,
    RESOURCE_COUNT_BY_SEVERITY,
    SAFETY_RULES_VERSION,
    SEVERITY_DESCRIPTIONS,
    CrisisKeyword,
    CrisisResource,
    CrisisSeverity,
    get_highest_severity,
    get_resources_for_severity,
)

logger = logging.getLogger(__name__)

MAX_SCAN_LENGTH = 5000

_APOSTROPHES = re.compile(r"[‘’ʼ`]")
_WHITESPACE = re.compile(r"\s+")


class OutputSource(str, Enum):
    AI_RESPONSE = "ai_response"
    NUDGE = "nudge"


SAFE_FALLBACK_RESPONSES = {
    OutputSource.NUDGE: "Take a moment to check in with yourself today. How are you feeling?",
    OutputSource.AI_RESPONSE: (
        "I'd like to help you with your wellness journey. "
        "Could you tell me more about what you're working on?"
    ),
}

DEFAULT_CHAT_RESPONSE = "I'm here to help with wellness guidance. How can I assist you today?"

CRISIS_OPENERS = {
    CrisisSeverity.HIGH: (
        "I'm concerned about what you're sharing. Your safety matters, and I want to make sure "
        "you have the support you need right now. Please reach out to one of these resources:"
    ),
    CrisisSeverity.MEDIUM: (
        "I hear that you're going through something difficult. You don't have to face this alone. "
        "Here are some resources that can help:"
    ),
    CrisisSeverity.LOW: (
        "I understand this can be challenging. There are people who specialize in supporting you "
        "through this. Here are some helpful resources:"
    ),
}

CRISIS_FOOTER = (
    "Remember: reaching out for help is a sign of strength, not weakness. "
    "These services are free, confidential, and available 24/7."
)


@dataclass
class CrisisDetectionResult:
    detected: bool
    severity: Optional[CrisisSeverity] = None
    matched_keywords: List[str] = field(default_factory=list)
    resources: List[CrisisResource] = field(default_factory=list)
    should_log: bool = False
    rules_version: str = SAFETY_RULES_VERSION


@dataclass
class AIOutputScanResult:
    safe: bool
    source: OutputSource
    flagged_keywords: List[str] = field(default_factory=list)
    severity: Optional[CrisisSeverity] = None
    reason: Optional[str] = None
    rules_version: str = SAFETY_RULES_VERSION


def normalize_text(text: str) -> str:
    """Lowercase, unify apostrophes, collapse whitespace."""
    text = _APOSTROPHES.sub("'", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def _prepare(text: Optional[str]) -> str:
    if text is None:
        return ""
    if not isinstance(text, str):
        raise MalformedInputError("text to scan must be a string", field="text", stage="safety")
    return normalize_text(text[:MAX_SCAN_LENGTH])


def _spans(text: str, phrase: str) -> List[Tuple[int, int]]:
    return [(m.start(), m.end()) for m in re.finditer(re.escape(phrase.lower()), text)]


def is_excluded_occurrence(start: int, end: int, exclusion_spans: List[Tuple[int, int]]) -> bool:
    """True when an exclusion phrase covers this exact keyword occurrence."""
    return any(x_start <= start and end <= x_end for x_start, x_end in exclusion_spans)


def has_unexcluded_occurrence(text: str, keyword: CrisisKeyword) -> bool:
    """
    A keyword counts if at least one of its occurrences sits outside every
    exclusion phrase. "suicide prevention" only vetoes the "suicide" inside it.
    """
    exclusion_spans = [span for exclusion in keyword.exclusions for span in _spans(text, exclusion)]
    return any(
        not is_excluded_occurrence(start, end, exclusion_spans)
        for start, end in _spans(text, keyword.phrase)
    )


def find_matching_keywords(text: str, apply_exclusions: bool = True) -> List[CrisisKeyword]:
    """Keywords present in already-normalized text, in table order."""
    matches = []
    for keyword in CRISIS_KEYWORDS:
        if keyword.phrase not in text:
            continue
        if apply_exclusions and not has_unexcluded_occurrence(text, keyword):
            continue
        matches.append(keyword)
    return matches


def scan_user_input(text: Optional[str]) -> CrisisDetectionResult:
    """
    Crisis detection on inbound user text.

    Returns:
        CrisisDetectionResult with the highest severity among non-excluded
        matches and the resources for that severity (4 high, 3 medium, 2 low).

    Raises:
        MalformedInputError: text is not a string
    """
    normalized = _prepare(text)
    if not normalized:
        return CrisisDetectionResult(detected=False)

    matches = find_matching_keywords(normalized)
    if not matches:
        return CrisisDetectionResult(detected=False)

    severity = get_highest_severity(k.severity for k in matches)
    resources = get_resources_for_severity(severity, RESOURCE_COUNT_BY_SEVERITY[severity])
    logger.info(f"Crisis indicators detected in user input: severity={severity.value}, matches={len(matches)}")
    return CrisisDetectionResult(
        detected=True,
        severity=severity,
        matched_keywords=[k.phrase for k in matches],
        resources=resources,
        should_log=True,
    )


def scan_ai_output(text: Optional[str], source: OutputSource = OutputSource.AI_RESPONSE) -> AIOutputScanResult:
    """
    Scan generated text before it reaches the user.

    Every match is high severity; callers replace flagged text with
    get_safe_fallback_response(source).

    Raises:
        MalformedInputError: text is not a string or source is unknown
    """
    try:
        source = OutputSource(source)
    except ValueError:
        raise MalformedInputError(f"unknown output source: {source!r}", field="source", stage="safety") from None

    normalized = _prepare(text)
    if not normalized:
        return AIOutputScanResult(safe=True, source=source)

    flagged = [phrase for phrase in AI_OUTPUT_BLOCKED_PHRASES if phrase in normalized]
    for keyword in find_matching_keywords(normalized, apply_exclusions=False):
        if keyword.phrase not in flagged:
            flagged.append(keyword.phrase)

    if not flagged:
        return AIOutputScanResult(safe=True, source=source)

    logger.warning(f"Generated {source.value} flagged by safety scan: {len(flagged)} phrase(s)")
    return AIOutputScanResult(
        safe=False,
        source=source,
        flagged_keywords=flagged,
        severity=CrisisSeverity.HIGH,
        reason=f"AI output contained flagged content: {', '.join(flagged)}",
    )


def should_suppress_output(result: AIOutputScanResult) -> bool:
    return not result.safe and result.severity == CrisisSeverity.HIGH


def get_safe_fallback_response(source: OutputSource) -> str:
    return SAFE_FALLBACK_RESPONSES[OutputSource(source)]


def requires_immediate_intervention(result: CrisisDetectionResult) -> bool:
    """High and medium severity defer the normal reply entirely."""
    return result.detected and result.severity in (CrisisSeverity.HIGH, CrisisSeverity.MEDIUM)


def generate_crisis_response(result: CrisisDetectionResult) -> str:
    if not result.detected or not result.resources:
        return DEFAULT_CHAT_RESPONSE

    parts = [CRISIS_OPENERS[result.severity]]
    for resource in result.resources:
        parts.append(f"**{resource.name}**\n{resource.description}\n{resource.contact}")
    parts.append(CRISIS_FOOTER)
    return "\n\n".join(parts)


def get_severity_description(severity: Optional[CrisisSeverity]) -> str:
    if severity is None:
        return "No crisis detected"
    return SEVERITY_DESCRIPTIONS[CrisisSeverity(severity)]
