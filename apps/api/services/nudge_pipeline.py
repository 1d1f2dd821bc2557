"""
Nudge Pipeline

Runs one decision for one user:

    candidates -> MVD allow-list -> ConfidenceScorer -> SuppressionEngine
               -> text generation -> SafetyScanner -> NudgeDecision

Every stage except text generation is a pure function; the caller fetches
state beforehand and this module only writes the decision row and the audit
trail afterwards. Any failure fails closed: nothing is delivered and the
decision carries a machine-readable reason.

Chat replies take a shorter path: user input is crisis-scanned first, and
high/medium severity returns the crisis response without calling the model.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence
import logging

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import PipelineError, UpstreamDependencyError
from models import NudgeDecisionLog
from services import audit_logger
from services.confidence_scorer import ConfidenceScore, ProtocolSummary, UserContext, score as score_confidence
from services.mvd_detector import MVDState
from services.mvd_protocols import is_protocol_approved_for_mvd
from services.safety_scanner import (
    AIOutputScanResult,
    CrisisDetectionResult,
    OutputSource,
    generate_crisis_response,
    get_safe_fallback_response,
    requires_immediate_intervention,
    scan_ai_output,
    scan_user_input,
    should_suppress_output,
)
from services.suppression_engine import (
    NudgePriority,
    RuleId,
    SuppressionResult,
    build_suppression_context,
    evaluate as evaluate_suppression,
)

logger = logging.getLogger(__name__)

# generate(system_prompt, user_prompt) -> text
TextGenerator = Callable[[str, str], str]

NUDGE_SYSTEM_PROMPT = (
    "You are a warm, concise wellness coach. Write a single nudge of at most two "
    "sentences encouraging the user to complete the given protocol. Do not give "
    "medical advice."
)

CHAT_SYSTEM_PROMPT = (
    "You are a supportive wellness coach. Answer briefly and practically. "
    "Never give medical diagnoses."
)


class NudgeSource(str, Enum):
    SCHEDULE = "schedule"
    NUDGE = "nudge"
    MANUAL = "manual"


class FailClosedReason(str, Enum):
    NO_CANDIDATES = "no_candidates"
    GENERATION_FAILED = "generation_failed"
    PIPELINE_ERROR = "pipeline_error"


ALLOWED = "allowed"
SAFETY_FALLBACK = "safety_fallback"
CRISIS_INTERVENTION = "crisis_intervention"


@dataclass
class NudgeCandidate:
    protocol: ProtocolSummary
    module_id: str
    source: NudgeSource = NudgeSource.NUDGE
    priority: NudgePriority = NudgePriority.STANDARD
    confidence: Optional[ConfidenceScore] = None
    suppression: Optional[SuppressionResult] = None
    text: Optional[str] = None
    safety: Optional[AIOutputScanResult] = None

    @property
    def protocol_id(self) -> str:
        return self.protocol.id


@dataclass(frozen=True)
class DeliveryState:
    """Counters and preferences the caller loaded for the suppression snapshot."""
    now: datetime
    timezone: Optional[str] = None
    nudges_sent_today: int = 0
    last_nudge_at: Optional[datetime] = None
    consecutive_dismissals: int = 0
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None
    recovery_zone: Optional[str] = None
    illness_risk: Optional[str] = None
    meeting_hours_today: float = 0.0
    current_streak: int = 0
    is_morning_anchor: bool = False
    mvd_state: Optional[MVDState] = None


@dataclass
class NudgeDecision:
    user_id: str
    delivered: bool
    reason: str
    candidate: Optional[NudgeCandidate] = None
    text: Optional[str] = None
    evaluated: List[NudgeCandidate] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def confidence(self) -> Optional[float]:
        if self.candidate is None or self.candidate.confidence is None:
            return None
        return self.candidate.confidence.overall


@dataclass
class ChatReply:
    user_id: str
    text: Optional[str]
    reason: str
    crisis: CrisisDetectionResult
    safety: Optional[AIOutputScanResult] = None


# =============================================================================
# TEXT GENERATION
# =============================================================================

def generate_with_timeout(
    generate: TextGenerator,
    system_prompt: str,
    user_prompt: str,
    timeout_s: Optional[float] = None,
) -> str:
    """
    Call the external generator with a hard timeout.

    Raises:
        UpstreamDependencyError: the call raised, timed out, or returned no text
    """
    timeout_s = settings.TEXT_GENERATION_TIMEOUT_S if timeout_s is None else timeout_s
    pool = ThreadPoolExecutor(max_workers=1)
    future = pool.submit(generate, system_prompt, user_prompt)
    try:
        text = future.result(timeout=timeout_s)
    except FuturesTimeout:
        future.cancel()
        raise UpstreamDependencyError("text_generation", f"timed out after {timeout_s}s", timed_out=True)
    except Exception as e:
        raise UpstreamDependencyError("text_generation", str(e)) from e
    finally:
        pool.shutdown(wait=False)

    if not isinstance(text, str) or not text.strip():
        raise UpstreamDependencyError("text_generation", "empty completion")
    return text.strip()


def build_nudge_prompt(candidate: NudgeCandidate, user: UserContext) -> str:
    citations = ", ".join(candidate.protocol.citations) or "Evidence-based"
    recovery = f"{user.recovery_score:.0f}" if user.recovery_score is not None else "N/A"
    return (
        f"Recovery Score: {recovery}\n"
        f"Focus Module: {candidate.module_id}\n"
        f"Protocol: {candidate.protocol.name or candidate.protocol_id}\n"
        f"Benefits: {candidate.protocol.benefits or 'n/a'}\n"
        f"Evidence: {citations}\n\n"
        "Task: write the nudge."
    )


# =============================================================================
# NUDGE DECISION
# =============================================================================

def filter_for_mvd(candidates: Sequence[NudgeCandidate], mvd_state: Optional[MVDState]) -> List[NudgeCandidate]:
    if mvd_state is None or not mvd_state.is_active:
        return list(candidates)
    return [c for c in candidates if is_protocol_approved_for_mvd(c.protocol_id, mvd_state.mvd_type)]


def rank_candidates(candidates: Sequence[NudgeCandidate], user: UserContext) -> List[NudgeCandidate]:
    """Score every candidate against the batch and sort by confidence, stable."""
    batch = [c.protocol for c in candidates]
    scored = []
    for candidate in candidates:
        peers = [p for p in batch if p.id != candidate.protocol_id]
        confidence = score_confidence(candidate.protocol, replace(user, other_protocols=peers))
        scored.append(replace(candidate, confidence=confidence))
    return sorted(scored, key=lambda c: c.confidence.overall, reverse=True)


def _gate(candidate: NudgeCandidate, user: UserContext, state: DeliveryState) -> NudgeCandidate:
    mvd = state.mvd_state
    context = build_suppression_context(
        state.now,
        nudge_priority=candidate.priority,
        confidence_score=candidate.confidence.overall,
        protocol_id=candidate.protocol_id,
        timezone_name=state.timezone,
        quiet_hours_start=state.quiet_hours_start,
        quiet_hours_end=state.quiet_hours_end,
        nudges_sent_today=state.nudges_sent_today,
        last_nudge_at=state.last_nudge_at,
        consecutive_dismissals=state.consecutive_dismissals,
        meeting_hours_today=state.meeting_hours_today,
        recovery_score=user.recovery_score,
        recovery_zone=state.recovery_zone,
        illness_risk=state.illness_risk,
        current_streak=state.current_streak,
        is_morning_anchor=state.is_morning_anchor,
        mvd_active=bool(mvd and mvd.is_active),
        mvd_type=mvd.mvd_type if mvd and mvd.is_active else None,
    )
    return replace(candidate, suppression=evaluate_suppression(context))


def _run(
    user: UserContext,
    candidates: Sequence[NudgeCandidate],
    state: DeliveryState,
    generate: TextGenerator,
) -> NudgeDecision:
    if not candidates:
        return NudgeDecision(user.user_id, delivered=False, reason=FailClosedReason.NO_CANDIDATES.value)

    eligible = filter_for_mvd(candidates, state.mvd_state)
    if not eligible:
        return NudgeDecision(user.user_id, delivered=False, reason=RuleId.MVD_ACTIVE.value)

    ranked = [_gate(c, user, state) for c in rank_candidates(eligible, user)]
    chosen = next((c for c in ranked if c.suppression.allowed), None)
    if chosen is None:
        top = ranked[0]
        return NudgeDecision(
            user.user_id,
            delivered=False,
            reason=top.suppression.blocked_by.value,
            candidate=top,
            evaluated=ranked,
        )

    try:
        text = generate_with_timeout(generate, NUDGE_SYSTEM_PROMPT, build_nudge_prompt(chosen, user))
    except UpstreamDependencyError as e:
        logger.warning(f"Nudge generation failed for user {user.user_id}: {e.message}")
        return NudgeDecision(
            user.user_id,
            delivered=False,
            reason=FailClosedReason.GENERATION_FAILED.value,
            candidate=chosen,
            evaluated=ranked,
            error=e.message,
        )

    safety = scan_ai_output(text, OutputSource.NUDGE)
    chosen = replace(chosen, safety=safety)
    if should_suppress_output(safety):
        audit_logger.log_safety_flag(
            user.user_id,
            source=OutputSource.NUDGE.value,
            severity=safety.severity.value,
            keywords=safety.flagged_keywords,
            rules_version=safety.rules_version,
        )
        fallback = get_safe_fallback_response(OutputSource.NUDGE)
        return NudgeDecision(
            user.user_id,
            delivered=True,
            reason=SAFETY_FALLBACK,
            candidate=replace(chosen, text=fallback),
            text=fallback,
            evaluated=ranked,
        )

    return NudgeDecision(
        user.user_id,
        delivered=True,
        reason=ALLOWED,
        candidate=replace(chosen, text=text),
        text=text,
        evaluated=ranked,
    )


def record_decision(db: Session, decision: NudgeDecision, decided_at: datetime) -> NudgeDecisionLog:
    candidate = decision.candidate
    suppression = candidate.suppression if candidate else None
    safety = candidate.safety if candidate else None
    row = NudgeDecisionLog(
        user_id=decision.user_id,
        protocol_id=candidate.protocol_id if candidate else None,
        module_id=candidate.module_id if candidate else None,
        source=candidate.source.value if candidate else NudgeSource.NUDGE.value,
        delivered=decision.delivered,
        reason=decision.reason,
        confidence=decision.confidence,
        blocked_by=suppression.blocked_by.value if suppression and suppression.blocked_by else None,
        safety_severity=safety.severity.value if safety and safety.severity else None,
        rules_checked=suppression.rules_checked if suppression else None,
        decided_at=decided_at,
    )
    db.add(row)
    db.flush()
    return row


def decide_nudge(
    user: UserContext,
    candidates: Sequence[NudgeCandidate],
    state: DeliveryState,
    generate: TextGenerator,
    db: Optional[Session] = None,
) -> NudgeDecision:
    """
    Decide whether one of the candidates is delivered right now.

    Args:
        user: Goal, module, local hour, recovery score, memories
        candidates: Ranked protocols from the candidate source
        state: Suppression counters, preferences and MVD state
        generate: External text generator, called at most once
        db: When given, a NudgeDecisionLog row is written

    Returns:
        NudgeDecision. reason is 'allowed', 'safety_fallback', a suppression
        rule id, or a fail-closed reason. Never raises.
    """
    try:
        decision = _run(user, candidates, state, generate)
    except PipelineError as e:
        logger.error(f"Nudge pipeline error for user {user.user_id} at {e.stage}: {e.message}")
        decision = NudgeDecision(user.user_id, delivered=False, reason=FailClosedReason.PIPELINE_ERROR.value, error=e.message)
    except Exception as e:
        logger.error(f"Unexpected nudge pipeline failure for user {user.user_id}: {e}", exc_info=True)
        decision = NudgeDecision(user.user_id, delivered=False, reason=FailClosedReason.PIPELINE_ERROR.value, error=str(e))

    candidate = decision.candidate
    audit_logger.log_nudge_decision(
        user.user_id,
        protocol_id=candidate.protocol_id if candidate else None,
        delivered=decision.delivered,
        reason=decision.reason,
        confidence=decision.confidence,
        rules_checked=candidate.suppression.rules_checked if candidate and candidate.suppression else None,
        error=decision.error,
    )

    if db is not None:
        now = state.now if state.now.tzinfo else state.now.replace(tzinfo=timezone.utc)
        record_decision(db, decision, now)
    return decision


# =============================================================================
# CHAT
# =============================================================================

def respond_to_chat(user_id: str, message: str, generate: TextGenerator) -> ChatReply:
    """
    Reply to a chat message with both safety scans applied.

    Returns:
        ChatReply. reason is 'crisis_intervention', 'allowed',
        'safety_fallback', 'generation_failed' or 'pipeline_error';
        text is None only when generation failed.
    """
    try:
        crisis = scan_user_input(message)
    except PipelineError as e:
        logger.warning(f"Chat input rejected for user {user_id}: {e.message}")
        return ChatReply(user_id, text=None, reason=FailClosedReason.PIPELINE_ERROR.value, crisis=CrisisDetectionResult(detected=False))

    if crisis.detected:
        audit_logger.log_safety_flag(
            user_id,
            source="user_input",
            severity=crisis.severity.value,
            keywords=crisis.matched_keywords,
            resources_shown=[r.name for r in crisis.resources],
            rules_version=crisis.rules_version,
        )
    if requires_immediate_intervention(crisis):
        return ChatReply(user_id, text=generate_crisis_response(crisis), reason=CRISIS_INTERVENTION, crisis=crisis)

    try:
        text = generate_with_timeout(generate, CHAT_SYSTEM_PROMPT, message)
    except UpstreamDependencyError as e:
        logger.warning(f"Chat generation failed for user {user_id}: {e.message}")
        return ChatReply(user_id, text=None, reason=FailClosedReason.GENERATION_FAILED.value, crisis=crisis)

    safety = scan_ai_output(text, OutputSource.AI_RESPONSE)
    if should_suppress_output(safety):
        audit_logger.log_safety_flag(
            user_id,
            source=OutputSource.AI_RESPONSE.value,
            severity=safety.severity.value,
            keywords=safety.flagged_keywords,
            rules_version=safety.rules_version,
        )
        return ChatReply(
            user_id,
            text=get_safe_fallback_response(OutputSource.AI_RESPONSE),
            reason=SAFETY_FALLBACK,
            crisis=crisis,
            safety=safety,
        )
    return ChatReply(user_id, text=text, reason=ALLOWED, crisis=crisis, safety=safety)
