"""
Suppression API Router

Stateless: evaluates one assembled context and returns the verdict with the
rule trail, so a logged request replays to the same answer.
"""

from datetime import datetime, timezone

from fastapi import APIRouter

from core.exceptions import ValidationError
from schemas import SuppressionEvaluateRequest, SuppressionResponse
from services.mvd_protocols import MVDType
from services.suppression_engine import NudgePriority, build_suppression_context, evaluate

router = APIRouter(prefix="/v1/suppression", tags=["Suppression"])


@router.post("/evaluate", response_model=SuppressionResponse)
def evaluate_suppression(request: SuppressionEvaluateRequest):
    mvd_type = None
    if request.mvd_type:
        try:
            mvd_type = MVDType(request.mvd_type)
        except ValueError:
            raise ValidationError(f"Unknown MVD type: {request.mvd_type}", field="mvd_type")

    context = build_suppression_context(
        request.now or datetime.now(timezone.utc),
        nudge_priority=NudgePriority(request.nudge_priority),
        confidence_score=request.confidence_score,
        protocol_id=request.protocol_id,
        timezone_name=request.timezone,
        quiet_hours_start=request.quiet_hours_start,
        quiet_hours_end=request.quiet_hours_end,
        nudges_sent_today=request.nudges_sent_today,
        last_nudge_at=request.last_nudge_at,
        consecutive_dismissals=request.consecutive_dismissals,
        meeting_hours_today=request.meeting_hours_today,
        recovery_score=request.recovery_score,
        recovery_zone=request.recovery_zone,
        current_streak=request.current_streak,
        is_morning_anchor=request.is_morning_anchor,
        mvd_active=request.mvd_active,
        mvd_type=mvd_type,
        illness_risk=request.illness_risk,
    )
    result = evaluate(context)
    return SuppressionResponse(
        allowed=result.allowed,
        decision=result.decision,
        blocked_by=result.blocked_by.value if result.blocked_by else None,
        reason=result.reason,
        rules_checked=result.rules_checked,
        was_overridden=result.was_overridden,
        overridden_rule=result.overridden_rule.value if result.overridden_rule else None,
    )
