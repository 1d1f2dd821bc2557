"""
Check-in Score API Router

Lite-mode scoring for users without a wearable: three answers, confidence
capped at 0.60 (0.30 when the check-in was skipped).
"""

from fastapi import APIRouter

from schemas import CheckInComponentResponse, CheckInRequest, CheckInResponse, RecommendationResponse
from services import audit_logger
from services.checkin_score import score_check_in, validate_check_in

router = APIRouter(prefix="/v1/checkin", tags=["Check-in"])


@router.post("/score", response_model=CheckInResponse)
def score_checkin(request: CheckInRequest):
    check_in = None
    if not request.skipped:
        check_in = validate_check_in(request.model_dump(include={"sleep_quality", "sleep_hours", "energy_level"}))

    result = score_check_in(request.user_id, check_in, skipped=request.skipped)
    audit_logger.log_recovery_scored(
        request.user_id,
        score=result.score,
        zone=result.zone.value,
        confidence=result.confidence,
        is_lite_mode=True,
    )
    return CheckInResponse(
        user_id=result.user_id,
        score=result.score,
        zone=result.zone.value,
        confidence=result.confidence,
        components={
            name: CheckInComponentResponse.model_validate(component)
            for name, component in result.components.items()
        },
        reasoning=result.reasoning,
        recommendations=[RecommendationResponse.model_validate(r) for r in result.recommendations],
        skipped=result.skipped,
        is_lite_mode=result.is_lite_mode,
    )
