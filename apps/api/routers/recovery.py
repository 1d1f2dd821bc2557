"""
Recovery Score API Router

Scores today's wearable signals against a baseline built from the supplied
history. "Not ready" outcomes are 200 responses with a status, not errors.
"""

from fastapi import APIRouter
import logging

from schemas import (
    ComponentScoreResponse,
    EdgeCasesResponse,
    RecommendationResponse,
    RecoveryScoreRequest,
    RecoveryScoreResponse,
)
from services import audit_logger
from services.baseline_engine import BaselineNotReady, compute_baseline
from services.recovery_score import InsufficientSignals, RecoveryResult, compute_recovery
from services.signal_normalizer import normalize_wearable_row

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/recovery", tags=["Recovery"])


def _to_response(outcome) -> RecoveryScoreResponse:
    if isinstance(outcome, BaselineNotReady):
        return RecoveryScoreResponse(
            status="baseline_not_ready",
            user_id=outcome.user_id,
            sample_count=outcome.sample_count,
            minimum_required=outcome.minimum_required,
            message=outcome.message,
        )
    if isinstance(outcome, InsufficientSignals):
        return RecoveryScoreResponse(
            status="insufficient_signals",
            user_id=outcome.user_id,
            missing_inputs=outcome.missing_inputs,
            message=outcome.message,
        )

    result: RecoveryResult = outcome
    return RecoveryScoreResponse(
        status="scored",
        user_id=result.user_id,
        score=result.score,
        zone=result.zone.value,
        confidence=result.confidence,
        components={
            name: ComponentScoreResponse.model_validate(component)
            for name, component in result.components.items()
        },
        temperature_penalty=result.temperature_penalty.penalty,
        edge_cases=EdgeCasesResponse(
            illness_risk=result.edge_cases.illness_risk.value,
            illness_signals=result.edge_cases.illness_signals,
            alcohol_detected=result.edge_cases.alcohol_detected,
            menstrual_phase_adjustment=result.edge_cases.menstrual_phase_adjustment,
        ),
        reasoning=result.reasoning,
        recommendations=[RecommendationResponse.model_validate(r) for r in result.recommendations],
        data_completeness=result.data_completeness,
        missing_inputs=result.missing_inputs,
        is_lite_mode=result.is_lite_mode,
    )


@router.post("/score", response_model=RecoveryScoreResponse)
def score_recovery(request: RecoveryScoreRequest):
    """
    Compute today's recovery score.

    history rows use the same vendor keys as today (date, hrv_avg, rhr_avg,
    sleep_duration_hours, ...).
    """
    today = normalize_wearable_row(request.user_id, request.today)
    history = [normalize_wearable_row(request.user_id, row) for row in request.history]
    baseline = compute_baseline(
        request.user_id,
        history,
        menstrual_cycle_tracking=request.menstrual_cycle_tracking,
        cycle_day=request.cycle_day,
    )

    outcome = compute_recovery(today, baseline)
    response = _to_response(outcome)
    audit_logger.log_recovery_scored(
        request.user_id,
        score=response.score,
        zone=response.zone,
        confidence=response.confidence,
        not_ready_reason=None if response.status == "scored" else response.status,
    )
    return response
