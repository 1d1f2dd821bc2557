"""
Minimum Viable Day API Router

Automatic evaluation (scheduled, and after every recovery score) and the
user's manual "Tough Day" override. State is one row per user.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import logging

from core.database import get_db
from core.exceptions import ValidationError
from schemas import MVDEvaluateRequest, MVDOverrideRequest, MVDStateResponse
from services import audit_logger
from services.mvd_detector import (
    MVDDetectionContext,
    MVDState,
    activate_manually,
    deactivate_manually,
    describe_transition,
    evaluate,
    get_mvd_status_summary,
)
from services.mvd_protocols import MVDType, get_approved_protocol_ids
from services.mvd_state_repository import get_state, save_state

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/mvd", tags=["MVD"])


def _to_response(state: MVDState, transition: Optional[str] = None) -> MVDStateResponse:
    return MVDStateResponse(
        user_id=state.user_id,
        is_active=state.is_active,
        mvd_type=state.mvd_type.value if state.mvd_type else None,
        trigger=state.trigger.value if state.trigger else None,
        activated_at=state.activated_at,
        exit_condition=state.exit_condition,
        last_checked_at=state.last_checked_at,
        manual_override=state.manual_override,
        reason=state.reason,
        transition=transition,
        summary=get_mvd_status_summary(state),
        approved_protocols=list(get_approved_protocol_ids(state.mvd_type)) if state.is_active and state.mvd_type else [],
    )


def _record(db: Session, previous: Optional[MVDState], current: MVDState, manual: bool = False) -> str:
    save_state(db, current)
    transition = describe_transition(previous, current)
    if transition != "unchanged":
        audit_logger.log_mvd_transition(
            current.user_id,
            transition,
            current.is_active,
            current.mvd_type.value if current.mvd_type else None,
            current.trigger.value if current.trigger else None,
            manual=manual,
        )
    return transition


@router.get("/{user_id}", response_model=MVDStateResponse)
def get_mvd_state(user_id: str, db: Session = Depends(get_db)):
    state = get_state(db, user_id) or MVDState(user_id=user_id)
    return _to_response(state)


@router.post("/evaluate", response_model=MVDStateResponse)
def evaluate_mvd(request: MVDEvaluateRequest, db: Session = Depends(get_db)):
    previous = get_state(db, request.user_id)
    context = MVDDetectionContext(
        user_id=request.user_id,
        now=request.now or datetime.now(timezone.utc),
        recovery_score=request.recovery_score,
        user_timezone=request.user_timezone,
        device_timezone=request.device_timezone,
        completion_history=tuple(request.completion_history),
        meeting_hours_today=request.meeting_hours_today,
        illness_risk=request.illness_risk,
    )
    current = evaluate(context, previous)
    transition = _record(db, previous, current)
    return _to_response(current, transition)


@router.post("/override", response_model=MVDStateResponse)
def override_mvd(request: MVDOverrideRequest, db: Session = Depends(get_db)):
    """Force MVD on or off until the next automatic evaluation."""
    now = datetime.now(timezone.utc)
    previous = get_state(db, request.user_id)

    if request.active:
        try:
            mvd_type = MVDType(request.mvd_type) if request.mvd_type else MVDType.FULL
        except ValueError:
            raise ValidationError(f"Unknown MVD type: {request.mvd_type}", field="mvd_type")
        current = activate_manually(request.user_id, now, mvd_type)
    else:
        current = deactivate_manually(request.user_id, now)

    transition = _record(db, previous, current, manual=True)
    return _to_response(current, transition)
