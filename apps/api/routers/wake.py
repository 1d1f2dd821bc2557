"""
Wake Detection API Router

Detects wake from one signal source, stores it as the user's canonical wake
event for the day (idempotent upsert) and decides whether the Morning Anchor
fires or is skipped.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import logging

from core.database import get_db
from schemas import MorningAnchorWindowResponse, WakeDetectRequest, WakeDetectResponse
from services import audit_logger
from services.wake_detector import (
    MorningAnchorContext,
    MorningAnchorSkipReason,
    WakeDetectionInput,
    detect,
    evaluate_morning_anchor_skip,
    select_anchor_protocols,
)
from services.wake_event_repository import mark_skipped, mark_triggered, upsert_wake_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/wake", tags=["Wake"])


@router.post("/detect", response_model=WakeDetectResponse)
def detect_wake(request: WakeDetectRequest, db: Session = Depends(get_db)):
    now = request.now or datetime.now(timezone.utc)

    detection = detect(WakeDetectionInput(
        user_id=request.user_id,
        source=request.source,
        timezone=request.timezone,
        sleep_end_time=request.sleep_end_time,
        sleep_start_time=request.sleep_start_time,
        movement_time=request.movement_time,
        phone_unlock_time=request.phone_unlock_time,
        user_confirmed_at=request.user_confirmed_at,
        reported_wake_time=request.reported_wake_time,
        is_workday=request.is_workday,
    ))

    response = WakeDetectResponse(
        user_id=request.user_id,
        detected=detection.detected,
        reason=detection.reason,
        wake_time=detection.wake_time,
        local_date=detection.local_date,
        method=detection.method.value if detection.method else None,
        confidence=detection.confidence,
        within_window=detection.within_window,
        window=MorningAnchorWindowResponse(
            start=detection.window.start,
            optimal=detection.window.optimal,
            end=detection.window.end,
        ) if detection.window else None,
    )

    if not detection.detected:
        audit_logger.log_wake_decided(request.user_id, False, None, 0.0, reason=detection.reason)
        return response

    stored = upsert_wake_event(db, detection)
    response.event_created = stored.created
    response.event_upgraded = stored.upgraded

    skip = evaluate_morning_anchor_skip(detection, MorningAnchorContext(
        now=now,
        enabled=request.morning_anchor_enabled,
        already_triggered_today=stored.event.triggered,
        quiet_hours_start=request.quiet_hours_start,
        quiet_hours_end=request.quiet_hours_end,
        timezone=request.timezone,
        travel_detected=request.travel_detected,
        active_protocol_ids=request.active_protocol_ids,
    ))

    if skip is not None:
        # A triggered row keeps its trigger; only fresh skips are recorded
        if skip != MorningAnchorSkipReason.ALREADY_TRIGGERED_TODAY:
            mark_skipped(db, stored.event, skip.value)
        response.morning_anchor = "skip"
        response.skip_reason = skip.value
    elif detection.should_trigger_morning_anchor:
        mark_triggered(db, stored.event, now)
        response.morning_anchor = "trigger"
        response.anchor_protocols = select_anchor_protocols(request.active_protocol_ids)

    audit_logger.log_wake_decided(
        request.user_id,
        True,
        detection.method.value,
        detection.confidence,
        reason=detection.reason,
        skip_reason=response.skip_reason,
    )
    return response
