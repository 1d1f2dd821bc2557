"""
Wake Event Repository

Persistence boundary for wake events. The "one canonical wake event per user
per date" rule lives here, backed by the (user_id, date) unique constraint:

    - no row for the date            -> insert
    - row exists, not yet triggered  -> replace only with a strictly higher confidence
    - row already triggered          -> never touched

Concurrent inserts for the same day are resolved by the constraint: the loser
rolls back, re-reads the winner, and applies the same upgrade rule.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import WakeEvent
from services.wake_detector import WakeDetectionOutput, supersedes

logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 14


@dataclass
class UpsertResult:
    event: WakeEvent
    created: bool
    upgraded: bool

    @property
    def changed(self) -> bool:
        return self.created or self.upgraded


def _source_metrics(detection: WakeDetectionOutput) -> dict:
    return {
        "reason": detection.reason,
        "local_hour": detection.local_hour,
        "is_workday": detection.is_workday,
        "user_confirmed": detection.user_confirmed,
        "base_confidence": detection.base_confidence,
    }


def get_by_user_and_date(db: Session, user_id: str, day: date) -> Optional[WakeEvent]:
    return (
        db.query(WakeEvent)
        .filter(WakeEvent.user_id == user_id, WakeEvent.date == day)
        .first()
    )


def _apply_upgrade(db: Session, existing: WakeEvent, detection: WakeDetectionOutput) -> UpsertResult:
    if not supersedes(existing.confidence, existing.triggered, detection.confidence):
        logger.info(
            f"Kept wake event for user {existing.user_id} on {existing.date}: "
            f"stored {existing.detection_method}@{existing.confidence}, "
            f"new {detection.method.value}@{detection.confidence}, triggered={existing.triggered}"
        )
        return UpsertResult(event=existing, created=False, upgraded=False)

    existing.wake_time = detection.wake_time
    existing.detection_method = detection.method.value
    existing.confidence = detection.confidence
    existing.source_metrics = _source_metrics(detection)
    db.flush()
    logger.info(
        f"Upgraded wake event for user {existing.user_id} on {existing.date} "
        f"to {detection.method.value}@{detection.confidence}"
    )
    return UpsertResult(event=existing, created=False, upgraded=True)


def upsert_wake_event(db: Session, detection: WakeDetectionOutput) -> UpsertResult:
    """
    Store a detection as the user's wake event for its local date.

    Args:
        db: Session; the caller owns commit
        detection: A detected WakeDetectionOutput

    Returns:
        UpsertResult with the canonical row and whether it changed

    Raises:
        ValueError: detection.detected is False
    """
    if not detection.detected:
        raise ValueError("cannot store a non-detection")

    existing = get_by_user_and_date(db, detection.user_id, detection.local_date)
    if existing is not None:
        return _apply_upgrade(db, existing, detection)

    event = WakeEvent(
        user_id=detection.user_id,
        date=detection.local_date,
        wake_time=detection.wake_time,
        detection_method=detection.method.value,
        confidence=detection.confidence,
        source_metrics=_source_metrics(detection),
    )
    try:
        # Savepoint: a lost race undoes only this insert, not the caller's work
        with db.begin_nested():
            db.add(event)
            db.flush()
    except IntegrityError:
        logger.info(f"Concurrent wake insert for user {detection.user_id} on {detection.local_date}; re-reading")
        existing = get_by_user_and_date(db, detection.user_id, detection.local_date)
        if existing is None:
            raise
        return _apply_upgrade(db, existing, detection)

    logger.info(
        f"Created wake event for user {detection.user_id} on {detection.local_date} "
        f"({detection.method.value}@{detection.confidence})"
    )
    return UpsertResult(event=event, created=True, upgraded=False)


def mark_triggered(db: Session, event: WakeEvent, triggered_at: Optional[datetime] = None) -> WakeEvent:
    event.morning_anchor_triggered_at = triggered_at or datetime.now(timezone.utc)
    event.morning_anchor_skipped = False
    event.skip_reason = None
    db.flush()
    return event


def mark_skipped(db: Session, event: WakeEvent, reason: str) -> WakeEvent:
    if event.triggered:
        logger.warning(f"Ignoring skip '{reason}' for already-triggered wake event {event.id}")
        return event
    event.morning_anchor_skipped = True
    event.skip_reason = reason
    db.flush()
    return event


def get_recent_events(db: Session, user_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> List[WakeEvent]:
    return (
        db.query(WakeEvent)
        .filter(WakeEvent.user_id == user_id)
        .order_by(WakeEvent.date.desc())
        .limit(limit)
        .all()
    )


def get_triggered_events(db: Session, user_id: str, limit: int = 30) -> List[WakeEvent]:
    return (
        db.query(WakeEvent)
        .filter(WakeEvent.user_id == user_id, WakeEvent.morning_anchor_triggered_at.isnot(None))
        .order_by(WakeEvent.date.desc())
        .limit(limit)
        .all()
    )


def get_average_wake_time(db: Session, user_id: str, days: int = DEFAULT_RECENT_LIMIT) -> Optional[timedelta]:
    """
    Mean wake time-of-day (UTC) over the last `days` events, as an offset from midnight.

    Returns None when the user has no wake history.
    """
    events = get_recent_events(db, user_id, limit=days)
    if not events:
        return None
    seconds = [
        e.wake_time.hour * 3600 + e.wake_time.minute * 60 + e.wake_time.second
        for e in events
    ]
    return timedelta(seconds=round(sum(seconds) / len(seconds)))
