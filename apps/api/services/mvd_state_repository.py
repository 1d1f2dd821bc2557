"""
MVD state persistence: one MVDStateRecord row per user, mapped to and from
the detector's immutable MVDState.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

from sqlalchemy.orm import Session

from models import MVDStateRecord
from services.mvd_detector import MVDState, MVDTrigger
from services.mvd_protocols import MVDType

logger = logging.getLogger(__name__)


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def to_state(record: MVDStateRecord) -> MVDState:
    return MVDState(
        user_id=record.user_id,
        is_active=record.is_active,
        mvd_type=MVDType(record.mvd_type) if record.mvd_type else None,
        trigger=MVDTrigger(record.trigger_reason) if record.trigger_reason else None,
        activated_at=_aware(record.activated_at),
        exit_condition=record.exit_condition,
        last_checked_at=_aware(record.last_checked_at),
        manual_override=record.manual_override,
    )


def get_state(db: Session, user_id: str) -> Optional[MVDState]:
    record = db.get(MVDStateRecord, user_id)
    return to_state(record) if record is not None else None


def save_state(db: Session, state: MVDState) -> MVDStateRecord:
    record = db.get(MVDStateRecord, state.user_id)
    if record is None:
        record = MVDStateRecord(user_id=state.user_id)
        db.add(record)

    record.is_active = state.is_active
    record.mvd_type = state.mvd_type.value if state.mvd_type else None
    record.trigger_reason = state.trigger.value if state.trigger else None
    record.activated_at = state.activated_at
    record.exit_condition = state.exit_condition
    record.last_checked_at = state.last_checked_at
    record.manual_override = state.manual_override
    db.flush()
    logger.debug(f"Saved MVD state for user {state.user_id}: active={state.is_active}")
    return record
