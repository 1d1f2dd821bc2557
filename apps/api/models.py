from sqlalchemy import Column, Boolean, CheckConstraint, Float, Date, DateTime, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.sql import func
from core.database import Base
import uuid


class WakeEvent(Base):
    """
    Canonical wake event for one user on one local date.

    At most one row per (user_id, date). A row that has triggered the Morning
    Anchor is final; an untriggered row may be upgraded by a higher-confidence
    detection (see services/wake_event_repository.py).
    """
    __tablename__ = "wake_event"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    date = Column(Date, nullable=False)
    wake_time = Column(DateTime(timezone=True), nullable=False)
    detection_method = Column(Text, nullable=False)  # 'hrv_spike' | 'movement' | 'phone_unlock' | 'manual'
    confidence = Column(Float, nullable=False)

    # Morning Anchor outcome
    morning_anchor_triggered_at = Column(DateTime(timezone=True), nullable=True)
    morning_anchor_skipped = Column(Boolean, default=False, nullable=False)
    skip_reason = Column(Text, nullable=True)

    # Debug context from the detector (reason, local hour, workday flag)
    source_metrics = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_wake_event_user_date"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_wake_event_confidence"),
    )

    @property
    def triggered(self) -> bool:
        return self.morning_anchor_triggered_at is not None


class MVDStateRecord(Base):
    """Current Minimum Viable Day state, one row per user."""
    __tablename__ = "mvd_state"

    user_id = Column(Text, primary_key=True)
    is_active = Column(Boolean, default=False, nullable=False)
    mvd_type = Column(Text, nullable=True)         # 'full' | 'semi_active' | 'travel'
    trigger_reason = Column(Text, nullable=True)   # MVDTrigger value, e.g. 'low_recovery' | 'illness_risk' | 'travel_detected'
    activated_at = Column(DateTime(timezone=True), nullable=True)
    exit_condition = Column(Text, nullable=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    manual_override = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class NudgeDecisionLog(Base):
    """
    One row per candidate decision, for audit replay.

    reason is machine-readable: 'allowed', a suppression rule id, a safety
    outcome, or a fail-closed reason ('pipeline_error', 'generation_failed', ...).
    """
    __tablename__ = "nudge_decision_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    protocol_id = Column(Text, nullable=True)
    module_id = Column(Text, nullable=True)
    source = Column(Text, nullable=False)          # 'schedule' | 'nudge' | 'manual'
    delivered = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=False)
    confidence = Column(Float, nullable=True)
    blocked_by = Column(Text, nullable=True)
    safety_severity = Column(Text, nullable=True)
    rules_checked = Column(JSON, nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_nudge_decision_user_decided", "user_id", "decided_at"),
    )
