"""
Tests for wake event persistence.

One canonical wake event per user per local date:
- insert when absent
- upgrade an untriggered row only on strictly higher confidence
- a triggered row is never overwritten
"""

import sys
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import NudgeDecisionLog, WakeEvent
from services.wake_detector import WakeDetectionInput, WakeSource, detect
from services.wake_event_repository import (
    get_average_wake_time,
    get_by_user_and_date,
    get_recent_events,
    get_triggered_events,
    mark_skipped,
    mark_triggered,
    upsert_wake_event,
)

MORNING = datetime(2024, 3, 12, 6, 45, tzinfo=timezone.utc)


def _unlock(user_id="wake-user", at=MORNING):
    return detect(WakeDetectionInput(
        user_id=user_id, source=WakeSource.PHONE_UNLOCK, phone_unlock_time=at, is_workday=True,
    ))


def _wearable(user_id="wake-user", at=MORNING - timedelta(minutes=20)):
    return detect(WakeDetectionInput(user_id=user_id, source=WakeSource.WEARABLE, sleep_end_time=at))


class TestUpsertWakeEvent:
    """Idempotent per-day upsert."""

    def test_first_detection_creates(self, db_session):
        result = upsert_wake_event(db_session, _unlock())
        assert result.created
        assert not result.upgraded
        assert result.event.detection_method == "phone_unlock"
        assert result.event.confidence == 0.60
        assert result.event.source_metrics["is_workday"] is True

    def test_higher_confidence_upgrades(self, db_session):
        upsert_wake_event(db_session, _unlock())
        result = upsert_wake_event(db_session, _wearable())
        assert result.upgraded
        assert result.event.detection_method == "hrv_spike"
        assert db_session.query(WakeEvent).filter(WakeEvent.user_id == "wake-user").count() == 1

    def test_lower_confidence_ignored(self, db_session):
        upsert_wake_event(db_session, _wearable())
        result = upsert_wake_event(db_session, _unlock())
        assert not result.changed
        assert result.event.detection_method == "hrv_spike"

    def test_repeat_detection_is_idempotent(self, db_session):
        upsert_wake_event(db_session, _unlock())
        result = upsert_wake_event(db_session, _unlock())
        assert not result.changed

    def test_triggered_event_never_overwritten(self, db_session):
        """A lower-confidence trigger stays put even when a better signal arrives later."""
        stored = upsert_wake_event(db_session, _unlock())
        mark_triggered(db_session, stored.event, MORNING + timedelta(minutes=6))

        result = upsert_wake_event(db_session, _wearable())
        assert not result.changed
        assert result.event.detection_method == "phone_unlock"
        assert result.event.triggered

    def test_non_detection_rejected(self, db_session):
        missing = detect(WakeDetectionInput(user_id="wake-user", source=WakeSource.WEARABLE))
        with pytest.raises(ValueError):
            upsert_wake_event(db_session, missing)

    def test_separate_days_separate_rows(self, db_session):
        upsert_wake_event(db_session, _unlock())
        upsert_wake_event(db_session, _unlock(at=MORNING + timedelta(days=1)))
        assert len(get_recent_events(db_session, "wake-user")) == 2

    def test_lost_insert_race_keeps_callers_rows(self, db_session):
        """A unique-key conflict rolls back only the wake insert."""
        upsert_wake_event(db_session, _unlock())
        db_session.add(NudgeDecisionLog(
            user_id="wake-user", source="nudge", delivered=True, reason="allowed", decided_at=MORNING,
        ))
        db_session.flush()

        # The pre-insert lookup misses the row another request just wrote
        lookups = [None]

        def racing_lookup(db, user_id, day):
            return lookups.pop() if lookups else get_by_user_and_date(db, user_id, day)

        with patch("services.wake_event_repository.get_by_user_and_date", side_effect=racing_lookup):
            result = upsert_wake_event(db_session, _wearable())

        assert not result.created
        assert result.upgraded
        assert result.event.detection_method == "hrv_spike"
        assert db_session.query(NudgeDecisionLog).filter_by(user_id="wake-user").count() == 1
        assert db_session.query(WakeEvent).filter_by(user_id="wake-user").count() == 1


class TestMorningAnchorOutcome:
    """Trigger and skip bookkeeping."""

    def test_skip_recorded(self, db_session):
        stored = upsert_wake_event(db_session, _unlock())
        mark_skipped(db_session, stored.event, "travel_detected")
        row = get_by_user_and_date(db_session, "wake-user", MORNING.date())
        assert row.morning_anchor_skipped
        assert row.skip_reason == "travel_detected"

    def test_skip_after_trigger_ignored(self, db_session):
        stored = upsert_wake_event(db_session, _unlock())
        mark_triggered(db_session, stored.event, MORNING)
        mark_skipped(db_session, stored.event, "do_not_disturb")
        assert not stored.event.morning_anchor_skipped
        assert stored.event.skip_reason is None

    def test_triggered_events_listed(self, db_session):
        stored = upsert_wake_event(db_session, _unlock())
        upsert_wake_event(db_session, _unlock(at=MORNING + timedelta(days=1)))
        mark_triggered(db_session, stored.event, MORNING)
        triggered = get_triggered_events(db_session, "wake-user")
        assert [e.date for e in triggered] == [MORNING.date()]


class TestAverageWakeTime:
    """Mean time-of-day over recent events."""

    def test_no_history(self, db_session):
        assert get_average_wake_time(db_session, "nobody") is None

    def test_average(self, db_session):
        upsert_wake_event(db_session, _unlock(at=datetime(2024, 3, 12, 6, 0, tzinfo=timezone.utc)))
        upsert_wake_event(db_session, _unlock(at=datetime(2024, 3, 13, 7, 0, tzinfo=timezone.utc)))
        assert get_average_wake_time(db_session, "wake-user") == timedelta(hours=6, minutes=30)
