"""
Tests for wake detection and the Morning Anchor skip decision.

Key behaviours:
1. Method priors: hrv_spike 0.95 > movement 0.85 > manual 0.70 > phone_unlock 0.60
2. Unconfirmed unlocks only count 04:00-11:59 local, discounted off-pattern
3. User confirmation boosts an unlock, capped at 1.0
4. detect() is deterministic
5. Skip reasons are checked in a fixed order, first hit wins
"""

import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.exceptions import MalformedInputError
from services.wake_detector import (
    MorningAnchorContext,
    MorningAnchorSkipReason,
    WakeDetectionInput,
    WakeMethod,
    WakeSource,
    best_detection,
    detect,
    evaluate_morning_anchor_skip,
    select_anchor_protocols,
    supersedes,
)

# Tuesday 2024-03-12
TUESDAY_0645 = datetime(2024, 3, 12, 6, 45, tzinfo=timezone.utc)
# Saturday 2024-03-16
SATURDAY_1030 = datetime(2024, 3, 16, 10, 30, tzinfo=timezone.utc)


def _unlock(at, **kwargs):
    return WakeDetectionInput(user_id="u1", source=WakeSource.PHONE_UNLOCK, phone_unlock_time=at, **kwargs)


class TestPhoneUnlock:
    """Lite Mode wake from the first phone unlock."""

    def test_workday_morning_unlock(self):
        """06:45 unconfirmed unlock on a workday: base confidence, inside the window."""
        result = detect(_unlock(TUESDAY_0645, is_workday=True))
        assert result.detected
        assert result.method == WakeMethod.PHONE_UNLOCK
        assert result.confidence == 0.60
        assert result.within_window
        assert result.should_trigger_morning_anchor

    def test_off_pattern_unlock_discounted(self):
        """11:00 is still morning but outside typical workday wake hours."""
        result = detect(_unlock(datetime(2024, 3, 12, 11, 0, tzinfo=timezone.utc), is_workday=True))
        assert result.detected
        assert result.confidence == 0.50

    def test_weekend_unlock_discounted(self):
        result = detect(_unlock(datetime(2024, 3, 16, 7, 0, tzinfo=timezone.utc)))
        assert result.is_workday is False
        assert result.confidence == 0.50

    def test_afternoon_unconfirmed_unlock_rejected(self):
        result = detect(_unlock(datetime(2024, 3, 12, 15, 0, tzinfo=timezone.utc)))
        assert not result.detected
        assert "outside morning window" in result.reason

    def test_confirmation_boosts(self):
        result = detect(_unlock(TUESDAY_0645, user_confirmed_at=TUESDAY_0645 + timedelta(minutes=1)))
        assert result.confidence == 0.85
        assert result.user_confirmed

    def test_local_timezone_applied(self):
        """11:45 UTC is 06:45 in New York (EST, before DST)."""
        at = datetime(2024, 3, 8, 11, 45, tzinfo=timezone.utc)
        result = detect(_unlock(at, timezone="America/New_York", is_workday=True))
        assert result.local_hour == 6
        assert result.confidence == 0.60


class TestWearable:
    """Wearable sleep end and movement spikes."""

    def test_sleep_end_detected(self):
        data = WakeDetectionInput(user_id="u1", source=WakeSource.WEARABLE, sleep_end_time=TUESDAY_0645)
        result = detect(data)
        assert result.method == WakeMethod.HRV_SPIKE
        assert result.confidence == 0.95
        assert result.window.start == TUESDAY_0645 + timedelta(minutes=5)
        assert result.window.optimal == TUESDAY_0645 + timedelta(minutes=8)
        assert result.window.end == TUESDAY_0645 + timedelta(minutes=15)

    def test_movement_confidence(self):
        data = WakeDetectionInput(user_id="u1", source="movement", movement_time=TUESDAY_0645)
        assert detect(data).confidence == 0.85

    def test_too_early(self):
        data = WakeDetectionInput(
            user_id="u1", source=WakeSource.WEARABLE, sleep_end_time=datetime(2024, 3, 12, 3, 0, tzinfo=timezone.utc)
        )
        result = detect(data)
        assert not result.detected
        assert "too early" in result.reason

    def test_afternoon_nap_rejected(self):
        end = datetime(2024, 3, 12, 13, 30, tzinfo=timezone.utc)
        data = WakeDetectionInput(
            user_id="u1", source=WakeSource.WEARABLE,
            sleep_end_time=end, sleep_start_time=end - timedelta(hours=1),
        )
        result = detect(data)
        assert not result.detected
        assert "nap" in result.reason

    def test_inverted_sleep_window_is_malformed(self):
        data = WakeDetectionInput(
            user_id="u1", source=WakeSource.WEARABLE,
            sleep_end_time=TUESDAY_0645, sleep_start_time=TUESDAY_0645 + timedelta(hours=1),
        )
        with pytest.raises(MalformedInputError):
            detect(data)

    def test_missing_time_is_no_detection(self):
        result = detect(WakeDetectionInput(user_id="u1", source=WakeSource.WEARABLE))
        assert not result.detected


class TestDetectContract:
    """Purity and input validation."""

    def test_deterministic(self):
        data = _unlock(TUESDAY_0645, is_workday=True)
        assert detect(data) == detect(data)

    def test_unknown_source_rejected(self):
        with pytest.raises(MalformedInputError) as exc:
            detect(WakeDetectionInput(user_id="u1", source="telepathy"))
        assert exc.value.field == "source"

    def test_naive_time_treated_as_utc(self):
        result = detect(WakeDetectionInput(
            user_id="u1", source=WakeSource.MANUAL, reported_wake_time=datetime(2024, 3, 12, 7, 0),
        ))
        assert result.wake_time == datetime(2024, 3, 12, 7, 0, tzinfo=timezone.utc)
        assert result.confidence == 0.70


class TestSupersedes:
    """Same-day upgrade rules."""

    def test_higher_confidence_upgrades(self):
        assert supersedes(0.60, False, 0.95)

    def test_equal_confidence_does_not(self):
        assert not supersedes(0.85, False, 0.85)

    def test_triggered_event_is_final(self):
        assert not supersedes(0.60, True, 0.95)

    def test_best_detection_prefers_confidence(self):
        unlock = detect(_unlock(TUESDAY_0645, is_workday=True))
        wearable = detect(WakeDetectionInput(
            user_id="u1", source=WakeSource.WEARABLE, sleep_end_time=TUESDAY_0645 + timedelta(minutes=10)
        ))
        assert best_detection([unlock, wearable]) is wearable
        assert best_detection([]) is None


class TestMorningAnchorSkip:
    """Skip decision order."""

    def _wake(self, at=TUESDAY_0645):
        return detect(_unlock(at, is_workday=True))

    def _context(self, **overrides):
        fields = dict(now=TUESDAY_0645 + timedelta(minutes=6), active_protocol_ids=["proto_morning_light"])
        fields.update(overrides)
        return MorningAnchorContext(**fields)

    def test_proceeds(self):
        assert evaluate_morning_anchor_skip(self._wake(), self._context()) is None

    def test_disabled_wins_over_everything(self):
        context = self._context(enabled=False, already_triggered_today=True, travel_detected=True)
        assert evaluate_morning_anchor_skip(self._wake(), context) == MorningAnchorSkipReason.USER_DISABLED

    def test_already_triggered(self):
        context = self._context(already_triggered_today=True)
        assert evaluate_morning_anchor_skip(self._wake(), context) == MorningAnchorSkipReason.ALREADY_TRIGGERED_TODAY

    def test_quiet_hours(self):
        context = self._context(quiet_hours_start=22, quiet_hours_end=7)
        assert evaluate_morning_anchor_skip(self._wake(), context) == MorningAnchorSkipReason.DO_NOT_DISTURB

    def test_travel(self):
        context = self._context(travel_detected=True)
        assert evaluate_morning_anchor_skip(self._wake(), context) == MorningAnchorSkipReason.TRAVEL_DETECTED

    def test_weekend_sleep_in(self):
        wake = detect(WakeDetectionInput(user_id="u1", source=WakeSource.MANUAL, reported_wake_time=SATURDAY_1030))
        context = self._context(now=SATURDAY_1030 + timedelta(minutes=6))
        assert evaluate_morning_anchor_skip(wake, context) == MorningAnchorSkipReason.WEEKEND_SLEEP_IN

    def test_no_protocols(self):
        context = self._context(active_protocol_ids=[])
        assert evaluate_morning_anchor_skip(self._wake(), context) == MorningAnchorSkipReason.NO_PROTOCOLS_ACTIVE


class TestAnchorProtocols:
    """Protocol selection for the Morning Anchor."""

    def test_morning_protocols_preferred(self):
        selected = select_anchor_protocols(["proto_cold_plunge", "proto_morning_light", "proto_breath_work"])
        assert selected == ["proto_morning_light", "proto_breath_work"]

    def test_fallback_to_first_two(self):
        assert select_anchor_protocols(["a", "b", "c"]) == ["a", "b"]
