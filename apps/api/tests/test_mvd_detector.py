"""
Tests for the MVD (Minimum Viable Day) detector.

Key behaviours:
1. Any one trigger activates MVD; the most restrictive type wins
2. Hysteresis: recovery-driven MVD exits only above 50, not at 35
   (illness-driven MVD also waits for the illness flag to clear)
3. Manual activation holds until the next evaluate()
4. State round-trips through the persistence layer
"""

import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.exceptions import MalformedInputError
from services.mvd_detector import (
    MVDDetectionContext,
    MVDState,
    MVDTrigger,
    activate_manually,
    calculate_timezone_offset,
    deactivate_manually,
    describe_transition,
    evaluate,
    get_mvd_status_summary,
)
from services.mvd_protocols import MVDType
from services.mvd_state_repository import get_state, save_state
from services.recovery_score import IllnessRisk

NOW = datetime(2024, 3, 12, 7, 0, tzinfo=timezone.utc)


def _context(**overrides):
    fields = dict(user_id="mvd-user", now=NOW)
    fields.update(overrides)
    return MVDDetectionContext(**fields)


class TestTriggers:
    """Activation from an inactive state."""

    def test_no_triggers_stays_inactive(self):
        state = evaluate(_context(recovery_score=80))
        assert not state.is_active
        assert state.last_checked_at == NOW

    def test_low_recovery_activates_full(self):
        state = evaluate(_context(recovery_score=28))
        assert state.is_active
        assert state.mvd_type == MVDType.FULL
        assert state.trigger == MVDTrigger.LOW_RECOVERY
        assert state.activated_at == NOW
        assert state.exit_condition == "Recovery >50%"

    def test_threshold_is_exclusive(self):
        assert not evaluate(_context(recovery_score=35)).is_active

    def test_travel_activates_travel(self):
        state = evaluate(_context(user_timezone="America/New_York", device_timezone="Europe/London"))
        assert state.mvd_type == MVDType.TRAVEL
        assert state.trigger == MVDTrigger.TRAVEL_DETECTED

    def test_heavy_calendar_activates_semi_active(self):
        state = evaluate(_context(meeting_hours_today=6))
        assert state.mvd_type == MVDType.SEMI_ACTIVE
        assert state.trigger == MVDTrigger.HEAVY_CALENDAR

    def test_consistency_drop_needs_three_days(self):
        assert not evaluate(_context(completion_history=[20, 30])).is_active
        state = evaluate(_context(completion_history=[20, 30, 40, 90]))
        assert state.trigger == MVDTrigger.CONSISTENCY_DROP

    def test_most_restrictive_wins(self):
        """Low recovery (full) beats travel and heavy calendar firing together."""
        state = evaluate(_context(
            recovery_score=20,
            user_timezone="America/New_York",
            device_timezone="Asia/Tokyo",
            meeting_hours_today=8,
        ))
        assert state.mvd_type == MVDType.FULL
        assert state.trigger == MVDTrigger.LOW_RECOVERY

    def test_high_illness_risk_activates_full(self):
        state = evaluate(_context(recovery_score=60, illness_risk=IllnessRisk.HIGH))
        assert state.is_active
        assert state.mvd_type == MVDType.FULL
        assert state.trigger == MVDTrigger.ILLNESS_RISK
        assert state.exit_condition.startswith("Illness risk below medium")

    @pytest.mark.parametrize("risk", ["none", "low", "medium"])
    def test_lower_illness_risk_does_not_activate(self, risk):
        assert not evaluate(_context(recovery_score=60, illness_risk=risk)).is_active

    def test_low_recovery_outranks_illness(self):
        state = evaluate(_context(recovery_score=20, illness_risk=IllnessRisk.HIGH))
        assert state.trigger == MVDTrigger.LOW_RECOVERY

    def test_travel_beats_semi_active(self):
        state = evaluate(_context(
            user_timezone="America/New_York", device_timezone="Asia/Tokyo", meeting_hours_today=8,
        ))
        assert state.mvd_type == MVDType.TRAVEL


class TestHysteresis:
    """Once active, MVD holds until its exit condition."""

    def test_drift_between_thresholds_holds(self):
        active = evaluate(_context(recovery_score=30))
        for score in (36, 45, 50):
            state = evaluate(_context(recovery_score=score, now=NOW + timedelta(days=1)), active)
            assert state.is_active, f"score {score} should not exit"
            assert state.activated_at == NOW

    def test_exit_above_fifty(self):
        active = evaluate(_context(recovery_score=30))
        state = evaluate(_context(recovery_score=51, now=NOW + timedelta(days=1)), active)
        assert not state.is_active
        assert "Exit condition met" in state.reason

    def test_missing_score_does_not_exit(self):
        active = evaluate(_context(recovery_score=30))
        assert evaluate(_context(now=NOW + timedelta(days=1)), active).is_active

    def test_escalation_to_more_restrictive(self):
        active = evaluate(_context(meeting_hours_today=7))
        state = evaluate(_context(meeting_hours_today=7, recovery_score=20), active)
        assert state.mvd_type == MVDType.FULL
        assert describe_transition(active, state) == "switched"

    def test_travel_exits_after_three_days(self):
        active = evaluate(_context(user_timezone="America/New_York", device_timezone="Asia/Tokyo"))
        later = _context(
            user_timezone="America/New_York", device_timezone="Asia/Tokyo", now=NOW + timedelta(days=3),
        )
        # Three days elapsed: exits, but the trigger still fires so it re-activates fresh
        state = evaluate(later, active)
        assert state.is_active
        assert state.activated_at == NOW + timedelta(days=3)

    def test_travel_exits_on_return_home(self):
        active = evaluate(_context(user_timezone="America/New_York", device_timezone="Asia/Tokyo"))
        home = _context(user_timezone="America/New_York", device_timezone="America/New_York")
        assert not evaluate(home, active).is_active


    def test_illness_exit_waits_for_flag_to_clear(self):
        active = evaluate(_context(recovery_score=60, illness_risk=IllnessRisk.HIGH))
        still_sick = _context(recovery_score=70, illness_risk=IllnessRisk.MEDIUM, now=NOW + timedelta(days=1))
        assert evaluate(still_sick, active).is_active

        recovered = _context(recovery_score=70, illness_risk=IllnessRisk.LOW, now=NOW + timedelta(days=2))
        state = evaluate(recovered, active)
        assert not state.is_active
        assert "Illness risk below medium" in state.reason

    def test_illness_exit_needs_recovery_too(self):
        active = evaluate(_context(recovery_score=60, illness_risk=IllnessRisk.HIGH))
        assert evaluate(_context(recovery_score=45, now=NOW + timedelta(days=1)), active).is_active


class TestManualOverride:
    """Tough Day button."""

    def test_manual_activation(self):
        state = activate_manually("mvd-user", NOW)
        assert state.is_active
        assert state.manual_override
        assert state.trigger == MVDTrigger.MANUAL_ACTIVATION
        assert state.mvd_type == MVDType.FULL

    def test_manual_activation_with_type(self):
        assert activate_manually("mvd-user", NOW, MVDType.TRAVEL).mvd_type == MVDType.TRAVEL

    def test_manual_deactivation(self):
        state = deactivate_manually("mvd-user", NOW)
        assert not state.is_active
        assert state.manual_override

    def test_next_evaluate_re_derives(self):
        manual = activate_manually("mvd-user", NOW)
        state = evaluate(_context(recovery_score=80, now=NOW + timedelta(hours=1)), manual)
        assert not state.is_active


class TestValidation:
    """Malformed input raises."""

    def test_score_out_of_range(self):
        with pytest.raises(MalformedInputError):
            evaluate(_context(recovery_score=140))

    def test_user_mismatch(self):
        with pytest.raises(MalformedInputError):
            evaluate(_context(), MVDState(user_id="someone-else"))

    def test_unknown_illness_risk(self):
        with pytest.raises(MalformedInputError) as exc:
            evaluate(_context(illness_risk="severe"))
        assert exc.value.field == "illness_risk"


class TestHelpers:
    """Offsets, transitions and summaries."""

    def test_timezone_offset(self):
        assert calculate_timezone_offset("UTC", "Asia/Tokyo", NOW) == 9
        assert calculate_timezone_offset("UTC", None, NOW) is None
        assert calculate_timezone_offset("UTC", "Not/AZone", NOW) is None

    def test_transitions(self):
        inactive = MVDState(user_id="u")
        active = activate_manually("u", NOW)
        assert describe_transition(None, active) == "activated"
        assert describe_transition(active, inactive) == "deactivated"
        assert describe_transition(inactive, inactive) == "unchanged"

    def test_summary(self):
        assert get_mvd_status_summary(None) == "MVD not active - full protocol access available"
        summary = get_mvd_status_summary(activate_manually("u", NOW))
        assert summary.startswith("MVD active (full): Bare essentials")
        assert summary.endswith("Exit condition: Recovery >50%")


class TestStatePersistence:
    """MVDState round-trips through the database."""

    def test_missing_state(self, db_session):
        assert get_state(db_session, "never-seen") is None

    def test_round_trip(self, db_session):
        state = evaluate(_context(recovery_score=20))
        save_state(db_session, state)
        loaded = get_state(db_session, "mvd-user")
        assert loaded.is_active
        assert loaded.mvd_type == MVDType.FULL
        assert loaded.trigger == MVDTrigger.LOW_RECOVERY
        assert loaded.exit_condition == state.exit_condition

    def test_illness_trigger_round_trip(self, db_session):
        save_state(db_session, evaluate(_context(illness_risk=IllnessRisk.HIGH)))
        assert get_state(db_session, "mvd-user").trigger == MVDTrigger.ILLNESS_RISK

    def test_save_overwrites(self, db_session):
        save_state(db_session, evaluate(_context(recovery_score=20)))
        save_state(db_session, deactivate_manually("mvd-user", NOW))
        loaded = get_state(db_session, "mvd-user")
        assert not loaded.is_active
        assert loaded.mvd_type is None
        assert loaded.manual_override
