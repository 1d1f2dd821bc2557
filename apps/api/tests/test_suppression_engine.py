"""
Tests for the nudge suppression engine.

Key behaviours:
1. Nine rules in fixed order; the first non-overridable block wins
2. CRITICAL may exceed the daily cap by one and skips the cooldown
3. CRITICAL and ADAPTIVE skip meeting awareness
4. evaluate() reads time only from the context, so verdicts replay exactly
5. rules_checked ends with the blocking rule
6. A medium or high illness flag narrows to essentials like low recovery
"""

import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.exceptions import MalformedInputError
from services.mvd_protocols import MVDType
from services.recovery_score import IllnessRisk
from services.suppression_engine import (
    NudgePriority,
    RuleId,
    SUPPRESSION_RULES,
    SuppressionContext,
    build_suppression_context,
    check_streak_respect,
    evaluate,
    get_rule_by_id,
    get_user_local_hour,
    is_in_quiet_hours,
    parse_quiet_hour,
    simple_hash,
)

NOON = datetime(2024, 3, 12, 12, 0, tzinfo=timezone.utc)


def _context(**overrides):
    fields = dict(now=NOON, user_local_hour=12, protocol_id="proto_morning_light")
    fields.update(overrides)
    return SuppressionContext(**fields)


class TestRuleOrder:
    """Fixed priority order."""

    def test_rule_order(self):
        assert [r.id for r in SUPPRESSION_RULES] == [
            RuleId.DAILY_CAP,
            RuleId.QUIET_HOURS,
            RuleId.COOLDOWN,
            RuleId.FATIGUE_DETECTION,
            RuleId.MEETING_AWARENESS,
            RuleId.LOW_RECOVERY,
            RuleId.STREAK_RESPECT,
            RuleId.LOW_CONFIDENCE,
            RuleId.MVD_ACTIVE,
        ]

    def test_clean_context_allowed(self):
        result = evaluate(_context())
        assert result.allowed
        assert result.decision == "allowed"
        assert len(result.rules_checked) == 9

    def test_first_match_wins(self):
        """Cap, quiet hours and low confidence all fire: the cap is reported."""
        result = evaluate(_context(nudges_sent_today=5, user_local_hour=23, confidence_score=0.1))
        assert not result.allowed
        assert result.blocked_by == RuleId.DAILY_CAP
        assert result.rules_checked == ["daily_cap"]

    def test_rules_checked_ends_with_blocker(self):
        result = evaluate(_context(consecutive_dismissals=3))
        assert result.rules_checked == ["daily_cap", "quiet_hours", "cooldown", "fatigue_detection"]


class TestDailyCap:
    """Five a day; CRITICAL may send a sixth."""

    def test_standard_blocked_at_cap(self):
        result = evaluate(_context(nudges_sent_today=5))
        assert result.blocked_by == RuleId.DAILY_CAP
        assert result.decision == "daily_cap"
        assert result.reason == "Daily cap (5) reached"

    def test_critical_overrides_once(self):
        result = evaluate(_context(nudges_sent_today=5, nudge_priority=NudgePriority.CRITICAL))
        assert result.allowed
        assert result.was_overridden
        assert result.overridden_rule == RuleId.DAILY_CAP

    def test_critical_blocked_past_tolerance(self):
        result = evaluate(_context(nudges_sent_today=6, nudge_priority=NudgePriority.CRITICAL))
        assert result.blocked_by == RuleId.DAILY_CAP


class TestQuietHours:
    """Quiet window, wrapping midnight."""

    @pytest.mark.parametrize("hour,expected", [
        (21, False), (22, True), (23, True), (0, True), (5, True), (6, False), (12, False),
    ])
    def test_wrapping_window(self, hour, expected):
        assert is_in_quiet_hours(hour, 22, 6) == expected

    def test_same_day_window(self):
        assert is_in_quiet_hours(14, 13, 15)
        assert not is_in_quiet_hours(15, 13, 15)

    def test_empty_window(self):
        assert not is_in_quiet_hours(3, 4, 4)

    def test_critical_cannot_override(self):
        result = evaluate(_context(user_local_hour=23, nudge_priority=NudgePriority.CRITICAL))
        assert result.blocked_by == RuleId.QUIET_HOURS
        assert result.reason == "Quiet hours (22:00-6:00)"


class TestCooldown:
    """Two hours between nudges."""

    def test_blocks_inside_cooldown(self):
        result = evaluate(_context(last_nudge_at=NOON - timedelta(minutes=90)))
        assert result.blocked_by == RuleId.COOLDOWN
        assert result.reason == "2-hour cooldown not elapsed (30 min remaining)"

    def test_passes_after_cooldown(self):
        assert evaluate(_context(last_nudge_at=NOON - timedelta(hours=2))).allowed

    def test_critical_overrides(self):
        result = evaluate(_context(last_nudge_at=NOON - timedelta(minutes=10), nudge_priority=NudgePriority.CRITICAL))
        assert result.allowed
        assert result.overridden_rule == RuleId.COOLDOWN

    def test_naive_last_nudge_compared_as_utc(self):
        """A naive timestamp from storage against an aware clock."""
        result = evaluate(_context(last_nudge_at=datetime(2024, 3, 12, 10, 30)))
        assert result.blocked_by == RuleId.COOLDOWN
        assert result.reason == "2-hour cooldown not elapsed (30 min remaining)"

    def test_naive_now_compared_as_utc(self):
        ctx = _context(now=datetime(2024, 3, 12, 12, 0), last_nudge_at=NOON - timedelta(hours=3))
        assert evaluate(ctx).allowed


class TestMeetingAwareness:
    """Busy days suppress STANDARD nudges only."""

    def test_standard_blocked(self):
        result = evaluate(_context(meeting_hours_today=2.5))
        assert result.blocked_by == RuleId.MEETING_AWARENESS
        assert result.reason == "2.5+ meeting hours - suppressing STANDARD nudge"

    @pytest.mark.parametrize("priority", [NudgePriority.ADAPTIVE, NudgePriority.CRITICAL])
    def test_higher_priorities_pass(self, priority):
        assert evaluate(_context(meeting_hours_today=4, nudge_priority=priority)).allowed


class TestLowRecovery:
    """Recovery under 30 narrows to essentials."""

    def test_non_essential_blocked(self):
        result = evaluate(_context(recovery_score=25, protocol_id="proto_cold_plunge"))
        assert result.blocked_by == RuleId.LOW_RECOVERY
        assert result.reason == "Recovery 25% (<30%) - MVD-eligible protocols only"

    def test_essential_protocol_passes(self):
        assert evaluate(_context(recovery_score=25, protocol_id="proto_hydration_electrolytes")).allowed

    def test_morning_anchor_passes(self):
        assert evaluate(_context(recovery_score=25, protocol_id="proto_cold_plunge", is_morning_anchor=True)).allowed

    @pytest.mark.parametrize("risk", [IllnessRisk.MEDIUM, IllnessRisk.HIGH])
    def test_illness_flag_narrows_to_essentials(self, risk):
        result = evaluate(_context(recovery_score=80, illness_risk=risk, protocol_id="proto_cold_plunge"))
        assert result.blocked_by == RuleId.LOW_RECOVERY
        assert result.reason == f"Illness risk {risk.value} - MVD-eligible protocols only"

    def test_illness_flag_keeps_essentials(self):
        ctx = _context(recovery_score=80, illness_risk=IllnessRisk.HIGH, protocol_id="proto_hydration_electrolytes")
        assert evaluate(ctx).allowed

    @pytest.mark.parametrize("risk", [None, IllnessRisk.NONE, IllnessRisk.LOW])
    def test_mild_illness_flag_ignored(self, risk):
        assert evaluate(_context(recovery_score=80, illness_risk=risk, protocol_id="proto_cold_plunge")).allowed

    def test_low_score_reason_wins_when_both_apply(self):
        result = evaluate(_context(recovery_score=25, illness_risk=IllnessRisk.HIGH, protocol_id="proto_cold_plunge"))
        assert result.reason.startswith("Recovery 25%")


class TestStreakRespect:
    """Deterministic thinning for long streaks."""

    def test_short_streak_never_thinned(self):
        assert not check_streak_respect(_context(current_streak=6)).suppress

    def test_deterministic_per_day(self):
        ctx = _context(current_streak=10)
        assert check_streak_respect(ctx) == check_streak_respect(ctx)

    def test_follows_hash_parity(self):
        for offset in range(14):
            now = NOON + timedelta(days=offset)
            ctx = _context(now=now, current_streak=9)
            expected = simple_hash(f"{now.date().isoformat()}-9") % 2 == 0
            assert check_streak_respect(ctx).suppress == expected

    def test_thins_some_days_not_all(self):
        outcomes = {
            check_streak_respect(_context(now=NOON + timedelta(days=d), current_streak=8)).suppress
            for d in range(30)
        }
        assert outcomes == {True, False}


class TestLowConfidenceAndMvd:
    """Last two gates."""

    def test_low_confidence(self):
        result = evaluate(_context(confidence_score=0.3))
        assert result.blocked_by == RuleId.LOW_CONFIDENCE
        assert result.reason == "Confidence 30% (<40%) - below threshold"

    def test_threshold_inclusive_pass(self):
        assert evaluate(_context(confidence_score=0.4)).allowed

    def test_mvd_blocks_unapproved(self):
        result = evaluate(_context(mvd_active=True, mvd_type=MVDType.FULL, protocol_id="proto_walking_breaks"))
        assert result.blocked_by == RuleId.MVD_ACTIVE
        assert result.reason == "MVD mode active - only essential nudges allowed"

    def test_mvd_allows_type_specific(self):
        assert evaluate(_context(mvd_active=True, mvd_type=MVDType.SEMI_ACTIVE, protocol_id="proto_walking_breaks")).allowed

    def test_mvd_without_type_uses_full_list(self):
        assert not evaluate(_context(mvd_active=True, protocol_id="proto_caffeine_timing")).allowed


class TestBuildContext:
    """Context assembly and validation."""

    def test_defaults_and_local_hour(self):
        ctx = build_suppression_context(NOON, timezone_name="America/Los_Angeles")
        assert ctx.user_local_hour == 5  # PDT
        assert ctx.quiet_hours_start == 22
        assert ctx.quiet_hours_end == 6

    def test_naive_now_treated_as_utc(self):
        ctx = build_suppression_context(datetime(2024, 3, 12, 12, 0))
        assert ctx.now.tzinfo is not None
        assert ctx.user_local_hour == 12

    def test_mvd_type_string_coerced(self):
        assert build_suppression_context(NOON, mvd_type="travel").mvd_type == MVDType.TRAVEL

    def test_illness_risk_string_coerced(self):
        assert build_suppression_context(NOON, illness_risk="high").illness_risk == IllnessRisk.HIGH

    @pytest.mark.parametrize("kwargs", [
        {"nudges_sent_today": -1},
        {"consecutive_dismissals": -2},
        {"confidence_score": 1.5},
        {"meeting_hours_today": -1},
        {"quiet_hours_start": 24},
        {"illness_risk": "severe"},
    ])
    def test_malformed_rejected(self, kwargs):
        with pytest.raises(MalformedInputError):
            build_suppression_context(NOON, **kwargs)

    def test_replay_is_identical(self):
        ctx = build_suppression_context(NOON, nudges_sent_today=2, last_nudge_at=NOON - timedelta(hours=1))
        assert evaluate(ctx) == evaluate(ctx)


class TestHelpers:
    """Hashing, hour parsing, lookups."""

    def test_simple_hash_known_values(self):
        assert simple_hash("") == 0
        assert simple_hash("a") == 97
        assert simple_hash("ab") == 97 * 31 + 98

    def test_simple_hash_non_negative(self):
        assert simple_hash("a fairly long string that overflows 32 bits") >= 0

    def test_parse_quiet_hour(self):
        assert parse_quiet_hour("22:00") == 22
        assert parse_quiet_hour("6:30") == 6
        assert parse_quiet_hour("25:00") is None
        assert parse_quiet_hour("late") is None
        assert parse_quiet_hour(None) is None

    def test_invalid_timezone_falls_back(self):
        assert get_user_local_hour(NOON, "Mars/Olympus") == 12

    def test_get_rule_by_id(self):
        assert get_rule_by_id("cooldown").name == "Cooldown Period"
        assert get_rule_by_id("nope") is None
