"""
Tests for the structured audit trail.

Events carry an anonymized user hash, never the raw id, and every blocking
decision carries a machine-readable reason.
"""

import sys
import os
import hashlib
import json
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import settings
from services import audit_logger


class TestLogAudit:
    """Event shape."""

    def test_event_fields(self):
        event = audit_logger.log_audit("recovery.scored", "user-42", after_state={"score": 75})
        assert event["action"] == "recovery.scored"
        assert event["success"] is True
        assert event["after"] == {"score": 75}
        assert "timestamp" in event
        assert "metadata" not in event
        assert "error" not in event

    def test_user_id_anonymized(self):
        event = audit_logger.log_audit("wake.detected", "user-42")
        assert event["user_hash"] == hashlib.sha256(b"user-42").hexdigest()[:12]
        assert "user-42" not in json.dumps(event)

    def test_error_recorded(self):
        event = audit_logger.log_audit("nudge.suppressed", "u", success=False, error="timed out")
        assert event["success"] is False
        assert event["error"] == "timed out"

    def test_disabled(self):
        with patch.object(settings, "AUDIT_LOG_ENABLED", False):
            assert audit_logger.log_audit("recovery.scored", "u") is None

    def test_written_as_json(self):
        with patch.object(audit_logger.audit_logger, "info") as info:
            audit_logger.log_audit("mvd.activated", "u", metadata={"manual": True})
        payload = json.loads(info.call_args[0][0])
        assert payload["metadata"] == {"manual": True}


class TestHelpers:
    """Action names per pipeline stage."""

    def _capture(self):
        return patch.object(audit_logger, "log_audit")

    def test_recovery_not_ready(self):
        with self._capture() as log:
            audit_logger.log_recovery_scored("u", None, None, None, not_ready_reason="baseline_not_ready")
        assert log.call_args.kwargs["action"] == "recovery.not_ready"
        assert log.call_args.kwargs["metadata"]["reason"] == "baseline_not_ready"

    def test_recovery_scored(self):
        with self._capture() as log:
            audit_logger.log_recovery_scored("u", 75, "green", 0.85)
        assert log.call_args.kwargs["action"] == "recovery.scored"
        assert log.call_args.kwargs["after_state"]["zone"] == "green"

    def test_wake_skip(self):
        with self._capture() as log:
            audit_logger.log_wake_decided("u", True, "hrv_spike", 0.95, skip_reason="travel_detected")
        assert log.call_args.kwargs["action"] == "wake.detected"
        assert log.call_args.kwargs["after_state"]["morning_anchor"] == "skipped"

    def test_mvd_transition(self):
        with self._capture() as log:
            audit_logger.log_mvd_transition("u", "activated", True, "full", "low_recovery")
        assert log.call_args.kwargs["action"] == "mvd.activated"

    def test_nudge_suppressed(self):
        with self._capture() as log:
            audit_logger.log_nudge_decision("u", "proto_x", False, "quiet_hours", rules_checked=["daily_cap", "quiet_hours"])
        kwargs = log.call_args.kwargs
        assert kwargs["action"] == "nudge.suppressed"
        assert kwargs["after_state"]["reason"] == "quiet_hours"
        assert kwargs["success"] is True

    def test_nudge_failed_closed(self):
        with self._capture() as log:
            audit_logger.log_nudge_decision("u", None, False, "pipeline_error", error="boom")
        assert log.call_args.kwargs["success"] is False

    def test_safety_flag_keywords_only(self):
        with self._capture() as log:
            audit_logger.log_safety_flag("u", "user_input", "high", ["want to die"], resources_shown=["988"])
        after = log.call_args.kwargs["after_state"]
        assert after["keywords_detected"] == ["want to die"]
        assert after["resources_shown"] == ["988"]
