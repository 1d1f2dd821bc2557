"""
Audit Logger

Structured logging for every pipeline decision that affects what a user sees.
Used for debugging, compliance, and replaying suppression verdicts.

Format: JSON structured logs with:
- timestamp
- user_hash (anonymized)
- action
- after state / metadata
- error (failed-closed decisions)

Every blocking decision carries a machine-readable reason (rule id, skip
reason, or fail-closed reason), never just a boolean.
"""

import logging
import json
import hashlib
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from core.config import settings

audit_logger = logging.getLogger("pipeline.audit")
audit_logger.setLevel(logging.INFO)

# Add handler if not already configured
if not audit_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(message)s'))
    audit_logger.addHandler(handler)


def _anonymize_id(user_id: str) -> str:
    """Hash user ID for privacy in logs."""
    return hashlib.sha256(str(user_id).encode()).hexdigest()[:12]


def log_audit(
    action: str,
    user_id: str,
    success: bool = True,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """
    Log an audit event.

    Args:
        action: Action type (e.g., "recovery.scored", "nudge.suppressed")
        user_id: User id (will be anonymized)
        success: Whether the action completed normally
        after_state: Resulting state (optional)
        metadata: Additional context
        error: Error message if the pipeline failed closed

    Returns:
        The event that was written, or None when auditing is disabled.
    """
    if not settings.AUDIT_LOG_ENABLED:
        return None

    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "user_hash": _anonymize_id(user_id),
        "success": success,
    }

    if after_state:
        event["after"] = after_state

    if metadata:
        event["metadata"] = metadata

    if error:
        event["error"] = error

    audit_logger.info(json.dumps(event, default=str))
    return event


# =============================================================================
# SCORING
# =============================================================================

def log_recovery_scored(
    user_id: str,
    score: Optional[float],
    zone: Optional[str],
    confidence: Optional[float],
    is_lite_mode: bool = False,
    not_ready_reason: Optional[str] = None
) -> None:
    """Log a recovery or check-in score, or the reason none was produced."""
    if not_ready_reason:
        log_audit(
            action="recovery.not_ready",
            user_id=user_id,
            metadata={"reason": not_ready_reason, "is_lite_mode": is_lite_mode}
        )
        return
    log_audit(
        action="recovery.scored",
        user_id=user_id,
        after_state={
            "score": score,
            "zone": zone,
            "confidence": confidence,
            "is_lite_mode": is_lite_mode
        }
    )


# =============================================================================
# WAKE / MORNING ANCHOR
# =============================================================================

def log_wake_decided(
    user_id: str,
    detected: bool,
    method: Optional[str],
    confidence: float,
    reason: Optional[str] = None,
    skip_reason: Optional[str] = None
) -> None:
    """Log a wake detection and whether the Morning Anchor fired."""
    log_audit(
        action="wake.detected" if detected else "wake.not_detected",
        user_id=user_id,
        after_state={
            "method": method,
            "confidence": confidence,
            "morning_anchor": "skipped" if skip_reason else ("eligible" if detected else None)
        },
        metadata={"reason": reason, "skip_reason": skip_reason}
    )


# =============================================================================
# MVD
# =============================================================================

def log_mvd_transition(
    user_id: str,
    transition: str,
    is_active: bool,
    mvd_type: Optional[str],
    trigger: Optional[str],
    manual: bool = False
) -> None:
    """Log an MVD activation, deactivation, or type switch."""
    log_audit(
        action=f"mvd.{transition}",
        user_id=user_id,
        after_state={
            "is_active": is_active,
            "mvd_type": mvd_type,
            "trigger": trigger
        },
        metadata={"manual": manual}
    )


# =============================================================================
# NUDGES
# =============================================================================

def log_nudge_decision(
    user_id: str,
    protocol_id: Optional[str],
    delivered: bool,
    reason: str,
    confidence: Optional[float] = None,
    rules_checked: Optional[List[str]] = None,
    error: Optional[str] = None
) -> None:
    """
    Log the final verdict for one nudge candidate.

    reason is "allowed", a suppression rule id, or a fail-closed reason
    (pipeline_error, generation_failed, no_candidates, safety_flagged).
    """
    log_audit(
        action="nudge.delivered" if delivered else "nudge.suppressed",
        user_id=user_id,
        success=error is None,
        after_state={
            "protocol_id": protocol_id,
            "reason": reason,
            "confidence": confidence
        },
        metadata={"rules_checked": rules_checked} if rules_checked else None,
        error=error
    )


# =============================================================================
# SAFETY
# =============================================================================

def log_safety_flag(
    user_id: str,
    source: str,
    severity: Optional[str],
    keywords: List[str],
    resources_shown: Optional[List[str]] = None,
    rules_version: Optional[str] = None
) -> None:
    """Log a crisis detection or flagged generated text. Keywords only, never the text."""
    log_audit(
        action="safety.flagged",
        user_id=user_id,
        after_state={
            "source": source,
            "severity": severity,
            "keywords_detected": keywords,
            "resources_shown": resources_shown or []
        },
        metadata={"rules_version": rules_version} if rules_version else None
    )
