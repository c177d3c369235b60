"""
Trigger Detector -- time-based trigger evaluation for safety sessions.

Two trigger kinds are found by polling:

* ``timer_expired`` -- the monitored window closed (plus any configured
  grace) and the user never checked in after the session started.
* ``missed_checkin`` -- the session defines a check-in cadence and the time
  since the last check-in (or the start, if none) exceeds cadence + grace.

``panic_button``, ``decoy_code`` and ``manual`` are never detected here; they
arrive as explicit client signals.  The detector's only job for them is to
reject a second trigger for a session that already has one.

Evaluation is pure: nothing is written.  The orchestrator persists results.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
from datetime import datetime, timedelta
from typing import Optional

from dateguard.config import EscalationPolicy
from dateguard.models import (
    OPEN_STATUSES,
    SafetyCodes,
    Session,
    TriggerEvent,
    TriggerSource,
    TriggerType,
)

logger = logging.getLogger(__name__)


def evaluate(
    session: Session,
    now: datetime,
    policy: Optional[EscalationPolicy] = None,
) -> Optional[TriggerEvent]:
    """Return the time-driven trigger due for ``session`` at ``now``, if any.

    Args:
        session: Current session record.
        now: Evaluation time (timezone-aware).
        policy: Grace settings; defaults to ``EscalationPolicy()``.

    Returns:
        A ``TriggerEvent`` sourced from the timeout sweep, or None.
    """
    policy = policy or EscalationPolicy()

    if session.trigger is not None:
        logger.info(
            "duplicate_trigger_ignored: session already holds %s",
            session.trigger.trigger_type.value,
        )
        return None
    if session.status not in OPEN_STATUSES:
        return None

    expiry_deadline = session.scheduled_end_at + timedelta(minutes=policy.expiry_grace_minutes)
    if now > expiry_deadline:
        if session.checked_in_since_start():
            # Lapsed after a check-in: closed silently by the sweep.
            return None
        return TriggerEvent(
            session_id=session.session_id,
            trigger_type=TriggerType.TIMER_EXPIRED,
            occurred_at=now,
            source=TriggerSource.TIMEOUT_SWEEP,
        )

    if session.checkin_interval_minutes is not None:
        reference = session.last_checkin_at or session.started_at
        allowed = timedelta(
            minutes=session.checkin_interval_minutes + policy.checkin_grace_minutes
        )
        if now - reference > allowed:
            return TriggerEvent(
                session_id=session.session_id,
                trigger_type=TriggerType.MISSED_CHECKIN,
                occurred_at=now,
                source=TriggerSource.TIMEOUT_SWEEP,
            )

    return None


def accept_signal(session: Session, event: TriggerEvent) -> Optional[TriggerEvent]:
    """Pass an explicit client trigger through, unless one is already recorded."""
    if session.trigger is not None:
        logger.info(
            "duplicate_trigger_ignored: %s after %s",
            event.trigger_type.value,
            session.trigger.trigger_type.value,
        )
        return None
    return event


# ---------------------------------------------------------------------------
# Safety codes
# ---------------------------------------------------------------------------

class SafetyCodeMatch(str, enum.Enum):
    DEACTIVATION = "deactivation"
    DECOY = "decoy"
    NO_MATCH = "no_match"


def hash_safety_code(code: str) -> str:
    """SHA-256 hex digest of a safety code, as stored in ``SafetyCodes``."""
    return hashlib.sha256(code.strip().encode("utf-8")).hexdigest()


def match_safety_code(code: str, codes: SafetyCodes) -> SafetyCodeMatch:
    """Classify an entered code against the user's stored digests.

    Both digests are compared in constant time so the response time does not
    reveal which code was entered.
    """
    digest = hash_safety_code(code)
    is_decoy = hmac.compare_digest(digest, codes.decoy_code_hash)
    is_deactivation = hmac.compare_digest(digest, codes.deactivation_code_hash)
    if is_decoy:
        return SafetyCodeMatch.DECOY
    if is_deactivation:
        return SafetyCodeMatch.DEACTIVATION
    return SafetyCodeMatch.NO_MATCH
