"""
Incident Report Generator.

Builds a structured reconstruction of one safety session from the session
record and its audit trail: what triggered escalation, when each lifecycle
step happened, and how every delivery attempt went.  Contact details are
masked; the report is meant for operators reviewing an incident.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from dateguard.audit import AuditEventType, AuditLog
from dateguard.logging_config import mask_destination
from dateguard.models import DeliveryAttempt, DeliveryStatus, Session

_TIMELINE_DESCRIPTIONS: dict[AuditEventType, str] = {
    AuditEventType.SESSION_ARMED: "Session armed by user.",
    AuditEventType.MONITORING_STARTED: "Monitoring window opened.",
    AuditEventType.SESSION_EXTENDED: "Session window extended.",
    AuditEventType.CHECK_IN_RECORDED: "Check-in recorded.",
    AuditEventType.CHECK_IN_IGNORED: "Check-in ignored.",
    AuditEventType.SAFETY_CODE_REJECTED: "Unrecognized safety code entered.",
    AuditEventType.TRIGGER_ACCEPTED: "Trigger accepted; escalation started.",
    AuditEventType.DUPLICATE_TRIGGER_IGNORED: "Further trigger ignored.",
    AuditEventType.TRIGGER_REJECTED: "Trigger rejected.",
    AuditEventType.NO_GUARDIANS_RESOLVED: "No guardians could be resolved.",
    AuditEventType.FALLBACK_NOTIFIED: "Fallback contacts notified.",
    AuditEventType.ESCALATION_COMPLETED: "Every resolved guardian has had a delivery attempt.",
    AuditEventType.LOCATION_UPDATED: "Location updated.",
    AuditEventType.SESSION_RESOLVED: "Session resolved safely.",
    AuditEventType.SESSION_EXPIRED_UNESCALATED: "Window lapsed without trigger or final check-in.",
}


class IncidentReport:
    """A structured incident reconstruction for one session."""

    def __init__(
        self,
        session_id: str,
        user_id: str,
        status: str,
        trigger: Optional[dict[str, str]],
        timeline: list[dict[str, str]],
        deliveries: list[dict[str, Any]],
        delivery_stats: dict[str, int],
        chain_integrity: str,
        generated_at: str,
    ) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self.status = status
        self.trigger = trigger
        self.timeline = timeline
        self.deliveries = deliveries
        self.delivery_stats = delivery_stats
        self.chain_integrity = chain_integrity
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": "Safety Session Incident Report",
            "session_id": self.session_id,
            "user_id": self.user_id,
            "status": self.status,
            "trigger": self.trigger,
            "timeline": self.timeline,
            "deliveries": self.deliveries,
            "delivery_stats": self.delivery_stats,
            "chain_integrity": self.chain_integrity,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return f"IncidentReport(session_id={self.session_id}, status={self.status})"


def generate_incident_report(session: Session, audit_log: AuditLog) -> IncidentReport:
    """Generate an incident report for ``session`` from ``audit_log``.

    Args:
        session: The current session record.
        audit_log: The log holding the session's audit trail.

    Returns:
        An ``IncidentReport`` ready for JSON serialization.
    """
    attempts = audit_log.delivery_attempts(session.session_id)
    chain_valid, broken_at = audit_log.verify_chain()

    trigger = None
    if session.trigger is not None:
        trigger = {
            "trigger_type": session.trigger.trigger_type.value,
            "source": session.trigger.source.value,
            "triggered_at": session.trigger.triggered_at.isoformat(),
        }

    return IncidentReport(
        session_id=session.session_id,
        user_id=session.user_id,
        status=session.status.value,
        trigger=trigger,
        timeline=_build_timeline(session, audit_log),
        deliveries=[_delivery_row(a) for a in attempts],
        delivery_stats=_delivery_stats(attempts),
        chain_integrity="VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_timeline(session: Session, audit_log: AuditLog) -> list[dict[str, str]]:
    """Chronological lifecycle events; per-delivery entries are summarized separately."""
    events = []
    for entry in audit_log.query(session_id=session.session_id):
        description = _TIMELINE_DESCRIPTIONS.get(entry.event_type)
        if description is None:
            continue
        if entry.event_type == AuditEventType.TRIGGER_ACCEPTED:
            description = f"Trigger {entry.metadata.get('trigger_type')} accepted; escalation started."
        elif entry.event_type == AuditEventType.CHECK_IN_IGNORED:
            description = f"Check-in ignored ({entry.metadata.get('reason')})."
        elif entry.event_type == AuditEventType.TRIGGER_REJECTED:
            description = f"Trigger rejected ({entry.metadata.get('reason')})."
        elif entry.metadata.get("resolution") == "emergency_resolved":
            description = "Emergency resolved; user confirmed safe."
        events.append({
            "event": entry.event_type.value,
            "timestamp": entry.timestamp.isoformat(),
            "actor_id": entry.actor_id,
            "description": description,
        })
    return events


def _delivery_row(attempt: DeliveryAttempt) -> dict[str, Any]:
    return {
        "guardian_id": attempt.guardian_id,
        "channel": attempt.channel.value,
        "destination": mask_destination(attempt.destination),
        "message_kind": attempt.message_kind.value,
        "status": attempt.status.value,
        "attempt_number": attempt.attempt_number,
        "error": attempt.error,
        "attempted_at": attempt.attempted_at.isoformat(),
    }


def _delivery_stats(attempts: list[DeliveryAttempt]) -> dict[str, int]:
    stats = {status.value: 0 for status in DeliveryStatus}
    for attempt in attempts:
        stats[attempt.status.value] += 1
    stats["total"] = len(attempts)
    stats["guardians_reached"] = len({a.guardian_id for a in attempts if a.succeeded})
    return stats
