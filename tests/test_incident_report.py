"""
Tests for dateguard.incident_report -- Incident reconstruction reports.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from dateguard.audit import AuditLog
from dateguard.delivery import ChannelAdapter
from dateguard.directory import InMemoryGuardianDirectory
from dateguard.escalation import EscalationOrchestrator
from dateguard.incident_report import IncidentReport, generate_incident_report
from dateguard.models import DeliveryChannel, GuardianContact, GuardianGroup, TriggerType
from dateguard.roster import GuardianRosterResolver
from dateguard.store import InMemorySessionStore

T0 = datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc)


def _orchestrator(audit_log: AuditLog) -> EscalationOrchestrator:
    directory = InMemoryGuardianDirectory([
        GuardianGroup(group_id="family", members=[
            GuardianContact(guardian_id="g1", name="Sam", phone="5550000001", email="sam@example.com"),
        ]),
    ])
    adapters = {ch: ChannelAdapter(ch) for ch in DeliveryChannel}
    return EscalationOrchestrator(
        InMemorySessionStore(),
        audit_log,
        GuardianRosterResolver(directory),
        adapters,
        clock=lambda: T0,
    )


class TestIncidentReport:
    def test_report_for_escalated_session(self):
        audit_log = AuditLog()
        orch = _orchestrator(audit_log)
        session = orch.arm_session("user_1", T0 + timedelta(hours=2), ["family"])
        orch.handle_trigger(session.session_id, TriggerType.PANIC_BUTTON)

        report = generate_incident_report(orch.get_session(session.session_id), audit_log)

        assert isinstance(report, IncidentReport)
        data = report.to_dict()
        assert data["report_type"] == "Safety Session Incident Report"
        assert data["status"] == "escalated"
        assert data["trigger"]["trigger_type"] == "panic_button"
        assert data["trigger"]["source"] == "client_signal"
        assert data["chain_integrity"] == "VALID"
        assert data["delivery_stats"]["test_mode"] == 2
        assert data["delivery_stats"]["total"] == 2
        assert data["delivery_stats"]["guardians_reached"] == 1

        events = [e["event"] for e in data["timeline"]]
        assert events[0] == "session_armed"
        assert "trigger_accepted" in events
        assert events[-1] == "escalation_completed"

    def test_deliveries_mask_destinations(self):
        audit_log = AuditLog()
        orch = _orchestrator(audit_log)
        session = orch.arm_session("user_1", T0 + timedelta(hours=2), ["family"])
        orch.handle_trigger(session.session_id, TriggerType.PANIC_BUTTON)

        data = generate_incident_report(orch.get_session(session.session_id), audit_log).to_dict()

        destinations = [d["destination"] for d in data["deliveries"]]
        assert destinations == ["***0001", "s***@example.com"]

    def test_report_for_resolved_session_has_no_trigger(self):
        audit_log = AuditLog()
        orch = _orchestrator(audit_log)
        session = orch.arm_session("user_1", T0 + timedelta(hours=2), ["family"])
        orch.check_in(session.session_id, final=True)

        data = generate_incident_report(orch.get_session(session.session_id), audit_log).to_dict()

        assert data["status"] == "resolved"
        assert data["trigger"] is None
        assert data["deliveries"] == []
        assert data["delivery_stats"]["total"] == 0
        assert data["timeline"][-1]["event"] == "session_resolved"

    def test_report_after_emergency_resolved(self):
        audit_log = AuditLog()
        orch = _orchestrator(audit_log)
        session = orch.arm_session("user_1", T0 + timedelta(hours=2), ["family"])
        orch.handle_trigger(session.session_id, TriggerType.PANIC_BUTTON)
        orch.resolve_emergency(session.session_id, "g1")

        data = generate_incident_report(orch.get_session(session.session_id), audit_log).to_dict()

        assert data["status"] == "resolved"
        assert data["trigger"]["trigger_type"] == "panic_button"
        assert data["timeline"][-1] == {
            "event": "session_resolved",
            "timestamp": T0.isoformat(),
            "actor_id": "g1",
            "description": "Emergency resolved; user confirmed safe.",
        }
