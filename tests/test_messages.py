"""
Tests for dateguard.messages -- escalation message composition.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from dateguard.config import EscalationPolicy
from dateguard.messages import (
    GUARDIAN_TASKS,
    anonymize_counterpart,
    compose_escalation_message,
    compose_location_update,
)
from dateguard.models import (
    Location,
    MessageKind,
    NearestAuthority,
    Session,
    SessionStatus,
    TriggerRecord,
    TriggerType,
)

T0 = datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc)


def _session(**kwargs) -> Session:
    fields = dict(
        user_id="user_1",
        user_display_name="Jordan",
        started_at=T0,
        scheduled_end_at=T0 + timedelta(hours=2),
        status=SessionStatus.ESCALATING,
        location=Location(
            latitude=41.8781,
            longitude=-87.6298,
            address="233 S Wacker Dr, Chicago",
            note="Meeting at the rooftop bar",
        ),
    )
    fields.update(kwargs)
    return Session(**fields)


def _trigger(trigger_type: TriggerType = TriggerType.PANIC_BUTTON) -> TriggerRecord:
    return TriggerRecord(trigger_type=trigger_type, triggered_at=T0 + timedelta(minutes=45))


def _headings(message) -> list[str]:
    return [s.heading for s in message.sections]


class TestAnonymizeCounterpart:
    def test_keeps_last_three_characters(self):
        assert anonymize_counterpart("user-8f3a2c91") == "VAI-c91"

    def test_custom_prefix(self):
        assert anonymize_counterpart("abcdef", prefix="LEO") == "LEO-def"

    def test_short_identifier_fully_masked(self):
        assert anonymize_counterpart("ab") == "VAI-***"

    def test_empty_identifier(self):
        assert anonymize_counterpart("") is None
        assert anonymize_counterpart(None) is None


class TestEscalationMessage:
    def test_required_sections_in_order(self):
        message = compose_escalation_message(_session(), _trigger(), EscalationPolicy())
        assert _headings(message) == ["WHO", "WHEN", "WHERE", "WHAT HAPPENED", "WHAT TO DO"]
        assert message.kind == MessageKind.ESCALATION
        assert message.trigger_type == TriggerType.PANIC_BUTTON

    def test_text_contains_core_details(self):
        message = compose_escalation_message(_session(), _trigger(), EscalationPolicy())
        assert message.subject == "EMERGENCY: Jordan - PANIC BUTTON PRESSED"
        assert message.text.startswith("DateGuard EMERGENCY: Jordan")
        assert "WHO:\nJordan" in message.text
        assert "233 S Wacker Dr, Chicago" in message.text
        assert "41.8781N, 87.6298W" in message.text
        assert "Meeting at the rooftop bar" in message.text
        assert "Triggered: 20:45 UTC" in message.text

    def test_what_to_do_lists_guardian_tasks(self):
        message = compose_escalation_message(_session(), _trigger(), EscalationPolicy())
        body = message.sections[-1].body
        assert [task for task, _ in GUARDIAN_TASKS] == [
            "call_user",
            "check_location",
            "contact_authorities",
        ]
        assert body.splitlines()[0] == "1. Call Jordan now."
        assert body.splitlines()[2].startswith("3. If you cannot reach Jordan, contact local authorities.")

    def test_display_timezone_applied(self):
        policy = EscalationPolicy(display_timezone="America/Chicago")
        message = compose_escalation_message(_session(), _trigger(), policy)
        assert "Triggered: 15:45 CDT" in message.text

    def test_optional_sections_when_available(self):
        authority = NearestAuthority(name="1st District Police", phone="312-555-0100", distance_miles=0.4)
        message = compose_escalation_message(
            _session(),
            _trigger(TriggerType.DECOY_CODE),
            EscalationPolicy(),
            counterpart_identifier="match-77af19",
            authority=authority,
        )
        assert _headings(message) == [
            "WHO", "WHEN", "WHERE", "WHAT HAPPENED", "NEAREST AUTHORITY", "COUNTERPART", "WHAT TO DO",
        ]
        assert "ID: VAI-f19" in message.text
        assert "match-77af19" not in message.text
        assert "0.4 miles away" in message.text
        assert "DECOY CODE ENTERED" in message.text

    def test_missing_coordinates_degrade_gracefully(self):
        message = compose_escalation_message(
            _session(location=Location()), _trigger(TriggerType.TIMER_EXPIRED), EscalationPolicy()
        )
        assert "Coordinates: not available" in message.text
        assert "SESSION TIMER EXPIRED" in message.text

    def test_every_trigger_type_has_a_headline(self):
        for trigger_type in TriggerType:
            message = compose_escalation_message(_session(), _trigger(trigger_type), EscalationPolicy())
            assert message.subject.startswith("EMERGENCY: Jordan - ")


class TestLocationUpdate:
    def test_location_update_message(self):
        session = _session(
            trigger=_trigger(),
            location=Location(
                latitude=41.88,
                longitude=-87.63,
                note="private note",
                updated_at=T0 + timedelta(minutes=50),
            ),
        )
        message = compose_location_update(session, EscalationPolicy())
        assert message.kind == MessageKind.LOCATION_UPDATE
        assert message.subject == "LOCATION UPDATE: Jordan"
        assert _headings(message) == ["WHO", "WHEN", "WHERE"]
        assert "Updated: 20:50 UTC" in message.text
        assert "private note" not in message.text
