"""
Escalation message composition.

One ``EscalationMessage`` is composed per trigger and sent verbatim to every
guardian on every channel.  The text is plain and human-readable, split into
clearly headed sections: WHO, WHEN, WHERE, WHAT HAPPENED, then NEAREST
AUTHORITY and COUNTERPART when known, then WHAT TO DO.

The counterpart is only ever shown in anonymized form.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from dateguard.config import EscalationPolicy
from dateguard.models import (
    EscalationMessage,
    Location,
    MessageKind,
    MessageSection,
    NearestAuthority,
    Session,
    TriggerRecord,
    TriggerType,
)

TRIGGER_HEADLINES: dict[TriggerType, str] = {
    TriggerType.PANIC_BUTTON: "PANIC BUTTON PRESSED",
    TriggerType.TIMER_EXPIRED: "SESSION TIMER EXPIRED (NO RESPONSE)",
    TriggerType.DECOY_CODE: "DECOY CODE ENTERED",
    TriggerType.MISSED_CHECKIN: "MISSED CHECK-IN",
    TriggerType.MANUAL: "MANUAL EMERGENCY ALERT",
}


# Tasks every guardian is asked to take on, in order.  The task names are
# also written to the audit trail with each fan-out.
GUARDIAN_TASKS: tuple[tuple[str, str], ...] = (
    ("call_user", "Call {name} now."),
    ("check_location", "Check the location above and share it with anyone who can help."),
    (
        "contact_authorities",
        "If you cannot reach {name}, contact local authorities. Call 911 if this is life-threatening.",
    ),
)


def anonymize_counterpart(identifier: Optional[str], prefix: str = "VAI") -> Optional[str]:
    """Reduce a counterpart identifier to ``PREFIX-xyz`` (last three characters).

    Identifiers of three characters or fewer are fully masked.
    """
    if not identifier or not identifier.strip():
        return None
    identifier = identifier.strip()
    if len(identifier) <= 3:
        return f"{prefix}-***"
    return f"{prefix}-{identifier[-3:]}"


def _fmt_time(value: datetime, tz: ZoneInfo) -> str:
    return value.astimezone(tz).strftime("%H:%M %Z")


def _fmt_coordinates(location: Location) -> list[str]:
    if not location.has_coordinates:
        return ["Coordinates: not available"]
    lat, lng = location.latitude, location.longitude
    ns = "N" if lat >= 0 else "S"
    ew = "E" if lng >= 0 else "W"
    return [
        f"Coordinates: {abs(lat):.4f}{ns}, {abs(lng):.4f}{ew}",
        f"Map: https://www.google.com/maps/search/?api=1&query={lat},{lng}",
    ]


def _where_section(location: Location) -> MessageSection:
    lines = []
    if location.address:
        lines.append(f"Address: {location.address}")
    lines.extend(_fmt_coordinates(location))
    if location.note:
        lines.append(f'Note: "{location.note}"')
    if location.photo_url:
        lines.append(f"Photo: {location.photo_url}")
    return MessageSection(heading="WHERE", body="\n".join(lines))


def _authority_section(authority: NearestAuthority) -> MessageSection:
    lines = [authority.name]
    if authority.address:
        lines.append(authority.address)
    if authority.phone:
        lines.append(authority.phone)
    if authority.distance_miles is not None:
        lines.append(f"{authority.distance_miles:.1f} miles away")
    return MessageSection(heading="NEAREST AUTHORITY", body="\n".join(lines))


def render_text(subject: str, sections: tuple[MessageSection, ...]) -> str:
    blocks = [subject]
    for section in sections:
        blocks.append(f"{section.heading}:\n{section.body}")
    return "\n\n".join(blocks)


def compose_escalation_message(
    session: Session,
    trigger: TriggerRecord,
    policy: EscalationPolicy,
    counterpart_identifier: Optional[str] = None,
    authority: Optional[NearestAuthority] = None,
) -> EscalationMessage:
    """Build the single message fanned out for ``trigger``.

    Args:
        session: The session snapshot taken when the trigger was accepted.
        trigger: The accepted trigger record.
        policy: Supplies display timezone, app name and counterpart prefix.
        counterpart_identifier: Raw counterpart id; anonymized here.
        authority: Nearest authority, omitted from the text when None.
    """
    tz = ZoneInfo(policy.display_timezone)
    user_name = session.user_display_name or "User"
    headline = TRIGGER_HEADLINES[trigger.trigger_type]
    subject = f"EMERGENCY: {user_name} - {headline}"

    sections = [
        MessageSection(heading="WHO", body=user_name),
        MessageSection(
            heading="WHEN",
            body=(
                f"Session: {_fmt_time(session.started_at, tz)}-"
                f"{_fmt_time(session.scheduled_end_at, tz)}\n"
                f"Triggered: {_fmt_time(trigger.triggered_at, tz)}"
            ),
        ),
        _where_section(session.location),
        MessageSection(heading="WHAT HAPPENED", body=headline),
    ]

    if authority is not None:
        sections.append(_authority_section(authority))

    anonymized = anonymize_counterpart(counterpart_identifier, policy.counterpart_prefix)
    if anonymized is not None:
        sections.append(MessageSection(heading="COUNTERPART", body=f"ID: {anonymized}"))

    sections.append(MessageSection(
        heading="WHAT TO DO",
        body="\n".join(
            f"{number}. {instruction.format(name=user_name)}"
            for number, (_, instruction) in enumerate(GUARDIAN_TASKS, start=1)
        ),
    ))

    frozen_sections = tuple(sections)
    return EscalationMessage(
        session_id=session.session_id,
        trigger_type=trigger.trigger_type,
        kind=MessageKind.ESCALATION,
        subject=subject,
        sections=frozen_sections,
        text=render_text(f"{policy.app_name} {subject}", frozen_sections),
    )


def compose_location_update(
    session: Session,
    policy: EscalationPolicy,
) -> EscalationMessage:
    """Short follow-up sent to guardians when an escalated session moves."""
    tz = ZoneInfo(policy.display_timezone)
    user_name = session.user_display_name or "User"
    updated_at = session.location.updated_at or session.updated_at
    subject = f"LOCATION UPDATE: {user_name}"
    sections = (
        MessageSection(heading="WHO", body=user_name),
        MessageSection(heading="WHEN", body=f"Updated: {_fmt_time(updated_at, tz)}"),
        _where_section(session.location.model_copy(update={"note": "", "photo_url": None})),
    )
    trigger_type = session.trigger.trigger_type if session.trigger else TriggerType.MANUAL
    return EscalationMessage(
        session_id=session.session_id,
        trigger_type=trigger_type,
        kind=MessageKind.LOCATION_UPDATE,
        subject=subject,
        sections=sections,
        text=render_text(f"{policy.app_name} {subject}", sections),
    )
