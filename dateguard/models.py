"""
Core data models for the DateGuard escalation core.

A ``Session`` is a time-boxed safety-monitoring commitment made by one user
with one guardian selection.  It carries at most one ``TriggerRecord`` --
the single event that converts monitoring into escalation.  Guardians are
represented as read-only ``GuardianContact`` records owned by the guardian
directory; each trigger produces exactly one ``EscalationMessage`` which is
fanned out as a series of append-only ``DeliveryAttempt`` records.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionStatus(str, enum.Enum):
    """Lifecycle states of a safety session.

    * ``ARMED`` -- created on user activation; window not yet open.
    * ``MONITORING`` -- window open; check-ins and triggers accepted.
    * ``CHECKED_IN_SAFE`` -- final check-in received; transient.
    * ``ESCALATING`` -- a trigger was accepted; fan-out in progress.
    * ``ESCALATED`` -- every resolved guardian has had a delivery attempt.
    * ``RESOLVED`` -- session closed safely.
    * ``EXPIRED_UNESCALATED`` -- window lapsed without trigger or final
      check-in; a near miss, no notification.
    """

    ARMED = "armed"
    MONITORING = "monitoring"
    CHECKED_IN_SAFE = "checked_in_safe"
    ESCALATING = "escalating"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    EXPIRED_UNESCALATED = "expired_unescalated"


OPEN_STATUSES = frozenset({SessionStatus.ARMED, SessionStatus.MONITORING})
ESCALATION_STATUSES = frozenset({SessionStatus.ESCALATING, SessionStatus.ESCALATED})


class TriggerType(str, enum.Enum):
    """Kinds of events that convert monitoring into escalation."""

    PANIC_BUTTON = "panic_button"
    TIMER_EXPIRED = "timer_expired"
    DECOY_CODE = "decoy_code"
    MISSED_CHECKIN = "missed_checkin"
    MANUAL = "manual"


class TriggerSource(str, enum.Enum):
    """Where a trigger event came from."""

    CLIENT_SIGNAL = "client_signal"
    TIMEOUT_SWEEP = "timeout_sweep"


class DeliveryChannel(str, enum.Enum):
    """Notification channels, in the order they are attempted per guardian."""

    SMS = "sms"
    PUSH = "push"
    EMAIL = "email"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    TEST_MODE = "test_mode"


class MessageKind(str, enum.Enum):
    ESCALATION = "escalation"
    LOCATION_UPDATE = "location_update"


# ---------------------------------------------------------------------------
# Guardians
# ---------------------------------------------------------------------------

class GuardianContact(BaseModel):
    """A resolved notification target.

    Read-only from the orchestrator's perspective.  A contact exposes one
    channel per populated destination field.
    """

    model_config = ConfigDict(frozen=True)

    guardian_id: str = Field(default_factory=_new_id)
    name: str = Field(..., min_length=1)
    phone: Optional[str] = Field(default=None, description="Phone number in any common format.")
    device_token: Optional[str] = Field(default=None, description="Push notification device token.")
    email: Optional[str] = Field(default=None)
    group_ids: tuple[str, ...] = Field(default_factory=tuple)

    def channels(self) -> list[DeliveryChannel]:
        """Channels this contact can be reached on, in attempt order."""
        found = []
        if self.phone:
            found.append(DeliveryChannel.SMS)
        if self.device_token:
            found.append(DeliveryChannel.PUSH)
        if self.email:
            found.append(DeliveryChannel.EMAIL)
        return found

    def destination_for(self, channel: DeliveryChannel) -> Optional[str]:
        if channel == DeliveryChannel.SMS:
            return self.phone
        if channel == DeliveryChannel.PUSH:
            return self.device_token
        return self.email


class GuardianGroup(BaseModel):
    """A named, ordered set of guardians chosen by the user."""

    group_id: str = Field(default_factory=_new_id)
    name: str = Field(default="")
    members: list[GuardianContact] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Location(BaseModel):
    """Location snapshot captured at activation and refreshed by GPS updates."""

    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    address: str = Field(default="")
    photo_url: Optional[str] = Field(default=None)
    note: str = Field(default="", description="Free-text pre-activation note.")
    updated_at: Optional[datetime] = Field(default=None)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class TriggerRecord(BaseModel):
    """The single trigger a session may ever hold.  Immutable once set."""

    model_config = ConfigDict(frozen=True)

    trigger_type: TriggerType
    triggered_at: datetime
    source: TriggerSource = TriggerSource.CLIENT_SIGNAL


class Session(BaseModel):
    """A bounded-duration safety monitoring commitment.

    ``guardian_group_ids`` and ``captured_rosters`` are fixed when the session
    is armed; later changes to group membership do not affect the session.
    ``version`` increments on every conditional write made by the store.
    """

    session_id: str = Field(default_factory=_new_id)
    user_id: str = Field(..., min_length=1)
    user_display_name: str = Field(default="")
    started_at: datetime = Field(default_factory=_utcnow)
    scheduled_end_at: datetime
    last_checkin_at: Optional[datetime] = Field(default=None)
    checkin_interval_minutes: Optional[int] = Field(
        default=None,
        gt=0,
        description="Expected check-in cadence; enables missed_checkin detection.",
    )
    location: Location = Field(default_factory=Location)
    encounter_id: Optional[str] = Field(
        default=None,
        description="Counterpart encounter, used only for the anonymized counterpart identifier.",
    )
    guardian_group_ids: tuple[str, ...] = Field(default_factory=tuple)
    captured_rosters: Optional[dict[str, list[GuardianContact]]] = Field(
        default=None,
        description="Group membership snapshot taken at arm time, keyed by group id.",
    )
    status: SessionStatus = Field(default=SessionStatus.ARMED)
    trigger: Optional[TriggerRecord] = Field(default=None)
    escalated_at: Optional[datetime] = Field(default=None)
    resolved_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=_utcnow)
    version: int = Field(default=0, ge=0)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def checked_in_since_start(self) -> bool:
        return self.last_checkin_at is not None and self.last_checkin_at >= self.started_at


class TriggerEvent(BaseModel):
    """A trigger, whether injected by a client action or found by the sweep.

    Every origin funnels through ``EscalationOrchestrator.handle_trigger`` so
    idempotency is enforced in one place.
    """

    session_id: str
    trigger_type: TriggerType
    occurred_at: datetime = Field(default_factory=_utcnow)
    source: TriggerSource = TriggerSource.CLIENT_SIGNAL

    def to_record(self) -> TriggerRecord:
        return TriggerRecord(
            trigger_type=self.trigger_type,
            triggered_at=self.occurred_at,
            source=self.source,
        )


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class NearestAuthority(BaseModel):
    """Nearest police or emergency authority for a set of coordinates."""

    name: str
    address: str = ""
    phone: str = ""
    distance_miles: Optional[float] = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Messages and delivery
# ---------------------------------------------------------------------------

class MessageSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    heading: str
    body: str


class EscalationMessage(BaseModel):
    """The single composed payload for one trigger (or one location update).

    Reused verbatim for every guardian and every channel.
    """

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=_new_id)
    session_id: str
    trigger_type: TriggerType
    kind: MessageKind = MessageKind.ESCALATION
    subject: str
    sections: tuple[MessageSection, ...] = Field(default_factory=tuple)
    text: str
    created_at: datetime = Field(default_factory=_utcnow)


class DeliveryOutcome(BaseModel):
    """What a channel adapter reports for a single send."""

    model_config = ConfigDict(frozen=True)

    channel: DeliveryChannel
    destination: str
    status: DeliveryStatus
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    simulated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.TEST_MODE)


class DeliveryAttempt(BaseModel):
    """One (message, guardian, channel) send.  Never updated after creation."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str = Field(default_factory=_new_id)
    session_id: str
    message_id: str
    message_kind: MessageKind = MessageKind.ESCALATION
    guardian_id: str
    channel: DeliveryChannel
    destination: str
    status: DeliveryStatus
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    simulated: bool = False
    attempt_number: int = Field(default=1, ge=1)
    attempted_at: datetime = Field(default_factory=_utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.TEST_MODE)


# ---------------------------------------------------------------------------
# Safety codes
# ---------------------------------------------------------------------------

class SafetyCodes(BaseModel):
    """SHA-256 hex digests of the user's deactivation and decoy codes.

    Entering the deactivation code ends the session safely; entering the
    decoy code looks like a normal deactivation to an onlooker but silently
    triggers escalation.
    """

    deactivation_code_hash: str = Field(..., min_length=64, max_length=64)
    decoy_code_hash: str = Field(..., min_length=64, max_length=64)
