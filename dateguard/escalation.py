"""
DateGuard Escalation Orchestrator.

This module owns the safety-session lifecycle as an explicit state machine
and runs the guardian fan-out when a trigger is accepted.

**State machine:**

    ARMED -> MONITORING -> CHECKED_IN_SAFE -> RESOLVED
                        -> ESCALATING -> ESCALATED -> RESOLVED
                        -> EXPIRED_UNESCALATED

ESCALATED -> RESOLVED happens only through ``resolve_emergency``, once
someone has confirmed the user is safe.

A trigger (panic button, decoy code, manual alert, timer expiry, missed
check-in) is accepted at most once per session.  Acceptance is a single
compare-and-set on the store -- "set trigger and move to ESCALATING iff no
trigger exists yet" -- so concurrent or retried submissions cannot both
fan out.  Every later trigger is recorded as ``duplicate_trigger_ignored``.

**Fan-out is best-effort and exhaustive.**  Every resolved guardian gets a
delivery attempt on every channel they expose; individual failures are
collected into the result instead of aborting the loop.  The session moves
to ESCALATED once every attempt has been made, whatever the outcomes.  A
fan-out interrupted by an infrastructure failure leaves the session in
ESCALATING; the timeout sweep picks it up later and attempts only the pairs
that have no recorded attempt yet.

**What callers see.**  Precondition violations (duplicate trigger, check-in
after escalation, closed session) come back as informational results.
``no_guardians_resolved`` and delivery failures are structured errors in the
result.  Store and audit failures propagate as exceptions.
"""

from __future__ import annotations

import contextvars
import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Collection, Optional, Sequence, Union

from pydantic import BaseModel, Field

from dateguard import trigger_detector
from dateguard.audit import AuditEntry, AuditEventType, AuditLog
from dateguard.config import EscalationPolicy
from dateguard.delivery import ChannelAdapter
from dateguard.directory import AuthorityLookup, CounterpartLookup
from dateguard.logging_config import mask_destination, session_context
from dateguard.messages import (
    GUARDIAN_TASKS,
    compose_escalation_message,
    compose_location_update,
)
from dateguard.models import (
    ESCALATION_STATUSES,
    OPEN_STATUSES,
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryOutcome,
    DeliveryStatus,
    EscalationMessage,
    GuardianContact,
    Location,
    MessageKind,
    NearestAuthority,
    SafetyCodes,
    Session,
    SessionStatus,
    TriggerEvent,
    TriggerRecord,
    TriggerSource,
    TriggerType,
)
from dateguard.roster import GuardianRosterResolver
from dateguard.store import SessionStore
from dateguard.trigger_detector import SafetyCodeMatch

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors and results
# ---------------------------------------------------------------------------

class InvalidTransitionError(Exception):
    """Raised when an explicit lifecycle call is made in the wrong state."""
    pass


class ErrorKind(str, enum.Enum):
    DUPLICATE_TRIGGER_IGNORED = "duplicate_trigger_ignored"
    SESSION_CLOSED = "session_closed"
    NO_GUARDIANS_RESOLVED = "no_guardians_resolved"
    DELIVERY_FAILED = "delivery_failed"
    LOOKUP_FAILED = "lookup_failed"
    RETRY_LIMIT_REACHED = "retry_limit_reached"


class EscalationError(BaseModel):
    kind: ErrorKind
    detail: str = ""
    guardian_id: Optional[str] = None
    channel: Optional[DeliveryChannel] = None


class EscalationResult(BaseModel):
    """Definitive outcome of ``handle_trigger`` (and of explicit retries)."""

    session_id: str
    status: SessionStatus
    trigger_type: Optional[TriggerType] = None
    duplicate: bool = False
    message_id: Optional[str] = None
    guardians_notified: int = 0
    guardians_attempted: int = 0
    fallback_notified: int = 0
    attempts: list[DeliveryAttempt] = Field(default_factory=list)
    errors: list[EscalationError] = Field(default_factory=list)

    def has_error(self, kind: ErrorKind) -> bool:
        return any(e.kind == kind for e in self.errors)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "guardians_notified": self.guardians_notified,
            "guardians_attempted": self.guardians_attempted,
            "errors": [e.model_dump(mode="json") for e in self.errors],
        }


class CheckInResult(BaseModel):
    session_id: str
    status: SessionStatus
    accepted: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"status": self.status.value}


class SweepTransition(BaseModel):
    session_id: str
    from_status: SessionStatus
    to_status: SessionStatus
    trigger_type: Optional[TriggerType] = None


class SafetyCodeResult(BaseModel):
    session_id: str
    match: SafetyCodeMatch
    check_in: Optional[CheckInResult] = None
    escalation: Optional[EscalationResult] = None


class LocationUpdateResult(BaseModel):
    session_id: str
    status: SessionStatus
    guardians_notified: int = 0
    attempts: list[DeliveryAttempt] = Field(default_factory=list)


_NON_TERMINAL = frozenset({
    SessionStatus.ARMED,
    SessionStatus.MONITORING,
    SessionStatus.ESCALATING,
    SessionStatus.ESCALATED,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Escalation orchestrator
# ---------------------------------------------------------------------------

class EscalationOrchestrator:
    """Owns the session state machine and the guardian fan-out.

    Args:
        store: Session store exposing the compare-and-set primitive.
        audit_log: Append-only log; also the delivery-attempt ledger.
        resolver: Guardian roster resolver.
        adapters: One delivery adapter per channel.  A channel without an
            adapter yields failed attempts rather than being skipped.
        policy: Escalation policy; defaults to ``EscalationPolicy()``.
        counterpart_lookup: Optional counterpart identifier source.
        authority_lookup: Optional nearest-authority source.
        clock: Returns the current UTC time; injectable for sweeps and tests.
    """

    def __init__(
        self,
        store: SessionStore,
        audit_log: AuditLog,
        resolver: GuardianRosterResolver,
        adapters: dict[DeliveryChannel, ChannelAdapter],
        policy: Optional[EscalationPolicy] = None,
        *,
        counterpart_lookup: Optional[CounterpartLookup] = None,
        authority_lookup: Optional[AuthorityLookup] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._audit = audit_log
        self._resolver = resolver
        self._adapters = dict(adapters)
        self._policy = policy or EscalationPolicy()
        self._counterparts = counterpart_lookup
        self._authorities = authority_lookup
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _record(
        self,
        session_id: str,
        event_type: AuditEventType,
        actor_id: str = "SYSTEM",
        **metadata: Any,
    ) -> AuditEntry:
        return self._audit.record(
            session_id, event_type, actor_id=actor_id, timestamp=self._now(), **metadata
        )

    def get_session(self, session_id: str) -> Session:
        return self._store.get(session_id)

    # -- lifecycle operations --

    def arm_session(
        self,
        user_id: str,
        scheduled_end_at: datetime,
        guardian_group_ids: list[str],
        *,
        user_display_name: str = "",
        started_at: Optional[datetime] = None,
        location: Optional[Location] = None,
        encounter_id: Optional[str] = None,
        checkin_interval_minutes: Optional[int] = None,
    ) -> Session:
        """Create a session on user activation.

        Group membership is captured now; later membership changes do not
        affect this session.  If the window is already open the session goes
        straight on to MONITORING.

        Raises:
            ValueError: If the window ends before it starts.
        """
        now = self._now()
        started_at = started_at or now
        if scheduled_end_at <= started_at:
            raise ValueError("scheduled_end_at must be after started_at.")

        session = Session(
            user_id=user_id,
            user_display_name=user_display_name,
            started_at=started_at,
            scheduled_end_at=scheduled_end_at,
            checkin_interval_minutes=checkin_interval_minutes,
            location=location or Location(),
            encounter_id=encounter_id,
            guardian_group_ids=tuple(guardian_group_ids),
            captured_rosters=self._resolver.snapshot(guardian_group_ids),
            status=SessionStatus.ARMED,
            updated_at=now,
        )
        session = self._store.create(session)

        with session_context(session.session_id):
            self._record(
                session.session_id,
                AuditEventType.SESSION_ARMED,
                actor_id=user_id,
                guardian_group_ids=list(guardian_group_ids),
                scheduled_end_at=scheduled_end_at.isoformat(),
            )
            logger.info("Session armed with %d guardian group(s)", len(guardian_group_ids))

            if started_at <= now:
                opened = self._open_window(session.session_id)
                if opened is not None:
                    session = opened
        return session

    def start_monitoring(self, session_id: str) -> Session:
        """ARMED -> MONITORING.

        Raises:
            InvalidTransitionError: If the session is not ARMED.
        """
        with session_context(session_id):
            opened = self._open_window(session_id)
            if opened is None:
                current = self._store.get(session_id)
                raise InvalidTransitionError(
                    f"Cannot start monitoring from {current.status.value}."
                )
            return opened

    def _open_window(self, session_id: str) -> Optional[Session]:
        opened = self._store.compare_and_set(
            session_id,
            {SessionStatus.ARMED},
            {"status": SessionStatus.MONITORING},
        )
        if opened is not None:
            self._record_transition(session_id, SessionStatus.ARMED, SessionStatus.MONITORING)
            self._record(session_id, AuditEventType.MONITORING_STARTED)
        return opened

    def _record_transition(
        self,
        session_id: str,
        from_status: SessionStatus,
        to_status: SessionStatus,
        actor_id: str = "SYSTEM",
    ) -> None:
        self._record(
            session_id,
            AuditEventType.STATE_TRANSITION,
            actor_id=actor_id,
            from_status=from_status.value,
            to_status=to_status.value,
        )

    # -- triggers --

    def handle_trigger(
        self,
        session_id: str,
        trigger: Union[TriggerType, str, TriggerEvent],
    ) -> EscalationResult:
        """Accept a trigger and fan the escalation out to every guardian.

        Idempotent per session: only the first trigger is recorded and fanned
        out; every later call returns the current state with a
        ``duplicate_trigger_ignored`` entry and makes no delivery attempts.

        Args:
            session_id: Session to escalate.
            trigger: A trigger type for client signals, or a full
                ``TriggerEvent`` (as produced by the timeout sweep).

        Returns:
            An ``EscalationResult``.

        Raises:
            SessionNotFoundError: If the session does not exist.
            ValueError: If a ``TriggerEvent`` names another session.
        """
        if isinstance(trigger, TriggerEvent):
            event = trigger
            if event.session_id != session_id:
                raise ValueError("TriggerEvent.session_id does not match session_id.")
        else:
            event = TriggerEvent(
                session_id=session_id,
                trigger_type=TriggerType(trigger),
                occurred_at=self._now(),
                source=TriggerSource.CLIENT_SIGNAL,
            )

        with session_context(session_id):
            session = self._store.get(session_id)
            if trigger_detector.accept_signal(session, event) is None:
                return self._ignore_duplicate(session, event)
            if session.status not in OPEN_STATUSES:
                return self._reject_closed(session, event)

            expected_version = None
            if event.source == TriggerSource.TIMEOUT_SWEEP:
                # Time-driven triggers must still be due on the record being written.
                due = trigger_detector.evaluate(session, event.occurred_at, self._policy)
                if due is None or due.trigger_type != event.trigger_type:
                    return self._drop_stale(session, event)
                expected_version = session.version

            escalating = self._store.set_trigger_if_unset(
                session_id, event.to_record(), OPEN_STATUSES, expected_version=expected_version
            )
            if escalating is None:
                current = self._store.get(session_id)
                if current.trigger is not None:
                    return self._ignore_duplicate(current, event)
                if current.status in OPEN_STATUSES:
                    return self._drop_stale(current, event)
                return self._reject_closed(current, event)

            actor = session.user_id if event.source == TriggerSource.CLIENT_SIGNAL else "SYSTEM"
            self._record(
                session_id,
                AuditEventType.TRIGGER_ACCEPTED,
                actor_id=actor,
                trigger_type=event.trigger_type.value,
                source=event.source.value,
                triggered_at=event.occurred_at.isoformat(),
            )
            self._record_transition(session_id, session.status, SessionStatus.ESCALATING, actor)
            logger.warning("Trigger accepted: %s", event.trigger_type.value)

            return self._escalate(escalating)

    def _ignore_duplicate(self, session: Session, event: TriggerEvent) -> EscalationResult:
        existing = session.trigger
        self._record(
            session.session_id,
            AuditEventType.DUPLICATE_TRIGGER_IGNORED,
            attempted_trigger=event.trigger_type.value,
            existing_trigger=existing.trigger_type.value,
            source=event.source.value,
        )
        logger.info(
            "duplicate_trigger_ignored: %s (session already holds %s)",
            event.trigger_type.value,
            existing.trigger_type.value,
        )
        return EscalationResult(
            session_id=session.session_id,
            status=session.status,
            trigger_type=existing.trigger_type,
            duplicate=True,
            errors=[EscalationError(
                kind=ErrorKind.DUPLICATE_TRIGGER_IGNORED,
                detail=f"Session already escalated by {existing.trigger_type.value}.",
            )],
        )

    def _reject_closed(self, session: Session, event: TriggerEvent) -> EscalationResult:
        self._record(
            session.session_id,
            AuditEventType.TRIGGER_REJECTED,
            attempted_trigger=event.trigger_type.value,
            status=session.status.value,
            reason="session_closed",
        )
        logger.info("Trigger %s rejected: session is %s", event.trigger_type.value, session.status.value)
        return EscalationResult(
            session_id=session.session_id,
            status=session.status,
            errors=[EscalationError(
                kind=ErrorKind.SESSION_CLOSED,
                detail=f"Session is {session.status.value}; triggers are no longer accepted.",
            )],
        )

    def _drop_stale(self, session: Session, event: TriggerEvent) -> EscalationResult:
        self._record(
            session.session_id,
            AuditEventType.TRIGGER_REJECTED,
            attempted_trigger=event.trigger_type.value,
            status=session.status.value,
            reason="session_changed",
        )
        logger.info(
            "Sweep trigger %s dropped: session changed after it was evaluated",
            event.trigger_type.value,
        )
        return EscalationResult(session_id=session.session_id, status=session.status)

    def _escalate(self, session: Session) -> EscalationResult:
        session_id = session.session_id
        trigger = session.trigger

        if self._audit.has_fan_out(session_id, trigger.trigger_type):
            logger.info("Fan-out already recorded for this trigger; not repeating")
            return EscalationResult(
                session_id=session_id,
                status=self._store.get(session_id).status,
                trigger_type=trigger.trigger_type,
                duplicate=True,
                errors=[EscalationError(kind=ErrorKind.DUPLICATE_TRIGGER_IGNORED)],
            )

        contacts, errors = self._resolve_contacts(session)
        message, lookup_errors = self._compose(session, trigger)
        errors.extend(lookup_errors)

        self._record(
            session_id,
            AuditEventType.FAN_OUT_STARTED,
            trigger_type=trigger.trigger_type.value,
            message_id=message.message_id,
            guardian_count=len(contacts),
            pair_count=sum(len(c.channels()) for c in contacts),
            guardian_tasks=[task for task, _ in GUARDIAN_TASKS],
            message=message.model_dump(mode="json"),
        )
        return self._finish_escalation(session, message, contacts, errors)

    def _resume_escalation(self, session: Session) -> Optional[EscalationResult]:
        """Complete a fan-out that was interrupted after the trigger was accepted.

        Pairs that already have a recorded attempt are not sent again.
        Returns None when another caller changed the session first.
        """
        session_id = session.session_id
        claimed = self._store.compare_and_set(
            session_id,
            {SessionStatus.ESCALATING},
            {"updated_at": self._now()},
            expected_version=session.version,
        )
        if claimed is None:
            return None

        logger.warning("Resuming interrupted fan-out for %s", claimed.trigger.trigger_type.value)
        message = self._audit.escalation_message(session_id)
        if message is None:
            return self._escalate(claimed)

        contacts, errors = self._resolve_contacts(claimed, record=False)
        prior = self._audit.delivery_attempts(
            session_id, message_id=message.message_id, kind=MessageKind.ESCALATION
        )
        return self._finish_escalation(claimed, message, contacts, errors, prior)

    def _resolve_contacts(
        self, session: Session, record: bool = True
    ) -> tuple[list[GuardianContact], list[EscalationError]]:
        errors: list[EscalationError] = []
        contacts = self._resolver.resolve(session)
        if contacts:
            if record:
                self._record(
                    session.session_id,
                    AuditEventType.GUARDIANS_RESOLVED,
                    guardian_count=len(contacts),
                    guardian_ids=[c.guardian_id for c in contacts],
                )
            return contacts, errors

        if record:
            self._record(
                session.session_id,
                AuditEventType.NO_GUARDIANS_RESOLVED,
                guardian_group_ids=list(session.guardian_group_ids),
            )
        logger.error("No guardians resolved for escalation")
        errors.append(EscalationError(
            kind=ErrorKind.NO_GUARDIANS_RESOLVED,
            detail="No guardian could be resolved; a fallback (e.g. direct authority contact) is required.",
        ))
        return contacts, errors

    def _finish_escalation(
        self,
        session: Session,
        message: EscalationMessage,
        contacts: list[GuardianContact],
        errors: list[EscalationError],
        prior: Sequence[DeliveryAttempt] = (),
    ) -> EscalationResult:
        session_id = session.session_id
        trigger = session.trigger
        done = {(a.guardian_id, a.channel) for a in prior}

        attempts = self._fan_out(session_id, message, contacts, skip=done)
        errors.extend(self._delivery_errors(attempts))

        fallback_notified = 0
        if not contacts and self._policy.fallback_contacts:
            fallback = self._policy.fallback_contacts
            fallback_attempts = self._fan_out(session_id, message, fallback, skip=done)
            fallback_ids = {c.guardian_id for c in fallback}
            fallback_notified = len({
                a.guardian_id
                for a in list(prior) + fallback_attempts
                if a.succeeded and a.guardian_id in fallback_ids
            })
            self._record(
                session_id,
                AuditEventType.FALLBACK_NOTIFIED,
                contact_count=len(fallback),
                notified=fallback_notified,
            )
            errors.extend(self._delivery_errors(fallback_attempts))
            attempts = attempts + fallback_attempts

        now = self._now()
        escalated = self._store.compare_and_set(
            session_id,
            {SessionStatus.ESCALATING},
            {"status": SessionStatus.ESCALATED, "escalated_at": now},
        )
        if escalated is None:
            escalated = self._store.get(session_id)
        else:
            self._record_transition(session_id, SessionStatus.ESCALATING, SessionStatus.ESCALATED)

        guardian_ids = {c.guardian_id for c in contacts}
        notified = {
            a.guardian_id
            for a in list(prior) + attempts
            if a.succeeded and a.guardian_id in guardian_ids
        }

        self._record(
            session_id,
            AuditEventType.ESCALATION_COMPLETED,
            guardians_attempted=len(guardian_ids),
            guardians_notified=len(notified),
            attempt_count=len(attempts),
            error_count=len(errors),
            resumed=bool(prior),
        )
        logger.warning(
            "Escalation complete: %d of %d guardian(s) notified",
            len(notified),
            len(guardian_ids),
        )

        return EscalationResult(
            session_id=session_id,
            status=escalated.status,
            trigger_type=trigger.trigger_type,
            message_id=message.message_id,
            guardians_notified=len(notified),
            guardians_attempted=len(guardian_ids),
            fallback_notified=fallback_notified,
            attempts=attempts,
            errors=errors,
        )

    def _compose(
        self, session: Session, trigger: TriggerRecord
    ) -> tuple[EscalationMessage, list[EscalationError]]:
        errors: list[EscalationError] = []

        counterpart = None
        if self._counterparts is not None and session.encounter_id:
            try:
                counterpart = self._counterparts.counterpart_identifier(session)
            except Exception as exc:
                logger.warning("Counterpart lookup failed: %s", exc, exc_info=True)
                errors.append(EscalationError(kind=ErrorKind.LOOKUP_FAILED, detail=f"counterpart: {exc}"))

        authority: Optional[NearestAuthority] = None
        if self._authorities is not None and session.location.has_coordinates:
            try:
                authority = self._authorities.nearest_authority(
                    session.location.latitude, session.location.longitude
                )
            except Exception as exc:
                logger.warning("Authority lookup failed: %s", exc, exc_info=True)
                errors.append(EscalationError(kind=ErrorKind.LOOKUP_FAILED, detail=f"authority: {exc}"))

        message = compose_escalation_message(
            session,
            trigger,
            self._policy,
            counterpart_identifier=counterpart,
            authority=authority,
        )
        return message, errors

    # -- fan-out --

    def _fan_out(
        self,
        session_id: str,
        message: EscalationMessage,
        contacts: list[GuardianContact],
        skip: Collection[tuple[str, DeliveryChannel]] = (),
    ) -> list[DeliveryAttempt]:
        """One attempt per (contact, channel) pair not in ``skip``, in pair order."""
        pairs = [
            (contact.guardian_id, channel, contact.destination_for(channel))
            for contact in contacts
            for channel in contact.channels()
            if (contact.guardian_id, channel) not in skip
        ]
        workers = min(self._policy.max_parallel_sends, len(pairs))
        if workers <= 1:
            return [
                self._deliver(session_id, message, guardian_id, channel, destination)
                for guardian_id, channel, destination in pairs
            ]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dateguard-send") as pool:
            futures = [
                pool.submit(
                    contextvars.copy_context().run,
                    self._deliver,
                    session_id,
                    message,
                    guardian_id,
                    channel,
                    destination,
                )
                for guardian_id, channel, destination in pairs
            ]
            return [f.result() for f in futures]

    def _deliver(
        self,
        session_id: str,
        message: EscalationMessage,
        guardian_id: str,
        channel: DeliveryChannel,
        destination: Optional[str],
        attempt_number: int = 1,
    ) -> DeliveryAttempt:
        adapter = self._adapters.get(channel)
        if adapter is None:
            outcome = DeliveryOutcome(
                channel=channel,
                destination=destination or "",
                status=DeliveryStatus.FAILED,
                error=f"No delivery adapter configured for channel {channel.value}",
            )
        else:
            outcome = adapter.send(destination or "", message)

        attempt = DeliveryAttempt(
            session_id=session_id,
            message_id=message.message_id,
            message_kind=message.kind,
            guardian_id=guardian_id,
            channel=channel,
            destination=outcome.destination,
            status=outcome.status,
            provider_message_id=outcome.provider_message_id,
            error=outcome.error,
            simulated=outcome.simulated,
            attempt_number=attempt_number,
            attempted_at=self._now(),
        )
        self._audit.record_delivery(attempt)
        if not attempt.succeeded:
            logger.warning(
                "Delivery to guardian %s via %s (%s) failed: %s",
                guardian_id,
                channel.value,
                mask_destination(outcome.destination),
                outcome.error,
            )
        return attempt

    @staticmethod
    def _delivery_errors(attempts: list[DeliveryAttempt]) -> list[EscalationError]:
        return [
            EscalationError(
                kind=ErrorKind.DELIVERY_FAILED,
                detail=a.error or "delivery failed",
                guardian_id=a.guardian_id,
                channel=a.channel,
            )
            for a in attempts
            if not a.succeeded
        ]

    def retry_failed_deliveries(self, session_id: str) -> EscalationResult:
        """Re-send the escalation message where the latest attempt failed.

        Each (guardian, channel) pair gets at most
        ``policy.max_delivery_retries`` retries after its initial attempt.
        Retries reuse the recorded destination and message verbatim.

        Raises:
            InvalidTransitionError: If the session is not ESCALATED.
        """
        with session_context(session_id):
            session = self._store.get(session_id)
            if session.status != SessionStatus.ESCALATED:
                raise InvalidTransitionError(
                    f"Retries are only possible once ESCALATED; session is {session.status.value}."
                )

            message = self._audit.escalation_message(session_id)
            if message is None:
                raise InvalidTransitionError("No escalation fan-out is recorded for this session.")
            history = self._audit.delivery_attempts(
                session_id, message_id=message.message_id, kind=MessageKind.ESCALATION
            )

            latest: dict[tuple[str, DeliveryChannel], DeliveryAttempt] = {}
            for attempt in history:
                key = (attempt.guardian_id, attempt.channel)
                previous = latest.get(key)
                if previous is None or attempt.attempt_number >= previous.attempt_number:
                    latest[key] = attempt

            errors: list[EscalationError] = []
            retried: list[DeliveryAttempt] = []
            max_attempts = 1 + self._policy.max_delivery_retries
            for (guardian_id, channel), attempt in latest.items():
                if attempt.succeeded:
                    continue
                if attempt.attempt_number >= max_attempts:
                    errors.append(EscalationError(
                        kind=ErrorKind.RETRY_LIMIT_REACHED,
                        detail=f"{attempt.attempt_number} attempts made",
                        guardian_id=guardian_id,
                        channel=channel,
                    ))
                    continue
                retried.append(self._deliver(
                    session_id,
                    message,
                    guardian_id,
                    channel,
                    attempt.destination,
                    attempt_number=attempt.attempt_number + 1,
                ))

            errors.extend(self._delivery_errors(retried))
            logger.info("Retried %d failed delivery attempt(s)", len(retried))
            return EscalationResult(
                session_id=session_id,
                status=session.status,
                trigger_type=session.trigger.trigger_type,
                message_id=message.message_id,
                guardians_attempted=len({a.guardian_id for a in retried}),
                guardians_notified=len({a.guardian_id for a in retried if a.succeeded}),
                attempts=retried,
                errors=errors,
            )

    # -- check-ins --

    def check_in(self, session_id: str, final: bool = False) -> CheckInResult:
        """Record a liveness check-in.

        Valid only while MONITORING without a trigger.  ``final=True`` ends
        the session safely (CHECKED_IN_SAFE -> RESOLVED).  Once a trigger
        exists the call is a logged no-op: the trigger supersedes check-in.
        """
        with session_context(session_id):
            session = self._store.get(session_id)
            now = self._now()

            if (
                session.status == SessionStatus.ARMED
                and session.trigger is None
                and session.started_at <= now
            ):
                session = self._open_window(session_id) or self._store.get(session_id)

            if session.trigger is not None:
                return self._ignore_check_in(session, "trigger_already_recorded")
            if session.status != SessionStatus.MONITORING:
                return self._ignore_check_in(session, "invalid_state")

            recorded = self._store.compare_and_set(
                session_id,
                {SessionStatus.MONITORING},
                {"last_checkin_at": now},
                require_no_trigger=True,
            )
            if recorded is None:
                current = self._store.get(session_id)
                reason = "trigger_already_recorded" if current.trigger else "invalid_state"
                return self._ignore_check_in(current, reason)

            self._record(
                session_id,
                AuditEventType.CHECK_IN_RECORDED,
                actor_id=session.user_id,
                final=final,
                checked_in_at=now.isoformat(),
            )
            if not final:
                return CheckInResult(session_id=session_id, status=recorded.status, accepted=True)

            safe = self._store.compare_and_set(
                session_id,
                {SessionStatus.MONITORING},
                {"status": SessionStatus.CHECKED_IN_SAFE},
                require_no_trigger=True,
            )
            if safe is None:
                return self._ignore_check_in(self._store.get(session_id), "trigger_already_recorded")
            self._record_transition(
                session_id, SessionStatus.MONITORING, SessionStatus.CHECKED_IN_SAFE, session.user_id
            )

            resolved = self._store.compare_and_set(
                session_id,
                {SessionStatus.CHECKED_IN_SAFE},
                {"status": SessionStatus.RESOLVED, "resolved_at": now},
            )
            if resolved is None:
                resolved = self._store.get(session_id)
            else:
                self._record_transition(
                    session_id, SessionStatus.CHECKED_IN_SAFE, SessionStatus.RESOLVED, session.user_id
                )
                self._record(session_id, AuditEventType.SESSION_RESOLVED, actor_id=session.user_id)
            logger.info("Session resolved by final check-in")
            return CheckInResult(session_id=session_id, status=resolved.status, accepted=True)

    def _ignore_check_in(self, session: Session, reason: str) -> CheckInResult:
        self._record(
            session.session_id,
            AuditEventType.CHECK_IN_IGNORED,
            actor_id=session.user_id,
            reason=reason,
            status=session.status.value,
        )
        logger.info("Check-in ignored: %s", reason)
        return CheckInResult(
            session_id=session.session_id,
            status=session.status,
            accepted=False,
            reason=reason,
        )

    def extend_session(self, session_id: str, minutes: Optional[int] = None) -> Session:
        """Push the window end out by ``minutes`` from now (or from the
        current end, whichever is later).

        Raises:
            InvalidTransitionError: If the session is not MONITORING or a
                trigger is already recorded.
            ValueError: If ``minutes`` is not positive.
        """
        minutes = self._policy.extension_minutes if minutes is None else minutes
        if minutes <= 0:
            raise ValueError("Extension must be a positive number of minutes.")

        with session_context(session_id):
            session = self._store.get(session_id)
            now = self._now()
            new_end = max(session.scheduled_end_at, now) + timedelta(minutes=minutes)
            extended = self._store.compare_and_set(
                session_id,
                {SessionStatus.MONITORING},
                {"scheduled_end_at": new_end},
                require_no_trigger=True,
            )
            if extended is None:
                current = self._store.get(session_id)
                raise InvalidTransitionError(
                    f"Cannot extend a session that is {current.status.value}"
                    + (" with a trigger recorded." if current.trigger else ".")
                )
            self._record(
                session_id,
                AuditEventType.SESSION_EXTENDED,
                actor_id=session.user_id,
                minutes=minutes,
                scheduled_end_at=new_end.isoformat(),
            )
            return extended

    def submit_safety_code(
        self,
        session_id: str,
        code: str,
        codes: SafetyCodes,
    ) -> SafetyCodeResult:
        """Handle a code typed into the session screen.

        The deactivation code ends the session safely.  The decoy code
        silently triggers escalation.  Anything else is rejected and audited.
        """
        match = trigger_detector.match_safety_code(code, codes)
        if match == SafetyCodeMatch.DEACTIVATION:
            return SafetyCodeResult(
                session_id=session_id,
                match=match,
                check_in=self.check_in(session_id, final=True),
            )
        if match == SafetyCodeMatch.DECOY:
            return SafetyCodeResult(
                session_id=session_id,
                match=match,
                escalation=self.handle_trigger(session_id, TriggerType.DECOY_CODE),
            )

        with session_context(session_id):
            session = self._store.get(session_id)
            self._record(session_id, AuditEventType.SAFETY_CODE_REJECTED, actor_id=session.user_id)
            logger.info("Safety code rejected")
        return SafetyCodeResult(session_id=session_id, match=match)

    # -- location --

    def update_location(
        self,
        session_id: str,
        latitude: float,
        longitude: float,
        address: Optional[str] = None,
    ) -> LocationUpdateResult:
        """Refresh the location snapshot.

        While the session is ESCALATING or ESCALATED every resolved guardian
        also receives a short location-update message.

        Raises:
            InvalidTransitionError: If the session is already closed.
        """
        with session_context(session_id):
            session = self._store.get(session_id)
            now = self._now()
            fields = session.location.model_dump()
            fields.update(latitude=latitude, longitude=longitude, updated_at=now)
            if address is not None:
                fields["address"] = address
            location = Location(**fields)

            updated = self._store.compare_and_set(
                session_id, _NON_TERMINAL, {"location": location}
            )
            if updated is None:
                current = self._store.get(session_id)
                raise InvalidTransitionError(
                    f"Cannot update location of a {current.status.value} session."
                )
            self._record(
                session_id,
                AuditEventType.LOCATION_UPDATED,
                actor_id=session.user_id,
                latitude=latitude,
                longitude=longitude,
            )

            if updated.status not in ESCALATION_STATUSES:
                return LocationUpdateResult(session_id=session_id, status=updated.status)

            contacts = self._resolver.resolve(updated)
            message = compose_location_update(updated, self._policy)
            attempts = self._fan_out(session_id, message, contacts)
            return LocationUpdateResult(
                session_id=session_id,
                status=updated.status,
                guardians_notified=len({a.guardian_id for a in attempts if a.succeeded}),
                attempts=attempts,
            )

    def resolve_emergency(self, session_id: str, actor_id: str, note: str = "") -> Session:
        """Close an escalated session once the user is confirmed safe.

        ESCALATED -> RESOLVED.  Guardians get no further location updates.

        Raises:
            InvalidTransitionError: If the session is not ESCALATED.
        """
        with session_context(session_id):
            resolved = self._store.compare_and_set(
                session_id,
                {SessionStatus.ESCALATED},
                {"status": SessionStatus.RESOLVED, "resolved_at": self._now()},
            )
            if resolved is None:
                current = self._store.get(session_id)
                raise InvalidTransitionError(
                    f"Only an escalated session can be resolved; session is {current.status.value}."
                )
            self._record_transition(
                session_id, SessionStatus.ESCALATED, SessionStatus.RESOLVED, actor_id
            )
            self._record(
                session_id,
                AuditEventType.SESSION_RESOLVED,
                actor_id=actor_id,
                resolution="emergency_resolved",
                trigger_type=resolved.trigger.trigger_type.value,
                note=note,
            )
            logger.warning("Emergency resolved by %s", actor_id)
            return resolved

    # -- periodic sweep --

    def evaluate_timeouts(self) -> list[SweepTransition]:
        """Periodic sweep over open sessions.

        * Opens windows whose start time has passed (ARMED -> MONITORING).
        * Fires due ``timer_expired`` / ``missed_checkin`` triggers through
          ``handle_trigger``.
        * Moves lapsed sessions that were checked in on but never closed to
          EXPIRED_UNESCALATED, silently.
        * Completes fan-outs left in ESCALATING for longer than
          ``policy.stalled_fan_out_minutes``.

        Every write is conditioned on the session version this sweep read,
        so a check-in or extension that lands in between wins.

        Returns:
            The transitions this sweep made, in processing order.
        """
        now = self._now()
        grace = timedelta(minutes=self._policy.expiry_grace_minutes)
        transitions: list[SweepTransition] = []

        stalled_after = timedelta(minutes=self._policy.stalled_fan_out_minutes)
        for session in self._store.list_by_status({SessionStatus.ESCALATING}):
            if session.trigger is None or now - session.trigger.triggered_at < stalled_after:
                continue
            with session_context(session.session_id):
                result = self._resume_escalation(session)
            if result is not None and result.status == SessionStatus.ESCALATED:
                transitions.append(SweepTransition(
                    session_id=session.session_id,
                    from_status=SessionStatus.ESCALATING,
                    to_status=SessionStatus.ESCALATED,
                    trigger_type=session.trigger.trigger_type,
                ))

        for session in self._store.list_open():
            session_id = session.session_id
            with session_context(session_id):
                if session.status == SessionStatus.ARMED:
                    if session.started_at > now:
                        continue
                    opened = self._open_window(session_id)
                    if opened is None:
                        continue
                    transitions.append(SweepTransition(
                        session_id=session_id,
                        from_status=SessionStatus.ARMED,
                        to_status=SessionStatus.MONITORING,
                    ))
                    session = opened

                event = trigger_detector.evaluate(session, now, self._policy)
                if event is not None:
                    result = self.handle_trigger(session_id, event)
                    if not result.duplicate and result.status in ESCALATION_STATUSES:
                        transitions.append(SweepTransition(
                            session_id=session_id,
                            from_status=session.status,
                            to_status=result.status,
                            trigger_type=event.trigger_type,
                        ))
                    continue

                if session.status == SessionStatus.MONITORING and now > session.scheduled_end_at + grace:
                    expired = self._store.compare_and_set(
                        session_id,
                        {SessionStatus.MONITORING},
                        {"status": SessionStatus.EXPIRED_UNESCALATED},
                        require_no_trigger=True,
                        expected_version=session.version,
                    )
                    if expired is None:
                        continue
                    self._record_transition(
                        session_id, SessionStatus.MONITORING, SessionStatus.EXPIRED_UNESCALATED
                    )
                    self._record(
                        session_id,
                        AuditEventType.SESSION_EXPIRED_UNESCALATED,
                        last_checkin_at=session.last_checkin_at.isoformat() if session.last_checkin_at else None,
                    )
                    logger.info("Session window lapsed after check-in; closed without escalation")
                    transitions.append(SweepTransition(
                        session_id=session_id,
                        from_status=SessionStatus.MONITORING,
                        to_status=SessionStatus.EXPIRED_UNESCALATED,
                    ))

        logger.info("Timeout sweep made %d transition(s)", len(transitions))
        return transitions
