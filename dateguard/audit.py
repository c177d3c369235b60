"""
Append-Only Audit and Message Log (Hash-Chained).

Every state transition, trigger (accepted or ignored), guardian resolution
result and delivery attempt is recorded as a structured, append-only audit
entry.  Entries are linked via a SHA-256 hash chain: if any entry is
modified after the fact, ``verify_chain()`` detects the inconsistency.

The log doubles as the delivery-attempt ledger.  ``record_delivery()`` stores
each ``DeliveryAttempt`` verbatim in an entry's metadata and
``delivery_attempts()`` reconstructs them, so the orchestrator can answer
"has a fan-out already been recorded for this trigger?" and operators can
reconstruct an incident from a single source.

Appends are serialized by a lock; a fan-out may record attempts from
several worker threads at once.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from dateguard.models import DeliveryAttempt, EscalationMessage, MessageKind, TriggerType


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Every auditable action of the escalation core."""

    # Session lifecycle
    SESSION_ARMED = "session_armed"
    MONITORING_STARTED = "monitoring_started"
    SESSION_EXTENDED = "session_extended"
    SESSION_RESOLVED = "session_resolved"
    SESSION_EXPIRED_UNESCALATED = "session_expired_unescalated"
    STATE_TRANSITION = "state_transition"
    LOCATION_UPDATED = "location_updated"

    # Check-ins and codes
    CHECK_IN_RECORDED = "check_in_recorded"
    CHECK_IN_IGNORED = "check_in_ignored"
    SAFETY_CODE_REJECTED = "safety_code_rejected"

    # Triggers
    TRIGGER_ACCEPTED = "trigger_accepted"
    DUPLICATE_TRIGGER_IGNORED = "duplicate_trigger_ignored"
    TRIGGER_REJECTED = "trigger_rejected"

    # Fan-out
    GUARDIANS_RESOLVED = "guardians_resolved"
    NO_GUARDIANS_RESOLVED = "no_guardians_resolved"
    FAN_OUT_STARTED = "fan_out_started"
    DELIVERY_ATTEMPTED = "delivery_attempted"
    FALLBACK_NOTIFIED = "fallback_notified"
    ESCALATION_COMPLETED = "escalation_completed"

    # Audit operations
    AUDIT_EXPORTED = "audit_exported"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry.

    Records who did what, when, to which session, with a hash link to the
    previous entry.
    """

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str = Field(..., description="Session this entry concerns.")
    actor_id: str = Field(
        default="SYSTEM",
        description="User id, guardian id, or SYSTEM for sweeps and the orchestrator.",
    )
    event_type: AuditEventType
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type.value,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# PII redaction
# ---------------------------------------------------------------------------

_PII_PATTERNS: dict[str, re.Pattern] = {
    "phone": re.compile(r"(?<!\w)\+?\d{0,3}[-. ]?\(?\d{3}\)?[-. ]?\d{3}[-. ]?\d{4}(?!\w)"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

_PII_KEYS = {"phone", "email", "destination", "device_token", "address", "full_name", "message"}


def redact_pii_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace contact details in metadata with ``[REDACTED]`` markers.

    Applied to every entry leaving the system through ``export_for_review``.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PII_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted_value = value
            for pattern_name, pattern in _PII_PATTERNS.items():
                redacted_value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", redacted_value)
            redacted[key] = redacted_value
        elif isinstance(value, dict):
            redacted[key] = redact_pii_from_metadata(value)
        elif isinstance(value, list):
            redacted[key] = [
                redact_pii_from_metadata(v) if isinstance(v, dict) else v for v in value
            ]
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only, tamper-evident audit log with SHA-256 hash chaining.

    * **Append-only writes** -- there are no ``update()`` or ``delete()``
      methods.
    * **Hash chain verification** -- ``verify_chain()`` walks the log and
      reports the first broken link.
    * **Delivery ledger** -- ``record_delivery()`` / ``delivery_attempts()``.
    * **Idempotency support** -- ``has_fan_out()`` tells whether a fan-out
      was already started for a session's trigger.
    * **Redacted export** -- ``export_for_review()`` strips contact details.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry, linking it to the previous one.

        Returns:
            The entry with ``previous_hash`` populated.
        """
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        session_id: str,
        event_type: AuditEventType,
        actor_id: str = "SYSTEM",
        timestamp: Optional[datetime] = None,
        **metadata: Any,
    ) -> AuditEntry:
        """Shorthand for appending an entry built from keyword metadata.

        ``timestamp`` lets callers with their own clock stamp the entry;
        it defaults to the current UTC time.
        """
        entry = AuditEntry(
            session_id=session_id,
            actor_id=actor_id,
            event_type=event_type,
            metadata=metadata,
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        return self.append(entry)

    def record_delivery(self, attempt: DeliveryAttempt) -> AuditEntry:
        """Append a ``DELIVERY_ATTEMPTED`` entry holding the full attempt."""
        return self.record(
            attempt.session_id,
            AuditEventType.DELIVERY_ATTEMPTED,
            timestamp=attempt.attempted_at,
            attempt=attempt.model_dump(mode="json"),
        )

    def delivery_attempts(
        self,
        session_id: str,
        message_id: Optional[str] = None,
        kind: Optional[MessageKind] = None,
    ) -> list[DeliveryAttempt]:
        """All delivery attempts recorded for a session, in append order."""
        attempts = []
        for entry in self.query(session_id=session_id, event_type=AuditEventType.DELIVERY_ATTEMPTED):
            attempt = DeliveryAttempt.model_validate(entry.metadata["attempt"])
            if message_id is not None and attempt.message_id != message_id:
                continue
            if kind is not None and attempt.message_kind != kind:
                continue
            attempts.append(attempt)
        return attempts

    def has_fan_out(self, session_id: str, trigger_type: TriggerType) -> bool:
        """Whether a fan-out has already been started for this session's trigger."""
        for entry in self.query(session_id=session_id, event_type=AuditEventType.FAN_OUT_STARTED):
            if entry.metadata.get("trigger_type") == trigger_type.value:
                return True
        return False

    def escalation_message(self, session_id: str) -> Optional[EscalationMessage]:
        """The escalation message fanned out for a session, if any."""
        for entry in self.query(session_id=session_id, event_type=AuditEventType.FAN_OUT_STARTED):
            if "message" in entry.metadata:
                return EscalationMessage.model_validate(entry.metadata["message"])
        return None

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None if the chain is intact.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)

        for i, entry in enumerate(entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != entries[i - 1].compute_hash():
                return (False, i)

            if hashes[i] != entry.compute_hash():
                return (False, i)

        return (True, None)

    def query(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Return copies of the entries matching every given filter."""
        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            if session_id is not None and entry.session_id != session_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        session_id: str,
        exported_by: str = "SYSTEM",
    ) -> dict[str, Any]:
        """Produce a JSON-serializable bundle for incident review.

        Contact details are redacted and the chain verification result is
        included.  The export itself is recorded as an ``AUDIT_EXPORTED``
        entry after the bundle is assembled.
        """
        entries = self.query(session_id=session_id)

        redacted_entries = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_pii_from_metadata(entry.metadata)
            redacted_entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        bundle = {
            "export_metadata": {
                "session_id": session_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "exported_by": exported_by,
                "entry_count": len(redacted_entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": redacted_entries,
        }

        self.record(
            session_id,
            AuditEventType.AUDIT_EXPORTED,
            actor_id=exported_by,
            entry_count=len(redacted_entries),
        )
        return bundle

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
