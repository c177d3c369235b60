"""
Synthetic Scenario: A Date That Goes Wrong
==========================================

This script walks through the DateGuard escalation core using entirely
synthetic data.  Every delivery channel runs in simulated mode unless real
provider credentials are present in ``examples/dateguard.yaml`` or the
environment, so nothing is actually sent.

Steps demonstrated:
  1. Load configuration from YAML (falls back to defaults)
  2. Register guardian groups
  3. Arm a safety session and check in once
  4. Press the panic button -- fan-out to every guardian
  5. Press it again -- duplicate trigger ignored
  6. Share a location update with guardians, then end the emergency
  7. Run the timeout sweep over a second, forgotten session
  8. Generate an incident report and export the audit log

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dateguard.audit import AuditLog
from dateguard.config import DateGuardConfig, load_config_from_yaml, load_delivery_config_from_env
from dateguard.delivery import build_channel_adapters
from dateguard.directory import (
    InMemoryCounterpartLookup,
    InMemoryGuardianDirectory,
    StaticAuthorityLookup,
)
from dateguard.escalation import EscalationOrchestrator
from dateguard.incident_report import generate_incident_report
from dateguard.logging_config import setup_logging
from dateguard.models import (
    GuardianContact,
    GuardianGroup,
    Location,
    NearestAuthority,
    TriggerType,
)
from dateguard.roster import GuardianRosterResolver
from dateguard.store import InMemorySessionStore


class _ScenarioClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    setup_logging(log_format="text", log_level="WARNING")
    _banner("DateGuard Synthetic Scenario")
    print("All people, numbers and places in this demo are synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Configuration
    # ------------------------------------------------------------------
    _banner("Step 1: Load Configuration")

    sample_yaml = Path(__file__).parent / "dateguard.yaml"
    if sample_yaml.exists():
        config = load_config_from_yaml(sample_yaml)
        print(f"Loaded configuration from {sample_yaml.name}")
    else:
        config = DateGuardConfig()
        print("Using built-in defaults")
    if config.delivery.is_simulated:
        config = config.model_copy(update={"delivery": load_delivery_config_from_env(os.environ)})

    simulated = sorted(ch.value for ch in config.delivery.simulated_channels())
    print(f"Simulated channels: {simulated or 'none'}")

    # ------------------------------------------------------------------
    # Step 2: Guardians
    # ------------------------------------------------------------------
    _banner("Step 2: Register Guardian Groups")

    sam = GuardianContact(guardian_id="g_sam", name="Sam (sibling)", phone="555-010-0001")
    alex = GuardianContact(
        guardian_id="g_alex",
        name="Alex (roommate)",
        phone="555-010-0002",
        email="alex@example.com",
    )
    directory = InMemoryGuardianDirectory([
        GuardianGroup(group_id="family", name="Family", members=[sam]),
        GuardianGroup(group_id="friends", name="Close friends", members=[alex, sam]),
    ])
    print("family:  Sam")
    print("friends: Alex, Sam (Sam is deduplicated at fan-out)")

    clock = _ScenarioClock(datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc))
    audit_log = AuditLog()
    orchestrator = EscalationOrchestrator(
        InMemorySessionStore(),
        audit_log,
        GuardianRosterResolver(directory),
        build_channel_adapters(config.delivery),
        config.policy,
        counterpart_lookup=InMemoryCounterpartLookup({"enc_42": "match-77af19"}),
        authority_lookup=StaticAuthorityLookup(NearestAuthority(
            name="1st District Police (synthetic)",
            address="1718 S State St",
            phone="555-010-0911",
            distance_miles=0.6,
        )),
        clock=clock,
    )

    # ------------------------------------------------------------------
    # Step 3: Arm and check in
    # ------------------------------------------------------------------
    _banner("Step 3: Arm Session")

    session = orchestrator.arm_session(
        "user_jordan",
        clock() + timedelta(hours=2),
        ["family", "friends"],
        user_display_name="Jordan",
        encounter_id="enc_42",
        location=Location(
            latitude=41.8781,
            longitude=-87.6298,
            address="233 S Wacker Dr, Chicago",
            note="Rooftop bar, first date",
        ),
    )
    print(f"Session {session.session_id} is {session.status.value}")

    clock.advance(minutes=30)
    check_in = orchestrator.check_in(session.session_id)
    print(f"Check-in at 20:30 -> {check_in.to_dict()}")

    # ------------------------------------------------------------------
    # Step 4: Panic
    # ------------------------------------------------------------------
    _banner("Step 4: Panic Button")

    clock.advance(minutes=15)
    result = orchestrator.handle_trigger(session.session_id, TriggerType.PANIC_BUTTON)
    print(json.dumps(result.to_dict(), indent=2))
    for attempt in result.attempts:
        print(f"  {attempt.guardian_id:8s} {attempt.channel.value:6s} {attempt.status.value}")

    message = audit_log.escalation_message(session.session_id)
    print("\nMessage sent to every guardian:\n")
    print(message.text)

    # ------------------------------------------------------------------
    # Step 5: Duplicate
    # ------------------------------------------------------------------
    _banner("Step 5: Second Trigger")

    again = orchestrator.handle_trigger(session.session_id, TriggerType.MANUAL)
    print(f"duplicate={again.duplicate}, new attempts={len(again.attempts)}")

    # ------------------------------------------------------------------
    # Step 6: Location update
    # ------------------------------------------------------------------
    _banner("Step 6: Location Update and Stand-Down")

    clock.advance(minutes=5)
    update = orchestrator.update_location(session.session_id, 41.8796, -87.6237)
    print(f"Location update delivered to {update.guardians_notified} guardian(s)")

    clock.advance(minutes=10)
    closed = orchestrator.resolve_emergency(session.session_id, "g_sam", note="Jordan reached by phone")
    print(f"Sam confirmed Jordan is safe; session is now {closed.status.value}")

    # ------------------------------------------------------------------
    # Step 7: Timeout sweep
    # ------------------------------------------------------------------
    _banner("Step 7: Timeout Sweep")

    forgotten = orchestrator.arm_session(
        "user_riley",
        clock() + timedelta(minutes=60),
        ["family"],
        user_display_name="Riley",
    )
    clock.advance(minutes=61)
    for transition in orchestrator.evaluate_timeouts():
        print(
            f"  {transition.session_id[:8]}: {transition.from_status.value} -> "
            f"{transition.to_status.value} ({transition.trigger_type.value if transition.trigger_type else '-'})"
        )
    print(f"Riley's session is now {orchestrator.get_session(forgotten.session_id).status.value}")

    # ------------------------------------------------------------------
    # Step 8: Incident report and audit export
    # ------------------------------------------------------------------
    _banner("Step 8: Incident Report")

    report = generate_incident_report(orchestrator.get_session(session.session_id), audit_log)
    print(json.dumps(report.to_dict(), indent=2))

    export = audit_log.export_for_review(session.session_id, exported_by="ops_reviewer")
    print(f"\nAudit export: {export['export_metadata']['entry_count']} entries, "
          f"chain {export['export_metadata']['chain_integrity']}")


if __name__ == "__main__":
    main()
