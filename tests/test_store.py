"""
Tests for dateguard.store -- Session store and the compare-and-set primitive.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from dateguard.models import (
    OPEN_STATUSES,
    Session,
    SessionStatus,
    TriggerRecord,
    TriggerType,
)
from dateguard.store import InMemorySessionStore, SessionNotFoundError

T0 = datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc)


def _make_session(status: SessionStatus = SessionStatus.MONITORING, **kwargs) -> Session:
    return Session(
        user_id="user_1",
        started_at=T0,
        scheduled_end_at=T0 + timedelta(hours=2),
        status=status,
        **kwargs,
    )


def _trigger(trigger_type: TriggerType = TriggerType.PANIC_BUTTON) -> TriggerRecord:
    return TriggerRecord(trigger_type=trigger_type, triggered_at=T0 + timedelta(minutes=10))


class TestCreateAndGet:
    def test_create_then_get(self):
        store = InMemorySessionStore()
        session = store.create(_make_session())
        assert store.get(session.session_id) == session
        assert session.session_id in store
        assert len(store) == 1

    def test_duplicate_id_rejected(self):
        session = _make_session()
        store = InMemorySessionStore([session])
        with pytest.raises(ValueError):
            store.create(session)

    def test_unknown_session_raises(self):
        with pytest.raises(SessionNotFoundError):
            InMemorySessionStore().get("missing")

    def test_returned_sessions_are_copies(self):
        store = InMemorySessionStore()
        session = store.create(_make_session())
        loaded = store.get(session.session_id)
        loaded.status = SessionStatus.RESOLVED
        assert store.get(session.session_id).status == SessionStatus.MONITORING


class TestListing:
    def test_list_open_returns_armed_and_monitoring(self):
        store = InMemorySessionStore([
            _make_session(SessionStatus.ARMED),
            _make_session(SessionStatus.MONITORING),
            _make_session(SessionStatus.ESCALATED, trigger=_trigger()),
            _make_session(SessionStatus.RESOLVED),
        ])
        assert {s.status for s in store.list_open()} == set(OPEN_STATUSES)

    def test_list_by_status(self):
        store = InMemorySessionStore([_make_session(SessionStatus.RESOLVED)])
        assert len(store.list_by_status([SessionStatus.RESOLVED])) == 1
        assert store.list_by_status([SessionStatus.ARMED]) == []


class TestCompareAndSet:
    def test_applies_changes_when_status_matches(self):
        store = InMemorySessionStore()
        session = store.create(_make_session())
        updated = store.compare_and_set(
            session.session_id, {SessionStatus.MONITORING}, {"status": SessionStatus.RESOLVED}
        )
        assert updated.status == SessionStatus.RESOLVED
        assert updated.version == session.version + 1

    def test_refuses_when_status_differs(self):
        store = InMemorySessionStore()
        session = store.create(_make_session(SessionStatus.RESOLVED))
        result = store.compare_and_set(
            session.session_id, {SessionStatus.MONITORING}, {"status": SessionStatus.ESCALATING}
        )
        assert result is None
        assert store.get(session.session_id).version == session.version

    def test_require_no_trigger(self):
        store = InMemorySessionStore()
        session = store.create(_make_session(trigger=_trigger()))
        result = store.compare_and_set(
            session.session_id,
            {SessionStatus.MONITORING},
            {"last_checkin_at": T0},
            require_no_trigger=True,
        )
        assert result is None

    def test_trigger_never_overwritten(self):
        store = InMemorySessionStore()
        session = store.create(_make_session(trigger=_trigger()))
        result = store.compare_and_set(
            session.session_id,
            {SessionStatus.MONITORING},
            {"trigger": _trigger(TriggerType.MANUAL)},
        )
        assert result is None
        assert store.get(session.session_id).trigger.trigger_type == TriggerType.PANIC_BUTTON

    def test_expected_version_must_match(self):
        store = InMemorySessionStore()
        session = store.create(_make_session())
        store.compare_and_set(
            session.session_id,
            {SessionStatus.MONITORING},
            {"scheduled_end_at": T0 + timedelta(hours=3)},
        )

        stale = store.compare_and_set(
            session.session_id,
            {SessionStatus.MONITORING},
            {"status": SessionStatus.EXPIRED_UNESCALATED},
            expected_version=session.version,
        )
        assert stale is None
        assert store.get(session.session_id).status == SessionStatus.MONITORING

        current = store.get(session.session_id)
        fresh = store.compare_and_set(
            session.session_id,
            {SessionStatus.MONITORING},
            {"status": SessionStatus.EXPIRED_UNESCALATED},
            expected_version=current.version,
        )
        assert fresh.status == SessionStatus.EXPIRED_UNESCALATED

    def test_unknown_session_raises(self):
        with pytest.raises(SessionNotFoundError):
            InMemorySessionStore().compare_and_set("missing", {SessionStatus.ARMED}, {})


class TestSetTriggerIfUnset:
    def test_first_trigger_wins(self):
        store = InMemorySessionStore()
        session = store.create(_make_session())

        first = store.set_trigger_if_unset(session.session_id, _trigger(), OPEN_STATUSES)
        second = store.set_trigger_if_unset(
            session.session_id, _trigger(TriggerType.TIMER_EXPIRED), OPEN_STATUSES
        )

        assert first.status == SessionStatus.ESCALATING
        assert first.trigger.trigger_type == TriggerType.PANIC_BUTTON
        assert second is None

    def test_trigger_refused_for_stale_version(self):
        store = InMemorySessionStore()
        session = store.create(_make_session())
        store.compare_and_set(session.session_id, {SessionStatus.MONITORING}, {"last_checkin_at": T0})

        result = store.set_trigger_if_unset(
            session.session_id,
            _trigger(TriggerType.TIMER_EXPIRED),
            OPEN_STATUSES,
            expected_version=session.version,
        )

        assert result is None
        assert store.get(session.session_id).trigger is None

    def test_concurrent_triggers_accept_exactly_one(self):
        store = InMemorySessionStore()
        session = store.create(_make_session())
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            outcome = store.set_trigger_if_unset(session.session_id, _trigger(), OPEN_STATUSES)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r is not None) == 1
        assert store.get(session.session_id).version == 1
