"""Tests for the circuit breaker and the rollback engine."""

from __future__ import annotations

from pathlib import Path

import pytest

from memkeeper.errors import CircuitBreakerTrip, RollbackFailure
from memkeeper.memory import audit
from memkeeper.memory.records import AuditEntry, Memory, MemoryType
from memkeeper.memory.store import MemoryStore
from memkeeper.refinement.breaker import BreakerReading, CircuitBreaker
from memkeeper.refinement.rollback import RollbackEngine, RollbackReport
from memkeeper.refinement.session import Session
from memkeeper.tools.refinement import ActionDispatcher

OWNER = "agent-1"


@pytest.fixture
def store(tmp_path: Path) -> MemoryStore:
    return MemoryStore(tmp_path / "memory")


@pytest.fixture
def dispatcher(store: MemoryStore) -> ActionDispatcher:
    return ActionDispatcher(store)


@pytest.fixture
def breaker(store: MemoryStore) -> CircuitBreaker:
    return CircuitBreaker(store)


@pytest.fixture
def engine(store: MemoryStore) -> RollbackEngine:
    return RollbackEngine(store)


def seed(store: MemoryStore) -> tuple:
    """100 + 50 + 50 tokens of core memory."""
    return (
        store.create(OWNER, "A" * 400),
        store.create(OWNER, "B" * 200),
        store.create(OWNER, "C" * 200),
    )


def make_session(store: MemoryStore, **kwargs) -> Session:
    return Session(owner_id=OWNER, pre_session_mass=store.core_mass(OWNER), **kwargs)


class TestBreakerReading:
    def test_ratio(self):
        assert BreakerReading(200, 150, 0.7).ratio == 0.75

    def test_zero_pre_mass_never_trips(self):
        reading = BreakerReading(0, 0, 0.7)
        assert reading.ratio is None
        assert not reading.tripped

    def test_exactly_at_threshold_holds(self):
        assert not BreakerReading(200, 140, 0.7).tripped

    def test_below_threshold_trips(self):
        assert BreakerReading(200, 139, 0.7).tripped


class TestCircuitBreaker:
    def test_holds_above_threshold(self, store, dispatcher, breaker):
        _, b, _ = seed(store)
        session = make_session(store)
        dispatcher.execute(session, "delete", {"id": b.id})
        assert breaker.check(session).post_mass == 150

    def test_trips_below_threshold(self, store, dispatcher, breaker):
        _, b, c = seed(store)
        session = make_session(store)
        dispatcher.execute(session, "delete", {"ids": [b.id, c.id]})
        with pytest.raises(CircuitBreakerTrip) as exc:
            breaker.check(session)
        assert (exc.value.pre_mass, exc.value.post_mass) == (200, 100)
        assert "70% retention threshold" in str(exc.value)

    def test_per_session_threshold(self, store, dispatcher, breaker):
        _, b, _ = seed(store)
        session = make_session(store, retention_threshold=0.9)
        dispatcher.execute(session, "delete", {"id": b.id})
        with pytest.raises(CircuitBreakerTrip):
            breaker.check(session)

    def test_empty_ledger(self, store, breaker):
        session = make_session(store)
        assert breaker.check(session).ratio is None


class TestRollbackReport:
    def test_describe_counts(self):
        report = RollbackReport("s", 200, 100, 200, 0.7, "circuit_breaker", {audit.DELETE: 1, audit.UPDATE: 2})
        assert report.describe_counts() == "1 deletion, 2 updates"
        assert report.percent_change == -50.0

    def test_no_changes(self):
        report = RollbackReport("s", 0, 0, 0, 0.7, "interrupted")
        assert report.describe_counts() == "no changes"
        assert report.percent_change == 0.0


class TestRollbackEngine:
    def test_restores_deleted(self, store, dispatcher, engine):
        a, b, c = seed(store)
        session = make_session(store)
        dispatcher.execute(session, "delete", {"ids": [b.id, c.id]})

        report = engine.rollback_session(session)
        assert store.get(OWNER, b.id) == b
        assert store.get(OWNER, c.id) == c
        assert report.restored_mass == 200
        assert report.attempted_post_mass == 100

    def test_restores_updated(self, store, dispatcher, engine):
        a, _, _ = seed(store)
        session = make_session(store)
        dispatcher.execute(session, "update", {"id": a.id, "content": "tiny"})
        engine.rollback_session(session)
        assert store.get(OWNER, a.id) == a

    def test_update_restores_recorded_mass(self, store, dispatcher, engine):
        with store.transaction() as txn:
            m = txn.put(Memory(id=txn.new_id(), owner_id=OWNER, content="tiny", mass=100))
        session = make_session(store)
        assert session.pre_session_mass == 100

        dispatcher.execute(session, "update", {"id": m.id, "content": "tinier"})
        engine.rollback_session(session)
        assert store.get(OWNER, m.id) == m
        assert store.core_mass(OWNER) == 100

    def test_reverses_consolidation(self, store, dispatcher, engine):
        _, b, c = seed(store)
        session = make_session(store)
        result = dispatcher.execute(session, "consolidate", {"ids": [b.id, c.id], "content": "BC"})
        engine.rollback_session(session)
        assert store.get(OWNER, result.payload["id"]) is None
        assert store.get(OWNER, b.id) == b
        assert store.get(OWNER, c.id) == c

    def test_reverses_protect(self, store, dispatcher, engine):
        a, _, _ = seed(store)
        session = make_session(store)
        dispatcher.execute(session, "protect", {"id": a.id})
        engine.rollback_session(session)
        assert store.get(OWNER, a.id).protected is False

    def test_exact_restoration_of_mixed_session(self, store, dispatcher, engine):
        seed(store)
        d = store.create(OWNER, "D" * 40)
        before = store.ledger(OWNER)
        a, b, c = before[:3]
        session = make_session(store)

        dispatcher.execute(session, "protect", {"id": a.id})
        dispatcher.execute(session, "update", {"id": b.id, "content": "b rewritten"})
        dispatcher.execute(session, "consolidate", {"ids": [b.id, c.id], "content": "b and c"})
        dispatcher.execute(session, "delete", {"id": d.id})

        engine.rollback_session(session)
        assert store.ledger(OWNER) == before
        assert MemoryStore(store.root).ledger(OWNER) == before

    def test_ignores_rejected_attempts(self, store, dispatcher, engine):
        a, _, _ = seed(store)
        session = make_session(store)
        dispatcher.execute(session, "delete", {"id": 999})
        report = engine.rollback_session(session)
        assert report.counts == {}
        assert store.get(OWNER, a.id) == a

    def test_journal_and_audit(self, store, dispatcher, engine):
        store.create(OWNER, "A" * 400)
        b = store.create(OWNER, "B" * 400)
        session = make_session(store)
        dispatcher.execute(session, "delete", {"id": b.id})

        engine.rollback_session(session)
        journal = store.memories(OWNER, MemoryType.JOURNAL)
        assert len(journal) == 1
        text = journal[0].content
        assert "rolled back" in text
        assert "200" in text
        assert "1 deletion" in text
        assert "retention threshold" in text

        entry = store.audit.entries(OWNER, operation=audit.ROLLBACK)[0]
        assert entry.session_id == session.session_id
        assert entry.data["pre_session_mass"] == 200
        assert entry.data["attempted_post_mass"] == 100
        assert entry.data["percent_change"] == -50.0

    def test_interrupted_wording(self, store, dispatcher, engine):
        _, b, _ = seed(store)
        session = make_session(store)
        dispatcher.execute(session, "delete", {"id": b.id})
        report = engine.rollback_session(session, reason="interrupted")
        assert report.reason == "interrupted"
        text = store.memories(OWNER, MemoryType.JOURNAL)[0].content
        assert "interrupted" in text

    def test_failure_leaves_store_untouched(self, store, dispatcher, engine):
        a, b, _ = seed(store)
        session = make_session(store)
        dispatcher.execute(session, "delete", {"id": a.id})
        dispatcher.execute(session, "update", {"id": b.id, "content": "changed"})

        # Out-of-band removal makes the update irreversible
        with store.transaction() as txn:
            txn.remove(b.id)
            txn.audit(AuditEntry(session_id="external", owner_id=OWNER, operation="delete"))

        with pytest.raises(RollbackFailure, match="no longer exists"):
            engine.rollback_session(session)

        assert store.get(OWNER, a.id) is None
        assert store.memories(OWNER, MemoryType.JOURNAL) == []
        failed = store.audit.entries(OWNER, operation=audit.ROLLBACK_FAILED)
        assert len(failed) == 1
        assert failed[0].session_id == session.session_id
        assert store.audit.entries(OWNER, operation=audit.ROLLBACK) == []
