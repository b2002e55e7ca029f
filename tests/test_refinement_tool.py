"""Tests for the refinement tool: command parsing and the action dispatcher."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from memkeeper.errors import ValidationError
from memkeeper.memory import audit
from memkeeper.memory.records import MemoryType
from memkeeper.memory.store import MemoryStore
from memkeeper.refinement.session import Session, SessionState
from memkeeper.tools.refinement import (
    ALLOWED_ACTIONS,
    TOOL_SCHEMA,
    ActionDispatcher,
    Consolidate,
    Delete,
    Search,
    parse_command,
)

OWNER = "agent-1"


@pytest.fixture
def store(tmp_path: Path) -> MemoryStore:
    return MemoryStore(tmp_path / "memory")


@pytest.fixture
def dispatcher(store: MemoryStore) -> ActionDispatcher:
    return ActionDispatcher(store)


def make_session(store: MemoryStore, **kwargs) -> Session:
    return Session(owner_id=OWNER, pre_session_mass=store.core_mass(OWNER), **kwargs)


def ts(day: int) -> datetime:
    return datetime(2026, 1, day, 12, 0, tzinfo=timezone.utc)


class TestToolSchema:
    def test_action_enum_matches_allowed(self):
        props = TOOL_SCHEMA["input_schema"]["properties"]
        assert props["action"]["enum"] == ALLOWED_ACTIONS
        assert TOOL_SCHEMA["input_schema"]["required"] == ["action"]


class TestParseCommand:
    def test_unknown_action(self):
        with pytest.raises(ValidationError) as exc:
            parse_command("archive", {})
        payload = exc.value.to_payload()
        assert payload["kind"] == "validation"
        assert payload["allowed_actions"] == ALLOWED_ACTIONS

    def test_missing_parameter(self):
        with pytest.raises(ValidationError, match="content is required for update"):
            parse_command("update", {"id": "1"})

    def test_action_case_insensitive(self):
        assert parse_command("SEARCH", {"query": "tea"}) == Search(query="tea")

    def test_consolidate_ids_from_string(self):
        cmd = parse_command("consolidate", {"ids": "1, #2,2", "content": "merged"})
        assert cmd == Consolidate(ids=(1, 2), content="merged")

    def test_consolidate_ids_from_list(self):
        cmd = parse_command("consolidate", {"ids": [3, "4"], "content": "merged"})
        assert cmd.ids == (3, 4)

    def test_consolidate_needs_two_ids(self):
        with pytest.raises(ValidationError, match="at least 2"):
            parse_command("consolidate", {"ids": "1", "content": "merged"})

    def test_delete_accepts_id_or_ids(self):
        assert parse_command("delete", {"id": "5"}) == Delete(ids=(5,))
        assert parse_command("delete", {"ids": "5,6"}) == Delete(ids=(5, 6))

    def test_delete_without_id(self):
        with pytest.raises(ValidationError, match="id is required for delete"):
            parse_command("delete", {"ids": " "})

    @pytest.mark.parametrize("bad", ["abc", "0", "-3"])
    def test_invalid_id(self, bad):
        with pytest.raises(ValidationError, match="Invalid memory ID"):
            parse_command("protect", {"id": bad})

    def test_content_too_long(self):
        with pytest.raises(ValidationError, match="maximum"):
            parse_command("update", {"id": "1", "content": "x" * 10_001})


class TestSearch:
    def test_finds_unprotected_core(self, store, dispatcher):
        store.create(OWNER, "Prefers green tea")
        store.create(OWNER, "Tea allergy", protected=True)
        session = make_session(store)

        result = dispatcher.execute(session, "search", {"query": "TEA"})
        assert result.payload["type"] == "search_results"
        assert result.payload["count"] == 1
        assert result.payload["results"][0]["content"] == "Prefers green tea"
        assert session.mutation_count == 0

    def test_missing_query_not_audited(self, store, dispatcher):
        session = make_session(store)
        result = dispatcher.execute(session, "search", {})
        assert result.payload["kind"] == "validation"
        assert store.audit.entries(OWNER) == []


class TestConsolidate:
    def test_merges_sources(self, store, dispatcher):
        a = store.create(OWNER, "Likes Python", created_at=ts(2))
        b = store.create(OWNER, "Likes Rust", created_at=ts(1))
        session = make_session(store)

        result = dispatcher.execute(
            session, "consolidate", {"ids": f"{a.id},{b.id}", "content": "Likes Python and Rust"}
        )
        assert result.ok and result.mutated
        merged = store.get(OWNER, result.payload["id"])
        assert merged.content == "Likes Python and Rust"
        assert merged.created_at == ts(1)
        assert store.get(OWNER, a.id) is None
        assert store.get(OWNER, b.id) is None
        assert session.mutation_count == 1
        assert session.stats.consolidated == 2

    def test_audit_entries(self, store, dispatcher):
        a = store.create(OWNER, "one")
        b = store.create(OWNER, "two")
        session = make_session(store)
        dispatcher.execute(session, "consolidate", {"ids": [a.id, b.id], "content": "both"})

        ops = [e.operation for e in store.audit.entries(OWNER, session_id=session.session_id)]
        assert ops == [audit.CONSOLIDATE_CREATE, audit.CONSOLIDATE_DELETE, audit.CONSOLIDATE_DELETE]
        deletes = store.audit.entries(OWNER, operation=audit.CONSOLIDATE_DELETE)
        assert {e.snapshot["content"] for e in deletes} == {"one", "two"}

    def test_rejects_protected_source(self, store, dispatcher):
        a = store.create(OWNER, "one")
        b = store.create(OWNER, "two", protected=True)
        session = make_session(store)

        result = dispatcher.execute(session, "consolidate", {"ids": [a.id, b.id], "content": "both"})
        assert result.payload["kind"] == "protected"
        assert len(store.ledger(OWNER)) == 2
        assert session.mutation_count == 0

    def test_missing_reported_before_protected(self, store, dispatcher):
        b = store.create(OWNER, "two", protected=True)
        session = make_session(store)
        result = dispatcher.execute(session, "consolidate", {"ids": [b.id, 99], "content": "both"})
        assert result.payload["kind"] == "not_found"
        assert "#99" in result.payload["error"]


class TestUpdate:
    def test_rewrites_content(self, store, dispatcher):
        m = store.create(OWNER, "A" * 400)
        session = make_session(store)

        result = dispatcher.execute(session, "update", {"id": str(m.id), "content": "short"})
        assert result.payload == {"type": "updated", "id": m.id, "content": "short"}
        updated = store.get(OWNER, m.id)
        assert updated.mass == 2
        assert updated.created_at == m.created_at

        entry = store.audit.entries(OWNER, operation=audit.UPDATE)[0]
        assert entry.before_content == "A" * 400
        assert entry.after_content == "short"

    def test_protected(self, store, dispatcher):
        m = store.create(OWNER, "Name is Sam", protected=True)
        session = make_session(store)
        result = dispatcher.execute(session, "update", {"id": m.id, "content": "changed"})
        assert result.payload["kind"] == "protected"
        assert store.get(OWNER, m.id).content == "Name is Sam"

    def test_missing(self, store, dispatcher):
        session = make_session(store)
        result = dispatcher.execute(session, "update", {"id": 42, "content": "x"})
        assert result.payload["kind"] == "not_found"

    def test_journal_is_not_a_target(self, store, dispatcher):
        j = store.create(OWNER, "diary", type=MemoryType.JOURNAL)
        session = make_session(store)
        result = dispatcher.execute(session, "update", {"id": j.id, "content": "x"})
        assert result.payload["kind"] == "not_found"

    def test_other_owner_is_not_a_target(self, store, dispatcher):
        other = store.create("agent-2", "theirs")
        session = make_session(store)
        result = dispatcher.execute(session, "update", {"id": other.id, "content": "mine"})
        assert result.payload["kind"] == "not_found"
        assert store.get("agent-2", other.id).content == "theirs"


class TestDelete:
    def test_single(self, store, dispatcher):
        m = store.create(OWNER, "stale")
        session = make_session(store)
        result = dispatcher.execute(session, "delete", {"id": m.id})
        assert result.payload == {"type": "deleted", "ids": [m.id], "id": m.id}
        assert store.get(OWNER, m.id) is None
        assert session.stats.deleted == 1

    def test_batch_counts_one_mutation(self, store, dispatcher):
        a = store.create(OWNER, "a")
        b = store.create(OWNER, "b")
        session = make_session(store)
        result = dispatcher.execute(session, "delete", {"ids": f"{a.id},{b.id}"})
        assert result.payload["ids"] == [a.id, b.id]
        assert session.mutation_count == 1
        assert session.stats.deleted == 2
        assert store.ledger(OWNER) == []

    def test_protected_rejected_and_audited(self, store, dispatcher):
        m = store.create(OWNER, "Allergic to peanuts", protected=True)
        session = make_session(store)

        result = dispatcher.execute(session, "delete", {"id": m.id})
        assert result.payload["type"] == "error"
        assert result.payload["kind"] == "protected"
        assert store.get(OWNER, m.id) is not None
        assert session.mutation_count == 0

        entries = store.audit.entries(OWNER, session_id=session.session_id)
        assert len(entries) == 1
        assert entries[0].outcome == "error"
        assert entries[0].data["kind"] == "protected"

    def test_batch_with_protected_changes_nothing(self, store, dispatcher):
        a = store.create(OWNER, "a")
        b = store.create(OWNER, "b", protected=True)
        session = make_session(store)
        dispatcher.execute(session, "delete", {"ids": [a.id, b.id]})
        assert len(store.ledger(OWNER)) == 2


class TestProtect:
    def test_sets_flag_without_counting(self, store, dispatcher):
        m = store.create(OWNER, "Core identity")
        session = make_session(store)
        result = dispatcher.execute(session, "protect", {"id": m.id})
        assert result.payload["type"] == "protected"
        assert store.get(OWNER, m.id).protected
        assert session.mutation_count == 0
        assert session.stats.protected == 1

    def test_idempotent(self, store, dispatcher):
        m = store.create(OWNER, "Core identity")
        session = make_session(store)
        dispatcher.execute(session, "protect", {"id": m.id})
        again = dispatcher.execute(session, "protect", {"id": m.id})
        assert again.payload["already_protected"] is True
        assert session.stats.protected == 1
        assert len(store.audit.entries(OWNER, operation=audit.PROTECT)) == 1


class TestHardCap:
    def test_rejects_eleventh_mutation(self, store, dispatcher):
        memories = [store.create(OWNER, f"memory {i}") for i in range(11)]
        session = make_session(store)
        for m in memories[:10]:
            assert dispatcher.execute(session, "update", {"id": m.id, "content": "edited"}).ok

        result = dispatcher.execute(session, "update", {"id": memories[10].id, "content": "edited"})
        assert result.payload["kind"] == "cap_exceeded"
        assert store.get(OWNER, memories[10].id).content == "memory 10"
        assert session.mutation_count == 10

    def test_non_mutating_actions_still_allowed(self, store, dispatcher):
        m = store.create(OWNER, "keep")
        session = make_session(store, max_mutations=0)
        assert dispatcher.execute(session, "search", {"query": "keep"}).ok
        assert dispatcher.execute(session, "protect", {"id": m.id}).ok
        assert dispatcher.execute(session, "complete", {"summary": "done"}).ok

    def test_failed_attempts_do_not_count(self, store, dispatcher):
        session = make_session(store, max_mutations=1)
        dispatcher.execute(session, "delete", {"id": 77})
        m = store.create(OWNER, "real")
        assert dispatcher.execute(session, "delete", {"id": m.id}).ok


class TestComplete:
    def test_writes_journal_and_audit(self, store, dispatcher):
        m = store.create(OWNER, "stale")
        session = make_session(store)
        dispatcher.execute(session, "delete", {"id": m.id})

        result = dispatcher.execute(session, "complete", {"summary": "Removed a stale fact"})
        assert result.payload["type"] == "refinement_complete"
        assert result.payload["stats"]["deleted"] == 1
        assert session.terminated
        assert session.state is SessionState.COMPLETED

        journal = store.memories(OWNER, MemoryType.JOURNAL)
        assert [j.content for j in journal] == ["Refinement session: Removed a stale fact"]
        entry = store.audit.entries(OWNER, operation=audit.COMPLETE)[0]
        assert entry.data["pre_session_mass"] == 2
        assert entry.data["post_session_mass"] == 0

    def test_zero_mutations_still_journals(self, store, dispatcher):
        store.create(OWNER, "fine as is")
        session = make_session(store)
        assert dispatcher.execute(session, "complete", {"summary": "Nothing to do"}).ok
        assert len(store.memories(OWNER, MemoryType.JOURNAL)) == 1

    def test_second_complete_rejected(self, store, dispatcher):
        session = make_session(store)
        dispatcher.execute(session, "complete", {"summary": "first"})
        again = dispatcher.execute(session, "complete", {"summary": "second"})
        assert again.payload["kind"] == "terminated"
        assert len(store.memories(OWNER, MemoryType.JOURNAL)) == 1

    def test_requires_summary(self, store, dispatcher):
        session = make_session(store)
        result = dispatcher.execute(session, "complete", {"summary": "  "})
        assert result.payload["kind"] == "validation"
        assert not session.terminated


class TestTerminatedSession:
    def test_mutation_after_termination(self, store, dispatcher):
        m = store.create(OWNER, "survivor")
        session = make_session(store)
        dispatcher.execute(session, "complete", {"summary": "done"})

        result = dispatcher.execute(session, "delete", {"id": m.id})
        assert result.payload["kind"] == "terminated"
        assert store.get(OWNER, m.id) is not None
        rejected = [e for e in store.audit.entries(OWNER) if not e.ok]
        assert rejected[-1].operation == "delete"
