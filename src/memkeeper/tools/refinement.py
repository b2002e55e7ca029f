"""Memory refinement tool exposed to the agent during a session.

The LLM calls a single tool with an ``action`` string and loose parameters.
``parse_command`` turns that into one typed command per action, and
``ActionDispatcher.dispatch`` routes it with an exhaustive match. Every
handler either commits its memory change together with its audit entries, or
raises a ToolCallError that is reported back to the LLM.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from memkeeper.errors import (
    CapExceededError,
    MemoryNotFoundError,
    ProtectedMemoryError,
    SessionTerminatedError,
    ToolCallError,
    ValidationError,
)
from memkeeper.memory import audit
from memkeeper.memory.records import AuditEntry, Memory, MemoryType, normalize_content
from memkeeper.refinement.session import Session, SessionState

if TYPE_CHECKING:
    from memkeeper.memory.store import MemoryStore, Transaction

logger = logging.getLogger(__name__)

TOOL_NAME = "memory_refinement"


class Action(str, Enum):
    SEARCH = "search"
    CONSOLIDATE = "consolidate"
    UPDATE = "update"
    DELETE = "delete"
    PROTECT = "protect"
    COMPLETE = "complete"

    @property
    def mutating(self) -> bool:
        """Counts toward the per-session mutation cap."""
        return self in (Action.CONSOLIDATE, Action.UPDATE, Action.DELETE)

    @property
    def audited(self) -> bool:
        """Attempts are written to the audit trail, successful or not."""
        return self.mutating or self is Action.PROTECT


ALLOWED_ACTIONS = [a.value for a in Action]

TOOL_SCHEMA: dict[str, Any] = {
    "name": TOOL_NAME,
    "description": (
        "Memory refinement tool. Actions: search, consolidate, update, delete, "
        "protect, complete."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": ALLOWED_ACTIONS,
                "description": "search, consolidate, update, delete, protect, or complete",
            },
            "query": {"type": "string", "description": "Search query (for search)"},
            "ids": {
                "type": "string",
                "description": "Comma-separated memory IDs (for consolidate, or batch delete)",
            },
            "id": {
                "type": "string",
                "description": "Single memory ID (for update, delete, protect)",
            },
            "content": {"type": "string", "description": "New content (for consolidate, update)"},
            "summary": {"type": "string", "description": "Refinement summary (for complete)"},
        },
        "required": ["action"],
    },
}


# ── Commands ──────────────────────────────────────────────────


@dataclass(frozen=True)
class Search:
    query: str
    action = Action.SEARCH


@dataclass(frozen=True)
class Consolidate:
    ids: tuple[int, ...]
    content: str
    action = Action.CONSOLIDATE


@dataclass(frozen=True)
class Update:
    id: int
    content: str
    action = Action.UPDATE


@dataclass(frozen=True)
class Delete:
    ids: tuple[int, ...]
    action = Action.DELETE


@dataclass(frozen=True)
class Protect:
    id: int
    action = Action.PROTECT


@dataclass(frozen=True)
class Complete:
    summary: str
    action = Action.COMPLETE


Command = Union[Search, Consolidate, Update, Delete, Protect, Complete]


def _require(params: dict, action: str, name: str) -> Any:
    value = params.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{name} is required for {action}")
    return value


def _parse_id(value: Any) -> int:
    try:
        memory_id = int(str(value).strip().lstrip("#"))
    except ValueError:
        raise ValidationError(f"Invalid memory ID: {value!r}")
    if memory_id <= 0:
        raise ValidationError(f"Invalid memory ID: {value!r}")
    return memory_id


def _parse_ids(value: Any) -> tuple[int, ...]:
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    ids: list[int] = []
    for item in items:
        if str(item).strip():
            memory_id = _parse_id(item)
            if memory_id not in ids:
                ids.append(memory_id)
    return tuple(ids)


def parse_command(action: str, params: dict) -> Command:
    """Build a typed command from a raw tool call. Raises ValidationError."""
    try:
        kind = Action(str(action).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid action '{action}'", allowed_actions=ALLOWED_ACTIONS)

    if kind is Action.SEARCH:
        return Search(query=str(_require(params, "search", "query")).strip())
    if kind is Action.CONSOLIDATE:
        ids = _parse_ids(_require(params, "consolidate", "ids"))
        content = _require(params, "consolidate", "content")
        if len(ids) < 2:
            raise ValidationError("consolidate requires at least 2 memory IDs")
        return Consolidate(ids=ids, content=normalize_content(content))
    if kind is Action.UPDATE:
        memory_id = _parse_id(_require(params, "update", "id"))
        return Update(id=memory_id, content=normalize_content(_require(params, "update", "content")))
    if kind is Action.DELETE:
        raw = params.get("ids") or params.get("id")
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            raise ValidationError("id is required for delete")
        ids = _parse_ids(raw)
        if not ids:
            raise ValidationError("id is required for delete")
        return Delete(ids=ids)
    if kind is Action.PROTECT:
        return Protect(id=_parse_id(_require(params, "protect", "id")))
    return Complete(summary=str(_require(params, "complete", "summary")).strip())


# ── Dispatcher ────────────────────────────────────────────────


@dataclass
class ActionResult:
    """Outcome of one tool call, fed back to the LLM as ``payload``."""

    payload: dict
    action: Action | None = None
    mutated: bool = False
    affected: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.payload.get("type") != "error"


class ActionDispatcher:
    """Routes refinement commands to mutation handlers for one store."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def execute(self, session: Session, action: str, params: dict | None = None) -> ActionResult:
        """Parse and run one raw tool call."""
        params = dict(params or {})
        logger.info("[Refinement] %s/%s: %s", session.owner_id, session.session_id[:8], action)
        try:
            command = parse_command(action, params)
        except ValidationError as e:
            self._audit_rejection(session, str(action), params, e)
            return ActionResult(e.to_payload())
        return self.dispatch(session, command, params)

    def dispatch(self, session: Session, command: Command, params: dict | None = None) -> ActionResult:
        try:
            if session.terminated:
                raise SessionTerminatedError(
                    f"Session terminated ({session.termination_reason}); no further calls accepted"
                )
            if command.action.mutating and session.cap_reached:
                raise CapExceededError(
                    f"Hard cap of {session.max_mutations} mutations per session reached. "
                    "search, protect and complete remain available."
                )
            match command:
                case Search():
                    return self._search(session, command)
                case Consolidate():
                    return self._consolidate(session, command)
                case Update():
                    return self._update(session, command)
                case Delete():
                    return self._delete(session, command)
                case Protect():
                    return self._protect(session, command)
                case Complete():
                    return self.finish(session, command.summary, SessionState.COMPLETED)
                case _:
                    raise TypeError(f"Unhandled command: {command!r}")
        except ToolCallError as e:
            self._audit_rejection(session, command.action.value, params or {}, e)
            return ActionResult(e.to_payload(), action=command.action)

    # ── Lookups ───────────────────────────────────────────────

    def _target(self, session: Session, memory_id: int, verb: str) -> Memory:
        memory = self.store.get(session.owner_id, memory_id)
        if memory is None or memory.type is not MemoryType.CORE:
            raise MemoryNotFoundError(f"Memory #{memory_id} not found")
        if memory.protected and verb != "protect":
            raise ProtectedMemoryError(f"Cannot {verb} protected memory #{memory_id}")
        return memory

    def _targets(self, session: Session, ids: tuple[int, ...], verb: str) -> list[Memory]:
        # Resolve every id before reporting, so a missing id wins over a protected one
        found = {i: self.store.get(session.owner_id, i) for i in ids}
        missing = [i for i, m in found.items() if m is None or m.type is not MemoryType.CORE]
        if missing:
            raise MemoryNotFoundError(
                "Memory not found: " + ", ".join(f"#{i}" for i in missing)
            )
        protected = [i for i, m in found.items() if m.protected]
        if protected:
            raise ProtectedMemoryError(
                f"Cannot {verb} protected memories: " + ", ".join(f"#{i}" for i in protected)
            )
        return [found[i] for i in ids]

    def _entry(self, session: Session, operation: str, **kwargs: Any) -> AuditEntry:
        return AuditEntry(
            session_id=session.session_id,
            owner_id=session.owner_id,
            operation=operation,
            **kwargs,
        )

    def _audit_rejection(self, session: Session, action: str, params: dict, error: ToolCallError) -> None:
        try:
            audited = Action(action).audited
        except ValueError:
            audited = False
        if not audited:
            return
        logger.warning("[Refinement] %s rejected: %s", action, error)
        self.store.audit.append(
            self._entry(
                session,
                action,
                outcome="error",
                data={"error": str(error), "kind": error.kind, "params": params},
            )
        )

    # ── Handlers ──────────────────────────────────────────────

    def _search(self, session: Session, command: Search) -> ActionResult:
        results = [m.as_ledger_entry() for m in self.store.search(session.owner_id, command.query)]
        return ActionResult(
            {"type": "search_results", "query": command.query, "count": len(results), "results": results},
            action=Action.SEARCH,
        )

    def _consolidate(self, session: Session, command: Consolidate) -> ActionResult:
        sources = self._targets(session, command.ids, "consolidate")
        earliest = min(m.created_at for m in sources)

        with self.store.transaction() as txn:
            merged = txn.put(
                Memory(
                    id=txn.new_id(),
                    owner_id=session.owner_id,
                    content=command.content,
                    type=MemoryType.CORE,
                    created_at=earliest,
                )
            )
            txn.audit(
                self._entry(
                    session,
                    audit.CONSOLIDATE_CREATE,
                    memory_id=merged.id,
                    after_content=merged.content,
                    snapshot=merged.to_snapshot(),
                    data={"sources": [m.id for m in sources]},
                )
            )
            for source in sources:
                self._remove(session, txn, source, audit.CONSOLIDATE_DELETE, {"merged_into": merged.id})

        session.mutation_count += 1
        session.stats.consolidated += len(sources)
        return ActionResult(
            {
                "type": "consolidated",
                "id": merged.id,
                "merged_ids": [m.id for m in sources],
                "merged_count": len(sources),
                "content": merged.content,
            },
            action=Action.CONSOLIDATE,
            mutated=True,
            affected=[merged.id] + [m.id for m in sources],
        )

    def _update(self, session: Session, command: Update) -> ActionResult:
        memory = self._target(session, command.id, "update")
        updated = replace(memory, content=command.content, mass=-1)

        with self.store.transaction() as txn:
            txn.put(updated)
            txn.audit(
                self._entry(
                    session,
                    audit.UPDATE,
                    memory_id=memory.id,
                    before_content=memory.content,
                    after_content=updated.content,
                    snapshot=memory.to_snapshot(),
                )
            )

        session.mutation_count += 1
        session.stats.updated += 1
        return ActionResult(
            {"type": "updated", "id": updated.id, "content": updated.content},
            action=Action.UPDATE,
            mutated=True,
            affected=[updated.id],
        )

    def _delete(self, session: Session, command: Delete) -> ActionResult:
        targets = self._targets(session, command.ids, "delete")

        with self.store.transaction() as txn:
            for memory in targets:
                self._remove(session, txn, memory, audit.DELETE)

        session.mutation_count += 1
        session.stats.deleted += len(targets)
        ids = [m.id for m in targets]
        payload: dict[str, Any] = {"type": "deleted", "ids": ids}
        if len(ids) == 1:
            payload["id"] = ids[0]
        return ActionResult(payload, action=Action.DELETE, mutated=True, affected=ids)

    def _remove(
        self,
        session: Session,
        txn: Transaction,
        memory: Memory,
        operation: str,
        data: dict | None = None,
    ) -> None:
        txn.remove(memory.id)
        txn.audit(
            self._entry(
                session,
                operation,
                memory_id=memory.id,
                before_content=memory.content,
                snapshot=memory.to_snapshot(),
                data=data or {},
            )
        )

    def _protect(self, session: Session, command: Protect) -> ActionResult:
        memory = self._target(session, command.id, "protect")
        if memory.protected:
            return ActionResult(
                {"type": "protected", "id": memory.id, "content": memory.content, "already_protected": True},
                action=Action.PROTECT,
            )

        with self.store.transaction() as txn:
            txn.put(replace(memory, protected=True))
            txn.audit(
                self._entry(session, audit.PROTECT, memory_id=memory.id, snapshot=memory.to_snapshot())
            )

        session.stats.protected += 1
        return ActionResult(
            {"type": "protected", "id": memory.id, "content": memory.content},
            action=Action.PROTECT,
            affected=[memory.id],
        )

    def finish(self, session: Session, summary: str, state: SessionState) -> ActionResult:
        """Close the session: summary audit entry plus an outcome journal memory."""
        if session.terminated:
            raise SessionTerminatedError(
                f"Session is already terminal ({session.termination_reason})"
            )
        stats = session.stats.as_dict()
        post_mass = self.store.core_mass(session.owner_id)

        with self.store.transaction() as txn:
            txn.put(
                Memory(
                    id=txn.new_id(),
                    owner_id=session.owner_id,
                    content=normalize_content(f"Refinement session: {summary}"[:2000]),
                    type=MemoryType.JOURNAL,
                )
            )
            txn.audit(
                self._entry(
                    session,
                    audit.COMPLETE,
                    after_content=summary,
                    data={
                        "summary": summary,
                        "stats": stats,
                        "state": state.value,
                        "mutation_count": session.mutation_count,
                        "pre_session_mass": session.pre_session_mass,
                        "post_session_mass": post_mass,
                    },
                )
            )

        session.terminate(state.value, state)
        logger.info(
            "[Refinement] %s session %s %s: %s",
            session.owner_id,
            session.session_id[:8],
            state.value,
            stats,
        )
        return ActionResult(
            {"type": "refinement_complete", "summary": summary, "stats": stats},
            action=Action.COMPLETE,
        )
