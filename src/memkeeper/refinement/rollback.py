"""Reverse every mutation a session made, atomically.

The session's audit entries are replayed newest-first and each is inverted
inside a single store transaction. Any inversion that cannot be applied
aborts the whole rollback: a half-reverted session is never committed.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from memkeeper.errors import RollbackFailure, TransactionError
from memkeeper.memory import audit
from memkeeper.memory.records import AuditEntry, Memory, MemoryType

if TYPE_CHECKING:
    from memkeeper.memory.store import MemoryStore, Transaction
    from memkeeper.refinement.session import Session

logger = logging.getLogger(__name__)

REVERSIBLE = (
    audit.DELETE,
    audit.UPDATE,
    audit.CONSOLIDATE_CREATE,
    audit.CONSOLIDATE_DELETE,
    audit.PROTECT,
)

_NOUNS = {
    audit.DELETE: ("deletion", "deletions"),
    audit.UPDATE: ("update", "updates"),
    audit.CONSOLIDATE_CREATE: ("consolidation", "consolidations"),
    audit.PROTECT: ("protection", "protections"),
}


@dataclass
class RollbackReport:
    session_id: str
    pre_mass: int
    attempted_post_mass: int
    restored_mass: int
    threshold: float
    reason: str
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def percent_change(self) -> float:
        if self.pre_mass == 0:
            return 0.0
        return (self.attempted_post_mass - self.pre_mass) / self.pre_mass * 100

    def describe_counts(self) -> str:
        parts = []
        for op, (singular, plural) in _NOUNS.items():
            n = self.counts.get(op, 0)
            if n:
                parts.append(f"{n} {singular if n == 1 else plural}")
        return ", ".join(parts) or "no changes"


class RollbackEngine:
    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def rollback_session(self, session: Session, reason: str = "circuit_breaker") -> RollbackReport:
        """Restore the owner's memories to their exact pre-session state.

        Raises RollbackFailure if any step cannot be applied; in that case the
        store is left exactly as it was before the call.
        """
        entries = [
            e
            for e in self.store.audit.entries(session.owner_id, session_id=session.session_id)
            if e.ok and e.operation in REVERSIBLE
        ]
        attempted_post = self.store.core_mass(session.owner_id)
        counts = Counter(e.operation for e in entries)
        logger.info(
            "[Refinement] Rolling back session %s for %s (%d entries, reason=%s)",
            session.session_id[:8],
            session.owner_id,
            len(entries),
            reason,
        )

        try:
            with self.store.transaction() as txn:
                for entry in reversed(entries):
                    self._invert(txn, session, entry)
                report = RollbackReport(
                    session_id=session.session_id,
                    pre_mass=session.pre_session_mass,
                    attempted_post_mass=attempted_post,
                    restored_mass=self._staged_core_mass(txn, session.owner_id),
                    threshold=session.retention_threshold,
                    reason=reason,
                    counts=dict(counts),
                )
                txn.put(
                    Memory(
                        id=txn.new_id(),
                        owner_id=session.owner_id,
                        content=self._journal_text(report),
                        type=MemoryType.JOURNAL,
                    )
                )
                txn.audit(
                    AuditEntry(
                        session_id=session.session_id,
                        owner_id=session.owner_id,
                        operation=audit.ROLLBACK,
                        data={
                            "reason": reason,
                            "pre_session_mass": report.pre_mass,
                            "attempted_post_mass": report.attempted_post_mass,
                            "restored_mass": report.restored_mass,
                            "percent_change": round(report.percent_change, 2),
                            "threshold": report.threshold,
                            "counts": report.counts,
                        },
                    )
                )
        except (RollbackFailure, TransactionError) as e:
            self._escalate(session, reason, e)
            if isinstance(e, RollbackFailure):
                raise
            raise RollbackFailure(str(e)) from e

        logger.info(
            "[Refinement] Session %s rolled back: %s (mass %d -> %d)",
            session.session_id[:8],
            report.describe_counts(),
            report.attempted_post_mass,
            report.restored_mass,
        )
        return report

    def _invert(self, txn: Transaction, session: Session, entry: AuditEntry) -> None:
        memory_id = entry.memory_id
        current = txn.get(memory_id) if memory_id is not None else None
        if current is not None and current.owner_id != session.owner_id:
            raise RollbackFailure(f"Memory #{memory_id} belongs to another owner")

        if entry.operation in (audit.DELETE, audit.CONSOLIDATE_DELETE):
            if current is not None:
                raise RollbackFailure(f"Cannot recreate memory #{memory_id}: it already exists")
            if not entry.snapshot:
                raise RollbackFailure(f"No snapshot recorded for memory #{memory_id}")
            txn.put(Memory.from_snapshot(entry.snapshot))
            return

        if current is None:
            raise RollbackFailure(
                f"Cannot reverse {entry.operation} of memory #{memory_id}: it no longer exists"
            )
        if entry.operation == audit.UPDATE:
            if entry.snapshot:
                txn.put(Memory.from_snapshot(entry.snapshot))
            else:
                txn.put(replace(current, content=entry.before_content, mass=-1))
        elif entry.operation == audit.CONSOLIDATE_CREATE:
            txn.remove(memory_id)
        elif entry.operation == audit.PROTECT:
            txn.put(replace(current, protected=False))

    def _staged_core_mass(self, txn: Transaction, owner_id: str) -> int:
        ids = {m.id for m in self.store.ledger(owner_id)} | set(txn._writes)
        total = 0
        for memory_id in ids:
            memory = txn.get(memory_id)
            if memory is not None and memory.owner_id == owner_id and memory.is_core:
                total += memory.mass
        return total

    def _journal_text(self, report: RollbackReport) -> str:
        if report.reason == "circuit_breaker":
            why = (
                f"my core memory fell from {report.pre_mass} to {report.attempted_post_mass} tokens "
                f"({report.percent_change:+.1f}%), below my {report.threshold:.0%} retention threshold"
            )
        else:
            why = (
                f"it was interrupted ({report.reason}) before finishing; core memory stood at "
                f"{report.attempted_post_mass} of {report.pre_mass} tokens"
            )
        return (
            f"Memory refinement session {report.session_id[:8]} was rolled back because {why}. "
            f"Reverted {report.describe_counts()}; all memories were restored to their "
            f"pre-session state."
        )

    def _escalate(self, session: Session, reason: str, error: Exception) -> None:
        logger.critical(
            "[Refinement] ROLLBACK FAILED for %s session %s: %s. Manual intervention required.",
            session.owner_id,
            session.session_id,
            error,
        )
        try:
            self.store.audit.append(
                AuditEntry(
                    session_id=session.session_id,
                    owner_id=session.owner_id,
                    operation=audit.ROLLBACK_FAILED,
                    outcome="error",
                    data={"reason": reason, "error": str(error)},
                )
            )
        except OSError as e:
            logger.critical("Could not record rollback failure for %s: %s", session.session_id, e)
