"""Append-only audit trail, one JSONL file per owner.

Entries are never rewritten. The only truncation is the store undoing an
append whose surrounding transaction failed to commit.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from memkeeper.memory.records import AuditEntry

logger = logging.getLogger(__name__)

# Operations written by a refinement session.
CONSOLIDATE_CREATE = "consolidate_create"
CONSOLIDATE_DELETE = "consolidate_delete"
UPDATE = "update"
DELETE = "delete"
PROTECT = "protect"
COMPLETE = "complete"
ROLLBACK = "rollback"
ROLLBACK_FAILED = "rollback_failed"
ABANDONED = "abandoned"
DECLINED = "declined"

SESSION_OUTCOMES = (COMPLETE, ROLLBACK)


class AuditTrail:
    """Read/append access to the audit log."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, owner_id: str) -> Path:
        return self.root / f"{owner_id}.jsonl"

    def sizes(self, owner_ids: set[str]) -> dict[str, int]:
        """Current file size per owner, used to undo an uncommitted append."""
        result = {}
        for owner_id in owner_ids:
            path = self._path(owner_id)
            result[owner_id] = path.stat().st_size if path.exists() else 0
        return result

    def append(self, *entries: AuditEntry) -> None:
        for entry in entries:
            path = self._path(entry.owner_id)
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
            logger.debug(
                "Audit %s/%s: %s (%s)",
                entry.owner_id,
                entry.session_id,
                entry.operation,
                entry.outcome,
            )

    def _truncate(self, owner_id: str, size: int) -> None:
        path = self._path(owner_id)
        if path.exists():
            with path.open("r+b") as f:
                f.truncate(size)

    def entries(
        self,
        owner_id: str,
        session_id: str | None = None,
        operation: str | None = None,
    ) -> list[AuditEntry]:
        """Entries for an owner in write order, optionally filtered."""
        path = self._path(owner_id)
        if not path.exists():
            return []
        result = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            entry = AuditEntry.from_dict(json.loads(line))
            if session_id and entry.session_id != session_id:
                continue
            if operation and entry.operation != operation:
                continue
            result.append(entry)
        return result

    def last_session_outcome(self, owner_id: str) -> AuditEntry | None:
        """Latest completed or rolled-back session for the owner."""
        for entry in reversed(self.entries(owner_id)):
            if entry.operation in SESSION_OUTCOMES and entry.ok:
                return entry
        return None
