"""Owner-scoped memory store.

Markdown files are the source of truth: one file per memory, YAML
frontmatter for structured fields, the body for content. An in-memory index
(built once at startup, updated on every commit) avoids repeated disk scans.
All writes go through ``transaction()`` so a memory change and its audit
entries land together or not at all.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import frontmatter

from memkeeper.errors import TransactionError
from memkeeper.memory.audit import AuditTrail
from memkeeper.memory.records import (
    AuditEntry,
    Memory,
    MemoryType,
    normalize_content,
    utcnow,
)

logger = logging.getLogger(__name__)

_OWNER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_SEQUENCE_FILE = ".sequence"


class Transaction:
    """Staged memory writes and audit entries, applied on commit."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self._writes: dict[int, Memory | None] = {}
        self._audit: list[AuditEntry] = []

    def get(self, memory_id: int) -> Memory | None:
        """Staged view of a memory (reflects writes made in this transaction)."""
        if memory_id in self._writes:
            return self._writes[memory_id]
        return self._store._index.get(memory_id)

    def new_id(self) -> int:
        return self._store._allocate_id()

    def put(self, memory: Memory) -> Memory:
        self._writes[memory.id] = memory
        return memory

    def remove(self, memory_id: int) -> None:
        self._writes[memory_id] = None

    def audit(self, entry: AuditEntry) -> None:
        self._audit.append(entry)

    @property
    def empty(self) -> bool:
        return not self._writes and not self._audit


class MemoryStore:
    """Read/write access to every owner's memories."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._index: dict[int, Memory] = {}
        self._next_id = 1
        self._ensure_initialized()
        self.audit = AuditTrail(self.root / "audit")
        self._build_index()

    # ── Initialization ────────────────────────────────────────

    def _ensure_initialized(self) -> None:
        """Ensure base directories exist. Idempotent."""
        for d in ["owners", "audit"]:
            (self.root / d).mkdir(parents=True, exist_ok=True)

    def _build_index(self) -> None:
        """Scan owners/ once at startup."""
        self._index.clear()
        for md_file in (self.root / "owners").glob("*/*.md"):
            memory = self._load(md_file)
            if memory is not None:
                self._index[memory.id] = memory

        highest = max(self._index, default=0)
        sequence = self.root / _SEQUENCE_FILE
        if sequence.exists():
            try:
                highest = max(highest, int(sequence.read_text(encoding="utf-8").strip()))
            except ValueError:
                logger.warning("Ignoring corrupt sequence file %s", sequence)
        self._next_id = highest + 1
        logger.debug("Indexed %d memories (next id %d)", len(self._index), self._next_id)

    def _load(self, path: Path) -> Memory | None:
        try:
            post = frontmatter.load(str(path))
            return Memory.from_snapshot({**post.metadata, "content": post.content})
        except Exception as e:
            logger.warning("Skipping unreadable memory file %s: %s", path, e)
            return None

    # ── Paths ─────────────────────────────────────────────────

    def _owner_dir(self, owner_id: str) -> Path:
        if not _OWNER_ID_RE.match(owner_id):
            raise ValueError(f"Invalid owner id: {owner_id!r}")
        return self.root / "owners" / owner_id

    def _memory_path(self, memory: Memory) -> Path:
        return self._owner_dir(memory.owner_id) / f"{memory.id}.md"

    def _allocate_id(self) -> int:
        memory_id = self._next_id
        self._next_id += 1
        return memory_id

    # ── Queries ───────────────────────────────────────────────

    def owners(self) -> list[str]:
        """Owner ids that have a memory directory."""
        return sorted(p.name for p in (self.root / "owners").iterdir() if p.is_dir())

    def get(self, owner_id: str, memory_id: int) -> Memory | None:
        memory = self._index.get(memory_id)
        if memory is None or memory.owner_id != owner_id:
            return None
        return memory

    def memories(self, owner_id: str, type: MemoryType | None = None) -> list[Memory]:
        """All memories of an owner, ordered by creation time."""
        result = [
            m
            for m in self._index.values()
            if m.owner_id == owner_id and (type is None or m.type is type)
        ]
        return sorted(result, key=lambda m: (m.created_at, m.id))

    def ledger(self, owner_id: str) -> list[Memory]:
        return self.memories(owner_id, MemoryType.CORE)

    def core_mass(self, owner_id: str) -> int:
        return sum(m.mass for m in self.ledger(owner_id))

    def search(self, owner_id: str, query: str) -> list[Memory]:
        """Case-insensitive substring match over non-protected core memories."""
        q = query.lower()
        return [m for m in self.ledger(owner_id) if not m.protected and q in m.content.lower()]

    def active_journal(self, owner_id: str, now: datetime | None = None) -> list[Memory]:
        now = now or utcnow()
        return [m for m in self.memories(owner_id, MemoryType.JOURNAL) if not m.is_expired(now)]

    def gather_context(self, owner_id: str) -> str:
        """Render the owner's core memories and recent journal as prompt context."""
        parts: list[str] = []
        core = self.ledger(owner_id)
        if core:
            parts.append("## Core Memories (permanent)\n" + "\n".join(f"- {m.content}" for m in core))
        journal = self.active_journal(owner_id)
        if journal:
            parts.append(
                "## Recent Journal Entries\n"
                + "\n".join(f"- [{m.created_at:%Y-%m-%d}] {m.content}" for m in journal)
            )
        if not parts:
            return ""
        return "# Your Private Memory\n\n" + "\n\n".join(parts)

    # ── Writes ────────────────────────────────────────────────

    def create(
        self,
        owner_id: str,
        content: str,
        type: MemoryType = MemoryType.CORE,
        protected: bool = False,
        created_at: datetime | None = None,
    ) -> Memory:
        """Create a memory outside any session (capture flows)."""
        self._owner_dir(owner_id)
        with self.transaction() as txn:
            memory = txn.put(
                Memory(
                    id=txn.new_id(),
                    owner_id=owner_id,
                    content=normalize_content(content),
                    type=type,
                    protected=protected,
                    created_at=created_at or utcnow(),
                )
            )
        logger.info("Created %s memory #%d for %s", type.value, memory.id, owner_id)
        return memory

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Stage writes; commit them all when the block exits cleanly.

        If the block raises, nothing is written. If applying the staged writes
        fails part-way, every touched file is restored before TransactionError
        is raised.
        """
        txn = Transaction(self)
        yield txn
        if not txn.empty:
            self._commit(txn)

    def _commit(self, txn: Transaction) -> None:
        backups: dict[Path, bytes | None] = {}
        audit_sizes: dict[str, int] = {}
        try:
            for memory_id, memory in txn._writes.items():
                current = self._index.get(memory_id)
                target = memory or current
                if target is None:
                    raise TransactionError(f"Cannot remove unknown memory #{memory_id}")
                path = self._memory_path(target)
                if path not in backups:
                    backups[path] = path.read_bytes() if path.exists() else None
                if memory is None:
                    path.unlink()
                else:
                    self._write(path, memory)
            self._write_sequence(backups)
            audit_sizes = self.audit.sizes({e.owner_id for e in txn._audit})
            self.audit.append(*txn._audit)
        except Exception as e:
            self._restore(backups, audit_sizes)
            logger.error("Transaction failed, restored %d files: %s", len(backups), e)
            if isinstance(e, TransactionError):
                raise
            raise TransactionError(str(e)) from e

        for memory_id, memory in txn._writes.items():
            if memory is None:
                self._index.pop(memory_id, None)
            else:
                self._index[memory_id] = memory

    def _write(self, path: Path, memory: Memory) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        post = frontmatter.Post(memory.content, **memory.to_metadata())
        tmp = path.with_suffix(".md.tmp")
        tmp.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")
        tmp.replace(path)

    def _write_sequence(self, backups: dict[Path, bytes | None]) -> None:
        path = self.root / _SEQUENCE_FILE
        if path not in backups:
            backups[path] = path.read_bytes() if path.exists() else None
        path.write_text(str(self._next_id - 1), encoding="utf-8")

    def _restore(self, backups: dict[Path, bytes | None], audit_sizes: dict[str, int]) -> None:
        for path, data in backups.items():
            if data is None:
                path.unlink(missing_ok=True)
            else:
                path.write_bytes(data)
        for owner_id, size in audit_sizes.items():
            self.audit._truncate(owner_id, size)
