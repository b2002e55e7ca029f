"""Memory and audit records."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from memkeeper.errors import ValidationError

MAX_CONTENT_LENGTH = 10_000
CHARS_PER_TOKEN = 4
JOURNAL_WINDOW = timedelta(days=7)


class MemoryType(str, Enum):
    JOURNAL = "journal"
    CORE = "core"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Accept a datetime (YAML may already have parsed it) or an ISO string."""
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def estimate_mass(content: str) -> int:
    """Token estimate: one token per four characters, rounded up."""
    if not content:
        return 0
    return max(1, math.ceil(len(content) / CHARS_PER_TOKEN))


def normalize_content(content: Any, field_name: str = "content") -> str:
    """Strip and bound memory content. Raises ValidationError."""
    text = str(content or "").strip()
    if not text:
        raise ValidationError(f"{field_name} must not be blank")
    if len(text) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            f"{field_name} is {len(text)} characters (maximum {MAX_CONTENT_LENGTH})"
        )
    return text


@dataclass(frozen=True)
class Memory:
    """A single owner-scoped memory entry."""

    id: int
    owner_id: str
    content: str
    type: MemoryType = MemoryType.CORE
    protected: bool = False
    created_at: datetime = field(default_factory=utcnow)
    mass: int = -1

    def __post_init__(self) -> None:
        if self.mass < 0:
            object.__setattr__(self, "mass", estimate_mass(self.content))

    @property
    def is_core(self) -> bool:
        return self.type is MemoryType.CORE

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.type is MemoryType.JOURNAL and self.created_at < now - JOURNAL_WINDOW

    def as_ledger_entry(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "created_at": self.created_at.strftime("%Y-%m-%d"),
            "mass": self.mass,
            "protected": self.protected,
        }

    def to_metadata(self) -> dict:
        """Frontmatter fields for the on-disk representation."""
        return {
            "id": self.id,
            "owner": self.owner_id,
            "type": self.type.value,
            "protected": self.protected,
            "created": self.created_at.isoformat(),
            "mass": self.mass,
        }

    def to_snapshot(self) -> dict:
        return {**self.to_metadata(), "content": self.content}

    @classmethod
    def from_snapshot(cls, data: dict) -> Memory:
        return cls(
            id=int(data["id"]),
            owner_id=str(data["owner"]),
            content=data["content"],
            type=MemoryType(data.get("type", MemoryType.CORE.value)),
            protected=bool(data.get("protected", False)),
            created_at=parse_timestamp(data["created"]),
            mass=int(data.get("mass", -1)),
        )


@dataclass
class AuditEntry:
    """One append-only line of the audit trail."""

    session_id: str
    owner_id: str
    operation: str
    outcome: str = "ok"
    memory_id: int | None = None
    before_content: str | None = None
    after_content: str | None = None
    snapshot: dict | None = None
    data: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.outcome == "ok"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["created_at"] = self.created_at.isoformat()
        return d

    @classmethod
    def from_dict(cls, data: dict) -> AuditEntry:
        data = dict(data)
        data["created_at"] = parse_timestamp(data["created_at"])
        return cls(**data)
