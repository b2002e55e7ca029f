"""Ephemeral refinement session state.

A session lives only as long as the controller loop that drives it; the
audit entries it writes are its only durable trace.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum


class SessionState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    PROMPTING = "prompting"
    LOOPING = "looping"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    # Run outcomes where no session reached the loop, or none survived retries
    DECLINED = "declined"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (
            SessionState.COMPLETED,
            SessionState.ROLLED_BACK,
            SessionState.EXHAUSTED,
            SessionState.FAILED,
        )


@dataclass
class SessionStats:
    deleted: int = 0
    consolidated: int = 0
    updated: int = 0
    protected: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "deleted": self.deleted,
            "consolidated": self.consolidated,
            "updated": self.updated,
            "protected": self.protected,
        }


@dataclass
class Session:
    owner_id: str
    pre_session_mass: int
    retention_threshold: float = 0.7
    max_mutations: int = 10
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    mutation_count: int = 0
    terminated: bool = False
    termination_reason: str | None = None
    state: SessionState = SessionState.IDLE
    stats: SessionStats = field(default_factory=SessionStats)

    @property
    def cap_reached(self) -> bool:
        return self.mutation_count >= self.max_mutations

    def terminate(self, reason: str, state: SessionState) -> None:
        self.terminated = True
        self.termination_reason = reason
        self.state = state
