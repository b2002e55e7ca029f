"""Engine protocol and shared types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResponse:
    """Response from an AI engine."""

    text: str
    cost_usd: float | None = None
    model: str | None = None
    stop_reason: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    # Assistant content blocks, replayed verbatim on the next turn
    content: list[dict] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


@runtime_checkable
class Engine(Protocol):
    """Protocol that all engine backends must implement."""

    @property
    def name(self) -> str: ...

    async def send(self, message: str, *, system_prompt: str | None = None) -> AgentResponse:
        """Single-shot prompt, no tools."""
        ...

    async def converse(
        self,
        messages: list[dict],
        *,
        system_prompt: str | None = None,
        tools: list[dict] | None = None,
    ) -> AgentResponse:
        """One turn of a multi-turn tool-use conversation.

        Raises TransientEngineError for failures worth retrying later and
        EngineError for everything else.
        """
        ...

    async def health_check(self) -> bool:
        """Check if the engine is available. Returns True if healthy."""
        ...
