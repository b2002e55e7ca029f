"""Error taxonomy for refinement sessions.

Errors raised while handling a tool call carry a ``kind`` that is reported
back to the LLM so it can tell a protected target apart from a missing one.
"""

from __future__ import annotations


class MemkeeperError(Exception):
    """Base class for all memkeeper errors."""

    kind = "error"


# ── Surfaced to the LLM (non-fatal) ──────────────────────────


class ToolCallError(MemkeeperError):
    """An error returned to the LLM as structured feedback."""

    def to_payload(self) -> dict:
        return {"type": "error", "error": str(self), "kind": self.kind}


class ValidationError(ToolCallError):
    """Unknown action, or a missing or malformed parameter."""

    kind = "validation"

    def __init__(self, message: str, allowed_actions: list[str] | None = None) -> None:
        super().__init__(message)
        self.allowed_actions = allowed_actions

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.allowed_actions:
            payload["allowed_actions"] = self.allowed_actions
        return payload


class AuthorizationError(ToolCallError):
    """The target of a mutation may not be changed."""

    kind = "authorization"


class ProtectedMemoryError(AuthorizationError):
    kind = "protected"


class MemoryNotFoundError(AuthorizationError):
    kind = "not_found"


class CapExceededError(ToolCallError):
    """The session already used its mutation budget."""

    kind = "cap_exceeded"


class SessionTerminatedError(ToolCallError):
    """The session is terminal; no further calls are accepted."""

    kind = "terminated"


# ── Session control ──────────────────────────────────────────


class CircuitBreakerTrip(MemkeeperError):
    """Retained mass fell below the retention threshold."""

    kind = "circuit_breaker"

    def __init__(self, pre_mass: int, post_mass: int, threshold: float) -> None:
        self.pre_mass = pre_mass
        self.post_mass = post_mass
        self.threshold = threshold
        super().__init__(
            f"Retained {post_mass}/{pre_mass} tokens, below the "
            f"{threshold:.0%} retention threshold"
        )


# ── Fatal / infrastructure ───────────────────────────────────


class RollbackFailure(MemkeeperError):
    """A rollback could not be applied. Requires manual intervention."""

    kind = "rollback_failed"


class TransactionError(MemkeeperError):
    """A store transaction could not be committed."""


class EngineError(MemkeeperError):
    """Non-retryable LLM failure."""


class TransientEngineError(EngineError):
    """Rate limit, timeout or connection failure. Retried at the job level."""
