"""Refinement and consent prompt building."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from memkeeper.memory.records import Memory

SYSTEM_PROMPT = """\
You are reviewing your own long-term memory with the memory_refinement tool.

Hard rules:
- Protected memories can never be deleted, updated or consolidated.
- At most {max_mutations} consolidate/update/delete calls are allowed per session.
- If your core memory shrinks below {threshold:.0%} of its size at the start of
  this session, every change you made is rolled back and the session ends.
- search and protect are always available; protect is free and permanent.
- Call complete with a short summary when you are done. Doing nothing is fine.
"""

REFINEMENT_PROMPT_TEMPLATE = """\
# Memory Refinement Session

You are reviewing your own core memories. This is de-duplication, not compression.

{style}

## Current Status
- Core memories: {count}
- Token usage: {usage} tokens
- Token budget: {budget} tokens
- {budget_line}

## Your Core Memory Ledger
{ledger}

Review your memories. De-duplicate exact duplicates. Tighten phrasing within \
individual memories if possible. When done, call complete with a brief summary."""

CONSENT_PROMPT_TEMPLATE = """\
{context}

# Memory Refinement Request

A scheduled memory refinement session is about to run. Before it begins, you \
are being asked whether you consent to this session.

## Current Status
- Core memories: {count}
- Token usage: {usage} tokens
- Token budget: {budget} tokens
- {budget_line}

Memory refinement will review your core memories to de-duplicate entries and \
tighten phrasing. Protected memories are never touched. Completing with zero \
operations is a valid and good outcome.

Do you want to run memory refinement now? Reply with **YES** or **NO** as the \
first word of your response. You may briefly explain your reasoning after."""


def format_ledger(memories: list[Memory]) -> str:
    """One line per core memory, oldest first."""
    if not memories:
        return "(no core memories)"
    lines = []
    for m in memories:
        flag = " [PROTECTED]" if m.protected else ""
        lines.append(f"- #{m.id} ({m.created_at:%Y-%m-%d}, ~{m.mass} tokens){flag}: {m.content}")
    return "\n".join(lines)


def _budget_line(usage: int, budget: int) -> str:
    if usage > budget:
        return f"Over budget by: {usage - budget} tokens"
    return "Within budget"


def build_system_prompt(max_mutations: int, threshold: float) -> str:
    return SYSTEM_PROMPT.format(max_mutations=max_mutations, threshold=threshold)


def build_refinement_prompt(memories: list[Memory], usage: int, budget: int, style: str) -> str:
    return REFINEMENT_PROMPT_TEMPLATE.format(
        style=style,
        count=len(memories),
        usage=usage,
        budget=budget,
        budget_line=_budget_line(usage, budget),
        ledger=format_ledger(memories),
    )


def build_consent_prompt(context: str, count: int, usage: int, budget: int) -> str:
    return CONSENT_PROMPT_TEMPLATE.format(
        context=context or "(no memory context)",
        count=count,
        usage=usage,
        budget=budget,
        budget_line=_budget_line(usage, budget),
    )
