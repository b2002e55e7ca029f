"""Refinement job and scheduler, pure asyncio.

RefinementJob drives one session per owner:
    Idle → Selecting → Prompting → Looping → Completed | RolledBack | Exhausted

Scheduler runs a periodic sweep over all eligible owners, and runs a single
owner immediately when a capture flow reports that owner over budget.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from memkeeper.errors import (
    CircuitBreakerTrip,
    EngineError,
    RollbackFailure,
    SessionTerminatedError,
    TransactionError,
    TransientEngineError,
    ValidationError,
)
from memkeeper.memory import audit
from memkeeper.memory.records import AuditEntry, utcnow
from memkeeper.refinement.breaker import CircuitBreaker
from memkeeper.refinement.prompts import (
    build_consent_prompt,
    build_refinement_prompt,
    build_system_prompt,
)
from memkeeper.refinement.rollback import RollbackEngine
from memkeeper.refinement.session import Session, SessionState
from memkeeper.tools.refinement import TOOL_NAME, TOOL_SCHEMA, Action, ActionDispatcher

if TYPE_CHECKING:
    from memkeeper.config import MemkeeperConfig
    from memkeeper.engines.base import Engine, ToolCall
    from memkeeper.memory.store import MemoryStore

logger = logging.getLogger(__name__)

LOCK_FILE = ".refinement.lock"


@dataclass
class SessionReport:
    """What one run did for one owner."""

    owner_id: str
    state: SessionState
    session_id: str | None = None
    termination_reason: str | None = None
    stats: dict[str, int] = field(default_factory=dict)
    pre_session_mass: int = 0
    post_session_mass: int = 0


class RefinementJob:
    """Selects owners and runs bounded refinement sessions against the LLM."""

    def __init__(self, store: MemoryStore, engine: Engine, config: MemkeeperConfig) -> None:
        self.store = store
        self.engine = engine
        self.config = config
        self.dispatcher = ActionDispatcher(store)
        self.breaker = CircuitBreaker(store)
        self.rollback = RollbackEngine(store)
        self._owner_locks: dict[str, asyncio.Lock] = {}  # per-owner serialization

    # ── Selecting ────────────────────────────────────────────

    def needs_refinement(self, owner_id: str, now: datetime | None = None) -> bool:
        """Over the core token budget, or no refinement within the interval."""
        if not self.store.ledger(owner_id):
            return False
        if self.over_budget(owner_id):
            return True
        last = self.store.audit.last_session_outcome(owner_id)
        if last is None:
            return True
        now = now or utcnow()
        return last.created_at <= now - timedelta(hours=self.config.refinement.interval_hours)

    def over_budget(self, owner_id: str) -> bool:
        return self.store.core_mass(owner_id) > self.config.refinement.core_token_budget

    def eligible_owners(self, now: datetime | None = None) -> list[str]:
        return [o for o in self.store.owners() if self.needs_refinement(o, now)]

    # ── Entry points ─────────────────────────────────────────

    async def run_all(self) -> list[SessionReport]:
        """Run every eligible owner. One owner's failure never blocks another."""
        owners = self.eligible_owners()
        logger.info("[Refinement] Sweep starting (%d eligible owners)", len(owners))
        results = await asyncio.gather(*(self._run_isolated(o) for o in owners))
        logger.info("[Refinement] Sweep complete")
        return [r for r in results if r is not None]

    async def _run_isolated(self, owner_id: str) -> SessionReport | None:
        try:
            return await self.run_owner(owner_id, trigger="sweep")
        except Exception as e:
            logger.error("[Refinement] Failed for owner %s: %s", owner_id, e)
            return None

    async def run_owner(self, owner_id: str, trigger: str = "manual") -> SessionReport | None:
        """Run exactly one named owner. Returns None if the owner is busy or empty.

        A run triggered by a write waits for a running session of the same
        owner, then goes ahead only if the owner is still over budget.
        """
        lock = self._get_owner_lock(owner_id)
        queued = trigger == "write"
        if lock.locked() and not queued:
            logger.info(
                "[Refinement] Owner %s already has a session running, skipping %s run",
                owner_id,
                trigger,
            )
            return None
        async with lock:
            if queued and not self.over_budget(owner_id):
                logger.info(
                    "[Refinement] Owner %s no longer over budget, dropping %s run", owner_id, trigger
                )
                return None
            with self._claim(owner_id) as claimed:
                if not claimed:
                    logger.info("[Refinement] Owner %s claimed by another process, skipping", owner_id)
                    return None
                return await self._run_with_retry(owner_id)

    def _get_owner_lock(self, owner_id: str) -> asyncio.Lock:
        if owner_id not in self._owner_locks:
            self._owner_locks[owner_id] = asyncio.Lock()
        return self._owner_locks[owner_id]

    @contextmanager
    def _claim(self, owner_id: str) -> Iterator[bool]:
        """Cross-process claim file in the owner's directory."""
        lock_path = self.store._owner_dir(owner_id) / LOCK_FILE
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        if lock_path.exists():
            if time.time() - lock_path.stat().st_mtime < self.config.scheduler.lock_timeout:
                yield False
                return
            logger.warning("[Refinement] Removing stale claim for %s", owner_id)
            lock_path.unlink(missing_ok=True)
        try:
            with lock_path.open("x", encoding="utf-8") as f:
                f.write(str(os.getpid()))
        except FileExistsError:
            yield False
            return
        try:
            yield True
        finally:
            lock_path.unlink(missing_ok=True)

    async def _run_with_retry(self, owner_id: str) -> SessionReport | None:
        cfg = self.config.refinement
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TransientEngineError),
                stop=stop_after_attempt(cfg.retry_attempts),
                wait=wait_exponential(
                    multiplier=cfg.retry_min_wait, min=cfg.retry_min_wait, max=cfg.retry_max_wait
                ),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    return await self._refine(owner_id)
        except TransientEngineError as e:
            logger.error(
                "[Refinement] Abandoning owner %s after %d attempts: %s",
                owner_id,
                cfg.retry_attempts,
                e,
            )
            self.store.audit.append(
                AuditEntry(
                    session_id="",
                    owner_id=owner_id,
                    operation=audit.ABANDONED,
                    outcome="error",
                    data={"error": str(e), "attempts": cfg.retry_attempts},
                )
            )
            return SessionReport(owner_id=owner_id, state=SessionState.ABANDONED)
        return None

    # ── Prompting ────────────────────────────────────────────

    async def _consents(self, owner_id: str, usage: int) -> bool:
        prompt = build_consent_prompt(
            self.store.gather_context(owner_id),
            count=len(self.store.ledger(owner_id)),
            usage=usage,
            budget=self.config.refinement.core_token_budget,
        )
        response = await self.engine.send(prompt)
        answer = response.text.strip()
        consented = bool(re.match(r"\**YES\b", answer, re.IGNORECASE))
        logger.info(
            "[Refinement] Owner %s consent: %s (%s)",
            owner_id,
            "YES" if consented else "NO",
            answer[:200],
        )
        return consented

    # ── Session ──────────────────────────────────────────────

    async def _refine(self, owner_id: str) -> SessionReport | None:
        ledger = self.store.ledger(owner_id)
        if not ledger:
            logger.debug("[Refinement] Owner %s has no core memories", owner_id)
            return None
        cfg = self.config.refinement
        session = Session(
            owner_id=owner_id,
            pre_session_mass=self.store.core_mass(owner_id),
            retention_threshold=self.config.retention_threshold_for(owner_id),
            max_mutations=cfg.max_mutations,
            state=SessionState.SELECTING,
        )
        pre_mass = session.pre_session_mass

        if cfg.require_consent and not await self._consents(owner_id, pre_mass):
            self.store.audit.append(
                AuditEntry(
                    session_id=session.session_id, owner_id=owner_id, operation=audit.DECLINED
                )
            )
            session.state = SessionState.DECLINED
            return self._report(session)

        session.state = SessionState.PROMPTING
        prompt = build_refinement_prompt(
            ledger,
            usage=pre_mass,
            budget=cfg.core_token_budget,
            style=self.config.refinement_prompt_for(owner_id),
        )
        logger.info(
            "[Refinement] Session %s starting for %s (%d memories, %d tokens)",
            session.session_id[:8],
            owner_id,
            len(ledger),
            pre_mass,
        )

        try:
            await self._loop(session, prompt)
        except TransientEngineError:
            self._abort(session, "interrupted")
            if session.state is SessionState.FAILED:
                return self._report(session)
            raise
        except EngineError as e:
            logger.error("[Refinement] Engine error in session %s: %s", session.session_id[:8], e)
            self._abort(session, "engine_error")
            return self._report(session)
        except TransactionError as e:
            # Earlier commits of this session are still applied
            logger.error("[Refinement] Store error in session %s: %s", session.session_id[:8], e)
            self._abort(session, "store_error")
            return self._report(session)
        return self._report(session)

    async def _loop(self, session: Session, prompt: str) -> None:
        session.state = SessionState.LOOPING
        system_prompt = build_system_prompt(session.max_mutations, session.retention_threshold)
        messages: list[dict] = [{"role": "user", "content": prompt}]

        for turn in range(self.config.refinement.max_turns):
            response = await self.engine.converse(
                messages, system_prompt=system_prompt, tools=[TOOL_SCHEMA]
            )
            if not response.tool_calls:
                logger.info(
                    "[Refinement] Session %s: model stopped without completing (turn %d)",
                    session.session_id[:8],
                    turn + 1,
                )
                break

            messages.append({"role": "assistant", "content": response.content})
            results = []
            for call in response.tool_calls:
                payload = self._handle_call(session, call)
                result = {
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": json.dumps(payload, ensure_ascii=False, default=str),
                }
                if payload.get("type") == "error":
                    result["is_error"] = True
                results.append(result)
            messages.append({"role": "user", "content": results})

            if session.terminated:
                return

        self._soft_complete(session)

    def _handle_call(self, session: Session, call: ToolCall) -> dict:
        if call.name != TOOL_NAME:
            return ValidationError(f"Unknown tool '{call.name}'; use {TOOL_NAME}").to_payload()
        params = dict(call.input)
        action = params.pop("action", "")

        # Safety net: mass lost outside the tracked operations still blocks completion
        if str(action).strip().lower() == Action.COMPLETE.value and not session.terminated:
            tripped = self._check_breaker(session)
            if tripped is not None:
                return tripped

        result = self.dispatcher.execute(session, action, params)
        if result.mutated:
            tripped = self._check_breaker(session)
            if tripped is not None:
                return tripped
        return result.payload

    def _check_breaker(self, session: Session) -> dict | None:
        try:
            self.breaker.check(session)
        except CircuitBreakerTrip as trip:
            self._abort(session, "circuit_breaker")
            return SessionTerminatedError(
                f"Session terminated: {trip}. All changes from this session were rolled back."
            ).to_payload()
        return None

    def _abort(self, session: Session, reason: str) -> None:
        """Roll back everything the session did and make it terminal."""
        if reason != "circuit_breaker" and not (session.mutation_count or session.stats.protected):
            session.terminate(reason, SessionState.ROLLED_BACK)
            return
        try:
            self.rollback.rollback_session(session, reason=reason)
        except RollbackFailure:
            session.terminate("rollback_failed", SessionState.FAILED)
            return
        session.terminate(reason, SessionState.ROLLED_BACK)

    def _soft_complete(self, session: Session) -> None:
        """Loop ended without an explicit complete: summarize from stats."""
        if session.terminated:
            return
        if self._check_breaker(session) is not None:
            return
        stats = ", ".join(f"{k}={v}" for k, v in session.stats.as_dict().items())
        self.dispatcher.finish(
            session,
            f"Session ended without an explicit summary ({stats}).",
            SessionState.EXHAUSTED,
        )

    def _report(self, session: Session) -> SessionReport:
        return SessionReport(
            owner_id=session.owner_id,
            state=session.state,
            session_id=session.session_id,
            termination_reason=session.termination_reason,
            stats=session.stats.as_dict(),
            pre_session_mass=session.pre_session_mass,
            post_session_mass=self.store.core_mass(session.owner_id),
        )


class Scheduler:
    """Periodic sweep plus on-demand runs for owners reported over budget."""

    def __init__(self, job: RefinementJob, config: MemkeeperConfig) -> None:
        self._job = job
        self._sweep_interval = config.scheduler.sweep_interval
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()

    def notify_write(self, owner_id: str) -> bool:
        """Called by capture flows after a write; queues a run if over budget."""
        if self._job.over_budget(owner_id):
            self._queue.put_nowait(owner_id)
            return True
        return False

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Run until shutdown_event is set. In-flight sessions finish first."""
        logger.info("Scheduler started (sweep every %ds)", self._sweep_interval)
        self._spawn(self._sweep())
        deadline = time.monotonic() + self._sweep_interval

        while not shutdown_event.is_set():
            timeout = max(0.0, deadline - time.monotonic())
            get_task = asyncio.ensure_future(self._queue.get())
            stop_task = asyncio.ensure_future(shutdown_event.wait())
            done, _ = await asyncio.wait(
                {get_task, stop_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            stop_task.cancel()
            if get_task in done:
                owner_id = get_task.result()
                logger.info("Over-budget owner %s queued, starting session", owner_id)
                self._spawn(self._job.run_owner(owner_id, trigger="write"))
            else:
                get_task.cancel()
            if time.monotonic() >= deadline:
                self._spawn(self._sweep())
                deadline = time.monotonic() + self._sweep_interval

        if self._tasks:
            logger.info("Waiting for %d running sessions to finish", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Scheduler stopped.")

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(self._guard(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.error("Scheduled refinement failed: %s", e)

    async def _sweep(self) -> None:
        await self._job.run_all()
