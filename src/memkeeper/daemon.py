"""Daemon process: always-on mode for production.

Usage: python -m memkeeper serve

Manages:
- Scheduler (periodic sweep + over-budget triggers)
- PID file (prevent duplicate instances)
- Graceful shutdown (SIGTERM/SIGINT); running sessions finish first
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from memkeeper.config import MemkeeperConfig, load_config
from memkeeper.engines.anthropic_api import build_engine
from memkeeper.memory.store import MemoryStore
from memkeeper.scheduler.jobs import RefinementJob, Scheduler

logger = logging.getLogger(__name__)


class MemkeeperDaemon:
    """Always-on daemon process."""

    def __init__(self, config: MemkeeperConfig | None = None) -> None:
        self.config = config or load_config()
        self._shutdown_event = asyncio.Event()

    # ── PID file management ──────────────────────────────────

    def _write_pid(self) -> None:
        self.config.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_file.write_text(str(os.getpid()))
        logger.info("PID file written: %s (pid=%d)", self.config.pid_file, os.getpid())

    def _remove_pid(self) -> None:
        if self.config.pid_file.exists():
            self.config.pid_file.unlink()

    def _check_existing(self) -> None:
        if not self.config.pid_file.exists():
            return
        try:
            pid = int(self.config.pid_file.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"memkeeper daemon already running (pid={pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            # Stale PID file
            self._remove_pid()

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown_event.set()

    # ── Build components ─────────────────────────────────────

    def build_job(self) -> RefinementJob:
        store = MemoryStore(self.config.memory_dir)
        engine = build_engine(
            self.config.engine.name,
            model=self.config.engine.model,
            max_tokens=self.config.engine.max_tokens,
            timeout=self.config.engine.timeout,
        )
        return RefinementJob(store, engine, self.config)

    # ── Main run loop ────────────────────────────────────────

    async def run(self) -> None:
        self._check_existing()
        self._write_pid()
        self._setup_signals()

        scheduler = Scheduler(self.build_job(), self.config)
        logger.info("memkeeper daemon starting (engine=%s)", self.config.engine.name)

        try:
            await scheduler.start(self._shutdown_event)
        except asyncio.CancelledError:
            pass
        finally:
            self._remove_pid()
            logger.info("memkeeper daemon stopped.")
