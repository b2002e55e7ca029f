"""Entry point: python -m memkeeper [run [owner_id] | serve]

- "run":            Refine every eligible owner once, then exit
- "run <owner_id>": Refine exactly one owner, eligible or not
- "serve":          Daemon mode (scheduler, PID file, signal handling)
"""

from __future__ import annotations

import asyncio
import logging
import sys

from memkeeper.config import load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _run_once(owner_id: str | None) -> int:
    """Single pass over one owner or all eligible owners."""
    config = load_config()
    _setup_logging(config.log_level)

    from memkeeper.daemon import MemkeeperDaemon

    job = MemkeeperDaemon(config).build_job()
    if owner_id:
        report = asyncio.run(job.run_owner(owner_id))
        reports = [report] if report else []
    else:
        reports = asyncio.run(job.run_all())

    for r in reports:
        print(
            f"{r.owner_id}: {r.state.value}"
            f" ({r.pre_session_mass} -> {r.post_session_mass} tokens) {r.stats}"
        )
    return 0


def _run_serve() -> None:
    """Daemon mode: scheduler until SIGTERM/SIGINT."""
    config = load_config()
    _setup_logging(config.log_level)

    from memkeeper.daemon import MemkeeperDaemon

    daemon = MemkeeperDaemon(config)
    asyncio.run(daemon.run())


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""

    if cmd == "run":
        sys.exit(_run_once(sys.argv[2] if len(sys.argv) > 2 else None))
    elif cmd == "serve":
        _run_serve()
    else:
        print("Usage: python -m memkeeper [run [owner_id]|serve]")
        print("  run            Refine all eligible owners once")
        print("  run <owner_id> Refine one owner now")
        print("  serve          Daemon mode with scheduler")
        sys.exit(1)


if __name__ == "__main__":
    main()
