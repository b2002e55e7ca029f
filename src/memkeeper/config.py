"""Configuration loading from environment variables and memkeeper.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".memkeeper"
_DEFAULT_MEMORY_DIR = _DEFAULT_HOME / "memory"
_CONFIG_FILENAME = "memkeeper.toml"

DEFAULT_REFINEMENT_PROMPT = """\
Favor precision over brevity. Merge only memories that say the same thing, \
keep the earliest wording when in doubt, and never drop names, dates or \
numbers. Protect memories that define who you are or what you promised."""


@dataclass
class EngineConfig:
    """Configuration for the LLM engine."""

    name: str = "anthropic_api"
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    timeout: int = 120


@dataclass
class RefinementConfig:
    """Session limits and defaults shared by every owner."""

    retention_threshold: float = 0.7
    max_mutations: int = 10
    max_turns: int = 20
    core_token_budget: int = 2000
    interval_hours: int = 24
    require_consent: bool = True
    retry_attempts: int = 3
    retry_min_wait: float = 2.0
    retry_max_wait: float = 60.0
    refinement_prompt: str = DEFAULT_REFINEMENT_PROMPT


@dataclass
class OwnerConfig:
    """Per-owner overrides. Unset fields fall back to RefinementConfig."""

    retention_threshold: float | None = None
    refinement_prompt: str = ""


@dataclass
class SchedulerConfig:
    """Scheduler configuration."""

    sweep_interval: int = 3600
    lock_timeout: int = 1800


@dataclass
class MemkeeperConfig:
    """Top-level memkeeper configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    owners: dict[str, OwnerConfig] = field(default_factory=dict)
    memory_dir: Path = _DEFAULT_MEMORY_DIR
    pid_file: Path = _DEFAULT_HOME / "memkeeper.pid"
    log_level: str = "INFO"

    def retention_threshold_for(self, owner_id: str) -> float:
        owner = self.owners.get(owner_id)
        if owner and owner.retention_threshold is not None:
            return owner.retention_threshold
        return self.refinement.retention_threshold

    def refinement_prompt_for(self, owner_id: str) -> str:
        """Owner style instruction, or the system default when blank."""
        owner = self.owners.get(owner_id)
        if owner and owner.refinement_prompt.strip():
            return owner.refinement_prompt.strip()
        return self.refinement.refinement_prompt.strip() or DEFAULT_REFINEMENT_PROMPT


def _threshold(value: object, where: str) -> float:
    threshold = float(value)
    if not 0 < threshold <= 1:
        raise ValueError(f"{where}: retention_threshold must be in (0, 1], got {threshold}")
    return threshold


def _bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_config(config_path: Path | None = None) -> MemkeeperConfig:
    """Load configuration from environment variables and optional memkeeper.toml.

    Priority: environment variables > memkeeper.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.memkeeper/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    engine_data = file_data.get("engine", {})
    refinement_data = file_data.get("refinement", {})
    scheduler_data = file_data.get("scheduler", {})
    defaults = RefinementConfig()

    owners = {}
    for owner_id, data in file_data.get("owners", {}).items():
        threshold = data.get("retention_threshold")
        owners[owner_id] = OwnerConfig(
            retention_threshold=(
                _threshold(threshold, f"owners.{owner_id}") if threshold is not None else None
            ),
            refinement_prompt=data.get("refinement_prompt", ""),
        )

    config = MemkeeperConfig(
        engine=EngineConfig(
            name=os.getenv("MEMKEEPER_ENGINE", engine_data.get("name", "anthropic_api")),
            model=os.getenv("MEMKEEPER_MODEL", engine_data.get("model", EngineConfig.model)),
            max_tokens=int(engine_data.get("max_tokens", 4096)),
            timeout=int(os.getenv("MEMKEEPER_TIMEOUT", engine_data.get("timeout", 120))),
        ),
        refinement=RefinementConfig(
            retention_threshold=_threshold(
                os.getenv(
                    "MEMKEEPER_RETENTION_THRESHOLD",
                    refinement_data.get("retention_threshold", defaults.retention_threshold),
                ),
                "refinement",
            ),
            max_mutations=int(
                os.getenv(
                    "MEMKEEPER_MAX_MUTATIONS",
                    refinement_data.get("max_mutations", defaults.max_mutations),
                )
            ),
            max_turns=int(refinement_data.get("max_turns", defaults.max_turns)),
            core_token_budget=int(
                refinement_data.get("core_token_budget", defaults.core_token_budget)
            ),
            interval_hours=int(refinement_data.get("interval_hours", defaults.interval_hours)),
            require_consent=_bool(
                refinement_data.get("require_consent", defaults.require_consent)
            ),
            retry_attempts=int(refinement_data.get("retry_attempts", defaults.retry_attempts)),
            retry_min_wait=float(refinement_data.get("retry_min_wait", defaults.retry_min_wait)),
            retry_max_wait=float(refinement_data.get("retry_max_wait", defaults.retry_max_wait)),
            refinement_prompt=refinement_data.get("refinement_prompt", DEFAULT_REFINEMENT_PROMPT),
        ),
        scheduler=SchedulerConfig(
            sweep_interval=int(
                os.getenv(
                    "MEMKEEPER_SWEEP_INTERVAL",
                    scheduler_data.get("sweep_interval", 3600),
                )
            ),
            lock_timeout=int(scheduler_data.get("lock_timeout", 1800)),
        ),
        owners=owners,
        memory_dir=Path(
            os.getenv("MEMKEEPER_MEMORY_DIR", file_data.get("memory_dir", str(_DEFAULT_MEMORY_DIR)))
        ),
        log_level=os.getenv("MEMKEEPER_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
