from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional


def _default_pool_size() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class Settings:
    """Process-wide knobs, read from ``STAGEFLOW_*`` environment variables."""
    default_pool_size: int = 1
    work_dir: Path = Path(".")
    output_tail: int = 4000
    poll_interval: float = 0.05
    shell: str = "/bin/sh"
    max_finished_runs: int = 100

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    try:
        return Settings(
            default_pool_size=max(1, int(env.get("STAGEFLOW_DEFAULT_POOL_SIZE", _default_pool_size()))),
            work_dir=Path(env.get("STAGEFLOW_WORK_DIR", ".")),
            output_tail=int(env.get("STAGEFLOW_OUTPUT_TAIL", "4000")),
            poll_interval=float(env.get("STAGEFLOW_POLL_INTERVAL", "0.05")),
            shell=env.get("STAGEFLOW_SHELL", "/bin/sh"),
            max_finished_runs=int(env.get("STAGEFLOW_MAX_FINISHED_RUNS", "100")),
        )
    except ValueError as e:
        raise ValueError(f"Invalid STAGEFLOW_* setting: {e}") from e


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings (loaded from the environment on first use)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    global _settings
    _settings = settings
