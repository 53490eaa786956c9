from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import os


@dataclass(frozen=True)
class Settings:
    env: str
    mode: str
    venue: str
    program_id: str
    mpc_program_id: str
    cluster_offset: int
    redis_url: str
    finalization_stream: str
    consumer_group: str
    funding_account: str | None = None
    computation_timeout_seconds: float = 60.0
    key_fetch_max_attempts: int = 5
    key_fetch_initial_backoff_seconds: float = 0.5


def load_settings(path: str | Path = "config/settings.yaml") -> Settings:
    p = Path(path)

    # Keep imports optional at module import time (tests/tools may not need YAML).
    try:
        import yaml  # type: ignore
    except ModuleNotFoundError as e:  # pragma: no cover
        raise ModuleNotFoundError(
            "PyYAML is required to load config/settings.yaml. Install with: pip install pyyaml"
        ) from e

    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8"))

    # Env overrides (used to point one config file at different clusters).
    env_redis_url = os.getenv("VEILPERP_REDIS_URL")
    env_mode = os.getenv("VEILPERP_MODE")
    env_funding = os.getenv("VEILPERP_FUNDING_ACCOUNT")

    program = data["program"]
    mpc = data.get("mpc", {})
    redis_section = data.get("redis", {})
    execution = data.get("execution", {})

    mode = env_mode or execution.get("mode", "confidential")
    if mode not in {"confidential", "transparent"}:
        raise ValueError(f"execution.mode must be confidential/transparent, got {mode!r}")

    return Settings(
        env=data.get("env", "dev"),
        mode=mode,
        venue=execution.get("venue", "simulated"),
        program_id=program["id"],
        mpc_program_id=mpc["program_id"],
        cluster_offset=int(mpc.get("cluster_offset", 0)),
        redis_url=env_redis_url or redis_section["url"],
        finalization_stream=redis_section.get("stream", {}).get("finalization", "mpc.computation.finalized.v1"),
        consumer_group=redis_section.get("stream", {}).get("consumer_group", "veilperp"),
        funding_account=env_funding or execution.get("funding_account"),
        computation_timeout_seconds=float(mpc.get("computation_timeout_seconds", 60.0)),
        key_fetch_max_attempts=int(mpc.get("key_fetch", {}).get("max_attempts", 5)),
        key_fetch_initial_backoff_seconds=float(mpc.get("key_fetch", {}).get("initial_backoff_seconds", 0.5)),
    )
