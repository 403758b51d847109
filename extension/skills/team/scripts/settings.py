#!/usr/bin/env python3
"""Environment-driven settings for the team CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


DEFAULT_OPENCODE_URL = "http://127.0.0.1:4096"
DEFAULT_MODEL = "anthropic/claude-sonnet-4"
DEFAULT_LOG_DIR = ".team/runs"


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    raw = (env.get(name, "") or "").strip()
    return raw or default


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = (env.get(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class TeamSettings:
    opencode_url: str = DEFAULT_OPENCODE_URL
    opencode_username: str = "opencode"
    opencode_password: str = ""
    model: str = DEFAULT_MODEL
    log_dir: Path = Path(DEFAULT_LOG_DIR)
    log_level: str = "info"
    max_turns: int = 24
    request_timeout: float = 300.0
    max_retries: int = 1
    catalog_json: Path | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "TeamSettings":
        env = os.environ if env is None else env
        catalog = (env.get("TEAM_CATALOG_JSON", "") or "").strip()
        return cls(
            opencode_url=_env_str(env, "TEAM_OPENCODE_URL", DEFAULT_OPENCODE_URL).rstrip("/"),
            opencode_username=_env_str(env, "TEAM_OPENCODE_USERNAME", "opencode"),
            opencode_password=(env.get("TEAM_OPENCODE_PASSWORD", "") or "").strip(),
            model=_env_str(env, "TEAM_MODEL", DEFAULT_MODEL),
            log_dir=Path(_env_str(env, "TEAM_LOG_DIR", DEFAULT_LOG_DIR)),
            log_level=_env_str(env, "TEAM_DEBUG_LOG_LEVEL", "info").lower(),
            max_turns=_env_int(env, "TEAM_MAX_TURNS", 24, minimum=1),
            request_timeout=_env_float(env, "TEAM_REQUEST_TIMEOUT", 300.0),
            max_retries=_env_int(env, "TEAM_MAX_RETRIES", 1),
            catalog_json=Path(catalog) if catalog else None,
        )

    def run_dir(self, run_id: str) -> Path:
        return self.log_dir / run_id
