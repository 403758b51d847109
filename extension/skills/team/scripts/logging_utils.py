#!/usr/bin/env python3
"""Structured JSONL logging for the agent team engine.

The orchestrator, workers, merge engine and lead analyzer all take a logger
port in their constructor. `JsonlLogger` is the file-backed implementation;
`NullLogger` is the default so library callers and tests never touch disk.

One run writes one file. Components get a child logger that shares the file
and adds its own component name and bound context fields to every record.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Protocol


LEVEL_ORDER = {
    "debug": 10,
    "info": 20,
    "warn": 30,
    "error": 40,
}

# Field names whose values never reach the log file.
SECRET_FIELDS = frozenset({"api_key", "apikey", "password", "authorization", "token", "secret"})
REDACTED = "***"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def preview(text: str, limit: int = 200) -> str:
    token = " ".join((text or "").split())
    if len(token) <= limit:
        return token
    return token[: limit - 3] + "..."


def redact(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {key: (REDACTED if key.lower() in SECRET_FIELDS and value else value) for key, value in fields.items()}


@dataclass(frozen=True)
class LoggerConfig:
    level: str = "info"
    rotate_mb: int = 20
    retention_files: int = 10

    @property
    def min_level(self) -> int:
        return LEVEL_ORDER.get(self.level.lower(), LEVEL_ORDER["info"])

    @property
    def rotate_bytes(self) -> int:
        return max(self.rotate_mb, 1) * 1024 * 1024

    @property
    def retention(self) -> int:
        return max(self.retention_files, 1)


class EventLogger(Protocol):
    def event(self, level: str, event: str, **kwargs: Any) -> None: ...


class NullLogger:
    """Logger port that drops every record."""

    def event(self, level: str, event: str, **kwargs: Any) -> None:
        return None


class JsonlLogger:
    """Append-only JSONL logger with numbered size-based rotation.

    Rotated files are `<name>.1` (newest) up to `<name>.<retention>`; older
    backups are deleted. Write failures are swallowed so a full disk or a
    revoked directory never fails a team run.
    """

    def __init__(
        self,
        file_path: Path,
        component: str,
        run_id: str,
        config: LoggerConfig | None = None,
        **context: Any,
    ) -> None:
        self.file_path = file_path
        self.component = component
        self.run_id = run_id
        self.config = config or LoggerConfig()
        self.context = context
        ensure_dir(file_path.parent)

    def child(self, component: str, **context: Any) -> "JsonlLogger":
        """Logger for another component writing to the same file."""
        return JsonlLogger(self.file_path, component, self.run_id, self.config, **{**self.context, **context})

    def enabled_for(self, level: str) -> bool:
        return LEVEL_ORDER.get(level.lower(), LEVEL_ORDER["info"]) >= self.config.min_level

    def _backup(self, index: int) -> Path:
        return self.file_path.with_name(f"{self.file_path.name}.{index}")

    def _rotate(self) -> None:
        try:
            size = self.file_path.stat().st_size
        except FileNotFoundError:
            return
        if size < self.config.rotate_bytes:
            return
        oldest = self._backup(self.config.retention)
        if oldest.exists():
            oldest.unlink()
        for index in range(self.config.retention - 1, 0, -1):
            if self._backup(index).exists():
                self._backup(index).replace(self._backup(index + 1))
        self.file_path.replace(self._backup(1))

    def event(self, level: str, event: str, **kwargs: Any) -> None:
        if not self.enabled_for(level):
            return
        record = {
            "ts": utc_now_iso(),
            "level": level.lower(),
            "component": self.component,
            "event": event,
            "run_id": self.run_id,
            **redact(self.context),
            **redact(kwargs),
        }
        line = json.dumps(record, ensure_ascii=False, default=str)
        try:
            self._rotate()
            with self.file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            return


def read_logging_config(default_level: str = "info", env: Mapping[str, str] | None = None) -> LoggerConfig:
    env = os.environ if env is None else env
    return LoggerConfig(
        level=(env.get("TEAM_DEBUG_LOG_LEVEL") or default_level).strip().lower(),
        rotate_mb=_positive_int(env.get("TEAM_DEBUG_LOG_ROTATION_MB"), 20),
        retention_files=_positive_int(env.get("TEAM_DEBUG_LOG_RETENTION_FILES"), 10),
    )


def _positive_int(raw: str | None, fallback: int) -> int:
    try:
        value = int(raw or "")
    except ValueError:
        return fallback
    return value if value > 0 else fallback
