#!/usr/bin/env python3
"""Write-only destinations for team events."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol

from logging_utils import EventLogger, NullLogger, ensure_dir
from team_events import TeamEvent, event_to_record


class EventSink(Protocol):
    def emit(self, event: TeamEvent) -> None: ...


class NullEventSink:
    def emit(self, event: TeamEvent) -> None:
        return None


class JsonlEventSink:
    """Append one JSON record per event; I/O errors are logged and dropped."""

    def __init__(self, path: Path, run_id: str = "", team_name: str = "", logger: EventLogger | None = None) -> None:
        self.path = path
        self.run_id = run_id
        self.team_name = team_name
        self.logger = logger or NullLogger()
        self.failures = 0
        ensure_dir(path.parent)

    def emit(self, event: TeamEvent) -> None:
        record = event_to_record(event, team_name=self.team_name, run_id=self.run_id)
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        except OSError as exc:
            self.failures += 1
            self.logger.event("warn", "sink.write.error", path=str(self.path), error=str(exc))


class CallbackEventSink:
    """Forward events to a plain callable, e.g. a CLI printer."""

    def __init__(self, callback) -> None:
        self.callback = callback

    def emit(self, event: TeamEvent) -> None:
        self.callback(event)
