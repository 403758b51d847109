#!/usr/bin/env python3
"""Team lifecycle events.

`TeamEvent` is a closed union of frozen dataclasses, one per event kind. Each
class carries a `type` tag matching the wire name used in JSONL records, so
consumers can either `match`/`isinstance` on the class or switch on `type`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from logging_utils import utc_now_iso
from team_models import AgentResult, TeamResult


MERGE_PHASES = ("parsing", "clustering", "verifying", "ranking", "synthesizing")


def merge_phase_index(phase: str) -> int:
    return MERGE_PHASES.index(phase)


@dataclass(frozen=True)
class TeamStart:
    team_name: str
    agent_count: int
    agent_names: tuple[str, ...] = ()
    type: str = field(default="team_start", init=False)


@dataclass(frozen=True)
class AgentStart:
    agent_name: str
    index: int
    total: int
    type: str = field(default="agent_start", init=False)


@dataclass(frozen=True)
class AgentProgress:
    """Forwarded agent-loop activity (model turn finished, tool ran)."""

    agent_name: str
    kind: str
    detail: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="agent_progress", init=False)


@dataclass(frozen=True)
class AgentError:
    agent_name: str
    error: str
    will_retry: bool
    attempt: int = 0
    type: str = field(default="agent_error", init=False)


@dataclass(frozen=True)
class AgentRetry:
    agent_name: str
    attempt: int
    max_retries: int
    type: str = field(default="agent_retry", init=False)


@dataclass(frozen=True)
class AgentEnd:
    agent_name: str
    result: AgentResult
    type: str = field(default="agent_end", init=False)


@dataclass(frozen=True)
class MergeStart:
    strategy: str
    finding_count: int
    type: str = field(default="merge_start", init=False)


@dataclass(frozen=True)
class MergeProgress:
    phase: str
    type: str = field(default="merge_progress", init=False)


@dataclass(frozen=True)
class MergeEnd:
    merged_count: int
    verified_count: int
    type: str = field(default="merge_end", init=False)


@dataclass(frozen=True)
class TeamEnd:
    result: TeamResult
    type: str = field(default="team_end", init=False)


TeamEvent = Union[
    TeamStart,
    AgentStart,
    AgentProgress,
    AgentError,
    AgentRetry,
    AgentEnd,
    MergeStart,
    MergeProgress,
    MergeEnd,
    TeamEnd,
]

EVENT_TYPES = tuple(
    cls.__dataclass_fields__["type"].default
    for cls in (
        TeamStart,
        AgentStart,
        AgentProgress,
        AgentError,
        AgentRetry,
        AgentEnd,
        MergeStart,
        MergeProgress,
        MergeEnd,
        TeamEnd,
    )
)


def event_agent_name(event: TeamEvent) -> str | None:
    return getattr(event, "agent_name", None)


def event_to_record(event: TeamEvent, team_name: str = "", run_id: str = "") -> dict[str, Any]:
    """Flatten an event into a JSON-safe mapping for sinks and the CLI."""
    record: dict[str, Any] = {
        "ts": utc_now_iso(),
        "type": event.type,
        "team_name": team_name,
        "run_id": run_id,
    }
    if isinstance(event, TeamStart):
        record.update(team_name=event.team_name, agent_count=event.agent_count, agents=list(event.agent_names))
    elif isinstance(event, AgentStart):
        record.update(agent_name=event.agent_name, index=event.index, total=event.total)
    elif isinstance(event, AgentProgress):
        record.update(agent_name=event.agent_name, kind=event.kind, detail=dict(event.detail))
    elif isinstance(event, AgentError):
        record.update(
            agent_name=event.agent_name,
            error=event.error,
            will_retry=event.will_retry,
            attempt=event.attempt,
        )
    elif isinstance(event, AgentRetry):
        record.update(agent_name=event.agent_name, attempt=event.attempt, max_retries=event.max_retries)
    elif isinstance(event, AgentEnd):
        record.update(
            agent_name=event.agent_name,
            success=event.result.success,
            finding_count=len(event.result.findings),
            duration_ms=event.result.duration_ms,
            error=event.result.error,
            result=event.result.to_dict(),
        )
    elif isinstance(event, MergeStart):
        record.update(strategy=event.strategy, finding_count=event.finding_count)
    elif isinstance(event, MergeProgress):
        record.update(phase=event.phase)
    elif isinstance(event, MergeEnd):
        record.update(merged_count=event.merged_count, verified_count=event.verified_count)
    elif isinstance(event, TeamEnd):
        record.update(
            team_name=event.result.team_name,
            success=event.result.success,
            finding_count=len(event.result.findings),
            duration_ms=event.result.duration_ms,
            cancelled=event.result.cancelled,
            result=event.result.to_dict(),
        )
    return record
