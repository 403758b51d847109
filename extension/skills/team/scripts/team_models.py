#!/usr/bin/env python3
"""Data model for team runs: findings, agent results, team config and result.

Every record is a frozen dataclass. Producers build a new value with
`dataclasses.replace` instead of mutating one that observers may already hold.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from team_errors import TeamConfigError

if TYPE_CHECKING:
    from agent_tools import AgentTool


UNKNOWN_SEVERITY_RANK = 5

EXECUTION_STRATEGIES = ("parallel", "sequential")
MERGE_STRATEGIES = ("union", "verification", "intersection")
FINDING_CATEGORIES = ("security", "bug", "performance", "style", "maintainability", "other")
FINDING_ORIGINS = ("agent", "merge")


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANKS[self]

    def downgrade(self) -> "Severity":
        members = list(Severity)
        return members[min(self.rank + 1, len(members) - 1)]

    @classmethod
    def parse(cls, value: Any, default: "Severity | None" = None) -> "Severity | None":
        if isinstance(value, Severity):
            return value
        token = str(value or "").strip().lower()
        for member in cls:
            if member.value == token:
                return member
        return default


_SEVERITY_RANKS = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.INFO: 4,
}


def severity_rank(value: Any) -> int:
    """Fixed total order: critical=0 ... info=4, anything else 5."""
    parsed = Severity.parse(value)
    return parsed.rank if parsed is not None else UNKNOWN_SEVERITY_RANK


LineRef = Union[int, tuple[int, int]]


@dataclass(frozen=True)
class Finding:
    id: str
    agent_name: str
    severity: Severity
    title: str
    description: str
    file: str | None = None
    line: LineRef | None = None
    category: str = "other"
    suggestion: str | None = None
    code_snippet: str | None = None
    confidence: float | None = None
    verified: bool = False
    references: tuple[str, ...] = ()
    origin: str = "agent"

    @property
    def rank(self) -> int:
        return severity_rank(self.severity)

    def line_span(self) -> tuple[int, int] | None:
        if self.line is None:
            return None
        if isinstance(self.line, tuple):
            start, end = self.line
            return (min(start, end), max(start, end))
        return (self.line, self.line)

    def location(self) -> str:
        if not self.file:
            return ""
        span = self.line_span()
        if span is None:
            return self.file
        if span[0] == span[1]:
            return f"{self.file}:{span[0]}"
        return f"{self.file}:{span[0]}-{span[1]}"

    def to_dict(self) -> dict[str, Any]:
        line: Any = list(self.line) if isinstance(self.line, tuple) else self.line
        return {
            "id": self.id,
            "agent_name": self.agent_name,
            "severity": Severity.parse(self.severity, Severity.INFO).value,
            "title": self.title,
            "description": self.description,
            "file": self.file,
            "line": line,
            "category": self.category,
            "suggestion": self.suggestion,
            "code_snippet": self.code_snippet,
            "confidence": self.confidence,
            "verified": self.verified,
            "references": list(self.references),
            "origin": self.origin,
        }


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost=self.cost + other.cost,
        )

    @property
    def is_empty(self) -> bool:
        return not (self.input_tokens or self.output_tokens or self.cost)

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost": round(self.cost, 6),
        }


@dataclass(frozen=True)
class AgentPreset:
    name: str
    model: str
    system_prompt: str
    description: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    thinking_level: str | None = None

    @property
    def provider(self) -> str:
        provider, sep, _ = self.model.partition("/")
        return provider if sep else ""

    @property
    def model_id(self) -> str:
        _, sep, model_id = self.model.partition("/")
        return model_id if sep else self.model

    def sampling(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens
        if self.thinking_level and self.thinking_level != "off":
            params["thinking_level"] = self.thinking_level
        return params


@dataclass(frozen=True)
class MergeConfig:
    strategy: str = "union"
    merge_agent: AgentPreset | None = None


@dataclass(frozen=True)
class TeamConfig:
    name: str
    agents: tuple[AgentPreset, ...]
    merge: MergeConfig = field(default_factory=MergeConfig)
    strategy: str = "parallel"
    max_retries: int = 1
    continue_on_error: bool = True
    description: str = ""
    tools: tuple["AgentTool", ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "agents", tuple(self.agents))
        object.__setattr__(self, "tools", tuple(self.tools))

    def validate(self) -> None:
        if not self.name.strip():
            raise TeamConfigError("team name must not be empty")
        if not self.agents:
            raise TeamConfigError(f"team {self.name!r} has no agents")
        names = [agent.name for agent in self.agents]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise TeamConfigError(f"team {self.name!r} has duplicate agent names: {', '.join(duplicates)}")
        if self.max_retries < 0:
            raise TeamConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.strategy not in EXECUTION_STRATEGIES:
            raise TeamConfigError(f"unknown execution strategy {self.strategy!r}")
        if self.merge.strategy not in MERGE_STRATEGIES:
            raise TeamConfigError(f"unknown merge strategy {self.merge.strategy!r}")


@dataclass(frozen=True)
class AgentResult:
    agent_name: str
    success: bool
    findings: tuple[Finding, ...] = ()
    summary: str | None = None
    usage: Usage = field(default_factory=Usage)
    duration_ms: int = 0
    error: str | None = None
    attempts: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "findings", tuple(self.findings))

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "success": self.success,
            "findings": [finding.to_dict() for finding in self.findings if isinstance(finding, Finding)],
            "summary": self.summary,
            "usage": self.usage.to_dict(),
            "duration_ms": self.duration_ms,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class FindingCluster:
    primary: Finding
    related: tuple[Finding, ...] = ()
    verified: bool = False
    verification_note: str | None = None

    @property
    def agreement_count(self) -> int:
        return 1 + len(self.related)

    def members(self) -> list[Finding]:
        return [self.primary, *self.related]

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary": self.primary.id,
            "related": [finding.id for finding in self.related],
            "agreement_count": self.agreement_count,
            "verified": self.verified,
            "verification_note": self.verification_note,
        }


@dataclass(frozen=True)
class TeamResult:
    team_name: str
    success: bool
    agent_results: tuple[AgentResult, ...] = ()
    findings: tuple[Finding, ...] = ()
    clusters: tuple[FindingCluster, ...] = ()
    summary: str | None = None
    total_usage: Usage = field(default_factory=Usage)
    duration_ms: int = 0
    strategy: str = "union"
    cancelled: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "agent_results", tuple(self.agent_results))
        object.__setattr__(self, "findings", tuple(self.findings))
        object.__setattr__(self, "clusters", tuple(self.clusters))

    def severity_counts(self) -> dict[str, int]:
        counts = {member.value: 0 for member in Severity}
        for finding in self.findings:
            parsed = Severity.parse(finding.severity)
            if parsed is not None:
                counts[parsed.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "team_name": self.team_name,
            "success": self.success,
            "agent_results": [result.to_dict() for result in self.agent_results],
            "findings": [finding.to_dict() for finding in self.findings],
            "clusters": [cluster.to_dict() for cluster in self.clusters],
            "summary": self.summary,
            "total_usage": self.total_usage.to_dict(),
            "duration_ms": self.duration_ms,
            "strategy": self.strategy,
            "cancelled": self.cancelled,
        }


def aggregate_usage(results: list[AgentResult] | tuple[AgentResult, ...]) -> Usage:
    total = Usage()
    for result in results:
        total = total + result.usage
    return total
