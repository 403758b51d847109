#!/usr/bin/env python3
"""Staged execution of a lead decision: waves in order, teams of a wave in parallel."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from cancellation import CancelSignal
from event_sink import EventSink
from lead_analyzer import LeadDecision
from logging_utils import EventLogger, NullLogger
from merge_engine import sort_by_severity
from team_errors import CircularDependencyError, TeamConfigError, TeamRunError, UnknownTeamError
from team_events import TeamEvent
from team_graph import TeamDependencyGraph, create_dependency_graph_for_teams
from team_models import Finding, Severity, TeamConfig, TeamResult
from team_orchestrator import TeamOrchestrator


TeamEventCallback = Callable[[str, TeamEvent], None]


@dataclass(frozen=True)
class WaveRunReport:
    team_results: tuple[TeamResult, ...]
    findings: tuple[Finding, ...]
    summary: str
    duration_ms: int = 0
    skipped: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    cancelled: bool = False


def aggregate_findings(results: Iterable[TeamResult]) -> list[Finding]:
    """All team findings, most severe first, with cross-team repeats dropped.

    Two teams often share an agent preset, so the same issue can come back
    twice. A repeat is the same title at the same location.
    """
    seen: set[tuple[str, str, str]] = set()
    out: list[Finding] = []
    for finding in sort_by_severity(f for result in results for f in result.findings):
        key = (finding.file or "", finding.location(), finding.title.strip().lower())
        if key in seen:
            continue
        seen.add(key)
        out.append(finding)
    return out


def render_summary(results: Sequence[TeamResult], findings: Sequence[Finding], limit: int = 10) -> str:
    lines = ["# Team Run Summary", ""]
    for result in results:
        status = "ok" if result.success else "failed"
        if result.cancelled:
            status = "cancelled"
        lines.append(f"- **{result.team_name}** ({result.strategy}, {status}): {len(result.findings)} finding(s)")
    counts = {member.value: 0 for member in Severity}
    for finding in findings:
        parsed = Severity.parse(finding.severity)
        if parsed is not None:
            counts[parsed.value] += 1
    lines.append("")
    lines.append("Severity: " + ", ".join(f"{name}={count}" for name, count in counts.items()))
    if findings:
        lines.append("")
        lines.append("## Top findings")
        for finding in findings[:limit]:
            where = f" ({finding.location()})" if finding.location() else ""
            lines.append(f"- [{Severity.parse(finding.severity, Severity.INFO).value}] {finding.title}{where}")
    return "\n".join(lines)


def wave_task(task: str, prior: Sequence[TeamResult]) -> str:
    """Task text for a later wave, with earlier team summaries appended as context."""
    notes = [f"### {r.team_name}\n{r.summary.strip()}" for r in prior if r.summary and r.summary.strip()]
    if not notes:
        return task
    return task.rstrip() + "\n\n## Results from earlier teams\n\n" + "\n\n".join(notes)


def plan_waves(decision: LeadDecision, logger: EventLogger | None = None) -> list[list[str]]:
    """Execution waves for a decision, ordered through the team dependency graph.

    Markdown-derived decisions carry no ordering of their own, so the known
    team dependencies place them. Inside a wave the lead's order is kept.
    """
    selected = list(decision.selected_teams)
    if decision.source == "json" and decision.execution_waves:
        graph = TeamDependencyGraph.from_lead_output(selected, decision.execution_waves)
    else:
        graph = create_dependency_graph_for_teams(selected)
    try:
        waves = graph.get_waves()
    except CircularDependencyError as exc:
        (logger or NullLogger()).event("warn", "waves.plan.cycle", error=str(exc))
        return [list(wave) for wave in decision.execution_waves] or [selected]
    position = {team: index for index, team in enumerate(selected)}
    return [sorted(wave, key=lambda team: position.get(team, len(position))) for wave in waves]


async def run_waves(
    decision: LeadDecision,
    build_config: Callable[[str], TeamConfig],
    orchestrator: TeamOrchestrator,
    task: str,
    signal: CancelSignal | None = None,
    event_sink: EventSink | None = None,
    on_event: TeamEventCallback | None = None,
    logger: EventLogger | None = None,
) -> WaveRunReport:
    logger = logger or NullLogger()
    started = time.monotonic()
    waves = plan_waves(decision, logger)
    results: list[TeamResult] = []
    skipped: list[str] = []
    failed: list[str] = []
    cancelled = False

    for wave_index, wave in enumerate(waves):
        if signal is not None and signal.cancelled:
            cancelled = True
            logger.event("info", "waves.cancelled", wave=wave_index, reason=signal.reason)
            break

        configs: list[TeamConfig] = []
        for team in wave:
            try:
                configs.append(build_config(team))
            except (UnknownTeamError, TeamConfigError) as exc:
                skipped.append(team)
                logger.event("warn", "waves.team.skipped", wave=wave_index, team=team, error=str(exc))
        if not configs:
            continue

        logger.event("info", "waves.wave.start", wave=wave_index, teams=[c.name for c in configs])
        prompt = wave_task(task, results)
        outcomes = await asyncio.gather(
            *(_run_one(orchestrator, config, prompt, signal, event_sink, on_event) for config in configs),
            return_exceptions=True,
        )
        for config, outcome in zip(configs, outcomes):
            if isinstance(outcome, TeamRunError):
                failed.append(config.name)
                logger.event("error", "waves.team.failed", wave=wave_index, team=config.name, error=str(outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
                cancelled = cancelled or outcome.cancelled
        logger.event("info", "waves.wave.end", wave=wave_index, completed=len(results), failed=len(failed))
        if cancelled:
            break

    findings = aggregate_findings(results)
    return WaveRunReport(
        team_results=tuple(results),
        findings=tuple(findings),
        summary=render_summary(results, findings),
        duration_ms=int((time.monotonic() - started) * 1000),
        skipped=tuple(skipped),
        failed=tuple(failed),
        cancelled=cancelled,
    )


async def _run_one(
    orchestrator: TeamOrchestrator,
    config: TeamConfig,
    task: str,
    signal: CancelSignal | None,
    event_sink: EventSink | None,
    on_event: TeamEventCallback | None,
) -> TeamResult:
    forward = None
    if on_event is not None:
        def forward(event: TeamEvent) -> None:
            on_event(config.name, event)
    return await orchestrator.execute(config, task, signal=signal, event_sink=event_sink, on_event=forward)
