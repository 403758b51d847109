#!/usr/bin/env python3
"""Merge agent results into one ranked TeamResult.

Strategies:

* ``union``: every finding from every successful agent, sorted by severity.
  No deduplication and no model call.
* ``verification``: cluster near-duplicate findings across agents, then
  either ask a merge agent to verify them or, without one, keep one finding
  per cluster. Any merge-agent failure falls back to the union output.
* ``intersection``: keep only clusters that two or more agents agree on.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, Sequence

from finding_parser import normalize_finding, parse_findings
from logging_utils import EventLogger, NullLogger, preview
from team_models import (
    AgentPreset,
    AgentResult,
    Finding,
    FindingCluster,
    MergeConfig,
    Severity,
    TeamResult,
    aggregate_usage,
)


MergeAgentInvoker = Callable[[AgentPreset, str], Awaitable[str]]
PhaseCallback = Callable[[str], None]

DEFAULT_SIMILARITY_THRESHOLD = 0.6
LINE_PROXIMITY = 5
DEFAULT_CONFIDENCE = 0.5

VERIFICATION_SPLIT_RE = re.compile(r"###\s+Verification:", flags=re.IGNORECASE)
STATUS_RE = re.compile(r"\*\*Status:\*\*\s*(\w+)", flags=re.IGNORECASE)
NOTE_RE = re.compile(r"\*\*Note:\*\*\s*(.+?)(?=\n|$)", flags=re.IGNORECASE)
ID_ARRAY_RE = re.compile(r"```(?:json|JSON)?\s*\n(\[[\s\S]*?\])\s*\n```")
SUMMARY_RE = re.compile(r"^##\s+Summary\s*\n([\s\S]*?)(?=^##\s|\Z)", flags=re.MULTILINE | re.IGNORECASE)


def calculate_similarity(a: Finding, b: Finding) -> float:
    """Weighted similarity in [0, 1]: file, line proximity, category, severity, title overlap."""
    score = 0.0
    weights = 0.0

    if a.file and b.file:
        weights += 3
        if a.file == b.file:
            score += 3

    a_span = a.line_span()
    b_span = b.line_span()
    if a_span is not None and b_span is not None:
        weights += 2
        (a_start, a_end), (b_start, b_end) = a_span, b_span
        if abs(a_start - b_start) <= LINE_PROXIMITY or abs(a_end - b_end) <= LINE_PROXIMITY:
            score += 2
        elif (a_start <= b_end and a_end >= b_start) or min(
            abs(a_start - b_end), abs(a_end - b_start)
        ) <= LINE_PROXIMITY:
            score += 1

    weights += 1
    if a.category == b.category:
        score += 1

    weights += 0.5
    if Severity.parse(a.severity) == Severity.parse(b.severity):
        score += 0.5

    weights += 1.5
    a_words = set(a.title.lower().split())
    b_words = set(b.title.lower().split())
    union = a_words | b_words
    if union:
        score += 1.5 * (len(a_words & b_words) / len(union))

    return score / weights if weights else 0.0


def cluster_findings(
    findings: Sequence[Finding],
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> list[FindingCluster]:
    """Group findings from different agents that describe the same issue.

    Primaries are picked in severity order, so a cluster's primary is its most
    severe member. Clusters come back ordered by agreement, then severity.
    """
    ordered = sorted(enumerate(findings), key=lambda item: (item[1].rank, item[0]))
    assigned: set[int] = set()
    clusters: list[FindingCluster] = []
    for index, finding in ordered:
        if index in assigned:
            continue
        assigned.add(index)
        related: list[Finding] = []
        for other_index, other in enumerate(findings):
            if other_index in assigned or other.agent_name == finding.agent_name:
                continue
            if calculate_similarity(finding, other) >= similarity_threshold:
                related.append(other)
                assigned.add(other_index)
        clusters.append(FindingCluster(primary=finding, related=tuple(related)))

    return sorted(clusters, key=lambda c: (-c.agreement_count, c.primary.rank))


def sort_by_severity(findings: Iterable[Finding]) -> list[Finding]:
    """Stable severity sort; ties broken by agent name, then the order given."""
    indexed = list(enumerate(findings))
    indexed.sort(key=lambda item: (item[1].rank, item[1].agent_name, item[0]))
    return [finding for _, finding in indexed]


def rank_findings(findings: Iterable[Finding], agreement: dict[str, int] | None = None) -> list[Finding]:
    agreement = agreement or {}

    def key(finding: Finding) -> tuple[Any, ...]:
        confidence = finding.confidence if finding.confidence is not None else DEFAULT_CONFIDENCE
        return (
            finding.rank,
            not finding.verified,
            -confidence,
            -agreement.get(finding.id, 1),
            finding.agent_name,
            finding.id,
        )

    return sorted(findings, key=key)


def collect_findings(agent_results: Sequence[AgentResult]) -> list[Finding]:
    """Normalized findings of successful results, in result order."""
    collected: list[Finding] = []
    for result in agent_results:
        if not result.success:
            continue
        for index, raw in enumerate(result.findings, start=1):
            finding = normalize_finding(raw, result.agent_name, index)
            if finding is not None:
                collected.append(finding)
    return collected


def union_findings(agent_results: Sequence[AgentResult]) -> list[Finding]:
    return sort_by_severity(collect_findings(agent_results))


@dataclass(frozen=True)
class _Verdict:
    status: str
    note: str | None


def parse_verification_answer(text: str) -> tuple[dict[str, _Verdict], set[str]]:
    """Read `### Verification: <id>` blocks and the trailing JSON id array."""
    verdicts: dict[str, _Verdict] = {}
    for block in VERIFICATION_SPLIT_RE.split(text or "")[1:]:
        id_match = re.match(r"\s*(\S+)", block)
        status_match = STATUS_RE.search(block)
        if not id_match or not status_match:
            continue
        note_match = NOTE_RE.search(block)
        finding_id = id_match.group(1).strip().strip("[]`*")
        verdicts[finding_id] = _Verdict(
            status=status_match.group(1).lower(),
            note=note_match.group(1).strip() if note_match else None,
        )

    verified_ids: set[str] = set()
    for block in ID_ARRAY_RE.findall(text or ""):
        try:
            ids = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(ids, list):
            verified_ids.update(str(item) for item in ids if isinstance(item, (str, int)))
    return verdicts, verified_ids


def extract_summary_section(text: str) -> str | None:
    match = SUMMARY_RE.search(text or "")
    if not match:
        return None
    return match.group(1).strip() or None


def verified_summary(findings: Sequence[Finding], clusters: Sequence[FindingCluster]) -> str:
    verified = [f for f in findings if f.verified]
    counts = {member: 0 for member in Severity}
    for finding in verified:
        counts[Severity.parse(finding.severity, Severity.INFO)] += 1
    high_confidence = [c for c in clusters if c.agreement_count >= 2 and c.verified]

    lines = [
        "## Review Summary (Verified)",
        "",
        f"**Verification results:** {len(verified)} verified, {len(findings) - len(verified)} unverified",
        f"**High-confidence issues:** {len(high_confidence)} (multi-agent + verified)",
        "",
        "**Verified findings by severity:**",
        *[f"- {member.value.capitalize()}: {counts[member]}" for member in Severity],
    ]
    top = [f for f in verified if f.rank <= Severity.HIGH.rank][:5]
    if top:
        lines.extend(["", "**Top verified issues:**"])
        for issue in top:
            where = f" ({issue.file})" if issue.file else ""
            lines.append(f"- [{Severity.parse(issue.severity, Severity.INFO).value.upper()}] {issue.title}{where}")
    return "\n".join(lines)


def intersection_summary(all_findings: Sequence[Finding], agreed: Sequence[Finding], clusters: Sequence[FindingCluster]) -> str:
    counts = {member: 0 for member in Severity}
    for finding in agreed:
        counts[Severity.parse(finding.severity, Severity.INFO)] += 1
    lines = [
        "## Review Summary (Intersection)",
        "",
        f"**Filtered findings:** {len(agreed)} of {len(all_findings)} original findings",
        f"**Agents consulted:** {len({f.agent_name for f in all_findings})}",
        f"**Agreed clusters:** {len(clusters)}",
        "",
        "**By severity (agreed only):**",
        *[f"- {member.value.capitalize()}: {counts[member]}" for member in Severity],
        "",
        "*Only showing issues found by 2+ reviewers*",
    ]
    return "\n".join(lines)


def build_verification_prompt(findings: Sequence[Finding], clusters: Sequence[FindingCluster]) -> str:
    findings_json = json.dumps([f.to_dict() for f in findings], ensure_ascii=False, indent=2)
    clusters_json = json.dumps([c.to_dict() for c in clusters], ensure_ascii=False, indent=2)
    return f"""Verify these findings against the actual code.

## Findings to Verify
```json
{findings_json}
```

## Clusters
```json
{clusters_json}
```

For each cluster, check whether the primary finding is accurate and answer:

### Verification: <finding-id>
**Status:** verified | partial | invalid | duplicate
**Note:** brief explanation

Report issues the reviewers missed as `### Finding: <title>` blocks.
Finish with a `## Summary` section and a JSON array of verified finding ids:
```json
["finding-1", "finding-2"]
```
"""


class MergeEngine:
    def __init__(
        self,
        logger: EventLogger | None = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> None:
        self.logger = logger or NullLogger()
        self.similarity_threshold = similarity_threshold

    async def merge(
        self,
        team_name: str,
        agent_results: Sequence[AgentResult],
        policy: MergeConfig,
        merge_agent_invoker: MergeAgentInvoker | None = None,
        on_progress: PhaseCallback | None = None,
    ) -> TeamResult:
        started = time.monotonic()
        if policy.strategy == "verification":
            result = await self._verification(team_name, agent_results, policy, merge_agent_invoker, on_progress)
        elif policy.strategy == "intersection":
            result = self._intersection(team_name, agent_results, on_progress)
        else:
            result = self.union(team_name, agent_results)
        self.logger.event(
            "info",
            "merge.done",
            team=team_name,
            strategy=result.strategy,
            merged_count=len(result.findings),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    @staticmethod
    def union(team_name: str, agent_results: Sequence[AgentResult]) -> TeamResult:
        results = tuple(agent_results)
        return TeamResult(
            team_name=team_name,
            success=any(r.success for r in results),
            agent_results=results,
            findings=tuple(union_findings(results)),
            total_usage=aggregate_usage(results),
            strategy="union",
        )

    async def _verification(
        self,
        team_name: str,
        agent_results: Sequence[AgentResult],
        policy: MergeConfig,
        invoker: MergeAgentInvoker | None,
        on_progress: PhaseCallback | None,
    ) -> TeamResult:
        emit = on_progress or (lambda phase: None)
        results = tuple(agent_results)

        emit("parsing")
        findings = collect_findings(results)

        emit("clustering")
        clusters = cluster_findings(findings, self.similarity_threshold)

        emit("verifying")
        merge_agent = policy.merge_agent
        answer: str | None = None
        if merge_agent is not None and invoker is not None:
            try:
                answer = await invoker(merge_agent, build_verification_prompt(findings, clusters))
            except Exception as exc:
                self.logger.event(
                    "warn",
                    "merge.agent.fallback",
                    team=team_name,
                    merge_agent=merge_agent.name,
                    error=f"{type(exc).__name__}: {exc}",
                )
                return self.union(team_name, results)

        if answer is None:
            kept_clusters = clusters
            merged = [cluster.primary for cluster in clusters]
            summary = None
        else:
            kept_clusters, merged = self._apply_verdicts(clusters, answer)
            extra = [
                replace(finding, origin="merge")
                for finding in parse_findings(merge_agent.name if merge_agent else "merge", answer)
            ]
            merged.extend(extra)
            self.logger.event(
                "info",
                "merge.agent.applied",
                team=team_name,
                kept=len(merged),
                added=len(extra),
                answer_preview=preview(answer, 160),
            )

        emit("ranking")
        agreement = {c.primary.id: c.agreement_count for c in kept_clusters}
        ranked = rank_findings(merged, agreement)

        emit("synthesizing")
        if answer is not None:
            summary = extract_summary_section(answer) or verified_summary(ranked, kept_clusters)

        return TeamResult(
            team_name=team_name,
            success=any(r.success for r in results),
            agent_results=results,
            findings=tuple(ranked),
            clusters=tuple(kept_clusters),
            summary=summary,
            total_usage=aggregate_usage(results),
            strategy="verification",
        )

    @staticmethod
    def _apply_verdicts(
        clusters: Sequence[FindingCluster],
        answer: str,
    ) -> tuple[list[FindingCluster], list[Finding]]:
        verdicts, verified_ids = parse_verification_answer(answer)
        kept_clusters: list[FindingCluster] = []
        kept: list[Finding] = []
        for cluster in clusters:
            primary = cluster.primary
            verdict = verdicts.get(primary.id)
            status = verdict.status if verdict else ""
            if status in ("invalid", "duplicate"):
                continue
            verified = status in ("verified", "partial") or primary.id in verified_ids
            severity = Severity.parse(primary.severity, Severity.MEDIUM)
            if status == "partial":
                severity = severity.downgrade()
            primary = replace(primary, verified=verified, severity=severity)
            kept.append(primary)
            kept_clusters.append(
                replace(
                    cluster,
                    primary=primary,
                    related=tuple(replace(r, verified=r.id in verified_ids) for r in cluster.related),
                    verified=verified,
                    verification_note=verdict.note if verdict else None,
                )
            )
        return kept_clusters, kept

    def _intersection(
        self,
        team_name: str,
        agent_results: Sequence[AgentResult],
        on_progress: PhaseCallback | None,
    ) -> TeamResult:
        emit = on_progress or (lambda phase: None)
        results = tuple(agent_results)
        findings = collect_findings(results)

        emit("clustering")
        agreed = [
            replace(
                cluster,
                primary=replace(cluster.primary, verified=True),
                related=tuple(replace(r, verified=True) for r in cluster.related),
                verified=True,
            )
            for cluster in cluster_findings(findings, self.similarity_threshold)
            if cluster.agreement_count >= 2
        ]

        emit("ranking")
        agreement: dict[str, int] = {}
        members: list[Finding] = []
        for cluster in agreed:
            for finding in cluster.members():
                agreement[finding.id] = cluster.agreement_count
                members.append(finding)
        ranked = rank_findings(members, agreement)

        emit("synthesizing")
        return TeamResult(
            team_name=team_name,
            success=any(r.success for r in results),
            agent_results=results,
            findings=tuple(ranked),
            clusters=tuple(agreed),
            summary=intersection_summary(findings, ranked, agreed),
            total_usage=aggregate_usage(results),
            strategy="intersection",
        )