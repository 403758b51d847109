#!/usr/bin/env python3
"""Lead Analyzer: let one agent pick which teams to run, and in which waves.

The agent is asked for a fenced JSON decision. Models do not always comply, so
parsing falls back to scraping known team names out of the prose. Only a
completely unusable answer is an error.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from agent_tools import AgentTool
from agent_worker import AgentWorker
from cancellation import CancelSignal
from json_text import parse_json_text
from logging_utils import EventLogger, NullLogger, preview
from model_client import ApiKeyProvider
from preset_catalog import LEAD_TEAM_NAMES
from team_errors import AgentCancelled, AgentLoopError, TeamSelectionError
from team_models import AgentPreset


@dataclass(frozen=True)
class LeadDecision:
    intent: str
    selected_teams: tuple[str, ...]
    execution_waves: tuple[tuple[str, ...], ...]
    reasoning: str = ""
    source: str = "json"

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent,
            "selectedTeams": list(self.selected_teams),
            "executionWaves": [list(wave) for wave in self.execution_waves],
            "reasoning": self.reasoning,
            "source": self.source,
        }


BACKTICK_RE = re.compile(r"`([a-z][a-z0-9-]*)`")
BOLD_RE = re.compile(r"\*\*([a-z][a-z0-9-]*)\*\*")
SELECTED_PHRASE_RE = re.compile(r"(?:teams?\s+selected|selected\s+teams?)[:\s]+([^.\n]+)", flags=re.IGNORECASE)


def extract_teams_from_markdown(content: str, known_teams: Iterable[str] = LEAD_TEAM_NAMES) -> list[str]:
    """Known team names found in prose, deduplicated in first-seen order.

    Sources are tried in order: `code spans`, **bold spans**, "selected teams:"
    phrases, then bare-word occurrences.
    """
    known = list(known_teams)
    known_set = set(known)
    found: dict[str, None] = {}

    for pattern in (BACKTICK_RE, BOLD_RE):
        for match in pattern.finditer(content):
            if match.group(1) in known_set:
                found.setdefault(match.group(1), None)

    for match in SELECTED_PHRASE_RE.finditer(content):
        segment = match.group(1)
        hits = sorted((segment.find(team), team) for team in known if team in segment)
        for _, team in hits:
            found.setdefault(team, None)

    bare_hits: list[tuple[int, str]] = []
    for team in known:
        bare = re.search(rf"(?:^|[^a-z0-9-]){re.escape(team)}(?:$|[^a-z0-9-])", content, flags=re.IGNORECASE)
        if bare:
            bare_hits.append((bare.start(), team))
    for _, team in sorted(bare_hits):
        found.setdefault(team, None)

    return list(found)


def normalize_waves(
    raw_waves: Any,
    selected_teams: Sequence[str],
) -> tuple[tuple[str, ...], ...]:
    """Keep selected teams only, each once; unassigned teams form a final wave."""
    selected = set(selected_teams)
    placed: set[str] = set()
    waves: list[tuple[str, ...]] = []
    if isinstance(raw_waves, list):
        for raw_wave in raw_waves:
            if not isinstance(raw_wave, list):
                continue
            wave: list[str] = []
            for team in raw_wave:
                if isinstance(team, str) and team in selected and team not in placed:
                    wave.append(team)
                    placed.add(team)
            if wave:
                waves.append(tuple(wave))
    leftover = tuple(team for team in selected_teams if team not in placed)
    if leftover:
        waves.append(leftover)
    return tuple(waves)


def parse_lead_output(text: str, known_teams: Iterable[str] = LEAD_TEAM_NAMES) -> LeadDecision | None:
    known = list(known_teams)
    known_set = set(known)
    try:
        parsed = parse_json_text(text)
    except ValueError:
        parsed = None

    if isinstance(parsed, dict) and isinstance(parsed.get("selectedTeams"), list):
        selected: list[str] = []
        for team in parsed["selectedTeams"]:
            if isinstance(team, str) and team in known_set and team not in selected:
                selected.append(team)
        if selected:
            return LeadDecision(
                intent=str(parsed.get("intent") or "general review"),
                selected_teams=tuple(selected),
                execution_waves=normalize_waves(parsed.get("executionWaves"), selected),
                reasoning=str(parsed.get("reasoning") or ""),
                source="json",
            )

    extracted = extract_teams_from_markdown(text, known)
    if not extracted:
        return None
    return LeadDecision(
        intent="extracted from markdown",
        selected_teams=tuple(extracted),
        execution_waves=(tuple(extracted),),
        reasoning="Teams extracted from markdown output (JSON parsing failed)",
        source="markdown",
    )


def build_lead_prompt(
    intent: str,
    scope: str | None = None,
    depth: str | None = None,
    focus: Sequence[str] | None = None,
    project_context: str = "",
    known_teams: Sequence[str] = LEAD_TEAM_NAMES,
) -> str:
    lines = [f"## Request\n{intent.strip()}"]
    if scope:
        lines.append(f"**Scope:** {scope}")
    if depth:
        lines.append(f"**Depth:** {depth}")
    if focus:
        lines.append(f"**Focus:** {', '.join(focus)}")
    if project_context.strip():
        lines.append(f"## Project Context\n{project_context.strip()}")
    lines.append("## Available Teams\n" + "\n".join(f"- {team}" for team in known_teams))
    lines.append(
        "Analyze the project with the available tools, then answer with a single JSON block:\n"
        "```json\n"
        '{"intent": "...", "selectedTeams": ["team"], "executionWaves": [["team"]], "reasoning": "..."}\n'
        "```"
    )
    return "\n\n".join(lines)


class LeadAnalyzer:
    def __init__(
        self,
        worker: AgentWorker,
        preset: AgentPreset,
        known_teams: Sequence[str] = LEAD_TEAM_NAMES,
        api_key_provider: ApiKeyProvider | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self.worker = worker
        self.preset = preset
        self.known_teams = tuple(known_teams)
        self.api_key_provider = api_key_provider
        self.logger = logger or NullLogger()

    async def select_teams(
        self,
        intent: str,
        scope: str | None = None,
        depth: str | None = None,
        focus: Sequence[str] | None = None,
        project_context: str = "",
        tools: Sequence[AgentTool] = (),
        signal: CancelSignal | None = None,
    ) -> LeadDecision:
        prompt = build_lead_prompt(intent, scope, depth, focus, project_context, self.known_teams)
        self.logger.event("info", "lead.select.begin", intent=preview(intent, 160), tools=[t.name for t in tools])
        try:
            text = await self.worker.complete(
                self.preset,
                prompt,
                tools=tools,
                api_key_provider=self.api_key_provider,
                signal=signal,
            )
        except AgentCancelled:
            raise
        except AgentLoopError as exc:
            self.logger.event("error", "lead.select.worker_failed", error=str(exc))
            raise TeamSelectionError(f"Lead analyzer failed: {exc}") from exc
        except Exception as exc:
            self.logger.event("error", "lead.select.worker_error", error=f"{type(exc).__name__}: {exc}")
            raise TeamSelectionError(f"Lead analyzer failed: {type(exc).__name__}: {exc}") from exc

        if not text.strip():
            self.logger.event("error", "lead.select.empty")
            raise TeamSelectionError("Lead analyzer returned no text content")

        decision = parse_lead_output(text, self.known_teams)
        if decision is None:
            self.logger.event("error", "lead.select.unparseable", output_preview=preview(text, 300))
            raise TeamSelectionError(
                "Failed to parse lead analyzer output. Response did not contain a valid team selection.\n\n"
                f"Response preview: {text[:300]}",
                raw_output=text,
            )

        self.logger.event(
            "info",
            "lead.select.done",
            source=decision.source,
            selected=list(decision.selected_teams),
            waves=[list(w) for w in decision.execution_waves],
        )
        return decision
