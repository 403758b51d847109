#!/usr/bin/env python3
"""Command line front end for agent teams.

    python team_cli.py teams
    python team_cli.py run code-review --task "Review src/auth" --project-dir .
    python team_cli.py lead "audit the payment flow" --focus security --execute
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

from agent_tools import describe_project, project_analyzer_tools
from agent_worker import AgentWorker
from cancellation import CancelSignal
from event_sink import JsonlEventSink
from lead_analyzer import LeadAnalyzer
from logging_utils import JsonlLogger, LoggerConfig, read_logging_config
from model_client import OpencodeModelClient
from preset_catalog import LEAD_AGENT_NAME, PresetCatalog, build_team_config, resolve_preset_by_name
from settings import TeamSettings
from team_errors import TeamError, TeamRunError, TeamSelectionError, UnknownTeamError
from team_events import (
    AgentEnd,
    AgentError,
    AgentProgress,
    AgentRetry,
    AgentStart,
    MergeEnd,
    MergeProgress,
    MergeStart,
    TeamEnd,
    TeamEvent,
    TeamStart,
    event_to_record,
)
from team_models import Finding, Severity, TeamResult
from team_orchestrator import TeamOrchestrator
from team_waves import run_waves


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def format_event(event: TeamEvent) -> str | None:
    """One human-readable line per event; progress chatter is suppressed."""
    if isinstance(event, TeamStart):
        return f"team {event.team_name}: starting {event.agent_count} agent(s): {', '.join(event.agent_names)}"
    if isinstance(event, AgentStart):
        return f"  [{event.index + 1}/{event.total}] {event.agent_name} started"
    if isinstance(event, AgentProgress):
        return None
    if isinstance(event, AgentError):
        suffix = " (retrying)" if event.will_retry else ""
        return f"  {event.agent_name} error on attempt {event.attempt}: {event.error}{suffix}"
    if isinstance(event, AgentRetry):
        return f"  {event.agent_name} retry {event.attempt}/{event.max_retries}"
    if isinstance(event, AgentEnd):
        result = event.result
        if result.success:
            return f"  {event.agent_name} done: {len(result.findings)} finding(s) in {result.duration_ms} ms"
        return f"  {event.agent_name} failed: {result.error}"
    if isinstance(event, MergeStart):
        return f"merge ({event.strategy}) over {event.finding_count} finding(s)"
    if isinstance(event, MergeProgress):
        return f"  merge: {event.phase}"
    if isinstance(event, MergeEnd):
        return f"merge done: {event.merged_count} finding(s), {event.verified_count} verified"
    if isinstance(event, TeamEnd):
        status = "cancelled" if event.result.cancelled else ("ok" if event.result.success else "failed")
        return f"team {event.result.team_name} {status} in {event.result.duration_ms} ms"
    return None


def format_finding(finding: Finding) -> str:
    severity = Severity.parse(finding.severity, Severity.INFO).value.upper()
    where = f" [{finding.location()}]" if finding.location() else ""
    mark = " (verified)" if finding.verified else ""
    return f"{severity:<8} {finding.title}{where}{mark}"


def print_result(result: TeamResult) -> None:
    print()
    print(f"== {result.team_name}: {len(result.findings)} finding(s) ==")
    for finding in result.findings:
        print(format_finding(finding))
    if result.summary:
        print()
        print(result.summary)
    usage = result.total_usage
    print()
    print(f"tokens in={usage.input_tokens} out={usage.output_tokens} cost=${usage.cost:.4f}")


def _event_printer(as_jsonl: bool, run_id: str, team_name: str = "") -> Callable[[TeamEvent], None]:
    def emit(event: TeamEvent) -> None:
        if as_jsonl:
            record = event_to_record(event, team_name=team_name, run_id=run_id)
            print(json.dumps(record, ensure_ascii=False, default=str), flush=True)
            return
        line = format_event(event)
        if line is not None:
            print(line, flush=True)

    return emit


def load_catalog(settings: TeamSettings, override: str = "") -> PresetCatalog:
    path = Path(override) if override else settings.catalog_json
    if path is None:
        return PresetCatalog()
    return PresetCatalog.from_file(path)


def _settings_from_args(args: argparse.Namespace) -> TeamSettings:
    settings = TeamSettings.from_env()
    overrides: dict[str, Any] = {}
    if getattr(args, "model", ""):
        overrides["model"] = args.model
    if getattr(args, "opencode_url", ""):
        overrides["opencode_url"] = args.opencode_url.rstrip("/")
    if getattr(args, "log_dir", ""):
        overrides["log_dir"] = Path(args.log_dir)
    if getattr(args, "max_retries", None) is not None:
        overrides["max_retries"] = args.max_retries
    if not overrides:
        return settings
    return replace(settings, **overrides)


def _install_interrupt(cancel: CancelSignal) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.cancel, f"received {sig.name}")
        except (NotImplementedError, RuntimeError):
            pass


class _Session:
    """Shared wiring for one CLI invocation: logger, model client, worker."""

    def __init__(self, settings: TeamSettings, run_id: str) -> None:
        self.settings = settings
        self.run_id = run_id
        run_dir = settings.run_dir(run_id)
        config: LoggerConfig = read_logging_config(settings.log_level)
        self.logger = JsonlLogger(run_dir / "team.jsonl", component="cli", run_id=run_id, config=config)
        self.client = OpencodeModelClient(
            settings.opencode_url,
            username=settings.opencode_username,
            password=settings.opencode_password,
            timeout=settings.request_timeout,
            logger=self.logger.child("model-client"),
        )
        self.worker = AgentWorker(self.client, logger=self.logger.child("worker"), max_turns=settings.max_turns)
        self.orchestrator = TeamOrchestrator(self.worker, logger=self.logger.child("orchestrator"))
        self.sink = JsonlEventSink(run_dir / "events.jsonl", run_id=run_id, logger=self.logger.child("sink"))

    async def aclose(self) -> None:
        await self.client.aclose()


def teams_command(args: argparse.Namespace) -> int:
    catalog = load_catalog(TeamSettings.from_env(), args.catalog)
    if args.json:
        payload = [
            {"name": t.name, "description": t.description, "agents": list(t.agents), "strategy": t.strategy}
            for t in catalog.teams.values()
        ]
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return 0
    width = max((len(name) for name in catalog.teams), default=0)
    for team in catalog.teams.values():
        print(f"{team.name:<{width}}  [{team.strategy}] {team.description}")
        print(f"{'':<{width}}  agents: {', '.join(team.agents)}")
    return 0


def _read_task(args: argparse.Namespace) -> str:
    if args.task_file:
        return Path(args.task_file).read_text(encoding="utf-8")
    return args.task or ""


async def run_command(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    catalog = load_catalog(settings, args.catalog)
    task = _read_task(args)
    if not task.strip():
        print("error: --task or --task-file is required", file=sys.stderr)
        return 2
    try:
        config = build_team_config(
            args.team,
            settings.model,
            catalog=catalog,
            max_retries=settings.max_retries,
            continue_on_error=not args.stop_on_error,
            strategy=args.strategy,
        )
    except UnknownTeamError as exc:
        print(f"error: {exc.args[0]}", file=sys.stderr)
        return 2

    run_id = _new_run_id()
    session = _Session(settings, run_id)
    cancel = CancelSignal()
    _install_interrupt(cancel)
    if args.timeout:
        cancel.cancel_after(args.timeout, reason="timeout")
    session.logger.event("info", "cli.run.start", team=config.name, model=settings.model)
    try:
        result = await session.orchestrator.execute(
            config,
            task,
            signal=cancel,
            event_sink=session.sink,
            on_event=_event_printer(args.jsonl, run_id, config.name),
        )
    except TeamRunError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        await session.aclose()

    if args.jsonl:
        print(json.dumps({"type": "result", "run_id": run_id, "result": result.to_dict()}, default=str))
    else:
        print_result(result)
        print(f"logs: {settings.run_dir(run_id)}")
    if result.cancelled:
        return 130
    return 0 if result.success else 1


async def lead_command(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    catalog = load_catalog(settings, args.catalog)
    project_dir = Path(args.project_dir).resolve()
    run_id = _new_run_id()
    session = _Session(settings, run_id)
    cancel = CancelSignal()
    _install_interrupt(cancel)
    if args.timeout:
        cancel.cancel_after(args.timeout, reason="timeout")

    analyzer = LeadAnalyzer(
        session.worker,
        resolve_preset_by_name(LEAD_AGENT_NAME, settings.model, catalog),
        logger=session.logger.child("lead"),
    )
    try:
        decision = await analyzer.select_teams(
            args.intent,
            scope=args.scope,
            depth=args.depth,
            focus=args.focus,
            project_context=describe_project(project_dir),
            tools=project_analyzer_tools(project_dir),
            signal=cancel,
        )
        print(json.dumps(decision.to_dict(), ensure_ascii=False, indent=2))
        if not args.execute:
            return 0

        tools = project_analyzer_tools(project_dir)

        def build(team: str):
            return build_team_config(team, settings.model, catalog=catalog, max_retries=settings.max_retries, tools=tools)

        printer = _event_printer(args.jsonl, run_id)
        report = await run_waves(
            decision,
            build,
            session.orchestrator,
            args.intent,
            signal=cancel,
            event_sink=session.sink,
            on_event=lambda team, event: printer(event),
            logger=session.logger.child("waves"),
        )
    except TeamSelectionError as exc:
        print(f"error: lead analyzer could not select teams: {exc}", file=sys.stderr)
        return 1
    except TeamError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        await session.aclose()

    print()
    print(report.summary)
    if report.skipped:
        print(f"\nskipped unknown teams: {', '.join(report.skipped)}")
    print(f"logs: {settings.run_dir(run_id)}")
    return 130 if report.cancelled else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent team runner")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--model", default="", help="provider/model reference (default: TEAM_MODEL)")
        p.add_argument("--opencode-url", default="", help="opencode serve base URL (default: TEAM_OPENCODE_URL)")
        p.add_argument("--log-dir", default="")
        p.add_argument("--catalog", default="", help="JSON file with extra presets/teams")
        p.add_argument("--max-retries", type=int, default=None)
        p.add_argument("--timeout", type=float, default=0.0, help="cancel the run after N seconds")
        p.add_argument("--jsonl", action="store_true", help="stream events as JSON lines")

    teams = sub.add_parser("teams", help="List available teams")
    teams.add_argument("--catalog", default="")
    teams.add_argument("--json", action="store_true")

    run = sub.add_parser("run", help="Run one team against a task")
    run.add_argument("team")
    run.add_argument("--task", default="")
    run.add_argument("--task-file", default="")
    run.add_argument("--strategy", choices=["parallel", "sequential"], default="parallel")
    run.add_argument("--stop-on-error", action="store_true")
    add_common(run)

    lead = sub.add_parser("lead", help="Let the lead analyzer pick teams")
    lead.add_argument("intent")
    lead.add_argument("--project-dir", default=".")
    lead.add_argument("--scope", default=None)
    lead.add_argument("--depth", choices=["quick", "standard", "deep"], default=None)
    lead.add_argument("--focus", action="append", default=None)
    lead.add_argument("--execute", action="store_true", help="run the selected teams wave by wave")
    add_common(lead)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "teams":
        return teams_command(args)
    if args.command == "run":
        return asyncio.run(run_command(args))
    if args.command == "lead":
        return asyncio.run(lead_command(args))
    raise RuntimeError(f"Unknown command: {args.command}")  # pragma: no cover


if __name__ == "__main__":
    sys.exit(main())
