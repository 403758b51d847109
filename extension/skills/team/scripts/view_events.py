#!/usr/bin/env python3
"""
Team Log Viewer - view the debug log and event stream of team runs

Usage:
    python view_events.py <run_id>                       # Debug log and events, merged by time
    python view_events.py <run_id> --source events       # Team events only
    python view_events.py <run_id> --component worker    # Debug log of one component
    python view_events.py <run_id> --agent code-reviewer # Records about one agent
    python view_events.py <run_id> --event agent.end     # Filter by event / type name
    python view_events.py <run_id> --level error         # Filter by log level
    python view_events.py <run_id> --tail 50             # Show last 50 records
    python view_events.py <run_id> --follow              # Follow logs (like tail -f)
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import Any


LOG_FILES = {"log": "team.jsonl", "events": "events.jsonl"}
EVENT_LEVELS = {"agent_error": "WARN"}


def find_run_dir(run_id: str, log_root: Path) -> Path | None:
    if not log_root.exists():
        return None

    run_dir = log_root / run_id
    if run_dir.exists():
        return run_dir

    matches = [d for d in log_root.iterdir() if d.is_dir() and run_id in d.name]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        print(f"Multiple runs match '{run_id}':", file=sys.stderr)
        for m in matches:
            print(f"  - {m.name}", file=sys.stderr)
    return None


def parse_jsonl_line(line: str) -> dict | None:
    try:
        entry = json.loads(line.strip())
    except json.JSONDecodeError:
        return None
    return entry if isinstance(entry, dict) else None


def entry_name(entry: dict) -> str:
    return str(entry.get("event") or entry.get("type") or "")


def entry_level(entry: dict) -> str:
    if "level" in entry:
        return str(entry["level"]).upper()
    if entry.get("type") == "agent_end" and entry.get("success") is False:
        return "ERROR"
    return EVENT_LEVELS.get(str(entry.get("type", "")), "INFO")


def matches(
    entry: dict,
    component: str | None = None,
    agent: str | None = None,
    event: str | None = None,
    level: str | None = None,
) -> bool:
    if component and entry.get("component") != component:
        return False
    if agent and agent not in (entry.get("agent"), entry.get("agent_name")):
        return False
    if event and entry_name(entry) != event:
        return False
    if level and entry_level(entry) != level.upper():
        return False
    return True


def format_entry(entry: dict, show_full: bool = False) -> str:
    ts = entry.get("ts", "")
    level = entry_level(entry)
    component = entry.get("component") or ("events" if "type" in entry else "")
    agent = entry.get("agent") or entry.get("agent_name") or ""
    team = entry.get("team") or entry.get("team_name") or ""

    colors = {
        "DEBUG": "\033[90m",
        "INFO": "\033[36m",
        "WARN": "\033[33m",
        "ERROR": "\033[31m",
        "RESET": "\033[0m",
    }
    if os.environ.get("NO_COLOR"):
        colors = {key: "" for key in colors}
    color = colors.get(level, colors["RESET"])
    reset = colors["RESET"]

    parts = [f"{color}[{ts}]{reset}", f"{color}[{level}]{reset}"]
    if component:
        parts.append(f"[{component}]")
    if team:
        parts.append(f"team={team}")
    if agent:
        parts.append(f"agent={agent}")
    parts.append(entry_name(entry))
    for key in ("phase", "attempt", "finding_count", "error"):
        if entry.get(key) not in (None, ""):
            parts.append(f"{key}={entry[key]}")

    line = " ".join(parts)
    if show_full:
        hidden = {"ts", "level", "component", "event", "type", "run_id"}
        extra: dict[str, Any] = {k: v for k, v in entry.items() if k not in hidden}
        if extra:
            line += f"\n  extra: {json.dumps(extra, indent=2, ensure_ascii=False, default=str)}"
    return line


def collect_files(run_dir: Path, source: str) -> list[Path]:
    names = LOG_FILES.values() if source == "all" else [LOG_FILES[source]]
    return [run_dir / name for name in names if (run_dir / name).exists()]


def read_entries(log_files: list[Path], **filters: Any) -> list[dict]:
    entries: list[dict] = []
    for log_file in log_files:
        try:
            with log_file.open("r", encoding="utf-8") as f:
                for line in f:
                    entry = parse_jsonl_line(line)
                    if entry and matches(entry, **filters):
                        entries.append(entry)
        except OSError as e:
            print(f"Error reading {log_file}: {e}", file=sys.stderr)
    entries.sort(key=lambda e: e.get("ts", ""))
    return entries


def view_run(
    run_dir: Path,
    source: str = "all",
    tail: int | None = None,
    follow: bool = False,
    show_full: bool = False,
    **filters: Any,
) -> None:
    log_files = collect_files(run_dir, source)
    if not log_files:
        print(f"No log files found in {run_dir}", file=sys.stderr)
        return

    entries = read_entries(log_files, **filters)
    if tail:
        entries = entries[-tail:]
    for entry in entries:
        print(format_entry(entry, show_full))

    if not follow:
        return
    print("\n--- Following logs (Ctrl+C to stop) ---\n")
    positions = {f: f.stat().st_size for f in log_files}
    try:
        while True:
            time.sleep(0.5)
            for log_file in log_files:
                if not log_file.exists():
                    continue
                size = log_file.stat().st_size
                last = positions.get(log_file, 0)
                if size < last:
                    # Rotated underneath us.
                    last = 0
                if size > last:
                    with log_file.open("r", encoding="utf-8") as f:
                        f.seek(last)
                        for line in f:
                            entry = parse_jsonl_line(line)
                            if entry and matches(entry, **filters):
                                print(format_entry(entry, show_full))
                    positions[log_file] = size
    except KeyboardInterrupt:
        print("\nStopped following logs")


def main() -> None:
    parser = argparse.ArgumentParser(description="View team run logs and events")
    parser.add_argument("run_id", help="Run ID (full or partial)")
    parser.add_argument("--log-dir", default=os.environ.get("TEAM_LOG_DIR", ".team/runs"))
    parser.add_argument("--source", choices=["all", "log", "events"], default="all")
    parser.add_argument("--component", help="Filter by logger component (cli, orchestrator, worker, lead, ...)")
    parser.add_argument("--agent", help="Filter by agent name")
    parser.add_argument("--event", help="Filter by log event or event type")
    parser.add_argument("--level", help="Filter by level (debug, info, warn, error)")
    parser.add_argument("--tail", type=int, help="Show last N records")
    parser.add_argument("--follow", "-f", action="store_true", help="Follow logs (like tail -f)")
    parser.add_argument("--full", action="store_true", help="Show all fields of each record")
    args = parser.parse_args()

    run_dir = find_run_dir(args.run_id, Path(args.log_dir))
    if not run_dir:
        print(f"Run not found: {args.run_id}", file=sys.stderr)
        sys.exit(1)

    print(f"Viewing logs from: {run_dir.name}\n")
    view_run(
        run_dir,
        source=args.source,
        tail=args.tail,
        follow=args.follow,
        show_full=args.full,
        component=args.component,
        agent=args.agent,
        event=args.event,
        level=args.level,
    )


if __name__ == "__main__":
    main()
