#!/usr/bin/env python3
"""Turn agent output into `Finding` records.

Agents report findings either as markdown blocks::

    ### Finding: SQL built from request parameters
    **Severity:** high
    **Category:** security
    **File:** src/db.py
    **Lines:** 40-44
    **Description:** ...
    **Suggestion:** ...

or as a fenced JSON list of objects. Both paths end in `normalize_finding`,
which drops entries it cannot make sense of instead of failing the agent.
"""

from __future__ import annotations

import json
from dataclasses import replace
import re
from typing import Any, Iterable, Mapping

from team_models import FINDING_CATEGORIES, Finding, Severity


FINDING_SPLIT_RE = re.compile(r"###\s+Finding:", flags=re.IGNORECASE)
FENCED_JSON_RE = re.compile(r"```(?:json|JSON)?\s*\n([\s\S]*?)\n```", flags=re.MULTILINE)
SEVERITY_RE = re.compile(r"\*{0,2}severity\*{0,2}[:\s*]+(\w+)", flags=re.IGNORECASE)
CATEGORY_RE = re.compile(r"\*{0,2}category\*{0,2}[:\s*]+(\w+)", flags=re.IGNORECASE)
FILE_RE = re.compile(r"^[\s>*-]*file\*{0,2}[:\s*]+([^\n*]+)", flags=re.IGNORECASE | re.MULTILINE)
LINE_RE = re.compile(r"^[\s>*-]*lines?\*{0,2}[:\s*]+(\d+)(?:\s*[-–]\s*(\d+))?", flags=re.IGNORECASE | re.MULTILINE)
CONFIDENCE_RE = re.compile(r"\*{0,2}confidence\*{0,2}[:\s*]+([\d.]+)", flags=re.IGNORECASE)
CWE_RE = re.compile(r"\b(CWE-\d+)\b", flags=re.IGNORECASE)
CODE_RE = re.compile(r"```[\w]*\n?([^`]+)```")
NEXT_LABEL_RE = re.compile(
    r"^\*{0,2}(severity|category|file|lines?|suggestion|fix|recommendation|confidence|description)\*{0,2}[:\s]",
    flags=re.IGNORECASE,
)


def extract_labeled_content(block: str, labels: list[str]) -> str | None:
    """Collect the text after `**Label:**` up to the next label or code fence."""
    label_re = re.compile(r"^\*{0,2}(" + "|".join(labels) + r")\*{0,2}[:\s]+(.*)$", flags=re.IGNORECASE)
    capturing = False
    captured: list[str] = []
    for line in block.split("\n"):
        if not capturing:
            match = label_re.match(line)
            if match:
                capturing = True
                first = match.group(2).strip().strip("*").strip()
                if first:
                    captured.append(first)
            continue
        if NEXT_LABEL_RE.match(line) or line.startswith("```"):
            break
        captured.append(line)
    text = "\n".join(captured).strip()
    return text or None


def _split_heading(block: str) -> tuple[str, str]:
    """Title and body of a finding block; an empty heading borrows the first prose line."""
    lines = block.split("\n")
    title = lines[0].strip().strip("*").strip()
    rest = lines[1:]
    if not title:
        for pos, line in enumerate(rest):
            candidate = line.strip()
            if not candidate:
                continue
            if not NEXT_LABEL_RE.match(candidate) and not candidate.startswith("```"):
                title = candidate.strip("#*").strip()
                del rest[pos]
            break
    return title, "\n".join(rest)


def parse_finding_block(agent_name: str, block: str, index: int) -> Finding | None:
    title, body = _split_heading(block)
    severity_match = SEVERITY_RE.search(body)
    description = extract_labeled_content(body, ["description"])
    if not title and not description and not severity_match:
        return None

    category_match = CATEGORY_RE.search(body)
    file_match = FILE_RE.search(body)
    line_match = LINE_RE.search(body)
    confidence_match = CONFIDENCE_RE.search(body)
    code_match = CODE_RE.search(body)

    line: int | tuple[int, int] | None = None
    if line_match:
        start = int(line_match.group(1))
        line = (start, int(line_match.group(2))) if line_match.group(2) else start

    references: list[str] = []
    for match in CWE_RE.finditer(block):
        ref = match.group(1).upper()
        if ref not in references:
            references.append(ref)

    category = category_match.group(1).lower() if category_match else "other"
    return Finding(
        id=f"{agent_name}-{index}",
        agent_name=agent_name,
        severity=Severity.parse(severity_match.group(1) if severity_match else None, Severity.MEDIUM),
        title=title or f"Finding {index}",
        description=description or body.strip()[:200],
        file=(file_match.group(1).strip().strip("`") or None) if file_match else None,
        line=line,
        category=category if category in FINDING_CATEGORIES else "other",
        suggestion=extract_labeled_content(body, ["suggestion", "fix", "recommendation"]),
        code_snippet=code_match.group(1).strip() if code_match else None,
        confidence=_clamp_confidence(confidence_match.group(1)) if confidence_match else None,
        references=tuple(references),
    )


def parse_findings(agent_name: str, text: str, start_index: int = 0) -> list[Finding]:
    """Parse every finding an agent reported in one assistant message."""
    return _parse_numbered(agent_name, text, start_index)[0]


def parse_findings_across(agent_name: str, texts: Iterable[str]) -> list[Finding]:
    """Parse several messages of one agent with a single running id counter."""
    findings: list[Finding] = []
    counter = 0
    for text in texts:
        parsed, counter = _parse_numbered(agent_name, text, counter)
        findings.extend(parsed)
    return findings


def _parse_numbered(agent_name: str, text: str, counter: int) -> tuple[list[Finding], int]:
    findings: list[Finding] = []
    blocks = FINDING_SPLIT_RE.split(text or "")[1:]
    for block in blocks:
        counter += 1
        finding = parse_finding_block(agent_name, block, counter)
        if finding is not None:
            findings.append(finding)
    if findings:
        return findings, counter

    for raw in _json_finding_candidates(text or ""):
        counter += 1
        finding = normalize_finding(raw, agent_name, counter)
        if finding is not None:
            findings.append(finding)
    return findings, counter


def normalize_finding(raw: Any, agent_name: str, index: int) -> Finding | None:
    """Coerce a Finding or loosely-shaped mapping into a Finding, or None."""
    if isinstance(raw, Finding):
        title = (raw.title or "").strip()
        if not title:
            return None
        severity = Severity.parse(raw.severity, Severity.MEDIUM)
        if severity is raw.severity and title == raw.title:
            return raw
        return replace(raw, severity=severity, title=title)
    if not isinstance(raw, Mapping):
        return None

    title = str(raw.get("title") or raw.get("summary") or "").strip()
    description = str(raw.get("description") or raw.get("details") or "").strip()
    if not title:
        return None

    line = _coerce_line(raw.get("line", raw.get("lines")))
    category = str(raw.get("category") or "other").strip().lower()
    references = raw.get("references") or []
    if not isinstance(references, (list, tuple)):
        references = [references]
    owner = str(raw.get("agent_name") or raw.get("agentName") or agent_name)
    origin = str(raw.get("origin") or "agent")
    return Finding(
        id=str(raw.get("id") or f"{owner}-{index}"),
        agent_name=owner,
        severity=Severity.parse(raw.get("severity"), Severity.MEDIUM),
        title=title,
        description=description or title,
        file=str(raw["file"]).strip() if raw.get("file") else None,
        line=line,
        category=category if category in FINDING_CATEGORIES else "other",
        suggestion=str(raw["suggestion"]).strip() if raw.get("suggestion") else None,
        code_snippet=str(raw.get("code_snippet") or raw.get("codeSnippet") or "").strip() or None,
        confidence=_clamp_confidence(raw.get("confidence")),
        verified=bool(raw.get("verified", False)),
        references=tuple(str(ref) for ref in references if str(ref).strip()),
        origin=origin if origin in ("agent", "merge") else "agent",
    )


def _json_finding_candidates(text: str) -> list[Any]:
    candidates: list[Any] = []
    for block in FENCED_JSON_RE.findall(text):
        try:
            payload = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            payload = payload.get("findings", [])
        if isinstance(payload, list):
            candidates.extend(item for item in payload if isinstance(item, dict))
    return candidates


def _coerce_line(value: Any) -> int | tuple[int, int] | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, (list, tuple)) and len(value) == 2:
        try:
            start, end = int(value[0]), int(value[1])
        except (TypeError, ValueError):
            return None
        return (start, end)
    match = re.fullmatch(r"\s*(\d+)\s*(?:[-–]\s*(\d+))?\s*", str(value))
    if not match:
        return None
    start = int(match.group(1))
    return (start, int(match.group(2))) if match.group(2) else start


def _clamp_confidence(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number > 1.0 and number <= 100.0:
        number = number / 100.0
    return max(0.0, min(number, 1.0))
