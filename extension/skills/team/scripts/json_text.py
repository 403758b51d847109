#!/usr/bin/env python3
"""Tolerant JSON extraction from model answers and hand-edited config text."""

from __future__ import annotations

import json
import re
from typing import Any


FENCED_BLOCK_RE = re.compile(r"```(?:json|JSON)?\s*\n([\s\S]*?)\n```", flags=re.MULTILINE)


def load_json_candidates(payload: str) -> Any:
    text = payload.strip()
    if not text:
        raise ValueError("empty payload")
    candidates = [text]
    no_trailing_commas = re.sub(r",(\s*[}\]])", r"\1", text)
    if no_trailing_commas != text:
        candidates.append(no_trailing_commas)
    errors: list[str] = []
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            errors.append(f"{exc.msg} at line {exc.lineno} col {exc.colno}")
    raise ValueError("; ".join(errors[-2:]))


def parse_json_text(raw: str) -> Any:
    """Parse the newest fenced JSON block, else the whole text, else the outermost braces."""
    if not raw.strip():
        raise ValueError("Cannot parse JSON text: empty input")
    errors: list[str] = []

    blocks = FENCED_BLOCK_RE.findall(raw)
    for reverse_idx, block in enumerate(reversed(blocks)):
        idx = len(blocks) - 1 - reverse_idx
        try:
            return load_json_candidates(block)
        except ValueError as exc:
            errors.append(f"fenced[{idx}] {exc}")

    try:
        return load_json_candidates(raw)
    except ValueError as exc:
        errors.append(f"full_raw {exc}")

    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            return load_json_candidates(raw[start : end + 1])
        except ValueError as exc:
            errors.append(f"brace_extract {exc}")

    raise ValueError("Cannot parse JSON text: " + " | ".join(errors[-3:]))
