#!/usr/bin/env python3
"""Finding extraction from agent prose and loose structures."""

from __future__ import annotations

import unittest

from tests.team_sim.fakes import finding_block, make_finding
from finding_parser import extract_labeled_content, normalize_finding, parse_findings, parse_findings_across
from team_models import Finding, Severity


class MarkdownFindingTests(unittest.TestCase):
    def test_parses_labeled_blocks(self) -> None:
        text = (
            "I looked at the handlers.\n\n"
            + finding_block("SQL built from request params", "critical", "security", "src/db.py", "40-44")
            + "\n"
            + finding_block("Unused import", "low", "style", "`src/util.py`", "3")
        )
        findings = parse_findings("security-auditor", text)
        self.assertEqual(len(findings), 2)
        first, second = findings
        self.assertEqual(first.id, "security-auditor-1")
        self.assertEqual(first.title, "SQL built from request params")
        self.assertIs(first.severity, Severity.CRITICAL)
        self.assertEqual(first.category, "security")
        self.assertEqual(first.file, "src/db.py")
        self.assertEqual(first.line, (40, 44))
        self.assertEqual(first.suggestion, "Fix it.")
        self.assertEqual(second.file, "src/util.py")
        self.assertEqual(second.line, 3)

    def test_missing_severity_defaults_to_medium_and_unknown_category_to_other(self) -> None:
        text = "### Finding: Odd loop\n**Category:** vibes\n**Description:** loop never ends\n"
        (finding,) = parse_findings("code-reviewer", text)
        self.assertIs(finding.severity, Severity.MEDIUM)
        self.assertEqual(finding.category, "other")
        self.assertEqual(finding.description, "loop never ends")

    def test_description_in_prose_does_not_steal_file_label(self) -> None:
        text = (
            "### Finding: Config read twice\n"
            "**Description:** the config file is parsed on every request\n"
            "**File:** app/config.py\n"
        )
        (finding,) = parse_findings("perf-analyzer", text)
        self.assertEqual(finding.file, "app/config.py")

    def test_references_and_confidence(self) -> None:
        text = "### Finding: XSS\n**Severity:** high\n**Confidence:** 85\n**Description:** see CWE-79 and cwe-79\n"
        (finding,) = parse_findings("a", text)
        self.assertEqual(finding.references, ("CWE-79",))
        self.assertAlmostEqual(finding.confidence, 0.85)

    def test_start_index_continues_numbering(self) -> None:
        findings = parse_findings("a", finding_block("One"), start_index=4)
        self.assertEqual(findings[0].id, "a-5")

    def test_empty_heading_takes_title_from_first_prose_line(self) -> None:
        text = "### Finding:\nSQL injection in login\n**Severity:** critical\n**File:** src/db.py\n"
        (finding,) = parse_findings("a", text)
        self.assertEqual(finding.title, "SQL injection in login")
        self.assertIs(finding.severity, Severity.CRITICAL)
        self.assertEqual(finding.file, "src/db.py")

    def test_empty_heading_with_only_labels_keeps_numbered_title(self) -> None:
        (finding,) = parse_findings("a", "### Finding:\n**Severity:** low\n**File:** a.py\n")
        self.assertEqual(finding.title, "Finding 1")
        self.assertIs(finding.severity, Severity.LOW)

    def test_block_without_title_severity_or_description_is_dropped(self) -> None:
        self.assertEqual(parse_findings("a", "### Finding:\n\n"), [])

    def test_ids_stay_unique_across_messages(self) -> None:
        first = "### Finding:\n\n" + finding_block("XSS")
        second = finding_block("CSRF")
        findings = parse_findings_across("a", [first, second])
        self.assertEqual([f.title for f in findings], ["XSS", "CSRF"])
        self.assertEqual([f.id for f in findings], ["a-2", "a-3"])

    def test_labeled_content_spans_lines_until_next_label(self) -> None:
        block = "**Description:** first line\nsecond line\n**Suggestion:** do it"
        self.assertEqual(extract_labeled_content(block, ["description"]), "first line\nsecond line")


class JsonFindingTests(unittest.TestCase):
    def test_fenced_json_list_is_fallback(self) -> None:
        text = (
            "Results:\n```json\n"
            '[{"title": "Race on counter", "severity": "HIGH", "file": "w.go", "line": "12-14"},'
            ' {"description": "no title here"}]\n'
            "```"
        )
        findings = parse_findings("concurrency-auditor", text)
        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].line, (12, 14))
        self.assertIs(findings[0].severity, Severity.HIGH)

    def test_findings_wrapper_object(self) -> None:
        text = '```json\n{"findings": [{"title": "A", "severity": "info"}]}\n```'
        self.assertEqual([f.title for f in parse_findings("a", text)], ["A"])

    def test_prose_without_findings_yields_nothing(self) -> None:
        self.assertEqual(parse_findings("a", "All good, nothing to report."), [])


class NormalizeFindingTests(unittest.TestCase):
    def test_valid_finding_is_returned_unchanged(self) -> None:
        finding = make_finding("a", 1, Severity.LOW, title="t")
        self.assertIs(normalize_finding(finding, "a", 1), finding)

    def test_finding_with_bad_severity_is_repaired(self) -> None:
        broken = Finding(id="a-1", agent_name="a", severity="nope", title=" t ", description="d")  # type: ignore[arg-type]
        fixed = normalize_finding(broken, "a", 1)
        assert fixed is not None
        self.assertIs(fixed.severity, Severity.MEDIUM)
        self.assertEqual(fixed.title, "t")

    def test_unusable_values_are_dropped(self) -> None:
        for raw in (None, "text", 42, {"severity": "high"}, make_finding("a", 1, title="  ")):
            with self.subTest(raw=raw):
                self.assertIsNone(normalize_finding(raw, "a", 1))

    def test_mapping_coercion(self) -> None:
        finding = normalize_finding(
            {"title": "T", "lines": [5, 9], "confidence": 0.4, "references": "CWE-1", "verified": True},
            "agent-x",
            3,
        )
        assert finding is not None
        self.assertEqual(finding.id, "agent-x-3")
        self.assertEqual(finding.line, (5, 9))
        self.assertEqual(finding.references, ("CWE-1",))
        self.assertTrue(finding.verified)
        self.assertEqual(finding.description, "T")


if __name__ == "__main__":
    unittest.main(verbosity=2)
