#!/usr/bin/env python3
"""Staged execution of lead decisions across teams."""

from __future__ import annotations

import asyncio
import unittest

from tests.team_sim.fakes import FakeWorker, RecordingLogger, blocking_step, make_finding, make_preset, succeed
from cancellation import CancelSignal
from lead_analyzer import LeadDecision
from preset_catalog import build_team_config
from team_errors import UnknownTeamError
from team_models import MergeConfig, Severity, TeamConfig, TeamResult
from team_orchestrator import TeamOrchestrator
from team_waves import aggregate_findings, plan_waves, render_summary, run_waves, wave_task


KNOWN = ("alpha", "beta", "gamma", "broken")


def _config(team: str) -> TeamConfig:
    if team not in KNOWN:
        raise UnknownTeamError(team, list(KNOWN))
    if team == "broken":
        return TeamConfig(name=team, agents=())
    return TeamConfig(name=team, agents=(make_preset(f"{team}-a"),), merge=MergeConfig("union"))


def _decision(*waves: tuple[str, ...]) -> LeadDecision:
    selected = tuple(team for wave in waves for team in wave)
    return LeadDecision(intent="review", selected_teams=selected, execution_waves=tuple(waves))


SHARED = make_finding("alpha-a", 1, Severity.HIGH, "Shared bug", file="x.py", line=3)
SHARED_AGAIN = make_finding("beta-a", 1, Severity.HIGH, "shared BUG", file="x.py", line=3)
MINOR = make_finding("gamma-a", 1, Severity.LOW, "Naming", file="y.py", line=1)


class RunWavesTests(unittest.IsolatedAsyncioTestCase):
    async def test_waves_run_in_order_and_findings_are_aggregated(self) -> None:
        worker = FakeWorker(
            script={
                "alpha-a": [succeed("alpha-a", [SHARED])],
                "beta-a": [succeed("beta-a", [SHARED_AGAIN])],
                "gamma-a": [succeed("gamma-a", [MINOR])],
            }
        )
        logger = RecordingLogger()
        seen: list[tuple[str, str]] = []
        report = await run_waves(
            _decision(("alpha", "ghost"), ("beta", "gamma", "broken")),
            _config,
            TeamOrchestrator(worker),
            "review the repo",
            on_event=lambda team, event: seen.append((team, event.type)),
            logger=logger,
        )

        self.assertEqual([r.team_name for r in report.team_results], ["alpha", "beta", "gamma"])
        self.assertEqual(report.skipped, ("ghost",))
        self.assertEqual(report.failed, ("broken",))
        self.assertFalse(report.cancelled)
        self.assertEqual([f.title for f in report.findings], ["Shared bug", "Naming"])
        self.assertIn("# Team Run Summary", report.summary)
        self.assertEqual({team for team, _ in seen}, {"alpha", "beta", "gamma"})
        self.assertIn(("alpha", "team_end"), seen)
        names = logger.names()
        self.assertIn("waves.team.skipped", names)
        self.assertIn("waves.team.failed", names)
        self.assertEqual(names.count("waves.wave.start"), 2)

    async def test_cancelled_signal_runs_nothing(self) -> None:
        worker = FakeWorker()
        signal = CancelSignal()
        signal.cancel("user abort")
        report = await run_waves(_decision(("alpha",), ("beta",)), _config, TeamOrchestrator(worker), "t", signal=signal)
        self.assertTrue(report.cancelled)
        self.assertEqual(report.team_results, ())
        self.assertEqual(worker.calls, {})

    async def test_cancel_during_a_wave_stops_later_waves(self) -> None:
        worker = FakeWorker(script={"alpha-a": [blocking_step()]})
        signal = CancelSignal()
        asyncio.get_running_loop().call_later(0.05, signal.cancel, "timeout")
        report = await asyncio.wait_for(
            run_waves(_decision(("alpha",), ("beta",)), _config, TeamOrchestrator(worker), "t", signal=signal),
            timeout=5,
        )
        self.assertTrue(report.cancelled)
        self.assertEqual([r.team_name for r in report.team_results], ["alpha"])
        self.assertNotIn("beta-a", worker.calls)

    async def test_markdown_selection_runs_dependencies_first(self) -> None:
        worker = FakeWorker()
        started: list[str] = []
        decision = LeadDecision(
            intent="review",
            selected_teams=("testing", "types"),
            execution_waves=(("testing", "types"),),
            source="markdown",
        )
        report = await run_waves(
            decision,
            lambda team: build_team_config(team, "mock/model-a"),
            TeamOrchestrator(worker),
            "t",
            on_event=lambda team, event: started.append(team) if event.type == "team_start" else None,
        )
        self.assertEqual(started, ["types", "testing"])
        self.assertEqual([r.team_name for r in report.team_results], ["types", "testing"])

    async def test_catalog_teams_with_union_merge(self) -> None:
        worker = FakeWorker()
        report = await run_waves(
            _decision(("types", "docs")),
            lambda team: build_team_config(team, "mock/model-a"),
            TeamOrchestrator(worker),
            "t",
        )
        self.assertEqual([r.team_name for r in report.team_results], ["types", "docs"])
        self.assertTrue(all(r.success for r in report.team_results))


class WaveHelperTests(unittest.TestCase):
    def test_plan_keeps_lead_waves_and_order(self) -> None:
        self.assertEqual(plan_waves(_decision(("gamma", "alpha"), ("beta",))), [["gamma", "alpha"], ["beta"]])

    def test_plan_orders_markdown_selection_by_known_dependencies(self) -> None:
        decision = LeadDecision(
            intent="review",
            selected_teams=("testing", "types", "docs"),
            execution_waves=(("testing", "types", "docs"),),
            source="markdown",
        )
        self.assertEqual(plan_waves(decision), [["types", "docs"], ["testing"]])

    def test_plan_falls_back_to_lead_waves_on_cycle(self) -> None:
        logger = RecordingLogger()
        decision = LeadDecision(
            intent="review",
            selected_teams=("alpha", "beta"),
            execution_waves=(("alpha",), ("beta",), ("alpha",)),
        )
        self.assertEqual(plan_waves(decision, logger), [["alpha"], ["beta"], ["alpha"]])
        self.assertEqual(logger.names(), ["waves.plan.cycle"])

    def test_wave_task_appends_earlier_summaries(self) -> None:
        prior = [
            TeamResult(team_name="alpha", success=True, summary="Found two injection paths."),
            TeamResult(team_name="beta", success=True, summary="  "),
        ]
        text = wave_task("check deps", prior)
        self.assertTrue(text.startswith("check deps\n\n## Results from earlier teams"))
        self.assertIn("### alpha\nFound two injection paths.", text)
        self.assertNotIn("### beta", text)
        self.assertEqual(wave_task("check deps", []), "check deps")

    def test_aggregate_keeps_distinct_locations(self) -> None:
        moved = make_finding("beta-a", 2, Severity.HIGH, "Shared bug", file="x.py", line=30)
        results = [
            TeamResult(team_name="alpha", success=True, findings=(MINOR, SHARED)),
            TeamResult(team_name="beta", success=True, findings=(SHARED_AGAIN, moved)),
        ]
        findings = aggregate_findings(results)
        self.assertEqual([f.id for f in findings], ["alpha-a-1", "beta-a-2", "gamma-a-1"])

    def test_render_summary(self) -> None:
        results = [
            TeamResult(team_name="alpha", success=True, findings=(SHARED,), strategy="verification"),
            TeamResult(team_name="beta", success=False, cancelled=True),
        ]
        text = render_summary(results, [SHARED, MINOR], limit=1)
        self.assertIn("- **alpha** (verification, ok): 1 finding(s)", text)
        self.assertIn("- **beta** (union, cancelled): 0 finding(s)", text)
        self.assertIn("Severity: critical=0, high=1, medium=0, low=1, info=0", text)
        self.assertIn("- [high] Shared bug (x.py:3)", text)
        self.assertNotIn("Naming", text)


if __name__ == "__main__":
    unittest.main(verbosity=2)
