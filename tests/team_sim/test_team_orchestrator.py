#!/usr/bin/env python3
"""Team run lifecycle: event ordering, retries, partial failure, cancellation."""

from __future__ import annotations

import asyncio
import unittest

from tests.team_sim.fakes import (
    ExplodingSink,
    FakeWorker,
    RecordingLogger,
    RecordingSink,
    ScriptedModelClient,
    blocking_step,
    delayed_step,
    finding_block,
    make_finding,
    make_preset,
    succeed,
)
from agent_worker import AgentWorker
from cancellation import CancelSignal
from merge_engine import MergeEngine
from model_client import ModelResponse
from team_errors import AgentLoopError, TeamRunError
from team_events import (
    MERGE_PHASES,
    AgentEnd,
    AgentError,
    AgentProgress,
    AgentRetry,
    AgentStart,
    MergeEnd,
    MergeProgress,
    MergeStart,
    TeamEnd,
    TeamStart,
)
from team_models import AgentResult, MergeConfig, Severity, TeamConfig
from team_orchestrator import TeamOrchestrator, run_team


def _config(*names: str, **kwargs) -> TeamConfig:
    return TeamConfig(name="review", agents=tuple(make_preset(n) for n in names), **kwargs)


async def _collect(run) -> list:
    events = []
    async for event in run:
        events.append(event)
    return events


class EventOrderingAssertions:
    def assert_well_ordered(self, events: list) -> None:
        types = [e.type for e in events]
        self.assertEqual(types.count("team_start"), 1)
        self.assertEqual(types.count("team_end"), 1)
        self.assertIsInstance(events[0], TeamStart)
        self.assertIsInstance(events[-1], TeamEnd)
        for index, event in enumerate(events):
            if isinstance(event, AgentEnd):
                starts = [i for i, e in enumerate(events) if isinstance(e, AgentStart) and e.agent_name == event.agent_name]
                self.assertTrue(starts and starts[0] < index, f"{event.agent_name} ended before it started")
        merge_start = types.index("merge_start")
        self.assertTrue(all(i < merge_start for i, t in enumerate(types) if t == "agent_end"))
        phases = [e.phase for e in events if isinstance(e, MergeProgress)]
        self.assertEqual(phases, sorted(phases, key=MERGE_PHASES.index))


class TeamRunTests(EventOrderingAssertions, unittest.IsolatedAsyncioTestCase):
    async def test_events_are_ordered_and_result_resolves(self) -> None:
        worker = FakeWorker(
            script={
                "a": [delayed_step(succeed("a", [make_finding("a", 1, Severity.LOW)]), 0.02)],
                "b": [succeed("b", [make_finding("b", 1, Severity.HIGH)])],
            }
        )
        sink = RecordingSink()
        run = TeamOrchestrator(worker).run(_config("a", "b"), "review the code", event_sink=sink)
        events = await _collect(run)
        result = await run.result()

        self.assert_well_ordered(events)
        self.assertEqual([e.type for e in sink.events], [e.type for e in events])
        self.assertEqual([r.agent_name for r in result.agent_results], ["a", "b"])
        self.assertEqual([f.id for f in result.findings], ["b-1", "a-1"])
        self.assertIs(events[-1].result, result)
        self.assertTrue(run.done)

    async def test_result_without_consuming_events(self) -> None:
        run = run_team(_config("a"), "task", worker=FakeWorker())
        result = await asyncio.wait_for(run.result(), timeout=5)
        self.assertTrue(result.success)

    async def test_union_reports_two_findings_from_single_reporter(self) -> None:
        worker = FakeWorker(
            script={
                "agent-2": [
                    succeed(
                        "agent-2",
                        [make_finding("agent-2", 1, Severity.LOW, "Naming"), make_finding("agent-2", 2, Severity.CRITICAL, "RCE")],
                    )
                ]
            }
        )
        result = await TeamOrchestrator(worker).execute(_config("agent-1", "agent-2", "agent-3"), "task")
        self.assertEqual(len(result.findings), 2)
        self.assertIs(result.findings[0].severity, Severity.CRITICAL)

    async def test_partial_failure_keeps_successful_findings(self) -> None:
        worker = FakeWorker(
            script={
                "a": [succeed("a", [make_finding("a", 1)])],
                "b": [RuntimeError("model exploded")],
                "c": [succeed("c", [make_finding("c", 1)])],
            }
        )
        result = await TeamOrchestrator(worker).execute(_config("a", "b", "c", max_retries=0), "task")
        self.assertEqual(len(result.agent_results), 3)
        self.assertEqual([r.success for r in result.agent_results], [True, False, True])
        self.assertEqual({f.agent_name for f in result.findings}, {"a", "c"})
        self.assertTrue(result.success)
        self.assertIn("model exploded", result.agent_results[1].error or "")

    async def test_retry_bound(self) -> None:
        worker = FakeWorker(script={"a": [RuntimeError("always")]})
        events: list = []
        result = await TeamOrchestrator(worker).execute(_config("a", max_retries=2), "task", on_event=events.append)

        self.assertEqual(worker.calls["a"], 3)
        errors = [e for e in events if isinstance(e, AgentError)]
        self.assertEqual([e.will_retry for e in errors], [True, True, False])
        self.assertEqual([e.attempt for e in events if isinstance(e, AgentRetry)], [1, 2])
        self.assertEqual(result.agent_results[0].attempts, 3)

    async def test_single_agent_failing_every_attempt(self) -> None:
        worker = FakeWorker(script={"solo": [RuntimeError("no")]})
        result = await TeamOrchestrator(worker).execute(_config("solo", max_retries=1), "task")
        self.assertFalse(result.agent_results[0].success)
        self.assertEqual(result.findings, ())
        self.assertFalse(result.success)
        self.assertEqual(worker.calls["solo"], 2)

    async def test_soft_failure_is_not_retried(self) -> None:
        soft = AgentResult(agent_name="a", success=False, error="turn budget exhausted")
        worker = FakeWorker(script={"a": [soft]})
        result = await TeamOrchestrator(worker).execute(_config("a", max_retries=3), "task")
        self.assertEqual(worker.calls["a"], 1)
        self.assertEqual(result.agent_results[0].error, "turn budget exhausted")

    async def test_recovers_on_retry(self) -> None:
        worker = FakeWorker(script={"a": [RuntimeError("flaky"), succeed("a", [make_finding("a", 1)])]})
        result = await TeamOrchestrator(worker).execute(_config("a", max_retries=1), "task")
        self.assertTrue(result.agent_results[0].success)
        self.assertEqual(result.agent_results[0].attempts, 2)


class CancellationTests(EventOrderingAssertions, unittest.IsolatedAsyncioTestCase):
    async def test_cancel_mid_run_merges_completed_agents(self) -> None:
        worker = FakeWorker(
            script={
                "a": [succeed("a", [make_finding("a", 1, Severity.HIGH)])],
                "b": [delayed_step(succeed("b", [make_finding("b", 1)]), 0.01)],
                "c": [blocking_step()],
                "d": [blocking_step()],
            }
        )
        signal = CancelSignal()
        events: list = []

        def on_event(event) -> None:
            events.append(event)
            if isinstance(event, AgentEnd) and sum(isinstance(e, AgentEnd) for e in events) == 2:
                signal.cancel("user pressed escape")

        result = await asyncio.wait_for(
            TeamOrchestrator(worker).execute(_config("a", "b", "c", "d"), "task", signal=signal, on_event=on_event),
            timeout=5,
        )
        self.assert_well_ordered(events)
        self.assertTrue(result.cancelled)
        self.assertEqual([r.agent_name for r in result.agent_results], ["a", "b"])
        self.assertEqual(len(result.findings), 2)
        self.assertTrue(any(isinstance(e, MergeStart) for e in events))

    async def test_signal_cancelled_before_start(self) -> None:
        signal = CancelSignal()
        signal.cancel("too late")
        worker = FakeWorker(script={"a": [blocking_step()], "b": [blocking_step()]})
        result = await asyncio.wait_for(
            TeamOrchestrator(worker).execute(_config("a", "b"), "task", signal=signal), timeout=5
        )
        self.assertTrue(result.cancelled)
        self.assertFalse(result.success)

    async def test_stop_on_first_failure_in_parallel(self) -> None:
        worker = FakeWorker(script={"a": [RuntimeError("bad")], "b": [blocking_step()]})
        config = _config("a", "b", max_retries=0, continue_on_error=False)
        result = await asyncio.wait_for(TeamOrchestrator(worker).execute(config, "task"), timeout=5)
        self.assertEqual([r.agent_name for r in result.agent_results], ["a"])
        self.assertFalse(result.cancelled)

    async def test_sequential_stops_after_failure(self) -> None:
        worker = FakeWorker(script={"a": [RuntimeError("bad")]})
        config = _config("a", "b", max_retries=0, continue_on_error=False, strategy="sequential")
        result = await TeamOrchestrator(worker).execute(config, "task")
        self.assertEqual([r.agent_name for r in result.agent_results], ["a"])
        self.assertNotIn("b", worker.calls)

    async def test_sequential_runs_in_order(self) -> None:
        worker = FakeWorker()
        events: list = []
        await TeamOrchestrator(worker).execute(_config("a", "b", "c", strategy="sequential"), "task", on_event=events.append)
        starts = [e.agent_name for e in events if isinstance(e, AgentStart)]
        self.assertEqual(starts, ["a", "b", "c"])


class FaultTests(unittest.IsolatedAsyncioTestCase):
    async def test_invalid_config_fails_run(self) -> None:
        run = TeamOrchestrator(FakeWorker()).run(TeamConfig(name="empty", agents=()), "task")
        with self.assertRaises(TeamRunError):
            await _collect(run)
        with self.assertRaises(TeamRunError):
            await run.result()

    async def test_merge_engine_fault_is_a_run_error(self) -> None:
        class BrokenMerge(MergeEngine):
            async def merge(self, *args, **kwargs):
                raise ValueError("corrupt state")

        logger = RecordingLogger()
        run = TeamOrchestrator(FakeWorker(), merge_engine=BrokenMerge(), logger=logger).run(_config("a"), "task")
        seen: list = []
        with self.assertRaises(TeamRunError) as ctx:
            async for event in run:
                seen.append(event)
        self.assertIn("corrupt state", str(ctx.exception))
        self.assertNotIn("team_end", [e.type for e in seen])
        self.assertIn("merge.fault", logger.names())

    async def test_fault_before_merging_is_logged_as_run_fault(self) -> None:
        class FailingLogger(RecordingLogger):
            def event(self, level, event, **kwargs):
                super().event(level, event, **kwargs)
                if event == "agent.end":
                    raise ValueError("log pipe closed")

        logger = FailingLogger()
        run = TeamOrchestrator(FakeWorker(), logger=logger).run(_config("a"), "task")
        with self.assertRaises(TeamRunError):
            await _collect(run)
        self.assertIn("team.run.fault", logger.names())
        self.assertNotIn("merge.fault", logger.names())

    async def test_sink_errors_do_not_break_the_run(self) -> None:
        logger = RecordingLogger()
        result = await TeamOrchestrator(FakeWorker(), logger=logger).execute(
            _config("a"), "task", event_sink=ExplodingSink()
        )
        self.assertTrue(result.success)
        self.assertIn("sink.emit.error", logger.names())

    async def test_merge_agent_runs_through_worker(self) -> None:
        same = dict(severity=Severity.HIGH, title="Path traversal", file="f.py", line=4, category="security")
        worker = FakeWorker(
            script={
                "a": [succeed("a", [make_finding("a", 1, **same)])],
                "b": [succeed("b", [make_finding("b", 1, **same)])],
            },
            merge_answers=["### Verification: a-1\n**Status:** verified\n\n## Summary\nConfirmed.\n"],
        )
        config = _config("a", "b", merge=MergeConfig("verification", merge_agent=make_preset("merge-synthesizer")))
        events: list = []
        result = await TeamOrchestrator(worker).execute(config, "task", on_event=events.append)

        self.assertEqual(len(worker.merge_prompts), 1)
        self.assertEqual(result.summary, "Confirmed.")
        self.assertTrue(result.findings[0].verified)
        self.assertEqual([e.phase for e in events if isinstance(e, MergeProgress)], list(MERGE_PHASES))
        (end,) = [e for e in events if isinstance(e, MergeEnd)]
        self.assertEqual((end.merged_count, end.verified_count), (1, 1))

    async def test_early_stop_still_runs_merge_agent(self) -> None:
        async def late_failure(signal):
            await asyncio.sleep(0.05)
            raise RuntimeError("provider reset")

        async def hang(signal):
            await signal.race(asyncio.sleep(30))

        client = ScriptedModelClient(
            {
                "mock/a": [ModelResponse(text=finding_block("XSS in search", "high"))],
                "mock/b": [late_failure],
                "mock/c": [hang],
                "mock/merge": [ModelResponse(text="### Verification: a-1\n**Status:** verified\n\n## Summary\nOne real issue.\n")],
            }
        )
        config = TeamConfig(
            name="review",
            agents=tuple(make_preset(n, model=f"mock/{n}") for n in ("a", "b", "c")),
            max_retries=0,
            continue_on_error=False,
            merge=MergeConfig("verification", merge_agent=make_preset("merge-synthesizer", model="mock/merge")),
        )
        result = await TeamOrchestrator(AgentWorker(client)).execute(config, "task")

        self.assertEqual(result.strategy, "verification")
        self.assertEqual(sum(1 for call in client.calls if call.model == "mock/merge"), 1)
        self.assertEqual(result.summary, "One real issue.")
        self.assertEqual([r.agent_name for r in result.agent_results], ["a", "b"])
        self.assertTrue(result.findings[0].verified)
        self.assertFalse(result.cancelled)

    async def test_merge_agent_failure_still_produces_result(self) -> None:
        worker = FakeWorker(
            script={"a": [succeed("a", [make_finding("a", 1)])]},
            merge_answers=[AgentLoopError("merge agent gave up")],
        )
        config = _config("a", merge=MergeConfig("verification", merge_agent=make_preset("merge-synthesizer")))
        result = await TeamOrchestrator(worker).execute(config, "task")
        self.assertEqual(result.strategy, "union")
        self.assertEqual(len(result.findings), 1)

    async def test_progress_events_are_forwarded(self) -> None:
        class ProgressWorker(FakeWorker):
            async def run(self, preset, task, tools=(), api_key_provider=None, signal=None, on_progress=None):
                on_progress(AgentProgress(agent_name=preset.name, kind="turn", detail={"turn": 1}))
                return succeed(preset.name)

        events: list = []
        await TeamOrchestrator(ProgressWorker()).execute(_config("a"), "task", on_event=events.append)
        kinds = [e.type for e in events]
        self.assertLess(kinds.index("agent_start"), kinds.index("agent_progress"))
        self.assertLess(kinds.index("agent_progress"), kinds.index("agent_end"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
