#!/usr/bin/env python3
"""Agent loop: turns, tool execution, usage, soft and hard failures."""

from __future__ import annotations

import asyncio
import time
import unittest

from tests.team_sim.fakes import RecordingLogger, ScriptedModelClient, finding_block, make_preset
from agent_tools import AgentTool
from agent_worker import AgentWorker
from cancellation import CancelSignal
from model_client import ModelResponse, ToolCall
from team_errors import AgentCancelled, AgentLoopError, ModelClientError
from team_events import AgentProgress
from team_models import AgentPreset, Usage


def _tool_call(name: str, call_id: str = "call-1", **arguments) -> ModelResponse:
    return ModelResponse(text="", tool_calls=(ToolCall(id=call_id, name=name, arguments=arguments),), stop_reason="tool_use")


class AgentWorkerTests(unittest.IsolatedAsyncioTestCase):
    async def test_single_turn_answer_with_findings(self) -> None:
        client = ScriptedModelClient(
            [
                ModelResponse(
                    text="Reviewed.\n\n" + finding_block("Off by one", "high"),
                    usage=Usage(input_tokens=100, output_tokens=40, cost=0.002),
                )
            ]
        )
        preset = AgentPreset(
            name="code-reviewer",
            model="anthropic/claude-x",
            system_prompt="review",
            temperature=0.3,
            thinking_level="high",
        )
        keys: list[str] = []

        def provider(name: str) -> str:
            keys.append(name)
            return "sk-test"

        result = await AgentWorker(client).run(preset, "look at src/", api_key_provider=provider)

        self.assertTrue(result.success)
        self.assertEqual([f.title for f in result.findings], ["Off by one"])
        self.assertEqual(result.findings[0].id, "code-reviewer-1")
        self.assertIn("Reviewed.", result.summary or "")
        self.assertEqual(result.usage, Usage(100, 40, 0.002))
        self.assertEqual(keys, ["anthropic"])
        call = client.calls[0]
        self.assertEqual(call.api_key, "sk-test")
        self.assertEqual(call.system_prompt, "review")
        self.assertEqual(call.sampling, {"temperature": 0.3, "thinking_level": "high"})
        self.assertEqual(call.messages[0].content, "look at src/")

    async def test_async_key_provider(self) -> None:
        client = ScriptedModelClient([ModelResponse(text="done")])

        async def provider(name: str) -> str:
            await asyncio.sleep(0)
            return "sk-async"

        await AgentWorker(client).run(make_preset("a", model="openai/gpt-x"), "task", api_key_provider=provider)
        self.assertEqual(client.calls[0].api_key, "sk-async")

    async def test_tool_calls_feed_back_into_the_loop(self) -> None:
        seen_args: list[dict] = []

        async def lookup(args: dict) -> str:
            seen_args.append(args)
            return "def handler(): ..."

        tool = AgentTool(name="read_file", description="read a file", handler=lookup)
        client = ScriptedModelClient(
            [
                _tool_call("read_file", path="src/app.py"),
                ModelResponse(text=finding_block("Missing check"), usage=Usage(5, 5)),
            ]
        )
        progress: list = []
        result = await AgentWorker(client).run(make_preset("a"), "task", tools=[tool], on_progress=progress.append)

        self.assertTrue(result.success)
        self.assertEqual(seen_args, [{"path": "src/app.py"}])
        second_call = client.calls[1].messages
        self.assertEqual([m.role for m in second_call], ["user", "assistant", "tool"])
        self.assertEqual(second_call[-1].content, "def handler(): ...")
        self.assertEqual(second_call[-1].tool_call_id, "call-1")
        self.assertEqual([p.kind for p in progress if isinstance(p, AgentProgress)], ["turn", "tool", "turn"])

    async def test_unknown_tool_is_reported_to_the_model(self) -> None:
        client = ScriptedModelClient([_tool_call("rm_rf"), ModelResponse(text="ok then")])
        result = await AgentWorker(client).run(make_preset("a"), "task")
        self.assertTrue(result.success)
        tool_message = client.calls[1].messages[-1]
        self.assertTrue(tool_message.is_error)
        self.assertIn("Unknown tool", tool_message.content)

    async def test_model_error_is_a_soft_failure(self) -> None:
        client = ScriptedModelClient(
            [
                ModelResponse(
                    text=finding_block("Early"),
                    tool_calls=(ToolCall(id="c", name="noop"),),
                    usage=Usage(1, 1),
                ),
                ModelResponse(stop_reason="error", error="context length exceeded", usage=Usage(2, 0)),
            ]
        )
        logger = RecordingLogger()
        tool = AgentTool(name="noop", description="", handler=lambda args: "")
        result = await AgentWorker(client, logger=logger).run(make_preset("a"), "task", tools=[tool])

        self.assertFalse(result.success)
        self.assertIn("context length exceeded", result.error or "")
        self.assertEqual(result.usage, Usage(3, 1))
        self.assertEqual([f.title for f in result.findings], ["Early"])
        self.assertIn("agent.loop.failed", logger.names())

    async def test_turn_budget(self) -> None:
        tool = AgentTool(name="noop", description="", handler=lambda args: "nothing")
        client = ScriptedModelClient([_tool_call("noop") for _ in range(3)])
        result = await AgentWorker(client, max_turns=3).run(make_preset("a"), "task", tools=[tool])
        self.assertFalse(result.success)
        self.assertIn("turn budget", result.error or "")
        self.assertEqual(len(client.calls), 3)

    async def test_too_many_tool_errors(self) -> None:
        def broken(args: dict) -> str:
            raise OSError("disk gone")

        tool = AgentTool(name="read", description="", handler=broken)
        client = ScriptedModelClient([_tool_call("read"), _tool_call("read")])
        result = await AgentWorker(client, max_tool_errors=1).run(make_preset("a"), "task", tools=[tool])
        self.assertFalse(result.success)
        self.assertIn("too many tool errors", result.error or "")

    async def test_transport_errors_propagate(self) -> None:
        client = ScriptedModelClient([ModelClientError("connection refused")])
        with self.assertRaises(ModelClientError):
            await AgentWorker(client).run(make_preset("a"), "task")

    async def test_cancelled_signal_stops_the_loop(self) -> None:
        signal = CancelSignal()
        signal.cancel("stop")
        client = ScriptedModelClient([ModelResponse(text="never")])
        with self.assertRaises(AgentCancelled):
            await AgentWorker(client).run(make_preset("a"), "task", signal=signal)
        self.assertEqual(client.calls, [])

    async def test_cancel_during_model_call(self) -> None:
        signal = CancelSignal()

        async def slow(signal) -> ModelResponse:
            await asyncio.sleep(30)
            return ModelResponse(text="late")

        client = ScriptedModelClient([slow])
        asyncio.get_running_loop().call_later(0.05, signal.cancel, "timeout")
        with self.assertRaises(AgentCancelled):
            await asyncio.wait_for(AgentWorker(client).run(make_preset("a"), "task", signal=signal), timeout=5)

    async def test_findings_numbered_across_turns(self) -> None:
        tool = AgentTool(name="noop", description="", handler=lambda args: "")
        client = ScriptedModelClient(
            [
                ModelResponse(text=finding_block("First"), tool_calls=(ToolCall(id="c", name="noop"),)),
                ModelResponse(text=finding_block("Second")),
            ]
        )
        result = await AgentWorker(client).run(make_preset("a"), "task", tools=[tool])
        self.assertEqual([f.id for f in result.findings], ["a-1", "a-2"])

    async def test_dropped_blocks_do_not_reuse_ids_in_later_turns(self) -> None:
        tool = AgentTool(name="noop", description="", handler=lambda args: "")
        client = ScriptedModelClient(
            [
                ModelResponse(
                    text="### Finding:\n\n" + finding_block("XSS"),
                    tool_calls=(ToolCall(id="c", name="noop"),),
                ),
                ModelResponse(text=finding_block("CSRF")),
            ]
        )
        result = await AgentWorker(client).run(make_preset("a"), "task", tools=[tool])
        self.assertEqual([(f.id, f.title) for f in result.findings], [("a-2", "XSS"), ("a-3", "CSRF")])

    async def test_complete_returns_text_or_raises(self) -> None:
        worker = AgentWorker(ScriptedModelClient([ModelResponse(text="answer")]))
        self.assertEqual(await worker.complete(make_preset("m"), "prompt"), "answer")

        failing = AgentWorker(ScriptedModelClient([ModelResponse(stop_reason="error", error="quota")]))
        with self.assertRaises(AgentLoopError):
            await failing.complete(make_preset("m"), "prompt")


class AgentToolTests(unittest.IsolatedAsyncioTestCase):
    async def test_sync_and_async_handlers(self) -> None:
        async def async_handler(args: dict) -> str:
            return f"async {args['n']}"

        sync_tool = AgentTool(name="s", description="", handler=lambda args: args["n"] * 2)
        async_tool = AgentTool(name="a", description="", handler=async_handler)
        self.assertEqual((await sync_tool.execute({"n": 2})).content, "4")
        self.assertEqual((await async_tool.execute({"n": 3})).content, "async 3")

    async def test_sync_handler_does_not_block_other_tasks(self) -> None:
        def slow_scan(args: dict) -> str:
            time.sleep(0.5)
            return "scanned"

        ticks: list[float] = []

        async def ticker() -> None:
            loop = asyncio.get_running_loop()
            while True:
                ticks.append(loop.time())
                await asyncio.sleep(0.05)

        background = asyncio.ensure_future(ticker())
        try:
            result = await AgentTool(name="scan", description="", handler=slow_scan).execute({}, CancelSignal())
        finally:
            background.cancel()
        self.assertEqual(result.content, "scanned")
        gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
        self.assertGreater(len(ticks), 5)
        self.assertLess(max(gaps), 0.25)

    async def test_handler_failure_becomes_error_result(self) -> None:
        tool = AgentTool(name="bad", description="", handler=lambda args: 1 / 0)
        result = await tool.execute({})
        self.assertTrue(result.is_error)
        self.assertIn("bad failed", result.content)

    async def test_cancelled_signal_raises(self) -> None:
        signal = CancelSignal()
        signal.cancel()
        tool = AgentTool(name="t", description="", handler=lambda args: "x")
        with self.assertRaises(AgentCancelled):
            await tool.execute({}, signal)


if __name__ == "__main__":
    unittest.main(verbosity=2)
