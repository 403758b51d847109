#!/usr/bin/env python3
"""Agent Worker: run one preset against one task until it answers.

The loop alternates model calls and tool executions. Graceful failures (turn
budget, tool error budget, model-reported error) come back as an unsuccessful
`AgentResult`; cancellation raises `AgentCancelled`; anything else escapes so
the orchestrator can retry the agent.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

from agent_tools import AgentTool, ToolResult
from cancellation import CancelSignal, race
from finding_parser import parse_findings_across
from logging_utils import EventLogger, NullLogger, preview
from model_client import ApiKeyProvider, ModelClient, ModelMessage, resolve_api_key
from team_errors import AgentLoopError
from team_events import AgentProgress
from team_models import AgentPreset, AgentResult, Usage


ProgressCallback = Callable[[AgentProgress], None]


@dataclass
class _LoopState:
    usage: Usage = field(default_factory=Usage)
    texts: list[str] = field(default_factory=list)
    turns: int = 0
    tool_errors: int = 0


class AgentWorker:
    def __init__(
        self,
        model_client: ModelClient,
        logger: EventLogger | None = None,
        max_turns: int = 24,
        max_tool_errors: int = 8,
    ) -> None:
        self.model_client = model_client
        self.logger = logger or NullLogger()
        self.max_turns = max(1, max_turns)
        self.max_tool_errors = max(0, max_tool_errors)

    async def run(
        self,
        preset: AgentPreset,
        task: str,
        tools: Sequence[AgentTool] = (),
        api_key_provider: ApiKeyProvider | None = None,
        signal: CancelSignal | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResult:
        started = time.monotonic()
        state = _LoopState()
        try:
            final_text = await self._loop(preset, task, tools, api_key_provider, signal, on_progress, state)
        except AgentLoopError as exc:
            self.logger.event(
                "warn",
                "agent.loop.failed",
                agent=preset.name,
                turns=state.turns,
                error=str(exc),
            )
            return AgentResult(
                agent_name=preset.name,
                success=False,
                findings=parse_findings_across(preset.name, state.texts),
                usage=state.usage,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=str(exc),
            )

        return AgentResult(
            agent_name=preset.name,
            success=True,
            findings=parse_findings_across(preset.name, state.texts),
            summary=final_text.strip() or None,
            usage=state.usage,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def complete(
        self,
        preset: AgentPreset,
        prompt: str,
        tools: Sequence[AgentTool] = (),
        api_key_provider: ApiKeyProvider | None = None,
        signal: CancelSignal | None = None,
    ) -> str:
        """Run the loop and return the terminal text; graceful failures raise AgentLoopError."""
        return await self._loop(preset, prompt, tools, api_key_provider, signal, None, _LoopState())

    async def _loop(
        self,
        preset: AgentPreset,
        task: str,
        tools: Sequence[AgentTool],
        api_key_provider: ApiKeyProvider | None,
        signal: CancelSignal | None,
        on_progress: ProgressCallback | None,
        state: _LoopState,
    ) -> str:
        api_key = await resolve_api_key(api_key_provider, preset.provider)
        tool_map = {tool.name: tool for tool in tools}
        messages: list[ModelMessage] = [ModelMessage(role="user", content=task)]

        while state.turns < self.max_turns:
            if signal is not None:
                signal.raise_if_cancelled()
            state.turns += 1
            response = await race(
                signal,
                self.model_client.invoke(
                    model=preset.model,
                    system_prompt=preset.system_prompt,
                    messages=tuple(messages),
                    tools=tuple(tools),
                    sampling=preset.sampling(),
                    api_key=api_key,
                    signal=signal,
                ),
            )
            state.usage = state.usage + response.usage
            if response.stop_reason == "error":
                raise AgentLoopError(f"model error: {response.error or 'unknown error'}")
            if response.text.strip():
                state.texts.append(response.text)

            self.logger.event(
                "debug",
                "agent.loop.turn",
                agent=preset.name,
                turn=state.turns,
                tool_calls=len(response.tool_calls),
                output_preview=preview(response.text, 120),
            )
            if on_progress is not None:
                on_progress(
                    AgentProgress(
                        agent_name=preset.name,
                        kind="turn",
                        detail={"turn": state.turns, "tool_calls": len(response.tool_calls)},
                    )
                )

            if not response.tool_calls:
                return response.text

            messages.append(ModelMessage(role="assistant", content=response.text, tool_calls=response.tool_calls))
            for call in response.tool_calls:
                if signal is not None:
                    signal.raise_if_cancelled()
                tool = tool_map.get(call.name)
                if tool is None:
                    result = ToolResult(content=f"Unknown tool: {call.name}", is_error=True)
                else:
                    result = await tool.execute(call.arguments, signal)
                if result.is_error:
                    state.tool_errors += 1
                    if state.tool_errors > self.max_tool_errors:
                        raise AgentLoopError(f"too many tool errors ({state.tool_errors}); last: {result.content}")
                messages.append(
                    ModelMessage(
                        role="tool",
                        content=result.content,
                        tool_call_id=call.id,
                        is_error=result.is_error,
                    )
                )
                if on_progress is not None:
                    on_progress(
                        AgentProgress(
                            agent_name=preset.name,
                            kind="tool",
                            detail={"tool": call.name, "is_error": result.is_error},
                        )
                    )

        raise AgentLoopError(f"turn budget exhausted after {self.max_turns} turns")
