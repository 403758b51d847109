#!/usr/bin/env python3
"""Team Orchestrator: fan a task out to every agent of a team and merge the results.

`TeamOrchestrator.run` returns a `TeamRun` immediately. The run drives itself
on the event loop; callers iterate it for live events and await
`run.result()` for the merged `TeamResult`.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import replace
from typing import AsyncIterator, Callable

from agent_worker import AgentWorker
from cancellation import CancelSignal
from event_sink import EventSink
from logging_utils import EventLogger, NullLogger, preview
from merge_engine import MergeEngine
from model_client import ApiKeyProvider
from team_errors import AgentCancelled, TeamError, TeamRunError
from team_events import (
    AgentEnd,
    AgentError,
    AgentRetry,
    AgentStart,
    MergeEnd,
    MergeProgress,
    MergeStart,
    TeamEnd,
    TeamEvent,
    TeamStart,
)
from team_models import AgentPreset, AgentResult, TeamConfig, TeamResult


_DONE = object()


class TeamRun:
    """Event stream plus deferred result of one team run.

    Events are buffered in an unbounded queue, so a slow (or absent) consumer
    never stalls the agents. The result resolves right after `team_end` is
    queued; a run fault makes both the iterator and `result()` raise
    `TeamRunError`.
    """

    def __init__(self, team_name: str, run_id: str | None = None) -> None:
        self.team_name = team_name
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._queue: asyncio.Queue = asyncio.Queue()
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._future.add_done_callback(_mark_retrieved)
        self._finished = False
        self._task: asyncio.Task | None = None

    def __aiter__(self) -> AsyncIterator[TeamEvent]:
        return self

    async def __anext__(self) -> TeamEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DONE:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._finished = True
            raise item
        return item

    async def result(self) -> TeamResult:
        return await asyncio.shield(self._future)

    @property
    def done(self) -> bool:
        return self._future.done()

    def _push(self, event: TeamEvent) -> None:
        self._queue.put_nowait(event)

    def _resolve(self, result: TeamResult) -> None:
        self._queue.put_nowait(_DONE)
        if not self._future.done():
            self._future.set_result(result)

    def _fail(self, error: TeamRunError) -> None:
        self._queue.put_nowait(error)
        if not self._future.done():
            self._future.set_exception(error)

    def _abort(self) -> None:
        self._queue.put_nowait(_DONE)
        if not self._future.done():
            self._future.cancel()


def _mark_retrieved(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class TeamOrchestrator:
    def __init__(
        self,
        worker: AgentWorker,
        merge_engine: MergeEngine | None = None,
        api_key_provider: ApiKeyProvider | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self.worker = worker
        self.logger = logger or NullLogger()
        self.merge_engine = merge_engine or MergeEngine(logger=self.logger)
        self.api_key_provider = api_key_provider

    def run(
        self,
        config: TeamConfig,
        task: str,
        signal: CancelSignal | None = None,
        event_sink: EventSink | None = None,
    ) -> TeamRun:
        run = TeamRun(config.name)
        run._task = asyncio.ensure_future(self._drive(run, config, task, signal, event_sink))
        return run

    async def execute(
        self,
        config: TeamConfig,
        task: str,
        signal: CancelSignal | None = None,
        event_sink: EventSink | None = None,
        on_event: Callable[[TeamEvent], None] | None = None,
    ) -> TeamResult:
        run = self.run(config, task, signal=signal, event_sink=event_sink)
        async for event in run:
            if on_event is not None:
                on_event(event)
        return await run.result()

    async def _drive(
        self,
        run: TeamRun,
        config: TeamConfig,
        task: str,
        signal: CancelSignal | None,
        event_sink: EventSink | None,
    ) -> None:
        def emit(event: TeamEvent) -> None:
            run._push(event)
            if event_sink is None:
                return
            try:
                event_sink.emit(event)
            except Exception as exc:
                self.logger.event(
                    "warn",
                    "sink.emit.error",
                    team=config.name,
                    event_type=event.type,
                    error=f"{type(exc).__name__}: {exc}",
                )

        started = time.monotonic()
        try:
            config.validate()
        except TeamError as exc:
            self.logger.event("error", "team.run.invalid", team=config.name, error=str(exc))
            run._fail(TeamRunError(config.name, str(exc)))
            return

        # Workers get their own child so an early stop never reaches the merge agent.
        merge_signal = signal.child() if signal is not None else CancelSignal()
        run_signal = merge_signal.child()
        total = len(config.agents)
        emit(TeamStart(team_name=config.name, agent_count=total, agent_names=tuple(a.name for a in config.agents)))
        self.logger.event(
            "info",
            "team.run.start",
            team=config.name,
            team_run_id=run.run_id,
            agents=[a.name for a in config.agents],
            strategy=config.strategy,
            merge_strategy=config.merge.strategy,
            task_preview=preview(task, 160),
        )

        phase = "fan-out"
        try:
            if config.strategy == "sequential":
                collected = await self._run_sequential(config, task, run_signal, emit)
            else:
                collected = await self._run_parallel(config, task, run_signal, emit)

            agent_results = [collected[i] for i in sorted(collected)]
            phase = "merge"
            merged = await self._merge(config, agent_results, merge_signal, emit)
        except asyncio.CancelledError:
            merge_signal.cancel("run task cancelled")
            run._abort()
            raise
        except Exception as exc:
            self.logger.event(
                "error",
                "merge.fault" if phase == "merge" else "team.run.fault",
                team=config.name,
                phase=phase,
                error=f"{type(exc).__name__}: {exc}",
            )
            run._fail(TeamRunError(config.name, f"{type(exc).__name__}: {exc}"))
            return

        result = replace(
            merged,
            duration_ms=int((time.monotonic() - started) * 1000),
            cancelled=signal is not None and signal.cancelled,
        )
        emit(TeamEnd(result=result))
        self.logger.event(
            "info",
            "team.run.end",
            team=config.name,
            team_run_id=run.run_id,
            success=result.success,
            cancelled=result.cancelled,
            agent_results=len(result.agent_results),
            finding_count=len(result.findings),
            duration_ms=result.duration_ms,
        )
        run._resolve(result)

    async def _run_sequential(
        self,
        config: TeamConfig,
        task: str,
        run_signal: CancelSignal,
        emit: Callable[[TeamEvent], None],
    ) -> dict[int, AgentResult]:
        collected: dict[int, AgentResult] = {}
        for index, preset in enumerate(config.agents):
            if run_signal.cancelled:
                break
            try:
                result = await self._run_agent(config, preset, index, task, run_signal, emit)
            except AgentCancelled:
                break
            collected[index] = result
            if not result.success and not config.continue_on_error:
                break
        return collected

    async def _run_parallel(
        self,
        config: TeamConfig,
        task: str,
        run_signal: CancelSignal,
        emit: Callable[[TeamEvent], None],
    ) -> dict[int, AgentResult]:
        tasks = {
            asyncio.ensure_future(self._run_agent(config, preset, index, task, run_signal, emit)): index
            for index, preset in enumerate(config.agents)
        }
        cancel_waiter = asyncio.ensure_future(run_signal.wait())
        pending = set(tasks)
        collected: dict[int, AgentResult] = {}
        stop_reason = ""
        try:
            while pending and not stop_reason:
                done, _ = await asyncio.wait(pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    if finished is cancel_waiter:
                        continue
                    pending.discard(finished)
                    outcome = self._task_outcome(finished)
                    if outcome is None:
                        continue
                    collected[tasks[finished]] = outcome
                    if not outcome.success and not config.continue_on_error and not stop_reason:
                        stop_reason = f"agent {outcome.agent_name} failed"
                if cancel_waiter in done and not stop_reason:
                    stop_reason = run_signal.reason or "cancelled"
        finally:
            cancel_waiter.cancel()
            if pending:
                run_signal.cancel(stop_reason or "run stopped")
                for leftover in pending:
                    leftover.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                for leftover in pending:
                    outcome = self._task_outcome(leftover)
                    if outcome is not None:
                        collected[tasks[leftover]] = outcome
                self.logger.event(
                    "warn",
                    "team.run.stopped",
                    team=config.name,
                    reason=stop_reason or "run stopped",
                    abandoned=len(pending) - sum(1 for t in pending if tasks[t] in collected),
                )
        return collected

    @staticmethod
    def _task_outcome(finished: asyncio.Future) -> AgentResult | None:
        """AgentResult of a finished agent task, or None if it was cancelled."""
        if finished.cancelled():
            return None
        exc = finished.exception()
        if isinstance(exc, AgentCancelled):
            return None
        if exc is not None:
            raise exc
        return finished.result()

    async def _run_agent(
        self,
        config: TeamConfig,
        preset: AgentPreset,
        index: int,
        task: str,
        run_signal: CancelSignal,
        emit: Callable[[TeamEvent], None],
    ) -> AgentResult:
        total = len(config.agents)
        emit(AgentStart(agent_name=preset.name, index=index, total=total))
        started = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            try:
                result = await self.worker.run(
                    preset,
                    task,
                    tools=config.tools,
                    api_key_provider=self.api_key_provider,
                    signal=run_signal,
                    on_progress=emit,
                )
            except AgentCancelled:
                self.logger.event("info", "agent.cancelled", team=config.name, agent=preset.name, attempt=attempts)
                raise
            except Exception as exc:
                will_retry = attempts <= config.max_retries and not run_signal.cancelled
                message = f"{type(exc).__name__}: {exc}"
                emit(AgentError(agent_name=preset.name, error=message, will_retry=will_retry, attempt=attempts))
                self.logger.event(
                    "warn" if will_retry else "error",
                    "agent.attempt.error",
                    team=config.name,
                    agent=preset.name,
                    attempt=attempts,
                    will_retry=will_retry,
                    error=message,
                )
                if will_retry:
                    emit(AgentRetry(agent_name=preset.name, attempt=attempts, max_retries=config.max_retries))
                    continue
                result = AgentResult(
                    agent_name=preset.name,
                    success=False,
                    error=message,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    attempts=attempts,
                )
            else:
                result = replace(result, attempts=attempts)
            break

        emit(AgentEnd(agent_name=preset.name, result=result))
        self.logger.event(
            "info",
            "agent.end",
            team=config.name,
            agent=preset.name,
            success=result.success,
            attempts=attempts,
            finding_count=len(result.findings),
            duration_ms=result.duration_ms,
            error=result.error,
        )
        return result

    async def _merge(
        self,
        config: TeamConfig,
        agent_results: list[AgentResult],
        signal: CancelSignal,
        emit: Callable[[TeamEvent], None],
    ) -> TeamResult:
        finding_count = sum(len(r.findings) for r in agent_results if r.success)
        emit(MergeStart(strategy=config.merge.strategy, finding_count=finding_count))

        async def invoke_merge_agent(preset: AgentPreset, prompt: str) -> str:
            return await self.worker.complete(
                preset,
                prompt,
                tools=config.tools,
                api_key_provider=self.api_key_provider,
                signal=signal,
            )

        merged = await self.merge_engine.merge(
            config.name,
            agent_results,
            config.merge,
            merge_agent_invoker=invoke_merge_agent,
            on_progress=lambda phase: emit(MergeProgress(phase=phase)),
        )
        emit(
            MergeEnd(
                merged_count=len(merged.findings),
                verified_count=sum(1 for f in merged.findings if f.verified),
            )
        )
        return merged


def run_team(
    config: TeamConfig,
    task: str,
    *,
    worker: AgentWorker,
    signal: CancelSignal | None = None,
    event_sink: EventSink | None = None,
    merge_engine: MergeEngine | None = None,
    api_key_provider: ApiKeyProvider | None = None,
    logger: EventLogger | None = None,
) -> TeamRun:
    """Start a team run on the running event loop."""
    orchestrator = TeamOrchestrator(
        worker,
        merge_engine=merge_engine,
        api_key_provider=api_key_provider,
        logger=logger,
    )
    return orchestrator.run(config, task, signal=signal, event_sink=event_sink)
