#!/usr/bin/env python3
"""Cooperative cancellation threaded through orchestrator, workers and tools."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from team_errors import AgentCancelled


T = TypeVar("T")


class CancelSignal:
    """One-shot cancellation flag that coroutines can poll or await.

    Signals form a tree: `child()` returns a signal that fires when either the
    parent fires or the child itself is cancelled. The orchestrator hands a
    child to its workers so it can stop them without touching the caller's
    signal.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""
        self._children: list[CancelSignal] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancelSignal":
        linked = CancelSignal()
        if self.cancelled:
            linked.cancel(self._reason)
        else:
            self._children.append(linked)
        return linked

    def cancel_after(self, seconds: float, reason: str = "timeout") -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(seconds, 0.0), self.cancel, reason)

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise AgentCancelled(self._reason)

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it with AgentCancelled if the signal fires first."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        raise AgentCancelled(self._reason)


async def race(signal: CancelSignal | None, awaitable: Awaitable[T]) -> T:
    if signal is None:
        return await awaitable
    return await signal.race(awaitable)
