"""
client/singleflight.py -- Coalesce concurrent calls into one in-flight operation.

While an operation is running, every further caller awaits the same task and
receives the same result or the same exception. Once it settles the slot is
cleared, so the next call starts a fresh operation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Usage:
        flight = SingleFlight()
        token = await flight.do(refresh)   # N concurrent callers, one refresh()
    """

    def __init__(self) -> None:
        self._task: asyncio.Task[T] | None = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None

    async def do(self, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._task
        if task is None:
            task = asyncio.ensure_future(self._run(fn))
            self._task = task
        # shield: a cancelled waiter must not cancel the operation for the others
        return await asyncio.shield(task)

    async def _run(self, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            self._task = None
