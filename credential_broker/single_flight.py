"""Single-flight: concurrent callers for one key share one in-flight call."""

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from typing import Any


class SingleFlight:
    """Deduplicates concurrent coroutine calls by key.

    The first caller for a key starts the work as a task; callers arriving
    while it runs await the same task. The work is shielded so that one
    cancelled waiter does not cancel it for everyone else. Once the task
    finishes the key is released and the next call starts fresh work.
    """

    def __init__(self) -> None:
        self._calls: dict[Hashable, asyncio.Task[Any]] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda _t, k=key: self._release(k, _t))
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task[Any]) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        # Mark the exception retrieved when every waiter was cancelled
        if not task.cancelled():
            task.exception()
