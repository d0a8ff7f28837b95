"""Single-flight execution of async work, keyed by an arbitrary hashable.

Concurrent callers asking for the same key share one underlying task and
all observe its outcome, success or exception. The key is dropped as soon
as the task settles, so failures are never cached.

Must be used from a single event loop.
"""
from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable, Hashable
from typing import Any


class InFlightCoalescer:
    def __init__(self) -> None:
        self._inflight: dict[Hashable, asyncio.Future] = {}

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Await the pending task for ``key``, starting one via ``factory`` if none.

        Waiters are shielded: cancelling one caller detaches it without
        cancelling the shared task.
        """
        task = self._inflight.get(key)
        if task is None:
            # No await between the lookup above and this registration.
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            # Registered before any waiter, so the key is gone by the time they resume.
            task.add_done_callback(functools.partial(self._settled, key))
        return await asyncio.shield(task)

    def _settled(self, key: Hashable, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Waiters that detached early leave nobody to read the exception.
        if not task.cancelled():
            task.exception()

    def __contains__(self, key: object) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    def cancel_all(self) -> None:
        """Cancel every pending task. Used at shutdown."""
        for task in list(self._inflight.values()):
            task.cancel()
