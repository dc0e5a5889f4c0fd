"""
Bounded Worker Pool
===================
The one place concurrency is bounded.  At most ``limit`` tasks started
through a pool are alive at any moment; ``peak`` records the highest number
ever observed so the bound can be asserted in tests.

Two ways to use it:

- dispatch loop (Orchestrator)::

      while work or pool.active:
          while work and pool.has_capacity:
              pool.spawn(fetch(work.take()))
          for task in await pool.wait_any():
              handle(task.result())

- bounded map (article crawler)::

      results = await pool.map(process_id, ids)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class WorkerPool:
    """Bounded set of running asyncio tasks."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"Worker pool limit must be >= 1, got {limit}")
        self.limit = limit
        self._tasks: Set[asyncio.Task] = set()
        self.peak = 0

    @property
    def active(self) -> int:
        return len(self._tasks)

    @property
    def has_capacity(self) -> bool:
        return len(self._tasks) < self.limit

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Start *coro* as a task.  The caller must check ``has_capacity`` first."""
        if not self.has_capacity:
            # close it so it is not reported as never awaited
            if asyncio.iscoroutine(coro):
                coro.close()
            raise RuntimeError(f"Worker pool is full ({self.limit} active)")
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        self.peak = max(self.peak, len(self._tasks))
        return task

    async def wait_any(self) -> List[asyncio.Task]:
        """Wait until at least one task finishes; return (and release) the finished ones."""
        if not self._tasks:
            return []
        done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        self._tasks.difference_update(done)
        return list(done)

    async def cancel_all(self) -> None:
        """Cancel every running task and wait for them to unwind."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"[POOL] Cancelled {len(tasks)} in-flight tasks")

    async def map(self, func: Callable[[T], Awaitable[R]], items: Iterable[T]) -> List[R]:
        """
        Apply *func* to every item with at most ``limit`` calls in flight.

        Results come back in input order.  The first exception cancels the
        remaining calls and propagates.
        """
        items = list(items)
        results: List[Any] = [None] * len(items)
        index_of = {}
        position = 0
        try:
            while position < len(items) or self._tasks:
                while position < len(items) and self.has_capacity:
                    task = self.spawn(func(items[position]))
                    index_of[task] = position
                    position += 1
                for task in await self.wait_any():
                    results[index_of.pop(task)] = task.result()
        except BaseException:
            await self.cancel_all()
            raise
        return results
