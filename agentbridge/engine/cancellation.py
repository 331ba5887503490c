"""Cancellation token threaded through every suspension point.

Process reads, approval waits, credential tiers, backoff sleeps and the
wait for a concurrency slot all go through ``CancelToken.race`` so a
single ``cancel()`` unblocks whichever one the operation is parked in.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from .errors import OperationCancelledError

T = TypeVar("T")


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await *awaitable* unless cancellation or *timeout* comes first.

        Raises OperationCancelledError on cancel and asyncio.TimeoutError
        on timeout; in both cases the inner awaitable is cancelled.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass  # outcome superseded by cancel/timeout
        if waiter in done or self._event.is_set():
            raise OperationCancelledError(self.reason)
        raise asyncio.TimeoutError()

    async def sleep(self, delay: float) -> None:
        """Cancellable sleep."""
        await self.race(asyncio.sleep(max(0.0, delay)))
