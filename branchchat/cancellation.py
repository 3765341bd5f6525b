"""Cooperative cancellation for in-flight provider calls."""

import asyncio
from typing import Awaitable, Optional, TypeVar

from .exceptions import OperationAborted

T = TypeVar("T")


class CancellationToken:
    """A one-shot cancellation flag that async code can wait on or race against."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationAborted(self.reason or "Operation aborted")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        The awaitable is cancelled and OperationAborted raised when the token
        fires before it completes.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise OperationAborted(self.reason or "Operation aborted")


async def cancellable_sleep(delay: float, token: Optional[CancellationToken] = None) -> None:
    """Sleep for ``delay`` seconds, raising OperationAborted if the token fires."""
    if token is None:
        await asyncio.sleep(delay)
        return

    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise OperationAborted(token.reason or "Operation aborted")
