import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class RunCancelled(Exception):
    """The run was cancelled by its caller."""


class CancellationToken:
    """
    Cooperative cancellation shared by a run and whoever started it.

    guard() races an awaitable against the token, so a cancel issued while a
    model turn or tool call is in flight is observed right away; the
    abandoned work is cancelled and awaited, and its result is dropped.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        if self._event.is_set():
            # Never started, so close it rather than leave it unawaited
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunCancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                # Let the abandoned work unwind before anyone touches its resources
                await asyncio.wait({task})

        # A result that lands together with a cancel is dropped
        self.raise_if_cancelled()
        return task.result()
