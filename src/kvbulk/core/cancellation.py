"""Cooperative cancellation signal threaded through every bulk operation.

A single :class:`CancellationToken` is passed down from the public operation
to the generation controller and the transaction executor. Each suspension
point (before a handler runs, between retries, during the cooldown pause)
checks it, so a cancelled operation stops at the next yield without
corrupting the cursor or the accumulator.

``cancel()`` may be called from any thread; waiters are woken on their own
event loop.

Example::

    token = CancellationToken()
    task = asyncio.create_task(bulk.write(db, pairs, cancel=token))
    token.cancel()
    await asyncio.gather(task, return_exceptions=True)
    assert task.cancelled()
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any

from kvbulk.core.errors import OperationCancelled


class CancellationToken:
    """Cancellation flag with cancellable sleeps."""

    def __init__(self) -> None:
        self._cancelled = False
        self._lock = threading.Lock()
        self._waiters: set[asyncio.Future[None]] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Trigger the signal and wake every pending :meth:`sleep`."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            waiters = list(self._waiters)
        for waiter in waiters:
            loop = waiter.get_loop()
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(_wake, waiter)

    def cancel_after(self, delay: float) -> asyncio.TimerHandle:
        """Schedule :meth:`cancel` on the running loop after ``delay`` seconds."""
        return asyncio.get_running_loop().call_later(delay, self.cancel)

    def raise_if_cancelled(self, *, partial: Any = None, position: int = 0) -> None:
        """Raise :class:`OperationCancelled` if the signal has fired."""
        if self._cancelled:
            raise OperationCancelled(partial=partial, position=position)

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, returning early if cancelled.

        Raises:
            OperationCancelled: if the signal fired before or during the sleep
        """
        self.raise_if_cancelled()
        if delay <= 0:
            await asyncio.sleep(0)
            self.raise_if_cancelled()
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        with self._lock:
            self._waiters.add(waiter)
        try:
            await asyncio.wait({waiter}, timeout=delay)
        finally:
            with self._lock:
                self._waiters.discard(waiter)
            if not waiter.done():
                waiter.cancel()
        self.raise_if_cancelled()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"


def _wake(waiter: asyncio.Future[None]) -> None:
    if not waiter.done():
        waiter.set_result(None)


def ensure_token(token: CancellationToken | None) -> CancellationToken:
    """Return ``token`` or a fresh, never-cancelled one."""
    return token if token is not None else CancellationToken()


__all__ = ["CancellationToken", "ensure_token"]
