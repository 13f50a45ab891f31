"""Run-level cancellation signal."""

from __future__ import annotations

import asyncio
from typing import Optional

from ..errors import RunCancelled


class CancellationToken:
    """Cooperative cancellation shared by the Scheduler, retries and wait steps.

    Checked before every step and during every sleep. A capability call that
    is already in flight is only interrupted when its task is cancelled.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._error: Optional[RunCancelled] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def error(self) -> Optional[RunCancelled]:
        return self._error

    def cancel(self, reason: str = "Run cancelled", error: Optional[RunCancelled] = None) -> None:
        if self._event.is_set():
            return
        self._error = error or RunCancelled(reason)
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise self._error or RunCancelled("Run cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            RunCancelled: If the token is cancelled before or during the sleep
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
