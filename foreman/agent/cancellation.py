"""Cooperative cancellation passed explicitly down the call chain.

The runner owns one token per task. The loop checks it between
iterations; providers and tool subprocesses register callbacks that
kill whatever they have in flight.
"""

import asyncio
from typing import Callable, List, Optional

import structlog

from ..exceptions import ProviderFailure

logger = structlog.get_logger("foreman.agent")


class CancellationToken:
    """One-shot cancel flag with kill callbacks."""

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Set the flag and fire every registered callback once."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except (OSError, RuntimeError, ValueError, ProcessLookupError) as e:
                logger.warning("cancel_callback_error", error=str(e))

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a kill hook; runs immediately if already cancelled.

        Returns a function that unregisters the hook.
        """
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self, partial_output: str = "") -> None:
        if self._event.is_set():
            raise ProviderFailure(
                f"Cancelled: {self.reason}",
                partial_output=partial_output,
                cancelled=True,
            )

    async def wait(self) -> None:
        await self._event.wait()
