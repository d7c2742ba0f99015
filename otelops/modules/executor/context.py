"""
Run-scoped context passed to every step action and health probe.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Optional, TypeVar

from ...errors import RunCancelled

if TYPE_CHECKING:
    from ...config.provider import Settings
    from ..resources.client import ResourceClient

T = TypeVar("T")


class CancelToken:
    """
    Shared cancellation signal with an optional run deadline.

    Every suspension point (backoff sleeps, step attempts, waits) consults
    the token so a cancelled or expired run stops promptly.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = asyncio.Event()
        self._deadline = time.monotonic() + timeout if timeout else None
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Run cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def deadline_exceeded(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def expired(self) -> bool:
        """Deadline passed without an explicit cancel."""
        return self.deadline_exceeded and not self._event.is_set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.deadline_exceeded

    @property
    def reason(self) -> str:
        if self._reason:
            return self._reason
        if self.deadline_exceeded:
            return "Run deadline exceeded"
        return ""

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        """Clamp ``timeout`` to the remaining run time."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled(self.reason, deadline_exceeded=self.deadline_exceeded)

    async def guard(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await ``awaitable`` bounded by ``timeout``, abandoning it if the token fires.

        Raises:
            RunCancelled: If the token is cancelled first
            asyncio.TimeoutError: If ``timeout`` elapses first
        """
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._event.is_set():
            raise RunCancelled(self.reason)
        raise asyncio.TimeoutError()

    async def sleep(self, seconds: float) -> None:
        """
        Sleep unless cancelled first.

        Raises:
            RunCancelled: If the token fires or the deadline passes while sleeping
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        wait = self.bound(seconds)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=wait)
        except asyncio.TimeoutError:
            pass
        if self._event.is_set() or (wait is not None and wait < seconds):
            self.raise_if_cancelled()
            # deadline hit exactly while sleeping
            raise RunCancelled("Run deadline exceeded", deadline_exceeded=True)


@dataclass(frozen=True)
class StepContext:
    """What an action or probe may use: the client, the settings and the token."""

    client: "ResourceClient"
    settings: "Settings"
    token: CancelToken
