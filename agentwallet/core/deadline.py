"""
Monotonic deadline shared by every bounded wait in the engine.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import OperationTimeoutError


class Deadline:
    """A point in monotonic time after which work must stop."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def timeout(self, cap: Optional[float] = None) -> float:
        """Seconds available to the next wait, optionally capped."""
        remaining = self.remaining()
        if cap is not None:
            return min(remaining, cap)
        return remaining

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds` or until the deadline, whichever is first."""
        delay = min(seconds, self.remaining())
        if delay > 0:
            await asyncio.sleep(delay)

    async def bound(
        self,
        awaitable: Awaitable[Any],
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cap: Optional[float] = None,
    ) -> Any:
        """Await `awaitable` within the deadline or raise OperationTimeoutError."""
        timeout = self.timeout(cap)
        if timeout <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationTimeoutError(code, message, self._details(details))
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(code, message, self._details(details))

    def _details(self, details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {**(details or {}), "timeoutSeconds": self.seconds}
