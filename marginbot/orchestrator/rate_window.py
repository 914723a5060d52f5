"""Per-key hourly rate window.

The consult provider allows one batch per tenant per hour.  A
:class:`RateWindowGate` remembers when each key last opened a window and
makes the next caller for that key wait until the window has fully elapsed.

Semantics
---------
* :meth:`RateWindowGate.acquire` holds a per-key :class:`asyncio.Lock`
  while it checks, sleeps and records, so two workers that share a key are
  strictly serialised and the second one starts a full window after the
  first.
* Keys never block each other: each key has its own lock.
* The window start is the clock reading *after* any wait, so windows never
  overlap.
* State lives on the instance (one gate per orchestrator) and is kept in
  memory only.  A restarted process starts with no windows.

The clock and sleep function are injectable so tests can drive time
deterministically.

Typical usage::

    gate = RateWindowGate()
    waited = await gate.acquire(credential.rate_key)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Final

__all__ = [
    "DEFAULT_WINDOW_S",
    "RateWindowGate",
]

logger = logging.getLogger(__name__)

#: Length of one rate window in seconds.
DEFAULT_WINDOW_S: Final[float] = 3600.0


class RateWindowGate:
    """Serialises access per key to at most one window start per ``window_s``.

    Args:
        window_s: Window length in seconds.
        clock: Monotonic clock returning seconds.
        sleep: Coroutine function used to wait.

    Raises:
        ValueError: If ``window_s`` is negative.
    """

    def __init__(
        self,
        window_s: float = DEFAULT_WINDOW_S,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if window_s < 0:
            raise ValueError(f"window_s must be >= 0, got {window_s!r}.")
        self._window_s = window_s
        self._clock = clock
        self._sleep = sleep
        self._starts: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def window_s(self) -> float:
        return self._window_s

    def __len__(self) -> int:
        return len(self._starts)

    def window_started_at(self, key: str) -> float | None:
        """Clock reading at which *key*'s current window started, if any."""
        return self._starts.get(key)

    async def acquire(self, key: str) -> float:
        """Wait until *key*'s previous window has elapsed, then open a new one.

        Args:
            key: Rate-window key (see :func:`~marginbot.core.ids.rate_window_key`).

        Returns:
            Seconds spent waiting (``0.0`` when the window was free).
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            waited = 0.0
            started = self._starts.get(key)
            if started is not None:
                remaining = started + self._window_s - self._clock()
                if remaining > 0:
                    logger.info(
                        "Rate window for %s still open — waiting %.0f s before starting.",
                        key,
                        remaining,
                    )
                    await self._sleep(remaining)
                    waited = remaining
            self._starts[key] = self._clock()
            return waited

    def prune(self) -> int:
        """Forget windows that have already elapsed and are not in use.

        Keys of credentials that disappear (rotated or removed tenants) would
        otherwise stay in memory forever.  An elapsed window imposes no wait,
        so dropping it never changes behaviour.

        Returns:
            Number of keys removed.
        """
        now = self._clock()
        expired = [
            key
            for key, started in self._starts.items()
            if now - started >= self._window_s
            and not (key in self._locks and self._locks[key].locked())
        ]
        for key in expired:
            del self._starts[key]
            self._locks.pop(key, None)
        if expired:
            logger.debug("Pruned %d elapsed rate window(s).", len(expired))
        return len(expired)
