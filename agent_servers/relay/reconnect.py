"""Backoff and reconnect gating for the control link."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

_LOGGER = logging.getLogger("agent.relay.reconnect")

DEFAULT_BASE_MS = 1000
DEFAULT_CAP_MS = 10000


def reconnect_delay_ms(attempt: int, *, base_ms: int = DEFAULT_BASE_MS, cap_ms: int = DEFAULT_CAP_MS) -> int:
    """Delay before reconnect attempt `attempt` (1-based): min(base * 2^(n-1), cap)."""
    n = max(1, int(attempt))
    # Cap the exponent so huge attempt counts don't build enormous ints.
    exp = min(n - 1, 62)
    return int(min(base_ms * (2**exp), cap_ms))


class ReconnectPolicy:
    """Decides when an automatic reconnect may happen, and schedules it.

    State:
    - attempts: automatic attempts since the last explicit connect or Open.
    - user_initiated_disconnect: set by an explicit disconnect; blocks all
      automatic reconnects until the next explicit connect.
    - channel_name: the last known channel name to retry.

    At most one timer is live at a time.
    """

    def __init__(self, *, base_ms: int = DEFAULT_BASE_MS, cap_ms: int = DEFAULT_CAP_MS) -> None:
        self.base_ms = int(base_ms)
        self.cap_ms = int(cap_ms)
        self.attempts = 0
        self.user_initiated_disconnect = False
        self.channel_name: str | None = None
        self._timer: asyncio.TimerHandle | None = None

    def delay_ms(self, attempt: int) -> int:
        return reconnect_delay_ms(attempt, base_ms=self.base_ms, cap_ms=self.cap_ms)

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None and not self._timer.cancelled()

    def on_user_connect(self, channel_name: str | None = None) -> None:
        self.cancel()
        self.user_initiated_disconnect = False
        self.attempts = 0
        if channel_name:
            self.channel_name = channel_name

    def on_open(self) -> None:
        self.cancel()
        self.user_initiated_disconnect = False
        self.attempts = 0

    def on_user_disconnect(self) -> None:
        self.cancel()
        self.user_initiated_disconnect = True
        self.attempts = 0

    def forget_channel(self) -> None:
        self.channel_name = None

    def should_reconnect(self) -> bool:
        return not self.user_initiated_disconnect and bool(self.channel_name)

    def schedule(self, callback: Callable[[], object]) -> int | None:
        """Schedule `callback` after the next backoff delay.

        Returns the delay in milliseconds, or None when no reconnect is allowed.
        Must be called from a running event loop.
        """
        if not self.should_reconnect():
            return None
        self.attempts += 1
        delay = self.delay_ms(self.attempts)
        self.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay / 1000.0, self._fire, callback)
        _LOGGER.info(
            "reconnect scheduled for %s in %.1fs (attempt %d)", self.channel_name, delay / 1000.0, self.attempts
        )
        return delay

    def cancel(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def _fire(self, callback: Callable[[], object]) -> None:
        self._timer = None
        callback()


__all__ = ["DEFAULT_BASE_MS", "DEFAULT_CAP_MS", "ReconnectPolicy", "reconnect_delay_ms"]
