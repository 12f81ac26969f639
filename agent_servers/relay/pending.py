"""Correlation table for in-flight requests keyed by requestId."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import PendingTimeoutError

_LOGGER = logging.getLogger("agent.relay.pending")


class PendingKind(str, Enum):
    EVALUATION = "Evaluation"
    SCREENSHOT = "Screenshot"
    PASTE = "Paste"
    CAPTURE = "Capture"


def _key(request_id: str | int) -> str:
    return str(request_id)


@dataclass
class PendingRequest:
    request_id: str | int
    kind: PendingKind
    future: asyncio.Future
    owner: str | None = None
    created_at: float = field(default_factory=time.time)
    timeout_handle: asyncio.TimerHandle | None = None


class PendingRequests:
    """Futures keyed by requestId; each settles exactly once.

    Settling (resolve/reject/timeout) removes the entry first, so a late or
    duplicate settlement for the same id is a no-op that returns False.
    Integer ids share the key space of their string form.
    """

    def __init__(self, *, timeout: float | None = None) -> None:
        self.timeout = timeout if timeout and timeout > 0 else None
        self._entries: dict[str, PendingRequest] = {}

    def __contains__(self, request_id: object) -> bool:
        return isinstance(request_id, (str, int)) and _key(request_id) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, request_id: str | int) -> PendingRequest | None:
        return self._entries.get(_key(request_id))

    def ids(self, *, owner: str | None = None) -> list[str]:
        if owner is None:
            return list(self._entries)
        return [rid for rid, entry in self._entries.items() if entry.owner == owner]

    def create(
        self,
        request_id: str | int,
        kind: PendingKind,
        *,
        owner: str | None = None,
        timeout: float | None = None,
    ) -> asyncio.Future:
        """Register a new in-flight request and return its future.

        Must be called from a running event loop. A request id that is already
        in flight raises ValueError.
        """
        if _key(request_id) in self._entries:
            raise ValueError(f"requestId already in flight: {request_id}")
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        entry = PendingRequest(request_id=request_id, kind=kind, future=fut, owner=owner)
        bound = timeout if timeout is not None else self.timeout
        if bound is not None and bound > 0:
            entry.timeout_handle = loop.call_later(bound, self._expire, request_id, fut, bound)
        self._entries[_key(request_id)] = entry
        return fut

    def resolve(self, request_id: str | int, value: Any) -> bool:
        entry = self._pop(request_id)
        if entry is None:
            return False
        if entry.future.done():
            return False
        entry.future.set_result(value)
        return True

    def reject(self, request_id: str | int, exc: BaseException) -> bool:
        entry = self._pop(request_id)
        if entry is None:
            return False
        if entry.future.done():
            return False
        entry.future.set_exception(exc)
        return True

    def discard(self, request_id: str | int) -> None:
        entry = self._pop(request_id)
        if entry is not None and not entry.future.done():
            entry.future.cancel()

    def reject_owner(self, owner: str, exc: BaseException) -> int:
        return sum(1 for rid in self.ids(owner=owner) if self.reject(rid, exc))

    def reject_all(self, exc: BaseException) -> int:
        return sum(1 for rid in self.ids() if self.reject(rid, exc))

    def _pop(self, request_id: str | int) -> PendingRequest | None:
        entry = self._entries.pop(_key(request_id), None)
        if entry is not None and entry.timeout_handle is not None:
            entry.timeout_handle.cancel()
        return entry

    def _expire(self, request_id: str | int, fut: asyncio.Future, bound: float) -> None:
        entry = self._entries.get(_key(request_id))
        # The id may have been re-registered after settling; only expire our own future.
        if entry is None or entry.future is not fut:
            return
        _LOGGER.warning("pending %s request %s timed out after %.1fs", entry.kind.value, request_id, bound)
        self.reject(request_id, PendingTimeoutError(f"request {request_id} timed out after {bound:.1f}s"))


__all__ = ["PendingKind", "PendingRequest", "PendingRequests"]
