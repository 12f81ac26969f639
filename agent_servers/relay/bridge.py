"""Bridge channel between the connection supervisor and the command executor.

A bridge channel is a pair of connected ports. Each side posts JSON messages to
the other and iterates over its own inbox. Disconnecting either end closes
both; the *other* end's disconnect callbacks fire, mirroring how a runtime
messaging port reports that its peer went away.

The hub is the rendezvous point: the executor asks for a port addressed by tab
identity, and the supervisor (registered as a listener) receives the other end.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import suppress
from typing import Any

from .errors import ChannelDetachedError

_LOGGER = logging.getLogger("agent.relay.bridge")

PORT_NAME_PREFIX = "executor-"

_CLOSED = object()


def port_name_for_tab(tab_id: str) -> str:
    return f"{PORT_NAME_PREFIX}{tab_id}"


def tab_id_from_port_name(name: str) -> str | None:
    if not isinstance(name, str) or not name.startswith(PORT_NAME_PREFIX):
        return None
    tab_id = name[len(PORT_NAME_PREFIX) :]
    return tab_id or None


class BridgePort:
    """One end of a bridge channel."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._peer: BridgePort | None = None
        self._connected = True
        self._on_disconnect: list[Callable[[BridgePort], None]] = []

    @classmethod
    def pair(cls, name: str) -> tuple[BridgePort, BridgePort]:
        a = cls(name)
        b = cls(name)
        a._peer = b
        b._peer = a
        return a, b

    @property
    def connected(self) -> bool:
        return self._connected

    def post_message(self, message: Any) -> None:
        """Deliver a copy of `message` to the peer's inbox."""
        peer = self._peer
        if not self._connected or peer is None:
            raise ChannelDetachedError(f"bridge port {self.name} is disconnected")
        # JSON round-trip: enforces JSON-compatible payloads and copies them.
        peer._inbox.put_nowait(json.loads(json.dumps(message)))

    async def receive(self) -> Any:
        msg = await self._inbox.get()
        if msg is _CLOSED:
            # Keep the sentinel so later receivers also stop.
            self._inbox.put_nowait(_CLOSED)
            raise ChannelDetachedError(f"bridge port {self.name} is disconnected")
        return msg

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[Any]:
        while True:
            try:
                msg = await self.receive()
            except ChannelDetachedError:
                return
            yield msg

    def on_disconnect(self, callback: Callable[[BridgePort], None]) -> None:
        self._on_disconnect.append(callback)

    def disconnect(self) -> None:
        """Close both ends. Idempotent; fires the peer's callbacks once."""
        if not self._connected:
            return
        peer = self._peer
        self._mark_closed()
        if peer is not None and peer._connected:
            peer._mark_closed()
            peer._fire_disconnect()

    def _mark_closed(self) -> None:
        self._connected = False
        self._inbox.put_nowait(_CLOSED)

    def _fire_disconnect(self) -> None:
        callbacks = list(self._on_disconnect)
        self._on_disconnect.clear()
        for cb in callbacks:
            try:
                cb(self)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("bridge port %s: disconnect callback failed", self.name)


class BridgeHub:
    """Hands out bridge channels addressed by tab identity."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[BridgePort], None]] = []

    def add_listener(self, listener: Callable[[BridgePort], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[BridgePort], None]) -> None:
        with suppress(ValueError):
            self._listeners.remove(listener)

    def connect(self, tab_id: str) -> BridgePort:
        """Open a channel for `tab_id` and return the caller's end."""
        if not self._listeners:
            raise ChannelDetachedError("no supervisor is listening for bridge channels")
        tid = str(tab_id or "").strip()
        if not tid:
            raise ValueError("tab_id is required")
        local, remote = BridgePort.pair(port_name_for_tab(tid))
        for listener in list(self._listeners):
            listener(remote)
        _LOGGER.debug("bridge channel opened for tab %s", tid)
        return local


__all__ = ["BridgeHub", "BridgePort", "PORT_NAME_PREFIX", "port_name_for_tab", "tab_id_from_port_name"]
