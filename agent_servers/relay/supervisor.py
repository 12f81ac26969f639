"""Connection supervisor: owns control links and routes traffic per tab.

The supervisor listens on the bridge hub. Each attached bridge port belongs to
one tab; messages arriving on it drive the tab's control link (connect,
disconnect, forward) or ask for a capture of the visible surface. Frames and
lifecycle events from control links flow the other way, back to the tab's
currently attached port.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterator
from dataclasses import dataclass, field
from typing import Any

from .bridge import BridgeHub, BridgePort, tab_id_from_port_name
from .config import RelayConfig
from .control_link import LINK_CLOSED_EVENT, LINK_MESSAGE_EVENT, ControlLink, LinkEvent, LinkState
from .errors import ChannelDetachedError, TransportError
from .host import SurfaceCapturer
from .protocol import (
    CONNECT,
    DISCONNECT,
    FORWARD,
    REQUEST_TAB_CAPTURE,
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
    STATUS_NOT_CONNECTED,
    STATUS_TAB_REMOVED,
    capture_complete,
    error_status,
    link_message,
    link_status,
)

_LOGGER = logging.getLogger("agent.relay.supervisor")

LinkFactory = Callable[..., ControlLink]


@dataclass
class TabConnection:
    tab_id: str
    channel_name: str | None = None
    link: ControlLink | None = None
    port: BridgePort | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def link_state(self) -> LinkState:
        return self.link.state if self.link is not None else LinkState.ABSENT


class ConnectionRegistry:
    """Tab identity -> TabConnection."""

    def __init__(self) -> None:
        self._entries: dict[str, TabConnection] = {}

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._entries

    def __iter__(self) -> Iterator[TabConnection]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, tab_id: str) -> TabConnection | None:
        return self._entries.get(tab_id)

    def open(self, tab_id: str) -> TabConnection:
        entry = self._entries.get(tab_id)
        if entry is None:
            entry = TabConnection(tab_id=tab_id)
            self._entries[tab_id] = entry
        return entry

    def remove(self, tab_id: str) -> TabConnection | None:
        return self._entries.pop(tab_id, None)


class ConnectionSupervisor:
    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        hub: BridgeHub | None = None,
        capturer: SurfaceCapturer | None = None,
        link_factory: LinkFactory = ControlLink,
    ) -> None:
        self.config = config or RelayConfig()
        self.hub = hub or BridgeHub()
        self.registry = ConnectionRegistry()
        self._capturer = capturer
        self._link_factory = link_factory
        self._events: asyncio.Queue[LinkEvent] = asyncio.Queue()
        self._event_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._event_task is not None:
            return
        self._event_task = asyncio.create_task(self._consume_events(), name="supervisor-events")
        self.hub.add_listener(self.attach)
        _LOGGER.info("connection supervisor started")

    async def stop(self) -> None:
        self.hub.remove_listener(self.attach)
        for entry in self.registry:
            async with entry.lock:
                await self._close_link(entry)
                port = entry.port
                entry.port = None
            if port is not None:
                port.disconnect()
            self.registry.remove(entry.tab_id)

        tasks = list(self._tasks)
        if self._event_task is not None:
            tasks.append(self._event_task)
            self._event_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        _LOGGER.info("connection supervisor stopped")

    # ─────────────────────────────────────────────────────────────────────────
    # Bridge side
    # ─────────────────────────────────────────────────────────────────────────

    def attach(self, port: BridgePort) -> None:
        """Hub listener: take the supervisor's end of a new bridge channel."""
        tab_id = tab_id_from_port_name(port.name)
        if tab_id is None:
            _LOGGER.warning("rejecting bridge port with unexpected name %r", port.name)
            port.disconnect()
            return
        entry = self.registry.open(tab_id)
        if entry.port is not None and entry.port is not port:
            _LOGGER.info("tab %s: bridge channel replaced", tab_id)
        entry.port = port
        port.on_disconnect(lambda p: self._on_port_detached(tab_id, p))
        self._spawn(self._pump(tab_id, port), name=f"supervisor-pump-{tab_id}")
        _LOGGER.info("tab %s: bridge channel attached", tab_id)

    def _on_port_detached(self, tab_id: str, port: BridgePort) -> None:
        entry = self.registry.get(tab_id)
        if entry is not None and entry.port is port:
            entry.port = None
            _LOGGER.info("tab %s: bridge channel detached (control link kept)", tab_id)

    async def _pump(self, tab_id: str, port: BridgePort) -> None:
        async for msg in port:
            try:
                await self._dispatch(tab_id, port, msg)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("tab %s: failed to handle bridge message", tab_id)

    async def _dispatch(self, tab_id: str, port: BridgePort, msg: Any) -> None:
        mtype = msg.get("type") if isinstance(msg, dict) else None
        _LOGGER.debug("tab %s: bridge message %s", tab_id, mtype)

        if mtype == CONNECT:
            self._spawn(self.connect(tab_id, msg.get("channelName")), name=f"supervisor-connect-{tab_id}")
            return
        if mtype == DISCONNECT:
            self._spawn(self.disconnect(tab_id, msg.get("channelName")), name=f"supervisor-disconnect-{tab_id}")
            return
        if mtype == FORWARD:
            await self.forward(tab_id, msg.get("payload"))
            return
        if mtype == REQUEST_TAB_CAPTURE:
            request_id = msg.get("requestId")
            if isinstance(request_id, bool) or not isinstance(request_id, (str, int)) or request_id == "":
                _LOGGER.warning("tab %s: capture request without requestId dropped", tab_id)
                return
            self._spawn(self.capture_tab(tab_id, request_id, reply_to=port), name=f"supervisor-capture-{tab_id}")
            return

        _LOGGER.warning("tab %s: unknown bridge message type %r dropped", tab_id, mtype)

    def _post(self, port: BridgePort | None, message: dict[str, Any]) -> bool:
        if port is None or not port.connected:
            _LOGGER.debug("no bridge channel; %s dropped", message.get("type"))
            return False
        try:
            port.post_message(message)
        except ChannelDetachedError:
            _LOGGER.warning("bridge channel went away; %s dropped", message.get("type"))
            return False
        return True

    def _broadcast(self, tab_id: str, message: dict[str, Any]) -> bool:
        entry = self.registry.get(tab_id)
        return self._post(entry.port if entry is not None else None, message)

    # ─────────────────────────────────────────────────────────────────────────
    # Control link operations
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self, tab_id: str, channel_name: str | None) -> None:
        name = (channel_name or "").strip() if isinstance(channel_name, str) else ""
        entry = self.registry.open(tab_id)
        async with entry.lock:
            current = entry.link
            if current is not None and current.channel_name == name and current.is_open:
                _LOGGER.info("tab %s: already connected to %s", tab_id, name)
                self._broadcast(tab_id, link_status(STATUS_CONNECTED, name))
                return
            if current is not None:
                # Replaced links close silently; the new link reports its own status.
                await self._close_link(entry)

            try:
                url = self.config.endpoint_url(name)
            except ValueError as exc:
                self._broadcast(tab_id, link_status(error_status(str(exc)), name or None))
                return

            entry.channel_name = name
            link = self._link_factory(
                tab_id,
                name,
                url,
                self._events.put_nowait,
                open_timeout=self.config.open_timeout,
                max_size=self.config.max_frame_bytes,
            )
            entry.link = link
            try:
                await link.open()
            except TransportError as exc:
                if entry.link is link:
                    entry.link = None
                _LOGGER.warning("tab %s: control link to %s failed: %s", tab_id, name, exc)
                self._broadcast(tab_id, link_status(error_status(str(exc)), name))
                return

            if self.registry.get(tab_id) is not entry or entry.link is not link:
                await link.close()
                return
            _LOGGER.info("tab %s: control link to %s open", tab_id, name)
            self._broadcast(tab_id, link_status(STATUS_CONNECTED, name))

    async def disconnect(self, tab_id: str, channel_name: str | None) -> None:
        entry = self.registry.get(tab_id)
        if entry is None:
            _LOGGER.info("tab %s: disconnect for unknown tab ignored", tab_id)
            return
        async with entry.lock:
            link = entry.link
            if link is None or not channel_name or link.channel_name != channel_name:
                self._broadcast(tab_id, link_status(STATUS_NOT_CONNECTED, channel_name))
                return
            await self._close_link(entry, status=STATUS_DISCONNECTED)
            entry.channel_name = None

    async def forward(self, tab_id: str, payload: Any) -> bool:
        entry = self.registry.get(tab_id)
        link = entry.link if entry is not None else None
        if link is None or not link.is_open:
            rtype = payload.get("type") if isinstance(payload, dict) else None
            _LOGGER.warning("tab %s: no open control link; %s dropped", tab_id, rtype)
            return False
        try:
            await link.send(payload)
        except TransportError as exc:
            _LOGGER.warning("tab %s: forward failed: %s", tab_id, exc)
            return False
        return True

    async def capture_tab(self, tab_id: str, request_id: str | int, *, reply_to: BridgePort | None = None) -> None:
        data_url: str | None = None
        error: str | None = None
        if self._capturer is None:
            error = "surface capture is not available"
        else:
            try:
                data_url = await self._capturer.capture(tab_id)
            except Exception as exc:  # noqa: BLE001
                error = str(exc) or type(exc).__name__
        if error is None and not data_url:
            error = "Captured empty image"
        if error is not None:
            _LOGGER.warning("tab %s: capture %s failed: %s", tab_id, request_id, error)
            data_url = None

        message = capture_complete(request_id, data_url=data_url, error=error)
        if reply_to is not None:
            self._post(reply_to, message)
        else:
            self._broadcast(tab_id, message)

    # ─────────────────────────────────────────────────────────────────────────
    # Tab lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def on_tab_removed(self, tab_id: str) -> None:
        entry = self.registry.get(tab_id)
        if entry is None:
            return
        async with entry.lock:
            channel_name = entry.channel_name
            await self._close_link(entry)
            port = entry.port
            entry.port = None
            self.registry.remove(tab_id)
        if port is not None:
            # Terminal: the executor must not reconnect a tab that is gone.
            self._post(port, link_status(STATUS_TAB_REMOVED, channel_name))
            port.disconnect()
        _LOGGER.info("tab %s: removed", tab_id)

    async def on_tab_navigated(self, tab_id: str, url: str | None = None) -> None:
        entry = self.registry.get(tab_id)
        if entry is None or entry.link is None:
            return
        async with entry.lock:
            if entry.link is not None:
                _LOGGER.info("tab %s: navigated to %s; closing control link", tab_id, url or "?")
                await self._close_link(entry, status=STATUS_DISCONNECTED)

    async def _close_link(self, entry: TabConnection, *, status: str | None = None) -> None:
        link = entry.link
        entry.link = None
        if link is None:
            return
        await link.close()
        if status is not None:
            self._post(entry.port, link_status(status, link.channel_name))

    # ─────────────────────────────────────────────────────────────────────────
    # Link events
    # ─────────────────────────────────────────────────────────────────────────

    async def _consume_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                self._handle_event(event)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("failed to handle control link event")

    def _handle_event(self, event: LinkEvent) -> None:
        link = event.link
        entry = self.registry.get(link.tab_id)
        if entry is None or entry.link is not link:
            _LOGGER.debug("stale %s event from %r ignored", event.kind, link)
            return

        if event.kind == LINK_MESSAGE_EVENT:
            self._broadcast(link.tab_id, link_message(event.data))
            return
        if event.kind == LINK_CLOSED_EVENT:
            entry.link = None
            status = STATUS_DISCONNECTED if event.was_clean else error_status(event.reason)
            self._broadcast(
                link.tab_id,
                link_status(status, link.channel_name, wasClean=bool(event.was_clean), reason=event.reason),
            )
            return
        _LOGGER.warning("unknown control link event %r ignored", event.kind)

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("supervisor task %s failed: %s", task.get_name(), exc, exc_info=exc)


__all__ = ["ConnectionRegistry", "ConnectionSupervisor", "TabConnection"]
