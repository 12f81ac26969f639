"""Control link: the websocket connection from a tab to the external controller."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import TransportError

_LOGGER = logging.getLogger("agent.relay.control_link")


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The relay requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class LinkState(str, Enum):
    ABSENT = "Absent"
    CONNECTING = "Connecting"
    OPEN = "Open"
    CLOSED = "Closed"


LINK_MESSAGE_EVENT = "message"
LINK_CLOSED_EVENT = "closed"


@dataclass(frozen=True)
class LinkEvent:
    link: ControlLink
    kind: str
    data: Any = None
    reason: str | None = None
    was_clean: bool | None = None


LinkEventSink = Callable[[LinkEvent], None]


def decode_frame(raw: Any) -> Any:
    """Decode an inbound frame; frames that are not JSON are passed on as strings."""
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        _LOGGER.warning("control link frame is not valid JSON; passing it on as a string")
        return raw


class ControlLink:
    """One websocket to `/agents/<channel>/subscribe`, used once.

    The link reports everything that happens after `open()` succeeds through
    the event sink: decoded inbound frames, and exactly one `closed` event
    (clean or not). `open()` failures are raised as TransportError instead.
    """

    def __init__(
        self,
        tab_id: str,
        channel_name: str,
        url: str,
        sink: LinkEventSink,
        *,
        open_timeout: float = 10.0,
        max_size: int = 16_000_000,
    ) -> None:
        self.tab_id = tab_id
        self.channel_name = channel_name
        self.url = url
        self._sink = sink
        self._open_timeout = float(open_timeout)
        self._max_size = int(max_size)
        self.state = LinkState.ABSENT
        self._ws: Any | None = None
        self._reader: asyncio.Task | None = None
        self._close_requested = False

    def __repr__(self) -> str:
        return f"ControlLink(tab={self.tab_id!r}, channel={self.channel_name!r}, state={self.state.value})"

    @property
    def is_open(self) -> bool:
        return self.state is LinkState.OPEN

    async def open(self) -> None:
        if self.state is not LinkState.ABSENT:
            raise TransportError(f"control link already used (state={self.state.value})")
        websockets = _import_websockets()
        self.state = LinkState.CONNECTING
        _LOGGER.info("tab %s: connecting control link %s", self.tab_id, self.url)
        try:
            ws = await websockets.connect(
                self.url,
                open_timeout=self._open_timeout,
                ping_interval=None,
                max_size=self._max_size,
            )
        except Exception as exc:  # noqa: BLE001
            self.state = LinkState.CLOSED
            raise TransportError(str(exc) or type(exc).__name__) from exc

        if self._close_requested:
            with suppress(Exception):
                await ws.close()
            self.state = LinkState.CLOSED
            raise TransportError("control link closed while connecting")

        self._ws = ws
        self.state = LinkState.OPEN
        self._reader = asyncio.create_task(self._read_loop(ws), name=f"control-link-{self.tab_id}")

    async def send(self, payload: Any) -> None:
        ws = self._ws
        if ws is None or self.state is not LinkState.OPEN:
            raise TransportError("control link is not open")
        try:
            await ws.send(json.dumps(payload, ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"control link send failed: {exc}") from exc

    async def close(self) -> None:
        """Close the link and wait until the reader has finished."""
        self._close_requested = True
        ws = self._ws
        if ws is not None:
            with suppress(Exception):
                await ws.close()
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await reader
        self.state = LinkState.CLOSED

    async def _read_loop(self, ws) -> None:  # type: ignore[no-untyped-def]
        websockets = _import_websockets()
        was_clean = True
        reason: str | None = None
        try:
            async for raw in ws:
                self._emit(LinkEvent(self, LINK_MESSAGE_EVENT, data=decode_frame(raw)))
        except websockets.exceptions.ConnectionClosedOK:
            was_clean = True
        except websockets.exceptions.ConnectionClosed as exc:
            was_clean = False
            reason = str(exc) or "connection closed abnormally"
        except Exception as exc:  # noqa: BLE001
            was_clean = False
            reason = str(exc) or type(exc).__name__
        finally:
            self._ws = None
            self.state = LinkState.CLOSED
            _LOGGER.info(
                "tab %s: control link %s closed (clean=%s%s)",
                self.tab_id,
                self.channel_name,
                was_clean,
                f", reason={reason}" if reason else "",
            )
            self._emit(LinkEvent(self, LINK_CLOSED_EVENT, reason=reason, was_clean=was_clean))

    def _emit(self, event: LinkEvent) -> None:
        try:
            self._sink(event)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("tab %s: control link event sink failed", self.tab_id)


__all__ = [
    "ControlLink",
    "LINK_CLOSED_EVENT",
    "LINK_MESSAGE_EVENT",
    "LinkEvent",
    "LinkEventSink",
    "LinkState",
    "decode_frame",
]
