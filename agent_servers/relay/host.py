"""Host capabilities consumed by the relay, and their CDP implementations.

The executor needs in-page evaluation; the supervisor needs visible-surface
capture and tab lifecycle notifications. Tests provide in-process fakes for
the two protocols below; the `relay` command wires the CDP versions.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Protocol

from .cdp import CdpConnection, find_tab, list_tabs
from .errors import CaptureError, CdpError

_LOGGER = logging.getLogger("agent.relay.host")


class PageEvaluator(Protocol):
    async def evaluate(self, source: str) -> tuple[Any, Any | None]:
        """Run `source` in the page; return (value, exception descriptor or None)."""
        ...


class SurfaceCapturer(Protocol):
    async def capture(self, tab_id: str) -> str:
        """PNG data URL of the tab's visible surface."""
        ...


class CdpTab:
    """One lazily opened CDP connection, shared by worker threads."""

    def __init__(self, ws_url: str, *, timeout: float = 10.0) -> None:
        self.ws_url = ws_url
        self.timeout = timeout
        self._conn: CdpConnection | None = None
        self._lock = threading.Lock()

    def call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        with self._lock:
            if self._conn is None:
                self._conn = CdpConnection(self.ws_url, timeout=self.timeout)
            try:
                return self._conn.send(method, params)
            except CdpError:
                # Drop the connection; the next call reconnects.
                self._conn.close()
                self._conn = None
                raise

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


class CdpHost:
    """Resolves tab ids to CDP connections on one DevTools endpoint."""

    def __init__(self, host: str = "127.0.0.1", port: int = 9222, *, timeout: float = 10.0) -> None:
        self.host = host
        self.port = int(port)
        self.timeout = timeout
        self._tabs: dict[str, CdpTab] = {}

    def tab(self, tab_id: str) -> CdpTab:
        tab = self._tabs.get(tab_id)
        if tab is None:
            target = find_tab(self.host, self.port, tab_id)
            ws_url = target.get("webSocketDebuggerUrl")
            if not ws_url:
                raise CdpError(f"tab {tab_id} has no debugger URL (already attached elsewhere?)")
            tab = CdpTab(ws_url, timeout=self.timeout)
            self._tabs[tab_id] = tab
        return tab

    def list_tabs(self) -> list[dict[str, Any]]:
        return list_tabs(self.host, self.port)

    def forget(self, tab_id: str) -> None:
        tab = self._tabs.pop(tab_id, None)
        if tab is not None:
            tab.close()

    def close(self) -> None:
        for tab_id in list(self._tabs):
            self.forget(tab_id)


def remote_value(obj: Any) -> Any:
    """Convert a CDP RemoteObject to a Python value; undefined and null become None."""
    if not isinstance(obj, dict):
        return None
    if obj.get("type") == "undefined":
        return None
    if obj.get("type") == "object" and obj.get("subtype") == "null":
        return None
    if "value" in obj:
        return obj["value"]
    if "unserializableValue" in obj:
        return str(obj["unserializableValue"])
    return obj.get("description")


class CdpPageEvaluator:
    def __init__(self, host: CdpHost, tab_id: str) -> None:
        self._host = host
        self.tab_id = tab_id

    def _evaluate(self, source: str) -> dict[str, Any]:
        return self._host.tab(self.tab_id).call(
            "Runtime.evaluate",
            {"expression": source, "returnByValue": True, "awaitPromise": True},
        )

    async def evaluate(self, source: str) -> tuple[Any, Any | None]:
        result = await asyncio.to_thread(self._evaluate, source)
        details = result.get("exceptionDetails")
        if isinstance(details, dict):
            info: dict[str, Any] = dict(details.get("exception") or {})
            if details.get("text"):
                info.setdefault("text", details["text"])
            return None, info or {"text": "Uncaught"}
        return remote_value(result.get("result")), None


class CdpSurfaceCapturer:
    def __init__(self, host: CdpHost) -> None:
        self._host = host

    def _capture(self, tab_id: str) -> str:
        result = self._host.tab(tab_id).call("Page.captureScreenshot", {"format": "png", "fromSurface": True})
        return str(result.get("data") or "")

    async def capture(self, tab_id: str) -> str:
        data = await asyncio.to_thread(self._capture, tab_id)
        if not data:
            raise CaptureError("Captured empty image")
        return f"data:image/png;base64,{data}"


class TabWatcher:
    """Polls the DevTools tab list and reports removal and navigation."""

    def __init__(self, host: CdpHost, supervisor: Any, *, interval: float = 1.0) -> None:
        self._host = host
        self._supervisor = supervisor
        self.interval = max(0.05, float(interval))
        self._urls: dict[str, str | None] = {}

    def watch(self, tab_id: str, url: str | None = None) -> None:
        self._urls[tab_id] = url

    @property
    def watched(self) -> list[str]:
        return list(self._urls)

    async def poll_once(self) -> None:
        try:
            tabs = await asyncio.to_thread(self._host.list_tabs)
        except CdpError as exc:
            _LOGGER.warning("tab poll failed: %s", exc)
            return
        current = {str(t.get("id")): t.get("url") for t in tabs}
        for tab_id, last_url in list(self._urls.items()):
            if tab_id not in current:
                self._urls.pop(tab_id, None)
                self._host.forget(tab_id)
                await self._supervisor.on_tab_removed(tab_id)
                continue
            url = current[tab_id]
            if last_url is not None and url != last_url:
                await self._supervisor.on_tab_navigated(tab_id, url)
            self._urls[tab_id] = url

    async def run(self) -> None:
        while self._urls:
            await self.poll_once()
            await asyncio.sleep(self.interval)
        _LOGGER.info("no tabs left to watch")


__all__ = [
    "CdpHost",
    "CdpPageEvaluator",
    "CdpSurfaceCapturer",
    "CdpTab",
    "PageEvaluator",
    "SurfaceCapturer",
    "TabWatcher",
    "remote_value",
]
