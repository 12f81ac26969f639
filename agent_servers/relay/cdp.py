"""Minimal Chrome DevTools Protocol client (blocking, websocket-client)."""

from __future__ import annotations

import json
import logging
import time
from contextlib import suppress
from typing import Any

from .errors import CdpError

_LOGGER = logging.getLogger("agent.relay.cdp")


def _import_websocket():
    try:
        import websocket  # type: ignore[import-not-found]

        return websocket
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "CDP access requires the 'websocket-client' Python package. Install it (pip install websocket-client)."
        ) from exc


def _http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from URL."""
    from urllib.error import URLError
    from urllib.request import urlopen

    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (URLError, TimeoutError, ValueError) as e:
        raise CdpError(str(e)) from e


def list_tabs(host: str, port: int, *, timeout: float = 2.0) -> list[dict[str, Any]]:
    """Page targets from the DevTools `/json/list` endpoint."""
    data = _http_get_json(f"http://{host}:{int(port)}/json/list", timeout=timeout)
    if not isinstance(data, list):
        raise CdpError("unexpected /json/list response")
    return [t for t in data if isinstance(t, dict) and t.get("type") == "page" and t.get("id")]


def find_tab(host: str, port: int, tab_id: str | None = None, *, timeout: float = 2.0) -> dict[str, Any]:
    tabs = list_tabs(host, port, timeout=timeout)
    if tab_id:
        for tab in tabs:
            if tab.get("id") == tab_id:
                return tab
        raise CdpError(f"tab {tab_id} not found")
    if not tabs:
        raise CdpError("no page tabs available")
    return tabs[0]


class CdpConnection:
    """Low-level CDP WebSocket connection to one page target."""

    def __init__(self, ws_url: str, timeout: float = 10.0):
        websocket = _import_websocket()
        try:
            self.ws = websocket.create_connection(ws_url, timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            raise CdpError(f"cannot connect to {ws_url}: {exc}") from exc
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send CDP command and wait for response."""
        msg_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params
        try:
            self.ws.send(json.dumps(msg))
        except Exception as exc:  # noqa: BLE001
            raise CdpError(str(exc)) from exc
        return self._recv_until(msg_id)

    def _recv_until(self, expected_id: int) -> dict[str, Any]:
        deadline = time.time() + self.timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise CdpError("CDP response timed out")

            # Short socket timeouts so the overall deadline holds.
            try:
                self.ws.settimeout(min(0.5, remaining))
                raw = self.ws.recv()
            except Exception as exc:  # noqa: BLE001
                msg = str(exc).lower()
                if isinstance(exc, TimeoutError) or "timed out" in msg:
                    continue
                raise CdpError(str(exc)) from exc

            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(data, dict):
                continue

            if isinstance(data.get("method"), str) and "id" not in data:
                _LOGGER.debug("CDP event %s ignored", data["method"])
                continue

            if data.get("id") == expected_id:
                if "error" in data:
                    raise CdpError(str(data["error"]))
                result = data.get("result")
                return result if isinstance(result, dict) else {}

    def close(self) -> None:
        with suppress(Exception):
            self.ws.close()


__all__ = ["CdpConnection", "find_tab", "list_tabs"]
