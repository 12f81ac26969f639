"""Agent server: the controller side of the control link.

Executors subscribe at `/agents/<channel>/subscribe`. Commands submitted for a
channel fan out to all of its subscribers and the first correlated result wins.
Command-line clients use `/agents/<channel>/call`, a small rpc/rpcResult
request-response protocol on top of the same server.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import time
from http import HTTPStatus
from typing import Any
from urllib.parse import quote, unquote, urlsplit

from .control_link import _import_websockets
from .errors import PendingTimeoutError, RelayError, TransportError
from .pending import PendingKind, PendingRequests
from .protocol import (
    CAPTURE_ELEMENTS_SCREENSHOT,
    EVALUATE_SCRIPT,
    PASTE_DATA,
    RESULT_TYPES,
    parse_command,
)

_LOGGER = logging.getLogger("agent.relay.controller")

SUBSCRIBE_PATH = re.compile(r"^/agents/([^/]+)/subscribe/?$")
CALL_PATH = re.compile(r"^/agents/([^/]+)/call/?$")

WELCOME_SCRIPT = (
    "({ pageTitle: document.title, userAgent: navigator.userAgent, "
    "location: window.location.href, connectionTime: new Date().toISOString() })"
)
WELCOME_PREFIX = "welcome"

# rpc method -> (command type, pending kind, requestId prefix)
CALL_METHODS: dict[str, tuple[str, PendingKind, str]] = {
    "eval": (EVALUATE_SCRIPT, PendingKind.EVALUATION, "eval"),
    "screenshot": (CAPTURE_ELEMENTS_SCREENSHOT, PendingKind.SCREENSHOT, "screenshot"),
    "paste": (PASTE_DATA, PendingKind.PASTE, "paste"),
}


def new_request_id(prefix: str, channel: str) -> str:
    return f"{prefix}-{time.time_ns()}-{channel}"


def build_command(method: str, request_id: str, params: dict[str, Any]) -> dict[str, Any]:
    """Command frame for an rpc method; raises ValueError or MalformedCommandError."""
    spec = CALL_METHODS.get(method)
    if spec is None:
        raise ValueError(f"unknown method: {method!r}")
    ctype = spec[0]
    frame: dict[str, Any] = {"type": ctype, "requestId": request_id}
    if ctype == EVALUATE_SCRIPT:
        frame["script"] = params.get("script")
    elif ctype == CAPTURE_ELEMENTS_SCREENSHOT:
        frame["selectors"] = params.get("selectors")
    else:
        frame["selector"] = params.get("selector")
        frame["dataUrl"] = params.get("dataUrl")
    parse_command(frame)
    return frame


class AgentServer:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 9999,
        *,
        call_timeout: float = 30.0,
        welcome_script: str | None = WELCOME_SCRIPT,
        max_size: int = 16_000_000,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.call_timeout = call_timeout
        self.welcome_script = welcome_script
        self.max_size = int(max_size)
        self.pending = PendingRequests(timeout=call_timeout)
        self._subscribers: dict[str, set[Any]] = {}
        self._server: Any | None = None

    def subscribers(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def start(self) -> None:
        if self._server is not None:
            return
        websockets = _import_websockets()
        self._server = await websockets.serve(
            self._handler,
            self.host,
            self.port,
            process_request=self._process_request,
            max_size=self.max_size,
            ping_interval=None,
        )
        sockets = list(getattr(self._server, "sockets", None) or [])
        if sockets and self.port == 0:
            self.port = int(sockets[0].getsockname()[1])
        _LOGGER.info("agent server listening on ws://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        server = self._server
        self._server = None
        if server is not None:
            server.close()
            await server.wait_closed()
        self.pending.reject_all(RelayError("agent server stopped"))

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def call(
        self,
        channel: str,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a command to every subscriber of `channel` and await its result frame."""
        spec = CALL_METHODS.get(method)
        if spec is None:
            raise ValueError(f"unknown method: {method!r}")
        subscribers = list(self._subscribers.get(channel, ()))
        if not subscribers:
            raise RelayError(f"no agent subscribed to channel {channel!r}")

        request_id = new_request_id(spec[2], channel)
        frame = build_command(method, request_id, params or {})
        fut = self.pending.create(request_id, spec[1], owner=channel, timeout=timeout)

        sent = await self._fanout(subscribers, frame)
        if not sent:
            self.pending.reject(request_id, TransportError(f"could not deliver {method} to channel {channel!r}"))
        _LOGGER.info("channel %s: %s sent to %d subscriber(s)", channel, request_id, sent)
        return await fut

    async def _fanout(self, subscribers: list[Any], frame: dict[str, Any]) -> int:
        payload = json.dumps(frame, ensure_ascii=False)
        sent = 0
        for ws in subscribers:
            try:
                await ws.send(payload)
                sent += 1
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("send to subscriber failed: %s", exc)
        return sent

    # ─────────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────────

    def _process_request(self, connection, request):  # type: ignore[no-untyped-def]
        path = urlsplit(str(getattr(request, "path", "") or "")).path
        if SUBSCRIBE_PATH.match(path) or CALL_PATH.match(path):
            return None
        return connection.respond(HTTPStatus.NOT_FOUND, "not found\n")

    async def _handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        path = urlsplit(str(ws.request.path or "")).path
        m = SUBSCRIBE_PATH.match(path)
        if m:
            await self._handle_subscriber(ws, unquote(m.group(1)))
            return
        m = CALL_PATH.match(path)
        if m:
            await self._handle_caller(ws, unquote(m.group(1)))
            return
        with contextlib.suppress(Exception):
            await ws.close(code=1008, reason="unknown path")

    async def _handle_subscriber(self, ws, channel: str) -> None:  # type: ignore[no-untyped-def]
        subs = self._subscribers.setdefault(channel, set())
        subs.add(ws)
        _LOGGER.info("channel %s: subscriber connected (%d total)", channel, len(subs))

        if self.welcome_script:
            welcome = {
                "type": EVALUATE_SCRIPT,
                "requestId": new_request_id(WELCOME_PREFIX, channel),
                "script": self.welcome_script,
            }
            await self._fanout([ws], welcome)

        try:
            async for raw in ws:
                self._on_result(channel, raw)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.info("channel %s: subscriber dropped: %s", channel, exc)
        finally:
            subs.discard(ws)
            if not subs:
                self._subscribers.pop(channel, None)
                rejected = self.pending.reject_owner(channel, RelayError(f"agent on channel {channel!r} disconnected"))
                if rejected:
                    _LOGGER.warning("channel %s: last subscriber left; %d request(s) rejected", channel, rejected)
            _LOGGER.info("channel %s: subscriber disconnected", channel)

    def _on_result(self, channel: str, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            _LOGGER.warning("channel %s: non-JSON frame ignored", channel)
            return
        if not isinstance(msg, dict) or msg.get("type") not in RESULT_TYPES:
            _LOGGER.debug("channel %s: non-result frame ignored", channel)
            return
        request_id = str(msg.get("requestId") or "")
        if request_id.startswith(WELCOME_PREFIX + "-"):
            _LOGGER.info("channel %s: welcome result %s", channel, msg.get("result"))
            return
        if not self.pending.resolve(request_id, msg):
            _LOGGER.warning("channel %s: result for unknown or settled request %r ignored", channel, request_id)

    async def _handle_caller(self, ws, channel: str) -> None:  # type: ignore[no-untyped-def]
        tasks: set[asyncio.Task] = set()

        async def _reply(req_id: Any, *, ok: bool, result: Any = None, error: str | None = None) -> None:
            payload: dict[str, Any] = {"type": "rpcResult", "id": req_id, "ok": bool(ok)}
            if ok:
                payload["result"] = result
            else:
                payload["error"] = {"message": str(error or "unknown error")}
            with contextlib.suppress(Exception):
                await ws.send(json.dumps(payload, ensure_ascii=False))

        async def _serve(msg: dict[str, Any]) -> None:
            req_id = msg.get("id")
            params = msg.get("params") if isinstance(msg.get("params"), dict) else {}
            timeout = self.call_timeout
            raw_timeout = msg.get("timeoutMs")
            if isinstance(raw_timeout, (int, float)) and not isinstance(raw_timeout, bool) and raw_timeout > 0:
                timeout = float(raw_timeout) / 1000.0
            try:
                result = await self.call(channel, str(msg.get("method") or ""), params, timeout=timeout)
            except (RelayError, ValueError) as exc:
                await _reply(req_id, ok=False, error=str(exc))
                return
            await _reply(req_id, ok=True, result=result)

        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(msg, dict) or msg.get("type") != "rpc":
                    continue
                task = asyncio.create_task(_serve(msg))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("channel %s: caller dropped: %s", channel, exc)
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)


async def call_agent(
    host: str,
    port: int,
    channel: str,
    method: str,
    params: dict[str, Any],
    *,
    timeout: float = 30.0,
) -> dict[str, Any]:
    """Submit one command through a running agent server and return the result frame."""
    websockets = _import_websockets()
    url = f"ws://{host}:{int(port)}/agents/{quote(channel, safe='')}/call"
    try:
        async with websockets.connect(url, ping_interval=None, open_timeout=5.0, max_size=None) as ws:
            await ws.send(
                json.dumps({"type": "rpc", "id": 1, "method": method, "params": params, "timeoutMs": int(timeout * 1000)})
            )
            while True:
                raw = await asyncio.wait_for(ws.recv(), timeout=timeout + 5.0)
                msg = json.loads(raw)
                if isinstance(msg, dict) and msg.get("type") == "rpcResult" and msg.get("id") == 1:
                    break
    except asyncio.TimeoutError as exc:
        raise PendingTimeoutError(f"{method} timed out after {timeout:.1f}s") from exc
    except (OSError, ValueError, websockets.exceptions.WebSocketException) as exc:
        raise TransportError(f"agent server at {url} unavailable: {exc}") from exc

    if not msg.get("ok"):
        err = msg.get("error") if isinstance(msg.get("error"), dict) else {}
        raise RelayError(str(err.get("message") or "call failed"))
    result = msg.get("result")
    return result if isinstance(result, dict) else {}


__all__ = [
    "AgentServer",
    "CALL_METHODS",
    "WELCOME_SCRIPT",
    "build_command",
    "call_agent",
    "new_request_id",
]
