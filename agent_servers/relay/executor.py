"""Command executor: runs controller commands against the page.

The executor sits on the tab side of a bridge channel. It asks the supervisor
to connect a control link, receives command frames through LINK_MESSAGE,
executes them (script evaluation, element screenshots, synthetic paste) and
sends each correlated result back as FORWARD. It also owns automatic
reconnects through the ReconnectPolicy.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from typing import Any

from .bridge import BridgeHub, BridgePort
from .config import RelayConfig
from .errors import CaptureError, ChannelDetachedError, MalformedCommandError
from .host import PageEvaluator
from .pending import PendingKind, PendingRequests
from .protocol import (
    CONNECT,
    DISCONNECT,
    FORWARD,
    LINK_MESSAGE,
    LINK_STATUS,
    REQUEST_TAB_CAPTURE,
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
    STATUS_NOT_CONNECTED,
    STATUS_TAB_REMOVED,
    TAB_CAPTURE_COMPLETE,
    CaptureElementsScreenshot,
    EvaluateScript,
    PasteData,
    describe_exception,
    evaluation_result,
    is_failure_status,
    malformed_result,
    parse_command,
    paste_result,
)
from .reconnect import ReconnectPolicy
from .screenshot import ScreenshotPipeline

_LOGGER = logging.getLogger("agent.relay.executor")

STATUS_CONNECTING = "Connecting"


def build_paste_script(selector: str, data_url: str) -> str:
    """In-page script dispatching a synthetic paste of `data_url` onto `selector`."""
    args = json.dumps([selector, data_url], ensure_ascii=False)
    return (
        "(async (selector, dataUrl) => {\n"
        "  const element = document.querySelector(selector);\n"
        "  if (!element) {\n"
        "    return { success: false, error: `Element \"${selector}\" not found.` };\n"
        "  }\n"
        "  element.focus();\n"
        "  try {\n"
        "    const response = await fetch(dataUrl);\n"
        "    if (!response.ok) {\n"
        "      throw new Error(`Failed to fetch data URL (status: ${response.status})`);\n"
        "    }\n"
        "    const blob = await response.blob();\n"
        "    const extension = (blob.type.split('/')[1] || 'png').split(';')[0];\n"
        "    const transfer = new DataTransfer();\n"
        "    transfer.items.add(new File([blob], 'pasted_image.' + extension, { type: blob.type }));\n"
        "    const event = new ClipboardEvent('paste', { clipboardData: transfer, bubbles: true, cancelable: true });\n"
        "    element.dispatchEvent(event);\n"
        "    return { success: true, message: `Paste event dispatched to \"${selector}\".` };\n"
        "  } catch (e) {\n"
        "    return { success: false, error: (e && e.message) || String(e) };\n"
        "  }\n"
        f"}})(...{args})"
    )


class CommandExecutor:
    def __init__(
        self,
        tab_id: str,
        hub: BridgeHub,
        evaluator: PageEvaluator,
        *,
        config: RelayConfig | None = None,
        policy: ReconnectPolicy | None = None,
    ) -> None:
        self.tab_id = str(tab_id)
        self.hub = hub
        self.evaluator = evaluator
        self.config = config or RelayConfig()
        self.policy = policy or ReconnectPolicy(
            base_ms=self.config.reconnect_base_ms,
            cap_ms=self.config.reconnect_cap_ms,
        )
        self.pending = PendingRequests(timeout=self.config.capture_timeout_or_none)
        self.screenshots = ScreenshotPipeline(evaluator, self._request_capture)
        self.status = STATUS_DISCONNECTED
        self.last_status: dict[str, Any] | None = None
        self._port: BridgePort | None = None
        self._connected = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def port(self) -> BridgePort | None:
        return self._port

    @property
    def channel_name(self) -> str | None:
        return self.policy.channel_name

    # ─────────────────────────────────────────────────────────────────────────
    # Session control
    # ─────────────────────────────────────────────────────────────────────────

    def attach(self) -> BridgePort:
        """Return the live bridge port, opening a fresh channel if needed."""
        port = self._port
        if port is not None and port.connected:
            return port
        port = self.hub.connect(self.tab_id)
        port.on_disconnect(self._on_port_disconnect)
        self._port = port
        self._spawn(self._pump(port), name=f"executor-pump-{self.tab_id}")
        return port

    def connect(self, channel_name: str | None = None, *, user_initiated: bool = True) -> None:
        if self._closed:
            raise ChannelDetachedError("executor is closed")
        name = (channel_name or self.policy.channel_name or "").strip()
        if not name:
            raise ValueError("channel name is required")
        if user_initiated:
            self.policy.on_user_connect(name)
        else:
            self.policy.channel_name = name
        port = self.attach()
        self.status = STATUS_CONNECTING
        self._connected.clear()
        _LOGGER.info("tab %s: connecting to channel %s (user=%s)", self.tab_id, name, user_initiated)
        port.post_message({"type": CONNECT, "channelName": name})

    def disconnect(self) -> None:
        self.policy.on_user_disconnect()
        port = self._port
        if port is None or not port.connected:
            self.policy.forget_channel()
            self.status = STATUS_DISCONNECTED
            return
        port.post_message({"type": DISCONNECT, "channelName": self.policy.channel_name})

    async def close(self) -> None:
        """Stop reconnecting, drop the bridge channel and fail pending captures."""
        self._closed = True
        self.policy.on_user_disconnect()
        port = self._port
        self._port = None
        if port is not None:
            self.pending.reject_owner(port.name, ChannelDetachedError("channel disconnected"))
            port.disconnect()
        self.pending.reject_all(ChannelDetachedError("executor closed"))
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self.status = STATUS_DISCONNECTED
        self._connected.clear()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _reconnect(self) -> None:
        if self._closed or not self.policy.should_reconnect():
            return
        try:
            self.connect(user_initiated=False)
        except (ChannelDetachedError, ValueError) as exc:
            _LOGGER.warning("tab %s: reconnect attempt failed: %s", self.tab_id, exc)
            self.policy.schedule(self._reconnect)

    def _on_port_disconnect(self, port: BridgePort) -> None:
        if port is not self._port:
            return
        self._port = None
        self.status = STATUS_DISCONNECTED
        self._connected.clear()
        rejected = self.pending.reject_owner(port.name, ChannelDetachedError("channel disconnected"))
        _LOGGER.warning("tab %s: bridge channel disconnected (%d pending rejected)", self.tab_id, rejected)
        if not self._closed:
            self.policy.schedule(self._reconnect)

    def _on_status(self, msg: dict[str, Any]) -> None:
        status = str(msg.get("status") or "")
        self.status = status
        self.last_status = msg
        _LOGGER.info("tab %s: link status %s", self.tab_id, status)
        if status == STATUS_TAB_REMOVED:
            self._connected.clear()
            self.policy.on_user_disconnect()
            self.policy.forget_channel()
            return
        if status == STATUS_CONNECTED:
            self.policy.on_open()
            self._connected.set()
            return
        self._connected.clear()
        if self.policy.user_initiated_disconnect:
            if status == STATUS_NOT_CONNECTED or is_failure_status(status):
                self.policy.forget_channel()
            return
        if is_failure_status(status):
            self.policy.schedule(self._reconnect)

    # ─────────────────────────────────────────────────────────────────────────
    # Bridge traffic
    # ─────────────────────────────────────────────────────────────────────────

    async def _pump(self, port: BridgePort) -> None:
        async for msg in port:
            mtype = msg.get("type") if isinstance(msg, dict) else None
            if mtype == LINK_MESSAGE:
                self._spawn(self._run_command(msg.get("data")), name=f"executor-command-{self.tab_id}")
            elif mtype == LINK_STATUS:
                self._on_status(msg)
            elif mtype == TAB_CAPTURE_COMPLETE:
                self._on_capture_complete(msg)
            else:
                _LOGGER.warning("tab %s: unknown bridge message type %r dropped", self.tab_id, mtype)

    def _on_capture_complete(self, msg: dict[str, Any]) -> None:
        request_id = msg.get("requestId")
        if request_id not in self.pending:
            _LOGGER.warning("tab %s: late or unknown capture result %r ignored", self.tab_id, request_id)
            return
        error = msg.get("error")
        data_url = msg.get("dataUrl")
        if error:
            self.pending.reject(request_id, CaptureError(str(error)))
        elif not data_url:
            self.pending.reject(request_id, CaptureError("Capture returned no dataUrl"))
        else:
            self.pending.resolve(request_id, data_url)

    async def _request_capture(self, request_id: str | int) -> str:
        port = self._port
        if port is None or not port.connected:
            raise ChannelDetachedError("channel disconnected")
        try:
            fut = self.pending.create(request_id, PendingKind.CAPTURE, owner=port.name)
        except ValueError as exc:
            raise CaptureError(str(exc)) from exc
        try:
            port.post_message({"type": REQUEST_TAB_CAPTURE, "requestId": request_id})
        except ChannelDetachedError:
            self.pending.discard(request_id)
            raise
        return await fut

    def _send_result(self, result: dict[str, Any]) -> bool:
        port = self._port
        if port is None or not port.connected:
            _LOGGER.warning("tab %s: no bridge channel; result %s dropped", self.tab_id, result.get("requestId"))
            return False
        try:
            port.post_message({"type": FORWARD, "payload": result})
        except ChannelDetachedError:
            _LOGGER.warning("tab %s: bridge channel went away; result %s dropped", self.tab_id, result.get("requestId"))
            return False
        return True

    async def _run_command(self, frame: Any) -> None:
        result = await self.handle_command(frame)
        if result is not None:
            self._send_result(result)

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_command(self, frame: Any) -> dict[str, Any] | None:
        """Execute one command frame and return its result frame.

        Returns None for frames that are not commands, and for screenshots
        whose bridge channel went away mid-flight.
        """
        try:
            cmd = parse_command(frame)
        except MalformedCommandError as exc:
            result = malformed_result(exc)
            if result is None:
                _LOGGER.warning("tab %s: %s; frame dropped", self.tab_id, exc)
            else:
                _LOGGER.warning("tab %s: malformed command: %s", self.tab_id, exc)
            return result

        _LOGGER.debug("tab %s: command %s", self.tab_id, cmd.request_id)
        if isinstance(cmd, EvaluateScript):
            return await self.evaluate_script(cmd)
        if isinstance(cmd, CaptureElementsScreenshot):
            return await self.screenshots.run(cmd)
        if isinstance(cmd, PasteData):
            return await self.paste_data(cmd)
        return None

    async def evaluate_script(self, cmd: EvaluateScript) -> dict[str, Any]:
        try:
            value, exc_info = await self.evaluator.evaluate(cmd.script)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("tab %s: evaluation %s failed: %s", self.tab_id, cmd.request_id, exc)
            return evaluation_result(cmd.request_id, exception_info=f"Evaluation failed: {exc}")
        if exc_info is not None:
            return evaluation_result(cmd.request_id, exception_info=describe_exception(exc_info))
        return evaluation_result(cmd.request_id, value)

    async def paste_data(self, cmd: PasteData) -> dict[str, Any]:
        try:
            value, exc_info = await self.evaluator.evaluate(build_paste_script(cmd.selector, cmd.data_url))
        except Exception as exc:  # noqa: BLE001
            return paste_result(cmd.request_id, success=False, error=f"Script evaluation exception: {exc}")
        if exc_info is not None:
            return paste_result(
                cmd.request_id,
                success=False,
                error=f"Script evaluation exception: {describe_exception(exc_info)}",
            )
        if not isinstance(value, dict):
            return paste_result(cmd.request_id, success=False, error="Paste script returned no result")
        return paste_result(
            cmd.request_id,
            success=bool(value.get("success")),
            message=value.get("message") or None,
            error=value.get("error") or None,
        )

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
            _LOGGER.error("executor task %s failed: %s", task.get_name(), exc, exc_info=exc)


__all__ = ["CommandExecutor", "STATUS_CONNECTING", "build_paste_script"]
