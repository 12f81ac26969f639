from __future__ import annotations

import asyncio
import base64
import io
from typing import Any

import pytest
from PIL import Image

from agent_servers.relay.bridge import BridgeHub, BridgePort
from agent_servers.relay.config import RelayConfig
from agent_servers.relay.executor import CommandExecutor, build_paste_script
from agent_servers.relay.reconnect import ReconnectPolicy


class FakePage:
    """Answers the handful of scripts the executor sends."""

    def __init__(self) -> None:
        self.scripts: list[str] = []
        self.elements = {"#present": {"x": 0, "y": 0, "width": 4, "height": 4, "top": 0, "left": 0, "devicePixelRatio": 1}}
        self.paste_outcome: dict[str, Any] = {"success": True, "message": 'Paste event dispatched to "#editor".'}
        self.broken = False

    async def evaluate(self, source: str) -> tuple[Any, Any | None]:
        self.scripts.append(source)
        if self.broken:
            raise RuntimeError("inspected window is gone")
        if source == "1+1":
            return 2, None
        if source.startswith("throw"):
            return None, {"description": "Error: x\n    at <anonymous>:1:7", "value": None}
        if "getBoundingClientRect" in source:
            return {sel: self.elements.get(sel) for sel in ("#present", "#absent")}, None
        if "ClipboardEvent" in source:
            return dict(self.paste_outcome), None
        return None, None


def _png_data_url() -> str:
    buf = io.BytesIO()
    Image.new("RGB", (10, 10), (0, 128, 0)).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def _executor(page: FakePage, hub: BridgeHub | None = None, **kwargs: Any) -> CommandExecutor:
    config = RelayConfig(capture_timeout=2.0)
    return CommandExecutor("t1", hub or BridgeHub(), page, config=config, **kwargs)


async def _next(port: BridgePort, timeout: float = 1.0) -> Any:
    return await asyncio.wait_for(port.receive(), timeout)


def _hub_with_remotes() -> tuple[BridgeHub, list[BridgePort]]:
    hub = BridgeHub()
    remotes: list[BridgePort] = []
    hub.add_listener(remotes.append)
    return hub, remotes


def test_evaluate_script_success_and_exception() -> None:
    async def _main() -> None:
        ex = _executor(FakePage())
        ok = await ex.handle_command({"type": "EVALUATE_SCRIPT", "requestId": "r1", "script": "1+1"})
        assert ok == {"type": "EVALUATION_RESULT", "requestId": "r1", "result": 2, "isException": False, "exceptionInfo": None}

        err = await ex.handle_command({"type": "EVALUATE_SCRIPT", "requestId": "r2", "script": "throw new Error('x')"})
        assert err is not None
        assert err["requestId"] == "r2"
        assert err["isException"] is True
        assert err["exceptionInfo"].startswith("Error: x")

    asyncio.run(_main())


def test_evaluator_failure_becomes_exception_result() -> None:
    async def _main() -> None:
        page = FakePage()
        page.broken = True
        res = await _executor(page).handle_command({"type": "EVALUATE_SCRIPT", "requestId": "r1", "script": "1+1"})
        assert res is not None
        assert res["isException"] is True
        assert "inspected window is gone" in res["exceptionInfo"]

    asyncio.run(_main())


def test_malformed_commands_answer_with_structural_errors() -> None:
    async def _main() -> None:
        ex = _executor(FakePage())
        ev = await ex.handle_command({"type": "EVALUATE_SCRIPT", "script": "1+1"})
        assert ev is not None and ev["requestId"] == "unknown" and ev["isException"] is True

        shot = await ex.handle_command({"type": "CAPTURE_ELEMENTS_SCREENSHOT", "requestId": "r3", "selectors": []})
        assert shot is not None and shot["imageData"] == {} and shot["error"]

        paste = await ex.handle_command({"type": "PASTE_DATA", "requestId": "r4", "selector": "#a"})
        assert paste is not None and paste["success"] is False and paste["error"]

        assert await ex.handle_command({"type": "SOMETHING_ELSE", "requestId": "r5"}) is None
        assert await ex.handle_command("plain text") is None

    asyncio.run(_main())


def test_paste_reports_page_outcome() -> None:
    async def _main() -> None:
        page = FakePage()
        ex = _executor(page)
        cmd = {"type": "PASTE_DATA", "requestId": "p1", "selector": "#editor", "dataUrl": "data:image/png;base64,AAAA"}

        ok = await ex.handle_command(cmd)
        assert ok == {
            "type": "PASTE_RESULT",
            "requestId": "p1",
            "success": True,
            "message": 'Paste event dispatched to "#editor".',
            "error": None,
        }
        assert '"#editor"' in page.scripts[-1] and "data:image/png;base64,AAAA" in page.scripts[-1]

        page.paste_outcome = {"success": False, "error": 'Element "#editor" not found.'}
        missing = await ex.handle_command(cmd)
        assert missing is not None
        assert missing["success"] is False and missing["error"] == 'Element "#editor" not found.'
        assert missing["message"] is None

        page.broken = True
        broken = await ex.handle_command(cmd)
        assert broken is not None
        assert broken["success"] is False
        assert broken["error"].startswith("Script evaluation exception:")

    asyncio.run(_main())


def test_paste_script_passes_arguments_as_json() -> None:
    script = build_paste_script("div[title='a`b']", "data:text/plain;base64,aGk=")
    assert script.endswith("""})(...["div[title='a`b']", "data:text/plain;base64,aGk="])""")
    assert "new ClipboardEvent('paste'" in script
    assert "bubbles: true, cancelable: true" in script


def test_commands_flow_through_bridge_channel() -> None:
    async def _main() -> None:
        hub, remotes = _hub_with_remotes()
        ex = _executor(FakePage(), hub)
        try:
            ex.connect("c1")
            assert len(remotes) == 1
            remote = remotes[0]
            assert await _next(remote) == {"type": "CONNECT", "channelName": "c1"}

            remote.post_message({"type": "LINK_STATUS", "status": "Connected", "channelName": "c1"})
            assert await ex.wait_connected(1.0) is True
            assert ex.status == "Connected"

            remote.post_message(
                {"type": "LINK_MESSAGE", "data": {"type": "EVALUATE_SCRIPT", "requestId": "r1", "script": "1+1"}}
            )
            fwd = await _next(remote)
            assert fwd["type"] == "FORWARD"
            assert fwd["payload"]["requestId"] == "r1" and fwd["payload"]["result"] == 2
        finally:
            await ex.close()

    asyncio.run(_main())


def test_screenshot_round_trip_through_capture_request() -> None:
    async def _main() -> None:
        hub, remotes = _hub_with_remotes()
        ex = _executor(FakePage(), hub)
        try:
            ex.connect("c1")
            remote = remotes[0]
            await _next(remote)

            remote.post_message(
                {
                    "type": "LINK_MESSAGE",
                    "data": {"type": "CAPTURE_ELEMENTS_SCREENSHOT", "requestId": "r3", "selectors": ["#present", "#absent"]},
                }
            )
            req = await _next(remote)
            assert req == {"type": "REQUEST_TAB_CAPTURE", "requestId": "r3"}
            assert "r3" in ex.pending

            remote.post_message({"type": "TAB_CAPTURE_COMPLETE", "requestId": "r3", "dataUrl": _png_data_url(), "error": None})
            fwd = await _next(remote)
            result = fwd["payload"]
            assert result["type"] == "ELEMENTS_SCREENSHOT_RESULT"
            assert result["error"] is None
            assert result["imageData"]["#absent"] is None
            assert result["imageData"]["#present"].startswith("data:image/png;base64,")
            assert len(ex.pending) == 0
        finally:
            await ex.close()

    asyncio.run(_main())


def test_capture_error_from_supervisor_fails_screenshot() -> None:
    async def _main() -> None:
        hub, remotes = _hub_with_remotes()
        ex = _executor(FakePage(), hub)
        try:
            ex.connect("c1")
            remote = remotes[0]
            await _next(remote)
            remote.post_message(
                {"type": "LINK_MESSAGE", "data": {"type": "CAPTURE_ELEMENTS_SCREENSHOT", "requestId": "r4", "selectors": ["#present"]}}
            )
            await _next(remote)
            remote.post_message({"type": "TAB_CAPTURE_COMPLETE", "requestId": "r4", "dataUrl": None, "error": "tab hidden"})
            result = (await _next(remote))["payload"]
            assert result["imageData"] == {}
            assert result["error"] == "tab hidden"
        finally:
            await ex.close()

    asyncio.run(_main())


def test_channel_detach_rejects_pending_capture_and_reattaches() -> None:
    async def _main() -> None:
        hub, remotes = _hub_with_remotes()
        policy = ReconnectPolicy(base_ms=10, cap_ms=40)
        ex = _executor(FakePage(), hub, policy=policy)
        try:
            ex.connect("c1")
            remote = remotes[0]
            await _next(remote)
            remote.post_message(
                {"type": "LINK_MESSAGE", "data": {"type": "CAPTURE_ELEMENTS_SCREENSHOT", "requestId": "r5", "selectors": ["#present"]}}
            )
            await _next(remote)
            assert "r5" in ex.pending

            remote.disconnect()
            assert len(ex.pending) == 0
            assert ex.port is None

            # The reconnect opens a fresh channel and asks for the same channel again.
            await asyncio.sleep(0.1)
            assert len(remotes) == 2
            assert await _next(remotes[1]) == {"type": "CONNECT", "channelName": "c1"}
            # Nothing was forwarded for the abandoned screenshot.
            with pytest.raises(asyncio.TimeoutError):
                await _next(remotes[1], timeout=0.1)
        finally:
            await ex.close()

    asyncio.run(_main())


def test_failure_status_schedules_reconnect() -> None:
    async def _main() -> None:
        hub, remotes = _hub_with_remotes()
        policy = ReconnectPolicy(base_ms=10, cap_ms=40)
        ex = _executor(FakePage(), hub, policy=policy)
        try:
            ex.connect("c1")
            remote = remotes[0]
            await _next(remote)

            remote.post_message({"type": "LINK_STATUS", "status": "Error: connection refused", "channelName": "c1"})
            assert await _next(remote, timeout=1.0) == {"type": "CONNECT", "channelName": "c1"}
            assert policy.attempts == 1

            remote.post_message({"type": "LINK_STATUS", "status": "Disconnected", "channelName": "c1"})
            assert await _next(remote, timeout=1.0) == {"type": "CONNECT", "channelName": "c1"}
            assert policy.attempts == 2

            remote.post_message({"type": "LINK_STATUS", "status": "Connected", "channelName": "c1"})
            await asyncio.sleep(0.02)
            assert policy.attempts == 0
        finally:
            await ex.close()

    asyncio.run(_main())


def test_user_disconnect_suppresses_reconnect_and_forgets_channel() -> None:
    async def _main() -> None:
        hub, remotes = _hub_with_remotes()
        policy = ReconnectPolicy(base_ms=10, cap_ms=40)
        ex = _executor(FakePage(), hub, policy=policy)
        try:
            ex.connect("c1")
            remote = remotes[0]
            await _next(remote)
            remote.post_message({"type": "LINK_STATUS", "status": "Connected", "channelName": "c1"})
            await ex.wait_connected(1.0)

            ex.disconnect()
            assert await _next(remote) == {"type": "DISCONNECT", "channelName": "c1"}
            remote.post_message({"type": "LINK_STATUS", "status": "Disconnected", "channelName": "c1"})
            await asyncio.sleep(0.1)

            assert policy.timer_pending is False
            assert ex.channel_name is None
            with pytest.raises(asyncio.TimeoutError):
                await _next(remote, timeout=0.05)
            with pytest.raises(ValueError):
                ex.connect()
        finally:
            await ex.close()

    asyncio.run(_main())


def test_numeric_request_ids_are_echoed_unchanged() -> None:
    async def _main() -> None:
        hub, remotes = _hub_with_remotes()
        ex = _executor(FakePage(), hub)
        try:
            res = await ex.handle_command({"type": "EVALUATE_SCRIPT", "requestId": 7, "script": "1+1"})
            assert res is not None and res["requestId"] == 7 and isinstance(res["requestId"], int)

            ex.connect("c1")
            remote = remotes[0]
            await _next(remote)
            remote.post_message(
                {"type": "LINK_MESSAGE", "data": {"type": "CAPTURE_ELEMENTS_SCREENSHOT", "requestId": 8, "selectors": ["#present"]}}
            )
            assert await _next(remote) == {"type": "REQUEST_TAB_CAPTURE", "requestId": 8}
            assert 8 in ex.pending

            remote.post_message({"type": "TAB_CAPTURE_COMPLETE", "requestId": 8, "dataUrl": _png_data_url(), "error": None})
            result = (await _next(remote))["payload"]
            assert result["requestId"] == 8 and isinstance(result["requestId"], int)
            assert result["imageData"]["#present"].startswith("data:image/png;base64,")
        finally:
            await ex.close()

    asyncio.run(_main())
