from __future__ import annotations

import asyncio
import json
import socket

import pytest

from agent_servers.relay.control_link import ControlLink, LinkEvent, LinkState, decode_frame
from agent_servers.relay.errors import TransportError


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def test_decode_frame_falls_back_to_raw_string() -> None:
    assert decode_frame('{"type": "EVALUATE_SCRIPT"}') == {"type": "EVALUATE_SCRIPT"}
    assert decode_frame(b'{"a": 1}') == {"a": 1}
    assert decode_frame("hello") == "hello"


def test_open_failure_raises_transport_error() -> None:
    async def _main() -> None:
        events: list[LinkEvent] = []
        url = f"ws://127.0.0.1:{_free_port()}/agents/c1/subscribe"
        link = ControlLink("t1", "c1", url, events.append, open_timeout=1.0)
        with pytest.raises(TransportError):
            await link.open()
        assert link.state is LinkState.CLOSED
        assert events == []
        with pytest.raises(TransportError):
            await link.open()

    asyncio.run(_main())


def test_link_delivers_frames_sends_and_reports_clean_close() -> None:
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    async def _main() -> None:
        received: list[str] = []
        paths: list[str] = []
        got_reply = asyncio.Event()

        async def _handler(ws) -> None:  # type: ignore[no-untyped-def]
            paths.append(ws.request.path)
            await ws.send(json.dumps({"type": "EVALUATE_SCRIPT", "requestId": "r1", "script": "1+1"}))
            await ws.send("not json")
            received.append(await ws.recv())
            got_reply.set()
            await ws.close()

        port = _free_port()
        events: list[LinkEvent] = []
        closed = asyncio.Event()

        def _sink(ev: LinkEvent) -> None:
            events.append(ev)
            if ev.kind == "closed":
                closed.set()

        async with websockets.serve(_handler, "127.0.0.1", port):
            link = ControlLink("t1", "c1", f"ws://127.0.0.1:{port}/agents/c1/subscribe", _sink, open_timeout=2.0)
            await link.open()
            assert link.is_open

            await asyncio.sleep(0.05)
            await link.send({"type": "EVALUATION_RESULT", "requestId": "r1", "result": 2})
            await asyncio.wait_for(got_reply.wait(), 2.0)
            await asyncio.wait_for(closed.wait(), 2.0)

        assert paths == ["/agents/c1/subscribe"]
        assert json.loads(received[0])["result"] == 2
        kinds = [ev.kind for ev in events]
        assert kinds == ["message", "message", "closed"]
        assert events[0].data["requestId"] == "r1"
        assert events[1].data == "not json"
        assert events[2].was_clean is True
        assert link.state is LinkState.CLOSED
        with pytest.raises(TransportError):
            await link.send({"type": "late"})

    asyncio.run(_main())


def test_close_waits_for_reader_and_emits_single_close_event() -> None:
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    async def _main() -> None:
        async def _handler(ws) -> None:  # type: ignore[no-untyped-def]
            async for _ in ws:
                pass

        port = _free_port()
        events: list[LinkEvent] = []
        async with websockets.serve(_handler, "127.0.0.1", port):
            link = ControlLink("t1", "c1", f"ws://127.0.0.1:{port}/agents/c1/subscribe", events.append)
            await link.open()
            await link.close()
            assert link.state is LinkState.CLOSED
            assert [ev.kind for ev in events] == ["closed"]
            await link.close()
            assert len(events) == 1

    asyncio.run(_main())
