from __future__ import annotations

import asyncio

import pytest

from agent_servers.relay.errors import ChannelDetachedError, PendingTimeoutError
from agent_servers.relay.pending import PendingKind, PendingRequests


def test_resolves_exactly_once() -> None:
    async def _main() -> None:
        pending = PendingRequests()
        fut = pending.create("r1", PendingKind.EVALUATION, owner="c1")
        assert "r1" in pending

        assert pending.resolve("r1", {"ok": 1}) is True
        assert pending.resolve("r1", {"ok": 2}) is False
        assert pending.reject("r1", RuntimeError("late")) is False
        assert await fut == {"ok": 1}
        assert len(pending) == 0

    asyncio.run(_main())


def test_duplicate_request_id_in_flight_is_rejected() -> None:
    async def _main() -> None:
        pending = PendingRequests()
        pending.create("r1", PendingKind.CAPTURE)
        with pytest.raises(ValueError):
            pending.create("r1", PendingKind.CAPTURE)
        pending.discard("r1")
        # Free again once settled.
        pending.create("r1", PendingKind.CAPTURE)

    asyncio.run(_main())


def test_reject_owner_only_touches_that_channel() -> None:
    async def _main() -> None:
        pending = PendingRequests()
        a = pending.create("a", PendingKind.CAPTURE, owner="executor-1")
        b = pending.create("b", PendingKind.CAPTURE, owner="executor-1")
        c = pending.create("c", PendingKind.CAPTURE, owner="executor-2")

        assert pending.reject_owner("executor-1", ChannelDetachedError("channel disconnected")) == 2
        for fut in (a, b):
            with pytest.raises(ChannelDetachedError):
                await fut
        assert not c.done()
        assert pending.ids() == ["c"]

    asyncio.run(_main())


def test_timeout_rejects_with_pending_timeout_error() -> None:
    async def _main() -> None:
        pending = PendingRequests(timeout=0.05)
        fut = pending.create("slow", PendingKind.SCREENSHOT)
        entry = pending.get("slow")
        assert entry is not None and entry.kind is PendingKind.SCREENSHOT
        with pytest.raises(PendingTimeoutError):
            await fut
        assert "slow" not in pending

        # A per-request bound overrides the table default.
        fast = pending.create("fast", PendingKind.SCREENSHOT, timeout=5.0)
        await asyncio.sleep(0.1)
        assert not fast.done()
        pending.resolve("fast", 1)
        assert await fast == 1

    asyncio.run(_main())
