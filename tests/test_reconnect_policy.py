from __future__ import annotations

import asyncio

from agent_servers.relay.reconnect import ReconnectPolicy, reconnect_delay_ms


def test_backoff_delays_double_then_cap() -> None:
    assert [reconnect_delay_ms(n) for n in range(1, 6)] == [1000, 2000, 4000, 8000, 10000]
    assert reconnect_delay_ms(7) == 10000
    assert reconnect_delay_ms(10_000) == 10000
    # Attempt numbers below 1 are treated as the first attempt.
    assert reconnect_delay_ms(0) == 1000


def test_backoff_respects_custom_base_and_cap() -> None:
    policy = ReconnectPolicy(base_ms=250, cap_ms=1500)
    assert [policy.delay_ms(n) for n in range(1, 6)] == [250, 500, 1000, 1500, 1500]


def test_no_reconnect_without_channel_or_after_user_disconnect() -> None:
    async def _main() -> None:
        policy = ReconnectPolicy(base_ms=5, cap_ms=20)
        assert policy.schedule(lambda: None) is None

        policy.on_user_connect("c1")
        assert policy.should_reconnect() is True

        policy.on_user_disconnect()
        assert policy.should_reconnect() is False
        assert policy.schedule(lambda: None) is None
        assert policy.attempts == 0

        # An explicit connect lifts the block.
        policy.on_user_connect()
        assert policy.channel_name == "c1"
        assert policy.should_reconnect() is True

    asyncio.run(_main())


def test_schedule_keeps_a_single_live_timer() -> None:
    async def _main() -> None:
        fired: list[int] = []
        policy = ReconnectPolicy(base_ms=10, cap_ms=40)
        policy.on_user_connect("c1")

        d1 = policy.schedule(lambda: fired.append(1))
        d2 = policy.schedule(lambda: fired.append(2))
        assert (d1, d2) == (10, 20)
        assert policy.attempts == 2
        assert policy.timer_pending is True

        await asyncio.sleep(0.12)
        assert fired == [2]
        assert policy.timer_pending is False

    asyncio.run(_main())


def test_open_resets_attempts_and_cancels_timer() -> None:
    async def _main() -> None:
        fired: list[int] = []
        policy = ReconnectPolicy(base_ms=10, cap_ms=40)
        policy.on_user_connect("c1")
        policy.schedule(lambda: fired.append(1))
        policy.schedule(lambda: fired.append(2))

        policy.on_open()
        assert policy.attempts == 0
        assert policy.timer_pending is False

        await asyncio.sleep(0.08)
        assert fired == []
        assert policy.schedule(lambda: None) == 10

    asyncio.run(_main())
