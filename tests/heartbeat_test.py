from __future__ import annotations

import asyncio
import logging
from unittest import mock

import pytest

from peerbroker.heartbeat import HeartbeatMonitor
from testing.utils import mock_endpoint

# Use 50ms heartbeats to keep tests short
_INTERVAL = 0.05


def _monitor(
    interval: float = _INTERVAL,
    timeout: float = _INTERVAL,
) -> tuple[HeartbeatMonitor, mock.AsyncMock, mock.AsyncMock]:
    send_ping = mock.AsyncMock()
    on_timeout = mock.AsyncMock()
    monitor = HeartbeatMonitor(interval, timeout, send_ping, on_timeout)
    return monitor, send_ping, on_timeout


@pytest.mark.asyncio()
async def test_beat_pings_every_endpoint() -> None:
    monitor, send_ping, _ = _monitor()
    endpoints = [mock_endpoint() for _ in range(3)]
    for endpoint in endpoints:
        monitor.add(endpoint)

    await monitor.beat()

    assert send_ping.await_count == 3
    pinged = {call.args[0] for call in send_ping.await_args_list}
    assert pinged == set(endpoints)
    assert all(monitor.is_pending(endpoint) for endpoint in endpoints)
    await monitor.stop()


@pytest.mark.asyncio()
async def test_pong_clears_pending() -> None:
    monitor, _, on_timeout = _monitor()
    endpoint = mock_endpoint()
    monitor.add(endpoint)

    await monitor.beat()
    assert monitor.is_pending(endpoint)
    monitor.handle_pong(endpoint)
    assert not monitor.is_pending(endpoint)

    await asyncio.sleep(_INTERVAL * 3)
    on_timeout.assert_not_awaited()


@pytest.mark.asyncio()
async def test_unsolicited_pong_is_ignored() -> None:
    monitor, _, _ = _monitor()
    endpoint = mock_endpoint()
    monitor.add(endpoint)
    monitor.handle_pong(endpoint)
    assert not monitor.is_pending(endpoint)


@pytest.mark.asyncio()
async def test_missed_pong_times_out_once(caplog) -> None:
    caplog.set_level(logging.WARNING)
    monitor, send_ping, on_timeout = _monitor(timeout=_INTERVAL)
    endpoint = mock_endpoint('10.0.0.9')
    monitor.add(endpoint)

    await monitor.beat()
    await asyncio.sleep(_INTERVAL * 3)

    on_timeout.assert_awaited_once_with(endpoint)
    assert not monitor.is_pending(endpoint)
    assert any(
        'Heartbeat timeout for 10.0.0.9' in record.message
        for record in caplog.records
    )

    # Timed out endpoints are no longer probed
    send_ping.reset_mock()
    await monitor.beat()
    send_ping.assert_not_awaited()


@pytest.mark.asyncio()
async def test_pending_endpoint_keeps_first_deadline() -> None:
    monitor, send_ping, on_timeout = _monitor(timeout=_INTERVAL * 2)
    endpoint = mock_endpoint()
    monitor.add(endpoint)

    await monitor.beat()
    await asyncio.sleep(_INTERVAL)
    await monitor.beat()
    assert send_ping.await_count == 2

    await asyncio.sleep(_INTERVAL * 2)
    on_timeout.assert_awaited_once_with(endpoint)


@pytest.mark.asyncio()
async def test_remove_cancels_deadline() -> None:
    monitor, send_ping, on_timeout = _monitor()
    endpoint = mock_endpoint()
    monitor.add(endpoint)

    await monitor.beat()
    monitor.remove(endpoint)
    assert not monitor.is_pending(endpoint)

    await asyncio.sleep(_INTERVAL * 3)
    on_timeout.assert_not_awaited()

    send_ping.reset_mock()
    await monitor.beat()
    send_ping.assert_not_awaited()


@pytest.mark.asyncio()
async def test_responsive_endpoint_never_times_out() -> None:
    monitor, send_ping, on_timeout = _monitor()
    endpoint = mock_endpoint()
    send_ping.side_effect = monitor.handle_pong
    monitor.add(endpoint)

    monitor.start()
    assert monitor.running
    await asyncio.sleep(_INTERVAL * 5)
    await monitor.stop()
    assert not monitor.running

    assert send_ping.await_count >= 2
    on_timeout.assert_not_awaited()


@pytest.mark.asyncio()
async def test_loop_times_out_silent_endpoint() -> None:
    monitor, _, on_timeout = _monitor()
    endpoint = mock_endpoint()
    monitor.add(endpoint)

    monitor.start()
    # Starting twice does not spawn a second loop
    monitor.start()
    await asyncio.sleep(_INTERVAL * 5)
    await monitor.stop()

    on_timeout.assert_awaited_once_with(endpoint)


@pytest.mark.asyncio()
async def test_stop_cancels_pending_deadlines() -> None:
    monitor, _, on_timeout = _monitor()
    endpoint = mock_endpoint()
    monitor.add(endpoint)

    await monitor.beat()
    await monitor.stop()
    assert not monitor.is_pending(endpoint)

    await asyncio.sleep(_INTERVAL * 3)
    on_timeout.assert_not_awaited()


@pytest.mark.asyncio()
async def test_slow_endpoint_does_not_delay_other_pings() -> None:
    monitor, send_ping, on_timeout = _monitor(timeout=_INTERVAL)
    slow = mock_endpoint('10.0.0.1')
    fast = mock_endpoint('10.0.0.2')
    blocked = asyncio.Event()
    pinged: list[str] = []

    async def _send_ping(endpoint) -> None:
        pinged.append(endpoint.address)
        if endpoint is slow:
            await blocked.wait()
        else:
            monitor.handle_pong(endpoint)

    send_ping.side_effect = _send_ping
    monitor.add(slow)
    monitor.add(fast)

    beat = asyncio.create_task(monitor.beat())
    await asyncio.sleep(_INTERVAL / 5)
    assert not beat.done()
    assert sorted(pinged) == ['10.0.0.1', '10.0.0.2']
    assert not monitor.is_pending(fast)
    assert monitor.is_pending(slow)

    # Only the endpoint that never answered times out
    await asyncio.sleep(_INTERVAL * 2)
    on_timeout.assert_awaited_once_with(slow)

    blocked.set()
    await beat
    await monitor.stop()
