"""Heartbeat monitor for detecting silently dead peer connections.

The broker periodically sends a
[`HeartbeatPing`][peerbroker.messages.HeartbeatPing] to every connected
endpoint and expects a
[`HeartbeatPong`][peerbroker.messages.HeartbeatPong] before a deadline.
Pongs are matched by presence per endpoint, not per probe, so any pong
received while a deadline is armed clears it.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable
from typing import Callable

from peerbroker.registry import Endpoint
from peerbroker.utils.tasks import spawn_background_task
from peerbroker.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

EndpointCallback = Callable[[Endpoint], Awaitable[None]]


class HeartbeatMonitor:
    """Periodically probe endpoints and detect missed pongs.

    Args:
        interval: Seconds between heartbeat rounds.
        timeout: Seconds an endpoint has to answer a ping.
        send_ping: Coroutine function which sends a ping to an endpoint.
        on_timeout: Coroutine function invoked once for an endpoint that
            missed its deadline. The endpoint is no longer tracked by the
            monitor when this is called.
    """

    def __init__(
        self,
        interval: float,
        timeout: float,
        send_ping: EndpointCallback,
        on_timeout: EndpointCallback,
    ) -> None:
        self.interval = interval
        self.timeout = timeout
        self._send_ping = send_ping
        self._on_timeout = on_timeout

        self._endpoints: set[Endpoint] = set()
        self._pending: dict[Endpoint, asyncio.TimerHandle] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Heartbeat loop is active."""
        return self._task is not None and not self._task.done()

    def add(self, endpoint: Endpoint) -> None:
        """Start monitoring an endpoint."""
        self._endpoints.add(endpoint)

    def remove(self, endpoint: Endpoint) -> None:
        """Stop monitoring an endpoint and cancel its deadline."""
        self._endpoints.discard(endpoint)
        handle = self._pending.pop(endpoint, None)
        if handle is not None:
            handle.cancel()

    def is_pending(self, endpoint: Endpoint) -> bool:
        """Check if the endpoint has an unanswered ping."""
        return endpoint in self._pending

    def handle_pong(self, endpoint: Endpoint) -> None:
        """Clear the pending ping of an endpoint."""
        handle = self._pending.pop(endpoint, None)
        if handle is not None:
            handle.cancel()
            logger.debug(f'Received heartbeat pong from {endpoint.address}')

    async def beat(self) -> None:
        """Run one heartbeat round.

        Each monitored endpoint is marked pending and sent a ping. An endpoint
        already pending keeps its original deadline. Pings are sent
        concurrently so an endpoint which is slow to accept data does not
        delay the pings of other endpoints.
        """
        loop = asyncio.get_running_loop()
        endpoints = list(self._endpoints)
        for endpoint in endpoints:
            if endpoint not in self._pending:
                self._pending[endpoint] = loop.call_later(
                    self.timeout,
                    self._expire,
                    endpoint,
                )
        await asyncio.gather(
            *(self._send_ping(endpoint) for endpoint in endpoints),
        )

    def _expire(self, endpoint: Endpoint) -> None:
        if self._pending.pop(endpoint, None) is None:
            return
        self._endpoints.discard(endpoint)
        logger.warning(f'Heartbeat timeout for {endpoint.address}')
        task = spawn_background_task(self._on_timeout, endpoint)
        task.set_name(f'heartbeat-timeout-{endpoint.address}')

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.beat()

    def start(self) -> None:
        """Start the heartbeat loop in a background task."""
        if self.running:
            return
        self._task = spawn_guarded_background_task(self._run)
        self._task.set_name('broker-heartbeat')

    async def stop(self) -> None:
        """Stop the heartbeat loop and cancel all pending deadlines."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
