"""Broker server implementation for pairing and relaying between peers.

The broker server is a lightweight server accessible by all peers (e.g., has
a public IP address). Two peers that share a connect ID out-of-band each
open a websocket connection to the broker and send a
[`Connect`][peerbroker.messages.Connect] message. Once both have joined,
the broker notifies both peers and relays
[`Transfer`][peerbroker.messages.Transfer] payloads between them until one
of the peers goes away.
"""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.server import Server
from websockets.asyncio.server import ServerConnection
from websockets.asyncio.server import serve

from peerbroker.exceptions import BadRequestError
from peerbroker.exceptions import BrokerServerError
from peerbroker.heartbeat import HeartbeatMonitor
from peerbroker.messages import Connect
from peerbroker.messages import ConnectDisrupted
from peerbroker.messages import ConnectError
from peerbroker.messages import ConnectSuccessful
from peerbroker.messages import ConnectTimeout
from peerbroker.messages import decode_message
from peerbroker.messages import encode_message
from peerbroker.messages import HeartbeatPing
from peerbroker.messages import HeartbeatPong
from peerbroker.messages import Message
from peerbroker.messages import MessageDecodeError
from peerbroker.messages import MessageEncodeError
from peerbroker.messages import Transfer
from peerbroker.messages import TransferError
from peerbroker.messages import UnknownMessageTypeError
from peerbroker.registry import ConnectionRegistry
from peerbroker.registry import Endpoint
from peerbroker.utils.tasks import spawn_background_task

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
"""Default port the broker listens on."""
DEFAULT_TIMEOUT = 30.0
"""Default join deadline, heartbeat period, and pong deadline in seconds."""

CLOSE_CONNECT_ERROR = 4000
CLOSE_CONNECT_TIMEOUT = 4001
CLOSE_HEARTBEAT_TIMEOUT = 4002
CLOSE_MESSAGE_TOO_LARGE = 4003


def remote_host(websocket: ServerConnection) -> str:
    """Get the host of the remote end of a websocket connection."""
    address = websocket.remote_address
    if address is None:
        return 'unknown'
    if isinstance(address, (tuple, list)):
        return str(address[0])
    return str(address)


class BrokerServer:
    """Rendezvous and relay server for pairs of peers.

    Each accepted websocket connection becomes an
    [`Endpoint`][peerbroker.registry.Endpoint]. An endpoint must join a
    connect ID within `timeout` seconds or it is sent a
    [`ConnectTimeout`][peerbroker.messages.ConnectTimeout] and closed.
    All endpoints are probed with heartbeat pings every `timeout` seconds
    and endpoints which do not reply within `timeout` seconds are treated as
    disconnected.

    Tip:
        This class can be used as an async context manager!
        ```python
        from peerbroker.server import BrokerServer

        async with BrokerServer(port=8080) as server:
            ...
        ```

    Args:
        host: Network interface to bind to. Binds to all interfaces if
            `None`.
        port: Network port to bind to. Use `0` to pick an open port.
        timeout: Join deadline, heartbeat period, and pong deadline in
            seconds.
        ssl_context: Optional SSL context used to enable TLS.
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int = DEFAULT_PORT,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        ssl_context: ssl.SSLContext | None = None,
        max_message_bytes: int | None = None,
    ) -> None:
        self.host = host
        self._port = port
        self.timeout = timeout
        self._ssl_context = ssl_context
        self._max_message_bytes = max_message_bytes

        self._registry = ConnectionRegistry()
        self._heartbeat = HeartbeatMonitor(
            interval=timeout,
            timeout=timeout,
            send_ping=self._send_ping,
            on_timeout=self._on_heartbeat_timeout,
        )
        self._join_timers: dict[Endpoint, asyncio.TimerHandle] = {}
        self._server: Server | None = None

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def registry(self) -> ConnectionRegistry:
        """Registry of paired endpoints."""
        return self._registry

    @property
    def heartbeat(self) -> HeartbeatMonitor:
        """Heartbeat monitor of connected endpoints."""
        return self._heartbeat

    @property
    def port(self) -> int:
        """Port the server is bound to."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self._port

    @property
    def serving(self) -> bool:
        """Server is accepting connections."""
        return self._server is not None

    async def start(self) -> None:
        """Start listening for connections and start the heartbeat loop.

        This is a no-op if the server is already started.
        """
        if self._server is not None:
            return

        self._server = await serve(
            self.handler,
            self.host,
            self._port,
            ssl=self._ssl_context,
        )
        self._heartbeat.start()
        logger.info(f'Broker server listening on port {self.port}')

    async def close(self) -> None:
        """Stop serving and close all connections.

        This is a no-op if the server was never started or already closed.
        """
        await self._heartbeat.stop()
        if self._server is None:
            return

        self._server.close()
        await self._server.wait_closed()
        self._server = None

        for handle in self._join_timers.values():
            handle.cancel()
        self._join_timers.clear()
        logger.info('Broker server closed')

    async def send(self, endpoint: Endpoint, message: Message) -> None:
        """Send message on the socket.

        Failures are logged and the message is dropped.

        Args:
            endpoint: Endpoint to send message to.
            message: Message to encode and send via the websocket connection
                to the endpoint.
        """
        try:
            message_str = encode_message(message)
        except MessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return

        try:
            await endpoint.websocket.send(message_str)
        except websockets.exceptions.ConnectionClosed:
            logger.error(
                'Connection closed while attempting to send '
                f'{message.message_type.value} message to {endpoint.address}',
            )

    async def pair(self, endpoint: Endpoint, connect_id: str) -> None:
        """Join an endpoint to a connect ID and notify a completed pair.

        If the endpoint cannot join, the endpoint is sent a
        [`ConnectError`][peerbroker.messages.ConnectError] and its connection
        is closed. If the endpoint completes the pair, both endpoints are
        sent a [`ConnectSuccessful`][peerbroker.messages.ConnectSuccessful]
        with the address of the other.

        Args:
            endpoint: Endpoint making the connect request.
            connect_id: Requested connect ID.
        """
        try:
            if not isinstance(connect_id, str) or not connect_id:
                raise BadRequestError('Connect ID must be a non-empty string.')
            connection = self.registry.join(endpoint, connect_id)
        except BrokerServerError as e:
            logger.warning(
                f'Rejected connect request from {endpoint.address}. '
                f'{e.__class__.__name__}: {e}',
            )
            await self.send(endpoint, ConnectError(message=str(e)))
            await endpoint.websocket.close(
                code=CLOSE_CONNECT_ERROR,
                reason=e.__class__.__name__,
            )
            return

        self._cancel_join_timer(endpoint)

        if not connection.paired:
            logger.info(
                f'Client {endpoint.address} waiting for peer on connect ID '
                f'{connect_id}',
            )
            return

        peer1, peer2 = connection.peer1, connection.peer2
        assert peer1 is not None and peer2 is not None
        await self.send(peer1, ConnectSuccessful(connect_id, peer2.address))
        await self.send(peer2, ConnectSuccessful(connect_id, peer1.address))
        logger.info(
            f'Connected {connect_id} with peers: {peer1.address}, '
            f'{peer2.address}',
        )

    async def relay(self, endpoint: Endpoint, message: Transfer) -> None:
        """Forward a transfer to the other peer of the endpoint.

        If the endpoint is not part of a complete pair, the endpoint is sent
        a [`TransferError`][peerbroker.messages.TransferError] instead.

        Args:
            endpoint: Endpoint that sent the transfer.
            message: Transfer message to forward.
        """
        connection = self.registry.lookup(endpoint)
        target = (
            None if connection is None else connection.counterpart(endpoint)
        )
        if connection is None or target is None:
            connect_id = None if connection is None else connection.connect_id
            logger.warning(
                f'Client {endpoint.address} attempting to transfer without '
                f'a connected peer (connect ID: {connect_id})',
            )
            await self.send(
                endpoint,
                TransferError(
                    message=(
                        'No connected peer found for connect ID: '
                        f'{connect_id}.'
                    ),
                ),
            )
            return

        await self.send(target, Transfer(data=message.data))

    async def disrupt(self, endpoint: Endpoint) -> None:
        """Remove an endpoint and notify the other peer it is gone.

        The endpoint is removed from the registry before the notification is
        sent so calling this more than once for the same endpoint notifies
        the other peer at most once.

        Args:
            endpoint: Endpoint that closed, errored, or timed out.
        """
        connection = self.registry.lookup(endpoint)
        target = (
            None if connection is None else connection.counterpart(endpoint)
        )
        self.registry.leave(endpoint)
        if connection is not None and target is not None:
            logger.info(
                f'Notifying {target.address} that peer {endpoint.address} '
                f'disconnected from connect ID {connection.connect_id}',
            )
            await self.send(target, ConnectDisrupted(connection.connect_id))

    async def _process_message(
        self,
        endpoint: Endpoint,
        message: Message,
    ) -> None:
        # Dispatches the message to the correct method depending on the type
        if isinstance(message, Connect):
            await self.pair(endpoint, message.connect_id)
        elif isinstance(message, Transfer):
            await self.relay(endpoint, message)
        elif isinstance(message, HeartbeatPing):
            await self.send(endpoint, HeartbeatPong.reply_to(message))
        elif isinstance(message, HeartbeatPong):
            self.heartbeat.handle_pong(endpoint)
        else:
            logger.warning(
                f'Client {endpoint.address} sent unexpected '
                f'{message.message_type.value} message',
            )

    async def _on_message(
        self,
        endpoint: Endpoint,
        message_str: str | bytes,
    ) -> None:
        try:
            message = decode_message(message_str)
        except UnknownMessageTypeError as e:
            logger.warning(f'Client {endpoint.address} sent {e}')
            return
        except MessageDecodeError as e:
            logger.error(
                'Dropping message which could not be decoded from '
                f'{endpoint.address}. {e}',
            )
            return

        try:
            await self._process_message(endpoint, message)
        except Exception:
            logger.exception(
                f'Error handling {message.message_type.value} message from '
                f'{endpoint.address}',
            )

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        Registers the connection as an endpoint, processes incoming messages
        in order until the connection closes, and then disrupts the pair
        the endpoint was a part of.

        Args:
            websocket: Websocket connection with the client.
        """
        endpoint = Endpoint(
            websocket=websocket,
            address=remote_host(websocket),
        )
        logger.info(f'New client connected from {endpoint.address}')

        loop = asyncio.get_running_loop()
        self._join_timers[endpoint] = loop.call_later(
            self.timeout,
            self._on_join_timeout,
            endpoint,
        )
        self.heartbeat.add(endpoint)

        try:
            async for message_str in websocket:
                if (
                    self._max_message_bytes is not None
                    and len(message_str) > self._max_message_bytes
                ):
                    logger.warning(
                        f'Client at {endpoint.address} sent message with '
                        f'size {len(message_str)} bytes which exceeds the '
                        f'max configured size of {self._max_message_bytes} '
                        f'bytes. Connection closed with error code '
                        f'{CLOSE_MESSAGE_TOO_LARGE}',
                    )
                    await websocket.close(
                        CLOSE_MESSAGE_TOO_LARGE,
                        reason='Message length exceeds limit.',
                    )
                    break
                await self._on_message(endpoint, message_str)
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(
                f'Connection with {endpoint.address} closed with error: {e}',
            )
        else:
            logger.info(
                f'Client disconnected from {endpoint.address}: '
                f'code: {websocket.close_code}, '
                f'reason: {websocket.close_reason}',
            )
        finally:
            self._cancel_join_timer(endpoint)
            self.heartbeat.remove(endpoint)
            await self.disrupt(endpoint)

    def _cancel_join_timer(self, endpoint: Endpoint) -> None:
        handle = self._join_timers.pop(endpoint, None)
        if handle is not None:
            handle.cancel()

    def _on_join_timeout(self, endpoint: Endpoint) -> None:
        self._join_timers.pop(endpoint, None)
        task = spawn_background_task(self._expire_join, endpoint)
        task.set_name(f'join-timeout-{endpoint.address}')

    async def _expire_join(self, endpoint: Endpoint) -> None:
        if endpoint in self.registry:
            return
        message = f'Connection timeout for {endpoint.address}'
        logger.info(message)
        await self.send(endpoint, ConnectTimeout(message=message))
        await endpoint.websocket.close(
            code=CLOSE_CONNECT_TIMEOUT,
            reason='Connect timeout.',
        )

    async def _send_ping(self, endpoint: Endpoint) -> None:
        await self.send(endpoint, HeartbeatPing())

    async def _on_heartbeat_timeout(self, endpoint: Endpoint) -> None:
        self._cancel_join_timer(endpoint)
        await self.disrupt(endpoint)
        await endpoint.websocket.close(
            code=CLOSE_HEARTBEAT_TIMEOUT,
            reason='Heartbeat timeout.',
        )
