"""Peer session for pairing with another peer through a broker server."""
from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import ssl
import sys
from types import TracebackType
from typing import Any
from typing import Callable

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect
from websockets.protocol import State

from peerbroker.exceptions import PeerConnectionError
from peerbroker.exceptions import SessionStateError
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

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


class SessionState(enum.Enum):
    """State of a peer session."""

    DISCONNECTED = 'disconnected'
    """Session has not connected yet."""
    CONNECTING = 'connecting'
    """Connect request sent and waiting for a peer."""
    PAIRED = 'paired'
    """Paired with a peer and relaying messages."""
    CLOSED = 'closed'
    """Session is closed and can not be reused."""


class PeerSession:
    """Session of a single peer with a broker server.

    A session pairs with exactly one other peer which connects to the
    broker with the same connect ID. Once paired, payloads sent with
    [`send_message()`][peerbroker.client.PeerSession.send_message] are
    delivered to the message callback of the other peer.

    A session can only be connected once. After it is closed, or if
    [`connect()`][peerbroker.client.PeerSession.connect] fails, a new
    session must be created to try again.

    Tip:
        This class can be used as an async context manager!
        ```python
        from peerbroker.client import PeerSession

        async with PeerSession() as session:
            session.on_message(print)
            await session.connect('ws://localhost:8080', 'room1')
            await session.send_message({'text': 'hi'})
        ```

    Callbacks may be plain functions or coroutine functions.

    Args:
        ssl_context: Custom SSL context to pass to
            [`websockets.connect()`][websockets.asyncio.client.connect]. A
            TLS context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        verify_certificate: Verify the broker server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.
    """

    def __init__(
        self,
        *,
        ssl_context: ssl.SSLContext | None = None,
        verify_certificate: bool = True,
    ) -> None:
        self._ssl_context = ssl_context
        self._verify_certificate = verify_certificate

        self._server_url: str | None = None
        self._connect_id: str | None = None
        self._state = SessionState.DISCONNECTED
        self._websocket: ClientConnection | None = None
        self._receiver: asyncio.Task[None] | None = None

        self._on_message_callback: Callback | None = None
        self._on_error_callback: Callback | None = None
        self._on_close_callback: Callback | None = None
        self._on_disconnected_callback: Callback | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def server_url(self) -> str | None:
        """Address of the broker server."""
        return self._server_url

    @property
    def connect_id(self) -> str | None:
        """Connect ID shared with the other peer."""
        return self._connect_id

    @property
    def state(self) -> SessionState:
        """Current state of the session."""
        return self._state

    @property
    def paired(self) -> bool:
        """Session is paired with another peer."""
        return self._state is SessionState.PAIRED

    def on_message(self, callback: Callback | None) -> None:
        """Set the callback invoked with each payload from the peer."""
        self._on_message_callback = callback

    def on_error(self, callback: Callback | None) -> None:
        """Set the callback invoked with each transfer error message."""
        self._on_error_callback = callback

    def on_close(self, callback: Callback | None) -> None:
        """Set the callback invoked once when the session closes."""
        self._on_close_callback = callback

    def on_disconnected(self, callback: Callback | None) -> None:
        """Set the callback invoked when the peer disconnects.

        The connection to the broker is still open when this is invoked.
        It is up to the callback to decide whether to close the session.
        """
        self._on_disconnected_callback = callback

    async def connect(
        self,
        server_url: str,
        connect_id: str,
        timeout: float | None = None,
    ) -> ConnectSuccessful:
        """Connect to the broker server and wait for a peer.

        If this call is cancelled before pairing completes, the connection
        is closed and the session is left in the closed state.

        Args:
            server_url: Address of the broker server. Should start with
                `ws://` or `wss://`.
            connect_id: Connect ID shared with the peer.
            timeout: Optional seconds to wait for the pairing to complete.
                Waits indefinitely if `None`.

        Returns:
            The pairing message sent by the broker server.

        Raises:
            ValueError: If `server_url` or `connect_id` are empty or
                `server_url` does not start with `ws://` or `wss://`.
            SessionStateError: If the session has already been used.
            PeerConnectionError: If the broker rejects the request, the
                connection is closed or fails, or `timeout` elapses before
                pairing. The connection is closed before this is raised.
        """
        if not server_url or not connect_id:
            raise ValueError('Server URL and connect ID are required.')
        if not (
            server_url.startswith('ws://') or server_url.startswith('wss://')
        ):
            raise ValueError(
                'Server address must start with ws:// or wss://. '
                f'Got {server_url}.',
            )
        if self._state is not SessionState.DISCONNECTED:
            raise SessionStateError(
                f'Session can not connect in the {self._state.value} state. '
                'Create a new session instead.',
            )

        self._server_url = server_url
        self._connect_id = connect_id
        self._state = SessionState.CONNECTING

        try:
            message = await asyncio.wait_for(self._handshake(), timeout)
        except asyncio.CancelledError:
            await self._abort('Connect request cancelled')
            raise
        except asyncio.TimeoutError:
            await self._abort(f'Connection timeout after {timeout} seconds')
            raise PeerConnectionError(
                f'Connection timeout after {timeout} seconds.',
            ) from None
        except PeerConnectionError as e:
            await self._abort(str(e))
            raise
        except websockets.exceptions.ConnectionClosed as e:
            await self._abort(str(e))
            raise PeerConnectionError(f'Connection closed: {e}') from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            await self._abort(str(e))
            raise PeerConnectionError(
                f'Connection error: {e.__class__.__name__}: {e}',
            ) from e

        self._state = SessionState.PAIRED
        self._receiver = asyncio.create_task(self._receive())
        self._receiver.set_name(f'peer-session-{connect_id}')
        logger.info(
            f'Paired on connect ID {connect_id} with peer at '
            f'{message.peer_ip}',
        )
        return message

    async def _handshake(self) -> ConnectSuccessful:
        """Open the websocket, send the connect request, and wait to pair.

        Raises:
            PeerConnectionError: If the broker replies with an error.
            websockets.exceptions.ConnectionClosed: If the connection closes.
        """
        assert self._server_url is not None
        assert self._connect_id is not None

        ssl_context = self._ssl_context
        if self._server_url.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not self._verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        try:
            self._websocket = await ws_connect(
                self._server_url,
                ssl=ssl_context,
            )
        except asyncio.TimeoutError as e:
            # Raised by the opening handshake's own timeout, which is
            # unrelated to the pairing timeout of connect().
            raise PeerConnectionError(
                'Connection error: timed out during opening handshake with '
                f'{self._server_url}.',
            ) from e
        logger.debug(f'Connected to broker server at {self._server_url}')
        await self._websocket.send(
            encode_message(Connect(connect_id=self._connect_id)),
        )

        while True:
            message_str = await self._websocket.recv()
            try:
                message = decode_message(message_str)
            except MessageDecodeError as e:
                logger.warning(f'Ignoring message from broker server: {e}')
                continue

            if isinstance(message, ConnectSuccessful):
                return message
            elif isinstance(message, ConnectError):
                raise PeerConnectionError(
                    f'Connect request rejected: {message.message}',
                )
            elif isinstance(message, ConnectTimeout):
                raise PeerConnectionError(
                    f'Connect request timed out: {message.message}',
                )
            elif isinstance(message, ConnectDisrupted):
                raise PeerConnectionError(
                    f'Connection disrupted on {message.connect_id}.',
                )
            elif isinstance(message, HeartbeatPing):
                await self._send(HeartbeatPong.reply_to(message))
            else:
                logger.debug(
                    f'Ignoring {message.message_type.value} message while '
                    'waiting for a peer',
                )

    async def _abort(self, reason: str) -> None:
        # Tears down a failed connect attempt without firing callbacks.
        logger.warning(f'Connection error: {reason}')
        self._state = SessionState.CLOSED
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close()

    async def send_message(self, payload: Any) -> bool:
        """Send a payload to the paired peer.

        Args:
            payload: JSON serializable payload.

        Returns:
            If the message was handed to the connection. `False` if the
            session is not paired or the message could not be sent.
        """
        if self._state is not SessionState.PAIRED:
            logger.warning('Cannot send message because session is not paired')
            return False
        return await self._send(Transfer(data=payload))

    async def _send(self, message: Message) -> bool:
        websocket = self._websocket
        if websocket is None or websocket.state is not State.OPEN:
            logger.warning('Not connected to broker server')
            return False

        try:
            await websocket.send(encode_message(message))
        except (
            MessageEncodeError,
            websockets.exceptions.ConnectionClosed,
        ) as e:
            logger.error(f'Error sending message: {e}')
            return False
        return True

    async def close(self) -> None:
        """Close the session.

        This is safe to call multiple times and from within callbacks.
        The close callback is invoked once if a connection was opened.
        """
        if self._state is SessionState.CLOSED:
            return

        opened = self._state is not SessionState.DISCONNECTED
        self._state = SessionState.CLOSED
        logger.debug('Closing peer session')

        receiver, self._receiver = self._receiver, None
        if receiver is not None and receiver is not asyncio.current_task():
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass

        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close()

        if opened:
            await self._invoke(self._on_close_callback)

    async def _invoke(self, callback: Callback | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f'Error in callback {callback!r}')

    async def _dispatch(self, message: Message) -> None:
        if isinstance(message, Transfer):
            await self._invoke(self._on_message_callback, message.data)
        elif isinstance(message, TransferError):
            logger.warning(f'Transfer error: {message.message}')
            await self._invoke(self._on_error_callback, message)
        elif isinstance(message, ConnectDisrupted):
            logger.info(f'Peer disconnected from {message.connect_id}')
            await self._invoke(self._on_disconnected_callback, message)
        elif isinstance(message, HeartbeatPing):
            await self._send(HeartbeatPong.reply_to(message))
        else:
            logger.warning(
                f'Unexpected message type: {message.message_type.value}',
            )

    async def _receive(self) -> None:
        assert self._websocket is not None
        websocket = self._websocket
        try:
            async for message_str in websocket:
                try:
                    message = decode_message(message_str)
                except MessageDecodeError as e:
                    logger.warning(f'Ignoring message: {e}')
                    continue
                await self._dispatch(message)
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(f'Connection to broker server failed: {e}')
        else:
            logger.info(
                f'Disconnected (code: {websocket.close_code}, '
                f'reason: {websocket.close_reason})',
            )
        await self.close()
