"""Fixtures and utilities for testing."""
from __future__ import annotations

import socket
from unittest import mock

from peerbroker.registry import Endpoint


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


def mock_endpoint(address: str = '127.0.0.1') -> Endpoint:
    """Create an endpoint with a mocked websocket.

    The `send()` and `close()` methods of the websocket are
    [`AsyncMock`][unittest.mock.AsyncMock] instances.
    """
    websocket = mock.MagicMock()
    websocket.remote_address = (address, 12345)
    websocket.send = mock.AsyncMock()
    websocket.close = mock.AsyncMock()
    return Endpoint(websocket=websocket, address=address)
