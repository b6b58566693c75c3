"""Registry of peer endpoints paired by connect ID on the broker server."""
from __future__ import annotations

import dataclasses
import datetime
import logging
from typing import Any
from typing import Iterator

from peerbroker.exceptions import DuplicateHandleError
from peerbroker.exceptions import SlotFullError

logger = logging.getLogger(__name__)


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(eq=False)
class Endpoint:
    """Broker's handle to one websocket connection with a peer.

    Endpoints compare and hash by identity so two websockets from the same
    address are always distinct endpoints.

    Attributes:
        websocket: Websocket connection to the peer.
        address: Remote address of the peer. Only used for diagnostics.
        created: Time the endpoint was accepted at.
    """

    websocket: Any
    address: str
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        return (
            f'{self.__class__.__name__}(address={self.address}, '
            f'created={created})'
        )


@dataclasses.dataclass
class Connection:
    """Pairing slot of a single connect ID.

    Attributes:
        connect_id: Identifier shared by the peers.
        peer1: Endpoint which joined first.
        peer2: Endpoint which joined second.
    """

    connect_id: str
    peer1: Endpoint | None = None
    peer2: Endpoint | None = None

    @property
    def paired(self) -> bool:
        """Both slots are occupied."""
        return self.peer1 is not None and self.peer2 is not None

    def counterpart(self, endpoint: Endpoint) -> Endpoint | None:
        """Get the endpoint in the slot not held by `endpoint`."""
        if self.peer1 is endpoint:
            return self.peer2
        elif self.peer2 is endpoint:
            return self.peer1
        return None

    def endpoints(self) -> Iterator[Endpoint]:
        """Iterate over the occupied slots."""
        for peer in (self.peer1, self.peer2):
            if peer is not None:
                yield peer


class ConnectionRegistry:
    """Maps connect IDs to connections and endpoints to connect IDs.

    All operations are synchronous so each completes atomically with
    respect to the event loop processing incoming messages.

    Warning:
        This class is intended for internal use by the
        [`BrokerServer`][peerbroker.server.BrokerServer].
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._connect_ids: dict[Endpoint, str] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, endpoint: object) -> bool:
        return endpoint in self._connect_ids

    def join(self, endpoint: Endpoint, connect_id: str) -> Connection:
        """Add an endpoint to the connection for a connect ID.

        The connection is created if this is the first endpoint to join
        with `connect_id`.

        Args:
            endpoint: Endpoint requesting to join.
            connect_id: Connect ID to join.

        Returns:
            The connection the endpoint was added to.

        Raises:
            DuplicateHandleError: If the endpoint is already registered to
                any connect ID.
            SlotFullError: If both slots of the connection are occupied.
        """
        if endpoint in self._connect_ids:
            raise DuplicateHandleError(
                f'Endpoint {endpoint.address} is already connected.',
            )

        connection = self._connections.get(connect_id)
        if connection is None:
            connection = Connection(connect_id)
            self._connections[connect_id] = connection

        if connection.peer1 is None:
            connection.peer1 = endpoint
        elif connection.peer2 is None:
            connection.peer2 = endpoint
        else:
            raise SlotFullError(
                f'Too many connections for connect ID {connect_id}.',
            )

        self._connect_ids[endpoint] = connect_id
        return connection

    def leave(self, endpoint: Endpoint) -> Connection | None:
        """Remove an endpoint from its connection.

        The connection is deleted once both of its slots are empty so the
        connect ID can be reused.

        Returns:
            The connection the endpoint was removed from or `None` if the
            endpoint was not registered.
        """
        connect_id = self._connect_ids.pop(endpoint, None)
        if connect_id is None:
            return None

        connection = self._connections.get(connect_id)
        if connection is None:  # pragma: no cover
            return None

        if connection.peer1 is endpoint:
            connection.peer1 = None
        elif connection.peer2 is endpoint:
            connection.peer2 = None

        if connection.peer1 is None and connection.peer2 is None:
            del self._connections[connect_id]
            logger.debug(f'Removed empty connection {connect_id}')

        return connection

    def lookup(self, endpoint: Endpoint) -> Connection | None:
        """Get the connection an endpoint is registered to."""
        connect_id = self._connect_ids.get(endpoint)
        if connect_id is None:
            return None
        return self._connections.get(connect_id)

    def get_connection(self, connect_id: str) -> Connection | None:
        """Get a connection by connect ID."""
        return self._connections.get(connect_id)

    def get_connections(self) -> list[Connection]:
        """Get a list of all connections."""
        return list(self._connections.values())
