from __future__ import annotations

import pytest

from peerbroker.exceptions import DuplicateHandleError
from peerbroker.exceptions import SlotFullError
from peerbroker.registry import Connection
from peerbroker.registry import ConnectionRegistry
from testing.utils import mock_endpoint


def test_endpoint_identity() -> None:
    endpoint1 = mock_endpoint('10.0.0.1')
    endpoint2 = mock_endpoint('10.0.0.1')
    assert endpoint1 == endpoint1
    assert endpoint1 != endpoint2
    assert len({endpoint1, endpoint2}) == 2
    assert '10.0.0.1' in repr(endpoint1)


def test_connection_counterpart() -> None:
    endpoint1, endpoint2, other = (mock_endpoint() for _ in range(3))
    connection = Connection('room1', endpoint1, endpoint2)
    assert connection.paired
    assert connection.counterpart(endpoint1) is endpoint2
    assert connection.counterpart(endpoint2) is endpoint1
    assert connection.counterpart(other) is None
    assert list(connection.endpoints()) == [endpoint1, endpoint2]

    connection.peer1 = None
    assert not connection.paired
    assert connection.counterpart(endpoint2) is None
    assert list(connection.endpoints()) == [endpoint2]


def test_join_fills_slots_in_order() -> None:
    registry = ConnectionRegistry()
    endpoint1, endpoint2 = mock_endpoint(), mock_endpoint()

    connection = registry.join(endpoint1, 'room1')
    assert connection.peer1 is endpoint1
    assert connection.peer2 is None
    assert not connection.paired

    assert registry.join(endpoint2, 'room1') is connection
    assert connection.peer2 is endpoint2
    assert connection.paired

    assert len(registry) == 1
    assert registry.lookup(endpoint1) is connection
    assert registry.lookup(endpoint2) is connection
    assert registry.get_connection('room1') is connection


def test_join_third_endpoint_is_rejected() -> None:
    registry = ConnectionRegistry()
    endpoint1, endpoint2, endpoint3 = (mock_endpoint() for _ in range(3))
    registry.join(endpoint1, 'room1')
    connection = registry.join(endpoint2, 'room1')

    with pytest.raises(SlotFullError, match='room1'):
        registry.join(endpoint3, 'room1')

    assert endpoint3 not in registry
    assert registry.lookup(endpoint3) is None
    assert connection.peer1 is endpoint1
    assert connection.peer2 is endpoint2


def test_join_duplicate_endpoint_is_rejected() -> None:
    registry = ConnectionRegistry()
    endpoint = mock_endpoint()
    connection = registry.join(endpoint, 'room1')

    with pytest.raises(DuplicateHandleError):
        registry.join(endpoint, 'room1')
    with pytest.raises(DuplicateHandleError):
        registry.join(endpoint, 'room2')

    assert connection.peer2 is None
    assert registry.get_connection('room2') is None
    assert registry.lookup(endpoint) is connection


def test_join_separate_connect_ids() -> None:
    registry = ConnectionRegistry()
    endpoint1, endpoint2 = mock_endpoint(), mock_endpoint()
    registry.join(endpoint1, 'room1')
    registry.join(endpoint2, 'room2')
    assert len(registry) == 2
    assert registry.lookup(endpoint1) is not registry.lookup(endpoint2)


def test_leave_unknown_endpoint_is_noop() -> None:
    registry = ConnectionRegistry()
    registry.join(mock_endpoint(), 'room1')
    assert registry.leave(mock_endpoint()) is None
    assert len(registry) == 1


def test_leave_clears_slot_and_deletes_empty_connection() -> None:
    registry = ConnectionRegistry()
    endpoint1, endpoint2 = mock_endpoint(), mock_endpoint()
    registry.join(endpoint1, 'room1')
    connection = registry.join(endpoint2, 'room1')

    assert registry.leave(endpoint1) is connection
    assert connection.peer1 is None
    assert connection.peer2 is endpoint2
    assert registry.get_connection('room1') is connection
    assert endpoint1 not in registry

    assert registry.leave(endpoint2) is connection
    assert registry.get_connection('room1') is None
    assert len(registry) == 0
    assert registry.get_connections() == []


def test_rejoin_after_leave() -> None:
    registry = ConnectionRegistry()
    endpoint1, endpoint2, endpoint3 = (mock_endpoint() for _ in range(3))
    registry.join(endpoint1, 'room1')
    registry.join(endpoint2, 'room1')

    # The vacated first slot is refilled by the new endpoint
    registry.leave(endpoint1)
    connection = registry.join(endpoint3, 'room1')
    assert connection.peer1 is endpoint3
    assert connection.peer2 is endpoint2
    assert connection.paired

    # A fully vacated connect ID is reused as if new
    registry.leave(endpoint2)
    registry.leave(endpoint3)
    connection = registry.join(endpoint1, 'room1')
    assert connection.peer1 is endpoint1
    assert connection.peer2 is None
