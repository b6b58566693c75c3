"""Exception types raised by broker clients and servers."""
from __future__ import annotations


class BrokerClientError(Exception):
    """Base exception type for exceptions raised by peer sessions."""

    pass


class PeerConnectionError(BrokerClientError):
    """Exception raised when a session fails to pair with a peer."""

    pass


class SessionStateError(BrokerClientError):
    """Exception raised when an operation is invalid in the session state."""

    pass


class BrokerServerError(Exception):
    """Base exception type for exceptions raised by the broker server."""

    pass


class BadRequestError(BrokerServerError):
    """A runtime exception indicating a bad client request."""

    pass


class PairingError(BrokerServerError):
    """Base exception type for failures to join a connection."""

    pass


class DuplicateHandleError(PairingError):
    """Endpoint is already registered to a connect ID."""

    pass


class SlotFullError(PairingError):
    """Both peer slots of a connection are already occupied."""

    pass
