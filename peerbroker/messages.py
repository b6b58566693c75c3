"""Message types for peer session and broker server communication.

Every frame on the wire is a single JSON object with a string `type`
discriminant plus the fields of that message kind. Field names on the wire
are camel case (e.g., `connectId`) and are mapped to snake case attributes
on the message dataclasses.

Example:
    ```python
    from peerbroker.messages import Connect
    from peerbroker.messages import decode_message
    from peerbroker.messages import encode_message

    frame = encode_message(Connect(connect_id='room1'))
    assert frame == '{"type": "connect", "connectId": "room1"}'
    assert decode_message(frame) == Connect(connect_id='room1')
    ```
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import ClassVar


class MessageType(enum.Enum):
    """Types of messages supported."""

    connect = 'connect'
    """Request to join or create a pairing slot."""
    connect_successful = 'connect-successful'
    """Pairing is complete."""
    connect_error = 'connect-error'
    """Connect request was rejected."""
    connect_timeout = 'connect-timeout'
    """No connect request was received within the join deadline."""
    connect_disrupted = 'connect-disrupted'
    """The paired peer has gone away."""
    transfer = 'transfer'
    """Application payload relayed between peers."""
    transfer_error = 'transfer-error'
    """Transfer could not be relayed to a peer."""
    heartbeat_ping = 'heartbeat-ping'
    """Liveness probe."""
    heartbeat_pong = 'heartbeat-pong'
    """Liveness reply."""


def _key(name: str) -> Any:
    # Attaches the wire name of a field as metadata.
    return dataclasses.field(metadata={'key': name})


@dataclasses.dataclass
class Message:
    """Base message."""

    message_type: ClassVar[MessageType]


@dataclasses.dataclass
class Connect(Message):
    """Request from a peer to join the pairing slot of a connect ID.

    Attributes:
        connect_id: Identifier shared out-of-band by the two peers.
    """

    connect_id: str = _key('connectId')
    message_type: ClassVar[MessageType] = MessageType.connect


@dataclasses.dataclass
class ConnectSuccessful(Message):
    """Sent by the broker to both peers once a pair is complete.

    Attributes:
        connect_id: Identifier of the pair.
        peer_ip: Address of the other peer. Diagnostic only.
    """

    connect_id: str = _key('connectId')
    peer_ip: str = _key('peerIp')
    message_type: ClassVar[MessageType] = MessageType.connect_successful


@dataclasses.dataclass
class ConnectError(Message):
    """Connect request was rejected and the connection will be closed."""

    message: str
    message_type: ClassVar[MessageType] = MessageType.connect_error


@dataclasses.dataclass
class ConnectTimeout(Message):
    """No valid connect request arrived before the join deadline."""

    message: str
    message_type: ClassVar[MessageType] = MessageType.connect_timeout


@dataclasses.dataclass
class ConnectDisrupted(Message):
    """The other peer of an active pair vanished."""

    connect_id: str = _key('connectId')
    message_type: ClassVar[MessageType] = MessageType.connect_disrupted


@dataclasses.dataclass
class Transfer(Message):
    """Opaque application payload.

    Attributes:
        data: Any JSON serializable value. Relayed unmodified.
    """

    data: Any = None
    message_type: ClassVar[MessageType] = MessageType.transfer


@dataclasses.dataclass
class TransferError(Message):
    """Transfer could not be relayed because there is no connected peer."""

    message: str
    message_type: ClassVar[MessageType] = MessageType.transfer_error


@dataclasses.dataclass
class _Heartbeat(Message):
    # Heartbeat frames carry arbitrary extra fields next to the type key.
    fields: dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class HeartbeatPing(_Heartbeat):
    """Liveness probe.

    Attributes:
        fields: Arbitrary correlation data (e.g., an ID or timestamp) which
            is echoed back in the matching pong.
    """

    message_type: ClassVar[MessageType] = MessageType.heartbeat_ping


@dataclasses.dataclass
class HeartbeatPong(_Heartbeat):
    """Liveness reply mirroring the fields of a ping."""

    message_type: ClassVar[MessageType] = MessageType.heartbeat_pong

    @classmethod
    def reply_to(cls, ping: HeartbeatPing) -> HeartbeatPong:
        """Create the pong answering `ping`.

        Every field of the ping except `type` is copied in order.
        """
        return cls(
            fields={k: v for k, v in ping.fields.items() if k != 'type'},
        )


_MESSAGE_CLASSES: dict[MessageType, type[Message]] = {
    cls.message_type: cls
    for cls in (
        Connect,
        ConnectSuccessful,
        ConnectError,
        ConnectTimeout,
        ConnectDisrupted,
        Transfer,
        TransferError,
        HeartbeatPing,
        HeartbeatPong,
    )
}


class MessageError(Exception):
    """Base exception type for messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class UnknownMessageTypeError(MessageDecodeError):
    """Exception raised when a message has an unknown type."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def decode_message(message: str | bytes) -> Message:
    """Decode a JSON frame into the correct message type.

    Args:
        message: JSON string to decode. Bytes are decoded as UTF-8.

    Returns:
        Parsed message.

    Raises:
        UnknownMessageTypeError: If the `type` of the message is unknown.
        MessageDecodeError: If the message cannot be decoded.
    """
    if isinstance(message, bytes):
        try:
            message = message.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MessageDecodeError('Message is not valid UTF-8.') from e

    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise MessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    try:
        type_name = data.pop('type')
    except KeyError as e:
        raise MessageDecodeError(
            'Message does not contain a type key.',
        ) from e
    if not isinstance(type_name, str):
        raise MessageDecodeError(
            f'Message type must be a string but got {type_name!r}.',
        )

    try:
        message_type = MessageType(type_name)
    except ValueError as e:
        raise UnknownMessageTypeError(
            f'The message is of an unknown message type: {type_name!r}.',
        ) from e

    message_class = _MESSAGE_CLASSES[message_type]
    if issubclass(message_class, _Heartbeat):
        return message_class(fields=data)

    kwargs: dict[str, Any] = {}
    for field in dataclasses.fields(message_class):
        key = field.metadata.get('key', field.name)
        if key in data:
            kwargs[field.name] = data[key]

    try:
        return message_class(**kwargs)
    except TypeError as e:
        raise MessageDecodeError(
            f'Failed to convert message to {message_class.__name__}: {e}',
        ) from e


def encode_message(message: Message) -> str:
    """Encode message as a JSON frame.

    Args:
        message: Message to JSON encode.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, Message):
        raise MessageEncodeError(
            f'Message is not an instance of {Message.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data: dict[str, Any] = {'type': message.message_type.value}
    if isinstance(message, _Heartbeat):
        data.update(
            (k, v) for k, v in message.fields.items() if k != 'type'
        )
    else:
        for field in dataclasses.fields(message):
            key = field.metadata.get('key', field.name)
            data[key] = getattr(message, field.name)

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise MessageEncodeError(f'Error encoding message: {e}') from e
