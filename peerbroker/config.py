"""Broker server configuration file parsing."""

from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
    from typing import Self
else:  # pragma: <3.11 cover
    import tomli as tomllib
    from typing_extensions import Self

import tomli_w
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from peerbroker.server import DEFAULT_PORT
from peerbroker.server import DEFAULT_TIMEOUT


class BrokerLoggingConfig(BaseModel):
    """Broker logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_connection_interval: Optional seconds between logging the
            number of active connections.
        current_connection_limit: Max threshold for enumerating the
            detailed list of active connections. If `None`, no detailed
            list will be logged.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_connection_interval: int | None = 60
    current_connection_limit: int | None = 32


class BrokerServingConfig(BaseModel):
    """Broker serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        timeout: Seconds a client has to send a connect request, and the
            period and deadline of heartbeat pings.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        max_message_bytes: Maximum size in bytes of messages received by
            the broker server.
        logging: Logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    host: str | None = None
    port: int = DEFAULT_PORT
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    certfile: str | None = None
    keyfile: str | None = None
    max_message_bytes: int | None = None
    logging: BrokerLoggingConfig = Field(default_factory=BrokerLoggingConfig)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            Minimal config without SSL.
            ```toml title="broker.toml"
            port = 8080
            timeout = 30.0

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_connection_interval = 60
            current_connection_limit = 32
            ```

            ```python
            from peerbroker.config import BrokerServingConfig

            config = BrokerServingConfig.from_toml('broker.toml')
            ```

        Note:
            Omitted values will be set to their defaults (if they are an
            optional value with a default).
        """
        with open(filepath, 'rb') as f:
            data = tomllib.load(f)
        return cls.model_validate(data, strict=True)

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the configuration to a TOML file.

        Options set to `None` are omitted from the file and will take
        their default values when loaded again with
        [`from_toml()`][peerbroker.config.BrokerServingConfig.from_toml].

        Args:
            filepath: Path to TOML file to write.
        """
        filepath = pathlib.Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'wb') as f:
            tomli_w.dump(self.model_dump(exclude_none=True), f)
