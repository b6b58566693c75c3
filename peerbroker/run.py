"""CLI and serving functions for running a broker server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click

from peerbroker.config import BrokerServingConfig
from peerbroker.server import BrokerServer
from peerbroker.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def periodic_connection_logger(
    server: BrokerServer,
    interval: float = 60,
    limit: float | None = 32,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs active connections.

    Args:
        server: Broker server instance to log connections of.
        interval: Seconds between logging connections.
        limit: Only log detailed connection list if the number of
            connections is less than this number.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            connections = server.registry.get_connections()
            connections = sorted(connections, key=lambda c: c.connect_id)
            paired = sum(1 for c in connections if c.paired)
            message = (
                f'Active connections: {len(connections)} '
                f'(paired: {paired})'
            )
            if limit is not None and 0 < len(connections) < limit:
                details = '\n'.join(
                    f'{c.connect_id}: '
                    + ', '.join(e.address for e in c.endpoints())
                    for c in connections
                )
                message = f'{message}\n{details}'
            logger.log(level, message)

    task = spawn_guarded_background_task(_log)
    task.set_name('broker-connection-logger')

    return task


async def serve(config: BrokerServingConfig) -> None:
    """Run the broker server until SIGINT or SIGTERM is received.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`BrokerServingConfig.logging`][peerbroker.config.BrokerServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    server = BrokerServer(
        config.host,
        config.port,
        timeout=config.timeout,
        ssl_context=ssl_context,
        max_message_bytes=config.max_message_bytes,
    )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Broker serving configuration:\n{config_repr}')

    connection_logger_task: asyncio.Task[None] | None = None
    async with server:
        if config.logging.current_connection_interval is not None:
            level = (
                config.logging.default_level
                if isinstance(config.logging.default_level, int)
                else logging.getLevelName(config.logging.default_level)
            )
            connection_logger_task = periodic_connection_logger(
                server,
                config.logging.current_connection_interval,
                config.logging.current_connection_limit,
                level=level,
            )

        logger.info('Use ctrl-C to stop')
        await stop

        if connection_logger_task is not None:
            connection_logger_task.cancel()
            try:
                await connection_logger_task
            except asyncio.CancelledError:
                pass

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Broker server shutdown')


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option(
    '--timeout',
    type=float,
    metavar='SECONDS',
    help='Connect deadline and heartbeat period.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    timeout: float | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a broker server instance.

    The broker server pairs two clients which connect with the same connect
    ID and relays messages between them. If no configuration file is
    provided, a default configuration will be created from
    [`BrokerServingConfig()`][peerbroker.config.BrokerServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        BrokerServingConfig()
        if config_path is None
        else BrokerServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if timeout is not None:
        config.timeout = timeout
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(
            log_level.upper(),
        )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'server.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.logging.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.logging.websockets_level)

    asyncio.run(serve(config))
