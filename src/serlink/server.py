# -*- coding: utf-8 -*-

"""
TCP acceptor: one relay session per accepted connection.
"""
import asyncio
import logging
import socket

from typing import Optional
from typing import Set
from typing import Tuple

from .config import BridgeConfig
from .exceptions import SerlinkError
from .exceptions import SessionOutcome
from .registry import DeviceRegistry
from .session import Session
from .streams import StreamHandle

log = logging.getLogger('serlink.server')


class BridgeServer:
    """
    Listens on ``config.address:config.port`` and bridges every accepted
    connection to ``config.serial_device``.

    At most ``config.max_sessions`` sessions run at once (0 = unlimited);
    connections over the limit are closed straight away. A failing session
    only ever closes its own connection.

    Example:
        >>> server = BridgeServer(BridgeConfig(serial_device='/dev/ttyACM0'))
        >>> await server.start()
        >>> await server.serve_forever()
    """

    def __init__(self, config: BridgeConfig, registry: Optional[DeviceRegistry] = None):
        self._config = config.validate()
        self._registry = registry or DeviceRegistry(config.device_policy)
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()
        self._active = 0
        self.outcomes = {outcome: 0 for outcome in SessionOutcome}
        self.rejected = 0

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def active_sessions(self) -> int:
        return self._active

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); useful when configured with port 0"""
        if self._server is None or not self._server.sockets:
            raise RuntimeError('Server not started')
        return self._server.sockets[0].getsockname()[:2]

    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(
            self._handle_client,
            self._config.address,
            self._config.port,
            reuse_address=True,
        )
        host, port = self.address
        log.info('Listening on %s:%d, bridging to %s at %d baud',
                 host, port, self._config.serial_device, self._config.baudrate)

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await self._server.serve_forever()
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop accepting, cancel live sessions and wait for their teardown"""
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await server.wait_closed()
        log.info('Server closed')

    def _at_capacity(self) -> bool:
        limit = self._config.max_sessions
        return limit > 0 and self._active >= limit

    async def _handle_client(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._tasks.add(task)
        try:
            await self._serve_connection(reader, writer)
        finally:
            self._tasks.discard(task)

    async def _serve_connection(self, reader: asyncio.StreamReader,
                                writer: asyncio.StreamWriter) -> None:
        stream = StreamHandle(reader, writer)
        _set_nodelay(stream.writer)

        if self._at_capacity():
            self.rejected += 1
            log.warning('%s: rejected, %d sessions already running',
                        stream.name, self._active)
            await stream.close()
            return

        log.info('%s: connected', stream.name)
        self._active += 1
        try:
            await self._run_session(stream)
        finally:
            self._active -= 1

    async def _run_session(self, stream: StreamHandle) -> None:
        try:
            session = await Session.open(stream, self._config, registry=self._registry)
        except SerlinkError as e:
            self.rejected += 1
            log.error('%s: cannot start session: %s', stream.name, e)
            await stream.close()
            return
        except BaseException:
            await stream.close()
            raise

        outcome = await session.run()
        self.outcomes[outcome] += 1


def _set_nodelay(writer: asyncio.StreamWriter) -> None:
    sock = writer.get_extra_info('socket')
    if sock is None or sock.family not in (socket.AF_INET, socket.AF_INET6):
        return
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError as e:
        log.debug('TCP_NODELAY not set: %s', e)
