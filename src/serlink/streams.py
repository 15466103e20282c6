# -*- coding: utf-8 -*-

"""
Byte-level handles for the two ends of a bridge session.
SerialHandle wraps a serial device driven by SerialTransport,
StreamHandle wraps an accepted TCP connection.
"""
import asyncio
import serial
import logging

from typing import Optional
from typing import Tuple
from typing import Type
from typing import Any

from .transport import SerialTransport
from .transport import DEFAULT_READ_SIZE
from .transport import is_url
from .exceptions import SerialConnectionError
from .exceptions import SerialConfigError
from .exceptions import SessionTerminated
from .exceptions import PeerDisconnected
from .exceptions import DeviceDisconnected

_DEFAULT_LIMIT = 64 * 1024  # 64KB

# Upper bound on waiting for a transport to flush on close
CLOSE_TIMEOUT = 1.0

log = logging.getLogger('serlink.streams')


async def open_serial_connection(
    *,
    url: Optional[str] = None,
    port: Optional[str] = None,
    baudrate: int = 9600,
    bytesize: int = serial.EIGHTBITS,
    parity: str = serial.PARITY_NONE,
    stopbits: float = serial.STOPBITS_ONE,
    exclusive: Optional[bool] = None,
    limit: Optional[int] = None,
    read_size: int = DEFAULT_READ_SIZE,
    **kwargs: Any
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    Open a serial device and return a StreamReader/StreamWriter pair.

    Args:
        url: pyserial URL (e.g., 'loop://', 'socket://host:7000')
        port: Serial device path (e.g., '/dev/ttyACM0' or 'COM3')
        baudrate: Baud rate (default: 9600)
        bytesize: Number of data bits (default: EIGHTBITS)
        parity: Parity checking (default: PARITY_NONE)
        stopbits: Number of stop bits (default: STOPBITS_ONE)
        exclusive: Take an advisory exclusive lock on the device (POSIX)
        limit: StreamReader buffer limit (default: 64KB)
        read_size: Largest chunk handed over per device read
        **kwargs: Additional pyserial parameters

    Returns:
        Tuple of (StreamReader, StreamWriter)

    Raises:
        SerialConnectionError: If the device cannot be opened
        SerialConfigError: If configuration is invalid

    Example:
        >>> reader, writer = await open_serial_connection(
        ...     port='/dev/ttyACM0',
        ...     baudrate=460800
        ... )
        >>> writer.write(b'AT\\r\\n')
        >>> response = await reader.readuntil(b'\\r\\n')
    """
    loop = asyncio.get_running_loop()

    if not url and not port:
        raise SerialConfigError("Either 'url' or 'port' must be specified")

    if limit is None:
        limit = _DEFAULT_LIMIT

    if exclusive is not None:
        kwargs['exclusive'] = exclusive

    serial_instance = await _create_serial_instance(
        url=url,
        port=port,
        baudrate=baudrate,
        bytesize=bytesize,
        parity=parity,
        stopbits=stopbits,
        timeout=0,
        **kwargs
    )

    reader = asyncio.StreamReader(limit=limit)
    protocol = asyncio.StreamReaderProtocol(reader)

    try:
        transport = SerialTransport(
            loop, protocol, serial_instance, read_buffer_size=read_size
        )
    except Exception:
        serial_instance.close()
        raise

    writer = asyncio.StreamWriter(transport, protocol, reader, loop)

    return reader, writer


async def _create_serial_instance(**kwargs: Any) -> serial.Serial:
    """
    Open a pyserial instance off the event loop.

    Handles both URL-based and direct port connections.
    """
    url = kwargs.pop('url', None)
    port = kwargs.pop('port', None)
    loop = asyncio.get_running_loop()

    try:
        if url:
            def create_url_instance():
                return serial.serial_for_url(url, **kwargs)

            serial_instance = await loop.run_in_executor(
                None, create_url_instance
            )
        else:
            def create_direct_instance():
                return serial.Serial(port=port, **kwargs)

            serial_instance = await loop.run_in_executor(
                None, create_direct_instance
            )

        return serial_instance

    except ValueError as e:
        # pyserial rejects bad baud rates and framing options this way
        raise SerialConfigError(f"Invalid serial settings for {url or port}: {e}") from e
    except (serial.SerialException, OSError) as e:
        raise SerialConnectionError(f"Failed to open serial port {url or port}: {e}") from e


class BaseHandle:
    """
    One end of a relay session.

    ``read`` returns up to ``size`` bytes, ``b''`` at EOF, or raises when
    the underlying connection failed. ``write`` raises the handle's
    ``disconnected`` exception on any failure. ``close`` is idempotent.
    """

    disconnected: Type[SessionTerminated] = SessionTerminated

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 name: str):
        self._reader = reader
        self._writer = writer
        self._name = name
        self._closed = False

    def __repr__(self):
        state = 'closed' if self._closed else 'open'
        return f'<{type(self).__name__} {self._name} {state}>'

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def writer(self) -> asyncio.StreamWriter:
        return self._writer

    def fileno(self) -> Optional[int]:
        raise NotImplementedError

    async def read(self, size: int = DEFAULT_READ_SIZE) -> bytes:
        return await self._reader.read(size)

    async def write(self, data: bytes) -> None:
        if self._closed or self._writer.is_closing():
            raise self.disconnected(f'{self._name}: connection closed')
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise self.disconnected(f'{self._name}: write failed: {e}') from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        self._writer.close()
        try:
            await asyncio.wait_for(self._writer.wait_closed(), CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            log.debug('%s: close timed out, aborting', self._name)
            self._writer.transport.abort()
        except OSError as e:
            # wait_closed() re-raises whatever broke the connection
            log.debug('%s: closed after error: %s', self._name, e)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class SerialHandle(BaseHandle):
    """Open serial device; failures attribute blame to the device side"""

    disconnected = DeviceDisconnected

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 name: str, baudrate: Optional[int] = None):
        super().__init__(reader, writer, name)
        self._baudrate = baudrate

    @property
    def baudrate(self) -> Optional[int]:
        return self._baudrate

    def fileno(self) -> Optional[int]:
        return self._writer.transport.get_extra_info('fileno')


class StreamHandle(BaseHandle):
    """Accepted TCP connection; failures attribute blame to the peer"""

    disconnected = PeerDisconnected

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 name: Optional[str] = None):
        if name is None:
            name = _format_peer(writer.get_extra_info('peername'))
        super().__init__(reader, writer, name)

    def fileno(self) -> Optional[int]:
        sock = self._writer.get_extra_info('socket')
        return sock.fileno() if sock is not None else None


def _format_peer(peer: Any) -> str:
    if isinstance(peer, tuple) and len(peer) >= 2:
        host, port = peer[0], peer[1]
        if ':' in str(host):
            return f'[{host}]:{port}'
        return f'{host}:{port}'
    return str(peer) if peer else 'unknown-peer'


async def open_serial_handle(
    device: str,
    baudrate: int,
    *,
    exclusive: Optional[bool] = None,
    read_size: int = DEFAULT_READ_SIZE,
    **kwargs: Any
) -> SerialHandle:
    """
    Open ``device`` (a path or a pyserial URL) as a SerialHandle.

    Raises:
        SerialConnectionError: If the device cannot be opened
        SerialConfigError: If the settings are rejected
    """
    if is_url(device):
        target = {'url': device}
    else:
        target = {'port': device}

    reader, writer = await open_serial_connection(
        baudrate=baudrate,
        exclusive=exclusive,
        read_size=read_size,
        **target,
        **kwargs
    )
    log.debug('%s: opened at %d baud', device, baudrate)
    return SerialHandle(reader, writer, device, baudrate)
