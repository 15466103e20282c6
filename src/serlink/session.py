# -*- coding: utf-8 -*-

"""
Relay session: one TCP connection bridged to one serial device.

Each iteration waits once for either side to become ready, then acts on
the readiness flags in a fixed order: stream error, serial error, stream
data, serial data. Errors always win over pending data.
"""
import asyncio
import enum
import logging

from dataclasses import dataclass
from typing import Dict
from typing import Optional

from .exceptions import SessionOutcome
from .exceptions import SessionTerminated
from .registry import DeviceLease
from .registry import DeviceRegistry
from .streams import StreamHandle
from .streams import SerialHandle
from .streams import open_serial_handle
from .streams import BaseHandle
from .transport import DEFAULT_READ_SIZE
from .config import BridgeConfig
from .config import DEFAULT_POLL_INTERVAL

log = logging.getLogger('serlink.session')


class Side(enum.Enum):
    STREAM = 'stream'
    SERIAL = 'serial'


@dataclass(frozen=True)
class Readiness:
    """Flags for one loop iteration. Never carried over to the next."""
    stream_readable: bool = False
    stream_error: bool = False
    serial_readable: bool = False
    serial_error: bool = False


class SessionLogAdapter(logging.LoggerAdapter):
    """Prefixes records with the session's peer"""

    def process(self, msg, kwargs):
        return f"[{self.extra['peer']}] {msg}", kwargs


class ReadinessPoller:
    """
    Keeps one outstanding read per side and waits on both at once.

    A read that completed is held until the session takes it, so a side
    never has more than one chunk in flight and nothing is read ahead of
    what has been forwarded.
    """

    def __init__(self, stream: StreamHandle, serial: SerialHandle,
                 read_size: int = DEFAULT_READ_SIZE):
        self._handles = {Side.STREAM: stream, Side.SERIAL: serial}
        self._read_size = read_size
        self._pending: Dict[Side, Optional[asyncio.Future]] = {
            Side.STREAM: None,
            Side.SERIAL: None,
        }

    def _arm(self) -> None:
        for side, handle in self._handles.items():
            if self._pending[side] is None:
                self._pending[side] = asyncio.ensure_future(
                    handle.read(self._read_size)
                )

    async def poll(self, timeout: float) -> Readiness:
        """Wait up to ``timeout`` seconds for either side, then report both"""
        self._arm()
        await asyncio.wait(
            list(self._pending.values()),
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        return Readiness(
            stream_readable=self._readable(Side.STREAM),
            stream_error=self._failed(Side.STREAM),
            serial_readable=self._readable(Side.SERIAL),
            serial_error=self._failed(Side.SERIAL),
        )

    def _readable(self, side: Side) -> bool:
        fut = self._pending[side]
        if fut is None or not fut.done() or fut.cancelled():
            return False
        return fut.exception() is None and bool(fut.result())

    def _failed(self, side: Side) -> bool:
        """EOF, a read exception, or a cancelled read"""
        fut = self._pending[side]
        if fut is None or not fut.done():
            return False
        if fut.cancelled() or fut.exception() is not None:
            return True
        return not fut.result()

    def error(self, side: Side) -> Optional[BaseException]:
        fut = self._pending[side]
        if fut is None or not fut.done() or fut.cancelled():
            return None
        return fut.exception()

    def take(self, side: Side) -> bytes:
        """Hand over a completed chunk; the next poll re-arms this side"""
        fut = self._pending[side]
        if fut is None or not fut.done():
            raise RuntimeError(f'{side.value} has no completed read')
        self._pending[side] = None
        return fut.result()

    async def cancel(self) -> None:
        pending = [fut for fut in self._pending.values() if fut is not None]
        self._pending = {side: None for side in self._pending}
        for fut in pending:
            fut.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class Session:
    """
    Relays bytes between ``stream`` and ``serial`` until one side fails.

    The session owns both handles (and the device lease, if any) and
    releases all of them when ``run`` returns, whatever the reason.
    """

    def __init__(
        self,
        stream: StreamHandle,
        serial: SerialHandle,
        *,
        lease: Optional[DeviceLease] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        read_size: int = DEFAULT_READ_SIZE,
        trace: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
    ):
        self._stream = stream
        self._serial = serial
        self._lease = lease
        self._poll_interval = poll_interval
        self._trace = trace
        self._poller = ReadinessPoller(stream, serial, read_size)
        self._log = logger or SessionLogAdapter(log, {'peer': stream.name})
        self._closed = False
        self.outcome: Optional[SessionOutcome] = None
        self.bytes_to_serial = 0
        self.bytes_to_stream = 0

    @classmethod
    async def open(
        cls,
        stream: StreamHandle,
        config: BridgeConfig,
        *,
        registry: Optional[DeviceRegistry] = None,
    ) -> 'Session':
        """
        Claim and open the configured device for ``stream``.

        Raises:
            DeviceBusyError: registry refused the device path
            SerialConnectionError: the device could not be opened
            SerialConfigError: pyserial rejected the settings
        """
        session_log = SessionLogAdapter(log, {'peer': stream.name})
        lease = None
        if registry is not None:
            lease = await registry.acquire(config.serial_device, stream.name)

        try:
            serial = await open_serial_handle(
                config.serial_device,
                config.baudrate,
                exclusive=config.exclusive,
                read_size=config.read_size,
            )
        except BaseException:
            if lease is not None:
                lease.release()
            raise

        session_log.debug('opened %s at %d baud', serial.name, config.baudrate)
        return cls(
            stream,
            serial,
            lease=lease,
            poll_interval=config.poll_interval,
            read_size=config.read_size,
            trace=config.trace,
            logger=session_log,
        )

    @property
    def stream(self) -> StreamHandle:
        return self._stream

    @property
    def serial(self) -> SerialHandle:
        return self._serial

    @property
    def closed(self) -> bool:
        return self._closed

    async def run(self) -> SessionOutcome:
        """Relay until termination, then close everything"""
        self._log.debug('relay started with %s', self._serial.name)
        try:
            self.outcome = await self._relay()
        finally:
            await self.close()
        self._log.info('%s (%d bytes to serial, %d bytes to stream)',
                       self.outcome.value, self.bytes_to_serial, self.bytes_to_stream)
        return self.outcome

    async def _relay(self) -> SessionOutcome:
        while True:
            ready = await self._poller.poll(self._poll_interval)

            if ready.stream_error:
                self._log_read_error(Side.STREAM)
                return SessionOutcome.PEER_DISCONNECTED
            if ready.serial_error:
                self._log_read_error(Side.SERIAL)
                return SessionOutcome.DEVICE_DISCONNECTED

            try:
                if ready.stream_readable:
                    await self._forward(Side.STREAM, self._serial)
                elif ready.serial_readable:
                    await self._forward(Side.SERIAL, self._stream)
            except SessionTerminated as e:
                self._log.debug('%s', e)
                return e.outcome

    async def _forward(self, source: Side, dest: BaseHandle) -> None:
        chunk = self._poller.take(source)
        if not chunk:
            return
        await dest.write(chunk)

        if source is Side.STREAM:
            self.bytes_to_serial += len(chunk)
        else:
            self.bytes_to_stream += len(chunk)
        if self._trace:
            self._log.debug('%s -> %s: %d bytes', source.value, dest.name, len(chunk))

    def _log_read_error(self, side: Side) -> None:
        exc = self._poller.error(side)
        if exc is None:
            self._log.debug('%s: hang-up', side.value)
        else:
            self._log.debug('%s: read failed: %s', side.value, exc)

    async def close(self) -> None:
        """Release both handles and the device lease; safe to call again"""
        if self._closed:
            return
        self._closed = True
        # Each step runs even if an earlier one raised or was cancelled
        try:
            await self._poller.cancel()
        finally:
            try:
                await self._serial.close()
            finally:
                try:
                    await self._stream.close()
                finally:
                    if self._lease is not None:
                        self._lease.release()
