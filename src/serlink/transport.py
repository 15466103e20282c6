# -*- coding: utf-8 -*-

"""
asyncio transport over a pyserial instance.
Uses the device file descriptor where the event loop can watch it,
and falls back to polling for handles that have none.
"""

import asyncio
import logging
import os
import serial

from typing import Any
from typing import Optional
from typing import List

from .exceptions import PlatformNotSupportedError

DEFAULT_READ_SIZE = 4096

# Descriptor-less handles (Windows ports, loop://, socket://) are polled
POLL_INTERVAL = 0.005

log = logging.getLogger('serlink.transport')


def is_url(device: str) -> bool:
    """pyserial URL handlers look like ``loop://`` or ``socket://host:port``"""
    return '://' in device


class SerialTransport(asyncio.Transport):
    """
    Asynchronous transport for one open serial device.

    Two I/O modes:
    - ``fd``: readiness callbacks on the device descriptor (POSIX)
    - ``poll``: a task checking ``in_waiting`` every few milliseconds

    Reads are delivered to ``protocol.data_received`` in chunks of at most
    ``read_buffer_size`` bytes. Writes are buffered; partial device writes
    keep the remainder at the head of the buffer.
    """

    def __init__(
            self,
            loop: asyncio.AbstractEventLoop,
            protocol: asyncio.Protocol,
            serial_instance: serial.Serial,
            *,
            read_buffer_size: int = DEFAULT_READ_SIZE,
            high_water_mark: int = 65536,
            low_water_mark: int = 16384,
            poll_interval: float = POLL_INTERVAL
        ):
        super().__init__()

        self._loop = loop
        self._protocol = protocol
        self._serial = serial_instance
        self._closing = False
        self._connection_lost = False
        self._protocol_paused = False
        self._reading_paused = False

        self._read_buffer_size = read_buffer_size
        self._high_water_mark = high_water_mark
        self._low_water_mark = low_water_mark
        self._poll_interval = poll_interval

        self._write_buffer: List[bytes] = []
        self._write_buffer_size = 0

        self._mode: Optional[str] = None
        self._fd: Optional[int] = None
        self._reader_active = False
        self._writer_active = False
        self._poll_task: Optional[asyncio.Task] = None

        # Reads must never block the loop
        self._serial.timeout = 0

        self._setup_async_io()

        self._loop.call_soon(self._protocol.connection_made, self)

    def _setup_async_io(self):
        """Pick the I/O mode for this platform and handle"""
        if os.name == 'posix':
            self._setup_fd_mode()
        elif os.name == 'nt':
            self._start_polling()
        else:
            raise PlatformNotSupportedError(
                f'Platform {os.name} not supported for async serial'
            )

    def _setup_fd_mode(self):
        try:
            fd = self._serial.fileno()
            self._loop.add_reader(fd, self._read_ready)
        except (OSError, NotImplementedError, AttributeError) as e:
            log.debug('%s: no pollable descriptor (%s), polling instead',
                      self._port_name(), e)
            self._start_polling()
            return

        self._mode = 'fd'
        self._fd = fd
        self._reader_active = True
        # Writes only happen once the descriptor reports writable
        self._serial.write_timeout = 0

    def _start_polling(self):
        self._mode = 'poll'
        # loop:// raises on every write once write_timeout is 0
        if not self._is_url_handler():
            self._serial.write_timeout = 0
        if not self._closing and not self._poll_task:
            self._poll_task = self._loop.create_task(self._poll_loop())

    def _is_url_handler(self) -> bool:
        port = getattr(self._serial, 'port', None)
        return isinstance(port, str) and is_url(port)

    def _port_name(self) -> str:
        return getattr(self._serial, 'name', None) or getattr(self._serial, 'port', '?')

    @property
    def mode(self) -> Optional[str]:
        return self._mode

    def fileno(self) -> Optional[int]:
        """Descriptor watched by the event loop, None in poll mode"""
        return self._fd

    async def _poll_loop(self):
        try:
            # Keeps running while closing so buffered writes still drain
            while not self._connection_lost:
                if (not self._closing and not self._reading_paused
                        and self._serial.in_waiting > 0):
                    self._read_ready()

                if self._write_buffer and self._device_can_accept():
                    self._write_ready()

                await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            pass
        except (serial.SerialException, OSError) as e:
            self._fatal_error(e)

    def _device_can_accept(self) -> bool:
        try:
            return self._serial.out_waiting < 1024
        except (AttributeError, NotImplementedError):
            return True

    def _read_ready(self):
        """Handle incoming data - called when data is available"""
        if self._closing:
            return

        try:
            data = self._serial.read(self._read_buffer_size)
        except (serial.SerialException, OSError) as e:
            # Hang-up shows as readable with no data, pyserial raises
            self._fatal_error(e)
            return

        if data:
            self._protocol.data_received(data)

    def write(self, data: bytes):
        """
        Queue data for the device.

        Data is buffered and sent when the serial port is ready.
        """
        if self._closing or not data:
            return

        self._write_buffer.append(bytes(data))
        self._write_buffer_size += len(data)

        self._ensure_writer()
        self._check_flow_control()

    def _ensure_writer(self):
        if self._mode == 'fd' and not self._writer_active:
            try:
                self._loop.add_writer(self._fd, self._write_ready)
                self._writer_active = True
            except (OSError, NotImplementedError) as e:
                self._fatal_error(e)

    def _write_ready(self):
        """Handle write readiness - called when port is ready to write"""
        if not self._write_buffer or self._connection_lost:
            self._remove_writer()
            return

        data = self._write_buffer[0]

        try:
            written = self._serial.write(data)
        except (BlockingIOError, InterruptedError):
            return
        except (serial.SerialException, OSError) as e:
            self._fatal_error(e)
            return

        if written is None:
            written = len(data)

        if written >= len(data):
            self._write_buffer.pop(0)
            self._write_buffer_size -= len(data)
        else:
            self._write_buffer[0] = data[written:]
            self._write_buffer_size -= written

        if not self._write_buffer:
            self._remove_writer()

        self._check_flow_control()

        # close() deferred until the buffer drained
        if self._closing and not self._write_buffer:
            self._complete_close()

    def _remove_writer(self):
        if self._mode == 'fd' and self._writer_active:
            self._writer_active = False
            try:
                self._loop.remove_writer(self._fd)
            except (OSError, NotImplementedError):
                pass

    def _check_flow_control(self):
        """Manage flow control based on buffer levels"""
        if (self._protocol_paused and
            self._write_buffer_size <= self._low_water_mark):
            self._protocol_paused = False
            try:
                self._protocol.resume_writing()
            except Exception as e:
                self._loop.call_exception_handler({
                    'message': 'protocol.resume_writing() failed',
                    'exception': e,
                    'transport': self,
                    'protocol': self._protocol,
                })
        elif (not self._protocol_paused and self._write_buffer_size >= self._high_water_mark):
            self._protocol_paused = True
            try:
                self._protocol.pause_writing()
            except Exception as e:
                self._loop.call_exception_handler({
                    'message': 'protocol.pause_writing() failed',
                    'exception': e,
                    'transport': self,
                    'protocol': self._protocol,
                })

    def close(self):
        """Close the transport once pending writes are flushed"""
        if self._closing:
            return
        self._closing = True
        self._cleanup_reader()

        if not self._write_buffer:
            self._complete_close()

    def _complete_close(self):
        self._cleanup_async()
        self._call_connection_lost(None)

    def is_closing(self) -> bool:
        return self._closing

    def abort(self):
        """Close the transport immediately, discarding buffered data"""
        self._closing = True
        self._write_buffer.clear()
        self._write_buffer_size = 0
        self._cleanup_async()
        self._call_connection_lost(None)

    def _call_connection_lost(self, exc: Optional[BaseException]):
        if self._connection_lost:
            return
        self._connection_lost = True
        self._loop.call_soon(self._protocol.connection_lost, exc)

    def _cleanup_reader(self):
        if self._mode == 'fd' and self._reader_active:
            self._reader_active = False
            try:
                self._loop.remove_reader(self._fd)
            except (OSError, NotImplementedError):
                pass

    def _cleanup_async(self):
        """Unregister from the loop and release the device"""
        self._cleanup_reader()
        self._remove_writer()

        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()

        if self._serial is not None and self._serial.is_open:
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as e:
                log.debug('%s: error while closing: %s', self._port_name(), e)
            else:
                log.debug('%s: closed', self._port_name())

    def _fatal_error(self, exc: Exception):
        if self._connection_lost:
            return
        log.debug('%s: fatal error: %s', self._port_name(), exc)
        self._closing = True
        self._write_buffer.clear()
        self._write_buffer_size = 0
        self._cleanup_async()
        self._call_connection_lost(exc)

    def pause_reading(self):
        """Pause receiving data"""
        if self._reading_paused:
            return
        self._reading_paused = True
        self._cleanup_reader()

    def resume_reading(self):
        """Resume receiving data"""
        if not self._reading_paused or self._closing:
            return
        self._reading_paused = False
        if self._mode == 'fd':
            try:
                self._loop.add_reader(self._fd, self._read_ready)
                self._reader_active = True
            except (OSError, NotImplementedError) as e:
                self._fatal_error(e)

    def is_reading(self) -> bool:
        return not self._reading_paused and not self._closing

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        """Get transport information"""
        if name == 'serial':
            return self._serial
        elif name == 'write_buffer_size':
            return self._write_buffer_size
        elif name == 'closing':
            return self._closing
        elif name == 'fileno':
            return self._fd
        elif name == 'mode':
            return self._mode
        return default

    def can_write_eof(self):
        """Serial ports don't support EOF"""
        return False

    def write_eof(self):
        """Serial ports don't support EOF"""
        raise NotImplementedError("Serial ports do not support EOF")

    def get_write_buffer_size(self) -> int:
        return self._write_buffer_size

    def get_write_buffer_limits(self):
        return (self._low_water_mark, self._high_water_mark)

    def set_write_buffer_limits(self, high: Optional[int] = None, low: Optional[int] = None):
        """Set write buffer flow control limits"""
        if high is None:
            high = 65536 if low is None else 4 * low
        if low is None:
            low = high // 4

        if not (high >= low >= 0):
            raise ValueError(
                f"high ({high}) must be >= low ({low}) must be >= 0"
            )

        self._high_water_mark = high
        self._low_water_mark = low
        self._check_flow_control()
