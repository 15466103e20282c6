"""
Unit tests for SerialTransport.
"""
import pytest
import asyncio
import serial

from unittest.mock import patch
from unittest.mock import PropertyMock
from serlink.transport import SerialTransport
from serlink.exceptions import PlatformNotSupportedError


def fd_transport(loop, protocol, serial_instance, **kwargs):
    """Build a transport in fd mode without touching real descriptors"""
    with patch('os.name', 'posix'):
        with patch.object(loop, 'add_reader'):
            return SerialTransport(loop, protocol, serial_instance, **kwargs)


class TestSerialTransport:
    """Test SerialTransport functionality."""

    @pytest.mark.asyncio
    async def test_transport_initialization(self, mock_serial, mock_protocol):
        """Test transport initialization in polling mode."""
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        assert mock_serial.timeout == 0
        assert transport.mode == 'poll'
        assert transport.fileno() is None

        # Give event loop time to process call_soon
        await asyncio.sleep(0.01)

        mock_protocol.connection_made.assert_called_once_with(transport)
        transport.abort()

    @pytest.mark.asyncio
    async def test_fd_mode_initialization(self, mock_serial, mock_protocol):
        """Descriptor is registered and writes become non-blocking."""
        loop = asyncio.get_running_loop()

        with patch('os.name', 'posix'):
            with patch.object(loop, 'add_reader') as mock_add:
                transport = SerialTransport(loop, mock_protocol, mock_serial)

        mock_add.assert_called_once_with(42, transport._read_ready)
        assert transport.mode == 'fd'
        assert transport.fileno() == 42
        assert transport.get_extra_info('fileno') == 42
        assert mock_serial.write_timeout == 0

    @pytest.mark.asyncio
    async def test_no_descriptor_falls_back_to_polling(self, mock_serial, mock_protocol):
        """Handles without fileno() (URL handlers) are polled."""
        loop = asyncio.get_running_loop()
        mock_serial.fileno.side_effect = OSError("Bad file descriptor")

        with patch('os.name', 'posix'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        assert transport.mode == 'poll'
        assert transport._poll_task is not None
        transport.abort()

    @pytest.mark.asyncio
    @pytest.mark.parametrize('port, write_timeout', [
        ('COM3', 0),
        ('loop://', None),
        ('socket://10.0.0.5:7000', None),
    ])
    async def test_polled_port_write_timeout(self, mock_serial, mock_protocol,
                                             port, write_timeout):
        """Real ports never block the loop on write; URL handlers keep theirs."""
        loop = asyncio.get_running_loop()
        mock_serial.port = port
        mock_serial.write_timeout = None

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        assert transport.mode == 'poll'
        assert mock_serial.write_timeout == write_timeout
        transport.abort()

    @pytest.mark.asyncio
    async def test_platform_not_supported(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'unsupported_os'):
            with pytest.raises(PlatformNotSupportedError):
                SerialTransport(loop, mock_protocol, mock_serial)

    @pytest.mark.asyncio
    async def test_write_data(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()
        transport = fd_transport(loop, mock_protocol, mock_serial)

        test_data = b"Hello, World!"
        with patch.object(loop, 'add_writer') as mock_add:
            transport.write(test_data)
            transport.write(b"")

        assert transport.get_write_buffer_size() == len(test_data)
        mock_add.assert_called_once_with(42, transport._write_ready)

    @pytest.mark.asyncio
    async def test_write_ready_full_write(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()
        transport = fd_transport(loop, mock_protocol, mock_serial)
        mock_serial.write.side_effect = lambda data: len(data)

        with patch.object(loop, 'add_writer'), patch.object(loop, 'remove_writer') as mock_remove:
            transport.write(b"hello")
            transport._write_ready()

        mock_serial.write.assert_called_once_with(b"hello")
        assert transport.get_write_buffer_size() == 0
        mock_remove.assert_called_once_with(42)

    @pytest.mark.asyncio
    async def test_write_ready_partial_write(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        test_data = b"hello world"
        mock_serial.write.return_value = 5

        transport._write_buffer = [test_data]
        transport._write_buffer_size = len(test_data)

        transport._write_ready()

        assert transport._write_buffer == [b" world"]
        assert transport._write_buffer_size == 6
        transport.abort()

    @pytest.mark.asyncio
    async def test_write_ready_blocking_io(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        test_data = b"test data"
        mock_serial.write.side_effect = BlockingIOError()

        transport._write_buffer = [test_data]
        transport._write_buffer_size = len(test_data)

        transport._write_ready()

        assert transport._write_buffer == [test_data]
        assert transport.is_closing() is False
        transport.abort()

    @pytest.mark.asyncio
    async def test_write_failure_is_fatal(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        error = serial.SerialException("write failed: [Errno 5] Input/output error")
        mock_serial.write.side_effect = error
        transport._write_buffer = [b"data"]
        transport._write_buffer_size = 4

        transport._write_ready()
        await asyncio.sleep(0.01)

        assert transport.is_closing() is True
        assert transport.get_write_buffer_size() == 0
        mock_protocol.connection_lost.assert_called_once_with(error)
        mock_serial.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_write_flow_control(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(
                loop, mock_protocol, mock_serial,
                high_water_mark=10,
                low_water_mark=5
            )

        transport.write(b"1234567890")

        mock_protocol.pause_writing.assert_called_once()
        transport.abort()

    @pytest.mark.asyncio
    async def test_read_ready_delivers_chunk(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()
        transport = fd_transport(loop, mock_protocol, mock_serial, read_buffer_size=16)
        mock_serial.read.return_value = b"ACK\n"

        transport._read_ready()

        mock_serial.read.assert_called_once_with(16)
        mock_protocol.data_received.assert_called_once_with(b"ACK\n")

    @pytest.mark.asyncio
    async def test_read_ready_with_exception(self, mock_serial, mock_protocol):
        """A hung-up device raises on read and kills the transport."""
        loop = asyncio.get_running_loop()
        transport = fd_transport(loop, mock_protocol, mock_serial)

        error = serial.SerialException(
            "device reports readiness to read but returned no data"
        )
        mock_serial.read.side_effect = error

        with patch.object(loop, 'remove_reader'):
            transport._read_ready()
        await asyncio.sleep(0.01)

        assert transport._closing is True
        mock_protocol.data_received.assert_not_called()
        mock_protocol.connection_lost.assert_called_once_with(error)

    @pytest.mark.asyncio
    async def test_poll_loop_reads_waiting_data(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial,
                                        poll_interval=0.001)

        def read(size):
            mock_serial.in_waiting = 0
            return b"polled"

        mock_serial.read.side_effect = read
        mock_serial.in_waiting = 6
        await asyncio.sleep(0.02)

        mock_protocol.data_received.assert_called_once_with(b"polled")
        transport.abort()

    @pytest.mark.asyncio
    async def test_poll_loop_error_is_fatal(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial,
                                        poll_interval=0.001)

        error = serial.SerialException("ClearCommError failed")
        type(mock_serial).in_waiting = PropertyMock(side_effect=error)
        await asyncio.sleep(0.02)

        assert transport.is_closing() is True
        mock_protocol.connection_lost.assert_called_once_with(error)

    @pytest.mark.asyncio
    async def test_paused_reading_skips_poll(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial,
                                        poll_interval=0.001)

        transport.pause_reading()
        assert transport.is_reading() is False
        mock_serial.in_waiting = 3
        mock_serial.read.return_value = b"abc"
        await asyncio.sleep(0.02)
        mock_protocol.data_received.assert_not_called()

        transport.resume_reading()
        await asyncio.sleep(0.02)
        mock_protocol.data_received.assert_called()
        transport.abort()

    @pytest.mark.asyncio
    async def test_close_transport(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        transport.close()
        transport.close()
        await asyncio.sleep(0.01)

        assert transport.get_extra_info('closing') is True
        mock_protocol.connection_lost.assert_called_once_with(None)
        mock_serial.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_waits_for_pending_writes(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial,
                                        poll_interval=0.001)

        mock_serial.write.side_effect = lambda data: len(data)
        transport.write(b"last words")
        transport.close()

        await asyncio.sleep(0.02)

        mock_serial.write.assert_called_once_with(b"last words")
        mock_protocol.connection_lost.assert_called_once_with(None)

    @pytest.mark.asyncio
    async def test_abort_transport(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        transport.write(b"test data")
        transport.abort()

        await asyncio.sleep(0.01)

        assert transport.get_write_buffer_size() == 0
        mock_protocol.connection_lost.assert_called_once_with(None)

    @pytest.mark.asyncio
    async def test_fatal_error_reported_once(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        test_error = serial.SerialException("Port disconnected")

        transport._fatal_error(test_error)
        transport._fatal_error(serial.SerialException("again"))
        transport.close()

        await asyncio.sleep(0.01)

        mock_protocol.connection_lost.assert_called_once_with(test_error)

    @pytest.mark.asyncio
    async def test_get_extra_info(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        assert transport.get_extra_info('serial') == mock_serial
        assert transport.get_extra_info('write_buffer_size') == 0
        assert transport.get_extra_info('mode') == 'poll'
        assert transport.get_extra_info('unknown', 'default') == 'default'
        transport.abort()

    @pytest.mark.asyncio
    async def test_cleanup_cancels_polling(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        assert transport._poll_task is not None

        transport._cleanup_async()
        await asyncio.sleep(0.01)

        assert transport._poll_task.done() is True

    @pytest.mark.asyncio
    async def test_ensure_writer_failure(self, mock_serial, mock_protocol):
        """A descriptor the loop refuses to watch is fatal."""
        loop = asyncio.get_running_loop()
        transport = fd_transport(loop, mock_protocol, mock_serial)

        with patch.object(loop, 'add_writer') as mock_add, patch.object(loop, 'remove_reader'):
            mock_add.side_effect = OSError("Cannot add writer")
            transport.write(b"data")

        await asyncio.sleep(0.01)
        assert transport.is_closing() is True
        mock_protocol.connection_lost.assert_called_once()

    @pytest.mark.asyncio
    async def test_set_write_buffer_limits_validation(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(loop, mock_protocol, mock_serial)

        with pytest.raises(ValueError):
            transport.set_write_buffer_limits(high=10, low=20)

        with pytest.raises(ValueError):
            transport.set_write_buffer_limits(high=-1, low=0)

        transport.set_write_buffer_limits(high=100)
        assert transport.get_write_buffer_limits() == (25, 100)
        transport.abort()

    @pytest.mark.asyncio
    async def test_check_flow_control_edge_cases(self, mock_serial, mock_protocol):
        loop = asyncio.get_running_loop()

        with patch('os.name', 'nt'):
            transport = SerialTransport(
                loop, mock_protocol, mock_serial,
                high_water_mark=10,
                low_water_mark=5
            )

        transport._write_buffer_size = 10
        transport._protocol_paused = False
        transport._check_flow_control()
        mock_protocol.pause_writing.assert_called_once()

        transport._write_buffer_size = 5
        transport._protocol_paused = True
        transport._check_flow_control()
        mock_protocol.resume_writing.assert_called_once()
        transport.abort()

    def test_serial_ports_have_no_eof(self):
        transport = SerialTransport.__new__(SerialTransport)

        assert transport.can_write_eof() is False
        with pytest.raises(NotImplementedError):
            transport.write_eof()
