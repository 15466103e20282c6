# -*- coding: utf-8 -*-

"""
Pytest configuration and fixtures for serlink tests.
"""
import pytest
import asyncio
from unittest.mock import Mock, patch

# Import all fixtures from virtual_ports
from .fixtures.virtual_ports import *


@pytest.fixture
def mock_serial():
    """Mock serial port for testing."""
    with patch('serial.Serial') as mock:
        instance = Mock()
        instance.name = '/dev/ttyTEST0'
        instance.is_open = True
        instance.fileno.return_value = 42
        instance.in_waiting = 0
        instance.out_waiting = 0
        instance.read.return_value = b""
        instance.write.return_value = 0
        instance.close.return_value = None
        mock.return_value = instance
        yield instance


@pytest.fixture
def mock_protocol():
    """Mock asyncio protocol for testing."""
    protocol = Mock(spec=asyncio.Protocol)
    protocol.connection_made = Mock()
    protocol.connection_lost = Mock()
    protocol.data_received = Mock()
    protocol.pause_writing = Mock()
    protocol.resume_writing = Mock()
    return protocol
