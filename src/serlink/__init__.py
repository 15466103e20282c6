# -*- coding: utf-8 -*-

"""
Serlink - bridge TCP connections to a serial device

Features:
- Raw byte relay in both directions, no framing
- One session per connection, each with its own serial handle
- Single asyncio wait over both ends per relay iteration
- Per-device admission policy (reject, queue, share)
- Serial devices by path or pyserial URL
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .transport import SerialTransport

from .streams import open_serial_connection
from .streams import open_serial_handle
from .streams import SerialHandle
from .streams import StreamHandle

from .session import Session
from .session import Readiness
from .session import ReadinessPoller

from .registry import AdmissionPolicy
from .registry import DeviceRegistry

from .config import BridgeConfig
from .server import BridgeServer

from .exceptions import SessionOutcome
from .exceptions import SerlinkError
from .exceptions import SerialConnectionError
from .exceptions import SerialConfigError
from .exceptions import PlatformNotSupportedError
from .exceptions import DeviceBusyError
from .exceptions import SessionTerminated
from .exceptions import PeerDisconnected
from .exceptions import DeviceDisconnected

__all__ = [
    # Transport and handles
    'SerialTransport',
    'open_serial_connection',
    'open_serial_handle',
    'SerialHandle',
    'StreamHandle',

    # Relay
    'Session',
    'Readiness',
    'ReadinessPoller',
    'SessionOutcome',

    # Server
    'AdmissionPolicy',
    'DeviceRegistry',
    'BridgeConfig',
    'BridgeServer',

    # Exceptions
    'SerlinkError',
    'SerialConnectionError',
    'SerialConfigError',
    'PlatformNotSupportedError',
    'DeviceBusyError',
    'SessionTerminated',
    'PeerDisconnected',
    'DeviceDisconnected',
]
