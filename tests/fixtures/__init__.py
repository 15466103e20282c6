"""
Test fixtures for serlink testing.

Provides in-memory relay ends, pseudo-terminal serial devices and
sample payloads, so sessions can be exercised without hardware.
"""

from .virtual_ports import (
    FakeWriter,
    PtyDevice,
    RelayEnds,
    wait_until,
    relay_ends,
    pty_device,
    pty_device_pair,
    simulated_serial_data,
)

__all__ = [
    'FakeWriter',
    'PtyDevice',
    'RelayEnds',
    'wait_until',
    'relay_ends',
    'pty_device',
    'pty_device_pair',
    'simulated_serial_data',
]
