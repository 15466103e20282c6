# -*- coding: utf-8 -*-

"""
Bridge configuration record.
"""
import logging

from dataclasses import dataclass
from dataclasses import asdict

from .exceptions import SerialConfigError
from .registry import AdmissionPolicy
from .transport import DEFAULT_READ_SIZE

DEFAULT_ADDRESS = '0.0.0.0'
DEFAULT_PORT = 2024
DEFAULT_SERIAL_DEVICE = '/dev/ttyACM0'
DEFAULT_BAUDRATE = 460800
DEFAULT_POLL_INTERVAL = 0.001
DEFAULT_MAX_SESSIONS = 8


@dataclass
class BridgeConfig:
    """Everything a BridgeServer and its sessions need"""

    address: str = DEFAULT_ADDRESS
    port: int = DEFAULT_PORT
    serial_device: str = DEFAULT_SERIAL_DEVICE
    baudrate: int = DEFAULT_BAUDRATE
    verbosity: int = 0
    poll_interval: float = DEFAULT_POLL_INTERVAL
    read_size: int = DEFAULT_READ_SIZE
    max_sessions: int = DEFAULT_MAX_SESSIONS  # 0 means unlimited
    device_policy: AdmissionPolicy = AdmissionPolicy.REJECT

    def __post_init__(self):
        if not isinstance(self.device_policy, AdmissionPolicy):
            try:
                self.device_policy = AdmissionPolicy(self.device_policy)
            except ValueError:
                raise SerialConfigError(
                    f'Unknown device policy {self.device_policy!r}'
                ) from None

    def validate(self) -> 'BridgeConfig':
        """Raise SerialConfigError on the first invalid field"""
        if not self.serial_device or not self.serial_device.strip():
            raise SerialConfigError('Serial device must be non-empty')
        if self.baudrate <= 0:
            raise SerialConfigError(f'Baud rate must be positive, got {self.baudrate}')
        # 0 lets the OS pick a free port
        if not 0 <= self.port <= 65535:
            raise SerialConfigError(f'TCP port must be in 0..65535, got {self.port}')
        if self.poll_interval <= 0:
            raise SerialConfigError(
                f'Poll interval must be positive, got {self.poll_interval}'
            )
        if self.read_size <= 0:
            raise SerialConfigError(f'Read size must be positive, got {self.read_size}')
        if self.max_sessions < 0:
            raise SerialConfigError(
                f'Max sessions must be >= 0, got {self.max_sessions}'
            )
        return self

    @property
    def log_level(self) -> int:
        return logging.DEBUG if self.verbosity >= 1 else logging.INFO

    @property
    def trace(self) -> bool:
        """Log every relayed chunk"""
        return self.verbosity >= 2

    @property
    def exclusive(self) -> bool:
        """Ask the OS for an exclusive device lock when rejecting sharers"""
        return self.device_policy is AdmissionPolicy.REJECT

    def as_dict(self) -> dict:
        d = asdict(self)
        d['device_policy'] = self.device_policy.value
        return d
