# -*- coding: utf-8 -*-

"""
Serlink exceptions
"""
import enum


class SessionOutcome(enum.Enum):
    """Why a relay session ended"""
    PEER_DISCONNECTED = 'peer disconnected'
    DEVICE_DISCONNECTED = 'device disconnected'


class SerlinkError(Exception):
    """Base exception for all serlink errors"""
    pass

class SerialConnectionError(SerlinkError):
    """Failed to open the serial device"""
    pass

class SerialConfigError(SerlinkError):
    """Invalid bridge or serial configuration"""
    pass

class PlatformNotSupportedError(SerlinkError):
    """Platform not supported for async operations"""
    pass

class DeviceBusyError(SerlinkError):
    """Serial device path is already claimed by another session"""
    pass


class SessionTerminated(SerlinkError):
    """Relay session ended; ``outcome`` tells which side is to blame"""
    outcome: SessionOutcome

class PeerDisconnected(SessionTerminated):
    """TCP peer hung up, reset, or refused a write"""
    outcome = SessionOutcome.PEER_DISCONNECTED

class DeviceDisconnected(SessionTerminated):
    """Serial device hung up, failed, or refused a write"""
    outcome = SessionOutcome.DEVICE_DISCONNECTED
