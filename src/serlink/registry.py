# -*- coding: utf-8 -*-

"""
Per-device admission control.
Sessions claim a device path before opening it; the registry decides
what happens when the path is already in use.
"""
import asyncio
import enum
import logging
import os

from typing import Dict
from typing import List
from typing import Optional
from typing import Set

from .exceptions import DeviceBusyError
from .streams import is_url

log = logging.getLogger('serlink.registry')


class AdmissionPolicy(enum.Enum):
    """What a second session on a busy device path gets"""
    REJECT = 'reject'
    QUEUE = 'queue'
    SHARE = 'share'


def device_key(device: str) -> str:
    """Resolve symlinks so /dev/serial/by-id/... and /dev/ttyACM0 collide"""
    if is_url(device):
        return device
    return os.path.realpath(device)


class DeviceLease:
    """A session's claim on one device path. ``release`` is idempotent."""

    def __init__(self, registry: 'DeviceRegistry', key: str, owner: str):
        self._registry = registry
        self.key = key
        self.owner = owner
        self._released = False

    def __repr__(self):
        return f'<DeviceLease {self.key} owner={self.owner}>'

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._registry._release(self)


class DeviceRegistry:
    """
    Tracks which sessions hold which device paths.

    All methods must be called from the event loop thread that runs the
    sessions.
    """

    def __init__(self, policy: AdmissionPolicy = AdmissionPolicy.REJECT):
        self.policy = AdmissionPolicy(policy)
        self._holders: Dict[str, List[DeviceLease]] = {}
        self._released: Dict[str, asyncio.Condition] = {}
        self._wakeups: Set[asyncio.Task] = set()

    def holders(self, device: str) -> List[str]:
        """Owners currently holding ``device``"""
        return [lease.owner for lease in self._holders.get(device_key(device), [])]

    def in_use(self, device: str) -> bool:
        return bool(self._holders.get(device_key(device)))

    async def acquire(self, device: str, owner: str) -> DeviceLease:
        """
        Claim ``device`` for ``owner``.

        Raises:
            DeviceBusyError: policy is REJECT and the path is held
        """
        key = device_key(device)
        held = self._holders.setdefault(key, [])

        if held and self.policy is AdmissionPolicy.REJECT:
            raise DeviceBusyError(
                f'{device} is in use by {", ".join(lease.owner for lease in held)}'
            )

        if held and self.policy is AdmissionPolicy.QUEUE:
            log.info('%s: waiting for %s (held by %s)', owner, device, held[0].owner)
            cond = self._released.setdefault(key, asyncio.Condition())
            async with cond:
                await cond.wait_for(lambda: not self._holders.get(key))
            held = self._holders.setdefault(key, [])

        lease = DeviceLease(self, key, owner)
        held.append(lease)
        if len(held) > 1:
            log.warning('%s: sharing %s with %d other session(s)',
                        owner, device, len(held) - 1)
        return lease

    def _release(self, lease: DeviceLease) -> None:
        held = self._holders.get(lease.key, [])
        if lease in held:
            held.remove(lease)
        if held:
            return

        self._holders.pop(lease.key, None)
        cond: Optional[asyncio.Condition] = self._released.get(lease.key)
        if cond is not None:
            task = asyncio.ensure_future(self._notify(cond))
            self._wakeups.add(task)
            task.add_done_callback(self._wakeups.discard)

    async def _notify(self, cond: asyncio.Condition) -> None:
        async with cond:
            cond.notify_all()
