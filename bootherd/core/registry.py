"""Device registry - the controller's authoritative table of known devices."""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from bootherd.core.device import Device
from bootherd.errors import UnknownDevice

logger = logging.getLogger(__name__)

DeviceUpdate = Callable[[Device], Device]


class DeviceRegistry:
    """
    Registry of all managed devices.

    Records are immutable and every change goes through ``update`` which
    applies a read-modify-write function under a lock and swaps the whole
    record in one step. When a store is attached each change is written
    through to it, off the event loop, before it is committed in memory.
    """

    def __init__(self, store=None):
        self.devices: Dict[str, Device] = {}
        self.store = store
        self._lock = asyncio.Lock()

    def get(self, device_id: str) -> Optional[Device]:
        """Get a device by ID."""
        return self.devices.get(device_id)

    def require(self, device_id: str) -> Device:
        """Get a device by ID or raise UnknownDevice."""
        device = self.devices.get(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        return device

    def list(self) -> List[Device]:
        """List all devices, ordered by ID."""
        return [self.devices[device_id] for device_id in sorted(self.devices)]

    def __contains__(self, device_id: str) -> bool:
        return device_id in self.devices

    def __len__(self) -> int:
        return len(self.devices)

    async def update(self, device_id: str, fn: DeviceUpdate) -> Device:
        """Atomically replace a device with ``fn(device)``.

        The result is re-validated and written to the store before it is
        committed, so a transformation that would break a record invariant,
        or a failed write-through, raises and leaves the record untouched.
        """
        async with self._lock:
            current = self.devices.get(device_id)
            if current is None:
                raise UnknownDevice(device_id)

            updated = Device.model_validate(fn(current).model_dump())
            if updated.id != device_id:
                raise ValueError(f"Update may not rename device {device_id} to {updated.id}")

            if self.store:
                await asyncio.to_thread(self.store.save, updated)
            self.devices[device_id] = updated
            return updated

    async def upsert(self, device: Device) -> Device:
        """Register a device or replace its registration."""
        device = Device.model_validate(device.model_dump())
        async with self._lock:
            created = device.id not in self.devices
            if self.store:
                await asyncio.to_thread(self.store.save, device)
            self.devices[device.id] = device
        logger.info(f"Device {'registered' if created else 'updated'}: {device.id} at {device.address}")
        return device

    async def remove(self, device_id: str) -> bool:
        """Deregister a device. Returns False if it was not registered."""
        async with self._lock:
            if device_id not in self.devices:
                return False
            if self.store:
                await asyncio.to_thread(self.store.delete, device_id)
            del self.devices[device_id]
        logger.info(f"Device removed: {device_id}")
        return True
