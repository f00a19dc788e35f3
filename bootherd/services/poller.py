"""State poller - keeps the registry's view of idle devices fresh."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from bootherd.core.device import Device, PowerState
from bootherd.core.fleet import FleetCoordinator
from bootherd.core.registry import DeviceRegistry
from bootherd.errors import AgentCallError, UnknownDevice

logger = logging.getLogger(__name__)


class StatePoller:
    """Pings every device without an active operation on a fixed interval."""

    def __init__(
        self,
        registry: DeviceRegistry,
        client,
        coordinator: FleetCoordinator,
        interval: float = 5.0,
        ping_timeout: float = 2.0,
    ):
        self.registry = registry
        self.client = client
        self.coordinator = coordinator
        self.interval = interval
        self.ping_timeout = ping_timeout
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the polling loop."""
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"State poller started (every {self.interval:g}s)")

    async def stop(self):
        """Stop the polling loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("State poller stopped")

    async def _poll_loop(self):
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"State poll failed: {e}")
            await asyncio.sleep(self.interval)

    async def poll_once(self):
        """Ping every idle device once, concurrently."""
        devices = [d for d in self.registry.list() if not self.coordinator.is_busy(d.id)]
        await asyncio.gather(*[self._poll_device(d) for d in devices])

    async def _poll_device(self, device: Device):
        try:
            target = await self.client.ping(device.address, self.ping_timeout)
        except AgentCallError as e:
            logger.debug(f"[{device.id}] Poll: no answer ({e})")
            target = None

        # An operation may have started while we were waiting on the Ping
        if self.coordinator.is_busy(device.id):
            return

        now = datetime.now(timezone.utc)

        def apply(d: Device) -> Device:
            if target is not None:
                return d.model_copy(update={
                    "power_state": PowerState.ONLINE,
                    "current_target": target,
                    "last_seen": now,
                })
            # A device we shut down or suspended stays in that state until it answers again
            if d.power_state in (PowerState.SHUTTING_DOWN, PowerState.SUSPENDED):
                return d
            return d.model_copy(update={"power_state": PowerState.UNREACHABLE})

        try:
            updated = await self.registry.update(device.id, apply)
        except UnknownDevice:
            return
        if updated.power_state != device.power_state:
            logger.info(f"[{device.id}] {device.power_state.value} -> {updated.power_state.value}")
