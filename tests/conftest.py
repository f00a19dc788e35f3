import asyncio
import os
from collections import defaultdict, deque
from typing import Callable, Dict, List, Optional, Tuple

# Keep a bootherd.toml in the working directory out of the tests
os.environ.setdefault("BOOTHERD_CONFIG", "/nonexistent/bootherd.toml")
os.environ.setdefault("BOOTHERD_AGENT_CONFIG", "/nonexistent/bootherd-agent.toml")

import pytest

from bootherd.config import Timings
from bootherd.core.device import Device, PowerState
from bootherd.core.orchestrator import Orchestrator
from bootherd.core.registry import DeviceRegistry
from bootherd.errors import AgentUnreachable, BootConfigError

ADDRESS_A = "10.0.0.1:50051"
ADDRESS_B = "10.0.0.2:50051"
MAC_A = "aa:bb:cc:dd:ee:01"
MAC_B = "aa:bb:cc:dd:ee:02"
TARGETS = {"linux-a": "pxelinux.cfg/linux-a", "linux-b": "pxelinux.cfg/linux-b"}


def unreachable(address: str, method: str = "Ping") -> AgentUnreachable:
    return AgentUnreachable(address, method, "connection refused")


class FakeClock:
    """Virtual monotonic clock; sleeping advances it instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[], None]] = None

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep:
            self.on_sleep()
        await asyncio.sleep(0)


class FakeAgent:
    """Scripted stand-in for AgentClient.

    Each address gets a queue of Ping results (a target name or an exception
    to raise); once it runs dry the address's default answer is used, which
    is "unreachable" unless set. Power actions succeed unless scripted.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.pings: Dict[str, deque] = defaultdict(deque)
        self.ping_default: Dict[str, object] = {}
        self.actions: Dict[Tuple[str, str], deque] = defaultdict(deque)
        self.calls: List[Tuple[str, str, Optional[float]]] = []

    def script_ping(self, address: str, *results, then=None):
        self.pings[address].extend(results)
        if then is not None:
            self.ping_default[address] = then

    def script_action(self, address: str, method: str, *results):
        self.actions[(address, method)].extend(results)

    def count(self, method: str, address: Optional[str] = None) -> int:
        return sum(1 for m, a, _ in self.calls if m == method and (address is None or a == address))

    def _record(self, method: str, address: str):
        self.calls.append((method, address, self.clock() if self.clock else None))

    async def ping(self, address: str, timeout: float) -> str:
        self._record("ping", address)
        queue = self.pings[address]
        result = queue.popleft() if queue else self.ping_default.get(address, unreachable(address))
        if isinstance(result, Exception):
            raise result
        return result

    async def _action(self, method: str, address: str):
        self._record(method, address)
        queue = self.actions[(address, method)]
        if queue:
            result = queue.popleft()
            if isinstance(result, Exception):
                raise result

    async def reboot(self, address: str, timeout: float):
        await self._action("reboot", address)

    async def suspend(self, address: str, timeout: float):
        await self._action("suspend", address)

    async def shutdown(self, address: str, timeout: float):
        await self._action("shutdown", address)

    async def close(self):
        pass


class FakeBootConfig:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.writes: List[Tuple[str, str]] = []

    async def write_boot_config(self, device_id: str, target: str):
        if self.fail:
            raise BootConfigError("disk full")
        self.writes.append((device_id, target))


class FakeWaker:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[str] = []

    async def wake(self, mac_address: str):
        if self.fail:
            raise OSError("Network is unreachable")
        self.sent.append(mac_address)


def make_device(device_id: str = "a", address: str = ADDRESS_A, **fields) -> Device:
    fields.setdefault("boot_targets", dict(TARGETS))
    return Device(id=device_id, address=address, **fields)


def online(device_id: str = "a", address: str = ADDRESS_A, target: str = "linux-a", **fields) -> Device:
    return make_device(device_id, address, current_target=target, power_state=PowerState.ONLINE, **fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def agent(clock):
    return FakeAgent(clock)


@pytest.fixture
def boot_config():
    return FakeBootConfig()


@pytest.fixture
def waker():
    return FakeWaker()


@pytest.fixture
def timings():
    return Timings()


@pytest.fixture
def registry():
    return DeviceRegistry()


@pytest.fixture
def make_orchestrator(registry, agent, boot_config, waker, timings, clock):
    def factory(device_id: str) -> Orchestrator:
        return Orchestrator(
            device_id,
            registry,
            agent,
            boot_config,
            waker=waker,
            timings=timings,
            clock=clock,
            sleep=clock.sleep,
        )
    return factory
