"""Controller client against a real agent server on a loopback port."""

import socket

import grpc
import pytest
from grpc import aio

from bootherd import protocol
from bootherd.agent.config import AgentSettings
from bootherd.agent.policy import AllowListPolicy
from bootherd.agent.server import AgentService, create_server
from bootherd.errors import AgentError, AgentUnreachable, PermissionDenied
from bootherd.grpc_client import AgentClient
from bootherd.protocol import AgentMethod, PowerAction

COMMANDS = {
    PowerAction.REBOOT: ["systemctl", "reboot"],
    PowerAction.SUSPEND: ["systemctl", "suspend"],
    PowerAction.SHUTDOWN: None,
}


class Spawner:
    def __init__(self, error=None):
        self.error = error
        self.commands = []

    def __call__(self, command):
        if self.error:
            raise self.error
        self.commands.append(command)


class AgentHarness:
    """Runs an AgentService on 127.0.0.1 and points a client at it."""

    def __init__(self, service):
        self.service = service
        self.server, self.port = create_server(service, "127.0.0.1:0")
        self.address = f"127.0.0.1:{self.port}"
        self.client = AgentClient()

    async def __aenter__(self):
        await self.server.start()
        return self

    async def __aexit__(self, *exc):
        await self.client.close()
        await self.server.stop(grace=None)


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestAgentRoundTrip:

    @pytest.mark.asyncio
    async def test_ping_reports_target(self):
        async with AgentHarness(AgentService("windows", COMMANDS, spawn=Spawner())) as agent:
            assert await agent.client.ping(agent.address, timeout=5) == "windows"

    @pytest.mark.asyncio
    async def test_repeated_pings_have_no_side_effects(self):
        spawner = Spawner()
        service = AgentService("windows", COMMANDS, spawn=spawner)
        async with AgentHarness(service) as agent:
            replies = [await agent.client.ping(agent.address, timeout=5) for _ in range(10)]

        assert replies == ["windows"] * 10
        assert service.target_name == "windows"
        assert spawner.commands == []

    @pytest.mark.asyncio
    async def test_reboot_runs_command(self):
        spawner = Spawner()
        async with AgentHarness(AgentService("linux", COMMANDS, spawn=spawner)) as agent:
            await agent.client.reboot(agent.address, timeout=5)
            await agent.client.suspend(agent.address, timeout=5)

        assert spawner.commands == [["systemctl", "reboot"], ["systemctl", "suspend"]]

    @pytest.mark.asyncio
    async def test_policy_denial(self):
        spawner = Spawner()
        policy = AllowListPolicy([PowerAction.REBOOT])
        async with AgentHarness(AgentService("linux", COMMANDS, authorize=policy, spawn=spawner)) as agent:
            with pytest.raises(PermissionDenied) as exc_info:
                await agent.client.suspend(agent.address, timeout=5)

        assert exc_info.value.method == "Suspend"
        assert spawner.commands == []

    @pytest.mark.asyncio
    async def test_caller_not_allowed(self):
        policy = AllowListPolicy(list(PowerAction), allowed_callers=["10.9.9.9"])
        async with AgentHarness(AgentService("linux", COMMANDS, authorize=policy, spawn=Spawner())) as agent:
            with pytest.raises(PermissionDenied):
                await agent.client.reboot(agent.address, timeout=5)
            # Ping is never restricted
            assert await agent.client.ping(agent.address, timeout=5) == "linux"

    @pytest.mark.asyncio
    async def test_missing_command(self):
        async with AgentHarness(AgentService("linux", COMMANDS, spawn=Spawner())) as agent:
            with pytest.raises(AgentError) as exc_info:
                await agent.client.shutdown(agent.address, timeout=5)

        assert exc_info.value.code == "UNIMPLEMENTED"

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        spawner = Spawner(error=FileNotFoundError("systemctl"))
        async with AgentHarness(AgentService("linux", COMMANDS, spawn=spawner)) as agent:
            with pytest.raises(AgentError) as exc_info:
                await agent.client.reboot(agent.address, timeout=5)

        assert exc_info.value.code == "INTERNAL"

    @pytest.mark.asyncio
    async def test_malformed_request(self):
        async with AgentHarness(AgentService("linux", COMMANDS, spawn=Spawner())) as agent:
            async with aio.insecure_channel(agent.address) as channel:
                rpc = channel.unary_unary(AgentMethod.REBOOT.path)
                with pytest.raises(aio.AioRpcError) as exc_info:
                    await rpc(b"[1, 2]", timeout=5)

        assert exc_info.value.code() == grpc.StatusCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_unreachable_agent(self):
        client = AgentClient()
        address = f"127.0.0.1:{free_port()}"
        try:
            with pytest.raises(AgentUnreachable):
                await client.ping(address, timeout=1)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_channels_are_reused(self):
        async with AgentHarness(AgentService("linux", COMMANDS, spawn=Spawner())) as agent:
            await agent.client.ping(agent.address, timeout=5)
            await agent.client.ping(agent.address, timeout=5)
            assert list(agent.client.connections) == [agent.address]

            await agent.client.disconnect(agent.address)
            assert agent.client.connections == {}


class TestAgentService:

    def test_from_settings(self):
        settings = AgentSettings(
            target_name="windows",
            reboot_command=["shutdown", "/r"],
            allowed_actions=["reboot"],
            allowed_callers=["10.0.0.10"],
        )
        service = AgentService.from_settings(settings)

        assert service.target_name == "windows"
        assert service.commands[PowerAction.REBOOT] == ["shutdown", "/r"]
        assert service.authorize("ipv4:10.0.0.10:4000", PowerAction.REBOOT)
        assert not service.authorize("ipv4:10.0.0.10:4000", PowerAction.SHUTDOWN)

    def test_needs_target_name(self):
        with pytest.raises(ValueError):
            AgentService("", COMMANDS)


class TestProtocol:

    def test_decode_empty_body(self):
        assert protocol.decode(b"") == {}

    def test_decode_rejects_non_objects(self):
        with pytest.raises(ValueError):
            protocol.decode(b'"linux"')
        with pytest.raises(ValueError):
            protocol.decode(b"not json")

    def test_method_paths(self):
        assert AgentMethod.SHUTDOWN.path == "/bootherd.Agent/ShutDown"
