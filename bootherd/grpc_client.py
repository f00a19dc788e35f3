"""gRPC client the controller uses to talk to device agents."""

import logging
from typing import Dict

import grpc
from grpc import aio

from bootherd import protocol
from bootherd.errors import AgentError, AgentUnreachable, PermissionDenied
from bootherd.protocol import AgentMethod

logger = logging.getLogger(__name__)

# Status codes that mean the call never reached a live agent
UNREACHABLE_CODES = {
    grpc.StatusCode.UNAVAILABLE,
    grpc.StatusCode.DEADLINE_EXCEEDED,
    grpc.StatusCode.CANCELLED,
}


class AgentClient:
    """Client for calling agents over gRPC.

    One channel is kept per agent address. Each call performs exactly one RPC
    with the given timeout; retry policy belongs to the caller.
    """

    def __init__(self):
        self.connections: Dict[str, aio.Channel] = {}

    def _channel(self, address: str) -> aio.Channel:
        channel = self.connections.get(address)
        if channel is None:
            channel = aio.insecure_channel(address)
            self.connections[address] = channel
            logger.debug(f"Opened channel to agent at {address}")
        return channel

    async def call(self, address: str, method: AgentMethod, timeout: float) -> dict:
        """Perform a single RPC and return the decoded response body."""
        rpc = self._channel(address).unary_unary(
            method.path,
            request_serializer=lambda body: body,
            response_deserializer=lambda body: body,
        )

        try:
            raw = await rpc(protocol.encode({}), timeout=timeout)
        except aio.AioRpcError as e:
            code = e.code()
            details = e.details() or code.name
            if code in UNREACHABLE_CODES:
                raise AgentUnreachable(address, method.value, details) from e
            if code == grpc.StatusCode.PERMISSION_DENIED:
                raise PermissionDenied(address, method.value, details) from e
            raise AgentError(address, method.value, details, code=code.name) from e

        try:
            return protocol.decode(raw)
        except ValueError as e:
            raise AgentUnreachable(address, method.value, f"malformed response: {e}") from e

    async def ping(self, address: str, timeout: float) -> str:
        """Ping an agent and return the boot target it reports."""
        response = await self.call(address, AgentMethod.PING, timeout)
        target = response.get("current_target")
        if not isinstance(target, str) or not target:
            raise AgentUnreachable(address, AgentMethod.PING.value, "response has no current_target")
        return target

    async def reboot(self, address: str, timeout: float) -> None:
        """Ask an agent to reboot its device."""
        await self.call(address, AgentMethod.REBOOT, timeout)

    async def suspend(self, address: str, timeout: float) -> None:
        """Ask an agent to suspend its device."""
        await self.call(address, AgentMethod.SUSPEND, timeout)

    async def shutdown(self, address: str, timeout: float) -> None:
        """Ask an agent to power its device off."""
        await self.call(address, AgentMethod.SHUTDOWN, timeout)

    async def disconnect(self, address: str):
        """Close the channel to one agent."""
        channel = self.connections.pop(address, None)
        if channel is not None:
            await channel.close()
            logger.debug(f"Closed channel to agent at {address}")

    async def close(self):
        """Close every open channel."""
        for address in list(self.connections):
            await self.disconnect(address)


# Global client instance
agent_client = AgentClient()
