"""
gRPC server run by the agent on every managed device.

Answers Ping with the boot target this installation was configured as, and
starts the OS power commands for Reboot, Suspend and ShutDown. A power RPC
returns as soon as the command is started; the agent never retries, since it
may not outlive the action it started.
"""

import logging
import subprocess
from typing import Callable, Dict, List, Optional, Tuple

import grpc
from grpc import aio

from bootherd import protocol
from bootherd.agent.config import AgentSettings
from bootherd.agent.policy import AllowListPolicy, Authorizer, allow_all
from bootherd.protocol import SERVICE_NAME, AgentMethod, PowerAction

logger = logging.getLogger(__name__)

Spawner = Callable[[List[str]], None]


def spawn_detached(command: List[str]):
    """Start a command in the background without waiting for it."""
    subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


class AgentService:
    """Implements the agent's four RPCs."""

    def __init__(
        self,
        target_name: str,
        commands: Dict[PowerAction, Optional[List[str]]],
        authorize: Authorizer = allow_all,
        spawn: Spawner = spawn_detached,
    ):
        if not target_name:
            raise ValueError("The agent needs a target name to report")
        self.target_name = target_name
        self.commands = commands
        self.authorize = authorize
        self.spawn = spawn

    @classmethod
    def from_settings(cls, settings: AgentSettings, spawn: Spawner = spawn_detached) -> "AgentService":
        return cls(
            target_name=settings.target_name,
            commands={
                PowerAction.REBOOT: settings.reboot_command,
                PowerAction.SUSPEND: settings.suspend_command,
                PowerAction.SHUTDOWN: settings.shutdown_command,
            },
            authorize=AllowListPolicy(settings.allowed_actions, settings.allowed_callers),
            spawn=spawn,
        )

    async def ping(self, request: bytes, context) -> bytes:
        logger.debug(f"Got a ping from {context.peer()}")
        return protocol.encode({"current_target": self.target_name})

    async def reboot(self, request: bytes, context) -> bytes:
        return await self._power_action(PowerAction.REBOOT, request, context)

    async def suspend(self, request: bytes, context) -> bytes:
        return await self._power_action(PowerAction.SUSPEND, request, context)

    async def shutdown(self, request: bytes, context) -> bytes:
        return await self._power_action(PowerAction.SHUTDOWN, request, context)

    async def _power_action(self, action: PowerAction, request: bytes, context) -> bytes:
        caller = context.peer()
        try:
            protocol.decode(request)
        except ValueError as e:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, f"Malformed request: {e}")

        if not self.authorize(caller, action):
            await context.abort(grpc.StatusCode.PERMISSION_DENIED, f"{action.value} is not permitted for {caller}")

        command = self.commands.get(action)
        if not command:
            logger.warning(f"{action.value} requested but no command is configured")
            await context.abort(grpc.StatusCode.UNIMPLEMENTED, f"{action.value} command not set")

        logger.info(f"{action.value} requested by {caller}, running `{' '.join(command)}`")
        try:
            self.spawn(command)
        except OSError as e:
            logger.error(f"Could not start `{' '.join(command)}`: {e}")
            await context.abort(grpc.StatusCode.INTERNAL, "Spawning command failed")

        return protocol.encode({})


def create_handler(service: AgentService) -> grpc.GenericRpcHandler:
    """Map the service's RPC paths onto the AgentService methods."""
    return grpc.method_handlers_generic_handler(SERVICE_NAME, {
        AgentMethod.PING.value: grpc.unary_unary_rpc_method_handler(service.ping),
        AgentMethod.REBOOT.value: grpc.unary_unary_rpc_method_handler(service.reboot),
        AgentMethod.SUSPEND.value: grpc.unary_unary_rpc_method_handler(service.suspend),
        AgentMethod.SHUTDOWN.value: grpc.unary_unary_rpc_method_handler(service.shutdown),
    })


def create_server(service: AgentService, listen_address: str) -> Tuple[aio.Server, int]:
    """Build (but do not start) the gRPC server. Returns it with the bound port."""
    server = aio.server()
    server.add_generic_rpc_handlers((create_handler(service),))
    port = server.add_insecure_port(listen_address)
    if port == 0:
        raise RuntimeError(f"Could not bind agent to {listen_address}")
    return server, port


async def serve(settings: AgentSettings):
    """Run the agent until it is terminated."""
    service = AgentService.from_settings(settings)
    server, port = create_server(service, settings.listen_address)
    await server.start()
    logger.info(f"Agent for target {settings.target_name} listening on {settings.listen_address} (port {port})")
    try:
        await server.wait_for_termination()
    finally:
        await server.stop(grace=1.0)
        logger.info("Agent stopped")
