"""Agent RPC contract.

The agent exposes a gRPC service without generated stubs: every method is a
unary-unary call whose request and response bodies are JSON objects.

    Ping     {}  -> {"current_target": str}
    Reboot   {}  -> {}
    Suspend  {}  -> {}
    ShutDown {}  -> {}
"""

import json
from enum import Enum
from typing import Any, Dict

SERVICE_NAME = "bootherd.Agent"


class AgentMethod(str, Enum):
    """RPC methods exposed by the agent."""
    PING = "Ping"
    REBOOT = "Reboot"
    SUSPEND = "Suspend"
    SHUTDOWN = "ShutDown"

    @property
    def path(self) -> str:
        return f"/{SERVICE_NAME}/{self.value}"


class PowerAction(str, Enum):
    """Privileged actions guarded by the agent's authorization policy."""
    REBOOT = "reboot"
    SUSPEND = "suspend"
    SHUTDOWN = "shutdown"


def encode(message: Dict[str, Any]) -> bytes:
    """Serialize a message body."""
    return json.dumps(message).encode("utf-8")


def decode(data: bytes) -> Dict[str, Any]:
    """Deserialize a message body. Raises ValueError if it is not a JSON object."""
    if not data:
        return {}
    message = json.loads(data.decode("utf-8"))
    if not isinstance(message, dict):
        raise ValueError(f"Expected a JSON object, got {type(message).__name__}")
    return message
