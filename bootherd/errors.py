"""Error types shared by the controller, the agent client and the orchestrators."""

from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """Why a device operation ended in FAILED."""
    UNREACHABLE = "unreachable"
    PERMISSION_DENIED = "permission_denied"
    WRONG_TARGET_AFTER_REBOOT = "wrong_target_after_reboot"
    BOOT_CONFIG_WRITE_FAILED = "boot_config_write_failed"
    AGENT_ERROR = "agent_error"
    STILL_ONLINE = "still_online"
    WAKE_UNAVAILABLE = "wake_unavailable"
    DEVICE_BUSY = "device_busy"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class AgentCallError(Exception):
    """A single RPC against an agent did not succeed."""

    reason = FailureReason.AGENT_ERROR

    def __init__(self, address: str, method: str, message: str = ""):
        self.address = address
        self.method = method
        self.message = message
        super().__init__(f"{method} on {address} failed: {message}" if message else f"{method} on {address} failed")


class AgentUnreachable(AgentCallError):
    """Transport-level failure: timeout, refused connection or a malformed response."""

    reason = FailureReason.UNREACHABLE


class PermissionDenied(AgentCallError):
    """The agent's authorization policy rejected the action."""

    reason = FailureReason.PERMISSION_DENIED


class AgentError(AgentCallError):
    """The agent answered with an explicit error other than a denial."""

    def __init__(self, address: str, method: str, message: str = "", code: Optional[str] = None):
        self.code = code
        super().__init__(address, method, message)


class BootConfigError(Exception):
    """The boot chain could not persist a boot configuration."""


class UnknownDevice(KeyError):
    """A device id is not registered."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(device_id)

    def __str__(self):
        return f"Unknown device: {self.device_id}"


class DeviceBusy(Exception):
    """Another operation is already running for the device."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device {device_id} already has an operation in progress")


class OperationCancelled(Exception):
    """Raised inside an orchestrator when the operator cancelled it."""
