"""Device, target and operation records."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, model_validator

from bootherd.errors import FailureReason


class PowerState(str, Enum):
    """Last observed power state of a device."""
    UNKNOWN = "unknown"
    ONLINE = "online"
    REBOOTING = "rebooting"
    SHUTTING_DOWN = "shutting_down"
    SUSPENDED = "suspended"
    UNREACHABLE = "unreachable"


class Device(BaseModel):
    """A managed device as the controller currently sees it.

    Records are immutable; the registry replaces a whole record on every
    update so readers never observe a partially applied change.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    address: str
    mac_address: Optional[str] = None
    boot_targets: Dict[str, str] = {}
    current_target: Optional[str] = None
    desired_target: Optional[str] = None
    power_state: PowerState = PowerState.UNKNOWN
    last_seen: Optional[datetime] = None

    @model_validator(mode="after")
    def _online_has_target(self):
        if self.power_state == PowerState.ONLINE and not self.current_target:
            raise ValueError(f"Device {self.id} is online but reports no current target")
        return self

    @property
    def switch_pending(self) -> bool:
        return self.desired_target is not None and self.desired_target != self.current_target


class Target(BaseModel):
    """A boot target and the reference the boot chain serves for it."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    boot_config_ref: str


class Action(str, Enum):
    """Operator requests a fleet operation can carry."""
    SWITCH_TARGET = "switch-target"
    REBOOT = "reboot"
    SUSPEND = "suspend"
    SHUTDOWN = "shutdown"
    WAKE = "wake"


class OperationKind(str, Enum):
    """Kinds of work an orchestrator performs."""
    SWITCH_TARGET = "switch_target"
    REBOOT = "reboot"
    SUSPEND = "suspend"
    SHUTDOWN = "shutdown"
    WAKE = "wake"
    PING = "ping"


class OperationStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class Operation:
    """The unit of work one orchestrator currently owns. Never persisted."""
    kind: OperationKind
    started_at: float
    deadline: Optional[float] = None
    attempt_count: int = 0
    status: OperationStatus = OperationStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "attempt_count": self.attempt_count,
            "started_at": self.started_at,
            "deadline": self.deadline,
            "status": self.status.value,
        }


class Outcome(str, Enum):
    """Terminal result reported for every device in a fleet request."""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class DeviceOutcome:
    """Final status of one device after a fleet operation."""
    device_id: str
    action: Action
    outcome: Outcome
    state: str
    stage: Optional[str] = None
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None
    current_target: Optional[str] = None
    finished_at: datetime = field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.CONFIRMED

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "action": self.action.value,
            "outcome": self.outcome.value,
            "state": self.state,
            "stage": self.stage,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
            "current_target": self.current_target,
            "finished_at": self.finished_at.isoformat(),
        }
