"""Per-device orchestration of target switches and power actions.

One Orchestrator drives one device from its observed state to the state the
operator asked for:

    Idle -> WritingBootConfig -> IssuingReboot -> WaitingOffline -> WaitingOnline -> Confirmed

A device going silent after it accepted a reboot is the expected outcome, so
Ping failures in WaitingOffline move the machine forward instead of failing
it. Confirmed, Failed and TimedOut are terminal.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from bootherd.config import Timings
from bootherd.core.device import (
    Action,
    Device,
    DeviceOutcome,
    Operation,
    OperationKind,
    OperationStatus,
    Outcome,
    PowerState,
)
from bootherd.core.registry import DeviceRegistry
from bootherd.errors import (
    AgentCallError,
    AgentUnreachable,
    BootConfigError,
    FailureReason,
    OperationCancelled,
)

logger = logging.getLogger(__name__)

PowerCall = Callable[[str, float], Awaitable[None]]


class SwitchState(str, Enum):
    """States of the per-device state machine."""
    IDLE = "idle"
    WRITING_BOOT_CONFIG = "writing_boot_config"
    ISSUING_REBOOT = "issuing_reboot"
    RETRY_REBOOT = "retry_reboot"
    ISSUING_ACTION = "issuing_action"
    ISSUING_WAKE = "issuing_wake"
    WAITING_OFFLINE = "waiting_offline"
    WAITING_ONLINE = "waiting_online"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = {SwitchState.CONFIRMED, SwitchState.FAILED, SwitchState.TIMED_OUT}


@dataclass
class OperationRequest:
    """What the operator asked one device to do."""
    action: Action
    target: Optional[str] = None
    verify: bool = False


class Orchestrator:
    """Runs one operation against one device.

    Every RPC goes through ``client`` (see AgentClient) and every change to
    the device record goes through the registry's atomic update. ``clock``
    and ``sleep`` are injectable so tests can run on virtual time.
    """

    def __init__(
        self,
        device_id: str,
        registry: DeviceRegistry,
        client,
        boot_config,
        waker=None,
        timings: Optional[Timings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.device_id = device_id
        self.registry = registry
        self.client = client
        self.boot_config = boot_config
        self.waker = waker
        self.timings = timings or Timings()
        self.clock = clock
        self.sleep = sleep

        self.state = SwitchState.IDLE
        self.stage = SwitchState.IDLE
        self.operation: Optional[Operation] = None
        self.reason: Optional[FailureReason] = None
        self.detail: Optional[str] = None
        self.request: Optional[OperationRequest] = None
        self._cancelled = False

    @property
    def device(self) -> Device:
        return self.registry.require(self.device_id)

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def cancel(self):
        """Request cancellation; honoured at the next transition or wait."""
        if not self.done:
            logger.info(f"[{self.device_id}] Cancellation requested in {self.state.value}")
        self._cancelled = True

    def status(self) -> dict:
        """Live status for reporting."""
        return {
            "device_id": self.device_id,
            "action": self.request.action.value if self.request else None,
            "target": self.request.target if self.request else None,
            "state": self.state.value,
            "operation": self.operation.to_dict() if self.operation else None,
            "cancelled": self._cancelled,
        }

    async def run(self, request: OperationRequest) -> DeviceOutcome:
        """Run the request to a terminal state and report the outcome."""
        self.request = request
        logger.info(f"[{self.device_id}] Starting {request.action.value}"
                    + (f" to {request.target}" if request.target else ""))

        try:
            if request.action == Action.SWITCH_TARGET:
                if not request.target:
                    raise ValueError("switch-target needs a target")
                await self._switch_target(request.target)
            elif request.action == Action.REBOOT:
                await self._reboot()
            elif request.action == Action.SUSPEND:
                await self._suspend(request.verify)
            elif request.action == Action.SHUTDOWN:
                await self._shutdown()
            elif request.action == Action.WAKE:
                await self._wake()
            else:
                raise ValueError(f"Unknown action: {request.action}")
        except OperationCancelled:
            self._fail(FailureReason.CANCELLED, "Cancelled by operator")
        except AgentCallError as e:
            self._fail(e.reason, str(e))

        if not self.done:
            self._fail(FailureReason.INTERNAL, f"Stopped in non-terminal state {self.state.value}")

        return self._outcome()

    # Flows

    async def _switch_target(self, target: str):
        await self.registry.update(
            self.device_id,
            lambda d: d.model_copy(update={"desired_target": target}),
        )

        current = await self._probe()
        if current == target:
            logger.info(f"[{self.device_id}] Already running {target}")
            await self._clear_desired(target)
            self._transition(SwitchState.CONFIRMED)
            return

        if current is None and not self.device.mac_address:
            self._fail(FailureReason.UNREACHABLE, "Device did not answer Ping and has no MAC address to wake it")
            return

        self._transition(SwitchState.WRITING_BOOT_CONFIG)
        self._start_operation(OperationKind.SWITCH_TARGET)
        try:
            await self.boot_config.write_boot_config(self.device_id, target)
        except BootConfigError as e:
            self.operation.status = OperationStatus.FAILED
            self._fail(FailureReason.BOOT_CONFIG_WRITE_FAILED, str(e))
            return
        self.operation.status = OperationStatus.SUCCEEDED

        if current is None:
            logger.info(f"[{self.device_id}] Device is down; waking it into {target}")
            accepted_at = await self._send_wake()
            if accepted_at is None:
                return
        else:
            logger.info(f"[{self.device_id}] Running {current}, rebooting into {target}")
            accepted_at = await self._issue(OperationKind.REBOOT, self.client.reboot,
                                            SwitchState.ISSUING_REBOOT, SwitchState.RETRY_REBOOT)
            await self._set_power_state(PowerState.REBOOTING)
            await self._wait_offline(accepted_at, self.timings.offline_grace_period)

        await self._wait_online(accepted_at, expected_target=target)
        if self.state == SwitchState.CONFIRMED:
            await self._clear_desired(target)

    async def _reboot(self):
        accepted_at = await self._issue(OperationKind.REBOOT, self.client.reboot,
                                        SwitchState.ISSUING_REBOOT, SwitchState.RETRY_REBOOT)
        await self._set_power_state(PowerState.REBOOTING)
        await self._wait_offline(accepted_at, self.timings.offline_grace_period)
        await self._wait_online(accepted_at)

    async def _suspend(self, verify: bool):
        accepted_at = await self._issue(OperationKind.SUSPEND, self.client.suspend, SwitchState.ISSUING_ACTION)
        await self._set_power_state(PowerState.SUSPENDED)
        if not verify:
            self._transition(SwitchState.CONFIRMED)
            return

        if await self._wait_offline(accepted_at, self.timings.suspend_verify_grace):
            self._transition(SwitchState.CONFIRMED)
            return

        if self.device.current_target:
            await self._mark_online(self.device.current_target)
        self._fail(FailureReason.STILL_ONLINE,
                   f"Still answering Ping {self.timings.suspend_verify_grace:g}s after accepting Suspend")

    async def _shutdown(self):
        # The device stays off until something powers it on, so there is nothing to wait for
        await self._issue(OperationKind.SHUTDOWN, self.client.shutdown, SwitchState.ISSUING_ACTION)
        await self._set_power_state(PowerState.SHUTTING_DOWN)
        self._transition(SwitchState.CONFIRMED)

    async def _wake(self):
        accepted_at = await self._send_wake()
        if accepted_at is None:
            return
        await self._wait_online(accepted_at)

    # Steps

    async def _probe(self) -> Optional[str]:
        """Ping with bounded retries. Returns the reported target, or None if unreachable."""
        self._start_operation(OperationKind.PING)
        attempts = max(1, self.timings.action_attempts)
        for attempt in range(1, attempts + 1):
            self.operation.attempt_count = attempt
            try:
                target = await self.client.ping(self.device.address, self.timings.ping_timeout)
            except AgentUnreachable as e:
                logger.debug(f"[{self.device_id}] Probe {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    await self._wait(self._backoff(attempt))
                continue
            self.operation.status = OperationStatus.SUCCEEDED
            await self._mark_online(target)
            return target

        self.operation.status = OperationStatus.FAILED
        await self._set_power_state(PowerState.UNREACHABLE)
        logger.warning(f"[{self.device_id}] Unreachable after {attempts} Ping attempts")
        return None

    async def _issue(
        self,
        kind: OperationKind,
        call: PowerCall,
        state: SwitchState,
        retry_state: Optional[SwitchState] = None,
    ) -> float:
        """Issue a power action, retrying only transport failures. Returns when it was accepted."""
        self._start_operation(kind)
        attempts = max(1, self.timings.action_attempts)
        attempt = 0
        while True:
            attempt += 1
            self.operation.attempt_count = attempt
            self._transition(state)
            try:
                await call(self.device.address, self.timings.action_timeout)
            except AgentUnreachable as e:
                if attempt >= attempts:
                    self.operation.status = OperationStatus.FAILED
                    raise
                logger.warning(f"[{self.device_id}] {kind.value} attempt {attempt}/{attempts} failed: {e}")
                if retry_state:
                    self._transition(retry_state)
                await self._wait(self._backoff(attempt))
                continue
            except AgentCallError:
                # Denials and explicit agent errors would only repeat
                self.operation.status = OperationStatus.FAILED
                raise

            self.operation.status = OperationStatus.SUCCEEDED
            logger.info(f"[{self.device_id}] {kind.value} accepted")
            return self.clock()

    async def _send_wake(self) -> Optional[float]:
        """Send a Wake-on-LAN packet. Returns when it was sent, or None after failing."""
        self._transition(SwitchState.ISSUING_WAKE)
        self._start_operation(OperationKind.WAKE)
        self.operation.attempt_count = 1
        mac = self.device.mac_address

        if not mac or self.waker is None:
            self.operation.status = OperationStatus.FAILED
            self._fail(FailureReason.WAKE_UNAVAILABLE,
                       "No MAC address configured" if not mac else "Wake-on-LAN is not available")
            return None

        try:
            await self.waker.wake(mac)
        except OSError as e:
            self.operation.status = OperationStatus.FAILED
            self._fail(FailureReason.WAKE_UNAVAILABLE, f"Could not send Wake-on-LAN packet: {e}")
            return None

        self.operation.status = OperationStatus.SUCCEEDED
        return self.clock()

    async def _wait_offline(self, accepted_at: float, grace: float) -> bool:
        """Poll until Ping fails or the grace period ends. Returns True if the device went silent."""
        self._transition(SwitchState.WAITING_OFFLINE)
        grace_end = accepted_at + grace
        while True:
            if self.clock() >= grace_end:
                logger.info(f"[{self.device_id}] Still answering after {grace:g}s grace period")
                return False
            try:
                target = await self.client.ping(self.device.address, self.timings.ping_timeout)
            except AgentUnreachable:
                logger.info(f"[{self.device_id}] Went offline")
                return True
            await self._mark_seen(target)
            logger.debug(f"[{self.device_id}] Still answering Ping")
            await self._wait(min(self.timings.poll_interval, max(0.0, grace_end - self.clock())))

    async def _wait_online(self, accepted_at: float, expected_target: Optional[str] = None):
        """Poll Ping with capped backoff until the device answers or the deadline passes."""
        self._transition(SwitchState.WAITING_ONLINE)
        deadline = accepted_at + self.timings.online_deadline
        self._start_operation(OperationKind.PING, deadline=deadline)
        interval = self.timings.poll_interval

        while True:
            self.operation.attempt_count += 1
            try:
                target = await self.client.ping(self.device.address, self.timings.ping_timeout)
            except AgentUnreachable:
                target = None

            if target is not None:
                await self._mark_online(target)
                if expected_target is not None and target != expected_target:
                    self.operation.status = OperationStatus.FAILED
                    self._fail(FailureReason.WRONG_TARGET_AFTER_REBOOT,
                               f"Came back running {target}, expected {expected_target}")
                    return
                self.operation.status = OperationStatus.SUCCEEDED
                logger.info(f"[{self.device_id}] Back online running {target}")
                self._transition(SwitchState.CONFIRMED)
                return

            now = self.clock()
            if now >= deadline:
                self.operation.status = OperationStatus.TIMED_OUT
                await self._set_power_state(PowerState.UNREACHABLE)
                self.detail = f"No answer to Ping within {self.timings.online_deadline:g}s"
                logger.warning(f"[{self.device_id}] {self.detail}")
                self._transition(SwitchState.TIMED_OUT)
                return

            logger.debug(f"[{self.device_id}] Not back yet, next Ping in {min(interval, deadline - now):g}s")
            await self._wait(min(interval, deadline - now))
            interval = min(interval * 2, self.timings.poll_interval_cap)

    # Registry updates

    async def _mark_online(self, target: str):
        now = datetime.now(timezone.utc)
        await self.registry.update(
            self.device_id,
            lambda d: d.model_copy(update={
                "power_state": PowerState.ONLINE,
                "current_target": target,
                "last_seen": now,
            }),
        )

    async def _mark_seen(self, target: str):
        """Record an answer to Ping without changing the power state."""
        now = datetime.now(timezone.utc)
        await self.registry.update(
            self.device_id,
            lambda d: d.model_copy(update={"current_target": target, "last_seen": now}),
        )

    async def _set_power_state(self, power_state: PowerState):
        await self.registry.update(
            self.device_id,
            lambda d: d.model_copy(update={"power_state": power_state}),
        )

    async def _clear_desired(self, target: str):
        await self.registry.update(
            self.device_id,
            lambda d: d.model_copy(update={"desired_target": None}) if d.desired_target == target else d,
        )

    # State machine plumbing

    def _transition(self, state: SwitchState):
        if self._cancelled and state not in TERMINAL_STATES:
            raise OperationCancelled()
        if state != self.state:
            logger.info(f"[{self.device_id}] {self.state.value} -> {state.value}")
        if state not in TERMINAL_STATES:
            self.stage = state
        self.state = state

    def _fail(self, reason: FailureReason, detail: str):
        self.reason = reason
        self.detail = detail
        logger.warning(f"[{self.device_id}] Failed in {self.stage.value}: {reason.value} - {detail}")
        self._transition(SwitchState.FAILED)

    def _start_operation(self, kind: OperationKind, deadline: Optional[float] = None):
        self.operation = Operation(
            kind=kind,
            started_at=self.clock(),
            deadline=deadline,
            status=OperationStatus.IN_FLIGHT,
        )

    def _backoff(self, attempt: int) -> float:
        return min(self.timings.retry_backoff * (2 ** (attempt - 1)), self.timings.retry_backoff_cap)

    async def _wait(self, seconds: float):
        await self.sleep(seconds)
        if self._cancelled:
            raise OperationCancelled()

    def _outcome(self) -> DeviceOutcome:
        outcome = {
            SwitchState.CONFIRMED: Outcome.CONFIRMED,
            SwitchState.TIMED_OUT: Outcome.TIMED_OUT,
        }.get(self.state, Outcome.FAILED)
        device = self.registry.get(self.device_id)
        return DeviceOutcome(
            device_id=self.device_id,
            action=self.request.action,
            outcome=outcome,
            state=self.state.value,
            stage=self.stage.value,
            reason=self.reason,
            detail=self.detail,
            current_target=device.current_target if device else None,
        )
