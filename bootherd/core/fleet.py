"""Fleet coordination - runs one orchestrator per device in parallel."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from bootherd.config import Timings
from bootherd.core.device import Action, DeviceOutcome, Outcome
from bootherd.core.orchestrator import Orchestrator, OperationRequest, SwitchState
from bootherd.core.registry import DeviceRegistry
from bootherd.errors import FailureReason, UnknownDevice

logger = logging.getLogger(__name__)

ALL_DEVICES = "all"


@dataclass
class FleetRequest:
    """An operator request naming devices and the action to apply to them."""
    devices: List[str]
    action: Action
    target: Optional[str] = None
    verify: bool = False

    def operation(self) -> OperationRequest:
        return OperationRequest(action=self.action, target=self.target, verify=self.verify)


@dataclass
class FleetResult:
    """One terminal outcome per requested device, in request order."""
    request: FleetRequest
    outcomes: List[DeviceOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "action": self.request.action.value,
            "target": self.request.target,
            "results": [o.to_dict() for o in self.outcomes],
        }


class FleetCoordinator:
    """
    Applies operator requests to sets of devices.

    At most one orchestrator is active per device; a second request for a busy
    device is rejected with a DEVICE_BUSY failure for that device. Failures are
    isolated per device and never stop the rest of the fleet.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        client,
        boot_config,
        waker=None,
        timings: Optional[Timings] = None,
        orchestrator_factory=None,
    ):
        self.registry = registry
        self.client = client
        self.boot_config = boot_config
        self.waker = waker
        self.timings = timings or Timings()
        self.orchestrator_factory = orchestrator_factory or self._new_orchestrator
        self.active: Dict[str, Orchestrator] = {}

    def _new_orchestrator(self, device_id: str) -> Orchestrator:
        return Orchestrator(
            device_id,
            self.registry,
            self.client,
            self.boot_config,
            waker=self.waker,
            timings=self.timings,
        )

    def resolve(self, selectors: List[str]) -> List[str]:
        """Expand 'all' and check every ID is registered. Order is preserved, duplicates dropped."""
        device_ids: List[str] = []
        for selector in selectors:
            ids = [d.id for d in self.registry.list()] if selector == ALL_DEVICES else [selector]
            for device_id in ids:
                if device_id not in self.registry:
                    raise UnknownDevice(device_id)
                if device_id not in device_ids:
                    device_ids.append(device_id)
        return device_ids

    def is_busy(self, device_id: str) -> bool:
        return device_id in self.active

    def status(self) -> List[dict]:
        """Live status of every active orchestrator."""
        return [orchestrator.status() for orchestrator in self.active.values()]

    def cancel(self, device_id: str) -> bool:
        """Cancel the device's active operation. Returns False if there is none."""
        orchestrator = self.active.get(device_id)
        if orchestrator is None:
            return False
        orchestrator.cancel()
        return True

    async def apply(self, request: FleetRequest) -> FleetResult:
        """Run the request on every named device and collect one outcome per device."""
        if request.action == Action.SWITCH_TARGET and not request.target:
            raise ValueError("switch-target needs a target")

        device_ids = self.resolve(request.devices)
        logger.info(f"Applying {request.action.value} to {len(device_ids)} device(s): {', '.join(device_ids)}")

        # Claim devices before the first await so two requests cannot both claim one
        claimed: Dict[str, Orchestrator] = {}
        for device_id in device_ids:
            if device_id not in self.active:
                orchestrator = self.orchestrator_factory(device_id)
                self.active[device_id] = orchestrator
                claimed[device_id] = orchestrator

        try:
            results = await asyncio.gather(
                *[orchestrator.run(request.operation()) for orchestrator in claimed.values()],
                return_exceptions=True,
            )
        finally:
            for device_id, orchestrator in claimed.items():
                if self.active.get(device_id) is orchestrator:
                    del self.active[device_id]

        by_device = dict(zip(claimed, results))
        outcomes = []
        for device_id in device_ids:
            if device_id not in claimed:
                logger.warning(f"[{device_id}] Rejected {request.action.value}: operation already in progress")
                outcomes.append(self._failure(device_id, request.action, FailureReason.DEVICE_BUSY,
                                              "Another operation is already in progress"))
                continue

            result = by_device[device_id]
            if isinstance(result, BaseException):
                logger.error(f"[{device_id}] Orchestrator crashed: {result!r}")
                outcomes.append(self._failure(device_id, request.action, FailureReason.INTERNAL, str(result)))
            else:
                outcomes.append(result)

        result = FleetResult(request=request, outcomes=outcomes)
        for outcome in outcomes:
            logger.info(f"[{outcome.device_id}] {outcome.outcome.value}"
                        + (f" ({outcome.reason.value})" if outcome.reason else ""))
        return result

    def _failure(self, device_id: str, action: Action, reason: FailureReason, detail: str) -> DeviceOutcome:
        device = self.registry.get(device_id)
        return DeviceOutcome(
            device_id=device_id,
            action=action,
            outcome=Outcome.FAILED,
            state=SwitchState.FAILED.value,
            reason=reason,
            detail=detail,
            current_target=device.current_target if device else None,
        )

    async def reconcile(self) -> Optional[FleetResult]:
        """Resume target switches left pending, e.g. by a controller restart."""
        pending: Dict[str, List[str]] = {}
        for device in self.registry.list():
            if device.switch_pending and not self.is_busy(device.id):
                pending.setdefault(device.desired_target, []).append(device.id)

        if not pending:
            return None

        outcomes: List[DeviceOutcome] = []
        results = await asyncio.gather(*[
            self.apply(FleetRequest(devices=ids, action=Action.SWITCH_TARGET, target=target))
            for target, ids in pending.items()
        ])
        for result in results:
            outcomes.extend(result.outcomes)

        logger.info(f"Reconciled {len(outcomes)} pending target switch(es)")
        return FleetResult(
            request=FleetRequest(devices=[o.device_id for o in outcomes], action=Action.SWITCH_TARGET),
            outcomes=outcomes,
        )
