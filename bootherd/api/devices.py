"""Device registration and status endpoints."""

import logging

from fastapi import APIRouter, HTTPException, Request

from bootherd.config import DEVICE_ID_PATTERN, DeviceConfig
from bootherd.core.device import Device, PowerState
from bootherd.errors import DeviceBusy, UnknownDevice

logger = logging.getLogger(__name__)

router = APIRouter()


def device_to_dict(device: Device) -> dict:
    return device.model_dump(mode="json")


def ensure_idle(request: Request, device_id: str):
    if request.app.state.coordinator.is_busy(device_id):
        raise DeviceBusy(device_id)


@router.get("")
async def list_devices(request: Request):
    """List all registered devices."""
    registry = request.app.state.registry
    coordinator = request.app.state.coordinator
    devices = [
        {**device_to_dict(d), "busy": coordinator.is_busy(d.id)}
        for d in registry.list()
    ]
    return {
        "devices": devices,
        "count": len(devices),
    }


@router.get("/{device_id}")
async def get_device(device_id: str, request: Request):
    """Get a device and its active operation, if any."""
    device = request.app.state.registry.require(device_id)

    orchestrator = request.app.state.coordinator.active.get(device_id)
    return {
        **device_to_dict(device),
        "busy": orchestrator is not None,
        "operation": orchestrator.status() if orchestrator else None,
    }


@router.put("/{device_id}")
async def register_device(device_id: str, registration: DeviceConfig, request: Request):
    """Register a device, or update its registration."""
    if not DEVICE_ID_PATTERN.match(device_id):
        raise HTTPException(status_code=422, detail="Device IDs may only contain letters, digits, '-' and '_'")
    ensure_idle(request, device_id)

    registry = request.app.state.registry
    existing = registry.get(device_id)
    device = Device(
        id=device_id,
        address=registration.address,
        mac_address=registration.mac_address,
        boot_targets=registration.boot_targets,
        desired_target=registration.desired_target or (existing.desired_target if existing else None),
        current_target=existing.current_target if existing else None,
        power_state=existing.power_state if existing else PowerState.UNKNOWN,
        last_seen=existing.last_seen if existing else None,
    )
    device = await registry.upsert(device)

    return {
        "device": device_to_dict(device),
        "created": existing is None,
    }


@router.delete("/{device_id}")
async def remove_device(device_id: str, request: Request):
    """Deregister a device."""
    ensure_idle(request, device_id)

    if not await request.app.state.registry.remove(device_id):
        raise UnknownDevice(device_id)

    return {"ok": True, "message": f"Device {device_id} removed"}


@router.post("/{device_id}/cancel")
async def cancel_operation(device_id: str, request: Request):
    """Cancel the device's active operation at its next state transition."""
    request.app.state.registry.require(device_id)

    cancelled = request.app.state.coordinator.cancel(device_id)
    if cancelled:
        logger.info(f"Cancellation requested for {device_id}")
    return {"device_id": device_id, "cancelled": cancelled}
