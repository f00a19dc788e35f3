"""Fleet operation endpoints."""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from bootherd.core.device import Action
from bootherd.core.fleet import FleetRequest

router = APIRouter()


class ApplyRequest(BaseModel):
    """Apply one action to a set of devices ("all" selects every device)."""
    devices: List[str] = Field(min_length=1)
    action: Action
    target: Optional[str] = None
    verify: bool = False


@router.post("/apply")
async def apply(body: ApplyRequest, request: Request):
    """Run an action on the named devices and wait for every device to finish."""
    if body.action == Action.SWITCH_TARGET and not body.target:
        raise HTTPException(status_code=422, detail="switch-target needs a target")

    # Unknown devices are rejected with 404 before anything runs
    result = await request.app.state.coordinator.apply(FleetRequest(
        devices=body.devices,
        action=body.action,
        target=body.target,
        verify=body.verify,
    ))

    return result.to_dict()


@router.get("/operations")
async def list_operations(request: Request):
    """List operations currently in progress."""
    operations = request.app.state.coordinator.status()
    return {
        "operations": operations,
        "count": len(operations),
    }
