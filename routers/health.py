"""API endpoints for device health."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from detector import LOW_BATTERY_WARNING
from health_sweeper import DeviceHealthSweeper
from models import DEVICES, Device, to_iso, utcnow

router = APIRouter(prefix="/devices/health", tags=["device-health"])


class DeviceHealthResponse(BaseModel):
    """Presence of one device."""
    device_id: str
    device_type: Optional[str]
    warehouse_id: Optional[str]
    shelf_id: Optional[str]
    status: str
    last_heartbeat: Optional[str]
    battery_level: Optional[float]
    stale: bool
    low_battery: bool


class HealthSummaryResponse(BaseModel):
    total: int
    online: int
    offline: int
    unknown: int
    stale: int
    low_battery: int
    checked_at: str
    devices: List[DeviceHealthResponse]


class SweepResponse(BaseModel):
    started_at: str
    devices_scanned: int
    marked_offline: List[str]
    alerts_created: List[str]
    errors: List[str]


def get_sweeper(request: Request) -> DeviceHealthSweeper:
    return request.app.state.sweeper


@router.get("", response_model=HealthSummaryResponse)
def get_device_health(
    warehouse_id: Optional[str] = Query(None),
    sweeper: DeviceHealthSweeper = Depends(get_sweeper),
):
    """Presence summary of every device, optionally for one warehouse."""
    now = utcnow()
    filters = [("warehouseId", "==", warehouse_id)] if warehouse_id else []
    devices = [Device.from_document(doc.id, doc.data) for doc in sweeper.store.query(DEVICES, filters)]

    rows = []
    for device in devices:
        rows.append(DeviceHealthResponse(
            device_id=device.device_id,
            device_type=device.device_type.value if device.device_type else None,
            warehouse_id=device.warehouse_id,
            shelf_id=device.shelf_id,
            status=device.status.value if device.status else "unknown",
            last_heartbeat=to_iso(device.last_heartbeat) if device.last_heartbeat else None,
            battery_level=device.battery_level,
            stale=sweeper.is_stale(device, now),
            low_battery=device.battery_level is not None and device.battery_level < LOW_BATTERY_WARNING,
        ))

    return HealthSummaryResponse(
        total=len(rows),
        online=sum(1 for row in rows if row.status == "online"),
        offline=sum(1 for row in rows if row.status == "offline"),
        unknown=sum(1 for row in rows if row.status == "unknown"),
        stale=sum(1 for row in rows if row.stale),
        low_battery=sum(1 for row in rows if row.low_battery),
        checked_at=to_iso(now),
        devices=rows,
    )


@router.post("/sweep", response_model=SweepResponse)
def run_health_sweep(sweeper: DeviceHealthSweeper = Depends(get_sweeper)):
    """Run a health sweep now instead of waiting for the schedule."""
    result = sweeper.run_once()
    return SweepResponse(
        started_at=result.started_at,
        devices_scanned=result.devices_scanned,
        marked_offline=result.marked_offline,
        alerts_created=result.alerts_created,
        errors=result.errors,
    )
