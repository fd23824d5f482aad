"""State-transition detector for inventory, telemetry and device presence.

Every rule is a pure function of the previous and the new value of one
subject. Rules only propose ``AlertCandidate`` objects; whether an alert is
actually written is decided by the deduplicator.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from models import AlertSeverity, AlertType, Device, DeviceStatus, InventoryRecord

logger = logging.getLogger(__name__)

# Global physical safety band in degrees Celsius, not configurable per product
TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 30.0

LOW_BATTERY_WARNING = 20.0
LOW_BATTERY_CRITICAL = 10.0

BATTERY_FIELDS = ("batteryLevel", "battery")


@dataclass
class AlertCandidate:
    """An alert-worthy condition, before deduplication."""
    type: AlertType
    severity: AlertSeverity
    warehouse_id: str
    message: str
    device_id: Optional[str] = None
    shelf_id: Optional[str] = None
    product_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    subject_label: Optional[str] = None

    def subject(self) -> Tuple[str, Optional[str]]:
        """Most specific subject as (document field, id): device, then shelf, then product."""
        if self.device_id:
            return "deviceId", self.device_id
        if self.shelf_id:
            return "shelfId", self.shelf_id
        return "productId", self.product_id

    @property
    def label(self) -> str:
        return self.subject_label or self.subject()[1] or self.warehouse_id


def as_number(value: Any) -> Optional[float]:
    """Read a numeric telemetry value; None for missing or non-numeric values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _fmt(value: float) -> str:
    return f"{value:g}"


def detect_low_stock(
    previous_quantity: Optional[int],
    record: InventoryRecord,
    min_stock_level: int,
    product_name: Optional[str] = None,
) -> Optional[AlertCandidate]:
    """Quantity crossed down to or below the minimum (or was first seen there)."""
    if record.quantity > min_stock_level:
        return None
    if previous_quantity is not None and previous_quantity <= min_stock_level:
        return None

    name = product_name or record.product_id
    return AlertCandidate(
        type=AlertType.LOW_STOCK,
        severity=AlertSeverity.CRITICAL if record.quantity == 0 else AlertSeverity.WARNING,
        warehouse_id=record.warehouse_id,
        shelf_id=record.shelf_id,
        product_id=record.product_id,
        message=f"Low stock alert: {name} is at {record.quantity} units",
        details={
            "currentQuantity": record.quantity,
            "previousQuantity": previous_quantity,
            "minStockLevel": min_stock_level,
        },
        subject_label=name,
    )


def detect_out_of_stock(
    previous_quantity: Optional[int],
    record: InventoryRecord,
    product_name: Optional[str] = None,
) -> Optional[AlertCandidate]:
    """Quantity went from above zero to exactly zero on an update."""
    if previous_quantity is None or previous_quantity <= 0 or record.quantity != 0:
        return None

    name = product_name or record.product_id
    return AlertCandidate(
        type=AlertType.OUT_OF_STOCK,
        severity=AlertSeverity.CRITICAL,
        warehouse_id=record.warehouse_id,
        shelf_id=record.shelf_id,
        product_id=record.product_id,
        message=f"{name} is out of stock",
        details={
            "currentQuantity": 0,
            "previousQuantity": previous_quantity,
        },
        subject_label=name,
    )


def detect_weight_over_capacity(device: Device, weight: Optional[float], max_weight: Optional[float]) -> Optional[AlertCandidate]:
    if weight is None or not max_weight or weight <= max_weight:
        return None
    return AlertCandidate(
        type=AlertType.WEIGHT_MISMATCH,
        severity=AlertSeverity.WARNING,
        warehouse_id=device.warehouse_id,
        device_id=device.device_id,
        shelf_id=device.shelf_id,
        message=f"Shelf weight exceeded maximum capacity ({_fmt(weight)}kg > {_fmt(max_weight)}kg)",
        details={
            "currentWeight": weight,
            "maxWeight": max_weight,
        },
        subject_label=device.shelf_id or device.device_id,
    )


def detect_temperature_out_of_band(
    device: Device, temperature: Optional[float], humidity: Optional[float] = None
) -> Optional[AlertCandidate]:
    if temperature is None or TEMPERATURE_MIN <= temperature <= TEMPERATURE_MAX:
        return None
    details = {
        "currentTemperature": temperature,
        "minTemperature": TEMPERATURE_MIN,
        "maxTemperature": TEMPERATURE_MAX,
    }
    if humidity is not None:
        details["humidity"] = humidity
    return AlertCandidate(
        type=AlertType.TEMPERATURE_ALERT,
        severity=AlertSeverity.CRITICAL,
        warehouse_id=device.warehouse_id,
        device_id=device.device_id,
        shelf_id=device.shelf_id,
        message=f"Temperature out of range: {_fmt(temperature)}°C",
        details=details,
        subject_label=device.device_id,
    )


def detect_low_battery(device: Device, battery_level: Optional[float]) -> Optional[AlertCandidate]:
    if battery_level is None or battery_level >= LOW_BATTERY_WARNING:
        return None
    return AlertCandidate(
        type=AlertType.LOW_BATTERY,
        severity=AlertSeverity.CRITICAL if battery_level < LOW_BATTERY_CRITICAL else AlertSeverity.WARNING,
        warehouse_id=device.warehouse_id,
        device_id=device.device_id,
        shelf_id=device.shelf_id,
        message=f"Device battery low: {_fmt(battery_level)}%",
        details={
            "batteryLevel": battery_level,
            "deviceType": device.device_type.value if device.device_type else None,
        },
        subject_label=device.device_id,
    )


def detect_device_offline(
    device: Device, previous_status: Optional[DeviceStatus], new_status: Optional[DeviceStatus]
) -> Optional[AlertCandidate]:
    """Presence moved from online or unknown to offline."""
    if new_status != DeviceStatus.OFFLINE or previous_status == DeviceStatus.OFFLINE:
        return None
    return AlertCandidate(
        type=AlertType.SENSOR_FAILURE,
        severity=AlertSeverity.WARNING,
        warehouse_id=device.warehouse_id,
        device_id=device.device_id,
        shelf_id=device.shelf_id,
        message=f"Device {device.device_id} is offline",
        details={
            "deviceType": device.device_type.value if device.device_type else None,
            "lastHeartbeat": device.last_heartbeat.isoformat() if device.last_heartbeat else None,
        },
        subject_label=device.device_id,
    )


def battery_from_sample(data: Dict[str, Any]) -> Optional[float]:
    """Battery level reported in a telemetry payload, if any."""
    for key in BATTERY_FIELDS:
        level = as_number(data.get(key))
        if level is not None:
            return level
    return None


class StateTransitionDetector:
    """Runs every rule that applies to an event and collects the candidates."""

    def evaluate_inventory(
        self,
        before: Optional[InventoryRecord],
        after: InventoryRecord,
        min_stock_level: int,
        product_name: Optional[str] = None,
    ) -> List[AlertCandidate]:
        """
        Evaluate an inventory write.

        Args:
            before: Record before the write, None when it was created
            after: Record after the write
            min_stock_level: Threshold for the low stock rule
            product_name: Human label for messages

        Returns:
            Candidates for the low stock and zero-stock rules
        """
        previous_quantity = before.quantity if before is not None else None
        candidates = [
            detect_low_stock(previous_quantity, after, min_stock_level, product_name),
            detect_out_of_stock(previous_quantity, after, product_name),
        ]
        return [c for c in candidates if c is not None]

    def evaluate_telemetry(
        self,
        device: Device,
        data: Dict[str, Any],
        shelf: Optional[Dict[str, Any]] = None,
    ) -> List[AlertCandidate]:
        """Evaluate a newly accepted telemetry sample for a device."""
        if not device.warehouse_id:
            logger.warning(f"Device {device.device_id} has no warehouse, skipping detection")
            return []

        max_weight = as_number((shelf or {}).get("maxWeight"))
        candidates = [
            detect_weight_over_capacity(device, as_number(data.get("weight")), max_weight),
            detect_temperature_out_of_band(
                device, as_number(data.get("temperature")), as_number(data.get("humidity"))
            ),
            detect_low_battery(device, battery_from_sample(data)),
        ]
        return [c for c in candidates if c is not None]

    def evaluate_device(
        self,
        device: Device,
        previous_status: Optional[DeviceStatus],
        new_status: Optional[DeviceStatus],
    ) -> List[AlertCandidate]:
        """Evaluate a presence/battery observation made by the health sweep."""
        if not device.warehouse_id:
            logger.warning(f"Device {device.device_id} has no warehouse, skipping detection")
            return []

        candidates = [
            detect_device_offline(device, previous_status, new_status),
            detect_low_battery(device, device.battery_level),
        ]
        return [c for c in candidates if c is not None]
