"""Detector → deduplicator → fan-out wiring, driven by document store watchers.

Telemetry samples written by the gateway and inventory records written by
external CRUD flows reach the detector through change watchers on the
``sensor-data`` and ``inventory`` collections. The health sweeper calls
``process_device`` directly.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from alert_store import AlertDeduplicator, AlertStore, SubmitResult
from detector import StateTransitionDetector, as_number
from document_store import DocumentStore
from models import (
    AUDIT_LOGS, DEVICES, INVENTORY, PRODUCTS, SENSOR_DATA, SHELVES,
    Device, DeviceStatus, DeviceType, InventoryRecord, to_iso, utcnow,
)
from notification_fanout import NotificationFanout

logger = logging.getLogger(__name__)


class AlertPipeline:
    """Owns the detector, alert store, deduplicator and fan-out for one store."""

    def __init__(
        self,
        store: DocumentStore,
        detector: Optional[StateTransitionDetector] = None,
        fanout: Optional[NotificationFanout] = None,
    ):
        self.store = store
        self.detector = detector or StateTransitionDetector()
        self.fanout = fanout or NotificationFanout(store)
        self.alert_store = AlertStore(store)
        self.deduplicator = AlertDeduplicator(self.alert_store, self.fanout)
        self._unsubscribe: List[Callable[[], None]] = []

    def register_watchers(self) -> None:
        """Start reacting to telemetry and inventory writes."""
        if self._unsubscribe:
            return
        self._unsubscribe.append(self.store.watch(SENSOR_DATA, self.on_sensor_data_written))
        self._unsubscribe.append(self.store.watch(INVENTORY, self.on_inventory_written))
        logger.info("Alert pipeline watching sensor-data and inventory")

    def unregister_watchers(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    def on_sensor_data_written(
        self,
        collection: str,
        device_id: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
    ) -> List[SubmitResult]:
        """Evaluate the latest telemetry sample of a device."""
        if not after:
            return []

        device_doc = self.store.get(DEVICES, device_id)
        if device_doc is None:
            logger.error(f"Device {device_id} not found for telemetry sample")
            return []
        device = Device.from_document(device_id, device_doc)
        data = after.get("data") or {}

        shelf = None
        if device.shelf_id:
            shelf = self.store.get(SHELVES, device.shelf_id)
            weight = as_number(data.get("weight"))
            if shelf is not None and device.device_type == DeviceType.WEIGHT and weight is not None:
                self.store.update(SHELVES, device.shelf_id, {
                    "currentWeight": weight,
                    "updatedAt": to_iso(utcnow()),
                })

        candidates = self.detector.evaluate_telemetry(device, data, shelf)
        return self.deduplicator.submit_all(candidates)

    def on_inventory_written(
        self,
        collection: str,
        inventory_id: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
    ) -> List[SubmitResult]:
        """Evaluate an inventory record after an external write."""
        if not after:
            return []

        record = InventoryRecord.from_document(after)
        previous = InventoryRecord.from_document(before) if before else None

        product = self.store.get(PRODUCTS, record.product_id) if record.product_id else None
        min_stock_level = record.min_stock_level
        if min_stock_level is None:
            min_stock_level = int((product or {}).get("minStockLevel") or 0)
        product_name = (product or {}).get("name")

        results = self.deduplicator.submit_all(
            self.detector.evaluate_inventory(previous, record, min_stock_level, product_name)
        )
        self._audit_inventory(inventory_id, previous, record, after.get("updatedBy"))
        return results

    def process_device(
        self,
        device: Device,
        previous_status: Optional[DeviceStatus],
        new_status: Optional[DeviceStatus],
    ) -> List[SubmitResult]:
        """Evaluate a presence/battery observation of one device."""
        return self.deduplicator.submit_all(
            self.detector.evaluate_device(device, previous_status, new_status)
        )

    def _audit_inventory(
        self,
        inventory_id: str,
        previous: Optional[InventoryRecord],
        record: InventoryRecord,
        updated_by: Optional[str],
    ) -> None:
        try:
            self.store.add(AUDIT_LOGS, {
                "userId": updated_by or "system",
                "action": "update_inventory" if previous else "create_inventory",
                "resource": "inventory",
                "resourceId": inventory_id,
                "details": {
                    "productId": record.product_id,
                    "shelfId": record.shelf_id,
                    "previousQuantity": previous.quantity if previous else 0,
                    "newQuantity": record.quantity,
                },
                "timestamp": to_iso(utcnow()),
            })
        except Exception as e:
            logger.error(f"Failed to write audit log for inventory {inventory_id}: {e}")
