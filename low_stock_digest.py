"""Daily low stock digest: one email per admin or manager, one alert per warehouse."""
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from croniter import croniter

from alert_store import AlertDeduplicator, AlertStore
from detector import AlertCandidate
from document_store import DocumentStore
from formatters import format_low_stock_digest
from metrics import metrics
from models import (
    INVENTORY, NOTIFICATION_QUEUE, PRODUCTS, USERS, WAREHOUSES,
    AlertSeverity, AlertType, DeliveryStatus, InventoryRecord, LowStockItem, NotificationChannel, UserRole,
    to_iso, utcnow,
)
from notification_fanout import RoleService

logger = logging.getLogger(__name__)

DIGEST_ROLES = {UserRole.ADMIN, UserRole.MANAGER}


@dataclass
class DigestResult:
    """Summary of one digest run."""
    started_at: str
    warehouses_reported: int = 0
    low_stock_items: Dict[str, int] = field(default_factory=dict)
    emails_enqueued: int = 0
    alerts_created: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class LowStockDigest:
    """Collects inventory at or below its minimum level and reports it per warehouse."""

    def __init__(
        self,
        store: DocumentStore,
        cron_schedule: str = "0 8 * * *",
        role_service: Optional[RoleService] = None,
    ):
        if not croniter.is_valid(cron_schedule):
            raise ValueError(f"Invalid low stock digest schedule: {cron_schedule}")
        self.store = store
        self.cron_schedule = cron_schedule
        self.role_service = role_service or RoleService(store)
        # Recipients get the digest email directly; no role fan-out for this alert
        self.deduplicator = AlertDeduplicator(AlertStore(store))
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()

    def collect(self) -> Dict[str, List[LowStockItem]]:
        """
        Low stock rows grouped by warehouse id.

        The record's own minStockLevel wins over the product's. Records whose
        product no longer exists are skipped.
        """
        names = {doc.id: doc.data.get("name") or doc.id for doc in self.store.query(WAREHOUSES)}
        products = {}
        grouped = defaultdict(list)

        for doc in self.store.query(INVENTORY):
            record = InventoryRecord.from_document(doc.data)
            if not record.warehouse_id or not record.product_id:
                continue
            if record.product_id not in products:
                products[record.product_id] = self.store.get(PRODUCTS, record.product_id)
            product = products[record.product_id]
            if product is None:
                continue

            min_level = record.min_stock_level
            if min_level is None and product.get("minStockLevel") is not None:
                min_level = int(product["minStockLevel"])
            if min_level is None or record.quantity > min_level:
                continue

            grouped[record.warehouse_id].append(LowStockItem(
                product_id=record.product_id,
                name=str(product.get("name") or record.product_id),
                sku=str(product.get("sku") or ""),
                current_stock=record.quantity,
                min_stock=min_level,
                warehouse=names.get(record.warehouse_id, record.warehouse_id),
            ))
        return grouped

    def recipients(self, warehouse_id: str) -> List[tuple]:
        """(user_id, email) of the warehouse's admins and managers."""
        targets = []
        for user in self.store.query(USERS, [("warehouseId", "==", warehouse_id)]):
            if self.role_service.get_role(user.id, user.data) not in DIGEST_ROLES:
                continue
            if user.data.get("email"):
                targets.append((user.id, user.data["email"]))
        return targets

    def run_once(self, now: Optional[datetime] = None) -> DigestResult:
        """
        Run one digest.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            DigestResult with per-warehouse counts, queued emails and alerts
        """
        now = now or utcnow()
        result = DigestResult(started_at=to_iso(now))

        with self._run_lock:
            grouped = self.collect()
            result.warehouses_reported = len(grouped)
            for warehouse_id in sorted(grouped):
                items = grouped[warehouse_id]
                result.low_stock_items[warehouse_id] = len(items)
                try:
                    self._report(warehouse_id, items, now, result)
                except Exception as e:
                    logger.error(f"Low stock digest failed for warehouse {warehouse_id}: {e}", exc_info=True)
                    result.errors.append(warehouse_id)

        metrics.record_digest(sum(result.low_stock_items.values()))
        logger.info(
            f"Low stock digest done: warehouses={result.warehouses_reported}, "
            f"items={sum(result.low_stock_items.values())}, emails={result.emails_enqueued}"
        )
        return result

    def _report(self, warehouse_id: str, items: List[LowStockItem], now: datetime, result: DigestResult):
        warehouse_name = items[0].warehouse
        logger.info(f"Found {len(items)} low stock items in {warehouse_name}")

        submission = self.deduplicator.submit(AlertCandidate(
            type=AlertType.LOW_STOCK,
            severity=AlertSeverity.WARNING,
            warehouse_id=warehouse_id,
            message=f"{len(items)} products are below minimum stock levels",
            details={"productCount": len(items), "products": [item.to_dict() for item in items]},
            subject_label=warehouse_name,
        ))
        if submission.created:
            result.alerts_created.append(submission.alert_id)
        elif submission.error:
            result.errors.append(warehouse_id)

        email = format_low_stock_digest(items, warehouse_name)
        queued_at = to_iso(now)
        for user_id, address in self.recipients(warehouse_id):
            self.store.add(NOTIFICATION_QUEUE, {
                "channel": NotificationChannel.EMAIL.value,
                "to": address,
                "userId": user_id,
                "alertId": submission.alert_id,
                "priority": "normal",
                "status": DeliveryStatus.PENDING.value,
                "attempts": 0,
                "createdAt": queued_at,
                "nextAttemptAt": queued_at,
                "subject": email["subject"],
                "body": email["text"],
                "html": email["html"],
            })
            metrics.record_notification_enqueued(NotificationChannel.EMAIL.value)
            result.emails_enqueued += 1

    def next_run_after(self, moment: datetime) -> datetime:
        return croniter(self.cron_schedule, moment).get_next(datetime)

    def start(self):
        """Start the digest worker."""
        if self._running:
            logger.warning("Low stock digest is already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker_loop, daemon=True)
        self._thread.start()
        logger.info(f"Low stock digest started (schedule: {self.cron_schedule})")

    def stop(self):
        """Stop the digest worker."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Low stock digest stopped")

    def _worker_loop(self):
        """Sleep until the next cron tick, then report."""
        while self._running:
            next_run = self.next_run_after(utcnow())
            wait_seconds = max((next_run - utcnow()).total_seconds(), 0)
            if self._stop_event.wait(wait_seconds):
                break
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in low stock digest worker loop: {e}", exc_info=True)
