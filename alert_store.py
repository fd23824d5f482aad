"""Alert persistence and deduplication.

At most one unresolved alert may exist per (warehouse, type, subject). Every
alert-producing rule funnels through ``AlertDeduplicator.submit``, which
checks the store for an unresolved match before writing. The check and the
write are not atomic; two truly concurrent submissions of the same condition
can both write, and that small risk is accepted.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from detector import AlertCandidate
from document_store import DocumentStore
from error_handler import DependencyError, InvariantViolation
from metrics import metrics
from models import ALERTS, Alert, to_iso, utcnow
from notification_fanout import FanoutResult, NotificationFanout

logger = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    """Outcome of submitting a candidate."""
    created: bool
    alert_id: Optional[str]
    fanout: Optional[FanoutResult] = None
    error: Optional[str] = None


class AlertStore:
    """Reads and writes alert documents."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def find_unresolved(self, candidate: AlertCandidate) -> List[Alert]:
        """
        Unresolved alerts for the candidate's warehouse, type and subject.

        When the subject is a shelf or device and the candidate also names a
        product, the product must match too, so two products on one shelf are
        tracked separately.
        """
        subject_field, subject_id = candidate.subject()
        filters = [
            ("warehouseId", "==", candidate.warehouse_id),
            ("type", "==", candidate.type.value),
            (subject_field, "==", subject_id),
            ("resolved", "==", False),
        ]
        if candidate.product_id and subject_field != "productId":
            filters.append(("productId", "==", candidate.product_id))
        return [Alert.from_document(doc.id, doc.data) for doc in self.store.query(ALERTS, filters, limit=2)]

    def create(self, candidate: AlertCandidate) -> Alert:
        alert = Alert(
            id="",
            type=candidate.type,
            severity=candidate.severity,
            warehouse_id=candidate.warehouse_id,
            message=candidate.message,
            shelf_id=candidate.shelf_id,
            device_id=candidate.device_id,
            product_id=candidate.product_id,
            details=dict(candidate.details),
            resolved=False,
            created_at=to_iso(utcnow()),
        )
        alert.id = self.store.add(ALERTS, alert.to_document())
        return alert

    def get(self, alert_id: str) -> Optional[Alert]:
        data = self.store.get(ALERTS, alert_id)
        return Alert.from_document(alert_id, data) if data else None

    def list_alerts(
        self,
        warehouse_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        filters = []
        if warehouse_id is not None:
            filters.append(("warehouseId", "==", warehouse_id))
        if resolved is not None:
            filters.append(("resolved", "==", resolved))
        docs = self.store.query(ALERTS, filters, limit=limit)
        return [Alert.from_document(doc.id, doc.data) for doc in docs]

    def resolve(self, alert_id: str, resolved_by: str) -> Optional[Alert]:
        """
        Mark an alert resolved (operator action).

        Resolving an already resolved alert leaves it unchanged.

        Returns:
            The alert, or None if it does not exist
        """
        alert = self.get(alert_id)
        if alert is None:
            return None
        if alert.resolved:
            return alert

        alert.resolved = True
        alert.resolved_by = resolved_by
        alert.resolved_at = to_iso(utcnow())
        self.store.update(ALERTS, alert_id, {
            "resolved": True,
            "resolvedBy": alert.resolved_by,
            "resolvedAt": alert.resolved_at,
        })
        logger.info(f"Alert {alert_id} resolved by {resolved_by}")
        return alert


class AlertDeduplicator:
    """Creates an alert for a candidate unless an unresolved one already exists."""

    def __init__(self, alert_store: AlertStore, fanout: Optional[NotificationFanout] = None):
        self.alert_store = alert_store
        self.fanout = fanout

    def submit(self, candidate: AlertCandidate) -> SubmitResult:
        """
        Submit a candidate alert.

        Args:
            candidate: Condition proposed by the detector

        Returns:
            SubmitResult(created, alert_id). When an unresolved alert already
            exists, created is False and alert_id is the existing alert.
        """
        try:
            existing = self.alert_store.find_unresolved(candidate)
        except DependencyError as e:
            logger.error(f"Could not check for existing {candidate.type.value} alert: {e}")
            return SubmitResult(created=False, alert_id=None, error=str(e))

        if existing:
            if len(existing) > 1:
                subject_field, subject_id = candidate.subject()
                violation = InvariantViolation(
                    f"{len(existing)} unresolved {candidate.type.value} alerts for "
                    f"{subject_field}={subject_id} in warehouse {candidate.warehouse_id}"
                )
                logger.warning(f"Invariant violation: {violation}; using {existing[0].id}")
                metrics.record_error("invariant_violation")
            metrics.record_alert_suppressed(candidate.type.value)
            logger.debug(f"Suppressed duplicate {candidate.type.value} alert, existing={existing[0].id}")
            return SubmitResult(created=False, alert_id=existing[0].id)

        try:
            alert = self.alert_store.create(candidate)
        except DependencyError as e:
            logger.error(f"Could not create {candidate.type.value} alert: {e}")
            return SubmitResult(created=False, alert_id=None, error=str(e))

        metrics.record_alert_created(alert.type.value)
        logger.info(
            f"Created alert: id={alert.id}, type={alert.type.value}, severity={alert.severity.value}, "
            f"warehouse={alert.warehouse_id}, subject={candidate.label}"
        )

        fanout_result = None
        if self.fanout is not None:
            try:
                fanout_result = self.fanout.notify(alert, candidate.label)
            except Exception as e:
                # The alert is already persisted; delivery problems never undo it
                logger.error(f"notification_failed for alert {alert.id}: {e}", exc_info=True)
                metrics.record_notification_failed("all")
                fanout_result = FanoutResult(failures=["fanout"])

        return SubmitResult(created=True, alert_id=alert.id, fanout=fanout_result)

    def submit_all(self, candidates: List[AlertCandidate]) -> List[SubmitResult]:
        """Submit candidates one by one, each with its own existence check."""
        return [self.submit(candidate) for candidate in candidates]
