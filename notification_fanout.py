"""Fan-out of one alert to the warehouse users who should hear about it.

Recipients are narrowed by role according to severity. Messages are not sent
here: they are written to the notification queue collection and delivered by
``NotificationService``. A failure for one recipient is logged and counted and
never stops the others.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config import settings
from document_store import DocumentStore
from formatters import alert_title, format_alert_email, format_alert_sms
from metrics import metrics
from models import (
    NOTIFICATION_QUEUE, NOTIFICATIONS, USERS,
    Alert, AlertSeverity, DeliveryStatus, NotificationChannel, NotificationRecipient, UserRole,
    to_iso, utcnow,
)

logger = logging.getLogger(__name__)

# None means every user in the warehouse
SEVERITY_ROLES = {
    AlertSeverity.CRITICAL: {UserRole.ADMIN, UserRole.MANAGER},
    AlertSeverity.WARNING: {UserRole.ADMIN, UserRole.MANAGER, UserRole.STAFF},
    AlertSeverity.INFO: None,
}


class RoleService:
    """Looks up a user's role. The default reads the ``role`` field of the user document."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def get_role(self, user_id: str, user_doc: Optional[Dict[str, Any]] = None) -> Optional[UserRole]:
        if user_doc is None:
            user_doc = self.store.get(USERS, user_id) or {}
        try:
            return UserRole(user_doc.get("role"))
        except ValueError:
            return None


@dataclass
class FanoutResult:
    """Outcome of one fan-out."""
    emails_sent: int = 0
    sms_sent: int = 0
    in_app_created: int = 0
    failures: List[str] = field(default_factory=list)

    @property
    def notification_failed(self) -> bool:
        return bool(self.failures)

    def as_dict(self) -> Dict[str, int]:
        return {"emailsSent": self.emails_sent, "smsSent": self.sms_sent}


class NotificationFanout:
    """Resolves recipients for an alert and enqueues their messages."""

    def __init__(
        self,
        store: DocumentStore,
        role_service: Optional[RoleService] = None,
        app_base_url: Optional[str] = None,
    ):
        self.store = store
        self.role_service = role_service or RoleService(store)
        self.app_base_url = (app_base_url or settings.app_base_url).rstrip("/")

    def resolve_recipients(self, alert: Alert) -> List[Tuple[str, Dict[str, Any]]]:
        """
        Users of the alert's warehouse whose role should receive this severity.

        Returns:
            List of (user_id, user_document)
        """
        allowed_roles = SEVERITY_ROLES.get(alert.severity)
        users = self.store.query(USERS, [("warehouseId", "==", alert.warehouse_id)])
        recipients = []
        for user in users:
            if allowed_roles is not None:
                role = self.role_service.get_role(user.id, user.data)
                if role not in allowed_roles:
                    continue
            recipients.append((user.id, user.data))
        return recipients

    def channels_for(self, alert: Alert, user_id: str, user: Dict[str, Any]) -> List[NotificationRecipient]:
        """Email for every recipient with an address, SMS only for critical alerts."""
        targets = []
        if user.get("email"):
            targets.append(NotificationRecipient(user_id, user["email"], NotificationChannel.EMAIL))
        if alert.severity == AlertSeverity.CRITICAL and user.get("phone"):
            targets.append(NotificationRecipient(user_id, user["phone"], NotificationChannel.SMS))
        return targets

    def notify(self, alert: Alert, subject_label: Optional[str] = None) -> FanoutResult:
        """
        Enqueue notifications for an alert.

        Args:
            alert: The newly created alert
            subject_label: Human readable name of the alert's subject

        Returns:
            FanoutResult with counts of queued emails and SMS and any failures
        """
        result = FanoutResult()
        try:
            recipients = self.resolve_recipients(alert)
        except Exception as e:
            logger.error(f"notification_failed: could not resolve recipients for alert {alert.id}: {e}", exc_info=True)
            metrics.record_notification_failed("all")
            result.failures.append("recipients")
            return result

        email = format_alert_email(alert, subject_label)
        sms_message = format_alert_sms(alert, subject_label)
        priority = "high" if alert.severity == AlertSeverity.CRITICAL else "normal"
        now = to_iso(utcnow())

        for user_id, user in recipients:
            try:
                self.store.add(NOTIFICATIONS, {
                    "userId": user_id,
                    "alertId": alert.id,
                    "type": alert.type.value,
                    "title": alert_title(alert.type),
                    "message": alert.message,
                    "read": False,
                    "actionUrl": f"{self.app_base_url}/alerts/{alert.id}",
                    "createdAt": now,
                })
                result.in_app_created += 1
            except Exception as e:
                logger.error(f"notification_failed: in-app notification for user {user_id}: {e}")
                metrics.record_notification_failed("in_app")
                result.failures.append(f"in_app:{user_id}")

            for target in self.channels_for(alert, user_id, user):
                entry = {
                    "channel": target.channel.value,
                    "to": target.address,
                    "userId": user_id,
                    "alertId": alert.id,
                    "priority": priority,
                    "status": DeliveryStatus.PENDING.value,
                    "attempts": 0,
                    "createdAt": now,
                    "nextAttemptAt": now,
                }
                if target.channel == NotificationChannel.EMAIL:
                    entry.update({"subject": email["subject"], "body": email["text"], "html": email["html"]})
                else:
                    entry["message"] = sms_message

                try:
                    self.store.add(NOTIFICATION_QUEUE, entry)
                except Exception as e:
                    logger.error(
                        f"notification_failed: could not enqueue {target.channel.value} "
                        f"for user {user_id} (alert {alert.id}): {e}"
                    )
                    metrics.record_notification_failed(target.channel.value)
                    result.failures.append(f"{target.channel.value}:{user_id}")
                    continue

                metrics.record_notification_enqueued(target.channel.value)
                if target.channel == NotificationChannel.EMAIL:
                    result.emails_sent += 1
                else:
                    result.sms_sent += 1

        logger.info(
            f"Alert {alert.id} fanned out to {len(recipients)} recipient(s): "
            f"{result.emails_sent} email(s), {result.sms_sent} SMS, {len(result.failures)} failure(s)"
        )
        return result
