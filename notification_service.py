"""Delivery worker that drains the notification queue via email and SMS."""
import logging
import smtplib
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import requests

from config import Settings, settings as default_settings
from document_store import DocumentStore
from error_handler import DependencyError, PipelineError, RetryHandler
from metrics import metrics
from models import (
    NOTIFICATION_LOGS, NOTIFICATION_QUEUE,
    DeliveryStatus, NotificationChannel, to_iso, utcnow,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


class ChannelNotConfigured(PipelineError):
    """A delivery channel has no transport configured."""


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt."""
    entry_id: str
    channel: str
    status: DeliveryStatus
    attempts: int
    error: Optional[str] = None


class NotificationService:
    """Sends queued notifications and records every attempt."""

    def __init__(self, store: DocumentStore, config: Optional[Settings] = None):
        """
        Initialize notification service.

        Args:
            store: Document store holding the queue
            config: Settings with SMTP, SMS gateway and retry options
        """
        config = config or default_settings
        self.store = store

        # Email settings
        self.smtp_host = config.smtp_host
        self.smtp_port = config.smtp_port or 587
        self.smtp_user = config.smtp_user
        self.smtp_password = config.smtp_password
        self.smtp_from = config.smtp_from

        # SMS gateway settings
        self.sms_gateway_url = config.sms_gateway_url
        self.sms_api_key = config.sms_api_key
        self.sms_sender_id = config.sms_sender_id

        self.poll_seconds = config.notification_poll_seconds
        self.retry_handler = RetryHandler(
            max_retries=config.notification_max_attempts,
            retry_delay=config.notification_retry_delay_seconds,
        )

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def send_email(self, entry: Dict[str, Any]) -> None:
        """Send an email entry over SMTP. Raises on failure."""
        if not self.smtp_host:
            raise ChannelNotConfigured("SMTP not configured")

        msg = MIMEMultipart("alternative")
        msg["From"] = self.smtp_from
        msg["To"] = entry["to"]
        msg["Subject"] = entry.get("subject") or "Alert Notification"
        if entry.get("priority") == "high":
            msg["X-Priority"] = "1"

        msg.attach(MIMEText(entry.get("body") or "You have received an alert notification.", "plain"))
        if entry.get("html"):
            msg.attach(MIMEText(entry["html"], "html"))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
            if self.smtp_user and self.smtp_password:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)
        logger.info(f"Email sent to {entry['to']}")

    def send_sms(self, entry: Dict[str, Any]) -> None:
        """Send an SMS entry through the HTTP gateway. Raises on failure."""
        if not self.sms_gateway_url:
            raise ChannelNotConfigured("SMS gateway not configured")

        headers = {"Content-Type": "application/json"}
        if self.sms_api_key:
            headers["Authorization"] = f"Bearer {self.sms_api_key}"
        response = requests.post(
            self.sms_gateway_url,
            json={
                "to": entry["to"],
                "message": entry.get("message", ""),
                "sender": self.sms_sender_id,
                "priority": entry.get("priority", "normal"),
            },
            headers=headers,
            timeout=10,
        )
        if response.status_code >= 500:
            raise DependencyError(f"SMS gateway unavailable: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ValueError(f"SMS rejected: HTTP {response.status_code}: {response.text}")
        logger.info(f"SMS sent to {entry['to']}")

    def deliver(self, entry_id: str, entry: Dict[str, Any], now: Optional[datetime] = None) -> DeliveryResult:
        """
        Attempt one delivery and update the queue entry.

        Transient failures leave the entry pending with a backed-off
        ``nextAttemptAt`` until the attempt limit is reached.
        """
        now = now or utcnow()
        channel = entry.get("channel")
        attempts = int(entry.get("attempts") or 0) + 1
        error = None
        status = DeliveryStatus.SENT
        update: Dict[str, Any] = {"attempts": attempts, "lastAttemptAt": to_iso(now)}

        try:
            if channel == NotificationChannel.EMAIL.value:
                self.send_email(entry)
            elif channel == NotificationChannel.SMS.value:
                self.send_sms(entry)
            else:
                raise ChannelNotConfigured(f"Unknown channel: {channel}")
            update.update({"status": DeliveryStatus.SENT.value, "sentAt": to_iso(now)})
        except ChannelNotConfigured as e:
            error = str(e)
            logger.warning(f"Notification {entry_id} not delivered: {error}")
            status = DeliveryStatus.FAILED
        except Exception as e:
            error = str(e)
            if self.retry_handler.should_retry(e, attempts):
                delay = self.retry_handler.get_retry_delay(attempts)
                status = DeliveryStatus.PENDING
                update["nextAttemptAt"] = to_iso(now + timedelta(seconds=delay))
                logger.warning(f"Notification {entry_id} attempt {attempts} failed, retrying in {delay:g}s: {error}")
            else:
                status = DeliveryStatus.FAILED
                logger.error(f"Notification {entry_id} failed after {attempts} attempt(s): {error}")

        if status != DeliveryStatus.SENT:
            update.update({"status": status.value, "error": error})
            if status == DeliveryStatus.FAILED:
                metrics.record_notification_failed(channel or "unknown")

        self.store.update(NOTIFICATION_QUEUE, entry_id, update)
        self._log_attempt(entry_id, entry, status, attempts, error, now)
        return DeliveryResult(entry_id, channel, status, attempts, error)

    def _log_attempt(self, entry_id, entry, status, attempts, error, now) -> None:
        try:
            self.store.add(NOTIFICATION_LOGS, {
                "queueId": entry_id,
                "alertId": entry.get("alertId"),
                "userId": entry.get("userId"),
                "channel": entry.get("channel"),
                "to": entry.get("to"),
                "status": status.value,
                "attempt": attempts,
                "error": error,
                "timestamp": to_iso(now),
            })
        except DependencyError as e:
            logger.error(f"Failed to log delivery attempt for {entry_id}: {e}")

    def process_pending(self, now: Optional[datetime] = None) -> List[DeliveryResult]:
        """Deliver every pending entry whose next attempt is due (called by background worker)."""
        now = now or utcnow()
        # Entries still in backoff are excluded before the batch limit applies
        due = self.store.query(
            NOTIFICATION_QUEUE,
            [
                ("status", "==", DeliveryStatus.PENDING.value),
                ("nextAttemptAt", "<=", to_iso(now)),
            ],
            limit=BATCH_SIZE,
        )

        results = []
        for doc in due:
            try:
                results.append(self.deliver(doc.id, doc.data, now))
            except Exception as e:
                logger.error(f"Error processing notification {doc.id}: {e}", exc_info=True)
        return results

    def start(self):
        """Start the delivery worker."""
        if self._running:
            logger.warning("Notification service is already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker_loop, daemon=True)
        self._thread.start()
        logger.info("Notification service started")

    def stop(self):
        """Stop the delivery worker."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Notification service stopped")

    def _worker_loop(self):
        while self._running:
            try:
                self.process_pending()
            except Exception as e:
                logger.error(f"Error in notification worker loop: {e}", exc_info=True)
            if self._stop_event.wait(self.poll_seconds):
                break
