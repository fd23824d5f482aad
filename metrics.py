"""Metrics and monitoring for ingestion and alerting."""
import threading
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collects metrics for the ingestion and alert pipeline.
    Tracks message counts, rejections, alerts, notification failures and sweeps.
    """

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        """Clear all counters."""
        with self._lock:
            # Message counters
            self.messages_received = defaultdict(int)  # {device_id: count}
            self.messages_accepted = defaultdict(int)  # {device_id: count}
            self.messages_rejected = defaultdict(int)  # {device_id: count}
            self.rejections_by_reason = defaultdict(int)  # {reason: count}

            # Errors
            self.errors_by_type = defaultdict(int)  # {error_type: count}

            # Guards
            self.rate_limit_hits = defaultdict(int)  # {device_id: count}
            self.auth_failures = defaultdict(int)  # {device_id: count}
            # Requests whose device id was never found in the store, counted in aggregate only
            self.unattributed = defaultdict(int)  # {counter: count}

            # Timing
            self.processing_times = []

            # Alerts
            self.alerts_created = defaultdict(int)  # {alert_type: count}
            self.alerts_suppressed = defaultdict(int)  # {alert_type: count}

            # Notifications
            self.notifications_enqueued = defaultdict(int)  # {channel: count}
            self.notification_failures = defaultdict(int)  # {channel: count}

            # Sweeps
            self.sweeps_run = 0
            self.devices_marked_offline = 0
            self.last_sweep_at: Optional[str] = None

            # Low stock digests
            self.digests_run = 0
            self.digest_items = 0
            self.last_digest_at: Optional[str] = None

            self.device_last_seen = {}  # {device_id: timestamp}
            self.start_time = time.time()

    def record_message_received(self, device_id: Optional[str]):
        """Record a webhook request. None means the device was never resolved."""
        with self._lock:
            if device_id is None:
                self.unattributed["received"] += 1
            else:
                self.messages_received[device_id] += 1

    def record_message_accepted(self, device_id: str):
        """Record that a sample was persisted."""
        with self._lock:
            self.messages_accepted[device_id] += 1
            self.device_last_seen[device_id] = time.time()

    def record_message_rejected(self, device_id: Optional[str], reason: str):
        """Record that a request was rejected."""
        with self._lock:
            if device_id is None:
                self.unattributed["rejected"] += 1
            else:
                self.messages_rejected[device_id] += 1
            self.rejections_by_reason[reason] += 1
        logger.debug(f"Message rejected for device {device_id}: {reason}")

    def record_error(self, error_type: str):
        """Record an internal error."""
        with self._lock:
            self.errors_by_type[error_type] += 1

    def record_rate_limit_hit(self, device_id: Optional[str]):
        with self._lock:
            if device_id is None:
                self.unattributed["rate_limit_hits"] += 1
            else:
                self.rate_limit_hits[device_id] += 1

    def record_auth_failure(self, device_id: Optional[str]):
        with self._lock:
            if device_id is None:
                self.unattributed["auth_failures"] += 1
            else:
                self.auth_failures[device_id] += 1

    def record_processing_time(self, duration_ms: float):
        """Record request processing time."""
        with self._lock:
            self.processing_times.append(duration_ms)
            # Keep only last 1000 processing times
            if len(self.processing_times) > 1000:
                self.processing_times = self.processing_times[-1000:]

    def record_alert_created(self, alert_type: str):
        with self._lock:
            self.alerts_created[alert_type] += 1

    def record_alert_suppressed(self, alert_type: str):
        with self._lock:
            self.alerts_suppressed[alert_type] += 1

    def record_notification_enqueued(self, channel: str):
        with self._lock:
            self.notifications_enqueued[channel] += 1

    def record_notification_failed(self, channel: str):
        with self._lock:
            self.notification_failures[channel] += 1
            self.errors_by_type["notification_failed"] += 1

    def record_sweep(self, marked_offline: int):
        with self._lock:
            self.sweeps_run += 1
            self.devices_marked_offline += marked_offline
            self.last_sweep_at = datetime.now(timezone.utc).isoformat()

    def record_digest(self, low_stock_items: int):
        with self._lock:
            self.digests_run += 1
            self.digest_items += low_stock_items
            self.last_digest_at = datetime.now(timezone.utc).isoformat()

    def get_stats(self) -> Dict:
        """Get overall statistics."""
        with self._lock:
            total_received = sum(self.messages_received.values()) + self.unattributed["received"]
            total_accepted = sum(self.messages_accepted.values())
            total_rejected = sum(self.messages_rejected.values()) + self.unattributed["rejected"]

            avg_processing_time = (
                sum(self.processing_times) / len(self.processing_times)
                if self.processing_times else 0
            )

            return {
                "uptime_seconds": int(time.time() - self.start_time),
                "messages": {
                    "total_received": total_received,
                    "total_accepted": total_accepted,
                    "total_rejected": total_rejected,
                    "rejections_by_reason": dict(self.rejections_by_reason),
                    "unattributed": self.unattributed["received"],
                    "success_rate": (
                        total_accepted / total_received * 100
                        if total_received > 0 else 0
                    ),
                },
                "errors": {
                    "total": sum(self.errors_by_type.values()),
                    "by_type": dict(self.errors_by_type),
                },
                "rate_limiting": {
                    "total_hits": sum(self.rate_limit_hits.values()) + self.unattributed["rate_limit_hits"],
                    "by_device": dict(self.rate_limit_hits),
                },
                "authentication": {
                    "total_failures": sum(self.auth_failures.values()) + self.unattributed["auth_failures"],
                    "by_device": dict(self.auth_failures),
                },
                "processing": {
                    "avg_time_ms": round(avg_processing_time, 2),
                    "samples": len(self.processing_times),
                },
                "alerts": {
                    "created": dict(self.alerts_created),
                    "suppressed": dict(self.alerts_suppressed),
                },
                "notifications": {
                    "enqueued": dict(self.notifications_enqueued),
                    "failed": dict(self.notification_failures),
                },
                "sweeps": {
                    "runs": self.sweeps_run,
                    "devices_marked_offline": self.devices_marked_offline,
                    "last_run_at": self.last_sweep_at,
                },
                "low_stock_digests": {
                    "runs": self.digests_run,
                    "items_reported": self.digest_items,
                    "last_run_at": self.last_digest_at,
                },
                "active_devices": len(self.device_last_seen),
            }

    def get_device_stats(self, device_id: str) -> Optional[Dict]:
        """Get statistics for a specific device."""
        with self._lock:
            if device_id not in self.messages_received:
                return None

            last_seen = self.device_last_seen.get(device_id)
            return {
                "device_id": device_id,
                "messages_received": self.messages_received.get(device_id, 0),
                "messages_accepted": self.messages_accepted.get(device_id, 0),
                "messages_rejected": self.messages_rejected.get(device_id, 0),
                "rate_limit_hits": self.rate_limit_hits.get(device_id, 0),
                "auth_failures": self.auth_failures.get(device_id, 0),
                "last_seen": datetime.fromtimestamp(last_seen, tz=timezone.utc).isoformat() if last_seen else None,
            }


# Global metrics collector instance
metrics = MetricsCollector()
