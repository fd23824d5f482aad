"""Device telemetry ingestion: authenticate, rate limit, persist, acknowledge."""
import enum
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from auth import canonical_payload, verify_api_key, verify_signature
from document_store import DocumentStore
from error_handler import ClientError, DependencyError
from metrics import metrics
from models import (
    DEVICES, SENSOR_DATA, SENSOR_HISTORY,
    Device, SignatureMode, to_iso, utcnow,
)
from detector import battery_from_sample
from rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class IngestionState(str, enum.Enum):
    """Progress of one webhook request."""
    UNAUTHENTICATED = "unauthenticated"
    RATE_CHECKED = "rate_checked"
    DEVICE_RESOLVED = "device_resolved"
    PERSISTED = "persisted"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"


class WebhookBody(BaseModel):
    """Telemetry webhook body."""
    device_id: str = Field(..., alias="deviceId", min_length=1)
    device_type: Optional[str] = Field(None, alias="deviceType")
    data: Dict[str, Any]
    timestamp: Optional[Union[str, int, float]] = None


@dataclass
class IngestionResult:
    """HTTP status and JSON body for a webhook request."""
    status_code: int
    body: Dict[str, Any]
    state: IngestionState
    rejected_from: Optional[IngestionState] = None

    @property
    def accepted(self) -> bool:
        return self.state == IngestionState.ACKNOWLEDGED


class IngestionGateway:
    """
    Handles one telemetry webhook call at a time; safe to call concurrently.

    Every guard runs before any write, so a rejected request leaves no trace in
    the store. The sample, its history entry and the device presence update are
    committed as one batch.
    """

    def __init__(
        self,
        store: DocumentStore,
        rate_limiter: RateLimiter,
        default_signature_mode: SignatureMode = SignatureMode.OPTIONAL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.default_signature_mode = SignatureMode(default_signature_mode)
        self._clock = clock

    def ingest(
        self,
        body: Any,
        api_key: Optional[str],
        signature: Optional[str] = None,
    ) -> IngestionResult:
        """
        Process a webhook body.

        Args:
            body: Parsed JSON body, None if it could not be parsed
            api_key: Value of the X-API-Key header
            signature: Value of the X-Signature header

        Returns:
            IngestionResult with the HTTP status, response body and final state
        """
        start_time = time.time()
        state = IngestionState.UNAUTHENTICATED
        device_id = None
        # Per-device metrics are only keyed by ids that exist in the store
        resolved_id = None

        try:
            payload = self._validate(body)
            device_id = payload.device_id

            if not api_key:
                metrics.record_auth_failure(None)
                raise ClientError(401, "API key required", "missing_api_key")

            if not self.rate_limiter.allow(device_id):
                metrics.record_rate_limit_hit(None)
                raise ClientError(429, "Rate limit exceeded", "rate_limit_exceeded")
            state = IngestionState.RATE_CHECKED

            device_doc = self.store.get(DEVICES, device_id)
            if device_doc is None:
                raise ClientError(404, "Device not found", "unknown_device")
            device = Device.from_document(device_id, device_doc)
            resolved_id = device_id
            state = IngestionState.DEVICE_RESOLVED

            self._authenticate(device, device_doc, body, api_key, signature)

            ack_time = self._persist(device, payload, body)
            state = IngestionState.PERSISTED

        except ClientError as e:
            metrics.record_message_received(resolved_id)
            metrics.record_message_rejected(resolved_id, e.reason)
            logger.warning(f"Rejected telemetry from device {device_id}: {e.status_code} {e.message}")
            return IngestionResult(e.status_code, {"error": e.message}, IngestionState.REJECTED, state)
        except DependencyError as e:
            metrics.record_message_received(resolved_id)
            metrics.record_error("store_unavailable")
            logger.error(f"Store failure while ingesting telemetry from device {device_id}: {e}")
            return IngestionResult(500, {"error": "Internal server error"}, IngestionState.REJECTED, state)
        except Exception as e:
            metrics.record_message_received(resolved_id)
            metrics.record_error("internal_error")
            logger.error(f"Unexpected error ingesting telemetry from device {device_id}: {e}", exc_info=True)
            return IngestionResult(500, {"error": "Internal server error"}, IngestionState.REJECTED, state)

        metrics.record_message_received(device_id)
        metrics.record_message_accepted(device_id)
        metrics.record_processing_time((time.time() - start_time) * 1000)
        logger.info(f"Telemetry accepted from device {device_id}")
        return IngestionResult(
            200,
            {
                "success": True,
                "message": "Data received successfully",
                "deviceId": device_id,
                "timestamp": ack_time,
            },
            IngestionState.ACKNOWLEDGED,
        )

    def _validate(self, body: Any) -> WebhookBody:
        """Parse the body into a WebhookBody, raising a 400 ClientError when it does not fit."""
        if body is None:
            raise ClientError(400, "Request body must be a JSON object", "invalid_body")
        try:
            return WebhookBody.model_validate(body)
        except ValidationError as e:
            errors = e.errors()
            if any(error["type"] == "missing" for error in errors):
                raise ClientError(400, "Missing required fields: deviceId, data", "missing_fields") from None
            first = errors[0]
            location = ".".join(str(part) for part in first["loc"]) or "body"
            raise ClientError(400, f"Invalid {location}: {first['msg']}", "invalid_body") from None

    def signature_mode_for(self, device_doc: Dict[str, Any]) -> SignatureMode:
        """The device's own mode, or the configured default when it has none."""
        try:
            return SignatureMode(device_doc.get("signatureMode") or self.default_signature_mode)
        except ValueError:
            logger.error(f"Device has an unknown signatureMode {device_doc.get('signatureMode')!r}, requiring signatures")
            return SignatureMode.REQUIRED

    def _authenticate(
        self,
        device: Device,
        device_doc: Dict[str, Any],
        body: Dict[str, Any],
        api_key: str,
        signature: Optional[str],
    ) -> None:
        if not verify_api_key(device, api_key):
            metrics.record_auth_failure(device.device_id)
            raise ClientError(403, "Invalid API key", "invalid_api_key")

        mode = self.signature_mode_for(device_doc)
        if mode == SignatureMode.REQUIRED:
            if not signature:
                metrics.record_auth_failure(device.device_id)
                raise ClientError(403, "Signature required", "missing_signature")
            if not device.secret_key:
                logger.error(f"Device {device.device_id} requires signatures but has no shared secret")
                metrics.record_auth_failure(device.device_id)
                raise ClientError(403, "Invalid signature", "invalid_signature")

        # Optional mode only verifies when both a signature and a secret are present
        if signature and device.secret_key:
            if not verify_signature(canonical_payload(body), signature, device.secret_key):
                metrics.record_auth_failure(device.device_id)
                raise ClientError(403, "Invalid signature", "invalid_signature")

    def _persist(self, device: Device, payload: WebhookBody, body: Dict[str, Any]) -> str:
        """Write latest sample, history entry and presence. Returns the server timestamp."""
        now = self._clock()
        received_at = to_iso(now)
        data = body["data"]
        timestamp = payload.timestamp or received_at

        sample = {
            "deviceId": device.device_id,
            "deviceType": payload.device_type or (device.device_type.value if device.device_type else None),
            "data": data,
            "timestamp": timestamp,
            "receivedAt": received_at,
        }
        history_id = f"{device.device_id}:{int(now.timestamp() * 1000)}:{uuid.uuid4().hex[:8]}"

        presence = {
            "status": "online",
            "lastHeartbeat": received_at,
        }
        battery_level = battery_from_sample(data)
        if battery_level is not None:
            presence["batteryLevel"] = battery_level

        batch = self.store.batch()
        batch.update(DEVICES, device.device_id, presence)
        batch.set(SENSOR_DATA, device.device_id, sample)
        batch.set(SENSOR_HISTORY, history_id, sample)
        batch.commit()
        return received_at
