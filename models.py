"""Document and domain models for warehouse devices, inventory and alerts."""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, JSON, String
from sqlalchemy.sql import func

from database import Base


# Collection names in the document store
DEVICES = "devices"
INVENTORY = "inventory"
ALERTS = "alerts"
USERS = "users"
SHELVES = "shelves"
PRODUCTS = "products"
SENSOR_DATA = "sensor-data"
SENSOR_HISTORY = "sensor-history"
NOTIFICATION_QUEUE = "notification-queue"
NOTIFICATIONS = "notifications"
NOTIFICATION_LOGS = "notification-logs"
AUDIT_LOGS = "audit-logs"
WAREHOUSES = "warehouses"


class Document(Base):
    """A JSON document stored under (collection, id)."""
    __tablename__ = "documents"

    collection = Column(String(100), primary_key=True)
    doc_id = Column(String(200), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class DeviceType(str, enum.Enum):
    """Kinds of warehouse sensors."""
    WEIGHT = "weight"
    TEMPERATURE = "temperature"
    RFID = "rfid"
    BARCODE = "barcode"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["DeviceType"]:
        """Normalise a device type, accepting legacy names like ``weight_sensor``."""
        if not value:
            return None
        normalized = str(value).strip().lower()
        if normalized.endswith("_sensor"):
            normalized = normalized[: -len("_sensor")]
        try:
            return cls(normalized)
        except ValueError:
            return None


class DeviceStatus(str, enum.Enum):
    """Device presence."""
    ONLINE = "online"
    OFFLINE = "offline"


class SignatureMode(str, enum.Enum):
    """Whether a device must sign its payloads."""
    OPTIONAL = "optional"
    REQUIRED = "required"


class AlertType(str, enum.Enum):
    """Alert conditions raised by the detector."""
    LOW_STOCK = "low_stock"
    SENSOR_FAILURE = "sensor_failure"
    TEMPERATURE_ALERT = "temperature_alert"
    WEIGHT_MISMATCH = "weight_mismatch"
    LOW_BATTERY = "low_battery"
    OUT_OF_STOCK = "out_of_stock"


class AlertSeverity(str, enum.Enum):
    """Alert severity levels."""
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class UserRole(str, enum.Enum):
    """Warehouse user roles."""
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    VIEWER = "viewer"


class NotificationChannel(str, enum.Enum):
    """Outbound delivery channels."""
    EMAIL = "email"
    SMS = "sms"


class DeliveryStatus(str, enum.Enum):
    """Lifecycle of a queued notification."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as ISO-8601 UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO string, epoch milliseconds or datetime into aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Device:
    """A provisioned warehouse sensor."""
    device_id: str
    device_type: Optional[DeviceType] = None
    warehouse_id: Optional[str] = None
    shelf_id: Optional[str] = None
    api_key_hash: Optional[str] = None
    secret_key: Optional[str] = None
    signature_mode: SignatureMode = SignatureMode.OPTIONAL
    status: Optional[DeviceStatus] = None
    battery_level: Optional[float] = None
    last_heartbeat: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Device":
        status = data.get("status")
        try:
            signature_mode = SignatureMode(data.get("signatureMode") or SignatureMode.OPTIONAL.value)
        except ValueError:
            signature_mode = SignatureMode.REQUIRED
        return cls(
            device_id=doc_id,
            device_type=DeviceType.parse(data.get("deviceType")),
            warehouse_id=data.get("warehouseId"),
            shelf_id=data.get("shelfId"),
            api_key_hash=data.get("apiKeyHash"),
            secret_key=data.get("secretKey"),
            signature_mode=signature_mode,
            status=DeviceStatus(status) if status in ("online", "offline") else None,
            battery_level=_as_float(data.get("batteryLevel")),
            last_heartbeat=parse_timestamp(data.get("lastHeartbeat")),
        )


@dataclass
class InventoryRecord:
    """Stock of one product on one shelf."""
    product_id: str
    warehouse_id: str
    shelf_id: Optional[str] = None
    quantity: int = 0
    min_stock_level: Optional[int] = None
    max_stock_level: Optional[int] = None

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "InventoryRecord":
        min_level = data.get("minStockLevel")
        max_level = data.get("maxStockLevel")
        return cls(
            product_id=data.get("productId"),
            warehouse_id=data.get("warehouseId"),
            shelf_id=data.get("shelfId"),
            quantity=int(data.get("quantity") or 0),
            min_stock_level=int(min_level) if min_level is not None else None,
            max_stock_level=int(max_level) if max_level is not None else None,
        )


@dataclass
class Alert:
    """A persisted alert."""
    id: str
    type: AlertType
    severity: AlertSeverity
    warehouse_id: str
    message: str
    shelf_id: Optional[str] = None
    device_id: Optional[str] = None
    product_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    created_at: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Alert":
        return cls(
            id=doc_id,
            type=AlertType(data["type"]),
            severity=AlertSeverity(data["severity"]),
            warehouse_id=data.get("warehouseId"),
            message=data.get("message", ""),
            shelf_id=data.get("shelfId"),
            device_id=data.get("deviceId"),
            product_id=data.get("productId"),
            details=dict(data.get("details") or {}),
            resolved=bool(data.get("resolved", False)),
            created_at=data.get("createdAt"),
            resolved_by=data.get("resolvedBy"),
            resolved_at=data.get("resolvedAt"),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "warehouseId": self.warehouse_id,
            "shelfId": self.shelf_id,
            "deviceId": self.device_id,
            "productId": self.product_id,
            "message": self.message,
            "details": self.details,
            "resolved": self.resolved,
            "createdAt": self.created_at,
            "resolvedBy": self.resolved_by,
            "resolvedAt": self.resolved_at,
        }


@dataclass
class NotificationRecipient:
    """A resolved (user, address, channel) target for one alert."""
    user_id: str
    address: str
    channel: NotificationChannel


@dataclass
class LowStockItem:
    """One row of the daily low stock digest."""
    product_id: str
    name: str
    sku: str
    current_stock: int
    min_stock: int
    warehouse: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "currentStock": self.current_stock,
            "minStock": self.min_stock,
            "warehouse": self.warehouse,
        }
