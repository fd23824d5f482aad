"""Device authentication: API key hashes and HMAC payload signatures."""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
import secrets
from typing import Any, Dict, Optional, Tuple

from fastapi.security import APIKeyHeader

from document_store import DocumentStore
from models import DEVICES, Device, DeviceType, SignatureMode

logger = logging.getLogger(__name__)

# Header names for device authentication
API_KEY_HEADER = "X-API-Key"
SIGNATURE_HEADER = "X-Signature"

api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)

# Body fields covered by the signature, in serialization order
SIGNED_FIELDS = ("deviceId", "deviceType", "data", "timestamp")

_HEX_DIGEST = re.compile(r"^[0-9a-fA-F]{64}$")


def hash_api_key(api_key: str) -> str:
    """One-way SHA-256 hex digest of an API key."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    """Generate a new device API key."""
    return secrets.token_urlsafe(32)


def canonical_payload(body: Dict[str, Any]) -> str:
    """
    Serialize the signed part of a webhook body.

    Keys are emitted in a fixed order, absent keys are omitted and the JSON is
    compact with non-ASCII characters left unescaped.
    """
    signed = {key: body[key] for key in SIGNED_FIELDS if key in body}
    return json.dumps(signed, separators=(",", ":"), ensure_ascii=False)


def sign_payload(payload: str, secret: str) -> str:
    """HMAC-SHA256 hex signature of a canonical payload."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def _decode_signature(signature: str) -> Optional[bytes]:
    """Decode a hex or base64 signature; None if it is neither."""
    signature = signature.strip()
    if _HEX_DIGEST.match(signature):
        return bytes.fromhex(signature)
    try:
        return base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return None


def verify_api_key(device: Device, presented_key: Optional[str]) -> bool:
    """
    Check a presented API key against the device's stored hash.

    Args:
        device: The device record
        presented_key: Key sent in the X-API-Key header

    Returns:
        True if the key hashes to the stored value, False otherwise
    """
    if not presented_key or not isinstance(device.api_key_hash, str) or not device.api_key_hash:
        return False
    presented_hash = hash_api_key(presented_key).encode("ascii")
    try:
        stored_hash = device.api_key_hash.strip().lower().encode("ascii")
    except UnicodeEncodeError:
        logger.error(f"Device {device.device_id} has a malformed API key hash")
        return False
    return hmac.compare_digest(presented_hash, stored_hash)


def verify_signature(payload: str, presented_signature: Optional[str], shared_secret: Optional[str]) -> bool:
    """
    Verify an HMAC-SHA256 signature over a canonical payload.

    Args:
        payload: Canonical serialized request body
        presented_signature: Hex or base64 signature from the X-Signature header
        shared_secret: The device's shared secret

    Returns:
        True if the signature matches. Malformed signatures return False.
    """
    if not presented_signature or not shared_secret:
        return False
    try:
        presented = _decode_signature(presented_signature)
        if presented is None:
            return False
        expected = hmac.new(
            shared_secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256
        ).digest()
        return hmac.compare_digest(presented, expected)
    except (TypeError, ValueError, UnicodeError) as e:
        logger.debug(f"Signature verification failed: {e}")
        return False


def provision_device(
    store: DocumentStore,
    device_id: str,
    device_type: DeviceType,
    warehouse_id: str,
    shelf_id: Optional[str] = None,
    with_secret: bool = False,
    signature_mode: SignatureMode = SignatureMode.OPTIONAL,
    battery_level: Optional[float] = None,
) -> Tuple[str, Optional[str]]:
    """
    Create a device document with fresh credentials.

    The API key is returned once and only its hash is stored.

    Returns:
        Tuple of (api_key, shared_secret or None)
    """
    if signature_mode == SignatureMode.REQUIRED and not with_secret:
        raise ValueError("A device that must sign payloads needs a shared secret")

    api_key = generate_api_key()
    secret = secrets.token_hex(32) if with_secret else None
    document = {
        "deviceType": device_type.value,
        "warehouseId": warehouse_id,
        "shelfId": shelf_id,
        "apiKeyHash": hash_api_key(api_key),
        "signatureMode": signature_mode.value,
        "status": None,
        "lastHeartbeat": None,
    }
    if secret:
        document["secretKey"] = secret
    if battery_level is not None:
        document["batteryLevel"] = battery_level
    store.put(DEVICES, device_id, document)
    logger.info(f"Provisioned {device_type.value} device {device_id} in warehouse {warehouse_id}")
    return api_key, secret
