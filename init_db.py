"""Database initialization script to create sample warehouse data."""
import logging

from auth import provision_device
from config import settings
from document_store import DocumentStore, create_document_store
from models import (
    DEVICES, INVENTORY, PRODUCTS, SHELVES, USERS, WAREHOUSES,
    DeviceType, SignatureMode, UserRole, to_iso, utcnow,
)

logger = logging.getLogger(__name__)

WAREHOUSE_ID = "wh-main"
WAREHOUSE_NAME = "Main Distribution Center"

USERS_SEED = [
    ("user-admin", "Alice Admin", UserRole.ADMIN, "admin@shelfsense.io", "+15550000001"),
    ("user-manager", "Marco Manager", UserRole.MANAGER, "manager@shelfsense.io", "+15550000002"),
    ("user-staff", "Sam Staff", UserRole.STAFF, "staff@shelfsense.io", None),
    ("user-viewer", "Val Viewer", UserRole.VIEWER, "viewer@shelfsense.io", None),
]

SHELVES_SEED = [
    ("shelf-a1", "A1", "Zone A", 500.0),
    ("shelf-a2", "A2", "Zone A", 500.0),
    ("shelf-c1", "C1", "Cold Room", 250.0),
]

PRODUCTS_SEED = [
    ("prod-rice", "Basmati Rice 5kg", "SKU-RICE-5", 10),
    ("prod-oil", "Sunflower Oil 1L", "SKU-OIL-1", 12),
    ("prod-milk", "UHT Milk 1L", "SKU-MILK-1", 20),
]

INVENTORY_SEED = [
    ("inv-rice-a1", "prod-rice", "shelf-a1", 40),
    ("inv-oil-a2", "prod-oil", "shelf-a2", 30),
    ("inv-milk-c1", "prod-milk", "shelf-c1", 60),
]

DEVICES_SEED = [
    ("weight-a1", DeviceType.WEIGHT, "shelf-a1", False, SignatureMode.OPTIONAL),
    ("weight-a2", DeviceType.WEIGHT, "shelf-a2", False, SignatureMode.OPTIONAL),
    ("temp-c1", DeviceType.TEMPERATURE, "shelf-c1", True, SignatureMode.REQUIRED),
]


def seed(store: DocumentStore) -> dict:
    """
    Create a demo warehouse with users, shelves, products, inventory and devices.

    Existing devices are left alone so their credentials stay valid.

    Returns:
        Mapping of newly provisioned device id to {"apiKey", "secret"}
    """
    now = to_iso(utcnow())

    store.put(WAREHOUSES, WAREHOUSE_ID, {"name": WAREHOUSE_NAME, "createdAt": now})

    for user_id, name, role, email, phone in USERS_SEED:
        store.put(USERS, user_id, {
            "name": name,
            "role": role.value,
            "email": email,
            "phone": phone,
            "warehouseId": WAREHOUSE_ID,
            "createdAt": now,
        })

    for shelf_id, code, zone, max_weight in SHELVES_SEED:
        store.put(SHELVES, shelf_id, {
            "code": code,
            "zone": zone,
            "warehouseId": WAREHOUSE_ID,
            "maxWeight": max_weight,
            "currentWeight": 0.0,
            "createdAt": now,
        })

    for product_id, name, sku, min_stock in PRODUCTS_SEED:
        store.put(PRODUCTS, product_id, {
            "name": name,
            "sku": sku,
            "warehouseId": WAREHOUSE_ID,
            "minStockLevel": min_stock,
            "createdAt": now,
        })

    for inventory_id, product_id, shelf_id, quantity in INVENTORY_SEED:
        if store.get(INVENTORY, inventory_id) is None:
            store.put(INVENTORY, inventory_id, {
                "productId": product_id,
                "shelfId": shelf_id,
                "warehouseId": WAREHOUSE_ID,
                "quantity": quantity,
                "updatedBy": "seed",
                "updatedAt": now,
            })

    credentials = {}
    for device_id, device_type, shelf_id, with_secret, mode in DEVICES_SEED:
        if store.get(DEVICES, device_id) is not None:
            continue
        api_key, secret = provision_device(
            store,
            device_id,
            device_type,
            WAREHOUSE_ID,
            shelf_id=shelf_id,
            with_secret=with_secret,
            signature_mode=mode,
            battery_level=100.0,
        )
        credentials[device_id] = {"apiKey": api_key, "secret": secret}
    return credentials


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    store = create_document_store(settings.store_backend)
    try:
        credentials = seed(store)
    finally:
        store.close()

    print(f"Seeded warehouse {WAREHOUSE_ID}")
    if not credentials:
        print("All devices already provisioned; no new credentials issued.")
    for device_id, creds in credentials.items():
        print(f"  {device_id}: X-API-Key={creds['apiKey']}")
        if creds["secret"]:
            print(f"  {' ' * len(device_id)}  secret={creds['secret']}")
    print("Store these credentials now; API keys are only kept as hashes.")


if __name__ == "__main__":
    main()
