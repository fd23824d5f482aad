"""Shared fixtures: in-memory store, wired app and provisioned devices."""
import os

# Must be set before config is imported so main's module-level app stays in memory
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("BACKGROUND_JOBS_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from alert_pipeline import AlertPipeline
from auth import provision_device
from config import Settings
from document_store import MemoryDocumentStore
from main import create_app
from metrics import metrics
from models import PRODUCTS, SHELVES, USERS, DeviceType, SignatureMode

WAREHOUSE = "wh-1"


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def pipeline(store):
    pipeline = AlertPipeline(store)
    pipeline.register_watchers()
    yield pipeline
    pipeline.unregister_watchers()


def make_settings(**overrides) -> Settings:
    values = {"store_backend": "memory", "background_jobs_enabled": False}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def app(store):
    return create_app(make_settings(), store)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def shelf(store):
    store.put(SHELVES, "shelf-a1", {
        "code": "A1",
        "warehouseId": WAREHOUSE,
        "maxWeight": 100.0,
        "currentWeight": 0.0,
    })
    return "shelf-a1"


@pytest.fixture
def product(store):
    store.put(PRODUCTS, "prod-rice", {
        "name": "Basmati Rice",
        "warehouseId": WAREHOUSE,
        "minStockLevel": 5,
    })
    return "prod-rice"


@pytest.fixture
def weight_device(store, shelf):
    api_key, _ = provision_device(store, "weight-1", DeviceType.WEIGHT, WAREHOUSE, shelf_id=shelf)
    return {"device_id": "weight-1", "api_key": api_key}


@pytest.fixture
def signed_device(store):
    api_key, secret = provision_device(
        store, "temp-1", DeviceType.TEMPERATURE, WAREHOUSE, with_secret=True
    )
    return {"device_id": "temp-1", "api_key": api_key, "secret": secret}


@pytest.fixture
def strict_device(store):
    api_key, secret = provision_device(
        store, "temp-2", DeviceType.TEMPERATURE, WAREHOUSE,
        with_secret=True, signature_mode=SignatureMode.REQUIRED,
    )
    return {"device_id": "temp-2", "api_key": api_key, "secret": secret}


def add_user(store, user_id, role, email=None, phone=None, warehouse_id=WAREHOUSE):
    store.put(USERS, user_id, {
        "name": user_id,
        "role": role,
        "email": email,
        "phone": phone,
        "warehouseId": warehouse_id,
    })


@pytest.fixture
def warehouse_users(store):
    """Two admins with email and phone, three staff with email only, one viewer."""
    add_user(store, "admin-1", "admin", "admin1@example.com", "+15550001")
    add_user(store, "admin-2", "admin", "admin2@example.com", "+15550002")
    for index in range(1, 4):
        add_user(store, f"staff-{index}", "staff", f"staff{index}@example.com")
    add_user(store, "viewer-1", "viewer", "viewer@example.com")
    add_user(store, "other-admin", "admin", "other@example.com", "+15559999", warehouse_id="wh-2")
