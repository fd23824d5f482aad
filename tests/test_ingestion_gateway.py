"""Tests for the /iot/webhook ingestion endpoint and gateway state machine."""
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from auth import API_KEY_HEADER, SIGNATURE_HEADER, canonical_payload, sign_payload
from config import Settings
from document_store import MemoryDocumentStore
from error_handler import DependencyError
from ingestion_gateway import IngestionGateway, IngestionState
from main import create_app
from metrics import metrics
from models import ALERTS, DEVICES, NOTIFICATION_QUEUE, SENSOR_DATA, SENSOR_HISTORY, SHELVES, SignatureMode
from rate_limiter import RateLimiter

WEBHOOK = "/iot/webhook"


def body_for(device_id, data=None, **extra):
    body = {"deviceId": device_id, "deviceType": "weight", "data": data or {"weight": 42.5}}
    body.update(extra)
    return body


def post(client, body, api_key=None, signature=None):
    headers = {}
    if api_key is not None:
        headers[API_KEY_HEADER] = api_key
    if signature is not None:
        headers[SIGNATURE_HEADER] = signature
    return client.post(WEBHOOK, json=body, headers=headers)


def test_accepted_sample_round_trips_through_latest_slot(client, store, weight_device):
    body = body_for("weight-1", {"weight": 42.5, "unit": "kg"}, timestamp="2024-05-01T10:00:00Z")

    response = post(client, body, weight_device["api_key"])

    assert response.status_code == 200
    ack = response.json()
    assert ack["success"] is True
    assert ack["message"] == "Data received successfully"
    assert ack["deviceId"] == "weight-1"
    assert datetime.fromisoformat(ack["timestamp"]).tzinfo is not None

    latest = store.get(SENSOR_DATA, "weight-1")
    assert latest["data"] == {"weight": 42.5, "unit": "kg"}
    assert latest["timestamp"] == "2024-05-01T10:00:00Z"
    assert latest["receivedAt"] == ack["timestamp"]
    assert len(store.query(SENSOR_HISTORY)) == 1

    device = store.get(DEVICES, "weight-1")
    assert device["status"] == "online"
    assert device["lastHeartbeat"] == ack["timestamp"]


def test_server_timestamp_used_when_client_sends_none(client, store, weight_device):
    response = post(client, body_for("weight-1"), weight_device["api_key"])
    assert store.get(SENSOR_DATA, "weight-1")["timestamp"] == response.json()["timestamp"]


def test_redelivery_overwrites_latest_and_appends_history(client, store, weight_device):
    post(client, body_for("weight-1", {"weight": 10}), weight_device["api_key"])
    post(client, body_for("weight-1", {"weight": 11}), weight_device["api_key"])

    assert store.get(SENSOR_DATA, "weight-1")["data"] == {"weight": 11}
    assert len(store.query(SENSOR_HISTORY, [("deviceId", "==", "weight-1")])) == 2


def test_battery_in_sample_updates_device(client, store, weight_device):
    post(client, body_for("weight-1", {"weight": 10, "batteryLevel": 64}), weight_device["api_key"])
    assert store.get(DEVICES, "weight-1")["batteryLevel"] == 64


def test_missing_fields(client, weight_device):
    assert post(client, {"deviceId": "weight-1"}, weight_device["api_key"]).status_code == 400
    assert post(client, {"data": {"weight": 1}}, weight_device["api_key"]).status_code == 400
    response = post(client, {"deviceId": "weight-1", "data": None}, weight_device["api_key"])
    assert response.status_code == 400
    assert "error" in response.json()


def test_non_string_device_id_is_a_client_error(client, store):
    for device_id in ({"id": "x"}, ["weight-1"], 42, ""):
        response = post(client, {"deviceId": device_id, "data": {}}, "some-key")
        assert response.status_code == 400
        assert "error" in response.json()
    assert store.query(SENSOR_DATA) == []
    assert metrics.get_stats()["messages"]["rejections_by_reason"] == {"invalid_body": 4}


def test_non_object_data_and_body_are_client_errors(store):
    gateway = IngestionGateway(store, RateLimiter())
    assert gateway.ingest({"deviceId": "weight-1", "data": [1, 2]}, "key").status_code == 400
    assert gateway.ingest(["not", "an", "object"], "key").status_code == 400
    assert gateway.ingest(None, "key").body == {"error": "Request body must be a JSON object"}


def test_unknown_device_ids_do_not_grow_per_device_metrics(client):
    for index in range(200):
        post(client, body_for(f"bogus-{index}"))
        post(client, body_for(f"ghost-{index}"), "some-key")

    stats = metrics.get_stats()
    assert stats["messages"]["total_received"] == 400
    assert stats["messages"]["unattributed"] == 400
    assert stats["authentication"]["total_failures"] == 200
    assert dict(metrics.messages_received) == {}
    assert dict(metrics.messages_rejected) == {}
    assert dict(metrics.auth_failures) == {}


def test_malformed_json_is_a_client_error(client, weight_device):
    response = client.post(
        WEBHOOK,
        content=b"{not json",
        headers={API_KEY_HEADER: weight_device["api_key"], "Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_missing_api_key(client, weight_device):
    response = post(client, body_for("weight-1"))
    assert response.status_code == 401
    assert response.json() == {"error": "API key required"}


def test_unknown_device(client):
    assert post(client, body_for("ghost"), "some-key").status_code == 404


def test_wrong_api_key_is_rejected_without_persisting(client, store, weight_device):
    response = post(client, body_for("weight-1"), weight_device["api_key"][:-1] + "x")

    assert response.status_code == 403
    assert response.json() == {"error": "Invalid API key"}
    assert store.get(SENSOR_DATA, "weight-1") is None
    assert store.get(DEVICES, "weight-1")["status"] is None
    assert metrics.get_stats()["authentication"]["by_device"] == {"weight-1": 1}


def test_valid_signature_is_accepted(client, signed_device):
    body = body_for("temp-1", {"temperature": 4.0}, deviceType="temperature", timestamp="2024-05-01T10:00:00Z")
    signature = sign_payload(canonical_payload(body), signed_device["secret"])

    assert post(client, body, signed_device["api_key"], signature).status_code == 200


def test_invalid_or_malformed_signature_is_rejected(client, store, signed_device):
    body = body_for("temp-1", {"temperature": 4.0}, deviceType="temperature")
    wrong = sign_payload(canonical_payload(body), "not-the-secret")

    assert post(client, body, signed_device["api_key"], wrong).status_code == 403
    assert post(client, body, signed_device["api_key"], "%%%not-hex-or-base64").status_code == 403
    assert store.get(SENSOR_DATA, "temp-1") is None


def test_optional_mode_accepts_unsigned_requests(client, signed_device):
    body = body_for("temp-1", {"temperature": 4.0}, deviceType="temperature")
    assert post(client, body, signed_device["api_key"]).status_code == 200


def test_required_mode_rejects_unsigned_requests(client, strict_device):
    body = body_for("temp-2", {"temperature": 4.0}, deviceType="temperature")

    response = post(client, body, strict_device["api_key"])
    assert response.status_code == 403
    assert response.json() == {"error": "Signature required"}

    signature = sign_payload(canonical_payload(body), strict_device["secret"])
    assert post(client, body, strict_device["api_key"], signature).status_code == 200


def test_default_signature_mode_applies_to_devices_without_one(store, signed_device):
    doc = store.get(DEVICES, "temp-1")
    del doc["signatureMode"]
    store.put(DEVICES, "temp-1", doc)
    gateway = IngestionGateway(store, RateLimiter(), default_signature_mode=SignatureMode.REQUIRED)

    result = gateway.ingest(body_for("temp-1"), signed_device["api_key"])

    assert result.status_code == 403
    assert result.rejected_from == IngestionState.DEVICE_RESOLVED


def test_rate_limited_device_gets_429(store, weight_device):
    app = create_app(Settings(store_backend="memory", background_jobs_enabled=False, rate_limit_max_requests=2), store)
    with TestClient(app) as client:
        codes = [post(client, body_for("weight-1"), weight_device["api_key"]).status_code for _ in range(3)]

    assert codes == [200, 200, 429]
    rate_limiting = metrics.get_stats()["rate_limiting"]
    assert rate_limiting["total_hits"] == 1
    assert rate_limiting["by_device"] == {}


def test_rate_limit_applies_before_device_lookup(store):
    gateway = IngestionGateway(store, RateLimiter(max_requests=1))
    assert gateway.ingest(body_for("ghost"), "key").status_code == 404
    result = gateway.ingest(body_for("ghost"), "key")
    assert result.status_code == 429
    assert result.rejected_from == IngestionState.UNAUTHENTICATED


def test_other_methods_are_not_allowed(client):
    for method in ("get", "put", "patch", "delete"):
        response = getattr(client, method)(WEBHOOK)
        assert response.status_code == 405
        assert response.headers["allow"] == "POST, OPTIONS"


def test_cors_preflight_returns_no_content(client):
    response = client.options(
        WEBHOOK,
        headers={
            "Origin": "https://dashboard.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "X-API-Key, X-Signature, Content-Type",
        },
    )
    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == "https://dashboard.example.com"
    assert "POST" in response.headers["access-control-allow-methods"]
    assert response.content == b""


def test_plain_options_returns_no_content(client):
    assert client.options(WEBHOOK).status_code == 204


class BrokenStore(MemoryDocumentStore):
    def get(self, collection, doc_id):
        raise DependencyError("store offline")


def test_store_failure_returns_500():
    gateway = IngestionGateway(BrokenStore(), RateLimiter())
    result = gateway.ingest(body_for("weight-1"), "key")

    assert result.status_code == 500
    assert result.state == IngestionState.REJECTED
    assert result.body == {"error": "Internal server error"}


def test_acknowledged_state(store, weight_device):
    fixed = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
    gateway = IngestionGateway(store, RateLimiter(), clock=lambda: fixed)

    result = gateway.ingest(body_for("weight-1"), weight_device["api_key"])

    assert result.accepted
    assert result.body["timestamp"] == "2024-05-01T09:30:00+00:00"
    assert store.query(SENSOR_HISTORY)[0].id.startswith("weight-1:1714555800000:")


def test_weight_reading_updates_shelf_and_raises_capacity_alert(client, store, weight_device):
    post(client, body_for("weight-1", {"weight": 80}), weight_device["api_key"])
    assert store.get(SHELVES, "shelf-a1")["currentWeight"] == 80
    assert store.query(ALERTS) == []

    post(client, body_for("weight-1", {"weight": 130}), weight_device["api_key"])
    post(client, body_for("weight-1", {"weight": 140}), weight_device["api_key"])

    alerts = store.query(ALERTS)
    assert len(alerts) == 1
    assert alerts[0].data["type"] == "weight_mismatch"
    assert alerts[0].data["deviceId"] == "weight-1"


def test_temperature_excursion_alerts_admins(client, store, signed_device, warehouse_users):
    body = body_for("temp-1", {"temperature": 35.0, "humidity": 50}, deviceType="temperature")

    assert post(client, body, signed_device["api_key"]).status_code == 200
    assert post(client, body, signed_device["api_key"]).status_code == 200

    alerts = store.query(ALERTS)
    assert [(a.data["type"], a.data["severity"]) for a in alerts] == [("temperature_alert", "critical")]
    channels = sorted(d.data["channel"] for d in store.query(NOTIFICATION_QUEUE))
    assert channels == ["email", "email", "sms", "sms"]
