"""Tests for the operator API: alerts, device health, service health and metrics."""
from datetime import timedelta

from auth import API_KEY_HEADER
from detector import AlertCandidate
from models import DEVICES, AlertSeverity, AlertType, to_iso, utcnow

ALERTS_URL = "/api/v1/alerts"
HEALTH_URL = "/api/v1/devices/health"


def raise_alert(app, warehouse_id="wh-1", shelf_id="shelf-a1", alert_type=AlertType.WEIGHT_MISMATCH):
    candidate = AlertCandidate(
        type=alert_type,
        severity=AlertSeverity.WARNING,
        warehouse_id=warehouse_id,
        message="Shelf capacity exceeded",
        shelf_id=shelf_id,
    )
    return app.state.pipeline.alert_store.create(candidate)


def test_list_and_filter_alerts(app, client):
    first = raise_alert(app)
    raise_alert(app, warehouse_id="wh-2", shelf_id="shelf-b1")
    app.state.pipeline.alert_store.resolve(first.id, "operator-1")

    assert len(client.get(ALERTS_URL).json()) == 2

    in_wh1 = client.get(ALERTS_URL, params={"warehouse_id": "wh-1"}).json()
    assert [a["id"] for a in in_wh1] == [first.id]
    assert in_wh1[0]["shelf_id"] == "shelf-a1"
    assert in_wh1[0]["type"] == "weight_mismatch"

    open_alerts = client.get(ALERTS_URL, params={"resolved": "false"}).json()
    assert [a["warehouse_id"] for a in open_alerts] == ["wh-2"]

    assert client.get(ALERTS_URL, params={"limit": 0}).status_code == 422


def test_get_alert(app, client):
    alert = raise_alert(app)

    response = client.get(f"{ALERTS_URL}/{alert.id}")
    assert response.status_code == 200
    assert response.json()["message"] == "Shelf capacity exceeded"
    assert response.json()["resolved"] is False

    assert client.get(f"{ALERTS_URL}/missing").status_code == 404


def test_resolve_alert(app, client):
    alert = raise_alert(app)

    response = client.post(f"{ALERTS_URL}/{alert.id}/resolve", json={"resolved_by": "operator-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["resolved"] is True
    assert body["resolved_by"] == "operator-1"
    assert body["resolved_at"]

    # Resolving again keeps the first resolution
    again = client.post(f"{ALERTS_URL}/{alert.id}/resolve", json={"resolved_by": "operator-2"}).json()
    assert again["resolved_by"] == "operator-1"

    assert client.post(f"{ALERTS_URL}/missing/resolve", json={"resolved_by": "x"}).status_code == 404
    assert client.post(f"{ALERTS_URL}/{alert.id}/resolve", json={}).status_code == 422


def test_device_health_summary(client, store, weight_device, signed_device):
    store.update(DEVICES, "temp-1", {
        "status": "online",
        "lastHeartbeat": to_iso(utcnow() - timedelta(minutes=1)),
        "batteryLevel": 12,
    })

    summary = client.get(HEALTH_URL).json()

    assert summary["total"] == 2
    assert summary["online"] == 1
    assert summary["unknown"] == 1
    assert summary["stale"] == 1
    assert summary["low_battery"] == 1
    by_id = {row["device_id"]: row for row in summary["devices"]}
    assert by_id["weight-1"]["stale"] is True
    assert by_id["temp-1"]["battery_level"] == 12

    assert client.get(HEALTH_URL, params={"warehouse_id": "wh-9"}).json()["total"] == 0


def test_manual_sweep_marks_stale_devices_offline(client, store, weight_device):
    store.update(DEVICES, "weight-1", {
        "status": "online",
        "lastHeartbeat": to_iso(utcnow() - timedelta(hours=2)),
    })

    result = client.post(f"{HEALTH_URL}/sweep").json()

    assert result["devices_scanned"] == 1
    assert result["marked_offline"] == ["weight-1"]
    assert len(result["alerts_created"]) == 1
    assert store.get(DEVICES, "weight-1")["status"] == "offline"


def test_service_health_and_root(client):
    assert client.get("/").json()["status"] == "running"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["store_backend"] == "memory"


def test_metrics_track_ingestion(client, weight_device):
    client.post(
        "/iot/webhook",
        json={"deviceId": "weight-1", "deviceType": "weight", "data": {"weight": 5}},
        headers={API_KEY_HEADER: weight_device["api_key"]},
    )

    stats = client.get("/metrics").json()
    assert stats["messages"]["total_accepted"] == 1

    device_stats = client.get("/metrics/device/weight-1").json()
    assert device_stats["messages_accepted"] == 1
    assert client.get("/metrics/device/ghost").status_code == 404
