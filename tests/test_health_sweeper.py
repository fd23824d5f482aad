"""Tests for the scheduled device health sweep."""
from datetime import datetime, timedelta, timezone

import pytest

from alert_pipeline import AlertPipeline
from document_store import MemoryDocumentStore
from health_sweeper import DeviceHealthSweeper
from models import ALERTS, DEVICES, to_iso

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def put_device(store, device_id, minutes_ago=None, status="online", battery=None):
    doc = {
        "deviceType": "weight",
        "warehouseId": "wh-1",
        "shelfId": "shelf-1",
        "status": status,
        "lastHeartbeat": to_iso(NOW - timedelta(minutes=minutes_ago)) if minutes_ago is not None else None,
    }
    if battery is not None:
        doc["batteryLevel"] = battery
    store.put(DEVICES, device_id, doc)


def alerts_of(store, alert_type):
    return [d for d in store.query(ALERTS) if d.data["type"] == alert_type]


@pytest.fixture
def sweeper(store):
    return DeviceHealthSweeper(store, AlertPipeline(store), stale_minutes=15)


def test_stale_device_goes_offline_once(store, sweeper):
    put_device(store, "dev-1", minutes_ago=20)

    first = sweeper.run_once(now=NOW)
    second = sweeper.run_once(now=NOW + timedelta(minutes=15))

    assert first.marked_offline == ["dev-1"]
    assert len(first.alerts_created) == 1
    assert second.marked_offline == []
    assert second.alerts_created == []
    assert store.get(DEVICES, "dev-1")["status"] == "offline"

    failures = alerts_of(store, "sensor_failure")
    assert len(failures) == 1
    assert failures[0].data["severity"] == "warning"
    assert failures[0].data["deviceId"] == "dev-1"


def test_recent_heartbeat_stays_online(store, sweeper):
    put_device(store, "dev-1", minutes_ago=5)

    result = sweeper.run_once(now=NOW)

    assert result.devices_scanned == 1
    assert result.marked_offline == []
    assert store.get(DEVICES, "dev-1")["status"] == "online"
    assert store.query(ALERTS) == []


def test_missing_heartbeat_counts_as_stale(store, sweeper):
    put_device(store, "dev-1", minutes_ago=None, status=None)

    result = sweeper.run_once(now=NOW)

    assert result.marked_offline == ["dev-1"]
    assert len(alerts_of(store, "sensor_failure")) == 1


def test_low_battery_raised_once_across_sweeps(store, sweeper):
    put_device(store, "dev-1", minutes_ago=1, battery=15)

    sweeper.run_once(now=NOW)
    sweeper.run_once(now=NOW + timedelta(minutes=5))

    batteries = alerts_of(store, "low_battery")
    assert len(batteries) == 1
    assert batteries[0].data["severity"] == "warning"


def test_reconnected_device_can_raise_a_new_offline_alert(store, sweeper):
    put_device(store, "dev-1", minutes_ago=20)
    sweeper.run_once(now=NOW)
    failure = alerts_of(store, "sensor_failure")[0]
    sweeper.pipeline.alert_store.resolve(failure.id, "operator-1")

    # Device comes back, then goes quiet again
    store.update(DEVICES, "dev-1", {"status": "online", "lastHeartbeat": to_iso(NOW)})
    sweeper.run_once(now=NOW + timedelta(minutes=30))

    assert len(alerts_of(store, "sensor_failure")) == 2


class CountingStore(MemoryDocumentStore):
    def __init__(self):
        super().__init__()
        self.device_batches = []

    def _apply_batch(self, ops):
        if all(op.collection == DEVICES for op in ops):
            self.device_batches.append(len(ops))
        return super()._apply_batch(ops)


def test_presence_flips_are_one_batch():
    store = CountingStore()
    for device_id in ("dev-1", "dev-2", "dev-3"):
        put_device(store, device_id, minutes_ago=30)
    put_device(store, "dev-4", minutes_ago=1)
    store.device_batches.clear()

    result = DeviceHealthSweeper(store, AlertPipeline(store)).run_once(now=NOW)

    assert sorted(result.marked_offline) == ["dev-1", "dev-2", "dev-3"]
    assert store.device_batches == [3]


def test_invalid_schedule_is_rejected(store):
    with pytest.raises(ValueError):
        DeviceHealthSweeper(store, AlertPipeline(store), cron_schedule="every so often")


def test_next_run_follows_cron(sweeper):
    assert sweeper.next_run_after(datetime(2024, 5, 1, 12, 7, tzinfo=timezone.utc)) == datetime(
        2024, 5, 1, 12, 15, tzinfo=timezone.utc
    )


class LaggingScanStore(MemoryDocumentStore):
    """Device scans return the snapshot taken before a heartbeat arrived."""

    def __init__(self):
        super().__init__()
        self.snapshot = None

    def query(self, collection, filters=(), limit=None):
        if collection == DEVICES and self.snapshot is not None:
            return self.snapshot
        return super().query(collection, filters, limit)


def test_heartbeat_landing_after_the_scan_keeps_device_online():
    store = LaggingScanStore()
    put_device(store, "dev-1", minutes_ago=20)
    put_device(store, "dev-2", minutes_ago=20)
    store.snapshot = store.query(DEVICES)
    store.update(DEVICES, "dev-1", {"status": "online", "lastHeartbeat": to_iso(NOW - timedelta(seconds=5))})

    result = DeviceHealthSweeper(store, AlertPipeline(store), stale_minutes=15).run_once(now=NOW)

    assert result.marked_offline == ["dev-2"]
    assert store.get(DEVICES, "dev-1")["status"] == "online"
    assert "offlineSince" not in store.get(DEVICES, "dev-1")
    failures = alerts_of(store, "sensor_failure")
    assert [a.data["deviceId"] for a in failures] == ["dev-2"]
