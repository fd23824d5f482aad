#!/usr/bin/env python3
"""
Warehouse sensor HTTP telemetry simulator.

- Posts weight or temperature readings to the gateway webhook
- Signs each body with the device secret when one is given
- Occasionally produces an out-of-range reading so alerts can be observed

Credentials come from ``python init_db.py``.
"""

import os
import random
import time
from datetime import datetime, timezone

import requests

from auth import API_KEY_HEADER, SIGNATURE_HEADER, canonical_payload, sign_payload


# ---------------------------------------------------------------------------
# Configuration (can be overridden via environment variables)
# ---------------------------------------------------------------------------
GATEWAY_URL = os.environ.get("GATEWAY_URL", "http://localhost:5000/iot/webhook")
DEVICE_ID = os.environ.get("DEVICE_ID", "weight-a1")
DEVICE_TYPE = os.environ.get("DEVICE_TYPE", "weight")
API_KEY = os.environ.get("DEVICE_API_KEY", "")
DEVICE_SECRET = os.environ.get("DEVICE_SECRET")

SEND_INTERVAL_SECONDS = int(os.environ.get("SEND_INTERVAL_SECONDS", "30"))
# Chance that a reading is pushed out of its normal range
ANOMALY_RATE = float(os.environ.get("ANOMALY_RATE", "0.05"))


def build_payload(battery: float) -> dict:
    """Build a telemetry body for the configured device type."""
    anomaly = random.random() < ANOMALY_RATE

    if DEVICE_TYPE == "temperature":
        data = {
            "temperature": round(random.uniform(31.0, 36.0) if anomaly else random.uniform(2.0, 8.0), 1),
            "humidity": round(random.uniform(40.0, 70.0), 1),
        }
    else:
        data = {
            "weight": round(random.uniform(520.0, 600.0) if anomaly else random.uniform(150.0, 450.0), 2),
        }
    data["batteryLevel"] = round(battery, 1)

    return {
        "deviceId": DEVICE_ID,
        "deviceType": DEVICE_TYPE,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def send(payload: dict) -> requests.Response:
    headers = {API_KEY_HEADER: API_KEY}
    if DEVICE_SECRET:
        headers[SIGNATURE_HEADER] = sign_payload(canonical_payload(payload), DEVICE_SECRET)
    return requests.post(GATEWAY_URL, json=payload, headers=headers, timeout=10)


def main():
    if not API_KEY:
        raise SystemExit("DEVICE_API_KEY is required (see init_db.py output)")

    print(f"Warehouse sensor simulator starting for device: {DEVICE_ID} ({DEVICE_TYPE})")
    print(f"Gateway:  {GATEWAY_URL}")
    print(f"Signed:   {'yes' if DEVICE_SECRET else 'no'}")
    print(f"Interval: {SEND_INTERVAL_SECONDS} seconds\n")

    battery = 100.0
    try:
        while True:
            payload = build_payload(battery)
            now = datetime.now(timezone.utc).isoformat()
            try:
                response = send(payload)
                print(f"[{now}] HTTP {response.status_code}: {response.text}")
            except requests.RequestException as e:
                print(f"[{now}] FAILED to send: {e}")

            battery = max(battery - random.uniform(0.0, 0.5), 0.0)
            time.sleep(SEND_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        print("Warehouse sensor simulator interrupted, shutting down...")


if __name__ == "__main__":
    main()
