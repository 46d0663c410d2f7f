"""
Tests for the HTTP relay: device registry, child poll/claim endpoints,
status reporting and guardian dispatch error mapping.
"""

import pytest
from fastapi.testclient import TestClient

from safeguard.config import Timings
from safeguard.main import app, dispatcher, relay

DEVICE = "kid-ipad-01"


def _reset():
    relay.store.clear()
    dispatcher.timings = Timings(
        registration_wait_seconds=0.01,
        online_confirm_timeout_seconds=0.05,
        offline_confirm_timeout_seconds=0.05,
        translator_timeout_seconds=0.05,
    )


@pytest.fixture
def client():
    _reset()
    with TestClient(app) as c:
        yield c


def _register(client, device_id=DEVICE, **extra):
    return client.post("/devices/heartbeat", json={"device_id": device_id, "name": "Kid iPad", **extra})


# ── Devices ────────────────────────────────────────────────────────────

def test_heartbeat_registers_device(client):
    resp = _register(client, push_token="apns-token")
    assert resp.status_code == 200
    assert resp.json()["device_id"] == DEVICE

    data = client.get("/devices").json()
    assert data["total"] == 1
    device = data["devices"][0]
    assert device["device_id"] == DEVICE
    assert device["name"] == "Kid iPad"
    assert device["online"] is True


def test_heartbeat_requires_device_id(client):
    resp = client.post("/devices/heartbeat", json={"device_id": ""})
    assert resp.status_code == 422


# ── Guardian dispatch ──────────────────────────────────────────────────

def test_command_without_devices_503(client):
    resp = client.post("/commands", json={"action": "shutdown"})
    assert resp.status_code == 503


def test_command_unconfirmed_504_stays_pending(client):
    _register(client)
    resp = client.post("/commands", json={"action": "block", "apps": ["games"], "duration_minutes": 30})
    assert resp.status_code == 504

    commands = client.get(f"/commands/{DEVICE}").json()["commands"]
    assert len(commands) == 1
    assert commands[0]["command"] == "block apps:games duration:30"
    assert commands[0]["deviceID"] == DEVICE


def test_invalid_action_422(client):
    _register(client)
    resp = client.post("/commands", json={"action": "launch_rockets"})
    assert resp.status_code == 422


def test_oversized_duration_422(client):
    _register(client)
    resp = client.post("/commands", json={"action": "block", "apps": ["games"], "duration_minutes": 9999999999})
    assert resp.status_code == 422
    assert client.get(f"/commands/{DEVICE}").json()["commands"] == []


def test_unrecognised_text_422(client):
    _register(client)
    resp = client.post("/commands/text", json={"text": "gibberish"})
    assert resp.status_code == 422
    assert client.get(f"/commands/{DEVICE}").json()["commands"] == []


def test_keyword_text_is_sent(client):
    _register(client)
    resp = client.post("/commands/text", json={"text": "please allow everything"})
    # Nothing answers in this test, but the command was written.
    assert resp.status_code == 504
    commands = client.get(f"/commands/{DEVICE}").json()["commands"]
    assert [c["command"] for c in commands] == ["allow"]


# ── Child poll / claim ─────────────────────────────────────────────────

def test_claim_command_once(client):
    _register(client)
    client.post("/commands/text", json={"text": "shutdown"})
    command_id = client.get(f"/commands/{DEVICE}").json()["commands"][0]["commandID"]

    first = client.delete(f"/commands/{DEVICE}/{command_id}")
    assert first.status_code == 200
    assert first.json()["command_id"] == command_id

    second = client.delete(f"/commands/{DEVICE}/{command_id}")
    assert second.status_code == 404
    assert client.get(f"/commands/{DEVICE}").json()["commands"] == []


def test_post_confirmation(client):
    resp = client.post("/confirmations", json={"command_id": "c-1", "device_id": DEVICE, "action": "shutdown"})
    assert resp.status_code == 200
    assert resp.json()["confirmation_id"]


# ── Status ─────────────────────────────────────────────────────────────

def test_status_round_trip(client):
    resp = client.post("/status", json={"device_id": DEVICE, "message": "Apps blocked indefinitely: games"})
    assert resp.status_code == 200

    data = client.get(f"/status/{DEVICE}").json()
    assert data["message"] == "Apps blocked indefinitely: games"
    assert data["restrictions_active"] is True

    client.post("/status", json={"device_id": DEVICE, "message": "All restrictions removed - device unlocked"})
    assert client.get(f"/status/{DEVICE}").json()["restrictions_active"] is False


def test_status_unknown_device_404(client):
    resp = client.get("/status/nobody")
    assert resp.status_code == 404
