"""
Tests for the Flask control surface, backed by FakeTransport on the loop thread.
"""

import time

import app as app_module
import config
from fakes import FAR_RSSI, PAIRING_UUID


def advertise(client, name, handle):
    """Deliver an advertisement on the loop thread, as the transport would."""
    return app_module.run_async(app_module._call(client.transport.advertise, name, handle))


def wait_for_state(client, name, key, value, timeout=2.0):
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f'/beacons/{name}').get_json()
        if data.get(key) == value:
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"{name}: {key} never became {value!r} (last: {data})")
        time.sleep(0.01)


def paired(client, name="A", handle="AA:01"):
    response = client.post('/beacons/scan', json={"tag": "N" + PAIRING_UUID})
    assert response.status_code == 200
    advertise(client, name, handle)
    return wait_for_state(client, name, "connection_state", "ready")


def test_home(client):
    data = client.get('/').get_json()
    assert data["tracker_started"] is True
    assert "power_off" in data["commands"]


def test_scan_requires_tag_or_identifier(client):
    assert client.post('/beacons/scan', json={}).status_code == 400
    assert client.post('/beacons/scan', json={"tag": "X" + PAIRING_UUID}).status_code == 400
    assert client.post('/beacons/scan', json={"tag": "N"}).status_code == 400


def test_scan_with_tag(client):
    response = client.post('/beacons/scan', json={"tag": "R" + PAIRING_UUID})
    data = response.get_json()
    assert response.status_code == 200
    assert data["identifier"] == PAIRING_UUID
    assert data["reconnect"] is True
    assert client.transport.ops("scan") == [("scan", None, PAIRING_UUID)]


def test_scan_with_identifier(client):
    response = client.post('/beacons/scan', json={"identifier": PAIRING_UUID})
    assert response.status_code == 200
    assert response.get_json()["reconnect"] is False


def test_beacons_list(client):
    assert client.get('/beacons').get_json() == {"beacons": [], "count": 0}
    paired(client, "A", "AA:01")
    advertise(client, "B", "BB:01")

    data = client.get('/beacons').get_json()
    assert data["count"] == 2
    assert [b["name"] for b in data["beacons"]] == ["A", "B"]
    assert [b["index"] for b in data["beacons"]] == [0, 1]


def test_beacon_detail(client):
    paired(client)
    data = wait_for_state(client, "A", "battery_reported", True)
    assert data["battery_level"] == 87
    assert data["pairing_identifier"] == PAIRING_UUID
    data = wait_for_state(client, "A", "tracking_started", True)
    assert data["range_state"] == "in_range"
    assert data["distance_text"] == "7.94 cm"


def test_unknown_beacon_is_404(client):
    assert client.get('/beacons/nobody').status_code == 404
    assert client.post('/beacons/nobody/track').status_code == 404
    assert client.post('/beacons/nobody/label', json={"label": "Nick"}).status_code == 404
    response = client.post('/beacons/nobody/command', json={"command": "power_off"})
    assert response.status_code == 404


def test_label(client):
    paired(client)
    assert client.post('/beacons/A/label', json={}).status_code == 400
    response = client.post('/beacons/A/label', json={"label": "Nick"})
    assert response.status_code == 200
    assert client.get('/beacons/A').get_json()["label"] == "Nick"


def test_command(client):
    paired(client)
    assert client.post('/beacons/A/command', json={"command": "explode"}).status_code == 400

    response = client.post('/beacons/A/command', json={"command": "emergency_start"})
    assert response.status_code == 200
    value = config.COMMAND_BYTES["emergency_start"]
    deadline = time.monotonic() + 2.0
    while value not in client.transport.writes("AA:01"):
        assert time.monotonic() < deadline
        time.sleep(0.01)


def test_alerts_and_disconnect(client):
    client.transport.rssi["AA:01"] = FAR_RSSI
    paired(client)
    wait_for_state(client, "A", "range_state", "out_of_range")

    alerts = client.get('/alerts').get_json()
    assert alerts["count"] == 1
    assert alerts["alerts"][0]["title"] == "A is out of range!"
    assert alerts["alerts"][0]["target"] == "A:range"

    response = client.post('/beacons/disconnect')
    assert response.get_json() == {"status": "disconnected", "count": 1}
    assert client.get('/beacons').get_json()["count"] == 0
    assert client.get('/alerts').get_json()["count"] == 0
    assert client.get('/beacons/A').status_code == 404
