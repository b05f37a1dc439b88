from flask import Flask, request, jsonify
import asyncio
import logging
import time
from threading import Thread
from typing import Optional

import config
from alerts import AlertDispatcher, LoggingAlertSink, RecordingAlertSink
from ble_device import PairingInput
from log_sink import setup_logging
from registry import ConnectionRegistry, UnknownBeaconError
from transport import Transport, TransportError

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Tracker state, owned by the event loop thread
registry: Optional[ConnectionRegistry] = None
alert_sink: Optional[RecordingAlertSink] = None

# Event loop for async operations
loop = None
loop_thread = None


def start_event_loop():
    """Run the asyncio event loop in a separate thread"""
    asyncio.set_event_loop(loop)
    loop.run_forever()


def run_async(coro):
    """Run an async coroutine from sync context"""
    if loop is None:
        coro.close()
        raise RuntimeError("Tracker not started")
    future = asyncio.run_coroutine_threadsafe(coro, loop)
    return future.result(timeout=config.SERVER_CONFIG["request_timeout_s"])


async def _call(fn, *args):
    """Run a plain function on the loop thread."""
    return fn(*args)


def init_tracker(transport: Optional[Transport] = None,
                 tracking: Optional[config.TrackingConfig] = None):
    """
    Start the loop thread and build the registry inside it.

    Args:
        transport: BLE transport (BleakTransport if omitted)
        tracking: Tracking parameters (module config if omitted)
    """
    global loop, loop_thread, registry, alert_sink
    if loop_thread is None:
        loop = asyncio.new_event_loop()
        loop_thread = Thread(target=start_event_loop, daemon=True)
        loop_thread.start()

    if transport is None:
        from ble_transport import BleakTransport
        transport = BleakTransport()

    alert_sink = RecordingAlertSink(forward=LoggingAlertSink())

    async def build():
        tracker = ConnectionRegistry(transport, AlertDispatcher(alert_sink), tracking=tracking)
        tracker.start()
        return tracker

    registry = run_async(build())
    return registry


def shutdown_tracker():
    global registry
    if registry is not None and loop is not None:
        run_async(registry.close())
    registry = None


def _pairing_from_request(data) -> PairingInput:
    if data.get('tag'):
        return PairingInput.from_tag(data['tag'])
    identifier = data.get('identifier')
    if not identifier:
        raise ValueError("tag or identifier required")
    return PairingInput(identifier, bool(data.get('reconnect', False)))


@app.route('/')
def home():
    return jsonify({
        "status": "Tether proximity tracker is running",
        "tracker_started": registry is not None,
        "endpoints": [
            "/beacons", "/beacons/scan", "/beacons/<name>", "/beacons/<name>/track",
            "/beacons/<name>/label", "/beacons/<name>/command",
            "/beacons/disconnect", "/alerts",
        ],
        "commands": sorted(config.COMMAND_BYTES),
    })


@app.route('/beacons/scan', methods=['POST'])
def beacons_scan():
    """Scan for the beacon a tag belongs to"""
    try:
        data = request.get_json(silent=True) or {}
        try:
            pairing = _pairing_from_request(data)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        run_async(registry.scan(pairing))
        return jsonify({
            "status": "scanning",
            "identifier": pairing.identifier,
            "reconnect": pairing.is_reconnect,
            "timestamp": time.time(),
        })
    except TransportError as e:
        return jsonify({"error": str(e)}), 503
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/beacons', methods=['GET'])
def beacons_list():
    try:
        beacons = run_async(registry.status())
        return jsonify({
            "beacons": [b.to_dict() for b in beacons],
            "count": len(beacons),
        })
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/beacons/<name>', methods=['GET'])
def beacon_detail(name):
    try:
        def detail():
            record = registry.get(name)
            result = record.status().to_dict()
            result["pairing_identifier"] = record.identity.pairing_identifier
            result["notification_history"] = list(record.session.notification_history)[-10:]
            return result

        return jsonify(run_async(_call(detail)))
    except UnknownBeaconError:
        return jsonify({"error": "Beacon not found"}), 404
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/beacons/<name>/track', methods=['POST'])
def beacon_track(name):
    try:
        run_async(_call(registry.start_tracking, name))
        return jsonify({"status": "tracking", "name": name})
    except UnknownBeaconError:
        return jsonify({"error": "Beacon not found"}), 404
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/beacons/<name>/label', methods=['POST'])
def beacon_label(name):
    try:
        data = request.get_json(silent=True) or {}
        label = data.get('label')
        if not label:
            return jsonify({"error": "label required"}), 400
        run_async(_call(registry.set_label, name, label))
        return jsonify({"status": "success", "name": name, "label": label})
    except UnknownBeaconError:
        return jsonify({"error": "Beacon not found"}), 404
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/beacons/<name>/command', methods=['POST'])
def beacon_command(name):
    """Write a hardware command (emergency_start, power_off, ...) to a bracelet"""
    try:
        data = request.get_json(silent=True) or {}
        command = data.get('command')
        if command not in config.COMMAND_BYTES:
            return jsonify({"error": f"Unknown command: {command}"}), 400
        run_async(_call(registry.send_command, name, command))
        return jsonify({
            "status": "sent",
            "name": name,
            "command": command,
            "timestamp": time.time(),
        })
    except UnknownBeaconError:
        return jsonify({"error": "Beacon not found"}), 404
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/beacons/disconnect', methods=['POST'])
def beacons_disconnect():
    try:
        count = len(run_async(registry.status()))
        run_async(registry.disconnect_all())
        return jsonify({"status": "disconnected", "count": count})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/alerts', methods=['GET'])
def alerts_list():
    alerts = alert_sink.outstanding() if alert_sink else []
    return jsonify({
        "alerts": [a.to_dict() for a in alerts],
        "count": len(alerts),
    })


if __name__ == '__main__':
    setup_logging()
    init_tracker()
    try:
        app.run(host=config.SERVER_CONFIG["host"], port=config.SERVER_CONFIG["port"],
                debug=config.SERVER_CONFIG["debug"], use_reloader=False)
    finally:
        shutdown_tracker()
