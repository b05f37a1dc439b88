"""
Tests for the connection registry: identity slots, pairing and teardown.
"""

import asyncio

import pytest

import config
from alerts import AlertDispatcher, RecordingAlertSink
from ble_device import ConnectionState, PairingInput
from registry import ConnectionRegistry, UnknownBeaconError
from fakes import FAR_RSSI, PAIRING_UUID, FakeTransport, wait_until

OTHER_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"


def make_registry(tracking, **kwargs):
    transport = FakeTransport()
    sink = RecordingAlertSink()
    registry = ConnectionRegistry(transport, AlertDispatcher(sink), tracking=tracking, **kwargs)
    return transport, sink, registry


class TestIdentity:
    def test_unpaired_advertisement_ignored(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            registry.start()
            await registry.scan(PairingInput(PAIRING_UUID))

            assert transport.advertise("X", "XX:01", service_uuids=(OTHER_UUID,)) is None
            assert len(registry) == 0
            assert transport.ops("connect") == []
            await registry.close()

        asyncio.run(scenario())

    def test_indexes_are_stable_and_unique(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            registry.start()
            await registry.scan(PairingInput(PAIRING_UUID))

            a = transport.advertise("A", "AA:01")
            b = transport.advertise("B", "BB:01")
            assert (a.index, b.index) == (0, 1)

            # Same name again, even under a new handle, keeps its slot
            again = transport.advertise("A", "AA:02")
            assert again is a
            assert len(registry) == 2
            assert [i.name for i in registry.identities] == ["A", "B"]
            await registry.close()

        asyncio.run(scenario())

    def test_views_stay_in_step(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            registry.start()
            await registry.scan(PairingInput(PAIRING_UUID))
            for name in ("A", "B", "C"):
                transport.advertise(name, f"{name}{name}:01")
            await wait_until(lambda: all(registry.battery_reported))

            assert len(registry.identities) == len(registry.battery_reported) == 3
            assert len(registry.tracking_started) == 3
            assert [s.name for s in registry.snapshot()] == ["A", "B", "C"]
            await registry.close()

        asyncio.run(scenario())

    def test_unknown_name_raises(self, tracking):
        transport, sink, registry = make_registry(tracking)
        with pytest.raises(UnknownBeaconError):
            registry.get("nobody")
        with pytest.raises(KeyError):
            registry.start_tracking("nobody")
        with pytest.raises(UnknownBeaconError):
            registry.set_label("nobody", "Nick")

    def test_every_failed_pairing_alerts(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            transport.fail_connect.add("AA:01")
            registry.start()

            for attempt in (1, 2):
                await registry.scan(PairingInput(PAIRING_UUID))
                transport.advertise("A", "AA:01")
                await wait_until(lambda: "A" not in registry)
                await wait_until(lambda: len(sink.history) == attempt)

            assert len(transport.ops("connect", "AA:01")) == 2
            assert [a.title for a in sink.history] == ["Failed to connect to A"] * 2
            assert len(sink.outstanding()) == 1

            # A successful pairing afterwards withdraws the failure alert
            transport.fail_connect.clear()
            await registry.scan(PairingInput(PAIRING_UUID))
            transport.advertise("A", "AA:01")
            await wait_until(lambda: "A" in registry and registry.session("A").ready)
            assert sink.outstanding() == []
            assert registry.dispatcher.dedup.outstanding() == []
            await registry.close()

        asyncio.run(scenario())

    def test_scan_uses_pairing_service(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            await registry.scan(PairingInput(PAIRING_UUID.upper()))
            assert transport.ops("scan") == [("scan", None, PAIRING_UUID)]
            # Advertised UUIDs match regardless of case
            assert transport.advertise("A", "AA:01") is not None
            await registry.close()

        asyncio.run(scenario())


class TestUserActions:
    def test_label_shows_in_status(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            registry.start()
            await registry.scan(PairingInput(PAIRING_UUID))
            transport.advertise("A", "AA:01")

            registry.set_label("A", "Nick")
            status = (await registry.status())[0]
            assert status.label == "Nick"
            assert status.to_dict()["name"] == "A"

            registry.set_label("A", "")
            assert registry.get("A").identity.label is None
            await registry.close()

        asyncio.run(scenario())

    def test_command_written_to_identify(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            registry.start()
            await registry.scan(PairingInput(PAIRING_UUID))
            transport.advertise("A", "AA:01")
            await wait_until(lambda: registry.session("A").ready)

            registry.send_command("A", "emergency_start")
            value = config.COMMAND_BYTES["emergency_start"]
            await wait_until(lambda: value in transport.writes("AA:01"))

            with pytest.raises(KeyError):
                registry.send_command("A", "self_destruct")
            await registry.close()

        asyncio.run(scenario())

    def test_manual_tracking(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking, auto_track=False)
            registry.start()
            await registry.scan(PairingInput(PAIRING_UUID))
            transport.advertise("A", "AA:01")
            session = registry.session("A")
            await wait_until(lambda: session.ready and session.sampling.tx_power is not None)
            await asyncio.sleep(0.05)
            assert transport.ops("rssi") == []

            registry.start_tracking("A")
            await wait_until(lambda: session.batches_completed >= 1)
            await wait_until(lambda: registry.get("A").tracking_started)
            await registry.close()

        asyncio.run(scenario())

    def test_reconnect_tag_reconnects_known_beacon(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            registry.start()
            await registry.scan(PairingInput(PAIRING_UUID))
            transport.advertise("A", "AA:01")
            session = registry.session("A")
            await wait_until(lambda: session.ready)

            # Link drops without the transport noticing; the user taps the tag again
            transport.connected.discard("AA:01")
            session.connection_state = ConnectionState.DISCONNECTED
            await registry.scan(PairingInput.from_tag("R" + PAIRING_UUID))
            await wait_until(lambda: session.ready)

            assert len(transport.ops("connect", "AA:01")) == 2
            assert registry.get("A").identity.index == 0
            await registry.close()

        asyncio.run(scenario())


class TestDisconnectAll:
    def test_cancels_sampling_before_disconnect(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            registry.start()
            await registry.scan(PairingInput(PAIRING_UUID))
            transport.rssi["AA:01"] = FAR_RSSI
            transport.rssi["BB:01"] = FAR_RSSI
            transport.advertise("A", "AA:01")
            transport.advertise("B", "BB:01")
            await wait_until(lambda: registry.session("A").batches_completed >= 3)
            await wait_until(lambda: registry.session("B").batches_completed >= 3)
            sessions = [registry.session("A"), registry.session("B")]

            assert len(sink.outstanding()) == 2

            await registry.disconnect_all()

            assert len(registry) == 0
            assert registry.identities == []
            assert registry.battery_reported == []
            assert all(s.connection_state is ConnectionState.DISCONNECTED for s in sessions)
            assert transport.ops("stop_scan")
            # Outstanding alerts are withdrawn with their beacons
            assert sink.outstanding() == []

            # No sample is requested on a link after it was torn down
            await asyncio.sleep(0.05)
            for handle in ("AA:01", "BB:01"):
                ops = [c[0] for c in transport.calls if c[1] == handle]
                assert ops.count("disconnect") == 1
                assert "rssi" not in ops[ops.index("disconnect"):]
            await registry.close()

        asyncio.run(scenario())

    def test_rescan_after_disconnect_starts_fresh(self, tracking):
        async def scenario():
            transport, sink, registry = make_registry(tracking)
            registry.start()
            await registry.scan(PairingInput(PAIRING_UUID))
            transport.advertise("A", "AA:01")
            await registry.disconnect_all()

            # Pairings were dropped too
            assert transport.advertise("A", "AA:01") is None

            await registry.scan(PairingInput(PAIRING_UUID))
            identity = transport.advertise("A", "AA:01")
            assert identity.index == 1
            await wait_until(lambda: registry.session("A").ready)
            await registry.close()

        asyncio.run(scenario())
