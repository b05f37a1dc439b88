"""
ConnectionRegistry: the table of tracked beacons.

Beacons are keyed by advertised name, so a bracelet that comes back under a
new transport handle lands in its old slot. Each slot is one BeaconRecord
bundling the identity, its session and the per-beacon flags; the registry
is the only writer of that table and applies session events from its inbox.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import config
from alerts import AlertDispatcher, ConditionKind
from beacon_session import BeaconSession, NotificationReceived, SessionEvent
from ble_device import Advertisement, BeaconIdentity, BeaconStatus, PairingInput
from transport import Transport, normalize_uuid

logger = logging.getLogger(__name__)


class UnknownBeaconError(KeyError):
    """No beacon with that name in the registry."""


@dataclass
class BeaconRecord:
    identity: BeaconIdentity
    session: BeaconSession
    battery_reported: bool = False
    tracking_started: bool = False

    def status(self) -> BeaconStatus:
        session = self.session
        return BeaconStatus(
            index=self.identity.index,
            name=self.identity.name,
            label=self.identity.label,
            connection_state=session.connection_state.value,
            range_state=session.range.state.value,
            worn_state=session.worn.state.value,
            battery_level=session.battery_level,
            distance_mm=session.distance_mm,
            distance_text=session.distance_text,
            tracking_started=self.tracking_started,
            battery_reported=self.battery_reported,
        )


class ConnectionRegistry:
    """
    Args:
        transport: BLE transport (listeners are installed on it)
        dispatcher: Alert dispatcher shared by all sessions
        tracking: Tracking parameters for new sessions
        auto_track: Sessions start sampling as soon as they are READY
        reconnect_delay: Delay between failed reconnect attempts
    """

    def __init__(self, transport: Transport, dispatcher: AlertDispatcher,
                 tracking: Optional[config.TrackingConfig] = None, auto_track: bool = True,
                 reconnect_delay: Optional[float] = None):
        self.transport = transport
        self.dispatcher = dispatcher
        self.tracking = tracking or config.TrackingConfig()
        self.auto_track = auto_track
        self.reconnect_delay = reconnect_delay

        self._records: Dict[str, BeaconRecord] = {}
        self._pairings: Dict[str, PairingInput] = {}
        self._next_index = 0
        self.inbox: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

        transport.set_listeners(
            on_advertisement=self.on_advertisement,
            on_notification=self._route_notification,
            on_disconnect=self._route_disconnect,
        )

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def identities(self) -> List[BeaconIdentity]:
        return [record.identity for record in self._records.values()]

    @property
    def battery_reported(self) -> List[bool]:
        return [record.battery_reported for record in self._records.values()]

    @property
    def tracking_started(self) -> List[bool]:
        return [record.tracking_started for record in self._records.values()]

    def __len__(self):
        return len(self._records)

    def __contains__(self, name):
        return name in self._records

    def get(self, name) -> BeaconRecord:
        try:
            return self._records[name]
        except KeyError:
            raise UnknownBeaconError(name) from None

    def session(self, name) -> BeaconSession:
        return self.get(name).session

    def snapshot(self) -> List[BeaconStatus]:
        return [record.status() for record in self._records.values()]

    async def status(self) -> List[BeaconStatus]:
        """snapshot() for callers outside the event loop (via run_coroutine_threadsafe)."""
        return self.snapshot()

    def _find_by_handle(self, handle) -> Optional[BeaconRecord]:
        for record in self._records.values():
            if record.identity.handle == handle or record.session.address == handle:
                return record
        return None

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def start(self):
        if self._worker is None:
            self._worker = asyncio.create_task(self.run(), name="registry")

    def post(self, event: SessionEvent):
        self.inbox.put_nowait(event)

    async def run(self):
        while True:
            event = await self.inbox.get()
            try:
                await self._apply(event)
            except Exception:
                logger.exception(f"[TRACK] Registry failed to apply {event}")

    async def _apply(self, event: SessionEvent):
        record = self._records.get(event.name)
        if record is None:
            logger.debug(f"[TRACK] Event for unknown beacon {event.name}: {event.kind}")
            return

        if event.kind == "connected":
            self.dispatcher.clear(record.identity, ConditionKind.CONNECT_FAILED)
        elif event.kind == "connect_failed":
            # No retry: forget the pairing too until its tag is scanned again
            del self._records[event.name]
            self._pairings.pop(normalize_uuid(record.identity.pairing_identifier), None)
            logger.warning(f"[TRACK] Removed {event.name}: failed to connect")
            self.dispatcher.on_connect_failed(record.identity)
            await record.session.shutdown()
        elif event.kind == "link_lost":
            record.session.reconnect()
        elif event.kind == "battery_reported":
            record.battery_reported = True
        elif event.kind == "tracking_started":
            record.tracking_started = True
        else:
            logger.warning(f"[TRACK] Unknown session event {event.kind}")

    # ------------------------------------------------------------------
    # Scanning and identity
    # ------------------------------------------------------------------

    async def scan(self, pairing: PairingInput):
        """Look for the beacon a tag was scanned for."""
        service = normalize_uuid(pairing.identifier)
        self._pairings[service] = pairing
        if pairing.is_reconnect:
            for record in self._records.values():
                if normalize_uuid(record.identity.pairing_identifier) == service:
                    logger.info(f"[TRACK] Reconnect tag for {record.identity.name}")
                    record.session.reconnect()
        await self.transport.scan(pairing.identifier)

    def _pairing_for(self, advertisement: Advertisement) -> Optional[PairingInput]:
        for uuid in advertisement.service_uuids:
            pairing = self._pairings.get(normalize_uuid(uuid))
            if pairing is not None:
                return pairing
        return None

    def on_advertisement(self, advertisement: Advertisement) -> Optional[BeaconIdentity]:
        """
        Handle one sighting: reuse the slot of a known name, else allocate one.

        Returns:
            The identity of the sighted beacon, None if it matches no pairing
        """
        record = self._records.get(advertisement.name)
        if record is not None:
            session = record.session
            if advertisement.handle != session.address or not session.ready:
                session.reconnect(advertisement.handle)
            return record.identity

        pairing = self._pairing_for(advertisement)
        if pairing is None:
            logger.debug(f"[BLE] Ignoring {advertisement.name}: no matching pairing")
            return None

        identity = BeaconIdentity(
            index=self._next_index,
            name=advertisement.name,
            pairing_identifier=pairing.identifier,
        )
        self._next_index += 1
        # A fresh attempt re-arms the failure alert left by an earlier one
        self.dispatcher.clear(identity, ConditionKind.CONNECT_FAILED)
        kwargs = {}
        if self.reconnect_delay is not None:
            kwargs["reconnect_delay"] = self.reconnect_delay
        session = BeaconSession(
            identity, pairing, advertisement.handle, self.transport, self.dispatcher,
            emit=self.post, tracking=self.tracking, auto_track=self.auto_track, **kwargs)
        self._records[identity.name] = BeaconRecord(identity, session)

        manufacturer = advertisement.manufacturer_data
        logger.info(
            f"[BLE] New beacon #{identity.index}: {identity.name} ({advertisement.handle}), "
            f"rssi {advertisement.rssi}"
            + (f", manufacturer 0x{manufacturer.company_id:04x}" if manufacturer else ""))
        session.start()
        return identity

    def _route_notification(self, handle, characteristic, data):
        record = self._find_by_handle(handle)
        if record is None:
            logger.debug(f"[BLE] Notification from unknown handle {handle}")
            return
        record.session.post(NotificationReceived(characteristic, bytes(data)))

    def _route_disconnect(self, handle):
        record = self._find_by_handle(handle)
        if record is not None:
            record.session.link_lost()

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def start_tracking(self, name):
        self.session(name).request_tracking()

    def set_label(self, name, label):
        self.get(name).identity.label = label or None

    def send_command(self, name, command):
        self.session(name).send_command(command)

    async def disconnect_all(self):
        """Cancel all sampling, then tear down every connection and empty the table."""
        records = list(self._records.values())
        for record in records:
            record.session.stop()
        await asyncio.gather(*(record.session.shutdown() for record in records))
        for record in records:
            self.dispatcher.forget(record.identity)
        self._records.clear()
        self._pairings.clear()
        await self.transport.stop_scan()
        logger.info(f"[BLE] Disconnected {len(records)} beacon(s)")

    async def close(self):
        await self.disconnect_all()
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
