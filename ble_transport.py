"""
bleak implementation of the Transport interface.

One BleakScanner stays up for the lifetime of the transport: it reports
sightings of the beacons being paired and keeps the latest RSSI per address,
which is what read_signal_strength() returns (bleak has no connected-RSSI
request on every backend). Each read waits for an advertisement newer than
the one it last returned, so a batch holds distinct sightings.
"""

import asyncio
import logging
import time
from typing import Dict, List, Set

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from ble_device import Advertisement, ManufacturerData
from transport import Transport, TransportError, normalize_uuid

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10.0
RSSI_MAX_AGE_S = 5.0


class BleakTransport(Transport):
    """
    Transport over bleak.

    Connection handles are BLE addresses. Characteristic identifiers are
    '<uuid>#<att handle>' so that characteristics sharing a UUID across
    services (0x2A06 in Immediate Alert and Link Loss) stay distinct.
    """

    def __init__(self, connect_timeout=CONNECT_TIMEOUT_S, rssi_max_age=RSSI_MAX_AGE_S):
        super().__init__()
        self.connect_timeout = connect_timeout
        self.rssi_max_age = rssi_max_age
        self._scanner = None
        self._service_filter: Set[str] = set()
        self._clients: Dict[str, BleakClient] = {}
        self._characteristics: Dict[str, Dict[str, object]] = {}
        self._rssi: Dict[str, tuple] = {}     # address -> (rssi, monotonic time, sighting number)
        self._last_read: Dict[str, int] = {}  # address -> sighting number last returned
        self._sightings: Dict[str, asyncio.Event] = {}
        self._sighting_count = 0

    # Scanning

    def _detection_callback(self, device, adv_data):
        address = device.address
        if adv_data.rssi is not None:
            self._sighting_count += 1
            self._rssi[address] = (adv_data.rssi, time.monotonic(), self._sighting_count)
            event = self._sightings.get(address)
            if event is not None:
                event.set()

        uuids = {normalize_uuid(u) for u in (adv_data.service_uuids or [])}
        if not uuids & self._service_filter:
            return

        advertisement = Advertisement(
            name=adv_data.local_name or device.name or "Unknown",
            handle=address,
            rssi=adv_data.rssi,
            service_uuids=sorted(uuids),
            manufacturer_data=ManufacturerData.from_advertisement(adv_data.manufacturer_data),
        )
        if self.on_advertisement:
            self.on_advertisement(advertisement)

    async def scan(self, service_uuid: str) -> None:
        self._service_filter.add(normalize_uuid(service_uuid))
        if self._scanner is not None:
            return
        try:
            self._scanner = BleakScanner(detection_callback=self._detection_callback)
            await self._scanner.start()
            logger.info(f"[BLE] Scanning for {service_uuid}")
        except (BleakError, OSError) as e:
            self._scanner = None
            raise TransportError(f"Scan failed: {e}") from e

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        self._service_filter.clear()
        if scanner is None:
            return
        try:
            await scanner.stop()
            logger.info("[BLE] Scan stopped")
        except (BleakError, EOFError) as e:
            logger.warning(f"[BLE] Stop scan error: {e}")

    # Connections

    def _client(self, handle: str) -> BleakClient:
        client = self._clients.get(handle)
        if client is None or not client.is_connected:
            raise TransportError(f"{handle} is not connected")
        return client

    def _characteristic(self, handle: str, characteristic: str):
        try:
            return self._characteristics[handle][characteristic]
        except KeyError:
            raise TransportError(f"Unknown characteristic {characteristic} on {handle}") from None

    def _handle_disconnect(self, client):
        handle = client.address
        self._clients.pop(handle, None)
        self._characteristics.pop(handle, None)
        logger.info(f"[BLE] Link lost: {handle}")
        if self.on_disconnect:
            self.on_disconnect(handle)

    async def connect(self, handle: str) -> None:
        client = BleakClient(handle, disconnected_callback=self._handle_disconnect,
                             timeout=self.connect_timeout)
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Connect to {handle} failed: {e}") from e
        self._clients[handle] = client
        self._characteristics[handle] = {}
        logger.info(f"[BLE] Connected to {handle}")

    async def disconnect(self, handle: str) -> None:
        client = self._clients.pop(handle, None)
        self._characteristics.pop(handle, None)
        if client is None:
            return
        try:
            if client.is_connected:
                await client.disconnect()
                logger.info(f"[BLE] Disconnected from {handle}")
        except EOFError:
            # D-Bus connection already closed
            pass
        except BleakError as e:
            raise TransportError(f"Disconnect from {handle} failed: {e}") from e

    # GATT

    async def discover_services(self, handle: str, service_uuids: List[str]) -> List[str]:
        client = self._client(handle)
        wanted = {normalize_uuid(u) for u in service_uuids}
        # bleak resolves the GATT table during connect()
        return [s.uuid for s in client.services if normalize_uuid(s.uuid) in wanted]

    async def discover_characteristics(self, handle: str, service: str) -> List[str]:
        client = self._client(handle)
        found = client.services.get_service(service)
        if found is None:
            raise TransportError(f"Service {service} not found on {handle}")
        identifiers = []
        for char in found.characteristics:
            identifier = f"{char.uuid}#{char.handle}"
            self._characteristics[handle][identifier] = char
            identifiers.append(identifier)
        return identifiers

    async def read_value(self, handle: str, characteristic: str) -> bytes:
        client = self._client(handle)
        try:
            return bytes(await client.read_gatt_char(self._characteristic(handle, characteristic)))
        except BleakError as e:
            raise TransportError(f"Read {characteristic} failed: {e}") from e

    async def write_value(self, handle: str, characteristic: str, value: int,
                          reliable: bool = True) -> None:
        client = self._client(handle)
        try:
            await client.write_gatt_char(self._characteristic(handle, characteristic),
                                         bytes([value]), response=reliable)
        except BleakError as e:
            raise TransportError(f"Write {characteristic} failed: {e}") from e

    async def subscribe_notifications(self, handle: str, characteristic: str) -> None:
        client = self._client(handle)

        def notify_handler(sender, data: bytearray):
            if self.on_notification:
                self.on_notification(handle, characteristic, bytes(data))

        try:
            await client.start_notify(self._characteristic(handle, characteristic), notify_handler)
        except BleakError as e:
            raise TransportError(f"Subscribe to {characteristic} failed: {e}") from e

    async def read_signal_strength(self, handle: str) -> int:
        """
        Latest advertised RSSI for a connected address.

        Waits for a sighting newer than the one returned last; the caller's
        batch watchdog bounds the wait.

        Raises:
            TransportError: Not connected, or no sighting within rssi_max_age
        """
        self._client(handle)
        reading = self._rssi.get(handle)
        if reading is None or time.monotonic() - reading[1] > self.rssi_max_age:
            raise TransportError(f"No recent RSSI for {handle}")
        if reading[2] == self._last_read.get(handle):
            event = self._sightings.setdefault(handle, asyncio.Event())
            event.clear()
            await event.wait()
            self._client(handle)
            reading = self._rssi[handle]
        self._last_read[handle] = reading[2]
        return reading[0]
