"""
Transport interface used by the tracking core.

Every request is a coroutine. BeaconSession runs each one as a task and turns
its result (or TransportError) into an event on the session inbox.
Unsolicited traffic (advertisements, notifications, link loss) is pushed
through the listeners installed with set_listeners().
"""

from typing import Callable, List, Optional

from ble_device import Advertisement

# Standard GATT services / characteristics used by the bracelet
IMMEDIATE_ALERT_SERVICE = "00001802-0000-1000-8000-00805f9b34fb"
LINK_LOSS_SERVICE =       "00001803-0000-1000-8000-00805f9b34fb"
TX_POWER_SERVICE =        "00001804-0000-1000-8000-00805f9b34fb"
BATTERY_SERVICE =         "0000180f-0000-1000-8000-00805f9b34fb"

ALERT_LEVEL_CHAR_UUID =   "00002a06-0000-1000-8000-00805f9b34fb"  # immediate alert + link loss
TX_POWER_CHAR_UUID =      "00002a07-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL_CHAR_UUID = "00002a19-0000-1000-8000-00805f9b34fb"


def normalize_uuid(uuid: str) -> str:
    """Expand 16-bit UUIDs ('180F') to the full 128-bit lowercase form."""
    uuid = uuid.strip().lower()
    if len(uuid) == 4:
        return f"0000{uuid}-0000-1000-8000-00805f9b34fb"
    return uuid


def tracked_services(identify_service: str) -> List[str]:
    """Services discovered on each bracelet; the identify service is per-bracelet."""
    return [
        IMMEDIATE_ALERT_SERVICE,
        TX_POWER_SERVICE,
        LINK_LOSS_SERVICE,
        BATTERY_SERVICE,
        normalize_uuid(identify_service),
    ]


class TransportError(Exception):
    """Radio or link level failure of a transport request."""


AdvertisementListener = Callable[[Advertisement], None]
NotificationListener = Callable[[str, str, bytes], None]    # handle, characteristic, data
DisconnectListener = Callable[[str], None]                  # handle


class Transport:
    """Base class for BLE transports. Subclasses implement every request."""

    def __init__(self):
        self.on_advertisement: Optional[AdvertisementListener] = None
        self.on_notification: Optional[NotificationListener] = None
        self.on_disconnect: Optional[DisconnectListener] = None

    def set_listeners(self, on_advertisement=None, on_notification=None, on_disconnect=None):
        if on_advertisement is not None:
            self.on_advertisement = on_advertisement
        if on_notification is not None:
            self.on_notification = on_notification
        if on_disconnect is not None:
            self.on_disconnect = on_disconnect

    async def scan(self, service_uuid: str) -> None:
        """Start reporting advertisements for beacons exposing service_uuid."""
        raise NotImplementedError

    async def stop_scan(self) -> None:
        raise NotImplementedError

    async def connect(self, handle: str) -> None:
        raise NotImplementedError

    async def disconnect(self, handle: str) -> None:
        raise NotImplementedError

    async def discover_services(self, handle: str, service_uuids: List[str]) -> List[str]:
        """Return the subset of service_uuids the peripheral exposes."""
        raise NotImplementedError

    async def discover_characteristics(self, handle: str, service: str) -> List[str]:
        raise NotImplementedError

    async def read_value(self, handle: str, characteristic: str) -> bytes:
        raise NotImplementedError

    async def write_value(self, handle: str, characteristic: str, value: int,
                          reliable: bool = True) -> None:
        raise NotImplementedError

    async def subscribe_notifications(self, handle: str, characteristic: str) -> None:
        raise NotImplementedError

    async def read_signal_strength(self, handle: str) -> int:
        raise NotImplementedError
