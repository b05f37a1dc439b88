# Tether beacon data model

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import config


class ConnectionState(Enum):
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discovering_services"
    DISCOVERING_CHARACTERISTICS = "discovering_characteristics"
    READY = "ready"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


@dataclass
class PairingInput:
    """Pairing identifier read from a tag, plus whether this is a reconnect."""
    identifier: str
    is_reconnect: bool = False

    @classmethod
    def from_tag(cls, payload: str) -> "PairingInput":
        """
        Decode a tag payload: one marker character followed by the identifier.

        Raises:
            ValueError: Empty payload or unknown marker
        """
        payload = (payload or "").strip()
        if len(payload) < 2:
            raise ValueError("Tag payload too short")
        marker, identifier = payload[0], payload[1:]
        if marker == config.TAG_RECONNECT_MARKER:
            return cls(identifier, is_reconnect=True)
        if marker == config.TAG_FRESH_MARKER:
            return cls(identifier, is_reconnect=False)
        raise ValueError(f"Unknown tag marker: {marker!r}")


@dataclass
class ManufacturerData:
    company_id: int
    payload: bytes = b""

    @classmethod
    def from_advertisement(cls, manufacturer_data: Dict[int, bytes]) -> Optional["ManufacturerData"]:
        """Take the first manufacturer entry of a bleak advertisement (None if absent)."""
        if not manufacturer_data:
            return None
        company_id, payload = next(iter(manufacturer_data.items()))
        return cls(company_id, bytes(payload))


@dataclass
class Advertisement:
    """One advertisement sighting, parsed at ingestion."""
    name: str
    handle: str                         # transport connection handle (BLE address)
    rssi: Optional[int] = None
    service_uuids: List[str] = field(default_factory=list)
    manufacturer_data: Optional[ManufacturerData] = None


@dataclass
class BeaconIdentity:
    """Stable identity of one physical beacon, keyed by advertised name."""
    index: int                          # stable slot in the registry
    name: str                           # advertised name (identity key)
    pairing_identifier: str             # identify service UUID from the tag
    label: Optional[str] = None         # assigned later by the user
    handle: Optional[str] = None        # set on connect, cleared on disconnect

    @property
    def display_name(self):
        return self.label or self.name


@dataclass
class CharacteristicHandles:
    """Characteristics found during discovery (None until found)."""
    identify: Optional[str] = None          # command writes, capacitive sense notifications
    battery: Optional[str] = None
    tx_power: Optional[str] = None
    immediate_alert: Optional[str] = None
    link_loss: Optional[str] = None


@dataclass
class SamplingSession:
    """RSSI sampling state owned by one BeaconSession."""
    num_samples: int
    interval_s: float
    window_s: float
    samples: List[int] = field(default_factory=list)
    running: bool = False               # a batch is in flight
    tx_power: Optional[int] = None      # read once per connection

    def add(self, rssi: int) -> bool:
        """Append a reading. Returns True once the budget is met."""
        if len(self.samples) < self.num_samples:
            self.samples.append(rssi)
        return len(self.samples) >= self.num_samples

    def flush(self) -> List[int]:
        batch, self.samples = self.samples, []
        return batch


@dataclass
class BeaconStatus:
    """Read-only snapshot of one beacon for the console and the HTTP API."""
    index: int
    name: str
    label: Optional[str]
    connection_state: str
    range_state: str
    worn_state: str
    battery_level: Optional[int]
    distance_mm: Optional[float]
    distance_text: str
    tracking_started: bool
    battery_reported: bool

    def to_dict(self):
        return dict(self.__dict__)
