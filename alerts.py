"""
Alert deduplication and dispatch.

An alert for a (beacon, condition) pair is presented once and stays
outstanding until the condition clears; repeated notifications in between
are swallowed.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set, Tuple

from ble_device import BeaconIdentity
from state_machines import RangeEvent, RangeEventKind, WornState

logger = logging.getLogger(__name__)


class ConditionKind(Enum):
    OUT_OF_RANGE = "out_of_range"
    BACK_IN_RANGE = "back_in_range"
    BRACELET_ON = "bracelet_on"
    BRACELET_OFF = "bracelet_off"
    CONNECT_FAILED = "connect_failed"


# Raising one condition clears the other
COMPLEMENTS = {
    ConditionKind.OUT_OF_RANGE: ConditionKind.BACK_IN_RANGE,
    ConditionKind.BACK_IN_RANGE: ConditionKind.OUT_OF_RANGE,
    ConditionKind.BRACELET_ON: ConditionKind.BRACELET_OFF,
    ConditionKind.BRACELET_OFF: ConditionKind.BRACELET_ON,
}

URGENT_SOUND = "critical"

TITLES = {
    ConditionKind.OUT_OF_RANGE: "{name} is out of range!",
    ConditionKind.BACK_IN_RANGE: "{name} is back in range",
    ConditionKind.BRACELET_ON: "{name} put their bracelet on",
    ConditionKind.BRACELET_OFF: "{name} removed their bracelet!",
    ConditionKind.CONNECT_FAILED: "Failed to connect to {name}",
}

SOUNDS = {
    ConditionKind.OUT_OF_RANGE: URGENT_SOUND,
    ConditionKind.BRACELET_OFF: URGENT_SOUND,
    ConditionKind.CONNECT_FAILED: URGENT_SOUND,
}


@dataclass
class Alert:
    target: str                     # stable id so the sink can update in place
    title: str
    sound: Optional[str] = None     # None = informational

    def to_dict(self):
        return {"target": self.target, "title": self.title, "sound": self.sound}


def alert_target(name: str, kind: ConditionKind) -> str:
    """Range and worn alerts share one slot each so a new state replaces the old."""
    if kind in (ConditionKind.OUT_OF_RANGE, ConditionKind.BACK_IN_RANGE):
        return f"{name}:range"
    if kind in (ConditionKind.BRACELET_ON, ConditionKind.BRACELET_OFF):
        return f"{name}:worn"
    return f"{name}:connect"


class AlertSink:
    """User-facing notification surface."""

    def present(self, alert: Alert) -> None:
        raise NotImplementedError

    def withdraw(self, target: str) -> None:
        raise NotImplementedError


class LoggingAlertSink(AlertSink):
    def present(self, alert: Alert) -> None:
        level = logging.WARNING if alert.sound else logging.INFO
        logger.log(level, f"[ALERT] {alert.title}")

    def withdraw(self, target: str) -> None:
        logger.debug(f"[ALERT] Withdrawn {target}")


class RecordingAlertSink(AlertSink):
    """Keeps the currently presented alerts, keyed by target."""

    def __init__(self, forward: Optional[AlertSink] = None):
        self.forward = forward
        self._lock = threading.Lock()
        self._alerts: Dict[str, Alert] = {}
        self.history = []

    def present(self, alert: Alert) -> None:
        with self._lock:
            self._alerts[alert.target] = alert
            self.history.append(alert)
        if self.forward:
            self.forward.present(alert)

    def withdraw(self, target: str) -> None:
        with self._lock:
            self._alerts.pop(target, None)
        if self.forward:
            self.forward.withdraw(target)

    def outstanding(self):
        with self._lock:
            return list(self._alerts.values())


class NotificationDedup:
    """Tracks outstanding (beacon, condition) pairs."""

    def __init__(self):
        self._outstanding: Set[Tuple[str, ConditionKind]] = set()
        self._lock = threading.Lock()

    def notify(self, key: str, kind: ConditionKind) -> bool:
        """Returns True only if the condition was not already outstanding."""
        with self._lock:
            if (key, kind) in self._outstanding:
                return False
            self._outstanding.add((key, kind))
            return True

    def clear(self, key: str, kind: ConditionKind) -> bool:
        """Returns True if the condition was outstanding."""
        with self._lock:
            if (key, kind) not in self._outstanding:
                return False
            self._outstanding.discard((key, kind))
            return True

    def clear_all(self, key: str):
        with self._lock:
            self._outstanding = {item for item in self._outstanding if item[0] != key}

    def is_outstanding(self, key: str, kind: ConditionKind) -> bool:
        with self._lock:
            return (key, kind) in self._outstanding

    def outstanding(self):
        with self._lock:
            return sorted(self._outstanding, key=lambda item: (item[0], item[1].value))


class AlertDispatcher:
    """
    Turns range / worn / connection events into alerts.

    Args:
        sink: Where alerts are presented and withdrawn
        dedup: Shared dedup table (a fresh one if omitted)
    """

    def __init__(self, sink: AlertSink, dedup: Optional[NotificationDedup] = None):
        self.sink = sink
        self.dedup = dedup or NotificationDedup()

    def notify(self, identity: BeaconIdentity, kind: ConditionKind) -> bool:
        """Raise a condition for a beacon. Returns True if an alert was presented."""
        key = identity.name
        complement = COMPLEMENTS.get(kind)
        if complement is not None:
            self.clear(identity, complement)

        if not self.dedup.notify(key, kind):
            logger.debug(f"[ALERT] Suppressed duplicate {kind.value} for {key}")
            return False

        alert = Alert(
            target=alert_target(key, kind),
            title=TITLES[kind].format(name=identity.display_name),
            sound=SOUNDS.get(kind),
        )
        self.sink.present(alert)
        return True

    def clear(self, identity: BeaconIdentity, kind: ConditionKind) -> bool:
        if not self.dedup.clear(identity.name, kind):
            return False
        # Range/worn targets get replaced by the complement alert, not withdrawn
        if kind not in COMPLEMENTS:
            self.sink.withdraw(alert_target(identity.name, kind))
        return True

    def on_range_event(self, identity: BeaconIdentity, event: RangeEvent) -> bool:
        if event.kind is RangeEventKind.CONFIRMED_OUT:
            return self.notify(identity, ConditionKind.OUT_OF_RANGE)
        return self.notify(identity, ConditionKind.BACK_IN_RANGE)

    def on_worn_change(self, identity: BeaconIdentity, state: WornState) -> bool:
        kind = ConditionKind.BRACELET_ON if state is WornState.ON else ConditionKind.BRACELET_OFF
        return self.notify(identity, kind)

    def on_connect_failed(self, identity: BeaconIdentity) -> bool:
        return self.notify(identity, ConditionKind.CONNECT_FAILED)

    def forget(self, identity: BeaconIdentity):
        """Drop every outstanding condition of a beacon and withdraw its alerts."""
        for kind in ConditionKind:
            if self.dedup.is_outstanding(identity.name, kind):
                self.sink.withdraw(alert_target(identity.name, kind))
        self.dedup.clear_all(identity.name)
