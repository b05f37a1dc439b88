"""
Per-beacon range and worn state machines.

RangeStateMachine uses asymmetric hysteresis: OutOfRange needs
`debounce_threshold` consecutive far readings, InRange comes back on the
first near reading.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import config


class RangeState(Enum):
    IN_RANGE = "in_range"
    OUT_OF_RANGE = "out_of_range"


class WornState(Enum):
    ON = "on"
    OFF = "off"


class RangeEventKind(Enum):
    RECOVERED = "recovered"
    CONFIRMED_OUT = "confirmed_out"


@dataclass
class RangeEvent:
    """Output of one RangeStateMachine update."""
    kind: RangeEventKind
    distance_mm: float
    first_transition: bool = False   # True only when the state flipped to OutOfRange


class RangeStateMachine:
    """
    Decides InRange / OutOfRange from distance measurements.

    Usage:
        machine = RangeStateMachine(max_distance_mm=3000)
        event = machine.update(4200.0)   # None, first far reading
        event = machine.update(4300.0)   # CONFIRMED_OUT, first_transition=True
        event = machine.update(800.0)    # RECOVERED
    """

    def __init__(self, max_distance_mm: Optional[float] = None,
                 debounce_threshold: Optional[int] = None):
        self.max_distance_mm = config.MAX_DISTANCE_MM if max_distance_mm is None else max_distance_mm
        self.debounce_threshold = (config.OUT_OF_RANGE_DEBOUNCE
                                   if debounce_threshold is None else debounce_threshold)
        if self.debounce_threshold < 1:
            raise ValueError("debounce_threshold must be at least 1")
        self.state = RangeState.IN_RANGE
        self.consecutive_out_of_range = 0

    @property
    def in_range(self) -> bool:
        return self.state is RangeState.IN_RANGE

    def update(self, distance_mm: float) -> Optional[RangeEvent]:
        """
        Feed one distance measurement.

        Returns:
            RangeEvent when a recovery or out-of-range confirmation happened,
            None otherwise
        """
        if distance_mm <= self.max_distance_mm:
            self.consecutive_out_of_range = 0
            if self.state is RangeState.OUT_OF_RANGE:
                self.state = RangeState.IN_RANGE
                return RangeEvent(RangeEventKind.RECOVERED, distance_mm)
            return None

        self.consecutive_out_of_range += 1
        if self.consecutive_out_of_range < self.debounce_threshold:
            return None

        self.consecutive_out_of_range = 0
        first = self.state is RangeState.IN_RANGE
        self.state = RangeState.OUT_OF_RANGE
        return RangeEvent(RangeEventKind.CONFIRMED_OUT, distance_mm, first_transition=first)

    def reset(self):
        self.state = RangeState.IN_RANGE
        self.consecutive_out_of_range = 0


class WornStateMachine:
    """On/off-wrist state driven by capacitive sense event codes."""

    def __init__(self, event_codes: Optional[Dict[int, str]] = None):
        self.event_codes = dict(config.WORN_EVENT_CODES if event_codes is None else event_codes)
        self.state = WornState.OFF

    def apply(self, code: int) -> WornState:
        """
        Apply one event code and return the resulting state.

        Raises:
            ValueError: Unknown event code
        """
        if code not in self.event_codes:
            raise ValueError(f"Unknown capacitive sense code: 0x{code:02x}")
        self.state = WornState(self.event_codes[code])
        return self.state
