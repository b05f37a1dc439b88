"""
Tether tracker configuration.

Every value can be overridden with a TETHER_* environment variable.
Invalid overrides fall back to the defaults below.
"""

import os
from dataclasses import dataclass, field
from typing import Dict


def _env_float(name, default):
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def _env_int(name, default):
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Distance model (deployment calibration, no single correct value)
PATH_LOSS_EXPONENT = _env_float("TETHER_PATH_LOSS_EXPONENT", 20.0)
MAX_DISTANCE_MM = _env_float("TETHER_MAX_DISTANCE_MM", 3000.0)

# Sampling
NUM_RSSI_SAMPLES = _env_int("TETHER_NUM_RSSI_SAMPLES", 20)      # samples per batch
SAMPLE_INTERVAL_S = _env_float("TETHER_SAMPLE_INTERVAL_S", 0.001)
SAMPLE_WINDOW_S = _env_float("TETHER_SAMPLE_WINDOW_S", 0.05)    # batch watchdog
IN_RANGE_REFRESH_S = _env_float("TETHER_IN_RANGE_REFRESH_S", 3.0)
ABORT_RETRY_S = _env_float("TETHER_ABORT_RETRY_S", 1.0)     # after a failed batch, whatever the range

# Consecutive far readings before OutOfRange is confirmed
OUT_OF_RANGE_DEBOUNCE = _env_int("TETHER_OUT_OF_RANGE_DEBOUNCE", 2)

# Command bytes written to the identify characteristic (firmware protocol)
COMMAND_BYTES = {
    "connected_default": 0x01,
    "connected_team_color": 0x02,
    "out_of_range": 0x03,
    "back_in_range": 0x04,
    "emergency_start": 0x05,
    "emergency_stop": 0x06,
    "power_off": 0x07,
}

# Capacitive sense bytes notified on the identify characteristic
WORN_EVENT_CODES = {
    0x10: "on",
    0x11: "off",
}

# First character of the NFC tag payload
TAG_FRESH_MARKER = os.environ.get("TETHER_TAG_FRESH_MARKER", "N")
TAG_RECONNECT_MARKER = os.environ.get("TETHER_TAG_RECONNECT_MARKER", "R")

# Flask control surface
SERVER_CONFIG = {
    "host": os.environ.get("TETHER_HOST", "0.0.0.0"),
    "port": _env_int("TETHER_PORT", 5000),
    "debug": _env_bool("TETHER_DEBUG", False),
    "request_timeout_s": 30.0,
}

# Logging
LOGGING_CONFIG = {
    "level": os.environ.get("TETHER_LOG_LEVEL", "INFO"),
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "log_file": os.environ.get("TETHER_LOG_FILE", "log.txt"),
    "truncate_on_start": True,
}


@dataclass
class TrackingConfig:
    """
    Tracking parameters handed to each beacon session.

    Attributes:
        path_loss_exponent: Divisor in the log-distance path-loss formula
        max_distance_mm: Distance above which a reading counts as out of range
        num_samples: RSSI sample budget per batch
        sample_interval_s: Minimum spacing between RSSI requests
        sample_window_s: Watchdog window that closes a batch early
        in_range_refresh_s: Delay before the next batch while in range
        abort_retry_s: Delay before the next batch after a read failure
        debounce_threshold: Consecutive far readings that confirm OutOfRange
        command_bytes: Hardware command name -> byte
        worn_event_codes: Capacitive sense byte -> "on" / "off"
    """

    path_loss_exponent: float = PATH_LOSS_EXPONENT
    max_distance_mm: float = MAX_DISTANCE_MM
    num_samples: int = NUM_RSSI_SAMPLES
    sample_interval_s: float = SAMPLE_INTERVAL_S
    sample_window_s: float = SAMPLE_WINDOW_S
    in_range_refresh_s: float = IN_RANGE_REFRESH_S
    abort_retry_s: float = ABORT_RETRY_S
    debounce_threshold: int = OUT_OF_RANGE_DEBOUNCE
    command_bytes: Dict[str, int] = field(default_factory=lambda: dict(COMMAND_BYTES))
    worn_event_codes: Dict[int, str] = field(default_factory=lambda: dict(WORN_EVENT_CODES))

    def __post_init__(self):
        """Validate configuration."""
        if self.path_loss_exponent <= 0:
            raise ValueError("path_loss_exponent must be positive")
        if self.max_distance_mm <= 0:
            raise ValueError("max_distance_mm must be positive")
        if self.num_samples < 1:
            raise ValueError("num_samples must be at least 1")
        if self.sample_window_s <= 0:
            raise ValueError("sample_window_s must be positive")
        if self.sample_interval_s < 0 or self.in_range_refresh_s < 0:
            raise ValueError("intervals must not be negative")
        if self.abort_retry_s <= 0:
            raise ValueError("abort_retry_s must be positive")
        if self.debounce_threshold < 1:
            raise ValueError("debounce_threshold must be at least 1")
        for name, value in self.command_bytes.items():
            if not 0 <= value <= 0xFF:
                raise ValueError(f"Command byte for {name} out of range: {value}")
        if set(self.worn_event_codes.values()) - {"on", "off"}:
            raise ValueError("worn_event_codes must map to 'on' or 'off'")
