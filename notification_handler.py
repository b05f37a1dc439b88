"""
Characteristic payload parsing.

Bracelet characteristics carry single-byte values: battery percentage,
signed tx power, and capacitive sense event codes on the identify
characteristic.
"""

import time


class PayloadError(ValueError):
    """Empty or malformed characteristic payload."""


def _first_byte(data, what):
    if not data:
        raise PayloadError(f"Data sent from {what} characteristic is empty")
    return data[0]


def parse_battery_level(data: bytes) -> int:
    level = _first_byte(data, "battery")
    if level > 100:
        raise PayloadError(f"Battery level out of range: {level}")
    return level


def parse_tx_power(data: bytes) -> int:
    """Tx power is a signed int8."""
    value = _first_byte(data, "tx power")
    return value - 256 if value > 127 else value


def parse_worn_code(data: bytes) -> int:
    return _first_byte(data, "identify")


def history_entry(characteristic: str, data: bytes) -> dict:
    """Record kept in a session's notification history."""
    return {
        "timestamp": time.strftime("%H:%M:%S"),
        "characteristic": characteristic,
        "raw_data": bytes(data).hex(),
    }
