"""
RSSI batch -> distance estimation.

A batch of raw RSSI readings is collapsed to its statistical mode, then run
through the log-distance path-loss model:

    distance_mm = 10 ** ((tx_power - rssi) / path_loss_exponent)

The mode ignores multipath spikes that would drag an arithmetic mean around.
"""

import math
from collections import Counter
from typing import Optional, Sequence

import config


def representative_rssi(samples: Sequence[int]) -> int:
    """
    Return the most frequent RSSI value in a batch.

    Ties go to the strongest signal (the value closest to zero), so
    [-60, -60, -61, -61] -> -60.

    Raises:
        ValueError: If samples is empty
    """
    if not samples:
        raise ValueError("At least one RSSI sample is required")

    counts = Counter(int(s) for s in samples)
    best_count = max(counts.values())
    return max(rssi for rssi, count in counts.items() if count == best_count)


def estimate_distance(samples: Sequence[int], tx_power: int,
                      path_loss_exponent: Optional[float] = None) -> float:
    """
    Estimate beacon distance in millimetres from one batch of RSSI samples.

    Args:
        samples: Non-empty batch of signed RSSI readings (dBm)
        tx_power: Calibrated transmit power of the beacon (signed)
        path_loss_exponent: Divisor of the path-loss model
            (defaults to config.PATH_LOSS_EXPONENT)

    Returns:
        Non-negative distance in millimetres
    """
    if path_loss_exponent is None:
        path_loss_exponent = config.PATH_LOSS_EXPONENT
    if path_loss_exponent <= 0:
        raise ValueError("path_loss_exponent must be positive")

    rssi = representative_rssi(samples)
    exponent = (tx_power - rssi) / path_loss_exponent
    try:
        return math.pow(10.0, exponent)
    except OverflowError:
        # Absurd RSSI/txPower gaps still need a finite answer
        return float(1e308)


def format_distance(distance_mm: float) -> str:
    """Human readable distance in the natural unit (mm, cm or m), 2 decimals max."""
    if distance_mm >= 1000:
        value, unit = distance_mm / 1000, "m"
    elif distance_mm >= 10:
        value, unit = distance_mm / 10, "cm"
    else:
        value, unit = distance_mm, "mm"
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {unit}"
