"""Tests for configuration and tag decoding."""

import importlib

import pytest

import config
from ble_device import PairingInput
from config import TrackingConfig


class TestConfigEnvVars:
    """Tests for environment variable configuration."""

    def test_default_values(self):
        assert config.PATH_LOSS_EXPONENT == 20.0
        assert config.MAX_DISTANCE_MM == 3000.0
        assert config.NUM_RSSI_SAMPLES == 20
        assert config.OUT_OF_RANGE_DEBOUNCE == 2
        assert config.SERVER_CONFIG["port"] == 5000
        assert config.SERVER_CONFIG["debug"] is False

    def test_env_override(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv('TETHER_PATH_LOSS_EXPONENT', '21.5')
        monkeypatch.setenv('TETHER_PORT', '8080')
        monkeypatch.setenv('TETHER_DEBUG', 'true')
        importlib.reload(config)

        assert config.PATH_LOSS_EXPONENT == 21.5
        assert config.TrackingConfig().path_loss_exponent == 21.5
        assert config.SERVER_CONFIG["port"] == 8080
        assert config.SERVER_CONFIG["debug"] is True

        monkeypatch.delenv('TETHER_PATH_LOSS_EXPONENT', raising=False)
        monkeypatch.delenv('TETHER_PORT', raising=False)
        monkeypatch.delenv('TETHER_DEBUG', raising=False)
        importlib.reload(config)

    def test_invalid_env_values(self, monkeypatch):
        """Invalid env values fall back to defaults."""
        monkeypatch.setenv('TETHER_PORT', 'invalid')
        monkeypatch.setenv('TETHER_NUM_RSSI_SAMPLES', '2.5')
        importlib.reload(config)

        assert config.SERVER_CONFIG["port"] == 5000
        assert config.NUM_RSSI_SAMPLES == 20

        monkeypatch.delenv('TETHER_PORT', raising=False)
        monkeypatch.delenv('TETHER_NUM_RSSI_SAMPLES', raising=False)
        importlib.reload(config)


class TestTrackingConfig:
    def test_defaults(self):
        tracking = TrackingConfig()
        assert tracking.debounce_threshold == 2
        assert tracking.command_bytes["out_of_range"] == 0x03
        assert tracking.worn_event_codes == {0x10: "on", 0x11: "off"}

    def test_command_table_is_a_copy(self):
        tracking = TrackingConfig()
        tracking.command_bytes["out_of_range"] = 0x7F
        assert config.COMMAND_BYTES["out_of_range"] == 0x03

    @pytest.mark.parametrize("overrides", [
        {"path_loss_exponent": 0},
        {"max_distance_mm": -1},
        {"num_samples": 0},
        {"sample_window_s": 0},
        {"in_range_refresh_s": -1},
        {"abort_retry_s": 0},
        {"debounce_threshold": 0},
        {"command_bytes": {"power_off": 0x100}},
        {"worn_event_codes": {0x10: "maybe"}},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValueError):
            TrackingConfig(**overrides)


class TestPairingInput:
    def test_fresh_tag(self):
        pairing = PairingInput.from_tag("Nb0201f39-97bc-a2f5-4621-c9ab58c9bfca")
        assert pairing.identifier == "b0201f39-97bc-a2f5-4621-c9ab58c9bfca"
        assert pairing.is_reconnect is False

    def test_reconnect_tag(self):
        pairing = PairingInput.from_tag(" R180F\n")
        assert pairing.identifier == "180F"
        assert pairing.is_reconnect is True

    @pytest.mark.parametrize("payload", ["", None, "N", "Xb0201f39"])
    def test_bad_tags_rejected(self, payload):
        with pytest.raises(ValueError):
            PairingInput.from_tag(payload)
