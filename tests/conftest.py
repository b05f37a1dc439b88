"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import TrackingConfig


@pytest.fixture
def tracking():
    """Reference tracking parameters with test-friendly timings."""
    return TrackingConfig(
        path_loss_exponent=20.0,
        max_distance_mm=3000.0,
        num_samples=20,
        sample_interval_s=0.0,
        sample_window_s=0.5,
        in_range_refresh_s=0.01,
        abort_retry_s=0.02,
        debounce_threshold=2,
    )


@pytest.fixture
def client(tracking):
    """Flask test client backed by a FakeTransport."""
    import app as app_module
    from fakes import FakeTransport

    transport = FakeTransport()
    app_module.init_tracker(transport, tracking)
    app_module.app.config['TESTING'] = True
    client = app_module.app.test_client()
    client.transport = transport
    yield client
    app_module.shutdown_tracker()
