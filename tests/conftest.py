"""Pytest configuration and shared fixtures."""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

# Point the service at throwaway storage before app is imported
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['CONFIG_PATH'] = os.path.join(tempfile.mkdtemp(prefix='silo-test-'), 'config.json')
os.environ['API_KEY'] = 'test-key'

from risk_scorer import Sample, build_reading  # noqa: E402
from thresholds import default_config  # noqa: E402

BASE_TIME = datetime(2026, 1, 16, 14, 0, 0)


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def thresholds(config):
    return config.thresholds


@pytest.fixture
def make_reading(thresholds):
    """Factory for derived readings at one-minute spacing."""
    def _make(temperature, humidity, gas_level=100.0, minute=0, device_id='SILO-T'):
        return build_reading(
            device_id,
            Sample(temperature, humidity, gas_level),
            thresholds,
            timestamp=BASE_TIME + timedelta(minutes=minute)
        )
    return _make


@pytest.fixture
def client():
    """Flask test client on a fresh in-memory database and default config."""
    from app import app, config_store, db

    app.config['TESTING'] = True
    with app.app_context():
        db.drop_all()
        db.create_all()
    config_store.reset()

    with app.test_client() as test_client:
        yield test_client

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def api_headers():
    return {'x-api-key': 'test-key', 'Content-Type': 'application/json'}
