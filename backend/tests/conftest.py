"""
Pytest fixtures for EcoTrend backend tests.

Provides the app on in-memory SQLite, a test client, a per-test table wipe,
an in-memory telemetry store, a static device-status predicate and a seeded
device (D1, tank 1 at 100.00/L).
"""

import copy
import itertools

import pytest

from ecotrend import create_app
from ecotrend.config import TestConfig
from ecotrend.errors import ExternalServiceError
from ecotrend.extensions import db
from ecotrend.services import device_service
from ecotrend.services.kaspi_service import BalancePaymentGateway


class InMemoryTelemetryClient:
    """Dict-backed stand-in for the realtime store; paths look like 'D1/balance'."""

    def __init__(self):
        self.data = {}
        self.fail = False
        self._ids = itertools.count(1)

    def reset(self):
        self.data.clear()
        self.fail = False

    def _check(self):
        if self.fail:
            raise ExternalServiceError("Telemetry store unreachable")

    @staticmethod
    def _parts(path):
        return [part for part in path.strip("/").split("/") if part]

    def get(self, path):
        self._check()
        node = self.data
        for part in self._parts(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def put(self, path, value):
        self._check()
        parts = self._parts(path)
        node = self.data
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = copy.deepcopy(value)
        return value

    def post(self, path, value):
        self._check()
        key = f"-cmd{next(self._ids):06d}"
        self.put(f"{path}/{key}", value)
        return {"name": key}


class StaticDeviceStatus:
    """Every device is active unless listed in `inactive`."""

    def __init__(self):
        self.inactive = set()

    def reset(self):
        self.inactive.clear()

    def is_active(self, device_id):
        return device_id not in self.inactive


TELEMETRY = InMemoryTelemetryClient()
DEVICE_STATUS = StaticDeviceStatus()


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig, telemetry_client=TELEMETRY, device_status=DEVICE_STATUS)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh data (and fresh fakes) for each test."""
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    TELEMETRY.reset()
    DEVICE_STATUS.reset()

    yield db.session

    db.session.rollback()


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def telemetry(db_session):
    return TELEMETRY


@pytest.fixture(scope='function')
def device_status(db_session):
    return DEVICE_STATUS


@pytest.fixture(scope='function')
def device(db_session):
    """Registered device D1 with seven default tanks at 100.00 per litre."""
    return device_service.register_device("D1", "Test Station", "Lab")


@pytest.fixture(scope='function')
def balance_mode(app):
    """Swap in the legacy balance gateway for one test."""
    previous = app.extensions["payment_gateway"]
    app.extensions["payment_gateway"] = BalancePaymentGateway(tolerance=app.config["AMOUNT_TOLERANCE"])
    yield app.extensions["payment_gateway"]
    app.extensions["payment_gateway"] = previous
