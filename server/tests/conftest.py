"""
Pytest configuration and shared fixtures for the device group server.
"""
import pytest
import os
import sys
from typing import Generator, Dict, Iterable
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import Base, get_db, Account, Device, DeviceGroup, DeviceList, DeviceUList, EventData
from main import app

# Fixed "now" for retention tests (2024-03-01T00:00:00Z)
NOW = 1709251200
OLD = NOW - 90 * 86400


@pytest.fixture(autouse=True)
def no_sweep_pacing(monkeypatch):
    """Sweeps never really sleep in tests; pacing tests opt back in"""
    monkeypatch.setenv("SWEEP_PACING_ENABLED", "false")


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a clean test database for each test.
    Uses in-memory SQLite for fast test execution.
    """
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create a test client with dependency overrides.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def admin_key() -> Dict[str, str]:
    """
    Return admin key headers.
    """
    admin_key = os.getenv("ADMIN_KEY", "admin")
    return {"X-Admin": admin_key}


def add_events(db: Session, account_id: str, device_id: str, timestamps: Iterable[int]) -> None:
    for ts in timestamps:
        db.add(EventData(account_id=account_id, device_id=device_id, timestamp=ts))
    db.commit()


@pytest.fixture(scope="function")
def fleet(test_db: Session) -> Session:
    """
    Two accounts with devices and groups:

    acme: devices d1, d2, d3 (inactive), d4; group fleet1 = [d1, d2];
          group shared (universal) = [beta/d9]; group spare (empty)
    beta: device d9
    """
    test_db.add_all([
        Account(account_id="acme", device_title="Vehicle", device_title_plural="Vehicles"),
        Account(account_id="beta"),
        Device(account_id="acme", device_id="d1"),
        Device(account_id="acme", device_id="d2"),
        Device(account_id="acme", device_id="d3", is_active=False),
        Device(account_id="acme", device_id="d4"),
        Device(account_id="beta", device_id="d9"),
        DeviceGroup(account_id="acme", group_id="fleet1", description=""),
        DeviceGroup(account_id="acme", group_id="shared", description=""),
        DeviceGroup(account_id="acme", group_id="spare", description=""),
    ])
    test_db.commit()
    test_db.add_all([
        DeviceList(account_id="acme", group_id="fleet1", device_id="d1"),
        DeviceList(account_id="acme", group_id="fleet1", device_id="d2"),
        DeviceUList(account_id="acme", group_id="shared", device_account_id="beta", device_id="d9"),
    ])
    test_db.commit()
    return test_db


@pytest.fixture(scope="function")
def capture_logs(monkeypatch):
    """
    Capture structured logs emitted during tests.
    """
    logs = []

    from observability import StructuredLogger

    original_log_event = StructuredLogger.log_event

    def capture_log_event(self, event: str, level: str = "INFO", **fields):
        logs.append({
            "event": event,
            "level": level,
            **fields
        })
        original_log_event(self, event, level, **fields)

    monkeypatch.setattr(StructuredLogger, "log_event", capture_log_event)

    return logs


@pytest.fixture(scope="function")
def capture_metrics(monkeypatch):
    """
    Capture metrics emitted during tests.
    """
    metrics_data = {
        "counters": [],
        "histograms": []
    }

    from observability import MetricsCollector

    original_inc_counter = MetricsCollector.inc_counter
    original_observe_histogram = MetricsCollector.observe_histogram

    def capture_counter(self, metric_name: str, labels=None, value: int = 1):
        metrics_data["counters"].append({
            "name": metric_name,
            "labels": labels or {},
            "value": value
        })
        original_inc_counter(self, metric_name, labels, value)

    def capture_histogram(self, metric_name: str, value: float, labels=None):
        metrics_data["histograms"].append({
            "name": metric_name,
            "value": value,
            "labels": labels or {}
        })
        original_observe_histogram(self, metric_name, value, labels)

    monkeypatch.setattr(MetricsCollector, "inc_counter", capture_counter)
    monkeypatch.setattr(MetricsCollector, "observe_histogram", capture_histogram)

    return metrics_data
