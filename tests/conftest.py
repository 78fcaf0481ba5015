import pytest

from storage import MemoryStore
from connectivity import ConnectivityMonitor
from fakes import FakeOrderClient, TransportFactory


REQUIRED_ENV = {
    "POS_OUTLET_ID": "outlet_1",
    "POS_STAFF_ID": "staff_7",
}


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def client():
    return FakeOrderClient()


@pytest.fixture
def monitor():
    return ConnectivityMonitor()


@pytest.fixture
def transports():
    return TransportFactory()


@pytest.fixture
def env(monkeypatch, tmp_path):
    """Minimal valid terminal environment."""
    for key, value in REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("POS_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)
    return monkeypatch
